"""
Client Portal
Phase Catalog.

The fixed, ordered list of workflow phases and the actions each one requires.
Catalog data is immutable: build a PhaseCatalog once and share it.

    catalog = DEFAULT_CATALOG
    catalog.get_phase("review").mandatory_actions
    catalog.next_phase("payment").key   # "signoff"
"""

from __future__ import annotations

from dataclasses import dataclass

from portal.core.exceptions import NotFoundError


@dataclass(frozen=True)
class RequiredAction:
    key: str
    description: str
    mandatory: bool = True
    actor_role: str = "client"


@dataclass(frozen=True)
class Phase:
    key: str
    index: int
    name: str
    code: str
    description: str
    actions: tuple[RequiredAction, ...] = ()

    @property
    def mandatory_actions(self) -> tuple[RequiredAction, ...]:
        return tuple(a for a in self.actions if a.mandatory)

    @property
    def requires_client_action(self) -> bool:
        return any(a.mandatory and a.actor_role == "client" for a in self.actions)

    def get_action(self, action_key: str) -> RequiredAction | None:
        for action in self.actions:
            if action.key == action_key:
                return action
        return None

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "index": self.index,
            "name": self.name,
            "code": self.code,
            "description": self.description,
            "requires_client_action": self.requires_client_action,
            "actions": [
                {
                    "key": a.key,
                    "description": a.description,
                    "mandatory": a.mandatory,
                    "actor_role": a.actor_role,
                }
                for a in self.actions
            ],
        }


class PhaseCatalog:
    """Ordered, validated collection of phases."""

    def __init__(self, phases):
        phases = tuple(phases)
        if not phases:
            raise ValueError("Phase catalog must contain at least one phase")
        seen = set()
        for position, phase in enumerate(phases, start=1):
            if phase.index != position:
                raise ValueError(f"Phase {phase.key!r} has index {phase.index}, expected {position}")
            if phase.key in seen:
                raise ValueError(f"Duplicate phase key {phase.key!r}")
            seen.add(phase.key)
            action_keys = [a.key for a in phase.actions]
            if len(action_keys) != len(set(action_keys)):
                raise ValueError(f"Duplicate action key in phase {phase.key!r}")
            for action in phase.actions:
                if action.actor_role not in ("client", "admin"):
                    raise ValueError(f"Action {action.key!r} has unknown actor role {action.actor_role!r}")
        self._phases = phases
        self._by_key = {p.key: p for p in phases}

    def get_phases(self) -> tuple[Phase, ...]:
        return self._phases

    def get_phase(self, key: str) -> Phase:
        phase = self._by_key.get(key)
        if phase is None:
            raise NotFoundError(resource="Phase", resource_id=key)
        return phase

    def has_phase(self, key: str) -> bool:
        return key in self._by_key

    @property
    def first_phase(self) -> Phase:
        return self._phases[0]

    @property
    def last_phase(self) -> Phase:
        return self._phases[-1]

    def index_of(self, key: str) -> int:
        return self.get_phase(key).index

    def next_phase(self, key: str) -> Phase | None:
        """Phase after ``key``, or None when ``key`` is the last phase."""
        index = self.index_of(key)
        if index >= len(self._phases):
            return None
        return self._phases[index]

    def is_adjacent(self, from_key: str, to_key: str) -> bool:
        """True when ``to_key`` immediately follows ``from_key``."""
        return self.index_of(to_key) == self.index_of(from_key) + 1

    def __len__(self):
        return len(self._phases)

    def __iter__(self):
        return iter(self._phases)


def _client(key, description, mandatory=True):
    return RequiredAction(key=key, description=description, mandatory=mandatory, actor_role="client")


DEFAULT_PHASES = (
    Phase("onboarding", 1, "Onboarding", "ONB",
          "Project brief, agreement and deposit.",
          (_client("complete_brief", "Complete the project brief"),
           _client("sign_agreement", "Sign the service agreement"),
           _client("submit_deposit", "Pay the project deposit", mandatory=False))),
    Phase("ideation", 2, "Ideation", "IDEA",
          "Concept exploration by the studio.",
          (_client("provide_initial_feedback", "Share feedback on initial concepts", mandatory=False),)),
    Phase("design", 3, "Design", "DSGN",
          "Design work in progress.",
          (_client("design_feedback", "Comment on design drafts", mandatory=False),)),
    Phase("review", 4, "Review & Feedback", "REV",
          "Client reviews deliverables and approves designs.",
          (_client("review_deliverables", "Review the deliverables"),
           _client("provide_feedback", "Provide written feedback", mandatory=False),
           _client("approve_designs", "Approve the final designs"))),
    Phase("production", 5, "Production/Print", "PROD",
          "Final production and printing.",
          (_client("approve_press_check", "Approve the press check", mandatory=False),)),
    Phase("payment", 6, "Payment", "PAY",
          "Final invoice settlement.",
          (_client("complete_payment", "Pay the final invoice"),)),
    Phase("signoff", 7, "Sign-off & Docs", "SIGN",
          "Completion sign-off and documentation.",
          (_client("sign_completion", "Sign the completion form"),
           _client("acknowledge_deliverables", "Acknowledge the delivered items"),
           _client("download_assets", "Download project assets", mandatory=False))),
    Phase("delivery", 8, "Delivery", "LAUNCH",
          "Hand-over of final files.",
          (_client("confirm_receipt", "Confirm receipt of final files"),
           _client("download_files", "Download final files", mandatory=False))),
)

DEFAULT_CATALOG = PhaseCatalog(DEFAULT_PHASES)


def get_phases() -> tuple[Phase, ...]:
    return DEFAULT_CATALOG.get_phases()


def get_phase(key: str) -> Phase:
    return DEFAULT_CATALOG.get_phase(key)
