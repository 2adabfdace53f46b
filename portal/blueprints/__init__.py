"""
Client Portal
Blueprint registry helpers.
"""

from flask import request


def paginate_args(default_limit=50, max_limit=500):
    """Read limit/offset query params.

    Returns:
        (limit, offset)
    """
    try:
        limit = min(int(request.args.get("limit", default_limit)), max_limit)
    except (ValueError, TypeError):
        limit = default_limit
    try:
        offset = max(int(request.args.get("offset", 0)), 0)
    except (ValueError, TypeError):
        offset = 0
    return limit, offset


def request_actor_id(data=None, default="anonymous"):
    """Actor identity supplied by the portal front-end.

    Authentication lives in front of this service; it forwards the user id in
    ``X-Actor-Id`` (or ``actor_id`` in the JSON body).
    """
    actor = request.headers.get("X-Actor-Id") or (data or {}).get("actor_id")
    return str(actor).strip() if actor else default
