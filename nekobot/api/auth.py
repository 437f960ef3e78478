"""Bearer-token check for the HTTP API."""

import hmac

from aiohttp import web


def check_auth(request: web.Request, required_token: str) -> str | None:
    """Validate the Authorization header.

    Returns an error message string if auth fails, or None if OK.
    When *required_token* is empty, all requests are accepted.
    """
    if not required_token:
        return None

    # Accept "Authorization: Bearer <token>"
    auth_header = request.headers.get("Authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() == "bearer" and hmac.compare_digest(token.strip().encode(), required_token.encode()):
        return None

    return "Unauthorized"
