"""API-key check run once per request before routing.

If no APIKEY is configured every request is let through (the gateway then
only binds to 127.0.0.1, see GatewayConfig.effective_host). Otherwise the
key must arrive as ``x-api-key`` or ``Authorization: Bearer <key>``.
"""

import hmac

import logfire
from aiohttp import web

from .config import GatewayConfig
from .reply import Reply

PUBLIC_PATHS = {"/", "/health"}


def _presented_key(request: web.Request) -> str | None:
    api_key = request.headers.get("x-api-key")
    if api_key:
        return api_key

    authorization = request.headers.get("authorization", "")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() == "bearer" and token:
        return token.strip()
    return None


async def api_key_auth(request: web.Request, reply: Reply, config: GatewayConfig) -> bool:
    """Return True if the request may proceed.

    On failure the 401 is sent on ``reply`` here and False is returned.
    """
    if request.path in PUBLIC_PATHS or not config.api_key:
        return True

    presented = _presented_key(request)
    if presented is None:
        logfire.info(f"Rejected {request.path}: no API key")
        reply.status(401).send({"error": "APIKEY is missing"})
        return False

    if not hmac.compare_digest(presented.encode(), config.api_key.encode()):
        logfire.info(f"Rejected {request.path}: invalid API key")
        reply.status(401).send({"error": "Invalid API key"})
        return False

    return True
