"""Default router.

Provider selection is not this package's job; the default router tags the
request with its session id and hands it straight to dispatch. Swap in a
real router by passing ``router=`` to GatewayServer.
"""

from typing import Any

from aiohttp import web

from .dispatch import Dispatch
from .reply import Reply

SESSION_MARKER = "_session_"
SESSION_HEADER = "x-session-id"


def extract_session_id(body: Any, headers: Any = None) -> str | None:
    """Find the session id for a Messages API request.

    Claude Code sends ``metadata.user_id`` shaped like
    ``user_<hash>_account__session_<uuid>``; the part after ``_session_``
    is the session. Falls back to the ``x-session-id`` header.
    """
    if isinstance(body, dict):
        metadata = body.get("metadata")
        if isinstance(metadata, dict):
            user_id = metadata.get("user_id")
            if isinstance(user_id, str) and SESSION_MARKER in user_id:
                session_id = user_id.split(SESSION_MARKER, 1)[1]
                if session_id:
                    return session_id

    if headers is not None:
        return headers.get(SESSION_HEADER) or None
    return None


async def passthrough_router(
    request: web.Request,
    reply: Reply,
    config: Any,
    dispatch: Dispatch,
) -> None:
    """Attach the session id, dispatch, and send whatever comes back."""
    body = request.get("body")
    session_id = extract_session_id(body, request.headers)
    if session_id:
        request["session_id"] = session_id

    payload = await dispatch(request, reply)
    reply.send(payload)
