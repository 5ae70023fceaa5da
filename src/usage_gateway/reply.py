"""Framework-neutral reply handle.

Routers, auth checks and upstream handlers answer a request by calling
``reply.send(payload)`` or ``reply.status(code).send(payload)`` on one of
these, instead of building aiohttp responses themselves. The server turns
the finished Reply into the real response after the outgoing-payload hook
has run.
"""

from typing import Any

from multidict import CIMultiDict


class Reply:
    """Collects status, headers and payload for one response."""

    def __init__(self) -> None:
        self.status_code: int = 200
        self.headers: CIMultiDict[str] = CIMultiDict()
        self.payload: Any = None
        self.sent: bool = False

    def status(self, code: int) -> "Reply":
        self.status_code = code
        return self

    def header(self, name: str, value: str) -> "Reply":
        self.headers[name] = value
        return self

    def send(self, payload: Any = None) -> "Reply":
        if self.sent:
            raise RuntimeError("Reply already sent")
        self.payload = payload
        self.sent = True
        return self
