"""aiohttp server for the gateway.

Per request:
1. Health check short-circuits (``GET /health``)
2. Auth check; on failure its own 401 is sent
3. ``POST /v1/messages``: the router runs with a dispatch wrapped around the
   underlying handler (see dispatch.py)
4. The outgoing payload goes through the usage interceptor
5. The finished Reply is written out: streams chunk by chunk, everything
   else as one body

Each request gets its own span; the interceptor's telemetry tasks run
alongside in the same event loop.
"""

import json
from collections.abc import AsyncIterable, Iterator
from typing import Any, Awaitable, Callable

import httpx
import logfire
from aiohttp import web
from multidict import CIMultiDict

from .auth import api_key_auth
from .cache import SessionUsageCache, session_usage_cache
from .config import GatewayConfig
from .dispatch import Handler, Router, handle_routed, make_dispatcher
from .interceptor import StreamingUsageInterceptor
from .reply import Reply
from .router import passthrough_router
from .upstream import UpstreamForwarder

AuthCheck = Callable[[web.Request, Reply, GatewayConfig], Awaitable[bool]]

# Headers never copied onto the outgoing response (hop-by-hop)
SKIP_RESPONSE_HEADERS = {
    "content-encoding",
    "content-length",
    "transfer-encoding",
    "connection",
    "keep-alive",
}


class GatewayServer:
    """HTTP front end wiring auth, routing, dispatch and usage tracking.

    Usage:
        server = GatewayServer(config)
        await server.start()
        ...
        await server.stop()

    Args:
        config: Gateway configuration
        router: ``async router(request, reply, config, dispatch)``
        handler: Underlying handler for dispatch. Defaults to forwarding
            upstream over httpx.
        auth: ``async auth(request, reply, config) -> bool``
        cache: Usage cache (defaults to the shared one)
    """

    def __init__(
        self,
        config: GatewayConfig,
        router: Router = passthrough_router,
        handler: Handler | None = None,
        auth: AuthCheck = api_key_auth,
        cache: SessionUsageCache | None = None,
    ):
        self.config = config
        self.router = router
        self.auth = auth
        self.cache = cache if cache is not None else session_usage_cache
        self.interceptor = StreamingUsageInterceptor(self.cache, config.tracked_prefix)

        self._dispatch = make_dispatcher(handler, config.dispatch_timeout) if handler else None
        self._http_client: httpx.AsyncClient | None = None
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None

    def build_app(self) -> web.Application:
        """Build the aiohttp application (also used directly by tests)."""
        # Default client_max_size is 1 MB - too small for full conversations
        app = web.Application(client_max_size=0)
        app.router.add_route("*", "/{path:.*}", self._handle_request)
        app.on_startup.append(self._on_startup)
        app.on_cleanup.append(self._on_cleanup)
        self._app = app
        return app

    async def _on_startup(self, app: web.Application) -> None:
        if self._dispatch is None:
            self._http_client = httpx.AsyncClient(timeout=300.0)
            self._dispatch = make_dispatcher(
                UpstreamForwarder(self.config, self._http_client),
                self.config.dispatch_timeout,
            )

    async def _on_cleanup(self, app: web.Application) -> None:
        await self.interceptor.drain()
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None
            self._dispatch = None

    async def start(self) -> None:
        """Start listening on the configured host and port."""
        host = self.config.effective_host()
        if host != self.config.host:
            logfire.warning("API key is not set. HOST is forced to 127.0.0.1.")

        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, host, self.config.port)
        await self._site.start()

        logfire.info(f"Gateway listening on http://{host}:{self.config.port}")

    async def stop(self) -> None:
        """Stop the server and close the upstream client."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None

        self._site = None
        self._app = None
        logfire.debug("Gateway stopped")

    async def _handle_request(self, request: web.Request) -> web.StreamResponse:
        """Handle one incoming request."""
        path = request.path

        if request.method == "GET" and path == "/health":
            return web.Response(text="ok")

        with logfire.span("gateway.request", path=path, method=request.method) as span:
            reply = Reply()
            try:
                await self._process(request, reply)
            except Exception as e:
                logfire.error(f"Gateway error: {e}")
                span.set_attribute("error", str(e))
                return web.json_response({"error": str(e)}, status=500)

            span.set_attribute("status_code", reply.status_code)
            if request.get("session_id"):
                span.set_attribute("session_id", request["session_id"])

            payload = self.interceptor.on_send(request, reply, reply.payload)
            return await self._write(request, reply, payload)

    async def _process(self, request: web.Request, reply: Reply) -> None:
        if not await self.auth(request, reply, self.config):
            return

        if request.method == "GET" and request.path.startswith("/api/usage/"):
            self._usage_lookup(request, reply)
            return

        if request.method != "POST" or not request.path.startswith(self.config.tracked_prefix):
            reply.status(404).send("Not found")
            return

        body_bytes = await request.read()
        request["body_bytes"] = body_bytes
        try:
            request["body"] = json.loads(body_bytes) if body_bytes else None
        except (json.JSONDecodeError, UnicodeDecodeError):
            request["body"] = None

        if self._dispatch is None:
            raise RuntimeError("Dispatcher not initialized")
        await handle_routed(request, reply, self.router, self.config, self._dispatch)

    def _usage_lookup(self, request: web.Request, reply: Reply) -> None:
        session_id = request.path[len("/api/usage/"):]
        usage = self.cache.get(session_id) if session_id else None
        if usage is None:
            reply.status(404).send({"error": "No usage recorded for session"})
        else:
            reply.send({"session_id": session_id, "usage": usage})

    async def _write(self, request: web.Request, reply: Reply, payload: Any) -> web.StreamResponse:
        """Turn a finished Reply into the actual aiohttp response."""
        if isinstance(payload, web.StreamResponse):
            return payload

        headers: CIMultiDict[str] = CIMultiDict(
            [
                (key, value)
                for key, value in reply.headers.items()
                if key.lower() not in SKIP_RESPONSE_HEADERS
            ]
        )

        if isinstance(payload, AsyncIterable) or isinstance(payload, Iterator):
            headers.setdefault("Content-Type", "text/event-stream")
            resp = web.StreamResponse(status=reply.status_code, headers=headers)
            try:
                await resp.prepare(request)
                if isinstance(payload, AsyncIterable):
                    async for chunk in payload:
                        await resp.write(chunk)
                else:
                    for chunk in payload:
                        await resp.write(chunk if isinstance(chunk, bytes) else str(chunk).encode())
            except ConnectionResetError:
                logfire.info(f"Client disconnected mid-stream on {request.path}")
                return resp
            finally:
                # Closing the client branch also ends the telemetry branch
                aclose = getattr(payload, "aclose", None)
                if aclose is not None:
                    await aclose()
            await resp.write_eof()
            return resp

        if payload is None:
            return web.Response(status=reply.status_code, headers=headers)

        if isinstance(payload, (bytes, bytearray, memoryview)):
            return web.Response(status=reply.status_code, body=bytes(payload), headers=headers)

        if isinstance(payload, str):
            if "Content-Type" not in headers:
                headers["Content-Type"] = _guess_text_type(payload)
            return web.Response(status=reply.status_code, text=payload, headers=headers)

        return web.Response(status=reply.status_code, text=str(payload), headers=headers)


def _guess_text_type(text: str) -> str:
    stripped = text.lstrip()
    if stripped.startswith(("{", "[")):
        return "application/json"
    return "text/plain"
