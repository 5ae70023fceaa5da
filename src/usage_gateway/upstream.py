"""Default underlying handler: forward the request to the upstream API.

Settles the dispatch in one of three ways:
- ``shim.send(obj)`` with the decoded JSON of a non-streaming response
- ``shim.send(stream)`` with an async byte iterator for ``"stream": true``
  requests; the upstream response stays open until it's exhausted or closed
- ``shim.status(code).send(body)`` for upstream errors (status >= 400)
"""

import json
from typing import Any, AsyncIterator

import httpx
import logfire
from aiohttp import web

from .config import GatewayConfig
from .dispatch import ReplyShim

# Headers to forward from incoming request (client -> upstream)
FORWARD_HEADERS = [
    "authorization",
    "x-api-key",
    "anthropic-version",
    "anthropic-beta",
    "content-type",
]

# Upstream response headers passed back to the client
PASS_RESPONSE_HEADERS = {
    "content-type",
    "request-id",
    "x-request-id",
    "anthropic-organization-id",
}


def _decode_body(body: bytes) -> Any:
    try:
        return json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return body


async def _iter_and_close(response: httpx.Response) -> AsyncIterator[bytes]:
    try:
        async for chunk in response.aiter_bytes():
            yield chunk
    finally:
        await response.aclose()


class UpstreamForwarder:
    """Forwards ``request`` to ``config.upstream_url`` over a shared httpx client."""

    def __init__(self, config: GatewayConfig, http_client: httpx.AsyncClient):
        self.config = config
        self.http_client = http_client

    def _build_headers(self, request: web.Request) -> dict[str, str]:
        headers = {}
        for header_name in FORWARD_HEADERS:
            value = request.headers.get(header_name)
            if value:
                headers[header_name] = value

        if self.config.upstream_api_key:
            headers.pop("authorization", None)
            headers["x-api-key"] = self.config.upstream_api_key

        if "content-type" not in headers:
            headers["content-type"] = "application/json"
        return headers

    async def __call__(self, request: web.Request, shim: ReplyShim) -> None:
        body_bytes = request.get("body_bytes")
        if body_bytes is None:
            body_bytes = await request.read()
        body = request.get("body")

        url = f"{self.config.upstream_url.rstrip('/')}{request.path}"
        if request.query_string:
            url = f"{url}?{request.query_string}"
        streaming = isinstance(body, dict) and bool(body.get("stream"))

        logfire.debug(
            "Forwarding {path}: {size_kb:.1f} KB (stream={streaming})",
            path=request.path,
            size_kb=len(body_bytes) / 1024,
            streaming=streaming,
        )

        upstream_request = self.http_client.build_request(
            request.method,
            url,
            content=body_bytes,
            headers=self._build_headers(request),
        )
        response = await self.http_client.send(upstream_request, stream=True)

        for key, value in response.headers.items():
            if key.lower() in PASS_RESPONSE_HEADERS:
                shim.header(key, value)

        if response.status_code >= 400:
            error_body = await response.aread()
            await response.aclose()
            logfire.error(
                "Upstream {status_code} on {path}",
                status_code=response.status_code,
                path=request.path,
            )
            shim.status(response.status_code).send(_decode_body(error_body))
            return

        if streaming:
            shim.send(_iter_and_close(response))
            return

        content = await response.aread()
        await response.aclose()
        shim.send(_decode_body(content))
