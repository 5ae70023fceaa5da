"""End-to-end tests for usage_gateway.server over a real aiohttp test server."""

import asyncio
import json

import httpx
import pytest
from aiohttp import test_utils, web
from aiohttp.test_utils import make_mocked_request

from conftest import chunks, sse
from usage_gateway.reply import Reply
from usage_gateway.server import GatewayServer
from usage_gateway.upstream import UpstreamForwarder


def messages_body(session_id: str = "abc", stream: bool = False) -> dict:
    return {
        "model": "claude-sonnet-4-5",
        "max_tokens": 64,
        "stream": stream,
        "metadata": {"user_id": f"user_0f0f_account__session_{session_id}"},
        "messages": [{"role": "user", "content": "hi"}],
    }


def mock_upstream(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
async def make_client(config, cache):
    clients = []

    async def _make(**server_kwargs) -> tuple[test_utils.TestClient, GatewayServer]:
        server = GatewayServer(config, cache=cache, **server_kwargs)
        client = test_utils.TestClient(test_utils.TestServer(server.build_app()))
        await client.start_server()
        clients.append(client)
        return client, server

    yield _make
    for client in clients:
        await client.close()


class TestBasics:
    async def test_health(self, make_client):
        client, _ = await make_client(handler=lambda request, res: res.send("unused"))
        resp = await client.get("/health")
        assert resp.status == 200
        assert await resp.text() == "ok"

    async def test_unknown_path_404(self, make_client):
        client, _ = await make_client(handler=lambda request, res: res.send("unused"))
        resp = await client.post("/v1/complete", json={})
        assert resp.status == 404


class TestDispatchOutcomes:
    async def test_send(self, make_client):
        client, _ = await make_client(handler=lambda request, res: res.send({"ok": True}))
        resp = await client.post("/v1/messages", json=messages_body())
        assert resp.status == 200
        assert await resp.json() == {"ok": True}

    async def test_status_send(self, make_client):
        client, _ = await make_client(handler=lambda request, res: res.status(418).send({"x": 1}))
        resp = await client.post("/v1/messages", json=messages_body())
        assert resp.status == 418
        assert json.loads(await resp.text()) == {"x": 1}

    async def test_router_error(self, make_client):
        async def router(request, reply, config, dispatch):
            raise RuntimeError("no route for model")

        client, _ = await make_client(router=router, handler=lambda request, res: res.send("x"))
        resp = await client.post("/v1/messages", json=messages_body())
        assert resp.status == 500
        assert json.loads(await resp.text()) == {"error": "no route for model"}


class TestUsageTracking:
    async def test_streamed_usage(self, make_client, cache, sample_stream_frames):
        async def handler(request, res):
            res.header("content-type", "text/event-stream")
            res.send(chunks(*sample_stream_frames))

        client, server = await make_client(handler=handler)
        resp = await client.post("/v1/messages", json=messages_body("abc", stream=True))
        assert resp.status == 200
        assert resp.headers["content-type"].startswith("text/event-stream")
        assert await resp.read() == b"".join(sample_stream_frames)

        await server.interceptor.drain()
        assert cache.get("abc") == {"tokens": 42}

    async def test_non_streamed_usage(self, make_client, cache):
        upstream_payload = {"usage": {"tokens": 7}, "text": "hi"}
        client, _ = await make_client(handler=lambda request, res: res.send(upstream_payload))
        resp = await client.post("/v1/messages", json=messages_body("s-7"))
        assert resp.status == 200
        assert json.loads(await resp.text()) == upstream_payload
        assert cache.get("s-7") == {"tokens": 7}

    async def test_usage_lookup_endpoint(self, make_client, cache):
        cache.put("abc", {"tokens": 3})
        client, _ = await make_client(handler=lambda request, res: res.send("unused"))

        resp = await client.get("/api/usage/abc")
        assert resp.status == 200
        assert await resp.json() == {"session_id": "abc", "usage": {"tokens": 3}}

        resp = await client.get("/api/usage/missing")
        assert resp.status == 404

    async def test_no_session_no_tracking(self, make_client, cache):
        body = messages_body()
        del body["metadata"]
        client, _ = await make_client(handler=lambda request, res: res.send({"usage": {"tokens": 1}}))
        resp = await client.post("/v1/messages", json=body)
        assert resp.status == 200
        assert len(cache) == 0

    async def test_session_header_fallback(self, make_client, cache):
        body = messages_body()
        del body["metadata"]
        client, _ = await make_client(handler=lambda request, res: res.send({"usage": {"tokens": 2}}))
        await client.post("/v1/messages", json=body, headers={"x-session-id": "hdr"})
        assert cache.get("hdr") == {"tokens": 2}


class TestAuth:
    async def test_rejects_missing_key(self, make_client, config):
        config.api_key = "secret"
        client, _ = await make_client(handler=lambda request, res: res.send({}))
        resp = await client.post("/v1/messages", json=messages_body())
        assert resp.status == 401

    async def test_rejects_wrong_key(self, make_client, config):
        config.api_key = "secret"
        client, _ = await make_client(handler=lambda request, res: res.send({}))
        resp = await client.post("/v1/messages", json=messages_body(), headers={"x-api-key": "nope"})
        assert resp.status == 401
        assert json.loads(await resp.text()) == {"error": "Invalid API key"}

    async def test_accepts_bearer(self, make_client, config):
        config.api_key = "secret"
        client, _ = await make_client(handler=lambda request, res: res.send({"ok": 1}))
        resp = await client.post(
            "/v1/messages", json=messages_body(), headers={"authorization": "Bearer secret"}
        )
        assert resp.status == 200

    async def test_health_needs_no_key(self, make_client, config):
        config.api_key = "secret"
        client, _ = await make_client(handler=lambda request, res: res.send({}))
        assert (await client.get("/health")).status == 200


class TestUpstreamForwarding:
    async def test_streaming_through_upstream(self, make_client, config, cache, sample_stream_frames):
        seen = {}

        def upstream(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                headers={"content-type": "text/event-stream"},
                content=chunks(*sample_stream_frames),
            )

        async with mock_upstream(upstream) as http_client:
            client, server = await make_client(handler=UpstreamForwarder(config, http_client))
            resp = await client.post(
                "/v1/messages",
                json=messages_body("abc", stream=True),
                headers={"anthropic-version": "2023-06-01"},
            )
            assert await resp.read() == b"".join(sample_stream_frames)
            await server.interceptor.drain()

        assert seen["url"] == "https://upstream.test/v1/messages"
        assert seen["body"]["stream"] is True
        assert cache.get("abc") == {"tokens": 42}

    async def test_json_through_upstream(self, make_client, config, cache):
        def upstream(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"id": "msg_1", "usage": {"input_tokens": 3, "output_tokens": 4}})

        async with mock_upstream(upstream) as http_client:
            client, _ = await make_client(handler=UpstreamForwarder(config, http_client))
            resp = await client.post("/v1/messages", json=messages_body("json-session"))
            assert resp.status == 200
            assert (await resp.json())["id"] == "msg_1"

        assert cache.get("json-session") == {"input_tokens": 3, "output_tokens": 4}

    async def test_upstream_error_passes_status_through(self, make_client, config):
        error = {"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}}

        def upstream(request: httpx.Request) -> httpx.Response:
            return httpx.Response(529, json=error)

        async with mock_upstream(upstream) as http_client:
            client, _ = await make_client(handler=UpstreamForwarder(config, http_client))
            resp = await client.post("/v1/messages", json=messages_body())
            assert resp.status == 529
            assert json.loads(await resp.text()) == error

    async def test_upstream_unreachable_is_500(self, make_client, config):
        def upstream(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        async with mock_upstream(upstream) as http_client:
            client, _ = await make_client(handler=UpstreamForwarder(config, http_client))
            resp = await client.post("/v1/messages", json=messages_body())
            assert resp.status == 500
            assert json.loads(await resp.text()) == {"error": "connection refused"}

    async def test_upstream_api_key_replaces_client_auth(self, make_client, config):
        config.upstream_api_key = "sk-upstream"
        seen = {}

        def upstream(request: httpx.Request) -> httpx.Response:
            seen.update(request.headers)
            return httpx.Response(200, json={"usage": None})

        async with mock_upstream(upstream) as http_client:
            client, _ = await make_client(handler=UpstreamForwarder(config, http_client))
            await client.post(
                "/v1/messages", json=messages_body(), headers={"authorization": "Bearer client"}
            )

        assert seen["x-api-key"] == "sk-upstream"
        assert "authorization" not in seen


class TestStreamWriteFailures:
    async def test_failed_prepare_still_ends_telemetry(self, config, cache, monkeypatch, sample_stream_frames):
        server = GatewayServer(config, cache=cache, handler=lambda request, res: res.send("unused"))
        request = make_mocked_request("POST", "/v1/messages")
        request["session_id"] = "abc"
        payload = server.interceptor.on_send(request, Reply(), chunks(*sample_stream_frames))

        async def failing_prepare(self, request):
            raise ConnectionResetError("client went away")

        monkeypatch.setattr(web.StreamResponse, "prepare", failing_prepare)
        await server._write(request, Reply(), payload)

        await asyncio.wait_for(server.interceptor.drain(), timeout=1)
        assert cache.get("abc") is None
