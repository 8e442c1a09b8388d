"""
Tests for upstream communication.

Tests cover:
- CancelToken causes and guard behaviour
- Deadline arming/disarming
- Transport error mapping
- 404-only legacy endpoint fallback
"""

import asyncio
import json

import httpx
import pytest

from errors import ClientCancelled, UpstreamProtocolError, UpstreamTimeout, UpstreamUnavailable
from upstream import CancelCause, CancelToken, Deadline, UpstreamClient


class TestCancelToken:
    """Test cancellation token semantics."""

    @pytest.mark.asyncio
    async def test_first_cause_wins(self):
        token = CancelToken()
        assert token.cancel(CancelCause.DEADLINE) is True
        assert token.cancel(CancelCause.CLIENT_DISCONNECT) is False
        assert token.cause is CancelCause.DEADLINE

    @pytest.mark.asyncio
    async def test_guard_returns_result(self):
        async def work():
            return 42

        assert await CancelToken().guard(work()) == 42

    @pytest.mark.asyncio
    async def test_guard_aborts_on_disconnect(self):
        token = CancelToken()
        cancelled = asyncio.Event()

        async def slow():
            try:
                await asyncio.sleep(30)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        asyncio.get_running_loop().call_later(0.02, token.cancel, CancelCause.CLIENT_DISCONNECT)
        with pytest.raises(ClientCancelled):
            await token.guard(slow())
        assert cancelled.is_set()

    @pytest.mark.asyncio
    async def test_guard_raises_timeout_for_deadline(self):
        token = CancelToken()
        with Deadline(token, 0.02):
            with pytest.raises(UpstreamTimeout):
                await token.guard(asyncio.sleep(30))
        assert token.cause is CancelCause.DEADLINE

    @pytest.mark.asyncio
    async def test_guard_on_already_cancelled_token(self):
        token = CancelToken()
        token.cancel(CancelCause.CLIENT_DISCONNECT)
        coro = asyncio.sleep(0)
        with pytest.raises(ClientCancelled):
            await token.guard(coro)
        coro.close()


class TestDeadline:
    """Test the deadline timer."""

    @pytest.mark.asyncio
    async def test_disarmed_on_exit(self):
        token = CancelToken()
        with Deadline(token, 0.05) as d:
            assert d.armed is True
        assert d.armed is False
        await asyncio.sleep(0.1)
        assert token.cancelled is False

    @pytest.mark.asyncio
    async def test_disarmed_on_error(self):
        token = CancelToken()
        d = Deadline(token, 0.05)
        with pytest.raises(RuntimeError):
            with d:
                raise RuntimeError("boom")
        assert d.armed is False
        await asyncio.sleep(0.1)
        assert token.cancelled is False


def make_client(test_config, handler):
    upstream = UpstreamClient(test_config, transport=httpx.MockTransport(handler))
    return upstream, upstream.open_client()


class TestUpstreamClient:
    """Test UpstreamClient calls against a fake transport."""

    def test_get_headers(self, test_config):
        headers = UpstreamClient(test_config).get_headers()
        assert headers["Content-Type"] == "application/json"
        assert headers["User-Agent"] == test_config.user_agent

    @pytest.mark.asyncio
    async def test_fallback_on_404(self, test_config):
        seen = []

        def handler(request):
            seen.append((request.url.path, json.loads(request.content)))
            if request.url.path == "/api/chat":
                return httpx.Response(404, text="404 page not found")
            return httpx.Response(200, json={"response": "ok", "done": True})

        upstream, client = make_client(test_config, handler)
        async with client:
            resp = await upstream.post_with_fallback(
                client,
                "http://ollama.test/api/chat",
                {"messages": []},
                "http://ollama.test/api/generate",
                {"prompt": "user: hi"},
                CancelToken(),
                label="ollama",
            )
            data = await upstream.read_json(resp, CancelToken())

        assert [p for p, _ in seen] == ["/api/chat", "/api/generate"]
        assert seen[1][1] == {"prompt": "user: hi"}
        assert data == {"response": "ok", "done": True}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [400, 405, 500, 503])
    async def test_no_fallback_on_other_statuses(self, test_config, status):
        seen = []

        def handler(request):
            seen.append(request.url.path)
            return httpx.Response(status, text="nope")

        upstream, client = make_client(test_config, handler)
        async with client:
            with pytest.raises(UpstreamProtocolError) as ei:
                await upstream.post_with_fallback(
                    client,
                    "http://ollama.test/api/chat",
                    {},
                    "http://ollama.test/api/generate",
                    {},
                    CancelToken(),
                    label="ollama",
                )
        assert seen == ["/api/chat"]
        assert ei.value.status == status
        assert ei.value.message == f"ollama upstream failed: {status}"

    @pytest.mark.asyncio
    async def test_fallback_attempted_once(self, test_config):
        seen = []

        def handler(request):
            seen.append(request.url.path)
            return httpx.Response(404)

        upstream, client = make_client(test_config, handler)
        async with client:
            with pytest.raises(UpstreamProtocolError):
                await upstream.post_with_fallback(
                    client,
                    "http://ollama.test/api/chat",
                    {},
                    "http://ollama.test/api/generate",
                    {},
                    CancelToken(),
                    label="ollama",
                )
        assert seen == ["/api/chat", "/api/generate"]

    @pytest.mark.asyncio
    async def test_connect_error_is_unavailable(self, test_config):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        upstream, client = make_client(test_config, handler)
        async with client:
            with pytest.raises(UpstreamUnavailable):
                await upstream.post_json(client, "http://ollama.test/api/chat", {}, CancelToken())

    @pytest.mark.asyncio
    async def test_read_timeout_is_timeout(self, test_config):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        upstream, client = make_client(test_config, handler)
        async with client:
            with pytest.raises(UpstreamTimeout):
                await upstream.post_json(client, "http://ollama.test/api/chat", {}, CancelToken())

    @pytest.mark.asyncio
    async def test_invalid_json_body(self, test_config):
        upstream, client = make_client(test_config, lambda request: httpx.Response(200, text="<html>"))
        async with client:
            resp = await upstream.post_json(client, "http://ollama.test/api/chat", {}, CancelToken())
            with pytest.raises(UpstreamProtocolError, match="invalid JSON"):
                await upstream.read_json(resp, CancelToken())

    @pytest.mark.asyncio
    async def test_iter_bytes_preserves_chunks(self, test_config):
        async def body():
            yield b"ab"
            yield b"cd"

        upstream, client = make_client(test_config, lambda request: httpx.Response(200, content=body()))
        async with client:
            resp = await upstream.post_json(
                client, "http://ollama.test/api/chat", {}, CancelToken(), stream=True
            )
            chunks = [c async for c in upstream.iter_bytes(resp, CancelToken())]
            await resp.aclose()
        assert b"".join(chunks) == b"abcd"

    @pytest.mark.asyncio
    async def test_read_error_snippet(self):
        resp = httpx.Response(500, text="x" * 5000)
        snippet = await UpstreamClient.read_error_snippet(resp, limit=100)
        assert snippet == "x" * 100
