"""Upstream backend communication: bounded-time calls with cancellation."""

from __future__ import annotations

import asyncio
import contextlib
import enum
import json
import logging
import time
from typing import Any, AsyncIterator, Awaitable, Dict, Iterator, Optional, TypeVar

import httpx

from config import AppConfig
from errors import (
    ClientCancelled,
    UpstreamProtocolError,
    UpstreamTimeout,
    UpstreamUnavailable,
)

log = logging.getLogger("chat_api")

T = TypeVar("T")


class CancelCause(str, enum.Enum):
    """Why a request was cancelled."""

    CLIENT_DISCONNECT = "client-disconnect"
    DEADLINE = "deadline"


class CancelToken:
    """
    Single-shot cancellation signal shared by everything serving one request.

    Client disconnect and the request deadline both fire the same token; the
    first cause wins and is kept in `cause` so callers can tell them apart.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.cause: Optional[CancelCause] = None

    @property
    def cancelled(self) -> bool:
        return self.cause is not None

    def cancel(self, cause: CancelCause) -> bool:
        """Fire the token. Returns False if it had already fired."""
        if self.cause is not None:
            return False
        self.cause = cause
        self._event.set()
        return True

    async def wait(self) -> None:
        await self._event.wait()

    def error(self) -> Exception:
        if self.cause is CancelCause.DEADLINE:
            return UpstreamTimeout("upstream timed out")
        return ClientCancelled("client disconnected")

    def raise_if_cancelled(self) -> None:
        if self.cause is not None:
            raise self.error()

    async def guard(self, aw: Awaitable[T]) -> T:
        """
        Await `aw` unless the token fires first.

        When the token wins, `aw` is cancelled (aborting the in-flight read or
        call) and the cause's error is raised.
        """
        self.raise_if_cancelled()
        task = asyncio.ensure_future(aw)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            waiter.cancel()
            raise

        if task.done():
            waiter.cancel()
            return task.result()

        task.cancel()
        with contextlib.suppress(asyncio.CancelledError, Exception):
            await task
        raise self.error()


class Deadline:
    """
    Timer that fires `token.cancel(DEADLINE)` after `timeout_s`.

    Arm it when the call starts; `disarm()` is idempotent and must run on
    every exit path (the context-manager form does this).
    """

    def __init__(self, token: CancelToken, timeout_s: float) -> None:
        self._token = token
        self._timeout_s = timeout_s
        self._handle: Optional[asyncio.TimerHandle] = None

    @property
    def armed(self) -> bool:
        return self._handle is not None

    def arm(self) -> Deadline:
        if self._handle is None:
            loop = asyncio.get_running_loop()
            self._handle = loop.call_later(self._timeout_s, self._fire)
        return self

    def disarm(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        if self._token.cancel(CancelCause.DEADLINE):
            log.warning("Upstream deadline fired after %.1fs", self._timeout_s)

    def __enter__(self) -> Deadline:
        return self.arm()

    def __exit__(self, *exc_info: Any) -> None:
        self.disarm()


@contextlib.contextmanager
def upstream_errors(label: str) -> Iterator[None]:
    """Translate httpx transport failures into the proxy's upstream errors."""
    try:
        yield
    except httpx.TimeoutException as e:
        raise UpstreamTimeout(f"{label} upstream timed out") from e
    except httpx.TransportError as e:
        raise UpstreamUnavailable(f"{label} upstream unreachable: {e}") from e


class UpstreamClient:
    """Issue calls to backend endpoints on behalf of one inbound request."""

    def __init__(
        self,
        config: AppConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._config = config
        self._transport = transport

    def get_headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "User-Agent": self._config.user_agent,
        }

    def open_client(self) -> httpx.AsyncClient:
        """
        Create the per-request HTTP client.

        Only connect/write/pool are bounded here: the overall budget is the
        request Deadline, and long pauses between streamed records are normal.
        """
        t = self._config.connect_timeout_s
        return httpx.AsyncClient(
            timeout=httpx.Timeout(connect=t, write=t, pool=t, read=None),
            transport=self._transport,
        )

    async def post_json(
        self,
        client: httpx.AsyncClient,
        url: str,
        body: Dict[str, Any],
        token: CancelToken,
        *,
        stream: bool = False,
        label: str = "upstream",
    ) -> httpx.Response:
        """Send one POST. Returns the response whatever its status."""
        req = client.build_request("POST", url, headers=self.get_headers(), json=body)
        t0 = time.time()
        with upstream_errors(label):
            resp = await token.guard(client.send(req, stream=stream))
        dt = (time.time() - t0) * 1000
        log.info("Upstream %s path=%s status=%s ms=%.1f", label, req.url.path, resp.status_code, dt)
        return resp

    async def get_json(
        self,
        client: httpx.AsyncClient,
        url: str,
        token: CancelToken,
        *,
        label: str = "upstream",
    ) -> Dict[str, Any]:
        req = client.build_request("GET", url, headers={"User-Agent": self._config.user_agent})
        with upstream_errors(label):
            resp = await token.guard(client.send(req, stream=True))
        try:
            await self.ensure_ok(resp, label, path=req.url.path)
            return await self.read_json(resp, token, label=label)
        finally:
            await resp.aclose()

    async def post_with_fallback(
        self,
        client: httpx.AsyncClient,
        url: str,
        body: Dict[str, Any],
        fallback_url: str,
        fallback_body: Dict[str, Any],
        token: CancelToken,
        *,
        stream: bool = False,
        label: str = "upstream",
    ) -> httpx.Response:
        """
        POST to `url`; if it answers 404, reissue once against `fallback_url`.

        Only 404 (endpoint missing on this backend version) triggers the
        fallback. The returned response is always 2xx.
        """
        resp = await self.post_json(client, url, body, token, stream=stream, label=label)
        if resp.status_code == 404:
            log.info("Upstream %s answered 404 on %s; retrying legacy endpoint", label, url)
            await resp.aclose()
            resp = await self.post_json(
                client, fallback_url, fallback_body, token, stream=stream, label=label
            )
        await self.ensure_ok(resp, label)
        return resp

    async def ensure_ok(
        self,
        resp: httpx.Response,
        label: str,
        *,
        include_body: bool = False,
        path: str = "",
    ) -> None:
        """Raise UpstreamProtocolError (after closing `resp`) for a non-2xx answer."""
        if resp.is_success:
            return
        snippet = await self.read_error_snippet(resp)
        await resp.aclose()
        log.warning(
            "Upstream %s error status=%s path=%s body=%r",
            label,
            resp.status_code,
            path,
            snippet[:200],
        )
        where = f" {path}" if path else ""
        message = f"{label} upstream{where} failed: {resp.status_code}"
        if include_body and snippet:
            message = f"{message}: {snippet[:500]}"
        raise UpstreamProtocolError(message, status=resp.status_code)

    async def read_json(
        self,
        resp: httpx.Response,
        token: CancelToken,
        *,
        label: str = "upstream",
    ) -> Dict[str, Any]:
        """Read the whole body and parse it as one JSON object."""
        with upstream_errors(label):
            raw = await token.guard(resp.aread())
        try:
            payload = json.loads(raw)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise UpstreamProtocolError(f"{label} upstream returned invalid JSON") from e
        if not isinstance(payload, dict):
            raise UpstreamProtocolError(f"{label} upstream returned non-object JSON")
        return payload

    async def iter_bytes(
        self,
        resp: httpx.Response,
        token: CancelToken,
        *,
        label: str = "upstream",
    ) -> AsyncIterator[bytes]:
        """Yield body chunks as they arrive; every read is bound to `token`."""
        chunks = resp.aiter_bytes().__aiter__()
        while True:
            try:
                with upstream_errors(label):
                    chunk = await token.guard(chunks.__anext__())
            except StopAsyncIteration:
                return
            if chunk:
                yield chunk

    @staticmethod
    async def read_error_snippet(
        resp: httpx.Response, limit: int = 2000, timeout_s: float = 2.0
    ) -> str:
        """Best-effort: read small error body without risking a hang."""
        try:
            raw = await asyncio.wait_for(resp.aread(), timeout=timeout_s)
        except (asyncio.TimeoutError, httpx.HTTPError):
            return ""
        return raw.decode("utf-8", errors="replace")[:limit]
