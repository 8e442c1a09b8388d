"""Server-Sent Events (SSE) relay for streaming chat responses."""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import json
import logging
from typing import Any, AsyncGenerator, AsyncIterable, Awaitable, Callable, Dict, List, Optional

from errors import ClientCancelled, ProxyError, UpstreamTimeout
from models import (
    EVENT_DONE,
    EVENT_ERROR,
    EVENT_META,
    EVENT_TOKEN,
    Completion,
    UpstreamEvent,
    done_event,
    error_event,
    meta_event,
    token_event,
)
from upstream import CancelCause, CancelToken, Deadline

log = logging.getLogger("chat_api")

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

# SSE comment line: keeps intermediaries from idling out the connection.
HEARTBEAT = b":ping\n\n"


def sse_event(kind: str, data: Dict[str, Any]) -> bytes:
    """Encode one push event as `event:` + `data:` lines."""
    payload = json.dumps(data, ensure_ascii=False, separators=(",", ":"))
    return f"event: {kind}\ndata: {payload}\n\n".encode("utf-8")


class LineBuffer:
    """
    Reassemble newline-delimited records from arbitrarily split byte chunks.

    The trailing incomplete fragment is held until a later chunk completes it,
    so a record split across network reads comes out exactly once.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buf = ""

    def feed(self, chunk: bytes) -> List[str]:
        self._buf += self._decoder.decode(chunk)
        if "\n" not in self._buf:
            return []
        *lines, self._buf = self._buf.split("\n")
        return lines

    def flush(self) -> str:
        """Return whatever is left once the body has ended."""
        rest = self._buf + self._decoder.decode(b"", final=True)
        self._buf = ""
        return rest


def parse_upstream_line(line: str) -> Optional[UpstreamEvent]:
    """Parse one NDJSON record. Blank and unparseable lines yield None."""
    t = line.strip()
    if not t:
        return None
    try:
        obj = json.loads(t)
    except json.JSONDecodeError:
        return None
    if not isinstance(obj, dict):
        return None
    return UpstreamEvent(text=extract_text(obj), done=bool(obj.get("done")))


def extract_text(obj: Dict[str, Any]) -> str:
    """Text fragment of a local-backend record: chat `message.content`, else generate `response`."""
    message = obj.get("message")
    if isinstance(message, dict):
        content = message.get("content")
        if isinstance(content, str):
            return content
    response = obj.get("response")
    if isinstance(response, str):
        return response
    return ""


async def iter_upstream_events(chunks: AsyncIterable[bytes]) -> AsyncGenerator[UpstreamEvent, None]:
    """Turn a chunked NDJSON body into events, in record order."""
    buf = LineBuffer()
    async for chunk in chunks:
        for line in buf.feed(chunk):
            ev = parse_upstream_line(line)
            if ev is not None:
                yield ev
    ev = parse_upstream_line(buf.flush())
    if ev is not None:
        yield ev


async def single_shot_events(completion: Completion) -> AsyncGenerator[UpstreamEvent, None]:
    """Present an already finished completion as a one-record stream."""
    yield UpstreamEvent(text=completion.content, done=True)


_END = object()


class StreamRelay:
    """
    Relay upstream events to the client as uniform push events.

    Emits `meta` first, then `token`/`done` in upstream order. A heartbeat
    comment is written every `heartbeat_s` regardless of token activity.
    Client disconnect fires the request's CancelToken, which aborts the
    upstream read and stops all further writes.
    """

    def __init__(self, heartbeat_s: float, disconnect_poll_s: float = 0.5) -> None:
        self._heartbeat_s = heartbeat_s
        self._disconnect_poll_s = disconnect_poll_s

    async def relay(
        self,
        label: str,
        events: AsyncIterable[UpstreamEvent],
        token: CancelToken,
        *,
        req_id: str = "",
        is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
        heartbeat: bool = True,
        deadline: Optional[Deadline] = None,
        on_close: Optional[Callable[[], Awaitable[None]]] = None,
    ) -> AsyncGenerator[bytes, None]:
        queue: asyncio.Queue[Any] = asyncio.Queue()
        tasks: List[asyncio.Task[None]] = []
        started = False

        async def pump() -> None:
            nonlocal started
            done_sent = False
            try:
                async for ev in events:
                    started = True
                    if ev.text:
                        queue.put_nowait(sse_event(EVENT_TOKEN, token_event(ev.text)))
                    if ev.done and not done_sent:
                        done_sent = True
                        queue.put_nowait(sse_event(EVENT_DONE, done_event()))
                queue.put_nowait(_END)
            except (ProxyError, ClientCancelled) as e:
                queue.put_nowait(e)
            except Exception as e:
                log.exception("Stream relay pump failed req_id=%s", req_id)
                queue.put_nowait(e)
            finally:
                aclose = getattr(events, "aclose", None)
                if aclose is not None:
                    with contextlib.suppress(Exception):
                        await aclose()

        async def beat() -> None:
            while True:
                await asyncio.sleep(self._heartbeat_s)
                queue.put_nowait(HEARTBEAT)

        async def watch_disconnect() -> None:
            assert is_disconnected is not None
            while not token.cancelled:
                if await is_disconnected():
                    token.cancel(CancelCause.CLIENT_DISCONNECT)
                    break
                await asyncio.sleep(self._disconnect_poll_s)

        async def watch_token() -> None:
            await token.wait()
            if token.cause is CancelCause.CLIENT_DISCONNECT:
                queue.put_nowait(ClientCancelled("client disconnected"))

        try:
            if deadline is not None:
                deadline.arm()
            yield sse_event(EVENT_META, meta_event(label))

            tasks.append(asyncio.create_task(pump(), name="chat_api.relay.pump"))
            tasks.append(asyncio.create_task(watch_token(), name="chat_api.relay.token"))
            if heartbeat:
                tasks.append(asyncio.create_task(beat(), name="chat_api.relay.heartbeat"))
            if is_disconnected is not None:
                tasks.append(asyncio.create_task(watch_disconnect(), name="chat_api.relay.disconnect"))

            while True:
                item = await queue.get()
                if item is _END:
                    break
                if isinstance(item, ClientCancelled) or token.cause is CancelCause.CLIENT_DISCONNECT:
                    log.info("Client disconnected; relay stopped req_id=%s model=%s", req_id, label)
                    break
                if isinstance(item, UpstreamTimeout) and started:
                    log.warning("Deadline fired mid-stream; closing req_id=%s model=%s", req_id, label)
                    break
                if isinstance(item, Exception):
                    message = item.message if isinstance(item, ProxyError) else str(item)
                    log.warning("Upstream failed mid-stream req_id=%s model=%s err=%s", req_id, label, message)
                    yield sse_event(EVENT_ERROR, error_event(message))
                    break
                yield item
        except (asyncio.CancelledError, GeneratorExit):
            # The server cancels or closes the body iterator when the client goes away.
            token.cancel(CancelCause.CLIENT_DISCONNECT)
            log.info("Relay cancelled (client gone) req_id=%s model=%s", req_id, label)
            raise
        finally:
            if deadline is not None:
                deadline.disarm()
            for t in tasks:
                t.cancel()
            for t in tasks:
                with contextlib.suppress(asyncio.CancelledError, Exception):
                    await t
            if on_close is not None:
                with contextlib.suppress(Exception):
                    await on_close()
