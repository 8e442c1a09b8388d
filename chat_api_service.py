"""
chat-api: streaming chat proxy in front of a local Ollama and Gemini.

Endpoints:
  POST /v1/chat   (alias /chat)  chat completion; SSE stream by default
  GET  /v1/models                local models (+ gemini:<model> when configured)
  GET  /health                   liveness
  GET  /                         service index

Model ids starting with "gemini:" go to Gemini (single-shot, presented as a
one-token stream); everything else goes to Ollama (true NDJSON streaming,
/api/chat with /api/generate fallback).

SSE stream:
  event: meta   data: {"model": ...}
  event: token  data: {"token": ...}     (repeated)
  event: done   data: {"done": true}
  event: error  data: {"error": ...}     (instead of done on failure)
plus ":ping" comment lines every HEARTBEAT_INTERVAL_S.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Optional

import httpx
from fastapi import APIRouter, Depends, FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from backends import BackendRouter, RoutePlan
from config import AppConfig, load_config
from errors import ClientCancelled, ProxyError, RateLimitExceeded, ValidationError
from logger import setup_logging
from models import ChatRequest, Completion
from rate_limiter import RateLimiter, client_identity
from sse_handler import SSE_HEADERS, StreamRelay, single_shot_events
from upstream import CancelCause, CancelToken, Deadline, UpstreamClient
from utils import dump_config, load_env_files

# Load environment
load_env_files()

# Load configuration
config = load_config()
config.validate()

# Initialize logging
log = setup_logging(config)

# nginx convention for "client closed request"; the client never sees it.
CLIENT_CLOSED_REQUEST = 499


@dataclass
class ChatService:
    """Per-process collaborators, built once in create_app()."""

    config: AppConfig
    limiter: RateLimiter
    upstream: UpstreamClient
    router: BackendRouter
    relay: StreamRelay


def build_service(
    cfg: AppConfig,
    *,
    limiter: Optional[RateLimiter] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> ChatService:
    upstream = UpstreamClient(cfg, transport=transport)
    if limiter is None:
        limiter = RateLimiter(
            cfg.rate_limit_max,
            cfg.rate_limit_window_s,
            sweep_threshold=cfg.rate_limit_sweep_threshold,
        )
    return ChatService(
        config=cfg,
        limiter=limiter,
        upstream=upstream,
        router=BackendRouter(cfg, upstream),
        relay=StreamRelay(cfg.heartbeat_interval_s, cfg.disconnect_poll_s),
    )


def get_service(request: Request) -> ChatService:
    return request.app.state.chat


def request_id(request: Request) -> str:
    return (
        (request.headers.get("x-request-id") or "").strip()
        or (request.headers.get("x-correlation-id") or "").strip()
        or uuid.uuid4().hex
    )


def enforce_rate_limit(request: Request, service: ChatService = Depends(get_service)) -> None:
    """Gate in front of the chat endpoint."""
    peer = request.client.host if request.client else None
    identity = client_identity(request.headers, peer)
    decision = service.limiter.check(identity)
    if not decision.allowed:
        log.warning("Rate limit exceeded client=%s retry_after=%ss", identity, decision.retry_after_s)
        raise RateLimitExceeded(decision.retry_after_s)


class PayloadTooLarge(ValidationError):
    status_code = 413


async def read_json_body(request: Request, max_bytes: int) -> Any:
    """Read and decode the request body with a basic size guard."""
    cl = request.headers.get("content-length")
    if cl:
        try:
            n = int(cl)
        except ValueError:
            raise ValidationError(f"Invalid Content-Length header: {cl!r}")
        if n < 0:
            raise ValidationError("Invalid Content-Length: must be non-negative")
        if n > max_bytes:
            raise PayloadTooLarge(f"Request too large: {n} bytes (max {max_bytes})")

    raw = await request.body()
    if len(raw) > max_bytes:
        raise PayloadTooLarge(f"Request too large: {len(raw)} bytes (max {max_bytes})")
    try:
        return json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise ValidationError("Invalid JSON body")


async def watch_disconnect(request: Request, token: CancelToken, poll_s: float) -> None:
    """Fire `token` once the client has gone away."""
    while not token.cancelled:
        if await request.is_disconnected():
            token.cancel(CancelCause.CLIENT_DISCONNECT)
            return
        await asyncio.sleep(poll_s)


async def run_completion(
    service: ChatService,
    request: Request,
    plan: RoutePlan,
    chat: ChatRequest,
    token: CancelToken,
) -> Completion:
    """Single-shot backend call bounded by the deadline and tied to client disconnect."""
    client = service.upstream.open_client()
    watcher = asyncio.create_task(
        watch_disconnect(request, token, service.config.disconnect_poll_s),
        name="chat_api.watch_disconnect",
    )
    try:
        with Deadline(token, plan.backend.timeout_s):
            return await plan.backend.complete(client, plan.model, chat.messages, token)
    finally:
        watcher.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await watcher
        await client.aclose()


def event_stream_response(body: AsyncIterator[bytes]) -> StreamingResponse:
    return StreamingResponse(body, media_type="text/event-stream", headers=dict(SSE_HEADERS))


router = APIRouter()


@router.get("/")
async def index() -> Dict[str, Any]:
    return {
        "ok": True,
        "service": "chat-api",
        "endpoints": {"health": "/health", "models": "/v1/models", "chat": "/v1/chat"},
    }


@router.get("/health")
async def health(service: ChatService = Depends(get_service)) -> Dict[str, Any]:
    """Health check endpoint."""
    return {"ok": True, "service": "chat-api", "ollamaHost": service.config.ollama_host}


@router.get("/v1/models")
async def v1_models(service: ChatService = Depends(get_service)) -> Dict[str, Any]:
    """List local models; the configured Gemini model is listed first when a key is set."""
    token = CancelToken()
    async with service.upstream.open_client() as client:
        with Deadline(token, service.config.ollama_timeout_s):
            names = await service.router.local.list_models(client, token)

    models = [{"name": n} for n in names]
    if service.config.gemini_configured:
        models.insert(0, {"name": service.router.cloud_listing_name()})
    return {"models": models, "default": service.config.default_model}


@router.post("/v1/chat", dependencies=[Depends(enforce_rate_limit)])
@router.post("/chat", dependencies=[Depends(enforce_rate_limit)], include_in_schema=False)
async def v1_chat(request: Request, service: ChatService = Depends(get_service)) -> Response:
    """Handle chat completion requests."""
    req_id = request_id(request)
    body = await read_json_body(request, service.config.max_request_bytes)
    chat = ChatRequest.from_body(body)
    plan = service.router.route(chat)

    log.info(
        "Incoming chat req_id=%s from=%s model=%r backend=%s stream=%s messages=%d",
        req_id,
        request.client.host if request.client else "unknown",
        plan.label,
        plan.backend.name,
        chat.stream,
        len(chat.messages),
    )

    token = CancelToken()

    if chat.stream and plan.backend.supports_streaming:
        # Headers are committed right away; upstream failures become an `error` event.
        client = service.upstream.open_client()
        events = plan.backend.stream(client, plan.model, chat.messages, token)
        return event_stream_response(
            service.relay.relay(
                plan.label,
                events,
                token,
                req_id=req_id,
                is_disconnected=request.is_disconnected,
                deadline=Deadline(token, plan.backend.timeout_s),
                on_close=client.aclose,
            )
        )

    try:
        completion = await run_completion(service, request, plan, chat, token)
    except ClientCancelled:
        log.info("Client disconnected before completion req_id=%s model=%s", req_id, plan.label)
        return Response(status_code=CLIENT_CLOSED_REQUEST)

    if not chat.stream:
        return JSONResponse({"model": plan.label, "content": completion.content, "raw": completion.raw})

    # Single-shot backend presented as a stream: meta, one token, done.
    return event_stream_response(
        service.relay.relay(
            plan.label,
            single_shot_events(completion),
            token,
            req_id=req_id,
            heartbeat=False,
        )
    )


async def proxy_error_handler(request: Request, exc: ProxyError) -> JSONResponse:
    if exc.status_code >= 500:
        log.warning("Request failed path=%s status=%s err=%s", request.url.path, exc.status_code, exc.message)
    return JSONResponse({"error": exc.message}, status_code=exc.status_code, headers=exc.headers())


def create_app(
    cfg: Optional[AppConfig] = None,
    *,
    limiter: Optional[RateLimiter] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """
    Build the application.

    `limiter` and `transport` let tests run isolated instances: a fresh rate
    limit mapping and a fake upstream.
    """
    cfg = cfg or config

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        log.info("chat-api starting host=%s port=%s ollama=%s", cfg.host, cfg.port, cfg.ollama_host)
        yield
        log.info("chat-api stopped")

    app = FastAPI(title="chat-api", version="1.0.0", lifespan=lifespan)
    app.state.chat = build_service(cfg, limiter=limiter, transport=transport)
    app.add_exception_handler(ProxyError, proxy_error_handler)

    # Requests without an Origin header (curl, same-origin) are unaffected;
    # an empty allow-list admits no cross-origin browser.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(cfg.allowed_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(router)
    return app


app = create_app(config)


if __name__ == "__main__":
    import uvicorn

    dump_config(config)
    uvicorn.run(app, host=config.host, port=config.port, reload=False)
