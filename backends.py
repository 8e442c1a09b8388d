"""Backend selection and per-backend wire schemas.

Two interchangeable text-generation backends sit behind one interface:

  LocalBackend  - self-hosted Ollama; true incremental NDJSON streaming,
                  /api/chat with a /api/generate fallback for older versions.
  CloudBackend  - Gemini generateContent; single-shot only.

BackendRouter picks one per request from the model identifier.
"""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence
from urllib.parse import quote

import httpx

from config import AppConfig
from errors import ConfigurationError
from models import ChatMessage, ChatRequest, Completion, UpstreamEvent, flatten_messages
from sse_handler import extract_text, iter_upstream_events
from upstream import CancelToken, UpstreamClient

log = logging.getLogger("chat_api")


class Backend(abc.ABC):
    """Capability interface shared by both backends."""

    name: str
    supports_streaming: bool
    timeout_s: float

    @abc.abstractmethod
    async def complete(
        self,
        client: httpx.AsyncClient,
        model: str,
        messages: Sequence[ChatMessage],
        token: CancelToken,
    ) -> Completion:
        """Run one non-streaming generation and return its full text."""

    @abc.abstractmethod
    def stream(
        self,
        client: httpx.AsyncClient,
        model: str,
        messages: Sequence[ChatMessage],
        token: CancelToken,
    ) -> AsyncIterator[UpstreamEvent]:
        """Yield records as they arrive. Callers check `supports_streaming` first."""


class LocalBackend(Backend):
    name = "ollama"
    supports_streaming = True

    def __init__(self, config: AppConfig, upstream: UpstreamClient) -> None:
        self._config = config
        self._upstream = upstream
        self.timeout_s = config.ollama_timeout_s

    @property
    def chat_url(self) -> str:
        return f"{self._config.ollama_host}/api/chat"

    @property
    def generate_url(self) -> str:
        return f"{self._config.ollama_host}/api/generate"

    @property
    def tags_url(self) -> str:
        return f"{self._config.ollama_host}/api/tags"

    def options(self) -> Dict[str, int]:
        """Generation-shaping options; only positive values are sent."""
        opts: Dict[str, int] = {}
        if self._config.ollama_num_ctx > 0:
            opts["num_ctx"] = self._config.ollama_num_ctx
        if self._config.ollama_num_predict > 0:
            opts["num_predict"] = self._config.ollama_num_predict
        return opts

    def chat_body(self, model: str, messages: Sequence[ChatMessage], stream: bool) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "model": model,
            "messages": [m.to_dict() for m in messages],
            "stream": stream,
        }
        opts = self.options()
        if opts:
            body["options"] = opts
        return body

    def generate_body(self, model: str, messages: Sequence[ChatMessage], stream: bool) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "model": model,
            "prompt": flatten_messages(messages),
            "stream": stream,
        }
        opts = self.options()
        if opts:
            body["options"] = opts
        return body

    async def _open(
        self,
        client: httpx.AsyncClient,
        model: str,
        messages: Sequence[ChatMessage],
        token: CancelToken,
        stream: bool,
    ) -> httpx.Response:
        return await self._upstream.post_with_fallback(
            client,
            self.chat_url,
            self.chat_body(model, messages, stream),
            self.generate_url,
            self.generate_body(model, messages, stream),
            token,
            stream=stream,
            label=self.name,
        )

    async def complete(
        self,
        client: httpx.AsyncClient,
        model: str,
        messages: Sequence[ChatMessage],
        token: CancelToken,
    ) -> Completion:
        resp = await self._open(client, model, messages, token, stream=False)
        try:
            raw = await self._upstream.read_json(resp, token, label=self.name)
        finally:
            await resp.aclose()
        return Completion(content=extract_text(raw), raw=raw)

    async def stream(
        self,
        client: httpx.AsyncClient,
        model: str,
        messages: Sequence[ChatMessage],
        token: CancelToken,
    ) -> AsyncIterator[UpstreamEvent]:
        resp = await self._open(client, model, messages, token, stream=True)
        try:
            chunks = self._upstream.iter_bytes(resp, token, label=self.name)
            async for ev in iter_upstream_events(chunks):
                yield ev
        finally:
            await resp.aclose()

    async def list_models(self, client: httpx.AsyncClient, token: CancelToken) -> List[str]:
        """Names of the models installed on the local backend."""
        data = await self._upstream.get_json(client, self.tags_url, token, label=self.name)
        names: List[str] = []
        for m in data.get("models") or []:
            if isinstance(m, dict) and isinstance(m.get("name"), str):
                names.append(m["name"])
        return names


class CloudBackend(Backend):
    name = "gemini"
    supports_streaming = False

    def __init__(self, config: AppConfig, upstream: UpstreamClient) -> None:
        self._config = config
        self._upstream = upstream
        self.timeout_s = config.gemini_timeout_s

    @property
    def configured(self) -> bool:
        return self._config.gemini_configured

    def url(self, model: str) -> str:
        return (
            f"{self._config.gemini_api_base}/models/{quote(model, safe='')}:generateContent"
            f"?key={quote(self._config.gemini_api_key, safe='')}"
        )

    def body(self, messages: Sequence[ChatMessage]) -> Dict[str, Any]:
        num_predict = self._config.ollama_num_predict
        return {
            "contents": [{"role": "user", "parts": [{"text": flatten_messages(messages)}]}],
            "generationConfig": {
                "maxOutputTokens": num_predict if num_predict > 0 else 256,
            },
        }

    @staticmethod
    def extract_text(payload: Dict[str, Any]) -> str:
        """Concatenate the text parts of the first candidate."""
        candidates = payload.get("candidates")
        if not isinstance(candidates, list) or not candidates:
            return ""
        first = candidates[0]
        content = first.get("content") if isinstance(first, dict) else None
        parts = content.get("parts") if isinstance(content, dict) else None
        if not isinstance(parts, list):
            return ""
        return "".join(
            p["text"] for p in parts if isinstance(p, dict) and isinstance(p.get("text"), str)
        )

    async def complete(
        self,
        client: httpx.AsyncClient,
        model: str,
        messages: Sequence[ChatMessage],
        token: CancelToken,
    ) -> Completion:
        if not self.configured:
            raise ConfigurationError("gemini not configured (missing GEMINI_API_KEY)")
        resp = await self._upstream.post_json(
            client, self.url(model), self.body(messages), token, label=self.name
        )
        try:
            await self._upstream.ensure_ok(resp, self.name, include_body=True)
            raw = await self._upstream.read_json(resp, token, label=self.name)
        finally:
            await resp.aclose()
        return Completion(content=self.extract_text(raw), raw=raw)

    def stream(
        self,
        client: httpx.AsyncClient,
        model: str,
        messages: Sequence[ChatMessage],
        token: CancelToken,
    ) -> AsyncIterator[UpstreamEvent]:
        raise ConfigurationError(f"{self.name} backend is single-shot; use complete()")


@dataclass(frozen=True)
class RoutePlan:
    """Where one request goes: the backend, its native model name and the client-facing label."""

    backend: Backend
    model: str
    label: str


class BackendRouter:
    """Classify requests by model identifier."""

    def __init__(self, config: AppConfig, upstream: UpstreamClient) -> None:
        self._config = config
        self.local = LocalBackend(config, upstream)
        self.cloud = CloudBackend(config, upstream)

    def is_cloud_model(self, name: Optional[str]) -> bool:
        return isinstance(name, str) and name.startswith(self._config.cloud_model_prefix)

    def cloud_model_name(self, name: str) -> str:
        stripped = name[len(self._config.cloud_model_prefix):]
        return stripped or self._config.gemini_model

    def route(self, chat: ChatRequest) -> RoutePlan:
        """
        Pick the backend for `chat`.

        Raises ConfigurationError when the cloud backend is selected but has
        no credential; nothing upstream is contacted in that case.
        """
        label = chat.model or self._config.default_model
        if self.is_cloud_model(label):
            if not self.cloud.configured:
                raise ConfigurationError("gemini not configured (missing GEMINI_API_KEY)")
            return RoutePlan(backend=self.cloud, model=self.cloud_model_name(label), label=label)
        return RoutePlan(backend=self.local, model=label, label=label)

    def cloud_listing_name(self) -> str:
        return f"{self._config.cloud_model_prefix}{self._config.gemini_model}"
