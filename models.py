"""Request and event data model for the chat proxy."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from errors import ValidationError

ROLES = ("system", "user", "assistant")


@dataclass(frozen=True)
class ChatMessage:
    """One conversation turn."""

    role: str
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}

    @classmethod
    def from_dict(cls, data: Any, index: int) -> ChatMessage:
        if not isinstance(data, dict):
            raise ValidationError(f"messages[{index}] must be an object")
        role = data.get("role")
        if role not in ROLES:
            raise ValidationError(
                f"messages[{index}].role must be one of {', '.join(ROLES)}"
            )
        content = data.get("content")
        if content is None:
            content = ""
        elif not isinstance(content, str):
            raise ValidationError(f"messages[{index}].content must be a string")
        return cls(role=role, content=content)


@dataclass(frozen=True)
class ChatRequest:
    """Uniform inbound chat request, independent of the backend it lands on."""

    messages: List[ChatMessage]
    model: Optional[str] = None
    stream: bool = True

    @classmethod
    def from_body(cls, body: Any) -> ChatRequest:
        """
        Validate an untyped JSON body.

        `stream` defaults to true and is only disabled by an explicit `false`.
        A blank `model` is treated as absent.
        """
        if not isinstance(body, dict):
            raise ValidationError("Invalid JSON body: expected object")

        messages = body.get("messages")
        if not isinstance(messages, list) or not messages:
            raise ValidationError("messages array required")

        parsed = [ChatMessage.from_dict(m, i) for i, m in enumerate(messages)]

        model = body.get("model")
        if model is not None and not isinstance(model, str):
            raise ValidationError("model must be a string")
        model = (model or "").strip() or None

        return cls(messages=parsed, model=model, stream=body.get("stream") is not False)


def flatten_messages(messages: Sequence[ChatMessage]) -> str:
    """Collapse a conversation into a single prompt, one `role: content` line per turn."""
    return "\n".join(f"{m.role}: {m.content}" for m in messages)


@dataclass(frozen=True)
class UpstreamEvent:
    """One parsed record of a backend stream."""

    text: str = ""
    done: bool = False


@dataclass
class Completion:
    """Result of a single non-streaming backend call."""

    content: str
    raw: Dict[str, Any] = field(default_factory=dict)


# Push-event kinds emitted to the client.
EVENT_META = "meta"
EVENT_TOKEN = "token"
EVENT_DONE = "done"
EVENT_ERROR = "error"


def meta_event(model: str) -> Dict[str, Any]:
    return {"model": model}


def token_event(text: str) -> Dict[str, Any]:
    return {"token": text}


def done_event() -> Dict[str, Any]:
    return {"done": True}


def error_event(message: str) -> Dict[str, Any]:
    return {"error": message}
