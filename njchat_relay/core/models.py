"""
Data types shared by the providers, the relay session and the store.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional

VALID_ROLES = ("system", "user", "assistant")

# snake_case attribute -> camelCase wire key
_USAGE_KEYS = {
    "prompt_tokens": "promptTokens",
    "completion_tokens": "completionTokens",
    "total_tokens": "totalTokens",
    "tokens_per_second": "tokensPerSecond",
    "time_to_first_byte_ms": "timeToFirstByteMs",
    "latency_ms": "latencyMs",
}


@dataclass
class ChatTurnRequest:
    """
    One backend-agnostic chat turn.

    Attributes:
        model: Model name as the backend knows it
        messages: Ordered [{role, content}] history, never empty
        temperature: Sampling temperature
        max_tokens: Upper bound on generated tokens
    """
    model: str
    messages: List[Dict[str, str]]
    temperature: float = 0.7
    max_tokens: int = 512

    def __post_init__(self):
        if not self.messages:
            raise ValueError("ChatTurnRequest.messages must not be empty")
        for message in self.messages:
            if message.get("role") not in VALID_ROLES:
                raise ValueError(f"Unsupported message role: {message.get('role')!r}")
            if not isinstance(message.get("content"), str):
                raise ValueError("Message content must be a string")


@dataclass
class UsageStats:
    """Token and timing figures; any field may be unknown."""
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    total_tokens: Optional[int] = None
    tokens_per_second: Optional[float] = None
    time_to_first_byte_ms: Optional[int] = None
    latency_ms: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        """camelCase form used on the wire and in persisted messages; unknown fields omitted."""
        return {
            wire_key: getattr(self, attr)
            for attr, wire_key in _USAGE_KEYS.items()
            if getattr(self, attr) is not None
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["UsageStats"]:
        """Accepts OpenAI-style snake_case usage as well as our camelCase form."""
        if not isinstance(data, dict):
            return None
        values = {}
        for attr, wire_key in _USAGE_KEYS.items():
            value = data.get(attr, data.get(wire_key))
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                values[attr] = value
        return cls(**values)


@dataclass
class ProviderOutput:
    """One item yielded by a provider adapter: a raw text fragment or usage."""
    text: Optional[str] = None
    usage: Optional[UsageStats] = None

    @property
    def is_fragment(self) -> bool:
        return self.text is not None


EventName = Literal["ack", "delta", "thinking", "final", "error"]


@dataclass
class StreamEvent:
    """
    Normalized caller-facing event.

    Per session: optional `ack`, any number of `delta`/`thinking`, then exactly
    one `final` or `error`.
    """
    event: EventName
    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ack(cls, message_id: str) -> "StreamEvent":
        return cls("ack", {"messageId": message_id})

    @classmethod
    def delta(cls, content: str) -> "StreamEvent":
        return cls("delta", {"content": content})

    @classmethod
    def thinking(cls, content: str) -> "StreamEvent":
        return cls("thinking", {"content": content})

    @classmethod
    def final(cls, message_id: str, model: str, usage: Optional[UsageStats], latency_ms: int) -> "StreamEvent":
        return cls("final", {
            "messageId": message_id,
            "model": model,
            "usage": usage.to_dict() if usage is not None else None,
            "latencyMs": latency_ms,
        })

    @classmethod
    def failed(cls, reason: str) -> "StreamEvent":
        return cls("error", {"message": reason})

    @property
    def is_terminal(self) -> bool:
        return self.event in ("final", "error")

    @property
    def content(self) -> str:
        return self.data.get("content", "")

    def to_sse(self) -> bytes:
        payload = json.dumps(self.data, ensure_ascii=False)
        return f"event: {self.event}\ndata: {payload}\n\n".encode("utf-8")
