"""Chat request and response shapes.

These types mirror the OpenAI chat-completions JSON envelopes but carry no
transport concerns; SSE framing and HTTP status handling live in `apps/server`.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Callable, Generic, TypeVar

from .types import FinishReason, TokenCounter

T = TypeVar("T")


class Role(enum.Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"

    @classmethod
    def parse(cls, value: str) -> Role:
        """Accept the lowercase wire names as well as the capitalized display names."""
        try:
            return cls(value.lower())
        except ValueError:
            raise ValueError(f"Invalid message role: {value!r}.") from None

    def __str__(self) -> str:
        return self.value.capitalize()


@dataclass(frozen=True)
class OptionArray(Generic[T]):
    """A request field that may be sent either as a single item or as an array.

    Exactly one of `item` / `array` is meaningful; `array` wins when set.
    """

    item: T | None = None
    array: tuple[T, ...] | None = None

    @classmethod
    def of(cls, raw: Any, parse_item: Callable[[Any], T]) -> OptionArray[T]:
        if isinstance(raw, list):
            return cls(array=tuple(parse_item(x) for x in raw))
        return cls(item=parse_item(raw))

    def to_list(self) -> list[T]:
        if self.array is not None:
            return list(self.array)
        if self.item is None:
            return []
        return [self.item]


@dataclass(frozen=True)
class ChatRecord:
    role: Role = Role.USER
    content: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"role": self.role.value, "content": self.content}


@dataclass(frozen=True)
class ChatRequest:
    """A chat-completions request after JSON decoding, with the adapter's defaults."""

    messages: OptionArray[ChatRecord] = field(default_factory=lambda: OptionArray(array=()))
    max_tokens: int = 256
    stop: OptionArray[str] = field(default_factory=lambda: OptionArray(item="\n\n"))
    temperature: float = 1.0
    top_p: float = 1.0
    presence_penalty: float = 0.0
    frequency_penalty: float = 0.0
    stream: bool = False


@dataclass
class ChatChoice:
    message: ChatRecord
    index: int = 0
    finish_reason: FinishReason = FinishReason.NULL

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": self.message.to_dict(),
            "index": self.index,
            "finish_reason": self.finish_reason.value,
        }


@dataclass
class ChatResponse:
    choices: list[ChatChoice]
    counter: TokenCounter
    object: str = "chat.completion"

    def to_dict(self) -> dict[str, Any]:
        return {
            "object": self.object,
            "choices": [c.to_dict() for c in self.choices],
            "usage": self.counter.to_dict(),
        }


@dataclass(frozen=True)
class ChunkChatRecord:
    """Streaming delta: a role announcement, a content piece, or empty."""

    role: Role | None = None
    content: str | None = None

    def to_dict(self) -> dict[str, Any]:
        if self.role is not None:
            return {"role": self.role.value}
        if self.content is not None:
            return {"content": self.content}
        return {}


@dataclass
class ChunkChatChoice:
    delta: ChunkChatRecord = field(default_factory=ChunkChatRecord)
    index: int = 0
    finish_reason: FinishReason = FinishReason.NULL

    def to_dict(self) -> dict[str, Any]:
        return {
            "delta": self.delta.to_dict(),
            "index": self.index,
            "finish_reason": self.finish_reason.value,
        }


@dataclass
class ChunkChatResponse:
    choices: list[ChunkChatChoice]
    object: str = "chat.completion.chunk"

    def to_dict(self) -> dict[str, Any]:
        return {
            "object": self.object,
            "choices": [c.to_dict() for c in self.choices],
        }
