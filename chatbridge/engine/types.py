"""Engine request and event types.

These types travel over the engine channels and are independent of any
HTTP/API layer.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .channel import TokenSender

# Global ceiling on completion tokens for a single request.
MAX_TOKENS = 4096


@dataclass(frozen=True)
class SamplerConfig:
    """Sampling parameters forwarded verbatim from the chat request."""

    temperature: float = 1.0
    top_p: float = 1.0
    presence_penalty: float = 0.0
    frequency_penalty: float = 0.0


@dataclass
class GenerateRequest:
    """A single linear generation request."""

    prompt: str
    max_tokens: int = 256
    stop: tuple[str, ...] = ()
    sampler: SamplerConfig = field(default_factory=SamplerConfig)
    occurrences: dict[int, int] = field(default_factory=dict)


class RequestKind(enum.Enum):
    """Tag carried by every envelope on the incoming-request channel."""

    CHAT = "chat"


@dataclass
class ThreadRequest:
    """Envelope submitted to the engine: a request plus its private result channel."""

    kind: RequestKind
    request: GenerateRequest
    token_sender: TokenSender


# ---------------------------------------------------------------------------
# Token events (engine -> adapter)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PromptTokenCount:
    """Number of tokens in the encoded prompt. Sent once, before any text."""

    count: int


@dataclass(frozen=True)
class TokenText:
    """One generated token, already detokenized."""

    text: str


@dataclass(frozen=True)
class Stop:
    """Generation hit a stop sequence or end-of-sequence token."""


@dataclass(frozen=True)
class CutOff:
    """Generation exhausted its token budget."""


@dataclass(frozen=True)
class EndOfText:
    """Last event of every completed stream."""


Token = PromptTokenCount | TokenText | Stop | CutOff | EndOfText


class FinishReason(enum.Enum):
    NULL = None
    STOP = "stop"
    LENGTH = "length"


@dataclass
class TokenCounter:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }
