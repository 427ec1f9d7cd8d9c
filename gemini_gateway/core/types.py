from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Literal

UpstreamRole = Literal["user", "model"]


class FinishReason(str, Enum):
    STOP = "stop"
    LENGTH = "length"
    CONTENT_FILTER = "content_filter"


class UpstreamFinishReason(str, Enum):
    STOP = "STOP"
    MAX_TOKENS = "MAX_TOKENS"
    SAFETY = "SAFETY"
    RECITATION = "RECITATION"
    OTHER = "OTHER"


@dataclass(frozen=True, slots=True)
class ConversationTurn:
    role: str
    content: str


@dataclass(frozen=True, slots=True)
class NormalizedTurn:
    role: UpstreamRole
    text: str

    def to_content(self) -> dict[str, Any]:
        return {"role": self.role, "parts": [{"text": self.text}]}


@dataclass(frozen=True, slots=True)
class Diagnostic:
    code: str
    message: str
    index: int | None = None


@dataclass(frozen=True, slots=True)
class NormalizationResult:
    turns: tuple[NormalizedTurn, ...]
    diagnostics: tuple[Diagnostic, ...] = ()


@dataclass(frozen=True, slots=True)
class GenerationParameters:
    temperature: float = 0.7
    max_output_tokens: int | None = None


@dataclass(frozen=True, slots=True)
class DeltaEvent:
    text: str
    finish_reason: FinishReason | None = None


@dataclass(frozen=True, slots=True)
class CompletionStamp:
    id: str
    created: int


def _new_chat_completion_id() -> str:
    return f"chatcmpl-{uuid.uuid4().hex}"


def _unix_now() -> int:
    return int(time.time())


@dataclass(slots=True)
class CompletionStamper:
    """Hands out response identifiers and creation timestamps."""

    new_id: Callable[[], str] = field(default=_new_chat_completion_id)
    clock: Callable[[], int] = field(default=_unix_now)

    def stamp(self) -> CompletionStamp:
        return CompletionStamp(id=self.new_id(), created=self.clock())
