from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass
class GatewayError(Exception):
    status_code: int
    message: str
    code: str | None = None
    param: str | None = None

    def __str__(self) -> str:
        return self.message


class AuthError(GatewayError):
    def __init__(self, message: str = "Missing or invalid Authorization header.") -> None:
        super().__init__(status_code=401, message=message, code="invalid_api_key")


class MalformedRequest(GatewayError):
    def __init__(
        self,
        message: str,
        *,
        code: str = "invalid_request",
        param: str | None = None,
    ) -> None:
        super().__init__(status_code=400, message=message, code=code, param=param)


class InvalidConversation(GatewayError):
    def __init__(self, message: str) -> None:
        super().__init__(
            status_code=400,
            message=message,
            code="invalid_conversation",
            param="messages",
        )


class UpstreamError(GatewayError):
    """Non-2xx answer (or transport failure) from the generative API."""

    def __init__(
        self,
        status_code: int,
        message: str,
        *,
        code: str = "upstream_error",
        detail: Any = None,
    ) -> None:
        super().__init__(status_code=status_code, message=message, code=code)
        self.detail = detail


_EMPTY_GENERATION_MESSAGES = {
    "SAFETY": "The response was blocked by the upstream safety filters.",
    "RECITATION": "The response was blocked because it recited source material.",
}


class EmptyGeneration(GatewayError):
    """The upstream answered 2xx but produced no usable candidate content."""

    def __init__(self, reason: str | None) -> None:
        self.reason = reason or "unknown"
        message = _EMPTY_GENERATION_MESSAGES.get(
            self.reason,
            f"The upstream returned no content (finish reason: {self.reason}).",
        )
        super().__init__(status_code=502, message=message, code="empty_generation")


class InternalError(GatewayError):
    def __init__(self, message: str = "Internal server error.") -> None:
        super().__init__(status_code=500, message=message, code="internal_error")


class StreamDecodeError(InternalError):
    def __init__(self, message: str) -> None:
        super().__init__(f"Malformed upstream stream: {message}")
        self.code = "stream_decode_error"
