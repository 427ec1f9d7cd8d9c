from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncGenerator, AsyncIterable

from gemini_gateway.config import Settings
from gemini_gateway.core.errors import EmptyGeneration, MalformedRequest, UpstreamError
from gemini_gateway.core.mapping import build_generation_parameters, map_finish_reason
from gemini_gateway.core.normalizer import normalize_conversation
from gemini_gateway.core.stream_decoder import GeminiStreamDecoder
from gemini_gateway.core.types import (
    CompletionStamp,
    CompletionStamper,
    ConversationTurn,
    DeltaEvent,
    FinishReason,
    GenerationParameters,
    NormalizedTurn,
)
from gemini_gateway.core.upstream import GeminiUpstream, UpstreamStream

from .errors import map_gateway_error
from .schemas import ChatCompletionMessage, ChatCompletionRequest

logger = logging.getLogger(__name__)

DONE_FRAME = b"data: [DONE]\n\n"


@dataclass
class PreparedChatRequest:
    model: str
    turns: tuple[NormalizedTurn, ...]
    params: GenerationParameters
    warnings: list[str]


class ChatCompletionStream:
    """SSE frames bound to the upstream transfer they are read from.

    :meth:`aclose` releases the upstream transfer whether or not iteration
    ever started, and may be called more than once.
    """

    def __init__(
        self,
        frames: AsyncGenerator[bytes, None],
        upstream_stream: UpstreamStream,
    ) -> None:
        self._frames = frames
        self._upstream_stream = upstream_stream

    def __aiter__(self) -> ChatCompletionStream:
        return self

    async def __anext__(self) -> bytes:
        try:
            return await self._frames.__anext__()
        except BaseException:
            await self.aclose()
            raise

    async def aclose(self) -> None:
        try:
            await self._frames.aclose()
        finally:
            await self._upstream_stream.aclose()


def warning_headers(warnings: list[str]) -> dict[str, str]:
    if not warnings:
        return {}

    value = " | ".join(_dedupe_preserve_order(warnings))
    if len(value) > 2048:
        value = value[:2045] + "..."
    return {"X-OpenAI-Compat-Warnings": value}


def prepare_chat_request(
    request: ChatCompletionRequest,
    settings: Settings,
) -> PreparedChatRequest:
    if not request.model.strip():
        raise MalformedRequest("model must be a non-empty string.", param="model")

    normalized = normalize_conversation(_extract_turns(request.messages))
    params = build_generation_parameters(
        request.temperature,
        request.max_tokens,
        settings.DEFAULT_TEMPERATURE,
    )

    for diagnostic in normalized.diagnostics:
        logger.warning("Conversation diagnostic (%s): %s", diagnostic.code, diagnostic.message)

    warnings = [diagnostic.message for diagnostic in normalized.diagnostics]
    warnings.extend(_collect_warnings(request))

    return PreparedChatRequest(
        model=request.model,
        turns=normalized.turns,
        params=params,
        warnings=_dedupe_preserve_order(warnings),
    )


async def create_chat_completion(
    request: ChatCompletionRequest,
    *,
    upstream: GeminiUpstream,
    api_key: str,
    stamper: CompletionStamper,
    settings: Settings,
) -> tuple[dict[str, Any], list[str]]:
    prepared = prepare_chat_request(request, settings)

    body = await upstream.generate(prepared.model, api_key, prepared.turns, prepared.params)
    payload = transcode_completion(body, prepared.model, stamper.stamp())

    return payload, prepared.warnings


async def create_chat_completion_stream(
    request: ChatCompletionRequest,
    *,
    upstream: GeminiUpstream,
    api_key: str,
    stamper: CompletionStamper,
    settings: Settings,
) -> tuple[ChatCompletionStream, list[str]]:
    prepared = prepare_chat_request(request, settings)
    stamp = stamper.stamp()

    # Opened eagerly so upstream failures surface as a regular error response.
    upstream_stream = await upstream.open_stream(
        prepared.model, api_key, prepared.turns, prepared.params
    )
    frames = transcode_stream(
        upstream_stream,
        prepared.model,
        stamp,
        buffer_limit=settings.STREAM_BUFFER_LIMIT,
    )

    return ChatCompletionStream(frames, upstream_stream), prepared.warnings


def transcode_completion(
    body: dict[str, Any],
    model: str,
    stamp: CompletionStamp,
) -> dict[str, Any]:
    """Convert one ``generateContent`` response into a ``chat.completion``."""

    candidate = _first_candidate(body)
    texts = _part_texts(_candidate_parts(candidate))

    if candidate is None or not texts:
        raise EmptyGeneration(_empty_generation_reason(body, candidate))

    content = "".join(texts).strip()
    finish_reason = map_finish_reason(candidate.get("finishReason")) or FinishReason.STOP

    return {
        "id": stamp.id,
        "object": "chat.completion",
        "created": stamp.created,
        "model": model,
        "choices": [
            {
                "index": 0,
                "message": {
                    "role": "assistant",
                    "content": content,
                },
                "finish_reason": finish_reason.value,
            }
        ],
        "usage": _usage_payload(body.get("usageMetadata")),
    }


def transcode_delta(unit: dict[str, Any]) -> DeltaEvent:
    """Extract the text fragment and finish reason from one stream element."""

    error = unit.get("error")
    if isinstance(error, dict):
        status = error.get("code")
        raise UpstreamError(
            status if isinstance(status, int) and status >= 400 else 502,
            f"Gemini API error: {error.get('message') or 'stream error'}",
            detail=unit,
        )

    candidate = _first_candidate(unit)
    text = "".join(_part_texts(_candidate_parts(candidate)))
    reason = candidate.get("finishReason") if candidate is not None else None

    return DeltaEvent(text=text, finish_reason=map_finish_reason(reason))


async def transcode_stream(
    chunks: AsyncIterable[bytes],
    model: str,
    stamp: CompletionStamp,
    *,
    buffer_limit: int,
) -> AsyncGenerator[bytes, None]:
    """Re-frame a ``streamGenerateContent`` body as chat completion SSE frames.

    Every complete upstream element becomes one ``data:`` frame as soon as it
    is decoded. A failure mid-stream is reported as a single error frame.
    The ``[DONE]`` frame is always the last frame written.
    """

    decoder = GeminiStreamDecoder(buffer_limit=buffer_limit)

    try:
        async for chunk in chunks:
            for unit in decoder.feed(chunk):
                yield _sse_data(_chunk_payload(transcode_delta(unit), model, stamp))

        for unit in decoder.close():
            yield _sse_data(_chunk_payload(transcode_delta(unit), model, stamp))

    except Exception as exc:
        mapped = map_gateway_error(exc)
        logger.error("Aborting chat completion stream %s: %s", stamp.id, exc)
        yield _sse_data({"error": mapped.to_error()})

    yield DONE_FRAME


def _chunk_payload(
    event: DeltaEvent,
    model: str,
    stamp: CompletionStamp,
) -> dict[str, Any]:
    return {
        "id": stamp.id,
        "object": "chat.completion.chunk",
        "created": stamp.created,
        "model": model,
        "choices": [
            {
                "index": 0,
                "delta": {"content": event.text},
                "finish_reason": event.finish_reason.value if event.finish_reason else None,
            }
        ],
    }


def _extract_turns(messages: list[ChatCompletionMessage]) -> list[ConversationTurn]:
    if not messages:
        raise MalformedRequest(
            "messages must contain at least one item.",
            code="empty_messages",
            param="messages",
        )

    return [
        ConversationTurn(role=message.role, content=_extract_text_content(message, idx))
        for idx, message in enumerate(messages)
    ]


def _extract_text_content(message: ChatCompletionMessage, message_index: int) -> str:
    content = message.content

    if content is None:
        return ""

    if isinstance(content, str):
        return content

    parts: list[str] = []
    for part in content:
        if part.get("type") == "text":
            if not isinstance(part.get("text"), str):
                raise MalformedRequest(
                    f"Text part in messages[{message_index}] must carry a string 'text'.",
                    code="invalid_content",
                    param=f"messages[{message_index}].content",
                )
            parts.append(part["text"])
            continue

        raise MalformedRequest(
            f"Unsupported content part type '{part.get('type')}' in messages[{message_index}]. "
            "Only text content is supported.",
            code="unsupported_content",
            param=f"messages[{message_index}].content",
        )

    return "".join(parts)


def _collect_warnings(request: ChatCompletionRequest) -> list[str]:
    warnings: list[str] = []

    if request.tools is not None or request.tool_choice is not None:
        warnings.append("Received tools/tool_choice, but tool calling is not forwarded.")

    ignored_fields: list[str] = []
    for field_name in (
        "top_p",
        "frequency_penalty",
        "presence_penalty",
        "n",
        "stop",
        "seed",
        "user",
        "response_format",
        "stream_options",
    ):
        value = getattr(request, field_name)
        if value is not None:
            ignored_fields.append(field_name)

    if request.model_extra:
        ignored_fields.extend(sorted(request.model_extra.keys()))

    if ignored_fields:
        warnings.append(
            "Ignored unsupported request fields: "
            + ", ".join(_dedupe_preserve_order(ignored_fields))
        )

    return warnings


def _first_candidate(body: dict[str, Any]) -> dict[str, Any] | None:
    candidates = body.get("candidates")
    if not isinstance(candidates, list) or not candidates:
        return None

    candidate = candidates[0]
    return candidate if isinstance(candidate, dict) else None


def _candidate_parts(candidate: dict[str, Any] | None) -> list[dict[str, Any]]:
    if candidate is None:
        return []

    content = candidate.get("content")
    if not isinstance(content, dict):
        return []

    parts = content.get("parts")
    if not isinstance(parts, list):
        return []
    return [part for part in parts if isinstance(part, dict)]


def _part_texts(parts: list[dict[str, Any]]) -> list[str]:
    return [part["text"] for part in parts if isinstance(part.get("text"), str)]


def _empty_generation_reason(
    body: dict[str, Any],
    candidate: dict[str, Any] | None,
) -> str | None:
    if candidate is not None and candidate.get("finishReason"):
        return candidate["finishReason"]

    feedback = body.get("promptFeedback")
    if isinstance(feedback, dict) and feedback.get("blockReason"):
        return feedback["blockReason"]

    return None


def _usage_payload(usage: Any) -> dict[str, int]:
    if not isinstance(usage, dict):
        usage = {}

    return {
        "prompt_tokens": usage.get("promptTokenCount") or 0,
        "completion_tokens": usage.get("candidatesTokenCount") or 0,
        "total_tokens": usage.get("totalTokenCount") or 0,
    }


def _sse_data(payload: dict[str, Any]) -> bytes:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n".encode("utf-8")


def _dedupe_preserve_order(items: list[str]) -> list[str]:
    seen: set[str] = set()
    deduped: list[str] = []

    for item in items:
        if item in seen:
            continue
        seen.add(item)
        deduped.append(item)

    return deduped
