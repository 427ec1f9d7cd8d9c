from __future__ import annotations

from typing import Any

from .types import FinishReason, GenerationParameters, UpstreamFinishReason

FINISH_REASON_MAP: dict[UpstreamFinishReason, FinishReason] = {
    UpstreamFinishReason.STOP: FinishReason.STOP,
    UpstreamFinishReason.MAX_TOKENS: FinishReason.LENGTH,
    UpstreamFinishReason.SAFETY: FinishReason.CONTENT_FILTER,
    UpstreamFinishReason.RECITATION: FinishReason.STOP,
    UpstreamFinishReason.OTHER: FinishReason.STOP,
}

# OpenAI request field -> generationConfig field
PARAMETER_MAP: dict[str, str] = {
    "temperature": "temperature",
    "max_tokens": "maxOutputTokens",
}


def map_finish_reason(upstream_reason: str | None) -> FinishReason | None:
    """Translate a Gemini finish reason; unknown values collapse to ``stop``."""

    if upstream_reason is None:
        return None

    try:
        reason = UpstreamFinishReason(upstream_reason)
    except ValueError:
        reason = UpstreamFinishReason.OTHER

    return FINISH_REASON_MAP[reason]


def build_generation_parameters(
    temperature: float | None,
    max_tokens: int | None,
    default_temperature: float,
) -> GenerationParameters:
    return GenerationParameters(
        temperature=default_temperature if temperature is None else temperature,
        max_output_tokens=max_tokens,
    )


def generation_config(params: GenerationParameters) -> dict[str, Any]:
    values = {
        "temperature": params.temperature,
        "max_tokens": params.max_output_tokens,
    }
    return {PARAMETER_MAP[name]: value for name, value in values.items()}
