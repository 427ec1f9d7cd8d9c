from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.background import BackgroundTask

from gemini_gateway.config import Settings, get_settings
from gemini_gateway.core.types import CompletionStamper
from gemini_gateway.core.upstream import GeminiUpstream
from gemini_gateway.dependencies import get_stamper, get_upstream, require_api_key
from gemini_gateway.openai.adapter import (
    create_chat_completion,
    create_chat_completion_stream,
    warning_headers,
)
from gemini_gateway.openai.schemas import ChatCompletionRequest

router = APIRouter(prefix="/v1", tags=["openai"])


@router.post("/chat/completions")
async def chat_completions(
    payload: ChatCompletionRequest,
    api_key: str = Depends(require_api_key),
    upstream: GeminiUpstream = Depends(get_upstream),
    stamper: CompletionStamper = Depends(get_stamper),
    settings: Settings = Depends(get_settings),
):
    if payload.stream:
        iterator, warnings = await create_chat_completion_stream(
            payload,
            upstream=upstream,
            api_key=api_key,
            stamper=stamper,
            settings=settings,
        )
        headers = warning_headers(warnings)
        headers["Cache-Control"] = "no-cache"

        return StreamingResponse(
            iterator,
            media_type="text/event-stream",
            headers=headers,
            background=BackgroundTask(iterator.aclose),
        )

    response_payload, warnings = await create_chat_completion(
        payload,
        upstream=upstream,
        api_key=api_key,
        stamper=stamper,
        settings=settings,
    )
    return JSONResponse(content=response_payload, headers=warning_headers(warnings))
