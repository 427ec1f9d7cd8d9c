from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Sequence

import httpx

from .errors import UpstreamError
from .mapping import generation_config
from .types import GenerationParameters, NormalizedTurn

logger = logging.getLogger(__name__)

GENERATE_METHOD = "generateContent"
STREAM_GENERATE_METHOD = "streamGenerateContent"


def build_request_body(
    turns: Sequence[NormalizedTurn],
    params: GenerationParameters,
) -> dict[str, Any]:
    return {
        "contents": [turn.to_content() for turn in turns],
        "generationConfig": generation_config(params),
    }


class UpstreamStream:
    """A live ``streamGenerateContent`` body; owns its HTTP client."""

    def __init__(self, client: httpx.AsyncClient, response: httpx.Response) -> None:
        self._client = client
        self._response = response
        self._closed = False

    async def __aiter__(self) -> AsyncIterator[bytes]:
        try:
            async for chunk in self._response.aiter_bytes():
                yield chunk
        except httpx.TimeoutException as exc:
            raise UpstreamError(
                504, f"Gemini API stream timed out: {exc}", code="upstream_unreachable"
            ) from exc
        except httpx.RequestError as exc:
            raise UpstreamError(
                502, f"Gemini API stream interrupted: {exc}", code="upstream_unreachable"
            ) from exc

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._response.aclose()
        finally:
            await self._client.aclose()


class GeminiUpstream:
    """Sends translated requests to the Gemini ``generateContent`` API.

    No schema translation happens here: the body is built from already
    normalized turns, the endpoint is picked from the ``stream`` flag and the
    answer is handed back untouched. Non-2xx answers raise
    :class:`UpstreamError` carrying the upstream status and body.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 300.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    def build_url(self, model: str, stream: bool) -> str:
        method = STREAM_GENERATE_METHOD if stream else GENERATE_METHOD
        return f"{self.base_url}/v1beta/models/{model}:{method}"

    async def generate(
        self,
        model: str,
        api_key: str,
        turns: Sequence[NormalizedTurn],
        params: GenerationParameters,
    ) -> dict[str, Any]:
        async with self._client() as client:
            response = await self._send(client, model, api_key, turns, params, stream=False)
            if response.is_error:
                raise _upstream_error(response.status_code, response.text)

            try:
                body = response.json()
            except ValueError as exc:
                raise UpstreamError(
                    502, "Gemini API returned a non-JSON response.", detail=response.text
                ) from exc

        if not isinstance(body, dict):
            raise UpstreamError(502, "Gemini API returned an unexpected response.", detail=body)
        return body

    async def open_stream(
        self,
        model: str,
        api_key: str,
        turns: Sequence[NormalizedTurn],
        params: GenerationParameters,
    ) -> UpstreamStream:
        client = self._client()
        try:
            response = await self._send(client, model, api_key, turns, params, stream=True)
            if response.is_error:
                error_body = await response.aread()
                await response.aclose()
                raise _upstream_error(
                    response.status_code, error_body.decode("utf-8", errors="replace")
                )
        except BaseException:
            await client.aclose()
            raise

        return UpstreamStream(client, response)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport)

    async def _send(
        self,
        client: httpx.AsyncClient,
        model: str,
        api_key: str,
        turns: Sequence[NormalizedTurn],
        params: GenerationParameters,
        *,
        stream: bool,
    ) -> httpx.Response:
        url = self.build_url(model, stream)
        body = build_request_body(turns, params)
        logger.debug(
            "Gemini request: url=%s turns=%d stream=%s generationConfig=%s",
            url,
            len(turns),
            stream,
            body["generationConfig"],
        )

        request = client.build_request("POST", url, params={"key": api_key}, json=body)
        try:
            return await client.send(request, stream=stream)
        except httpx.TimeoutException as exc:
            raise UpstreamError(
                504, f"Gemini API request timed out: {exc}", code="upstream_unreachable"
            ) from exc
        except httpx.RequestError as exc:
            raise UpstreamError(
                502, f"Gemini API request failed: {exc}", code="upstream_unreachable"
            ) from exc


def _upstream_error(status_code: int, text: str) -> UpstreamError:
    detail: Any = text
    message = text
    try:
        detail = json.loads(text)
    except ValueError:
        pass
    else:
        if isinstance(detail, list) and detail:
            detail = detail[0]
        if isinstance(detail, dict) and isinstance(detail.get("error"), dict):
            message = detail["error"].get("message") or text

    logger.warning("Gemini API returned %s: %s", status_code, text)
    return UpstreamError(status_code, f"Gemini API error: {message}", detail=detail)
