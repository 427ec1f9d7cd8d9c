from __future__ import annotations

import logging

from fastapi import Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from gemini_gateway.config import Settings, get_settings
from gemini_gateway.core.errors import AuthError, GatewayError
from gemini_gateway.core.types import CompletionStamper
from gemini_gateway.core.upstream import GeminiUpstream
from gemini_gateway.openai.errors import OpenAICompatError, map_gateway_error

logger = logging.getLogger(__name__)


def get_upstream(settings: Settings = Depends(get_settings)) -> GeminiUpstream:
    return GeminiUpstream(settings.GEMINI_BASE_URL, timeout=settings.HTTP_TIMEOUT)


def get_stamper() -> CompletionStamper:
    return CompletionStamper()


def require_api_key(authorization: str | None = Header(default=None)) -> str:
    if not authorization or not authorization.startswith("Bearer "):
        raise AuthError()

    api_key = authorization[len("Bearer ") :].strip()
    if not api_key:
        raise AuthError("Bearer token is empty.")
    return api_key


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(OpenAICompatError)
    async def handle_openai_error(
        _request: Request,
        exc: OpenAICompatError,
    ) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.to_error()},
        )

    @app.exception_handler(GatewayError)
    async def handle_gateway_error(
        _request: Request,
        exc: GatewayError,
    ) -> JSONResponse:
        compat_error = map_gateway_error(exc)
        return JSONResponse(
            status_code=compat_error.status_code,
            content={"error": compat_error.to_error()},
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(
        _request: Request,
        exc: RequestValidationError,
    ) -> JSONResponse:
        first_error = exc.errors()[0]["msg"] if exc.errors() else "Invalid request"

        compat_error = OpenAICompatError(
            status_code=400,
            message=first_error,
            error_type="invalid_request_error",
            code="invalid_request",
        )
        return JSONResponse(
            status_code=compat_error.status_code,
            content={"error": compat_error.to_error()},
        )

    @app.exception_handler(Exception)
    async def handle_unexpected_error(
        request: Request,
        exc: Exception,
    ) -> JSONResponse:
        logger.exception("Unhandled error while serving %s", request.url.path)
        compat_error = map_gateway_error(exc)
        return JSONResponse(
            status_code=compat_error.status_code,
            content={"error": compat_error.to_error()},
        )
