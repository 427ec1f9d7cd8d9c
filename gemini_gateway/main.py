from __future__ import annotations

from fastapi import FastAPI

from gemini_gateway.dependencies import register_exception_handlers
from gemini_gateway.internal import admin
from gemini_gateway.logging_config import setup_logging
from gemini_gateway.routers import chat


def create_app() -> FastAPI:
    setup_logging()

    app = FastAPI(
        title="gemini-openai-gateway",
        version="0.1.0",
        docs_url="/docs",
        redoc_url=None,
    )

    register_exception_handlers(app)

    app.include_router(chat.router)
    app.include_router(admin.router)

    return app


app = create_app()
