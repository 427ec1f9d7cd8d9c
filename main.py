import uvicorn

from gemini_gateway.config import get_settings


def main():
    settings = get_settings()
    uvicorn.run(
        "gemini_gateway.main:app",
        host=settings.HOST,
        port=settings.PORT,
        log_config=None,
    )


if __name__ == "__main__":
    main()
