"""Serve the API with uvicorn: `python -m schoollib` or `schoollib-api`."""

import uvicorn

from .config import settings


def main():
    uvicorn.run(
        "schoollib.main:app",
        host=settings.HOST,
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    main()
