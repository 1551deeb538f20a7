"""Run the API with uvicorn: ``python -m app``."""

import uvicorn

from app.core.config import settings


def main() -> None:
    uvicorn.run(
        "app.main:app",
        host=settings.app.host,
        port=settings.app.port,
    )


if __name__ == "__main__":
    main()
