"""Entry point: ``python -m conduit_api``."""

from __future__ import annotations

import uvicorn

from conduit_pipeline import setup_logging

from .config import Settings


def main() -> None:
    settings = Settings()  # type: ignore[call-arg]
    setup_logging(json=settings.log_json, level=settings.log_level, service="conduit-api")

    uvicorn.run(
        "conduit_api.app:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        log_config=None,
    )


if __name__ == "__main__":
    main()
