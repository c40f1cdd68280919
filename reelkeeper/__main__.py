"""Module executed when running ``python -m reelkeeper``."""

from __future__ import annotations

import uvicorn

from app.config import settings


def main() -> None:
    """Serve the watchlist API with the configured host, port and reload mode."""

    uvicorn.run(
        "app.main:app",
        host=settings.server_host,
        port=settings.server_port,
        reload=settings.environment == "development",
        log_level="info",
    )


if __name__ == "__main__":  # pragma: no cover - runtime entrypoint
    main()
