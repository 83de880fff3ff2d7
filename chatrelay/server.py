from __future__ import annotations

import uvicorn

from chatrelay.config import get_settings


def main() -> None:
    settings = get_settings()
    uvicorn.run(
        "chatrelay.app:app",
        host=settings.host,
        port=settings.port,
        log_config=None,
        proxy_headers=True,
    )


if __name__ == "__main__":
    main()
