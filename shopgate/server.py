from __future__ import annotations

import uvicorn

from shopgate.config import get_settings


def main() -> None:
    settings = get_settings()
    uvicorn.run(
        "shopgate.app:app",
        host=settings.host,
        port=settings.port,
        reload=False,
        proxy_headers=True,
    )


if __name__ == "__main__":
    main()
