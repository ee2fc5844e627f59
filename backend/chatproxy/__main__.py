"""Run the proxy with uvicorn: ``python -m chatproxy``."""

import uvicorn

from chatproxy.config import settings


def main() -> None:
    uvicorn.run(
        "chatproxy.main:app",
        host=settings.server.host,
        port=settings.server.port,
        log_config=None,
    )


if __name__ == "__main__":
    main()
