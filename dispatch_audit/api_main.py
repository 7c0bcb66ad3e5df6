from __future__ import annotations

import uvicorn
from fastapi import FastAPI

from dispatch_audit.api import create_app
from dispatch_audit.config import Settings, load_dotenv
from dispatch_audit.events import publisher_from_settings
from dispatch_audit.logger import configure_logging
from dispatch_audit.store import ScanStore


def build_app() -> FastAPI:
    load_dotenv()
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    store = ScanStore(settings.db_path, timeout_seconds=settings.db_busy_timeout_seconds)
    return create_app(store, publisher=publisher_from_settings(settings))


def main() -> None:
    load_dotenv()
    settings = Settings.from_env()
    uvicorn.run(
        "dispatch_audit.api_main:build_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        reload=False,
    )


if __name__ == "__main__":
    main()
