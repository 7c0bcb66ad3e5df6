from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


def _parse_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc
    if value <= 0:
        raise ValueError(f"{name} must be greater than zero")
    return value


def _parse_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc


@dataclass(frozen=True)
class Settings:
    db_path: str = "data/dispatch.db"
    db_busy_timeout_seconds: float = 10.0
    log_level: str = "INFO"
    event_backend: str = "none"
    event_webhook_url: str | None = None
    event_timeout_seconds: float = 2.0
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    @classmethod
    def from_env(cls) -> "Settings":
        event_backend = os.getenv("EVENT_BACKEND", "none").strip().lower()
        if event_backend not in {"none", "webhook"}:
            raise ValueError("EVENT_BACKEND must be one of: none, webhook")

        webhook_url = os.getenv("EVENT_WEBHOOK_URL")
        if event_backend == "webhook" and (not webhook_url or not webhook_url.strip()):
            raise ValueError("EVENT_WEBHOOK_URL is required when EVENT_BACKEND=webhook")

        db_path = os.getenv("DISPATCH_DB_PATH", "data/dispatch.db").strip()
        if not db_path:
            raise ValueError("DISPATCH_DB_PATH must not be empty")

        api_port = _parse_int("API_PORT", 8000)
        if not 0 < api_port < 65536:
            raise ValueError("API_PORT must be between 1 and 65535")

        return cls(
            db_path=db_path,
            db_busy_timeout_seconds=_parse_float("DB_BUSY_TIMEOUT_SECONDS", 10.0),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            event_backend=event_backend,
            event_webhook_url=webhook_url.strip() if webhook_url else None,
            event_timeout_seconds=_parse_float("EVENT_TIMEOUT_SECONDS", 2.0),
            api_host=os.getenv("API_HOST", "0.0.0.0"),
            api_port=api_port,
        )


def load_dotenv(path: str | Path = ".env") -> None:
    env_path = Path(path)
    if not env_path.exists():
        return
    for line in env_path.read_text(encoding="utf-8").splitlines():
        entry = line.strip()
        if not entry or entry.startswith("#") or "=" not in entry:
            continue
        key, value = entry.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        os.environ.setdefault(key, value)
