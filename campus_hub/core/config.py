from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Literal

AppEnv = Literal["dev", "test", "prod"]
LogLevel = Literal["debug", "info", "warning", "error"]

_DEFAULT_API_URL = "http://localhost:5000/api"


def _getenv(name: str, default: str) -> str:
    # Centralize env access so it's easy to extend later (type casting, required vars)
    return os.environ.get(name, default).strip()


@dataclass(frozen=True)
class Settings:
    app_env: AppEnv
    log_level: LogLevel
    log_json: bool
    api_base_url: str
    api_timeout_seconds: float
    redis_url: str | None
    status_refresh_seconds: int

    @property
    def is_prod(self) -> bool:
        return self.app_env == "prod"

    @property
    def json_logs(self) -> bool:
        # Production log shipping expects JSON lines
        return self.log_json or self.is_prod


def load_settings() -> Settings:
    app_env_raw = _getenv("APP_ENV", "dev").lower()
    log_level_raw = _getenv("LOG_LEVEL", "info").lower()
    log_json_raw = _getenv("LOG_JSON", "false").lower()
    timeout_raw = _getenv("API_TIMEOUT_SECONDS", "10")
    refresh_raw = _getenv("STATUS_REFRESH_SECONDS", "60")

    if app_env_raw not in ("dev", "test", "prod"):
        raise ValueError(f"APP_ENV must be dev|test|prod (got {app_env_raw!r})")

    if log_level_raw not in ("debug", "info", "warning", "error"):
        raise ValueError(
            f"LOG_LEVEL must be debug|info|warning|error (got {log_level_raw!r})"
        )

    try:
        api_timeout = float(timeout_raw)
    except ValueError:
        raise ValueError(
            f"API_TIMEOUT_SECONDS must be a number (got {timeout_raw!r})"
        ) from None

    try:
        status_refresh = int(refresh_raw)
    except ValueError:
        raise ValueError(
            f"STATUS_REFRESH_SECONDS must be an integer (got {refresh_raw!r})"
        ) from None

    if status_refresh <= 0:
        raise ValueError(
            f"STATUS_REFRESH_SECONDS must be positive (got {status_refresh})"
        )

    # Trailing slash would double up when paths are appended
    api_base_url = _getenv("CAMPUS_API_URL", _DEFAULT_API_URL).rstrip("/")
    redis_url = _getenv("REDIS_URL", "") or None

    return Settings(  # type: ignore[arg-type]
        app_env=app_env_raw,
        log_level=log_level_raw,
        log_json=log_json_raw in ("1", "true", "yes"),
        api_base_url=api_base_url or _DEFAULT_API_URL,
        api_timeout_seconds=api_timeout,
        redis_url=redis_url,
        status_refresh_seconds=status_refresh,
    )


# Optional: module-level singleton so imports are cheap
SETTINGS = load_settings()
