from __future__ import annotations

import os
from dataclasses import dataclass

TRUTHY = {"1", "true", "yes", "y", "on"}


def _env_str(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip()


def _env_int(name: str, default: int, *, low: int, high: int) -> int:
    try:
        value = int(_env_str(name) or default)
    except ValueError:
        value = default
    return max(low, min(high, value))


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in TRUTHY


@dataclass(frozen=True)
class EmailRelaySettings:
    url: str
    secret: str
    timeout_seconds: int

    @property
    def enabled(self) -> bool:
        return bool(self.url)


@dataclass(frozen=True)
class Settings:
    app_env: str
    log_level: str
    persistence_enabled: bool
    database_url: str
    auth_enabled: bool
    jwt_secret: str
    jwt_algorithm: str
    email_relay: EmailRelaySettings
    default_reminder_delay_hours: int


def load_settings() -> Settings:
    """Read configuration from the environment. Called once per app instance."""
    database_url = _env_str("DATABASE_URL")
    if not database_url:
        db_path = _env_str("PERSISTENCE_DB_PATH", "data/stageflow.sqlite3")
        database_url = f"sqlite:///{db_path.replace(chr(92), '/')}"
    return Settings(
        app_env=_env_str("APP_ENV", "development"),
        log_level=_env_str("LOG_LEVEL", "INFO").upper(),
        persistence_enabled=_env_bool("PERSISTENCE_ENABLED", True),
        database_url=database_url,
        auth_enabled=_env_bool("AUTH_ENABLED", False),
        jwt_secret=_env_str("JWT_SECRET", "dev-only-secret-change-in-prod"),
        jwt_algorithm=_env_str("JWT_ALGORITHM", "HS256"),
        email_relay=EmailRelaySettings(
            url=_env_str("EMAIL_RELAY_URL"),
            secret=_env_str("EMAIL_RELAY_SECRET"),
            timeout_seconds=_env_int("EMAIL_RELAY_TIMEOUT_SECONDS", 8, low=1, high=60),
        ),
        default_reminder_delay_hours=_env_int(
            "DEFAULT_REMINDER_DELAY_HOURS", 72, low=1, high=168
        ),
    )
