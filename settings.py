from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Dict, List, Optional

from dotenv import load_dotenv

try:
    import config  # type: ignore
except ImportError:  # pragma: no cover - optional configuration module
    config = None  # type: ignore


REQUIRED_SETTINGS = (
    "GOOGLE_CLIENT_ID",
    "GOOGLE_CLIENT_SECRET",
    "GOOGLE_REDIRECT_URI",
    "COOKIE_KEY",
    "MONGO_URI",
    "PORT",
)

DEFAULT_FRONTEND_URL = "http://localhost:3000"
DEFAULT_DB_NAME = "mailbox_cleaner"
DEFAULT_SESSION_COOKIE = "email-cleaner-session"
DEFAULT_SESSION_MAX_AGE_DAYS = 30


class ConfigurationError(RuntimeError):
    """Raised when required settings are missing or malformed."""


def _config_value(attr: str, env_name: str, default=None):
    if config and hasattr(config, attr):
        value = getattr(config, attr)
        if value not in (None, "", []):
            return value
    env_value = os.getenv(env_name)
    if env_value not in (None, ""):
        return env_value
    return default


def _true(value: Optional[str]) -> bool:
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    google_client_id: str
    google_client_secret: str
    google_redirect_uri: str
    cookie_key: str
    mongo_uri: str
    port: int
    mongo_db_name: str = DEFAULT_DB_NAME
    frontend_url: str = DEFAULT_FRONTEND_URL
    dashboard_url: str = f"{DEFAULT_FRONTEND_URL}/dashboard"
    session_cookie_name: str = DEFAULT_SESSION_COOKIE
    session_max_age_days: int = DEFAULT_SESSION_MAX_AGE_DAYS
    host: str = "localhost"
    reload: bool = False

    @property
    def session_max_age_seconds(self) -> int:
        return self.session_max_age_days * 24 * 60 * 60


def _parse_port(raw: str) -> int:
    try:
        port = int(str(raw).strip())
    except ValueError as exc:
        raise ConfigurationError(f"PORT must be an integer, got {raw!r}.") from exc
    if not 0 < port < 65536:
        raise ConfigurationError(f"PORT must be between 1 and 65535, got {port}.")
    return port


def load_settings(*, dotenv: bool = True) -> Settings:
    """
    Read service configuration from the optional ``config`` module and the environment.

    Raises ConfigurationError naming every missing required setting so the
    process can refuse to start with a single, complete message.
    """
    if dotenv:
        load_dotenv()

    values: Dict[str, Optional[str]] = {name: _config_value(name, name) for name in REQUIRED_SETTINGS}
    missing: List[str] = [name for name, value in values.items() if value in (None, "")]
    if missing:
        raise ConfigurationError("Missing required configuration: " + ", ".join(missing))

    frontend_url = str(_config_value("FRONTEND_URL", "FRONTEND_URL", DEFAULT_FRONTEND_URL)).rstrip("/")
    dashboard_url = str(_config_value("DASHBOARD_URL", "DASHBOARD_URL", f"{frontend_url}/dashboard"))
    max_age_raw = _config_value("SESSION_MAX_AGE_DAYS", "SESSION_MAX_AGE_DAYS", DEFAULT_SESSION_MAX_AGE_DAYS)
    try:
        max_age_days = int(max_age_raw)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"SESSION_MAX_AGE_DAYS must be an integer, got {max_age_raw!r}.") from exc

    return Settings(
        google_client_id=str(values["GOOGLE_CLIENT_ID"]),
        google_client_secret=str(values["GOOGLE_CLIENT_SECRET"]),
        google_redirect_uri=str(values["GOOGLE_REDIRECT_URI"]),
        cookie_key=str(values["COOKIE_KEY"]),
        mongo_uri=str(values["MONGO_URI"]),
        port=_parse_port(str(values["PORT"])),
        mongo_db_name=str(_config_value("MONGO_DB_NAME", "MONGO_DB_NAME", DEFAULT_DB_NAME)),
        frontend_url=frontend_url,
        dashboard_url=dashboard_url,
        session_cookie_name=str(_config_value("SESSION_COOKIE_NAME", "SESSION_COOKIE_NAME", DEFAULT_SESSION_COOKIE)),
        session_max_age_days=max_age_days,
        host=str(_config_value("HOST", "HOST", "localhost")),
        reload=_true(_config_value("MAILBOX_CLEANER_DEV_RELOAD", "MAILBOX_CLEANER_DEV_RELOAD", "0")),
    )
