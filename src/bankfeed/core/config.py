from __future__ import annotations

from dataclasses import dataclass
import os

DEFAULT_API_BASE_URL = "https://ob.myameria.am"
DEFAULT_DB_URL = "sqlite:///bankfeed.db"
DEFAULT_PAGE_SIZE = 1000
DEFAULT_ENRICH_CONCURRENCY = 5
DEFAULT_HTTP_TIMEOUT = 30.0

LOG_LEVELS = {"TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"}


class ConfigError(ValueError):
    """Raised when configuration from the environment is missing or invalid."""


@dataclass(frozen=True, slots=True)
class BankConfig:
    """Connection settings for the bank API, passed explicitly to the client."""

    access_token: str
    base_url: str = DEFAULT_API_BASE_URL
    client_id: str = ""
    timeout: float = DEFAULT_HTTP_TIMEOUT


@dataclass(frozen=True, slots=True)
class SyncConfig:
    """Settings for the sync loop and the local store."""

    db_url: str = DEFAULT_DB_URL
    page_size: int = DEFAULT_PAGE_SIZE
    enrich_concurrency: int = DEFAULT_ENRICH_CONCURRENCY
    log_level: str = "INFO"


def _require_env(name: str) -> str:
    value = os.environ.get(name, "").strip()
    if not value:
        raise ConfigError(f"Missing required environment variable: {name}")
    return value


def _positive_int_env(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from e
    if value <= 0:
        raise ConfigError(f"{name} must be greater than zero, got {value}")
    return value


def _positive_float_env(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from e
    if value <= 0:
        raise ConfigError(f"{name} must be greater than zero, got {value}")
    return value


def load_bank_config_from_env() -> BankConfig:
    """Load bank API settings from env; the access token is required."""
    base_url = os.environ.get("BANKFEED_API_BASE_URL", DEFAULT_API_BASE_URL).strip()
    if not base_url.startswith(("http://", "https://")):
        raise ConfigError(
            f"BANKFEED_API_BASE_URL must be an http(s) URL, got {base_url!r}"
        )

    return BankConfig(
        access_token=_require_env("BANKFEED_ACCESS_TOKEN"),
        base_url=base_url.rstrip("/"),
        client_id=os.environ.get("BANKFEED_CLIENT_ID", "").strip(),
        timeout=_positive_float_env("BANKFEED_HTTP_TIMEOUT", DEFAULT_HTTP_TIMEOUT),
    )


def load_sync_config_from_env() -> SyncConfig:
    """Load store and sync-loop settings from env."""
    log_level = os.environ.get("BANKFEED_LOG_LEVEL", "INFO").strip().upper()
    if log_level not in LOG_LEVELS:
        raise ConfigError(
            "BANKFEED_LOG_LEVEL must be one of: " + ", ".join(sorted(LOG_LEVELS))
        )

    return SyncConfig(
        db_url=os.environ.get("BANKFEED_DB_URL", DEFAULT_DB_URL).strip()
        or DEFAULT_DB_URL,
        page_size=_positive_int_env("BANKFEED_PAGE_SIZE", DEFAULT_PAGE_SIZE),
        enrich_concurrency=_positive_int_env(
            "BANKFEED_ENRICH_CONCURRENCY", DEFAULT_ENRICH_CONCURRENCY
        ),
        log_level=log_level,
    )
