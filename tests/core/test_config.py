from __future__ import annotations

import pytest

from bankfeed.core.config import (
    DEFAULT_API_BASE_URL,
    DEFAULT_DB_URL,
    ConfigError,
    load_bank_config_from_env,
    load_sync_config_from_env,
)


def test_bank_config_requires_access_token() -> None:
    with pytest.raises(ConfigError, match="BANKFEED_ACCESS_TOKEN"):
        load_bank_config_from_env()


def test_bank_config_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    # input
    monkeypatch.setenv("BANKFEED_ACCESS_TOKEN", "  token-1 ")

    # act
    config = load_bank_config_from_env()

    # assert
    assert config.access_token == "token-1"
    assert config.base_url == DEFAULT_API_BASE_URL
    assert config.client_id == ""
    assert config.timeout == 30.0


def test_bank_config_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    # input
    monkeypatch.setenv("BANKFEED_ACCESS_TOKEN", "token-1")
    monkeypatch.setenv("BANKFEED_API_BASE_URL", "http://localhost:8080/")
    monkeypatch.setenv("BANKFEED_CLIENT_ID", "web-app")
    monkeypatch.setenv("BANKFEED_HTTP_TIMEOUT", "2.5")

    # act
    config = load_bank_config_from_env()

    # assert
    assert config.base_url == "http://localhost:8080"
    assert config.client_id == "web-app"
    assert config.timeout == 2.5


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("BANKFEED_API_BASE_URL", "ftp://bank.example"),
        ("BANKFEED_HTTP_TIMEOUT", "soon"),
        ("BANKFEED_HTTP_TIMEOUT", "0"),
    ],
)
def test_bank_config_rejects_invalid_values(
    monkeypatch: pytest.MonkeyPatch, name: str, value: str
) -> None:
    monkeypatch.setenv("BANKFEED_ACCESS_TOKEN", "token-1")
    monkeypatch.setenv(name, value)

    with pytest.raises(ConfigError, match=name):
        load_bank_config_from_env()


def test_sync_config_defaults() -> None:
    # act
    config = load_sync_config_from_env()

    # assert
    assert config.db_url == DEFAULT_DB_URL
    assert config.page_size == 1000
    assert config.enrich_concurrency == 5
    assert config.log_level == "INFO"


def test_sync_config_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    # input
    monkeypatch.setenv("BANKFEED_DB_URL", "sqlite:///tmp/feed.db")
    monkeypatch.setenv("BANKFEED_PAGE_SIZE", "250")
    monkeypatch.setenv("BANKFEED_ENRICH_CONCURRENCY", "2")
    monkeypatch.setenv("BANKFEED_LOG_LEVEL", "debug")

    # act
    config = load_sync_config_from_env()

    # assert
    assert config.db_url == "sqlite:///tmp/feed.db"
    assert config.page_size == 250
    assert config.enrich_concurrency == 2
    assert config.log_level == "DEBUG"


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("BANKFEED_PAGE_SIZE", "-1"),
        ("BANKFEED_PAGE_SIZE", "many"),
        ("BANKFEED_ENRICH_CONCURRENCY", "0"),
        ("BANKFEED_LOG_LEVEL", "LOUD"),
    ],
)
def test_sync_config_rejects_invalid_values(
    monkeypatch: pytest.MonkeyPatch, name: str, value: str
) -> None:
    monkeypatch.setenv(name, value)

    with pytest.raises(ConfigError, match=name):
        load_sync_config_from_env()
