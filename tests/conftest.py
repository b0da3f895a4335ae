"""Shared test fixtures."""

from __future__ import annotations

import os

import pytest


@pytest.fixture(autouse=True)
def _clear_bankfeed_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove BANKFEED_* variables before each test.

    The CLI loads a local .env at import time, which would otherwise leak real
    credentials and database paths into tests.
    """
    for name in list(os.environ):
        if name.startswith("BANKFEED_"):
            monkeypatch.delenv(name, raising=False)
