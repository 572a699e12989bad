"""Shared fixtures for apiguard tests."""

import pytest

from apiguard.app.core.clock import ManualClock
from apiguard.app.middleware.auth import get_admin_token

# Divisible by every window the default policies use up to one hour
START = 3_600_000.0

ADMIN_TOKEN = "test-admin-token"


def _clear_cached_admin_token() -> None:
    if hasattr(get_admin_token, "_cached_token"):
        delattr(get_admin_token, "_cached_token")


@pytest.fixture
def clock() -> ManualClock:
    """Manual clock aligned to a window boundary."""
    return ManualClock(START)


@pytest.fixture
def admin_token(monkeypatch) -> str:
    """Set ADMIN_TOKEN and drop any token cached by a previous test."""
    monkeypatch.setenv("ADMIN_TOKEN", ADMIN_TOKEN)
    _clear_cached_admin_token()
    yield ADMIN_TOKEN
    _clear_cached_admin_token()
