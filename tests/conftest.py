"""Pytest configuration and fixtures shared across all test modules.

Environment defaults are set before anything imports the settings module,
so tests never depend on a local .env file or a running Redis.
"""

import os

# Set this before any imports that might load settings
os.environ["APP_ENV"] = "testing"

os.environ.setdefault("APP_RATE_LIMIT_ENABLED", "true")
os.environ.setdefault("APP_RATE_LIMIT_BACKEND", "memory")
os.environ.setdefault("APP_RATE_LIMIT_ALGORITHM", "sliding")
os.environ.setdefault("APP_RATE_LIMIT_REQUESTS", "1000")
os.environ.setdefault("APP_RATE_LIMIT_WINDOW_SECONDS", "60")
os.environ.setdefault("LOG_FORMAT", "json")

import pytest  # noqa: E402

from app.core import rate_limit  # noqa: E402
from app.core.config import settings  # noqa: E402


@pytest.fixture(autouse=True)
def reset_rate_limiter(monkeypatch: pytest.MonkeyPatch):
    """Give every test a fresh process-wide limiter."""
    monkeypatch.setattr(rate_limit, "_limiter", None)
    monkeypatch.setattr(rate_limit, "_limiter_config", None)
    yield


@pytest.fixture
def rate_limit_settings(monkeypatch: pytest.MonkeyPatch):
    """Override rate limit settings for a single test.

    Usage:
        rate_limit_settings(rate_limit_requests=2)
    """

    def _apply(**overrides) -> None:
        for name, value in overrides.items():
            monkeypatch.setattr(settings.app, name, value)

    return _apply
