"""Pytest configuration and fixtures for bill tracker tests."""

from unittest.mock import AsyncMock

import pytest

from billtracker.config import Settings


class FakeClock:
    """Controllable time source in seconds."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def use_test_environment(monkeypatch):
    """Ensure all tests use test environment variables."""
    monkeypatch.setenv("ANTHROPIC_API_KEY", "test-api-key")
    monkeypatch.setenv("NEWS_API_KEY", "test-news-key")


@pytest.fixture
def clock():
    """Simulated wall clock."""
    return FakeClock()


@pytest.fixture
def instant_sleep():
    """Sleep replacement that records delays without waiting."""
    return AsyncMock(return_value=None)


@pytest.fixture
def app_settings():
    """Settings isolated from any local .env file."""
    return Settings(
        _env_file=None,
        anthropic_api_key="test-api-key",
        news_api_key="test-news-key",
        news_api_url="https://news.test/v2/everything",
    )


@pytest.fixture
def sample_bill():
    """Bill fields used by the news and summary services."""
    return {
        "billNumber": "HB 12",
        "shortTitle": "Relating to public school broadband access funding",
        "topics": ["Education", "Technology", "Budget"],
        "billText": (
            "This Act establishes a grant program for public school broadband access. "
            "The agency shall award grants to districts with limited connectivity. "
            "A district may not receive more than one grant in a biennium. "
            "Short."
        ),
    }
