"""Shared test fixtures for the pitch tracker."""

from collections.abc import AsyncIterator, Callable
from typing import Any

import pytest
import pytest_asyncio

from tracker.config import (
    AppSettings,
    BackfillSettings,
    DatabaseSettings,
    EnrichmentSettings,
)
from tracker.data.database import RecordDatabase
from tracker.data.store import RecordStore
from tracker.notifications import NotificationBus


@pytest.fixture
def mock_settings() -> AppSettings:
    """AppSettings with an in-memory database and near-zero delays."""
    return AppSettings(
        log_level="DEBUG",
        database=DatabaseSettings(path=":memory:"),
        backfill=BackfillSettings(page_size=2, inter_page_delay=0.0, initial_delay=0.0),
        enrichment=EnrichmentSettings(max_workers=2, retry_timeout=1.0),
    )


@pytest_asyncio.fixture
async def database() -> AsyncIterator[RecordDatabase]:
    """Connected in-memory record database."""
    async with RecordDatabase(":memory:") as db:
        yield db


@pytest.fixture
def store(database: RecordDatabase) -> RecordStore:
    return RecordStore(database)


@pytest.fixture
def bus() -> NotificationBus:
    return NotificationBus()


@pytest.fixture
def make_attrs() -> Callable[..., dict[str, Any]]:
    """Factory for raw record attributes as a source would return them."""

    def _make(
        natural_key: str,
        created_at: int = 1_700_000_000,
        subject: str = "alice",
        title: str | None = None,
        **extra: Any,
    ) -> dict[str, Any]:
        return {
            "natural_key": natural_key,
            "subject": subject,
            "created_at": created_at,
            "title": title or f"Post {natural_key}",
            "body": extra.pop("body", "Buying more $AAPL"),
            "community": extra.pop("community", "stocks"),
            "permalink": f"/r/stocks/comments/{natural_key}/",
            **extra,
        }

    return _make
