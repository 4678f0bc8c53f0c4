"""Abstract interfaces for the external services the tracker depends on.

Pipeline code depends only on these interfaces, keeping HTTP and
provider-specific details in the concrete clients. Every concrete client
acquires a token from its service's RateLimiter before each request.

Failures are raised as UpstreamError; pagination and retries are the
caller's business.
"""

from abc import ABC, abstractmethod
from datetime import date
from typing import Any

from tracker.models import Classification, Page, PricePoint


class RecordSource(ABC):
    """Retrieves records for a subject (the Fetcher)."""

    @abstractmethod
    async def list_records(
        self,
        subject: str,
        cursor: str | None = None,
        limit: int = 25,
    ) -> Page:
        """Fetch one page of a subject's records, newest first.

        Returns raw record attribute dicts ready for RecordStore.upsert and
        the opaque cursor of the next (older) page, or None at the end.
        """
        ...

    @abstractmethod
    async def get_record(self, natural_key: str) -> dict[str, Any]:
        """Fetch a single record's attributes by natural key."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release HTTP resources."""
        ...


class Classifier(ABC):
    """Extracts identifiers and pitch direction from text (the EnrichmentClient)."""

    @abstractmethod
    async def classify(self, text: str) -> Classification:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...


class PriceSource(ABC):
    """Daily closing prices for an identifier (the PriceClient)."""

    @abstractmethod
    async def price_on_or_before(self, identifier: str, on: date) -> PricePoint:
        """Close on the given date, or the last trading day before it."""
        ...

    @abstractmethod
    async def price_after(self, identifier: str, start: date, months: int) -> PricePoint:
        """Close nearest to `months` months after start."""
        ...

    @abstractmethod
    async def most_recent_price(self, identifier: str) -> PricePoint:
        """Latest available close."""
        ...

    @abstractmethod
    async def close(self) -> None:
        ...
