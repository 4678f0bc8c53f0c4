"""Shared data models for the pitch tracker.

Records and identifier stats are immutable values stored by key: updates
produce a new value via dataclasses.replace and the newest value per key wins.

All prices and returns use Decimal. Never use float for prices.
"""

import time
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any


class EnrichmentState(str, Enum):
    """Classification lifecycle of a record."""

    UNPROCESSED = "unprocessed"
    PROCESSING = "processing"
    ENRICHED = "enriched"
    FAILED = "failed"


class Direction(str, Enum):
    """Sentiment of a pitch as reported by the classifier."""

    LONG = "long"
    SHORT = "short"
    NEUTRAL = "neutral"
    NA = "n/a"


class BackfillStatus(str, Enum):
    """Backfill job state. A subject with no job is idle."""

    FETCHING = "fetching"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass(frozen=True)
class Record:
    """A single externally-sourced submission for a subject."""

    natural_key: str
    subject: str
    created_at: int  # unix seconds
    title: str
    body: str = ""
    community: str = ""
    flair: str | None = None
    score: int = 0
    num_comments: int = 0
    permalink: str = ""
    raw: dict[str, Any] = field(default_factory=dict, compare=False)
    enrichment_state: EnrichmentState = EnrichmentState.UNPROCESSED
    identifiers: tuple[str, ...] = ()
    direction: str | None = None
    confidence: str | None = None
    error: str | None = None
    processed_at: float | None = None
    version: int = 1

    @property
    def payload(self) -> str:
        """Text handed to the classifier."""
        return f"{self.title}\n\n{self.body}"

    @property
    def needs_enrichment(self) -> bool:
        return self.enrichment_state == EnrichmentState.UNPROCESSED

    def to_dict(self) -> dict[str, Any]:
        """JSON-safe representation used in notifications and API responses."""
        return {
            "natural_key": self.natural_key,
            "subject": self.subject,
            "created_at": self.created_at,
            "title": self.title,
            "body": self.body,
            "community": self.community,
            "flair": self.flair,
            "score": self.score,
            "num_comments": self.num_comments,
            "permalink": self.permalink,
            "enrichment_state": self.enrichment_state.value,
            "identifiers": list(self.identifiers),
            "direction": self.direction,
            "confidence": self.confidence,
            "error": self.error,
            "processed_at": self.processed_at,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Record":
        """Rebuild a record from its to_dict() form."""
        return cls(
            natural_key=data["natural_key"],
            subject=data["subject"],
            created_at=int(data["created_at"]),
            title=data.get("title", ""),
            body=data.get("body", ""),
            community=data.get("community", ""),
            flair=data.get("flair"),
            score=data.get("score", 0),
            num_comments=data.get("num_comments", 0),
            permalink=data.get("permalink", ""),
            enrichment_state=EnrichmentState(data.get("enrichment_state", "unprocessed")),
            identifiers=tuple(data.get("identifiers") or ()),
            direction=data.get("direction"),
            confidence=data.get("confidence"),
            error=data.get("error"),
            processed_at=data.get("processed_at"),
            version=data.get("version", 1),
        )


@dataclass
class Page:
    """One page of raw record attributes returned by a record source, newest first."""

    records: list[dict[str, Any]]
    next_cursor: str | None = None


@dataclass
class Classification:
    """Result of classifying a record's text."""

    identifiers: list[str]
    direction: str
    confidence: str = "low"


@dataclass
class PricePoint:
    """A daily close and the trading day it belongs to."""

    price: Decimal
    date: date


@dataclass
class BackfillJob:
    """Progress of one backfill sweep for a subject.

    A newer generation for the same subject supersedes this one.
    """

    subject: str
    generation: int
    status: BackfillStatus = BackfillStatus.FETCHING
    cursor: str | None = None
    total_fetched: int = 0
    oldest_seen_at: int | None = None
    newest_seen_at: int | None = None
    message: str = ""
    reason: str | None = None
    started_at: float = field(default_factory=time.time)

    def to_progress(self) -> dict[str, Any]:
        """Progress payload published on every transition."""
        return {
            "status": self.status.value,
            "generation": self.generation,
            "total_fetched": self.total_fetched,
            "oldest_date": format_timestamp(self.oldest_seen_at),
            "newest_date": format_timestamp(self.newest_seen_at),
            "message": self.message,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class IdentifierStat:
    """Derived per-identifier view: first mention plus price performance since."""

    identifier: str
    first_mention_at: int
    direction: str | None
    mention_count: int
    price_at_mention: Decimal | None = None
    price_at_mention_date: date | None = None
    price_after_window: Decimal | None = None
    price_after_window_date: date | None = None
    return_window: Decimal | None = None
    price_current: Decimal | None = None
    price_current_date: date | None = None
    return_current: Decimal | None = None
    show_current_return: bool = False
    loading: bool = True
    error: str | None = None

    @property
    def first_mention_date(self) -> date:
        return datetime.fromtimestamp(self.first_mention_at, tz=timezone.utc).date()

    @property
    def price_key(self) -> tuple[str, date]:
        """Key under which price lookups for this stat are deduplicated."""
        return (self.identifier, self.first_mention_date)

    def to_dict(self) -> dict[str, Any]:
        return {
            "identifier": self.identifier,
            "first_mention_at": self.first_mention_at,
            "first_mention_date": self.first_mention_date.isoformat(),
            "direction": self.direction,
            "mention_count": self.mention_count,
            "price_at_mention": _opt_str(self.price_at_mention),
            "price_at_mention_date": _opt_iso(self.price_at_mention_date),
            "price_after_window": _opt_str(self.price_after_window),
            "price_after_window_date": _opt_iso(self.price_after_window_date),
            "return_window": _opt_str(self.return_window),
            "price_current": _opt_str(self.price_current),
            "price_current_date": _opt_iso(self.price_current_date),
            "return_current": _opt_str(self.return_current),
            "show_current_return": self.show_current_return,
            "loading": self.loading,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "IdentifierStat":
        """Rebuild a stat from its to_dict() form."""
        return cls(
            identifier=data["identifier"],
            first_mention_at=int(data["first_mention_at"]),
            direction=data.get("direction"),
            mention_count=data.get("mention_count", 0),
            price_at_mention=_opt_decimal(data.get("price_at_mention")),
            price_at_mention_date=_opt_date(data.get("price_at_mention_date")),
            price_after_window=_opt_decimal(data.get("price_after_window")),
            price_after_window_date=_opt_date(data.get("price_after_window_date")),
            return_window=_opt_decimal(data.get("return_window")),
            price_current=_opt_decimal(data.get("price_current")),
            price_current_date=_opt_date(data.get("price_current_date")),
            return_current=_opt_decimal(data.get("return_current")),
            show_current_return=data.get("show_current_return", False),
            loading=data.get("loading", True),
            error=data.get("error"),
        )


@dataclass
class DirectionBucket:
    """Right/wrong tally for one pitch direction."""

    count: int = 0
    right: int = 0
    wrong: int = 0
    avg_return_right: Decimal | None = None
    avg_return_wrong: Decimal | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "count": self.count,
            "right": self.right,
            "wrong": self.wrong,
            "avg_return_right": _opt_str(self.avg_return_right),
            "avg_return_wrong": _opt_str(self.avg_return_wrong),
        }


@dataclass
class DirectionSummary:
    """Pitch performance per direction plus the pooled long/short total."""

    long: DirectionBucket
    short: DirectionBucket
    neutral: DirectionBucket
    total: DirectionBucket

    def to_dict(self) -> dict[str, Any]:
        return {
            "long": self.long.to_dict(),
            "short": self.short.to_dict(),
            "neutral": self.neutral.to_dict(),
            "total": self.total.to_dict(),
        }


@dataclass
class Event:
    """A notification published on the bus."""

    type: str
    subject: str
    data: dict[str, Any]
    published_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "subject": self.subject,
            "data": self.data,
            "published_at": self.published_at,
        }


def format_timestamp(unix_seconds: int | float | None) -> str | None:
    """Format a unix timestamp as e.g. 'Mar 04, 2024'."""
    if unix_seconds is None:
        return None
    return datetime.fromtimestamp(round(unix_seconds), tz=timezone.utc).strftime("%b %d, %Y")


def _opt_str(value: Decimal | None) -> str | None:
    return str(value) if value is not None else None


def _opt_iso(value: date | None) -> str | None:
    return value.isoformat() if value is not None else None


def _opt_decimal(value: Any) -> Decimal | None:
    return Decimal(str(value)) if value is not None else None


def _opt_date(value: Any) -> date | None:
    if value is None or isinstance(value, date):
        return value
    return date.fromisoformat(value)
