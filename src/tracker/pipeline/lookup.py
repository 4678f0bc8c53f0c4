"""Request-facing entry points: record lookup, subject loading and derived views.

Only validation errors and a total failure to fetch the primary record are
raised to the caller. Everything else (classification, prices, backfill)
happens in the background and is reported through the notification bus.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from itertools import takewhile
from typing import Callable

from tracker.analytics.stats import (
    compute_direction_summary,
    compute_identifier_stats,
    show_current_return,
)
from tracker.analytics.view import SubjectView
from tracker.config import EnrichmentSettings
from tracker.data.store import RecordStore
from tracker.exceptions import UpstreamError, ValidationError
from tracker.logging import get_logger
from tracker.models import BackfillJob, DirectionSummary, IdentifierStat, Record
from tracker.pipeline.backfill import BackfillController
from tracker.pipeline.enrichment import EnrichmentCoordinator
from tracker.sources.client import RecordSource
from tracker.validation import parse_record_url, validate_subject

logger = get_logger(__name__)


def _utc_today() -> date:
    return datetime.now(timezone.utc).date()


@dataclass
class LookupResult:
    """The primary record plus what was loaded for its author."""

    record: Record
    records: list[Record] = field(default_factory=list)
    backfill: BackfillJob | None = None
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            "record": self.record.to_dict(),
            "records": [r.to_dict() for r in self.records],
            "backfill": self.backfill.to_progress() if self.backfill is not None else None,
            "error": self.error,
        }


class LookupService:
    """Coordinates the store, the source and the background pipelines per request."""

    def __init__(
        self,
        source: RecordSource,
        store: RecordStore,
        coordinator: EnrichmentCoordinator,
        backfill: BackfillController,
        settings: EnrichmentSettings,
        today: Callable[[], date] = _utc_today,
    ) -> None:
        self._source = source
        self._store = store
        self._coordinator = coordinator
        self._backfill = backfill
        self._settings = settings
        self._today = today

    async def lookup_url(self, url: str) -> LookupResult:
        """Resolve a submission URL to its record and load its author.

        The stored record is used when present; otherwise it is fetched.
        The record is submitted for enrichment, the author's recent records
        are loaded and the author's backfill is started.

        Raises:
            ValidationError: If the URL is malformed.
            UpstreamError: If the record is not stored and cannot be fetched.
        """
        natural_key = parse_record_url(url)
        record = await self._store.get(natural_key)
        if record is None:
            attrs = await self._source.get_record(natural_key)
            record = await self._store.upsert(natural_key, attrs)
            logger.info("record_fetched", natural_key=natural_key, subject=record.subject)

        await self._coordinator.submit(record)
        result = LookupResult(record=record)

        try:
            subject = validate_subject(record.subject)
        except ValidationError:
            # deleted or suspended authors have no history to load
            logger.info("lookup_subject_skipped", subject=record.subject)
            return result

        try:
            result.records = await self.load_subject(subject)
        except UpstreamError as e:
            logger.warning("subject_load_failed", subject=subject, error=str(e))
            result.error = f"Failed to load records for {subject}: {e}"
        result.backfill = await self._backfill.start(subject)

        refreshed = await self._store.get(natural_key)
        if refreshed is not None:
            result.record = refreshed
        return result

    async def load_subject(self, subject: str, limit: int | None = None) -> list[Record]:
        """Stored records plus anything newer from the source, newest first.

        Every unprocessed record is submitted for enrichment. If the source
        fails the stored records are returned; with nothing stored the error
        propagates.
        """
        subject = validate_subject(subject)
        stored = await self._store.list_by_subject(subject)
        newest_key = stored[0].natural_key if stored else None

        try:
            page = await self._source.list_records(
                subject, None, limit or self._settings.lookup_limit
            )
        except UpstreamError as e:
            if not stored:
                raise
            logger.warning("subject_refresh_failed", subject=subject, error=str(e))
            fresh: list[Record] = []
        else:
            new_attrs = list(takewhile(lambda a: a.get("natural_key") != newest_key, page.records))
            fresh = await self._store.upsert_many(new_attrs)

        await self._coordinator.submit_many([*fresh, *stored])
        records = await self._store.list_by_subject(subject)
        logger.info(
            "subject_loaded",
            subject=subject,
            total=len(records),
            stored=len(stored),
            new=len(fresh),
        )
        return records

    async def identifier_stats(self, subject: str) -> list[IdentifierStat]:
        """Identifier stats with whatever prices are already known.

        Prices not yet cached are requested in the background and arrive as
        identifier_updated events.
        """
        subject = validate_subject(subject)
        records = await self._store.list_by_subject(subject)
        today = self._today()
        stats = []
        for stat in compute_identifier_stats(records):
            priced = self._coordinator.cached_price(stat)
            if priced is None:
                self._coordinator.submit_price(subject, stat)
                priced = replace(
                    stat,
                    show_current_return=show_current_return(
                        stat.first_mention_date, today, self._settings.forward_window_days
                    ),
                )
            stats.append(priced)
        return stats

    async def summary(self, subject: str) -> DirectionSummary | None:
        subject = validate_subject(subject)
        records = await self._store.list_by_subject(subject)
        stats = await self.identifier_stats(subject)
        return compute_direction_summary(records, stats)

    async def snapshot(self, subject: str) -> SubjectView:
        """A merge-by-key view seeded with the subject's current state."""
        subject = validate_subject(subject)
        records = await self._store.list_by_subject(subject)
        stats = await self.identifier_stats(subject)
        return SubjectView(
            subject,
            records,
            stats,
            window_days=self._settings.forward_window_days,
            today=self._today,
        )

    async def retry_failed(self, subject: str) -> list[Record]:
        subject = validate_subject(subject)
        return await self._coordinator.retry(subject)

    async def failed_records(self, subject: str) -> list[Record]:
        subject = validate_subject(subject)
        return await self._store.list_failed(subject)

    async def start_backfill(self, subject: str) -> BackfillJob:
        return await self._backfill.start(subject)

    def backfill_progress(self, subject: str) -> dict | None:
        return self._backfill.progress(validate_subject(subject))
