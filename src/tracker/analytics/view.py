"""Merge-by-key consumer view of one subject.

Notifications arrive at-least-once and in any order across enrichment
tasks. SubjectView keeps the newest value per key so applying the same
event twice, or an older event after a newer one, changes nothing.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import date, datetime, timezone
from typing import Any, Callable, Iterable

from tracker.analytics.stats import (
    compute_direction_summary,
    compute_identifier_stats,
    copy_prices,
    show_current_return,
)
from tracker.models import DirectionSummary, Event, IdentifierStat, Record
from tracker.notifications import IDENTIFIER_UPDATED, RECORD_SAVED, RECORD_UPDATED


def _utc_today() -> date:
    return datetime.now(timezone.utc).date()


class SubjectView:
    """Records and identifier stats for a subject, merged by key."""

    def __init__(
        self,
        subject: str,
        records: Iterable[Record] = (),
        stats: Iterable[IdentifierStat] = (),
        window_days: int = 180,
        today: Callable[[], date] = _utc_today,
    ) -> None:
        self.subject = subject
        self._window_days = window_days
        self._today = today
        self._records: dict[str, Record] = {}
        self._stats: dict[str, IdentifierStat] = {}
        for record in records:
            current = self._records.get(record.natural_key)
            if current is None or record.version > current.version:
                self._records[record.natural_key] = record
        self._recompute_stats()
        for stat in stats:
            self.merge_stat(stat)

    @property
    def records(self) -> list[Record]:
        """Records newest first."""
        return sorted(self._records.values(), key=lambda r: (-r.created_at, r.natural_key))

    @property
    def stats(self) -> list[IdentifierStat]:
        return sorted(self._stats.values(), key=lambda s: (-s.first_mention_at, s.identifier))

    def summary(self) -> DirectionSummary | None:
        return compute_direction_summary(self._records.values(), self._stats.values())

    # ──────────────────────────────────────────────
    # Merging
    # ──────────────────────────────────────────────

    def apply(self, event: Event) -> bool:
        """Apply a bus event. Returns True if the view changed."""
        if event.subject != self.subject:
            return False
        if event.type in (RECORD_SAVED, RECORD_UPDATED):
            return self.merge_record(Record.from_dict(event.data))
        if event.type == IDENTIFIER_UPDATED:
            return self.merge_stat(IdentifierStat.from_dict(event.data))
        return False

    def merge_record(self, record: Record) -> bool:
        """Keep the record unless an equal or newer version is already held."""
        current = self._records.get(record.natural_key)
        if current is not None and current.version >= record.version:
            return False
        self._records[record.natural_key] = record
        if current is None or current.identifiers != record.identifiers or (
            current.direction != record.direction
        ):
            self._recompute_stats()
        return True

    def merge_stat(self, stat: IdentifierStat) -> bool:
        """Attach price data to the stat with the same identifier and first mention.

        A price result for an outdated first mention is ignored.
        """
        current = self._stats.get(stat.identifier)
        if current is None or current.first_mention_at != stat.first_mention_at:
            return False
        if not current.loading and stat.loading:
            return False
        merged = copy_prices(current, stat)
        if merged == current:
            return False
        self._stats[stat.identifier] = merged
        return True

    def _recompute_stats(self) -> None:
        fresh = compute_identifier_stats(self._records.values())
        today = self._today()
        stats: dict[str, IdentifierStat] = {}
        for stat in fresh:
            previous = self._stats.get(stat.identifier)
            if previous is not None and previous.first_mention_at == stat.first_mention_at:
                # keep prices already fetched for this first mention
                stat = replace(previous, direction=stat.direction, mention_count=stat.mention_count)
            else:
                stat = replace(
                    stat,
                    show_current_return=show_current_return(
                        stat.first_mention_date, today, self._window_days
                    ),
                )
            stats[stat.identifier] = stat
        self._stats = stats

    def to_dict(self) -> dict[str, Any]:
        summary = self.summary()
        return {
            "subject": self.subject,
            "records": [r.to_dict() for r in self.records],
            "stats": [s.to_dict() for s in self.stats],
            "summary": summary.to_dict() if summary is not None else None,
        }
