"""Typed SQLite read/write abstraction for records.

Provides RecordStore with upsert-by-natural-key and compare-and-set
enrichment state transitions. All SQL is isolated behind this interface.

Every write is a single atomic statement that bumps the row's version, so
the store stays consistent even when two writers race on the same key:
source fields are last-writer-wins, enrichment transitions only apply if the
row is still in the expected state.
"""

import json
import time
from typing import Any

from tracker.data.database import RecordDatabase
from tracker.exceptions import ValidationError
from tracker.logging import get_logger
from tracker.models import Classification, EnrichmentState, Record

logger = get_logger(__name__)

_COLUMNS = (
    "natural_key, subject, created_at, title, body, community, flair, score, "
    "num_comments, permalink, raw, enrichment_state, identifiers, direction, "
    "confidence, error, processed_at, version"
)

_REQUIRED_ATTRS = ("natural_key", "subject", "title", "created_at")


class RecordStore:
    """Async SQLite store for records, keyed by natural key.

    Usage:
        async with RecordDatabase("data/records.db") as database:
            store = RecordStore(database)
            record = await store.upsert("abc123", attrs)
    """

    def __init__(self, database: RecordDatabase) -> None:
        self._database = database

    # ──────────────────────────────────────────────
    # Write methods
    # ──────────────────────────────────────────────

    async def upsert(self, natural_key: str, attrs: dict[str, Any]) -> Record:
        """Insert a record or refresh its source fields.

        Enrichment fields of an existing record are left untouched, so a
        re-fetch never clobbers a classification in progress or completed.
        The subject is stored lowercased.

        Raises:
            ValidationError: If a required attribute is missing or malformed.
        """
        attrs = {**attrs, "natural_key": natural_key}
        _validate(attrs)
        now = time.time()

        await self._database.db.execute(
            "INSERT INTO records "
            "(natural_key, subject, created_at, title, body, community, flair, "
            "score, num_comments, permalink, raw, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
            "ON CONFLICT(natural_key) DO UPDATE SET "
            "subject = excluded.subject, created_at = excluded.created_at, "
            "title = excluded.title, body = excluded.body, "
            "community = excluded.community, flair = excluded.flair, "
            "score = excluded.score, num_comments = excluded.num_comments, "
            "permalink = excluded.permalink, raw = excluded.raw, "
            "version = records.version + 1, updated_at = excluded.updated_at",
            (
                natural_key,
                str(attrs["subject"]).lower(),
                int(attrs["created_at"]),
                attrs["title"],
                attrs.get("body") or "",
                attrs.get("community") or "",
                attrs.get("flair"),
                int(attrs.get("score") or 0),
                int(attrs.get("num_comments") or 0),
                attrs.get("permalink") or "",
                json.dumps(attrs.get("raw") or {}),
                now,
            ),
        )
        await self._database.db.commit()

        record = await self.get(natural_key)
        assert record is not None
        logger.debug("record_upserted", natural_key=natural_key, version=record.version)
        return record

    async def upsert_many(self, records: list[dict[str, Any]]) -> list[Record]:
        """Upsert a batch of raw attribute dicts, skipping invalid ones.

        Returns the stored records in input order.
        """
        stored: list[Record] = []
        for attrs in records:
            try:
                stored.append(await self.upsert(attrs.get("natural_key", ""), attrs))
            except ValidationError as e:
                logger.error(
                    "record_upsert_rejected",
                    natural_key=attrs.get("natural_key"),
                    error=str(e),
                )
        return stored

    async def mark_processing(self, natural_key: str) -> Record | None:
        """Claim an unprocessed record for enrichment.

        Returns the updated record, or None if the record is missing or not
        unprocessed (someone else already claimed it).
        """
        return await self._transition(
            natural_key,
            EnrichmentState.UNPROCESSED,
            EnrichmentState.PROCESSING,
            {},
        )

    async def complete_enrichment(
        self,
        natural_key: str,
        classification: Classification,
        processed_at: float | None = None,
    ) -> Record | None:
        """Move a processing record to enriched with its classification."""
        return await self._transition(
            natural_key,
            EnrichmentState.PROCESSING,
            EnrichmentState.ENRICHED,
            {
                "identifiers": json.dumps(classification.identifiers),
                "direction": classification.direction,
                "confidence": classification.confidence,
                "error": None,
                "processed_at": processed_at if processed_at is not None else time.time(),
            },
        )

    async def fail_enrichment(
        self,
        natural_key: str,
        error: str,
        processed_at: float | None = None,
    ) -> Record | None:
        """Move a processing record to failed, keeping the error detail."""
        return await self._transition(
            natural_key,
            EnrichmentState.PROCESSING,
            EnrichmentState.FAILED,
            {
                "error": error,
                "processed_at": processed_at if processed_at is not None else time.time(),
            },
        )

    async def reset_failed(self, natural_key: str) -> Record | None:
        """Clear a failed record back to unprocessed so it can be resubmitted."""
        return await self._transition(
            natural_key,
            EnrichmentState.FAILED,
            EnrichmentState.UNPROCESSED,
            {"error": None, "processed_at": None},
        )

    async def reset_stale_processing(self) -> int:
        """Return records left processing by a previous run to unprocessed.

        Only safe before any enrichment worker has started.
        """
        cursor = await self._database.db.execute(
            "UPDATE records SET enrichment_state = ?, version = version + 1, updated_at = ? "
            "WHERE enrichment_state = ?",
            (EnrichmentState.UNPROCESSED.value, time.time(), EnrichmentState.PROCESSING.value),
        )
        await self._database.db.commit()
        if cursor.rowcount:
            logger.warning("stale_processing_reset", count=cursor.rowcount)
        return cursor.rowcount

    async def _transition(
        self,
        natural_key: str,
        expected: EnrichmentState,
        target: EnrichmentState,
        changes: dict[str, Any],
    ) -> Record | None:
        assignments = ", ".join(f"{column} = ?" for column in changes)
        if assignments:
            assignments += ", "
        cursor = await self._database.db.execute(
            f"UPDATE records SET {assignments}enrichment_state = ?, "
            f"version = version + 1, updated_at = ? "
            f"WHERE natural_key = ? AND enrichment_state = ?",
            (*changes.values(), target.value, time.time(), natural_key, expected.value),
        )
        await self._database.db.commit()

        if cursor.rowcount != 1:
            logger.debug(
                "record_transition_skipped",
                natural_key=natural_key,
                expected=expected.value,
                target=target.value,
            )
            return None
        return await self.get(natural_key)

    # ──────────────────────────────────────────────
    # Read methods
    # ──────────────────────────────────────────────

    async def get(self, natural_key: str) -> Record | None:
        cursor = await self._database.db.execute(
            f"SELECT {_COLUMNS} FROM records WHERE natural_key = ?",
            (natural_key,),
        )
        row = await cursor.fetchone()
        return _row_to_record(row) if row is not None else None

    async def list_by_subject(self, subject: str) -> list[Record]:
        """All records for a subject, newest first."""
        cursor = await self._database.db.execute(
            f"SELECT {_COLUMNS} FROM records WHERE subject = ? "
            f"ORDER BY created_at DESC, natural_key ASC",
            (subject.lower(),),
        )
        rows = await cursor.fetchall()
        return [_row_to_record(row) for row in rows]

    async def list_by_state(self, subject: str, state: EnrichmentState) -> list[Record]:
        """Records for a subject in one enrichment state, newest first."""
        cursor = await self._database.db.execute(
            f"SELECT {_COLUMNS} FROM records WHERE subject = ? AND enrichment_state = ? "
            f"ORDER BY created_at DESC, natural_key ASC",
            (subject.lower(), state.value),
        )
        rows = await cursor.fetchall()
        return [_row_to_record(row) for row in rows]

    async def list_failed(self, subject: str) -> list[Record]:
        return await self.list_by_state(subject, EnrichmentState.FAILED)

    async def count_by_subject(self, subject: str) -> int:
        cursor = await self._database.db.execute(
            "SELECT COUNT(*) FROM records WHERE subject = ?", (subject.lower(),)
        )
        return (await cursor.fetchone())[0]

    async def count(self) -> int:
        cursor = await self._database.db.execute("SELECT COUNT(*) FROM records")
        return (await cursor.fetchone())[0]


def _validate(attrs: dict[str, Any]) -> None:
    missing = [name for name in _REQUIRED_ATTRS if attrs.get(name) in (None, "")]
    if missing:
        raise ValidationError(f"record is missing required attributes: {', '.join(missing)}")
    try:
        int(attrs["created_at"])
    except (TypeError, ValueError) as e:
        raise ValidationError(f"invalid created_at: {attrs['created_at']!r}") from e


def _row_to_record(row: Any) -> Record:
    return Record(
        natural_key=row[0],
        subject=row[1],
        created_at=row[2],
        title=row[3],
        body=row[4],
        community=row[5],
        flair=row[6],
        score=row[7],
        num_comments=row[8],
        permalink=row[9],
        raw=json.loads(row[10]) if row[10] else {},
        enrichment_state=EnrichmentState(row[11]),
        identifiers=tuple(json.loads(row[12]) if row[12] else ()),
        direction=row[13],
        confidence=row[14],
        error=row[15],
        processed_at=row[16],
        version=row[17],
    )
