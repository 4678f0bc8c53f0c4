"""Per-subject historical backfill.

Each subject has at most one active job. A job pages backwards through the
subject's records, newest first, until the source runs dry or the pages
reach the retention horizon:

    idle -> fetching -> complete | error

Starting a backfill for a subject that is already fetching supersedes the
running job. Jobs carry a generation number; the running task compares it
with the subject's current generation before every side effect, so a
superseded job's in-flight page is dropped and its counters never move
again. A superseded job waiting out its inter-page delay is woken at once
and exits.

Fetch failures put the job in error with its counters preserved. Nothing
is retried automatically; the caller starts a new backfill.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Callable

from tracker.config import BackfillSettings
from tracker.data.store import RecordStore
from tracker.exceptions import UpstreamError, ValidationError
from tracker.logging import bind_job_context, get_logger
from tracker.models import BackfillJob, BackfillStatus, Page, format_timestamp
from tracker.notifications import BACKFILL_PROGRESS, RECORD_SAVED, NotificationBus
from tracker.pipeline.enrichment import EnrichmentCoordinator
from tracker.sources.client import RecordSource
from tracker.validation import validate_subject

logger = get_logger(__name__)

REASON_HORIZON = "horizon_reached"
REASON_EMPTY_PAGE = "empty_page"
REASON_NO_CURSOR = "no_next_cursor"
REASON_FETCH_FAILED = "fetch_failed"
REASON_STORE_FAILED = "store_failed"


@dataclass
class _JobHandle:
    job: BackfillJob
    stale: asyncio.Event = field(default_factory=asyncio.Event)
    task: asyncio.Task | None = None  # type: ignore[type-arg]


class BackfillController:
    """Schedules and tracks backfill jobs, one per subject.

    Args:
        source: Rate-limited record source.
        store: Record store; every fetched record is upserted here.
        coordinator: Receives every fetched record for enrichment.
        bus: Progress and record_saved events are published on the subject topic.
        settings: Page size, delays and retention horizon.
        clock: Wall clock in unix seconds (overridable in tests).
    """

    def __init__(
        self,
        source: RecordSource,
        store: RecordStore,
        coordinator: EnrichmentCoordinator,
        bus: NotificationBus,
        settings: BackfillSettings,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._source = source
        self._store = store
        self._coordinator = coordinator
        self._bus = bus
        self._settings = settings
        self._clock = clock
        self._jobs: dict[str, _JobHandle] = {}
        self._generations: dict[str, int] = {}

    # ──────────────────────────────────────────────
    # Public methods
    # ──────────────────────────────────────────────

    async def start(self, subject: str) -> BackfillJob:
        """Start (or restart) the backfill for a subject.

        Raises:
            ValidationError: If the subject is malformed.
        """
        subject = validate_subject(subject)
        existing = await self._store.count_by_subject(subject)

        generation = self._generations.get(subject, 0) + 1
        self._generations[subject] = generation
        previous = self._jobs.get(subject)
        if previous is not None:
            previous.stale.set()
            logger.info(
                "backfill_superseded",
                subject=subject,
                old_generation=previous.job.generation,
                generation=generation,
            )

        job = BackfillJob(
            subject=subject,
            generation=generation,
            message=(
                f"Fetching all historical records for {subject} "
                f"({existing} already stored)..."
            ),
        )
        handle = _JobHandle(job=job)
        self._jobs[subject] = handle
        self._publish(job)

        handle.task = asyncio.create_task(
            self._run(handle), name=f"backfill-{subject}-{generation}"
        )
        logger.info("backfill_started", subject=subject, generation=generation, existing=existing)
        return job

    def job(self, subject: str) -> BackfillJob | None:
        """The subject's current job, or None if it never ran."""
        handle = self._jobs.get(subject)
        return handle.job if handle is not None else None

    def progress(self, subject: str) -> dict | None:
        job = self.job(subject)
        return job.to_progress() if job is not None else None

    def active_generation(self, subject: str) -> int | None:
        """Generation of the subject's fetching job, or None if idle or finished."""
        job = self.job(subject)
        if job is None or job.status != BackfillStatus.FETCHING:
            return None
        return job.generation

    async def wait(self, subject: str) -> BackfillJob | None:
        """Wait for the subject's current job task to finish."""
        handle = self._jobs.get(subject)
        if handle is None:
            return None
        if handle.task is not None:
            await asyncio.gather(handle.task, return_exceptions=True)
        return handle.job

    async def stop(self) -> None:
        """Cancel every running job."""
        tasks = []
        for handle in self._jobs.values():
            handle.stale.set()
            if handle.task is not None and not handle.task.done():
                handle.task.cancel()
                tasks.append(handle.task)
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("backfill_stopped", cancelled=len(tasks))

    # ──────────────────────────────────────────────
    # Job task
    # ──────────────────────────────────────────────

    def _is_current(self, handle: _JobHandle) -> bool:
        job = handle.job
        return not handle.stale.is_set() and self._generations.get(job.subject) == job.generation

    async def _pause(self, handle: _JobHandle, delay: float) -> bool:
        """Sleep for delay seconds. Returns False if the job went stale meanwhile."""
        try:
            await asyncio.wait_for(handle.stale.wait(), timeout=delay)
        except TimeoutError:
            pass
        return self._is_current(handle)

    async def _run(self, handle: _JobHandle) -> None:
        job = handle.job
        bind_job_context(job.subject, job.generation)

        if not await self._pause(handle, self._settings.initial_delay):
            return

        cursor: str | None = None
        while True:
            try:
                page = await self._source.list_records(
                    job.subject, cursor, self._settings.page_size
                )
            except asyncio.CancelledError:
                raise
            except UpstreamError as e:
                if self._is_current(handle):
                    logger.warning("backfill_fetch_failed", kind=e.kind, error=str(e))
                    self._fail(handle, f"Error fetching records: {e}")
                return
            except Exception as e:
                if self._is_current(handle):
                    logger.error("backfill_fetch_error", exc_info=True)
                    self._fail(handle, f"Error fetching records: {e!r}")
                return

            if not self._is_current(handle):
                logger.info("backfill_stale_page_dropped", count=len(page.records))
                return

            logger.info(
                "backfill_page_fetched",
                cursor=cursor,
                count=len(page.records),
                total_fetched=job.total_fetched,
            )
            try:
                oldest = await self._apply_page(handle, page)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if self._is_current(handle):
                    logger.error("backfill_store_error", exc_info=True)
                    self._fail(handle, f"Error storing records: {e!r}", REASON_STORE_FAILED)
                return
            if not self._is_current(handle):
                return

            reason = self._completion_reason(page, oldest)
            if reason is not None:
                self._complete(handle, reason)
                return

            cursor = page.next_cursor
            if not await self._pause(handle, self._settings.inter_page_delay):
                return

    async def _apply_page(self, handle: _JobHandle, page: Page) -> int | None:
        """Upsert, announce and enqueue one page; update the job's counters.

        Only records that were stored count towards total_fetched. Returns
        the oldest created_at seen on the page.
        """
        job = handle.job
        timestamps = []
        for attrs in page.records:
            try:
                timestamps.append(int(attrs["created_at"]))
            except (KeyError, TypeError, ValueError):
                pass

        stored = 0
        for attrs in page.records:
            if not self._is_current(handle):
                return None
            try:
                record = await self._store.upsert(attrs.get("natural_key", ""), attrs)
            except ValidationError as e:
                logger.error("backfill_record_rejected", natural_key=attrs.get("natural_key"), error=str(e))
                continue
            stored += 1
            if not self._is_current(handle):
                return None
            self._bus.publish_subject(RECORD_SAVED, job.subject, record.to_dict())
            await self._coordinator.submit(record)

        if not self._is_current(handle):
            return None

        oldest = min(timestamps) if timestamps else None
        newest = max(timestamps) if timestamps else None
        job.total_fetched += stored
        job.cursor = page.next_cursor
        if oldest is not None:
            job.oldest_seen_at = oldest if job.oldest_seen_at is None else min(job.oldest_seen_at, oldest)
        if newest is not None:
            job.newest_seen_at = newest if job.newest_seen_at is None else max(job.newest_seen_at, newest)
        job.message = (
            f"Fetching records from {format_timestamp(job.oldest_seen_at) or 'unknown'}... "
            f"({job.total_fetched} records so far)"
        )
        self._publish(job)
        return oldest

    def _completion_reason(self, page: Page, oldest: int | None) -> str | None:
        if not page.records:
            return REASON_EMPTY_PAGE
        horizon = self._clock() - self._settings.retention_seconds
        if oldest is None or oldest <= horizon:
            return REASON_HORIZON
        if not page.next_cursor:
            return REASON_NO_CURSOR
        return None

    def _complete(self, handle: _JobHandle, reason: str) -> None:
        job = handle.job
        total = job.total_fetched
        years = round(self._settings.retention_seconds / (365.25 * 24 * 3600), 1)
        messages = {
            REASON_HORIZON: f"Fetched all records back to {years:g} years ago ({total} records total)",
            REASON_EMPTY_PAGE: f"No more records available ({total} records total)",
            REASON_NO_CURSOR: f"Reached end of available records ({total} records total)",
        }
        job.status = BackfillStatus.COMPLETE
        job.reason = reason
        job.message = messages[reason]
        self._publish(job)
        logger.info("backfill_complete", reason=reason, total_fetched=total)

    def _fail(self, handle: _JobHandle, message: str, reason: str = REASON_FETCH_FAILED) -> None:
        job = handle.job
        job.status = BackfillStatus.ERROR
        job.reason = reason
        job.message = message
        self._publish(job)

    def _publish(self, job: BackfillJob) -> None:
        self._bus.publish_subject(BACKFILL_PROGRESS, job.subject, job.to_progress())
