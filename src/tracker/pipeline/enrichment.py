"""Enrichment coordinator: classification workers and price lookups.

Record classification runs on a bounded pool of workers fed by a work
queue. Workers only talk to external services; their results flow through a
result queue to a single collector task, which is the only place enrichment
outcomes are written to the store and announced on the bus.

A record is claimed with a compare-and-set on its enrichment state before it
is queued, so at most one enrichment is in flight per record no matter how
many times it is submitted.

Price enrichment fans out one task per (identifier, first mention date).
Completed results are cached so repeated views of a subject do not refetch.
"""

import asyncio
import time
from dataclasses import dataclass, replace
from datetime import date, datetime, timezone
from typing import Callable

from tracker.analytics.stats import compute_return, copy_prices, show_current_return
from tracker.config import EnrichmentSettings
from tracker.data.store import RecordStore
from tracker.exceptions import RetryTimeoutError, UpstreamError
from tracker.logging import get_logger
from tracker.models import Classification, IdentifierStat, PricePoint, Record
from tracker.notifications import IDENTIFIER_UPDATED, RECORD_UPDATED, NotificationBus
from tracker.sources.client import Classifier, PriceSource

logger = get_logger(__name__)

PriceKey = tuple[str, date]


def _utc_today() -> date:
    return datetime.now(timezone.utc).date()


@dataclass
class _Outcome:
    """A worker's classification result, applied by the collector."""

    record: Record
    classification: Classification | None = None
    error: str | None = None
    finished_at: float = 0.0


class EnrichmentCoordinator:
    """Runs record classification and identifier price lookups in the background.

    Args:
        store: Record store holding enrichment state.
        classifier: Rate-limited classification client.
        price_source: Rate-limited price client.
        bus: Notification bus for record_updated / identifier_updated events.
        settings: Worker count, retry timeout and price window configuration.
        today: Clock for the forward-window check (overridable in tests).
    """

    def __init__(
        self,
        store: RecordStore,
        classifier: Classifier,
        price_source: PriceSource,
        bus: NotificationBus,
        settings: EnrichmentSettings,
        today: Callable[[], date] = _utc_today,
    ) -> None:
        self._store = store
        self._classifier = classifier
        self._price_source = price_source
        self._bus = bus
        self._settings = settings
        self._today = today

        self._work: asyncio.Queue[Record | None] = asyncio.Queue()
        self._results: asyncio.Queue[_Outcome | None] = asyncio.Queue()
        self._workers: list[asyncio.Task] = []  # type: ignore[type-arg]
        self._collector: asyncio.Task | None = None  # type: ignore[type-arg]
        self._running = False

        self._claims: set[str] = set()
        self._completions: dict[str, asyncio.Future[Record]] = {}

        self._price_tasks: dict[PriceKey, asyncio.Task[IdentifierStat]] = {}
        self._price_subjects: dict[PriceKey, dict[str, IdentifierStat]] = {}
        self._price_cache: dict[PriceKey, IdentifierStat] = {}

    @property
    def running(self) -> bool:
        return self._running

    @property
    def in_flight(self) -> int:
        """Records claimed and not yet written back."""
        return len(self._claims)

    async def start(self) -> None:
        """Spawn the worker pool and the collector."""
        if self._running:
            logger.warning("enrichment_already_running")
            return
        self._running = True
        self._workers = [
            asyncio.create_task(self._worker_loop(i), name=f"enrichment-worker-{i}")
            for i in range(self._settings.max_workers)
        ]
        self._collector = asyncio.create_task(self._collect_loop(), name="enrichment-collector")
        logger.info("enrichment_started", max_workers=self._settings.max_workers)

    async def stop(self) -> None:
        """Cancel workers, collector and price tasks; fail pending completions."""
        self._running = False
        tasks = [*self._workers, *self._price_tasks.values()]
        if self._collector is not None:
            tasks.append(self._collector)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._workers = []
        self._collector = None
        self._price_tasks.clear()
        self._price_subjects.clear()

        for future in self._completions.values():
            if not future.done():
                future.cancel()
        self._completions.clear()
        self._claims.clear()
        logger.info("enrichment_stopped")

    # ──────────────────────────────────────────────
    # Record classification
    # ──────────────────────────────────────────────

    async def submit(self, record: Record) -> "asyncio.Future[Record] | None":
        """Claim an unprocessed record and queue it for classification.

        Returns:
            A future resolved with the record once enriched or failed, or
            None if the record was not unprocessed or is already claimed.
        """
        key = record.natural_key
        if not record.needs_enrichment or key in self._claims:
            return None

        # claim synchronously so a concurrent submit of the same key bails out above
        self._claims.add(key)
        try:
            claimed = await self._store.mark_processing(key)
        except BaseException:
            self._claims.discard(key)
            raise
        if claimed is None:
            self._claims.discard(key)
            return None

        future: asyncio.Future[Record] = asyncio.get_running_loop().create_future()
        self._completions[key] = future
        self._bus.publish_subject(RECORD_UPDATED, claimed.subject, claimed.to_dict())
        self._work.put_nowait(claimed)
        logger.debug("enrichment_submitted", natural_key=key, queued=self._work.qsize())
        return future

    async def submit_many(self, records: list[Record]) -> list["asyncio.Future[Record]"]:
        futures = []
        for record in records:
            future = await self.submit(record)
            if future is not None:
                futures.append(future)
        return futures

    async def retry(self, subject: str) -> list[Record]:
        """Resubmit every failed record of a subject and wait for the outcome.

        Raises:
            RetryTimeoutError: If some records are still processing after
                retry_timeout seconds. Records already re-enriched stay so.
        """
        failed = await self._store.list_failed(subject)
        futures = []
        for record in failed:
            reset = await self._store.reset_failed(record.natural_key)
            if reset is None:
                continue
            self._bus.publish_subject(RECORD_UPDATED, subject, reset.to_dict())
            future = await self.submit(reset)
            if future is not None:
                futures.append(future)

        logger.info("enrichment_retry_started", subject=subject, count=len(futures))
        if futures:
            _, pending = await asyncio.wait(futures, timeout=self._settings.retry_timeout)
            if pending:
                raise RetryTimeoutError(
                    f"{len(pending)} of {len(futures)} records still processing after "
                    f"{self._settings.retry_timeout:g}s",
                    pending=len(pending),
                )

        refreshed = []
        for record in failed:
            current = await self._store.get(record.natural_key)
            if current is not None:
                refreshed.append(current)
        return refreshed

    async def _worker_loop(self, index: int) -> None:
        while True:
            record = await self._work.get()
            try:
                if record is None:
                    return
                outcome = await self._classify(record)
                await self._results.put(outcome)
            finally:
                self._work.task_done()

    async def _classify(self, record: Record) -> _Outcome:
        try:
            classification = await self._classifier.classify(record.payload)
        except asyncio.CancelledError:
            raise
        except UpstreamError as e:
            logger.warning(
                "classification_failed",
                natural_key=record.natural_key,
                kind=e.kind,
                error=str(e),
            )
            return _Outcome(record=record, error=str(e), finished_at=time.time())
        except Exception as e:
            logger.error("classification_error", natural_key=record.natural_key, exc_info=True)
            return _Outcome(record=record, error=repr(e), finished_at=time.time())
        return _Outcome(record=record, classification=classification, finished_at=time.time())

    async def _collect_loop(self) -> None:
        while True:
            outcome = await self._results.get()
            if outcome is None:
                return
            key = outcome.record.natural_key
            future = self._completions.pop(key, None)
            try:
                updated = await self._apply(outcome)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("enrichment_apply_error", natural_key=key, exc_info=True)
                if future is not None and not future.done():
                    future.set_exception(e)
            else:
                if future is not None and not future.done():
                    future.set_result(updated)
            finally:
                self._claims.discard(key)

    async def _apply(self, outcome: _Outcome) -> Record:
        key = outcome.record.natural_key
        if outcome.classification is not None:
            updated = await self._store.complete_enrichment(
                key, outcome.classification, processed_at=outcome.finished_at
            )
        else:
            updated = await self._store.fail_enrichment(
                key, outcome.error or "unknown error", processed_at=outcome.finished_at
            )

        if updated is None:
            # state moved on without us; report what the store holds
            current = await self._store.get(key)
            logger.warning("enrichment_result_discarded", natural_key=key)
            return current if current is not None else outcome.record

        self._bus.publish_subject(RECORD_UPDATED, updated.subject, updated.to_dict())
        logger.info(
            "record_enriched",
            natural_key=key,
            state=updated.enrichment_state.value,
            identifiers=list(updated.identifiers),
            direction=updated.direction,
        )
        return updated

    # ──────────────────────────────────────────────
    # Price enrichment
    # ──────────────────────────────────────────────

    def submit_price(self, subject: str, stat: IdentifierStat) -> "asyncio.Future[IdentifierStat]":
        """Fetch prices for a stat, at most once per (identifier, first mention date).

        Cached results are republished immediately. A lookup already in
        flight is shared, and its result is published to every subject that
        asked for it.
        """
        key = stat.price_key
        cached = self._price_cache.get(key)
        if cached is not None:
            result = copy_prices(stat, cached)
            self._bus.publish_subject(IDENTIFIER_UPDATED, subject, result.to_dict())
            future: asyncio.Future[IdentifierStat] = asyncio.get_running_loop().create_future()
            future.set_result(result)
            return future

        self._price_subjects.setdefault(key, {}).setdefault(subject, stat)
        task = self._price_tasks.get(key)
        if task is None or task.done():
            task = asyncio.create_task(self._enrich_prices(subject, stat))
            self._price_tasks[key] = task
            task.add_done_callback(lambda t, k=key: self._price_done(k, t))
        return task

    def submit_prices(
        self, subject: str, stats: list[IdentifierStat]
    ) -> list["asyncio.Future[IdentifierStat]"]:
        return [self.submit_price(subject, stat) for stat in stats]

    def cached_price(self, stat: IdentifierStat) -> IdentifierStat | None:
        """The stat with cached prices applied, or None if not fetched yet."""
        cached = self._price_cache.get(stat.price_key)
        return copy_prices(stat, cached) if cached is not None else None

    def _price_done(self, key: PriceKey, task: "asyncio.Task[IdentifierStat]") -> None:
        if self._price_tasks.get(key) is task:
            del self._price_tasks[key]
            self._price_subjects.pop(key, None)
        if task.cancelled():
            return
        if task.exception() is not None:
            logger.error("price_enrichment_error", identifier=key[0], exc_info=task.exception())

    async def _enrich_prices(self, subject: str, stat: IdentifierStat) -> IdentifierStat:
        identifier = stat.identifier
        first = stat.first_mention_date
        show_current = show_current_return(first, self._today(), self._settings.forward_window_days)
        errors: list[str] = []

        async def lookup(label: str, call) -> PricePoint | None:  # type: ignore[no-untyped-def]
            try:
                return await call
            except UpstreamError as e:
                logger.warning("price_lookup_failed", identifier=identifier, lookup=label, error=str(e))
                errors.append(f"{label}: {e}")
                return None

        at_mention = await lookup(
            "price at mention", self._price_source.price_on_or_before(identifier, first)
        )
        after = current = None
        if at_mention is not None:
            after = await lookup(
                "price after window",
                self._price_source.price_after(identifier, first, self._settings.forward_months),
            )
            if show_current:
                current = await lookup(
                    "current price", self._price_source.most_recent_price(identifier)
                )

        start = at_mention.price if at_mention is not None else None
        enriched = replace(
            stat,
            price_at_mention=start,
            price_at_mention_date=at_mention.date if at_mention is not None else None,
            price_after_window=after.price if after is not None else None,
            price_after_window_date=after.date if after is not None else None,
            return_window=compute_return(start, after.price) if after is not None else None,
            price_current=current.price if current is not None else None,
            price_current_date=current.date if current is not None else None,
            return_current=compute_return(start, current.price) if current is not None else None,
            show_current_return=show_current,
            loading=False,
            error="; ".join(errors) or None,
        )

        if enriched.error is None:
            self._price_cache[stat.price_key] = enriched
        requesters = self._price_subjects.pop(stat.price_key, None) or {subject: stat}
        for requester, requested in requesters.items():
            self._bus.publish_subject(
                IDENTIFIER_UPDATED, requester, copy_prices(requested, enriched).to_dict()
            )
        logger.debug(
            "identifier_priced",
            subjects=len(requesters),
            identifier=identifier,
            return_window=str(enriched.return_window),
            error=enriched.error,
        )
        return enriched
