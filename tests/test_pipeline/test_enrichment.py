"""Tests for EnrichmentCoordinator: claim-once submission, outcomes, retry, prices."""

import asyncio
from collections.abc import AsyncIterator
from datetime import date
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from tracker.config import EnrichmentSettings
from tracker.data.store import RecordStore
from tracker.exceptions import RetryTimeoutError, UpstreamError
from tracker.models import Classification, EnrichmentState, IdentifierStat, PricePoint
from tracker.notifications import (
    IDENTIFIER_UPDATED,
    RECORD_UPDATED,
    NotificationBus,
    subject_topic,
)
from tracker.pipeline.enrichment import EnrichmentCoordinator
from tracker.sources.client import Classifier

FIRST_MENTION = 1_700_000_000  # 2023-11-14 UTC


class GatedClassifier(Classifier):
    """Classifier whose calls block until the gate is opened."""

    def __init__(
        self,
        result: Classification | None = None,
        error: Exception | None = None,
        open_gate: bool = True,
    ) -> None:
        self.result = result or Classification(["AAPL"], "long", "high")
        self.error = error
        self.calls: list[str] = []
        self.gate = asyncio.Event()
        if open_gate:
            self.gate.set()

    async def classify(self, text: str) -> Classification:
        self.calls.append(text)
        await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.result

    async def close(self) -> None:
        pass


def _price_source() -> AsyncMock:
    source = AsyncMock()
    source.price_on_or_before = AsyncMock(
        return_value=PricePoint(Decimal("100"), date(2023, 11, 14))
    )
    source.price_after = AsyncMock(return_value=PricePoint(Decimal("110"), date(2024, 5, 12)))
    source.most_recent_price = AsyncMock(
        return_value=PricePoint(Decimal("120.50"), date(2023, 12, 29))
    )
    return source


def _stat(identifier: str = "AAPL") -> IdentifierStat:
    return IdentifierStat(
        identifier=identifier,
        first_mention_at=FIRST_MENTION,
        direction="long",
        mention_count=1,
    )


@pytest.fixture
def classifier() -> GatedClassifier:
    return GatedClassifier()


@pytest.fixture
def price_source() -> AsyncMock:
    return _price_source()


@pytest_asyncio.fixture
async def coordinator(
    store: RecordStore,
    classifier: GatedClassifier,
    price_source: AsyncMock,
    bus: NotificationBus,
) -> AsyncIterator[EnrichmentCoordinator]:
    coord = EnrichmentCoordinator(
        store=store,
        classifier=classifier,
        price_source=price_source,
        bus=bus,
        settings=EnrichmentSettings(max_workers=2, retry_timeout=0.2),
        today=lambda: date(2024, 1, 1),
    )
    await coord.start()
    yield coord
    await coord.stop()


def _drain(sub) -> list:
    events = []
    while not sub._queue.empty():
        event = sub._queue.get_nowait()
        if event is not None:
            events.append(event)
    return events


class TestSubmit:
    @pytest.mark.asyncio
    async def test_concurrent_double_submit_runs_once(
        self,
        store: RecordStore,
        coordinator: EnrichmentCoordinator,
        classifier: GatedClassifier,
        make_attrs,
    ) -> None:
        classifier.gate.clear()
        record = await store.upsert("abc", make_attrs("abc"))

        first, second = await asyncio.gather(coordinator.submit(record), coordinator.submit(record))

        futures = [f for f in (first, second) if f is not None]
        assert len(futures) == 1

        classifier.gate.set()
        enriched = await asyncio.wait_for(futures[0], timeout=1.0)

        assert len(classifier.calls) == 1
        assert enriched.enrichment_state == EnrichmentState.ENRICHED
        assert enriched.identifiers == ("AAPL",)
        assert enriched.direction == "long"
        assert enriched.confidence == "high"
        assert enriched.processed_at is not None

    @pytest.mark.asyncio
    async def test_submit_ignores_enriched_record(
        self, store: RecordStore, coordinator: EnrichmentCoordinator, make_attrs
    ) -> None:
        record = await store.upsert("abc", make_attrs("abc"))
        future = await coordinator.submit(record)
        assert future is not None
        enriched = await asyncio.wait_for(future, timeout=1.0)

        assert await coordinator.submit(enriched) is None
        # a stale copy still saying unprocessed loses the compare-and-set
        assert await coordinator.submit(record) is None

    @pytest.mark.asyncio
    async def test_payload_is_title_and_body(
        self,
        store: RecordStore,
        coordinator: EnrichmentCoordinator,
        classifier: GatedClassifier,
        make_attrs,
    ) -> None:
        record = await store.upsert("abc", make_attrs("abc", title="Thesis", body="Long MSFT"))
        future = await coordinator.submit(record)
        assert future is not None
        await asyncio.wait_for(future, timeout=1.0)

        assert classifier.calls == ["Thesis\n\nLong MSFT"]

    @pytest.mark.asyncio
    async def test_classification_failure_marks_failed(
        self,
        store: RecordStore,
        coordinator: EnrichmentCoordinator,
        classifier: GatedClassifier,
        bus: NotificationBus,
        make_attrs,
    ) -> None:
        classifier.error = UpstreamError("OpenAI API returned status 500", kind="http_status")
        sub = bus.subscribe(subject_topic("alice"))
        record = await store.upsert("abc", make_attrs("abc"))

        future = await coordinator.submit(record)
        assert future is not None
        failed = await asyncio.wait_for(future, timeout=1.0)

        assert failed.enrichment_state == EnrichmentState.FAILED
        assert "status 500" in (failed.error or "")
        states = [e.data["enrichment_state"] for e in _drain(sub) if e.type == RECORD_UPDATED]
        assert states == ["processing", "failed"]
        assert coordinator.in_flight == 0


class TestRetry:
    @pytest.mark.asyncio
    async def test_retry_reenriches_failed_records(
        self, store: RecordStore, coordinator: EnrichmentCoordinator, make_attrs
    ) -> None:
        for key in ("a", "b"):
            await store.upsert(key, make_attrs(key))
            await store.mark_processing(key)
            await store.fail_enrichment(key, "timeout")

        records = await coordinator.retry("alice")

        assert sorted(r.natural_key for r in records) == ["a", "b"]
        assert all(r.enrichment_state == EnrichmentState.ENRICHED for r in records)
        assert await store.list_failed("alice") == []

    @pytest.mark.asyncio
    async def test_retry_with_nothing_failed(self, coordinator: EnrichmentCoordinator) -> None:
        assert await coordinator.retry("alice") == []

    @pytest.mark.asyncio
    async def test_retry_timeout_keeps_partial_state(
        self,
        store: RecordStore,
        coordinator: EnrichmentCoordinator,
        classifier: GatedClassifier,
        make_attrs,
    ) -> None:
        classifier.gate.clear()
        await store.upsert("a", make_attrs("a"))
        await store.mark_processing("a")
        await store.fail_enrichment("a", "boom")

        with pytest.raises(RetryTimeoutError) as excinfo:
            await coordinator.retry("alice")

        assert excinfo.value.pending == 1
        record = await store.get("a")
        assert record is not None
        assert record.enrichment_state == EnrichmentState.PROCESSING

        classifier.gate.set()


class TestPrices:
    @pytest.mark.asyncio
    async def test_price_sequence_and_returns(
        self,
        coordinator: EnrichmentCoordinator,
        price_source: AsyncMock,
        bus: NotificationBus,
    ) -> None:
        sub = bus.subscribe(subject_topic("alice"))

        stat = await asyncio.wait_for(coordinator.submit_price("alice", _stat()), timeout=1.0)

        price_source.price_on_or_before.assert_awaited_once_with("AAPL", date(2023, 11, 14))
        price_source.price_after.assert_awaited_once_with("AAPL", date(2023, 11, 14), 6)
        price_source.most_recent_price.assert_awaited_once_with("AAPL")
        assert stat.price_at_mention == Decimal("100")
        assert stat.return_window == Decimal("10.00")
        assert stat.return_current == Decimal("20.50")
        assert stat.show_current_return is True
        assert stat.loading is False
        assert stat.error is None

        events = _drain(sub)
        assert [e.type for e in events] == [IDENTIFIER_UPDATED]
        assert events[0].data["return_window"] == "10.00"

    @pytest.mark.asyncio
    async def test_completed_prices_are_cached(
        self, coordinator: EnrichmentCoordinator, price_source: AsyncMock
    ) -> None:
        await coordinator.submit_price("alice", _stat())
        again = await coordinator.submit_price("alice", _stat())

        assert price_source.price_on_or_before.await_count == 1
        assert again.return_window == Decimal("10.00")
        assert coordinator.cached_price(_stat()) is not None

    @pytest.mark.asyncio
    async def test_in_flight_lookup_is_shared(
        self, coordinator: EnrichmentCoordinator, price_source: AsyncMock
    ) -> None:
        first = coordinator.submit_price("alice", _stat())
        second = coordinator.submit_price("alice", _stat())

        assert first is second
        await first
        assert price_source.price_on_or_before.await_count == 1

    @pytest.mark.asyncio
    async def test_shared_lookup_is_published_to_every_subject(
        self,
        coordinator: EnrichmentCoordinator,
        price_source: AsyncMock,
        bus: NotificationBus,
    ) -> None:
        alice = bus.subscribe(subject_topic("alice"))
        bobby = bus.subscribe(subject_topic("bobby"))

        first = coordinator.submit_price("alice", _stat())
        second = coordinator.submit_price("bobby", _stat())
        await asyncio.wait_for(asyncio.gather(first, second), timeout=1.0)

        assert price_source.price_on_or_before.await_count == 1
        alice_events = _drain(alice)
        bobby_events = _drain(bobby)
        assert [e.type for e in alice_events] == [IDENTIFIER_UPDATED]
        assert [e.type for e in bobby_events] == [IDENTIFIER_UPDATED]
        assert bobby_events[0].data["loading"] is False
        assert bobby_events[0].data["return_window"] == "10.00"

    @pytest.mark.asyncio
    async def test_failed_start_price_skips_other_lookups(
        self, coordinator: EnrichmentCoordinator, price_source: AsyncMock
    ) -> None:
        price_source.price_on_or_before.side_effect = UpstreamError(
            "No price data found", kind="no_data"
        )

        stat = await coordinator.submit_price("alice", _stat())

        price_source.price_after.assert_not_awaited()
        price_source.most_recent_price.assert_not_awaited()
        assert stat.price_at_mention is None
        assert stat.return_window is None
        assert stat.loading is False
        assert "No price data found" in (stat.error or "")
        assert coordinator.cached_price(_stat()) is None

    @pytest.mark.asyncio
    async def test_current_price_skipped_after_window(
        self, store: RecordStore, bus: NotificationBus, price_source: AsyncMock
    ) -> None:
        coord = EnrichmentCoordinator(
            store=store,
            classifier=GatedClassifier(),
            price_source=price_source,
            bus=bus,
            settings=EnrichmentSettings(),
            today=lambda: date(2025, 1, 1),
        )

        stat = await coord.submit_price("alice", _stat())

        price_source.most_recent_price.assert_not_awaited()
        assert stat.show_current_return is False
        assert stat.return_current is None
        assert stat.return_window == Decimal("10.00")
