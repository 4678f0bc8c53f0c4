"""Tests for LookupService: URL lookup, subject loading and derived views."""

from datetime import date
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from tracker.config import EnrichmentSettings
from tracker.data.store import RecordStore
from tracker.exceptions import UpstreamError, ValidationError
from tracker.models import BackfillJob, Classification, EnrichmentState, IdentifierStat, Page
from tracker.pipeline.lookup import LookupService
from tracker.sources.client import RecordSource

URL = "https://www.reddit.com/r/stocks/comments/abc123/my_thesis/"


class FakeSource(RecordSource):
    def __init__(self, records: dict | None = None, page: Page | None = None) -> None:
        self.records = records or {}
        self.page = page or Page([], None)
        self.error: Exception | None = None
        self.get_calls: list[str] = []
        self.list_calls: list[tuple[str, str | None, int]] = []

    async def list_records(self, subject: str, cursor: str | None = None, limit: int = 25) -> Page:
        self.list_calls.append((subject, cursor, limit))
        if self.error is not None:
            raise self.error
        return self.page

    async def get_record(self, natural_key: str) -> dict:
        self.get_calls.append(natural_key)
        if natural_key not in self.records:
            raise UpstreamError(f"Record {natural_key} not found", kind="not_found")
        return self.records[natural_key]

    async def close(self) -> None:
        pass


def _coordinator() -> MagicMock:
    coordinator = MagicMock()
    coordinator.submit = AsyncMock(return_value=None)
    coordinator.submit_many = AsyncMock(return_value=[])
    coordinator.retry = AsyncMock(return_value=[])
    coordinator.cached_price = MagicMock(return_value=None)
    coordinator.submit_price = MagicMock()
    return coordinator


def _backfill() -> MagicMock:
    backfill = MagicMock()
    backfill.start = AsyncMock(side_effect=lambda subject: BackfillJob(subject=subject, generation=1))
    backfill.progress = MagicMock(return_value=None)
    return backfill


def _service(source: RecordSource, store: RecordStore, **kwargs) -> LookupService:
    return LookupService(
        source=source,
        store=store,
        coordinator=kwargs.get("coordinator") or _coordinator(),
        backfill=kwargs.get("backfill") or _backfill(),
        settings=EnrichmentSettings(lookup_limit=5),
        today=lambda: date(2024, 1, 1),
    )


class TestLookupUrl:
    @pytest.mark.asyncio
    async def test_fetches_unknown_record(self, store: RecordStore, make_attrs) -> None:
        source = FakeSource(
            records={"abc123": make_attrs("abc123")},
            page=Page([make_attrs("abc123")], None),
        )
        coordinator = _coordinator()
        backfill = _backfill()
        service = _service(source, store, coordinator=coordinator, backfill=backfill)

        result = await service.lookup_url(URL)

        assert result.record.natural_key == "abc123"
        assert result.record.subject == "alice"
        assert source.get_calls == ["abc123"]
        assert await store.get("abc123") is not None
        coordinator.submit.assert_awaited_once()
        backfill.start.assert_awaited_once_with("alice")
        assert result.backfill is not None
        assert result.error is None
        assert [r.natural_key for r in result.records] == ["abc123"]

    @pytest.mark.asyncio
    async def test_stored_record_not_refetched(self, store: RecordStore, make_attrs) -> None:
        await store.upsert("abc123", make_attrs("abc123"))
        source = FakeSource()

        result = await _service(source, store).lookup_url(URL)

        assert source.get_calls == []
        assert result.record.natural_key == "abc123"

    @pytest.mark.asyncio
    async def test_invalid_url(self, store: RecordStore) -> None:
        with pytest.raises(ValidationError, match="Invalid Reddit URL format"):
            await _service(FakeSource(), store).lookup_url("https://example.com/post/1")

    @pytest.mark.asyncio
    async def test_missing_record_propagates(self, store: RecordStore) -> None:
        with pytest.raises(UpstreamError) as excinfo:
            await _service(FakeSource(), store).lookup_url(URL)
        assert excinfo.value.kind == "not_found"

    @pytest.mark.asyncio
    async def test_deleted_author_skips_subject_load(self, store: RecordStore, make_attrs) -> None:
        source = FakeSource(records={"abc123": make_attrs("abc123", subject="[deleted]")})
        backfill = _backfill()

        result = await _service(source, store, backfill=backfill).lookup_url(URL)

        assert result.record.subject == "[deleted]"
        assert source.list_calls == []
        backfill.start.assert_not_awaited()
        assert result.backfill is None

    @pytest.mark.asyncio
    async def test_subject_load_failure_reported(self, store: RecordStore, make_attrs) -> None:
        source = FakeSource(records={"abc123": make_attrs("abc123")})
        source.error = UpstreamError("Reddit request failed: 503", kind="http_status")
        backfill = _backfill()

        result = await _service(source, store, backfill=backfill).lookup_url(URL)

        # the primary record is stored, so the stored list is served
        assert result.error is None
        assert [r.natural_key for r in result.records] == ["abc123"]
        backfill.start.assert_awaited_once()


class TestLoadSubject:
    @pytest.mark.asyncio
    async def test_only_newer_records_upserted(self, store: RecordStore, make_attrs) -> None:
        await store.upsert("b", make_attrs("b", 200))
        await store.upsert("a", make_attrs("a", 100))
        source = FakeSource(
            page=Page(
                [make_attrs("d", 400), make_attrs("c", 300), make_attrs("b", 200), make_attrs("a", 100)],
                "t3_a",
            )
        )
        coordinator = _coordinator()

        records = await _service(source, store, coordinator=coordinator).load_subject("alice")

        assert [r.natural_key for r in records] == ["d", "c", "b", "a"]
        assert source.list_calls == [("alice", None, 5)]
        # the stored rows were not rewritten
        b = await store.get("b")
        assert b is not None and b.version == 1
        submitted = coordinator.submit_many.await_args.args[0]
        assert [r.natural_key for r in submitted] == ["d", "c", "b", "a"]

    @pytest.mark.asyncio
    async def test_source_failure_falls_back_to_store(self, store: RecordStore, make_attrs) -> None:
        await store.upsert("a", make_attrs("a"))
        source = FakeSource()
        source.error = UpstreamError("boom", kind="transport")

        records = await _service(source, store).load_subject("alice")

        assert [r.natural_key for r in records] == ["a"]

    @pytest.mark.asyncio
    async def test_source_failure_with_empty_store_raises(self, store: RecordStore) -> None:
        source = FakeSource()
        source.error = UpstreamError("boom", kind="transport")

        with pytest.raises(UpstreamError):
            await _service(source, store).load_subject("alice")

    @pytest.mark.asyncio
    async def test_subject_case_is_ignored(self, store: RecordStore, make_attrs) -> None:
        source = FakeSource(page=Page([make_attrs("a", subject="Alice")], None))
        service = _service(source, store)

        records = await service.load_subject("ALICE")

        assert [r.natural_key for r in records] == ["a"]
        assert source.list_calls == [("alice", None, 5)]
        assert [r.natural_key for r in await service.load_subject("alice")] == ["a"]

    @pytest.mark.asyncio
    async def test_invalid_subject(self, store: RecordStore) -> None:
        with pytest.raises(ValidationError):
            await _service(FakeSource(), store).load_subject("no spaces allowed")


class TestDerivedViews:
    async def _seed(self, store: RecordStore, make_attrs) -> None:
        await store.upsert("a", make_attrs("a", 1_700_000_000))
        await store.mark_processing("a")
        await store.complete_enrichment("a", Classification(["AAPL"], "long", "high"))

    @pytest.mark.asyncio
    async def test_identifier_stats_request_missing_prices(
        self, store: RecordStore, make_attrs
    ) -> None:
        await self._seed(store, make_attrs)
        coordinator = _coordinator()

        stats = await _service(FakeSource(), store, coordinator=coordinator).identifier_stats("alice")

        assert [s.identifier for s in stats] == ["AAPL"]
        assert stats[0].loading is True
        assert stats[0].show_current_return is True
        coordinator.submit_price.assert_called_once()
        assert coordinator.submit_price.call_args.args[0] == "alice"

    @pytest.mark.asyncio
    async def test_cached_prices_used(self, store: RecordStore, make_attrs) -> None:
        await self._seed(store, make_attrs)
        coordinator = _coordinator()
        coordinator.cached_price.return_value = IdentifierStat(
            identifier="AAPL",
            first_mention_at=1_700_000_000,
            direction="long",
            mention_count=1,
            return_window=Decimal("12.50"),
            loading=False,
        )
        service = _service(FakeSource(), store, coordinator=coordinator)

        summary = await service.summary("alice")

        coordinator.submit_price.assert_not_called()
        assert summary is not None
        assert summary.long.right == 1
        assert summary.long.avg_return_right == Decimal("12.50")

    @pytest.mark.asyncio
    async def test_snapshot_holds_records_and_stats(self, store: RecordStore, make_attrs) -> None:
        await self._seed(store, make_attrs)

        view = await _service(FakeSource(), store).snapshot("alice")

        assert [r.natural_key for r in view.records] == ["a"]
        assert view.records[0].enrichment_state == EnrichmentState.ENRICHED
        assert [s.identifier for s in view.stats] == ["AAPL"]

    @pytest.mark.asyncio
    async def test_failed_records(self, store: RecordStore, make_attrs) -> None:
        await store.upsert("a", make_attrs("a"))
        await store.mark_processing("a")
        await store.fail_enrichment("a", "timeout")

        failed = await _service(FakeSource(), store).failed_records("u/alice")

        assert [r.natural_key for r in failed] == ["a"]
