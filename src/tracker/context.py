"""Explicit application context: every long-lived component, wired once.

Components are handed their collaborators through constructors; nothing is
looked up through module globals. Wiring order:

1. RateLimiter per external service (reddit, openai, polygon)
2. RecordDatabase + RecordStore
3. NotificationBus
4. Source clients (RedditClient, OpenAIClassifier, PolygonClient)
5. EnrichmentCoordinator
6. BackfillController
7. LookupService
"""

from __future__ import annotations

from tracker.config import AppSettings
from tracker.data.database import RecordDatabase
from tracker.data.store import RecordStore
from tracker.logging import get_logger
from tracker.notifications import NotificationBus
from tracker.pipeline.backfill import BackfillController
from tracker.pipeline.enrichment import EnrichmentCoordinator
from tracker.pipeline.lookup import LookupService
from tracker.ratelimit.limiter import RateLimiter
from tracker.sources.client import Classifier, PriceSource, RecordSource
from tracker.sources.openai_client import OpenAIClassifier
from tracker.sources.polygon_client import PolygonClient
from tracker.sources.reddit_client import RedditClient

logger = get_logger(__name__)


def build_rate_limiters(settings: AppSettings) -> dict[str, RateLimiter]:
    """One limiter per external service, shared by every caller of that service."""
    limits = settings.rate_limits
    return {
        name: RateLimiter(name, limit.capacity, limit.period_seconds)
        for name, limit in (
            ("reddit", limits.reddit),
            ("openai", limits.openai),
            ("polygon", limits.polygon),
        )
    }


class AppContext:
    """Owns the component graph and its start/stop order.

    Clients can be injected (tests, alternative providers); by default the
    concrete aiohttp clients are built from settings.
    """

    def __init__(
        self,
        settings: AppSettings,
        source: RecordSource | None = None,
        classifier: Classifier | None = None,
        price_source: PriceSource | None = None,
    ) -> None:
        self.settings = settings
        self.limiters = build_rate_limiters(settings)

        self.database = RecordDatabase(settings.database.path)
        self.store = RecordStore(self.database)
        self.bus = NotificationBus()

        self.source = source or RedditClient(settings.reddit, self.limiters["reddit"])
        self.classifier = classifier or OpenAIClassifier(settings.openai, self.limiters["openai"])
        self.price_source = price_source or PolygonClient(
            settings.polygon, self.limiters["polygon"]
        )

        self.coordinator = EnrichmentCoordinator(
            store=self.store,
            classifier=self.classifier,
            price_source=self.price_source,
            bus=self.bus,
            settings=settings.enrichment,
        )
        self.backfill = BackfillController(
            source=self.source,
            store=self.store,
            coordinator=self.coordinator,
            bus=self.bus,
            settings=settings.backfill,
        )
        self.lookup = LookupService(
            source=self.source,
            store=self.store,
            coordinator=self.coordinator,
            backfill=self.backfill,
            settings=settings.enrichment,
        )
        self._started = False

    async def start(self) -> None:
        if self._started:
            return
        await self.database.connect()
        await self.store.reset_stale_processing()
        for limiter in self.limiters.values():
            await limiter.start()
        await self.coordinator.start()
        self._started = True
        logger.info(
            "context_started",
            records=await self.store.count(),
            limiters=sorted(self.limiters),
        )

    async def stop(self) -> None:
        """Stop in reverse wiring order. Safe to call more than once."""
        if not self._started:
            return
        self._started = False
        await self.backfill.stop()
        await self.coordinator.stop()
        self.bus.close()
        for limiter in self.limiters.values():
            await limiter.stop()
        for client in (self.source, self.classifier, self.price_source):
            await client.close()
        await self.database.close()
        logger.info("context_stopped")
