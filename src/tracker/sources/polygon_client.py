"""Polygon.io daily aggregates as a price source.

All lookups go through get_daily_bars, which takes a token from the polygon
RateLimiter first. Closing prices are converted to Decimal via str() so no
binary float rounding leaks into returns.
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable

import aiohttp

from tracker.config import PolygonSettings
from tracker.exceptions import UpstreamError
from tracker.logging import get_logger
from tracker.models import PricePoint
from tracker.ratelimit.limiter import RateLimiter
from tracker.sources.client import PriceSource

logger = get_logger(__name__)

_SERVICE = "polygon"
_DAYS_PER_MONTH = 30


def _utc_today() -> date:
    return datetime.now(timezone.utc).date()


def bar_to_point(bar: dict[str, Any]) -> PricePoint:
    """Convert a Polygon aggregate bar into a PricePoint."""
    try:
        close = bar["c"]
        timestamp_ms = int(bar["t"])
    except (KeyError, TypeError, ValueError) as e:
        raise UpstreamError("Malformed price bar", kind="parse", service=_SERVICE) from e
    day = datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc).date()
    return PricePoint(price=Decimal(str(close)), date=day)


class PolygonClient(PriceSource):
    """Concrete price source backed by Polygon daily aggregates."""

    def __init__(
        self,
        settings: PolygonSettings,
        rate_limiter: RateLimiter,
        session: aiohttp.ClientSession | None = None,
        today: Callable[[], date] = _utc_today,
    ) -> None:
        self._settings = settings
        self._limiter = rate_limiter
        self._session = session
        self._today = today

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._settings.request_timeout),
            )
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    # ──────────────────────────────────────────────
    # Raw aggregates
    # ──────────────────────────────────────────────

    async def get_daily_bars(
        self, identifier: str, from_date: date, to_date: date
    ) -> list[dict[str, Any]]:
        """Daily OHLC bars between two dates inclusive, oldest first."""
        await self._limiter.acquire()

        url = (
            f"{self._settings.base_url}/v2/aggs/ticker/{identifier}/range/1/day/"
            f"{from_date.isoformat()}/{to_date.isoformat()}"
        )
        params = {
            "apiKey": self._settings.api_key.get_secret_value(),
            "adjusted": "true",
            "sort": "asc",
            "limit": 200,
        }
        logger.debug(
            "polygon_bars_request",
            identifier=identifier,
            from_date=from_date.isoformat(),
            to_date=to_date.isoformat(),
        )

        try:
            async with self._get_session().get(url, params=params) as response:
                if response.status != 200:
                    detail = await response.text()
                    logger.error("polygon_http_error", status=response.status, detail=detail[:500])
                    raise UpstreamError(
                        f"API returned status {response.status}",
                        kind="http_status",
                        service=_SERVICE,
                    )
                body = await response.json()
        except aiohttp.ClientError as e:
            raise UpstreamError(
                f"Request failed: {e!r}", kind="transport", service=_SERVICE
            ) from e
        except TimeoutError as e:
            raise UpstreamError("Request timed out", kind="transport", service=_SERVICE) from e

        return _parse_bars(body)

    # ──────────────────────────────────────────────
    # PriceSource
    # ──────────────────────────────────────────────

    async def price_on_or_before(self, identifier: str, on: date) -> PricePoint:
        from_date = on - timedelta(days=self._settings.lookback_days)
        bars = await self.get_daily_bars(identifier, from_date, on)
        if not bars:
            raise UpstreamError("No price data found", kind="no_data", service=_SERVICE)
        return bar_to_point(bars[-1])

    async def price_after(self, identifier: str, start: date, months: int) -> PricePoint:
        target = start + timedelta(days=months * _DAYS_PER_MONTH)
        slack = timedelta(days=self._settings.forward_window_slack_days)
        bars = await self.get_daily_bars(identifier, target - slack, target + slack)
        if not bars:
            # window still in the future or a gap in the data
            return await self.most_recent_price(identifier)

        target_ms = int(datetime.combine(target, time.min, tzinfo=timezone.utc).timestamp() * 1000)
        closest = min(bars, key=lambda bar: abs(int(bar.get("t", 0)) - target_ms))
        return bar_to_point(closest)

    async def most_recent_price(self, identifier: str) -> PricePoint:
        today = self._today()
        from_date = today - timedelta(days=self._settings.lookback_days)
        bars = await self.get_daily_bars(identifier, from_date, today)
        if not bars:
            raise UpstreamError("No recent price data found", kind="no_data", service=_SERVICE)
        return bar_to_point(bars[-1])


def _parse_bars(body: Any) -> list[dict[str, Any]]:
    if not isinstance(body, dict):
        raise UpstreamError("Unexpected response format", kind="parse", service=_SERVICE)

    status = body.get("status")
    if status == "ERROR":
        raise UpstreamError(str(body.get("error", "Unknown error")), kind="http_status", service=_SERVICE)
    if status not in ("OK", "DELAYED"):
        raise UpstreamError("Unexpected response format", kind="parse", service=_SERVICE)

    results = body.get("results")
    if body.get("resultsCount") == 0 or results is None:
        return []
    if not isinstance(results, list):
        raise UpstreamError("Unexpected response format", kind="parse", service=_SERVICE)
    return results
