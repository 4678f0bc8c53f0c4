"""Reddit record source via aiohttp.

Uses the application-only (client credentials) OAuth flow. The bearer token
is cached until shortly before it expires. Every HTTP request, including
token refreshes, takes a token from the reddit RateLimiter first.
"""

from __future__ import annotations

import time
from typing import Any

import aiohttp

from tracker.config import RedditSettings
from tracker.exceptions import UpstreamError
from tracker.logging import get_logger
from tracker.models import Page
from tracker.ratelimit.limiter import RateLimiter
from tracker.sources.client import RecordSource

logger = get_logger(__name__)

_SERVICE = "reddit"
_TOKEN_EXPIRY_MARGIN = 60.0


def submission_to_attrs(submission: dict[str, Any]) -> dict[str, Any]:
    """Convert a Reddit submission payload into RecordStore attributes."""
    return {
        "natural_key": submission.get("id", ""),
        "subject": submission.get("author", ""),
        "created_at": int(submission.get("created_utc") or 0),
        "title": submission.get("title", ""),
        "body": submission.get("selftext") or "",
        "community": submission.get("subreddit") or "",
        "flair": submission.get("link_flair_text"),
        "score": submission.get("score") or 0,
        "num_comments": submission.get("num_comments") or 0,
        "permalink": submission.get("permalink") or "",
        "raw": submission,
    }


class RedditClient(RecordSource):
    """Concrete record source backed by the Reddit OAuth API."""

    def __init__(
        self,
        settings: RedditSettings,
        rate_limiter: RateLimiter,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._settings = settings
        self._limiter = rate_limiter
        self._session = session
        self._token: str | None = None
        self._token_expires_at = 0.0

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._settings.request_timeout),
                headers={"User-Agent": self._settings.user_agent},
            )
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
        logger.info("reddit_client_closed")

    async def list_records(
        self,
        subject: str,
        cursor: str | None = None,
        limit: int = 25,
    ) -> Page:
        params: dict[str, Any] = {"limit": limit, "sort": "new"}
        if cursor:
            params["after"] = cursor

        body = await self._get_json(f"/user/{subject}/submitted", params)
        try:
            data = body["data"]
            children = data["children"]
        except (KeyError, TypeError) as e:
            raise UpstreamError(
                "Failed to parse user posts response", kind="parse", service=_SERVICE
            ) from e

        records = [submission_to_attrs(child["data"]) for child in children]
        logger.debug(
            "reddit_page_fetched",
            subject=subject,
            count=len(records),
            has_next=data.get("after") is not None,
        )
        return Page(records=records, next_cursor=data.get("after"))

    async def get_record(self, natural_key: str) -> dict[str, Any]:
        body = await self._get_json("/api/info", {"id": f"t3_{natural_key}"})
        try:
            children = body["data"]["children"]
        except (KeyError, TypeError) as e:
            raise UpstreamError(
                "Failed to parse post response", kind="parse", service=_SERVICE
            ) from e
        if not children:
            raise UpstreamError("Post not found", kind="not_found", service=_SERVICE)
        return submission_to_attrs(children[0]["data"])

    async def _get_json(self, path: str, params: dict[str, Any]) -> Any:
        token = await self._access_token()
        await self._limiter.acquire()
        url = f"{self._settings.base_url}{path}"
        try:
            async with self._get_session().get(
                url,
                params=params,
                headers={"Authorization": f"Bearer {token}"},
            ) as response:
                if response.status == 404:
                    raise UpstreamError("User not found", kind="not_found", service=_SERVICE)
                if response.status != 200:
                    text = await response.text()
                    if response.status == 401:
                        # force a fresh token on the next call
                        self._token = None
                    raise UpstreamError(
                        f"Reddit request failed: {response.status} - {text[:200]}",
                        kind="http_status",
                        service=_SERVICE,
                    )
                return await response.json()
        except aiohttp.ClientError as e:
            raise UpstreamError(
                f"Request failed: {e!r}", kind="transport", service=_SERVICE
            ) from e
        except TimeoutError as e:
            raise UpstreamError("Request timed out", kind="transport", service=_SERVICE) from e

    async def _access_token(self) -> str:
        if self._token is not None and time.time() < self._token_expires_at:
            return self._token

        app_id = self._settings.app_id.get_secret_value()
        app_secret = self._settings.app_secret.get_secret_value()
        if not app_id or not app_secret:
            raise UpstreamError(
                "REDDIT_APP_ID / REDDIT_APP_SECRET not set", kind="config", service=_SERVICE
            )

        await self._limiter.acquire()
        try:
            async with self._get_session().post(
                self._settings.auth_url,
                data={"grant_type": "client_credentials"},
                auth=aiohttp.BasicAuth(app_id, app_secret),
            ) as response:
                if response.status != 200:
                    raise UpstreamError(
                        f"Auth failed with status: {response.status}",
                        kind="http_status",
                        service=_SERVICE,
                    )
                body = await response.json()
        except aiohttp.ClientError as e:
            raise UpstreamError(
                f"Request failed: {e!r}", kind="transport", service=_SERVICE
            ) from e
        except TimeoutError as e:
            raise UpstreamError("Auth request timed out", kind="transport", service=_SERVICE) from e

        token = body.get("access_token") if isinstance(body, dict) else None
        if not token:
            raise UpstreamError("Failed to parse token response", kind="parse", service=_SERVICE)

        self._token = token
        expires_in = float(body.get("expires_in", 3600))
        self._token_expires_at = time.time() + max(0.0, expires_in - _TOKEN_EXPIRY_MARGIN)
        logger.debug("reddit_token_refreshed", expires_in=expires_in)
        return token
