"""OpenAI classifier: ticker symbol and pitch direction extraction.

Sends the record text to the chat completions endpoint with a strict JSON
schema response format, so the reply is always an object with tickers,
confidence and direction.
"""

from __future__ import annotations

import json
from typing import Any

import aiohttp

from tracker.config import OpenAISettings
from tracker.exceptions import UpstreamError
from tracker.logging import get_logger
from tracker.models import Classification, Direction
from tracker.ratelimit.limiter import RateLimiter
from tracker.sources.client import Classifier

logger = get_logger(__name__)

_SERVICE = "openai"

SYSTEM_PROMPT = """\
You are a financial analysis assistant that extracts stock ticker symbols from text and determines the sentiment/direction.

For ticker extraction:
- Extract only valid stock ticker symbols (e.g., AAPL, MSFT, GME, AMC, TSLA)
- Only include tickers that are explicitly mentioned or strongly implied in the context
- Do not include cryptocurrency symbols or made-up tickers
- If no valid stock tickers are found, return an empty array

For direction/sentiment:
- "long": The post is bullish/positive on the stock(s), suggesting to buy or hold
- "short": The post is bearish/negative on the stock(s), suggesting to sell or short
- "neutral": The post discusses the stock(s) without clear bullish or bearish sentiment
- "n/a": Cannot determine the direction (e.g., just mentioning tickers without opinion)
"""

RESPONSE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "tickers": {
            "type": "array",
            "items": {
                "type": "string",
                "pattern": "^[A-Z]{1,5}$",
                "description": "A valid stock ticker symbol (1-5 uppercase letters)",
            },
        },
        "confidence": {
            "type": "string",
            "enum": ["high", "medium", "low"],
            "description": "Confidence level of the extraction",
        },
        "direction": {
            "type": "string",
            "enum": [d.value for d in Direction],
            "description": (
                "The sentiment/direction of the stock pitch: long (bullish), "
                "short (bearish), neutral, or n/a if unclear"
            ),
        },
    },
    "required": ["tickers", "confidence", "direction"],
    "additionalProperties": False,
}


def build_request_body(model: str, text: str) -> dict[str, Any]:
    return {
        "model": model,
        "messages": [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": text},
        ],
        "response_format": {
            "type": "json_schema",
            "json_schema": {
                "name": "ticker_extraction",
                "schema": RESPONSE_SCHEMA,
                "strict": True,
            },
        },
    }


def parse_completion(body: Any) -> Classification:
    """Extract the classification from a chat completions response.

    Raises:
        UpstreamError: kind="parse" if the response is not the expected shape.
    """
    try:
        content = body["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError) as e:
        raise UpstreamError("Unexpected response format", kind="parse", service=_SERVICE) from e

    try:
        parsed = json.loads(content)
        tickers = parsed["tickers"]
        direction = parsed["direction"]
        confidence = parsed["confidence"]
    except (json.JSONDecodeError, KeyError, TypeError) as e:
        raise UpstreamError("Failed to parse response", kind="parse", service=_SERVICE) from e

    if not isinstance(tickers, list):
        raise UpstreamError("Failed to parse response", kind="parse", service=_SERVICE)

    # order preserved, duplicates dropped
    identifiers = list(dict.fromkeys(str(t).upper() for t in tickers))
    return Classification(identifiers=identifiers, direction=direction, confidence=confidence)


class OpenAIClassifier(Classifier):
    """Concrete classifier backed by the OpenAI chat completions API."""

    def __init__(
        self,
        settings: OpenAISettings,
        rate_limiter: RateLimiter,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._settings = settings
        self._limiter = rate_limiter
        self._session = session

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

    async def classify(self, text: str) -> Classification:
        api_key = self._settings.api_key.get_secret_value()
        if not api_key:
            raise UpstreamError(
                "OPENAI_API_KEY environment variable not set", kind="config", service=_SERVICE
            )

        await self._limiter.acquire()
        logger.debug("openai_request", model=self._settings.model, chars=len(text))

        try:
            async with self._get_session().post(
                self._settings.url,
                json=build_request_body(self._settings.model, text),
                headers={"Authorization": f"Bearer {api_key}"},
            ) as response:
                if response.status != 200:
                    detail = await response.text()
                    logger.error("openai_http_error", status=response.status, detail=detail[:500])
                    raise UpstreamError(
                        f"OpenAI API returned status {response.status}: {detail[:200]}",
                        kind="http_status",
                        service=_SERVICE,
                    )
                body = await response.json()
        except aiohttp.ClientError as e:
            logger.error("openai_request_failed", error=repr(e))
            raise UpstreamError(
                f"Request failed: {e!r}", kind="transport", service=_SERVICE
            ) from e
        except TimeoutError as e:
            raise UpstreamError("Request timed out", kind="transport", service=_SERVICE) from e

        return parse_completion(body)
