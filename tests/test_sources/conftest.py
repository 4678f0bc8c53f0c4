"""Fake aiohttp session for client tests.

Responses are queued per HTTP method and returned in order; every request
is recorded so tests can assert on URLs, params and headers.
"""

from typing import Any
from unittest.mock import AsyncMock

import pytest


class FakeResponse:
    def __init__(self, status: int = 200, body: Any = None, text: str = "") -> None:
        self.status = status
        self._body = body
        self._text = text

    async def json(self) -> Any:
        return self._body

    async def text(self) -> str:
        return self._text

    async def __aenter__(self) -> "FakeResponse":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        return None


class FakeSession:
    def __init__(self) -> None:
        self.closed = False
        self.responses: dict[str, list[Any]] = {"GET": [], "POST": []}
        self.requests: list[tuple[str, str, dict[str, Any]]] = []

    def queue(self, method: str, response: Any) -> None:
        """Queue a FakeResponse, or an exception to raise on the request."""
        self.responses[method].append(response)

    def _request(self, method: str, url: str, **kwargs: Any) -> FakeResponse:
        self.requests.append((method, url, kwargs))
        response = self.responses[method].pop(0)
        if isinstance(response, BaseException):
            raise response
        return response

    def get(self, url: str, **kwargs: Any) -> FakeResponse:
        return self._request("GET", url, **kwargs)

    def post(self, url: str, **kwargs: Any) -> FakeResponse:
        return self._request("POST", url, **kwargs)

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def response():
    """Factory for FakeResponse objects."""
    return FakeResponse


@pytest.fixture
def limiter() -> AsyncMock:
    limiter = AsyncMock()
    limiter.acquire = AsyncMock(return_value=None)
    return limiter
