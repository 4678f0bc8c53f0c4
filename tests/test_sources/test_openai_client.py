"""Tests for OpenAIClassifier and completion parsing."""

import json

import pytest
from pydantic import SecretStr

from tracker.config import OpenAISettings
from tracker.exceptions import UpstreamError
from tracker.sources.openai_client import (
    OpenAIClassifier,
    build_request_body,
    parse_completion,
)


def _completion(content: dict | str) -> dict:
    if isinstance(content, dict):
        content = json.dumps(content)
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


class TestParseCompletion:
    def test_identifiers_uppercased_and_deduplicated(self) -> None:
        body = _completion(
            {"tickers": ["aapl", "MSFT", "AAPL", "gme"], "confidence": "high", "direction": "long"}
        )

        result = parse_completion(body)

        assert result.identifiers == ["AAPL", "MSFT", "GME"]
        assert result.direction == "long"
        assert result.confidence == "high"

    def test_no_tickers(self) -> None:
        body = _completion({"tickers": [], "confidence": "low", "direction": "n/a"})
        result = parse_completion(body)
        assert result.identifiers == []
        assert result.direction == "n/a"

    @pytest.mark.parametrize(
        "body",
        [
            {},
            {"choices": []},
            _completion("not json"),
            _completion({"tickers": ["AAPL"], "confidence": "high"}),
            _completion({"tickers": "AAPL", "confidence": "high", "direction": "long"}),
        ],
    )
    def test_malformed(self, body: dict) -> None:
        with pytest.raises(UpstreamError) as excinfo:
            parse_completion(body)
        assert excinfo.value.kind == "parse"


class TestRequestBody:
    def test_strict_schema(self) -> None:
        body = build_request_body("gpt-5", "Long $AAPL")

        assert body["model"] == "gpt-5"
        assert body["messages"][1] == {"role": "user", "content": "Long $AAPL"}
        schema = body["response_format"]["json_schema"]
        assert schema["strict"] is True
        assert schema["schema"]["properties"]["direction"]["enum"] == [
            "long",
            "short",
            "neutral",
            "n/a",
        ]


class TestClassify:
    @pytest.mark.asyncio
    async def test_classify(self, session, response, limiter) -> None:
        session.queue(
            "POST",
            response(body=_completion({"tickers": ["TSLA"], "confidence": "medium", "direction": "short"})),
        )
        classifier = OpenAIClassifier(OpenAISettings(api_key=SecretStr("sk-test")), limiter, session)

        result = await classifier.classify("Tesla is overvalued")

        assert result.identifiers == ["TSLA"]
        assert result.direction == "short"
        limiter.acquire.assert_awaited_once()
        _, url, kwargs = session.requests[0]
        assert url == "https://api.openai.com/v1/chat/completions"
        assert kwargs["headers"]["Authorization"] == "Bearer sk-test"
        assert kwargs["json"]["messages"][1]["content"] == "Tesla is overvalued"

    @pytest.mark.asyncio
    async def test_http_error(self, session, response, limiter) -> None:
        session.queue("POST", response(status=429, text="rate limited"))
        classifier = OpenAIClassifier(OpenAISettings(api_key=SecretStr("sk-test")), limiter, session)

        with pytest.raises(UpstreamError) as excinfo:
            await classifier.classify("text")

        assert excinfo.value.kind == "http_status"
        assert "429" in str(excinfo.value)

    @pytest.mark.asyncio
    async def test_missing_api_key(self, session, limiter) -> None:
        classifier = OpenAIClassifier(OpenAISettings(api_key=SecretStr("")), limiter, session)

        with pytest.raises(UpstreamError) as excinfo:
            await classifier.classify("text")

        assert excinfo.value.kind == "config"
        assert session.requests == []
