"""Tests for the async LLM client, structured responses and the response cache."""

from __future__ import annotations

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock

import httpx
import openai
import pytest
from pydantic import BaseModel, Field

_REQUEST = httpx.Request("POST", "https://api.example.com/v1/chat/completions")


class Answer(BaseModel):
    answer: str = Field(max_length=10)
    confidence: float = 0.5


def _response(content: str | None, prompt_tokens: int = 10, completion_tokens: int = 5):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
        usage=SimpleNamespace(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens),
    )


def _client(cache=None, max_retries: int = 2, timeout: float = 5.0):
    from docflow.llm.client import LLMClient, LLMConfig

    config = LLMConfig(
        api_key="test-key",
        base_url="https://api.example.com/v1",
        model="test-model",
        timeout=timeout,
        max_retries=max_retries,
        retry_delay=0.0,
    )
    return LLMClient(config=config, cache=cache)


def _mock_create(client, *results):
    create = AsyncMock(side_effect=list(results))
    client._client.chat.completions.create = create
    return create


class TestParseJson:
    """Tests for JSON extraction from model output."""

    def test_plain_object(self):
        from docflow.llm.client import parse_json_object

        assert parse_json_object('{"a": 1}') == {"a": 1}

    def test_code_fence(self):
        from docflow.llm.client import parse_json_object

        assert parse_json_object('```json\n{"a": 1}\n```') == {"a": 1}

    @pytest.mark.parametrize("content", ["", "   ", "[1, 2]", "not json"])
    def test_rejects_invalid(self, content):
        from docflow.llm.client import parse_json_object

        with pytest.raises(ValueError):
            parse_json_object(content)


class TestComplete:
    """Tests for retries and error mapping."""

    async def test_returns_content_and_usage(self):
        client = _client()
        create = _mock_create(client, _response("hello", 7, 3))

        response = await client.complete("Hi", system_prompt="Be brief", json_mode=True)

        assert response.content == "hello"
        assert response.total_tokens == 10
        kwargs = create.call_args.kwargs
        assert kwargs["model"] == "test-model"
        assert kwargs["messages"][0] == {"role": "system", "content": "Be brief"}
        assert kwargs["response_format"] == {"type": "json_object"}

    async def test_retries_connection_errors(self):
        client = _client(max_retries=2)
        create = _mock_create(
            client,
            openai.APIConnectionError(request=_REQUEST),
            _response("ok"),
        )

        response = await client.complete("Hi")

        assert response.content == "ok"
        assert create.await_count == 2

    async def test_exhausted_retries_raise_transient(self):
        from docflow.core.errors import TransientIOError

        client = _client(max_retries=1)
        create = _mock_create(
            client,
            openai.APIConnectionError(request=_REQUEST),
            openai.APITimeoutError(request=_REQUEST),
        )

        with pytest.raises(TransientIOError):
            await client.complete("Hi")
        assert create.await_count == 2

    async def test_timeout_is_transient(self):
        from docflow.core.errors import TransientIOError

        client = _client(max_retries=0, timeout=0.01)

        async def slow(**kwargs):
            await asyncio.sleep(1)

        client._client.chat.completions.create = slow

        with pytest.raises(TransientIOError):
            await client.complete("Hi")

    async def test_api_error_not_retried(self):
        from docflow.core.errors import TransientIOError

        client = _client(max_retries=3)
        error = openai.BadRequestError(
            "bad request", response=httpx.Response(400, request=_REQUEST), body=None
        )
        create = _mock_create(client, error)

        with pytest.raises(TransientIOError):
            await client.complete("Hi")
        assert create.await_count == 1


class TestStructuredJson:
    """Tests for schema-validated requests."""

    async def test_validates_response(self):
        client = _client()
        _mock_create(client, _response('{"answer": "yes", "confidence": 0.9}', 20, 5))

        result = await client.request_structured_json("Q?", Answer, "analysis")

        assert result.data == Answer(answer="yes", confidence=0.9)
        assert result.metadata.purpose == "analysis"
        assert result.metadata.total_tokens == 25
        assert result.metadata.cached is False
        assert client.usage == {"analysis": 25}

    async def test_schema_in_system_prompt(self):
        client = _client()
        create = _mock_create(client, _response('{"answer": "yes"}'))

        await client.request_structured_json("Q?", Answer, "analysis", system_prompt="Task")

        system = create.call_args.kwargs["messages"][0]["content"]
        assert system.startswith("Task")
        assert '"answer"' in system

    async def test_malformed_body_retried(self):
        client = _client(max_retries=2)
        create = _mock_create(client, _response(""), _response('{"answer": "ok"}'))

        result = await client.request_structured_json("Q?", Answer, "analysis")

        assert result.data.answer == "ok"
        assert result.metadata.attempts == 2
        assert create.await_count == 2

    async def test_malformed_body_exhausted(self):
        from docflow.core.errors import TransientIOError

        client = _client(max_retries=1)
        _mock_create(client, _response("nope"), _response("still nope"))

        with pytest.raises(TransientIOError):
            await client.request_structured_json("Q?", Answer, "analysis")

    async def test_schema_mismatch_raises_validation_error(self):
        from docflow.core.errors import ValidationError

        client = _client(max_retries=3)
        create = _mock_create(client, _response('{"answer": "far too long for the field"}'))

        with pytest.raises(ValidationError):
            await client.request_structured_json("Q?", Answer, "analysis")
        assert create.await_count == 1

    async def test_cache_round_trip(self, tmp_path):
        from docflow.llm.cache import ResponseCache

        cache = ResponseCache(tmp_path / "cache")
        client = _client(cache=cache)
        create = _mock_create(client, _response('{"answer": "cached"}'))

        first = await client.request_structured_json("Q?", Answer, "analysis")
        second = await client.request_structured_json("Q?", Answer, "analysis")

        assert create.await_count == 1
        assert second.data == first.data
        assert second.metadata.cached is True
        assert len(list((tmp_path / "cache" / "analysis").glob("*.yaml"))) == 1

    def test_from_settings_requires_key(self, test_storage_dir):
        from docflow.config import Settings
        from docflow.llm.client import LLMClient

        with pytest.raises(ValueError, match="DOCFLOW_LLM_API_KEY"):
            LLMClient.from_settings(Settings(storage_dir=test_storage_dir, llm_api_key=""))

    def test_from_settings(self, test_settings):
        from docflow.llm.client import LLMClient

        client = LLMClient.from_settings(test_settings)

        assert client.config.model == "deepseek-chat"
        assert client.config.retry_delay == 0.0
        assert client.cache is None


class TestResponseCache:
    """Tests for the on-disk response cache."""

    def test_key_is_stable(self):
        from docflow.llm.cache import compute_cache_key

        a = compute_cache_key("m", "analysis", "prompt\r\n", "sys")
        b = compute_cache_key("m", "analysis", "prompt", "sys")
        c = compute_cache_key("m", "changegeneration", "prompt", "sys")

        assert a == b
        assert a != c

    def test_put_get_clear(self, tmp_path):
        from docflow.llm.cache import ResponseCache

        cache = ResponseCache(tmp_path)
        cache.put("analysis", "k1", {"threads": []}, model="m", input_tokens=3)
        cache.put("changegeneration", "k2", {"proposals": []}, model="m")

        entry = cache.get("analysis", "k1")

        assert entry is not None
        assert entry["data"] == {"threads": []}
        assert entry["input_tokens"] == 3
        assert cache.get("analysis", "missing") is None
        assert cache.clear("analysis") == 1
        assert cache.get("analysis", "k1") is None
        assert cache.clear() == 1

    def test_unreadable_entry_is_miss(self, tmp_path):
        from docflow.llm.cache import ResponseCache

        cache = ResponseCache(tmp_path)
        path = tmp_path / "analysis" / "bad.yaml"
        path.parent.mkdir(parents=True)
        path.write_text("data: [unclosed")

        assert cache.get("analysis", "bad") is None
