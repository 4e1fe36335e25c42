"""Tests for the Claude wrapper, knowledge retrieval and Redis helpers."""

import asyncio
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from anthropic import APIError
from redis.exceptions import ConnectionError as RedisConnectionError

from agenda.infra.claude import ClaudeClient, ClaudeClientError
from agenda.infra.knowledge import HttpKnowledgeRetriever
from agenda.infra.redis import InFlightGuard, RateLimiterStore


def api_response(*blocks, model="claude-primary"):
    return SimpleNamespace(
        content=list(blocks),
        usage=SimpleNamespace(input_tokens=120, output_tokens=30),
        stop_reason="tool_use" if any(b.type == "tool_use" for b in blocks) else "end_turn",
        model=model,
    )


def api_error(message: str = "overloaded") -> APIError:
    request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
    return APIError(message, request, body=None)


@pytest.fixture
def anthropic_mock():
    client = MagicMock()
    client.messages.create = AsyncMock()
    client.close = AsyncMock()
    return client


class TestClaudeClient:
    """Test turn conversion, fallback and timeouts."""

    @pytest.mark.asyncio
    async def test_tool_use_turn(self, anthropic_mock):
        anthropic_mock.messages.create.return_value = api_response(
            SimpleNamespace(type="text", text="Let me check."),
            SimpleNamespace(type="tool_use", id="toolu_1", name="getServices", input={}),
        )
        client = ClaudeClient(client=anthropic_mock, model="claude-primary", fallback_model="")

        turn = await client.create_message(
            [{"role": "user", "content": "hi"}], system="prompt", tools=[{"name": "getServices"}]
        )

        assert turn.text == "Let me check."
        assert turn.wants_tools is True
        assert turn.tool_calls[0].name == "getServices"
        assert turn.usage.total_tokens == 150
        assert turn.content_blocks[1] == {
            "type": "tool_use", "id": "toolu_1", "name": "getServices", "input": {}
        }
        kwargs = anthropic_mock.messages.create.await_args.kwargs
        assert kwargs["system"] == "prompt"
        assert kwargs["model"] == "claude-primary"

    @pytest.mark.asyncio
    async def test_falls_back_once(self, anthropic_mock):
        anthropic_mock.messages.create.side_effect = [
            api_error(),
            api_response(SimpleNamespace(type="text", text="Hello"), model="claude-fallback"),
        ]
        client = ClaudeClient(
            client=anthropic_mock, model="claude-primary", fallback_model="claude-fallback"
        )

        turn = await client.create_message([{"role": "user", "content": "hi"}])

        assert turn.text == "Hello"
        assert turn.model == "claude-fallback"
        models = [c.kwargs["model"] for c in anthropic_mock.messages.create.await_args_list]
        assert models == ["claude-primary", "claude-fallback"]

    @pytest.mark.asyncio
    async def test_error_without_fallback_raises(self, anthropic_mock):
        anthropic_mock.messages.create.side_effect = api_error()
        client = ClaudeClient(client=anthropic_mock, model="claude-primary", fallback_model="")

        with pytest.raises(ClaudeClientError):
            await client.create_message([{"role": "user", "content": "hi"}])

    @pytest.mark.asyncio
    async def test_timeout_raises(self, anthropic_mock):
        async def slow(**kwargs):
            await asyncio.sleep(1)

        anthropic_mock.messages.create.side_effect = slow
        client = ClaudeClient(
            client=anthropic_mock, model="claude-primary", fallback_model="", timeout=0.01
        )

        with pytest.raises(ClaudeClientError):
            await client.create_message([{"role": "user", "content": "hi"}])

    def test_requires_api_key(self, monkeypatch):
        monkeypatch.setattr("agenda.infra.claude.settings.anthropic_api_key", "")

        with pytest.raises(ValueError):
            ClaudeClient()


class TestHttpKnowledgeRetriever:
    """Test snippet retrieval."""

    def make_retriever(self, handler, threshold=0.65) -> HttpKnowledgeRetriever:
        client = httpx.AsyncClient(
            base_url="http://knowledge.test", transport=httpx.MockTransport(handler)
        )
        return HttpKnowledgeRetriever(
            base_url="http://knowledge.test", max_results=2, threshold=threshold, client=client
        )

    @pytest.mark.asyncio
    async def test_filters_and_limits(self):
        sent = {}

        def handler(request: httpx.Request) -> httpx.Response:
            sent.update(json.loads(request.content))
            return httpx.Response(200, json={"results": [
                {"content": "Open on holidays until 14h.", "similarity": 0.91},
                {"content": "Unrelated.", "similarity": 0.30},
                {"content": "Free parking.", "similarity": 0.80},
                {"content": "Gift cards available.", "similarity": 0.70},
            ]})

        snippets = await self.make_retriever(handler).find_relevant("agent-1", "holiday hours?")

        assert snippets == ["Open on holidays until 14h.", "Free parking."]
        assert sent == {"agent_id": "agent-1", "query": "holiday hours?", "limit": 2, "threshold": 0.65}

    @pytest.mark.asyncio
    async def test_service_error_yields_nothing(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500)

        assert await self.make_retriever(handler).find_relevant("agent-1", "hours?") == []

    @pytest.mark.asyncio
    async def test_not_configured(self):
        retriever = HttpKnowledgeRetriever(base_url="")
        retriever.base_url = None

        assert await retriever.find_relevant("agent-1", "hours?") == []


class TestRateLimiterStore:
    """Test the fixed-window limiter."""

    @pytest.mark.asyncio
    async def test_over_limit_rejected(self):
        redis_mock = AsyncMock()
        redis_mock.incr.return_value = 4
        redis_mock.ttl.return_value = 42

        allowed, remaining, ttl = await RateLimiterStore(redis_mock, 3, 60).is_allowed("sender")

        assert allowed is False
        assert remaining == 0
        assert ttl == 42

    @pytest.mark.asyncio
    async def test_first_request_sets_expiry(self):
        redis_mock = AsyncMock()
        redis_mock.incr.return_value = 1
        redis_mock.ttl.return_value = 60

        allowed, remaining, _ = await RateLimiterStore(redis_mock, 3, 60).is_allowed("sender")

        assert allowed is True
        assert remaining == 2
        redis_mock.expire.assert_awaited_once_with("agenda:v1:ratelimit:sender", 60)

    @pytest.mark.asyncio
    async def test_fails_open(self):
        redis_mock = AsyncMock()
        redis_mock.incr.side_effect = RedisConnectionError("down")

        allowed, _, _ = await RateLimiterStore(redis_mock, 3, 60).is_allowed("sender")

        assert allowed is True
        assert (await RateLimiterStore(None, 3, 60).is_allowed("sender"))[0] is True


class TestInFlightGuard:
    """Test delivery claims."""

    @pytest.mark.asyncio
    async def test_second_claim_refused(self):
        redis_mock = AsyncMock()
        redis_mock.set.side_effect = [True, None]
        guard = InFlightGuard(redis_mock, ttl_seconds=30)

        assert await guard.claim("conv", "SM1") is True
        assert await guard.claim("conv", "SM1") is False
        redis_mock.set.assert_awaited_with("agenda:v1:inflight:conv:SM1", "1", nx=True, ex=30)

    @pytest.mark.asyncio
    async def test_fails_open(self):
        redis_mock = AsyncMock()
        redis_mock.set.side_effect = RedisConnectionError("down")

        assert await InFlightGuard(redis_mock).claim("conv", "SM1") is True
        assert await InFlightGuard(None).claim("conv", "SM1") is True
