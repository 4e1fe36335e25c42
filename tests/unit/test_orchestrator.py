"""Tests for the bounded model/tool loop."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from agenda.core.agent.orchestrator import (
    FALLBACK_REPLY, OrchestratorState, ToolOrchestrator,
)
from agenda.core.conversation.context import AssembledContext
from agenda.infra.claude import ClaudeClientError, ModelTurn, ToolCall, Usage


def text_turn(text: str, input_tokens: int = 100, output_tokens: int = 20) -> ModelTurn:
    return ModelTurn(
        text=text,
        tool_calls=[],
        usage=Usage(input_tokens, output_tokens),
        stop_reason="end_turn",
        model="claude-test",
        content_blocks=[{"type": "text", "text": text}],
    )


def tool_turn(*calls: ToolCall, text: str = "") -> ModelTurn:
    blocks = [{"type": "text", "text": text}] if text else []
    blocks += [{"type": "tool_use", "id": c.id, "name": c.name, "input": c.input} for c in calls]
    return ModelTurn(
        text=text,
        tool_calls=list(calls),
        usage=Usage(50, 10),
        stop_reason="tool_use",
        model="claude-test",
        content_blocks=blocks,
    )


@pytest.fixture
def context():
    return AssembledContext(
        system_prompt="You are Bia.",
        history=[{"role": "user", "content": "I want a haircut tomorrow"}],
    )


@pytest.fixture
def catalog():
    catalog = MagicMock()
    catalog.definitions.return_value = [{"name": "getServices", "input_schema": {}}]
    catalog.execute = AsyncMock(return_value={"services": [], "count": 0})
    return catalog


class TestToolOrchestrator:
    """Test termination, tool dispatch and accounting."""

    @pytest.mark.asyncio
    async def test_text_reply_ends_immediately(self, context, catalog):
        client = MagicMock()
        client.create_message = AsyncMock(return_value=text_turn("Hi! How can I help?"))

        result = await ToolOrchestrator(client, max_rounds=5).run(context, catalog)

        assert result.text == "Hi! How can I help?"
        assert result.rounds == 0
        assert result.fallback is False
        assert result.state_trace == [
            OrchestratorState.AWAIT_MODEL,
            OrchestratorState.MODEL_RESPONDED,
            OrchestratorState.TERMINAL,
        ]
        catalog.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_tool_round_then_reply(self, context, catalog):
        client = MagicMock()
        client.create_message = AsyncMock(
            side_effect=[
                tool_turn(ToolCall("toolu_1", "getServices", {})),
                text_turn("We offer haircuts and manicures."),
            ]
        )

        result = await ToolOrchestrator(client, max_rounds=5).run(context, catalog)

        assert result.text == "We offer haircuts and manicures."
        assert result.rounds == 1
        assert result.tool_calls == ["getServices"]
        second_call_messages = client.create_message.await_args_list[1].kwargs["messages"]
        tool_result = second_call_messages[-1]["content"][0]
        assert tool_result["type"] == "tool_result"
        assert tool_result["tool_use_id"] == "toolu_1"
        assert json.loads(tool_result["content"]) == {"services": [], "count": 0}

    @pytest.mark.asyncio
    async def test_endless_tool_requests_are_bounded(self, context, catalog):
        """A model that never stops asking for tools still gets a reply."""
        client = MagicMock()
        client.create_message = AsyncMock(
            return_value=tool_turn(ToolCall("toolu_x", "getServices", {}), text="Let me check...")
        )

        result = await ToolOrchestrator(client, max_rounds=3).run(context, catalog)

        assert result.rounds == 3
        assert client.create_message.await_count == 4
        assert result.text == "Let me check..."
        assert result.state_trace[-1] == OrchestratorState.TERMINAL

    @pytest.mark.asyncio
    async def test_bound_without_text_uses_fallback(self, context, catalog):
        client = MagicMock()
        client.create_message = AsyncMock(
            return_value=tool_turn(ToolCall("toolu_x", "getServices", {}))
        )

        result = await ToolOrchestrator(client, max_rounds=2).run(context, catalog)

        assert result.text == FALLBACK_REPLY
        assert result.fallback is True

    @pytest.mark.asyncio
    async def test_model_failure_uses_fallback(self, context, catalog):
        client = MagicMock()
        client.create_message = AsyncMock(side_effect=ClaudeClientError("overloaded"))

        result = await ToolOrchestrator(client).run(context, catalog)

        assert result.text == FALLBACK_REPLY
        assert result.fallback is True

    @pytest.mark.asyncio
    async def test_failure_after_tool_round_ignores_interim_text(self, context, catalog):
        client = MagicMock()
        client.create_message = AsyncMock(
            side_effect=[
                tool_turn(ToolCall("t1", "getServices", {}), text="Let me check that for you..."),
                ClaudeClientError("timeout"),
            ]
        )

        result = await ToolOrchestrator(client).run(context, catalog)

        assert result.text == FALLBACK_REPLY
        assert result.fallback is True
        assert result.rounds == 1
        catalog.execute.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_no_client_uses_fallback(self, context, catalog):
        result = await ToolOrchestrator(None).run(context, catalog)

        assert result.text == FALLBACK_REPLY

    @pytest.mark.asyncio
    async def test_usage_summed_across_calls(self, context, catalog):
        client = MagicMock()
        client.create_message = AsyncMock(
            side_effect=[
                tool_turn(ToolCall("toolu_1", "getServices", {})),
                text_turn("Done", input_tokens=200, output_tokens=40),
            ]
        )

        result = await ToolOrchestrator(client).run(context, catalog)

        assert result.usage.input_tokens == 250
        assert result.usage.output_tokens == 50
        assert result.usage.total_tokens == 300

    @pytest.mark.asyncio
    async def test_tools_in_one_turn_run_concurrently(self, context):
        running = 0
        peak = 0

        async def execute(name, tool_input):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1
            return {"ok": name}

        catalog = MagicMock()
        catalog.definitions.return_value = []
        catalog.execute = execute
        client = MagicMock()
        client.create_message = AsyncMock(
            side_effect=[
                tool_turn(
                    ToolCall("toolu_1", "getServices", {}),
                    ToolCall("toolu_2", "getProfessionals", {}),
                ),
                text_turn("Here you go"),
            ]
        )

        result = await ToolOrchestrator(client).run(context, catalog)

        assert peak == 2
        assert result.tool_calls == ["getServices", "getProfessionals"]

    @pytest.mark.asyncio
    async def test_tool_error_fed_back_as_data(self, context, catalog):
        catalog.execute = AsyncMock(side_effect=RuntimeError("database exploded"))
        client = MagicMock()
        client.create_message = AsyncMock(
            side_effect=[
                tool_turn(ToolCall("toolu_1", "getServices", {})),
                text_turn("Sorry, I couldn't load the services."),
            ]
        )

        result = await ToolOrchestrator(client).run(context, catalog)

        tool_result = client.create_message.await_args_list[1].kwargs["messages"][-1]["content"][0]
        assert tool_result["is_error"] is True
        assert json.loads(tool_result["content"])["error"] == "execution_failed"
        assert result.text == "Sorry, I couldn't load the services."
