"""Tests for per-turn context assembly."""

import asyncio
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from agenda.core.conversation.context import ContextAssembler
from agenda.core.conversation.store import ConversationStore
from agenda.core.scheduling.directory import TenantDirectory
from agenda.models.database import MessageRole


def msg(role: MessageRole, content: str) -> SimpleNamespace:
    return SimpleNamespace(role=role, content=content)


class TestHistoryShaping:
    """Stored rows become alternating user/assistant turns."""

    def test_leading_assistant_dropped(self):
        history = ContextAssembler._to_history(
            [msg(MessageRole.ASSISTANT, "welcome!"), msg(MessageRole.USER, "hi")], "hi"
        )

        assert history == [{"role": "user", "content": "hi"}]

    def test_consecutive_turns_merged(self):
        history = ContextAssembler._to_history(
            [
                msg(MessageRole.USER, "hi"),
                msg(MessageRole.ASSISTANT, "hello"),
                msg(MessageRole.USER, "I want a haircut"),
                msg(MessageRole.USER, "tomorrow"),
            ],
            "tomorrow",
        )

        assert [turn["role"] for turn in history] == ["user", "assistant", "user"]
        assert history[-1]["content"] == "I want a haircut\ntomorrow"

    def test_missing_latest_message_appended(self):
        history = ContextAssembler._to_history(
            [msg(MessageRole.USER, "hi"), msg(MessageRole.ASSISTANT, "hello")], "book me in"
        )

        assert history[-1] == {"role": "user", "content": "book me in"}

    def test_empty_history(self):
        assert ContextAssembler._to_history([], "hi") == [{"role": "user", "content": "hi"}]


class TestBuildContext:
    """Test assembly against the seeded tenant."""

    NOW = datetime(2030, 1, 7, 13, 30, tzinfo=timezone.utc)

    @pytest.fixture
    def stores(self, session_factory):
        return ConversationStore(session_factory), TenantDirectory(session_factory)

    @pytest.mark.asyncio
    async def test_prompt_carries_tenant_details(self, stores, seeded):
        store, directory = stores
        conversation = await store.find_or_create_conversation(seeded.tenant.id, seeded.customer_address)
        await store.append_message(conversation.id, MessageRole.USER, "oi")

        context = await ContextAssembler(store, directory).build_context(
            str(seeded.tenant.id), str(conversation.id), "oi", now=self.NOW
        )

        prompt = context.system_prompt
        assert "Studio Bella" in prompt
        assert "Bia" in prompt
        assert "warm and upbeat" in prompt
        assert "10 minutes" in prompt
        assert "10% discount on Tuesdays" in prompt
        # 13:30 UTC is 10:30 in Sao Paulo
        assert "2030-01-07 10:30" in prompt
        assert context.history == [{"role": "user", "content": "oi"}]

    @pytest.mark.asyncio
    async def test_history_window_bounded(self, stores, seeded):
        store, directory = stores
        conversation = await store.find_or_create_conversation(seeded.tenant.id, seeded.customer_address)
        for i in range(8):
            role = MessageRole.USER if i % 2 == 0 else MessageRole.ASSISTANT
            await store.append_message(conversation.id, role, f"m{i}")
        await store.append_message(conversation.id, MessageRole.USER, "latest")

        context = await ContextAssembler(store, directory, history_limit=3).build_context(
            str(seeded.tenant.id), str(conversation.id), "latest", now=self.NOW
        )

        assert [turn["content"] for turn in context.history] == ["m6", "m7", "latest"]

    @pytest.mark.asyncio
    async def test_known_customer_included(self, stores, seeded):
        store, directory = stores
        await directory.upsert_customer(seeded.tenant.id, seeded.customer_address, "Maria")
        await directory.save_preference(
            seeded.tenant.id, seeded.customer_address, "favorite_professional", "Ana"
        )
        conversation = await store.find_or_create_conversation(seeded.tenant.id, seeded.customer_address)

        context = await ContextAssembler(store, directory).build_context(
            str(seeded.tenant.id), str(conversation.id), "oi",
            customer_address=seeded.customer_address, now=self.NOW,
        )

        assert "Maria" in context.system_prompt
        assert "favorite_professional: Ana" in context.system_prompt

    @pytest.mark.asyncio
    async def test_knowledge_snippets_included(self, stores, seeded):
        store, directory = stores
        knowledge = AsyncMock()
        knowledge.find_relevant.return_value = ["Parking is free on weekends."]
        conversation = await store.find_or_create_conversation(seeded.tenant.id, seeded.customer_address)

        context = await ContextAssembler(store, directory, knowledge).build_context(
            str(seeded.tenant.id), str(conversation.id), "is there parking?", now=self.NOW
        )

        assert context.knowledge_snippets == ["Parking is free on weekends."]
        assert "Parking is free on weekends." in context.system_prompt
        knowledge.find_relevant.assert_awaited_once_with(str(seeded.agent.id), "is there parking?")

    @pytest.mark.asyncio
    async def test_slow_knowledge_service_skipped(self, stores, seeded):
        store, directory = stores

        async def slow(agent_id, query):
            await asyncio.sleep(1)
            return ["never"]

        knowledge = SimpleNamespace(find_relevant=slow)
        conversation = await store.find_or_create_conversation(seeded.tenant.id, seeded.customer_address)

        context = await ContextAssembler(
            store, directory, knowledge, knowledge_timeout=0.01
        ).build_context(str(seeded.tenant.id), str(conversation.id), "hi", now=self.NOW)

        assert context.knowledge_snippets == []
        assert "Relevant information" not in context.system_prompt
