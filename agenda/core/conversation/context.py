"""
Context Assembler.

Builds what the model sees for one turn: a tenant-specific system prompt,
a bounded window of recent history and, when available, knowledge snippets.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from agenda.config import settings
from agenda.core.conversation.store import ConversationStore
from agenda.core.scheduling.directory import TenantDirectory
from agenda.infra.knowledge import KnowledgeRetriever
from agenda.models.database import AgentConfig, Customer, Message, MessageRole, Tenant
from agenda.utils.timeutil import tenant_zone

logger = logging.getLogger(__name__)


SYSTEM_PROMPT_TEMPLATE = """You are {agent_name}, the virtual assistant of {business_name}. You talk with customers over WhatsApp and help them book, reschedule and cancel appointments.

## Tone
Be {tone}. Write short messages suited to a chat app. Reply in the customer's language.

## Current date and time
{now} ({timezone}). Resolve relative dates like "tomorrow" or "next Friday" from this.

## How to work
1. Call identifyCustomer at the start of a conversation. If the customer is unknown, ask for their name.
2. Use getServices and getProfessionals to resolve what the customer wants. Never invent ids.
3. ALWAYS call checkAvailability before offering times, and only offer times it returned.
4. Confirm service, professional, date and time with the customer before calling createAppointment.
5. To cancel or reschedule, call getUpcomingAppointments first and confirm which appointment.
6. If a tool returns an error, fix the arguments or explain the problem briefly. Never claim a booking succeeded unless the tool said so.
7. When the customer mentions a lasting preference, store it with saveCustomerPreference.

## Business policies
{policies}
{customer_section}{instructions_section}{knowledge_section}"""


@dataclass
class AssembledContext:
    """Everything the orchestrator needs to start a run."""

    system_prompt: str
    history: list[dict[str, Any]]
    knowledge_snippets: list[str] = field(default_factory=list)
    model: Optional[str] = None


class ContextAssembler:
    """Assembles per-turn model context for a conversation."""

    def __init__(
        self,
        conversation_store: ConversationStore,
        directory: TenantDirectory,
        knowledge: Optional[KnowledgeRetriever] = None,
        history_limit: Optional[int] = None,
        knowledge_timeout: Optional[float] = None,
    ):
        self._store = conversation_store
        self._directory = directory
        self._knowledge = knowledge
        self.history_limit = history_limit or settings.history_limit
        self.knowledge_timeout = knowledge_timeout or settings.knowledge_timeout

    async def build_context(
        self,
        tenant_id: str,
        conversation_id: str,
        latest_user_message: str,
        customer_address: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> AssembledContext:
        """
        Build the model context for the latest inbound message.

        Args:
            tenant_id: Tenant the conversation belongs to
            conversation_id: Conversation to read history from
            latest_user_message: Text being answered, used for retrieval too
            customer_address: Caller address, to include what we know about them
            now: Reference time for the prompt (defaults to the clock)
        """
        tenant = await self._directory.get_tenant(tenant_id)
        agent = await self._directory.get_active_agent(tenant_id)

        customer = None
        if customer_address:
            customer = await self._directory.find_customer(tenant_id, customer_address)

        messages = await self._store.get_recent_messages(conversation_id, self.history_limit)
        history = self._to_history(messages, latest_user_message)

        snippets: list[str] = []
        if agent is not None and self._knowledge is not None:
            snippets = await self._retrieve(str(agent.id), latest_user_message)

        return AssembledContext(
            system_prompt=self.render_system_prompt(tenant, agent, customer, snippets, now),
            history=history,
            knowledge_snippets=snippets,
            model=agent.model if agent is not None and agent.model else None,
        )

    async def _retrieve(self, agent_id: str, query: str) -> list[str]:
        try:
            return await asyncio.wait_for(
                self._knowledge.find_relevant(agent_id, query),
                timeout=self.knowledge_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Knowledge retrieval timed out after {self.knowledge_timeout}s")
        except Exception as e:
            logger.warning(f"Knowledge retrieval failed: {e!r}")
        return []

    @staticmethod
    def _to_history(messages: list[Message], latest_user_message: str) -> list[dict[str, Any]]:
        """
        Map stored messages to Claude's format.

        Claude requires the first turn to come from the user and roles to
        alternate, so leading assistant turns are dropped and consecutive
        turns of one role are merged.
        """
        history: list[dict[str, Any]] = []
        for message in messages:
            role = "user" if message.role == MessageRole.USER else "assistant"
            if not history and role == "assistant":
                continue
            if history and history[-1]["role"] == role:
                history[-1]["content"] = f"{history[-1]['content']}\n{message.content}"
            else:
                history.append({"role": role, "content": message.content})

        # Inbound persistence may have failed; the model must still see the message
        last = history[-1] if history else None
        if last is None or last["role"] != "user" or not last["content"].endswith(latest_user_message):
            if last is not None and last["role"] == "user":
                last["content"] = f"{last['content']}\n{latest_user_message}"
            else:
                history.append({"role": "user", "content": latest_user_message})
        return history

    @staticmethod
    def render_system_prompt(
        tenant: Tenant,
        agent: Optional[AgentConfig],
        customer: Optional[Customer],
        snippets: list[str],
        now: Optional[datetime] = None,
    ) -> str:
        zone = tenant_zone(tenant.timezone)
        local_now = (now or datetime.now(timezone.utc)).astimezone(zone)
        tenant_settings = tenant.settings or {}

        policies = []
        tolerance = tenant_settings.get("late_tolerance_minutes")
        if tolerance:
            policies.append(f"- Late arrival tolerance: {tolerance} minutes.")
        if tenant_settings.get("cancellation_policy"):
            policies.append(f"- Cancellation policy: {tenant_settings['cancellation_policy']}")
        if not policies:
            policies.append("- No special policies.")

        customer_section = ""
        if customer is not None:
            lines = [f"\n## Customer\nName: {customer.name} (id {customer.id})"]
            for key, value in (customer.preferences or {}).items():
                lines.append(f"- {key}: {value}")
            customer_section = "\n".join(lines) + "\n"

        instructions_section = ""
        if agent is not None and agent.custom_instructions:
            instructions_section = f"\n## Additional instructions\n{agent.custom_instructions}\n"

        knowledge_section = ""
        if snippets:
            joined = "\n".join(f"- {s}" for s in snippets)
            knowledge_section = (
                "\n## Relevant information\nUse only if it helps answer the customer:\n"
                f"{joined}\n"
            )

        return SYSTEM_PROMPT_TEMPLATE.format(
            agent_name=agent.name if agent is not None else "the assistant",
            business_name=tenant.name,
            tone=agent.tone if agent is not None and agent.tone else "friendly and concise",
            now=local_now.strftime("%A, %Y-%m-%d %H:%M"),
            timezone=zone.key,
            policies="\n".join(policies),
            customer_section=customer_section,
            instructions_section=instructions_section,
            knowledge_section=knowledge_section,
        ).strip()
