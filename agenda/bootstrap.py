"""
Service wiring.

Builds the object graph once at startup. Every component receives its
collaborators here; nothing reaches for a module-level singleton at request
time, so tests can swap any piece.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agenda.config import Settings, settings as default_settings
from agenda.core.agent.orchestrator import ModelClient, ToolOrchestrator
from agenda.core.agent.tools import ToolCatalog, ToolContext
from agenda.core.conversation.context import ContextAssembler
from agenda.core.conversation.store import ConversationStore
from agenda.core.ingress import UsageSink, WebhookIngress
from agenda.core.scheduling.booking import BookingStore
from agenda.core.scheduling.directory import TenantDirectory
from agenda.core.scheduling.slots import SlotEngine
from agenda.infra.claude import ClaudeClient
from agenda.infra.knowledge import HttpKnowledgeRetriever, KnowledgeRetriever
from agenda.infra.messaging import (
    AllowAllVerifier,
    HeaderRoutingVerifier,
    HmacSha256Verifier,
    MessagingAdapter,
    SignatureVerifier,
    TwilioMessagingAdapter,
    TwilioSignatureVerifier,
)
from agenda.infra.redis import InFlightGuard, RateLimiterStore

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Long-lived components owned by the application."""

    ingress: WebhookIngress
    slot_engine: SlotEngine
    booking_store: BookingStore
    conversation_store: ConversationStore
    directory: TenantDirectory
    closeables: list[Any] = field(default_factory=list)

    async def close(self) -> None:
        for resource in self.closeables:
            try:
                await resource.close()
            except Exception as e:
                logger.warning(f"Error closing {type(resource).__name__}: {e}")


def build_verifier(config: Settings) -> SignatureVerifier:
    if config.webhook_signature_bypass:
        logger.warning("Webhook signature verification is DISABLED")
        return AllowAllVerifier()
    return HeaderRoutingVerifier(
        TwilioSignatureVerifier(config.twilio_auth_token, config.webhook_public_url),
        HmacSha256Verifier(config.webhook_secret),
    )


def build_model_client(config: Settings) -> Optional[ClaudeClient]:
    if not config.anthropic_api_key:
        logger.warning("ANTHROPIC_API_KEY not set - assistant will only send fallback replies")
        return None
    return ClaudeClient(api_key=config.anthropic_api_key)


def build_services(
    session_factory: async_sessionmaker[AsyncSession],
    redis_client: Optional[Redis] = None,
    model_client: Optional[ModelClient] = None,
    messaging: Optional[MessagingAdapter] = None,
    verifier: Optional[SignatureVerifier] = None,
    knowledge: Optional[KnowledgeRetriever] = None,
    usage_sink: Optional[UsageSink] = None,
    config: Optional[Settings] = None,
) -> Services:
    """Wire stores, tools, orchestrator and ingress around one session factory."""
    config = config or default_settings
    closeables: list[Any] = []

    if model_client is None:
        model_client = build_model_client(config)
        if model_client is not None:
            closeables.append(model_client)
    if messaging is None:
        messaging = TwilioMessagingAdapter()
        closeables.append(messaging)
    if knowledge is None and config.knowledge_service_url:
        knowledge = HttpKnowledgeRetriever()
        closeables.append(knowledge)

    slot_engine = SlotEngine(session_factory)
    booking_store = BookingStore(session_factory)
    conversation_store = ConversationStore(session_factory)
    directory = TenantDirectory(session_factory)

    def catalog_factory(context: ToolContext) -> ToolCatalog:
        return ToolCatalog(
            context,
            slot_engine=slot_engine,
            booking_store=booking_store,
            directory=directory,
            strict_appointment_ids=config.strict_appointment_ids,
        )

    ingress = WebhookIngress(
        verifier=verifier or build_verifier(config),
        directory=directory,
        conversation_store=conversation_store,
        context_assembler=ContextAssembler(conversation_store, directory, knowledge),
        orchestrator=ToolOrchestrator(model_client, max_rounds=config.max_tool_rounds),
        catalog_factory=catalog_factory,
        messaging=messaging,
        rate_limiter=RateLimiterStore(redis_client),
        inflight_guard=InFlightGuard(redis_client),
        usage_sink=usage_sink,
    )

    return Services(
        ingress=ingress,
        slot_engine=slot_engine,
        booking_store=booking_store,
        conversation_store=conversation_store,
        directory=directory,
        closeables=closeables,
    )
