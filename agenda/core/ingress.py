"""
Webhook Ingress.

Handles one inbound message delivery end to end:

1. Verify the provider signature (401)
2. Extract sender, recipient, body and provider message id (400)
3. Resolve the tenant from the recipient address (404)
4. Find or create the conversation (503 if the database is down)
5. Skip deliveries already processed, or being processed right now
6. Persist the inbound message
7. Assemble context and run the tool orchestrator
8. Persist the reply with usage, send it, mark the delivery processed

Once the inbound message is stored, every outcome answers 200 so the
provider does not retry; failures are logged and the customer gets the
fallback reply instead of silence.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Optional

from agenda.core.agent.orchestrator import ToolOrchestrator
from agenda.core.agent.tools import ToolCatalog, ToolContext
from agenda.core.conversation.context import ContextAssembler
from agenda.core.conversation.store import ConversationStore, MessageMetadata
from agenda.core.errors import PersistenceError, ValidationError
from agenda.core.scheduling.directory import TenantDirectory
from agenda.infra.claude import Usage
from agenda.infra.messaging import MessagingAdapter, SignatureVerifier, SignedRequest
from agenda.infra.redis import InFlightGuard, RateLimiterStore
from agenda.models.database import Conversation, MessageRole, Tenant
from agenda.utils.phone import mask_address, normalize_address

logger = logging.getLogger(__name__)

RATE_LIMIT_REPLY = (
    "You're sending messages faster than I can answer. "
    "Please wait a moment and try again."
)

# Accepted spellings per field: generic JSON first, then Twilio form fields
FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "from": ("from", "From"),
    "to": ("to", "To"),
    "body": ("body", "Body"),
    "providerMessageId": ("providerMessageId", "MessageSid", "SmsMessageSid", "SmsSid"),
}

CatalogFactory = Callable[[ToolContext], ToolCatalog]
UsageSink = Callable[[str, Usage], Awaitable[None]]


@dataclass
class InboundMessage:
    """Provider-agnostic inbound message."""

    from_address: str
    to_address: str
    body: str
    provider_message_id: str


@dataclass
class IngressResult:
    """Outcome of one delivery; ``status_code`` is what the provider sees."""

    status_code: int
    outcome: str
    detail: Optional[str] = None
    reply: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"status": self.outcome}
        if self.detail:
            result["detail"] = self.detail
        return result


def parse_inbound(payload: Mapping[str, Any]) -> InboundMessage:
    """
    Extract the four required fields from a JSON or Twilio form payload.

    Raises:
        ValidationError: One or more fields missing or empty
    """
    values: dict[str, str] = {}
    missing = []
    for name, aliases in FIELD_ALIASES.items():
        value = next((payload[a] for a in aliases if payload.get(a) not in (None, "")), None)
        if value is None or not str(value).strip():
            missing.append(name)
        else:
            values[name] = str(value).strip()

    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}", {"missing": missing})

    return InboundMessage(
        from_address=normalize_address(values["from"]),
        to_address=normalize_address(values["to"]),
        body=values["body"],
        provider_message_id=values["providerMessageId"],
    )


async def log_usage(tenant_id: str, usage: Usage) -> None:
    """Default usage sink."""
    logger.info(f"Usage for tenant {tenant_id}: {usage.to_dict()}")


class WebhookIngress:
    """Entry point for provider webhooks. All collaborators are injected."""

    def __init__(
        self,
        verifier: SignatureVerifier,
        directory: TenantDirectory,
        conversation_store: ConversationStore,
        context_assembler: ContextAssembler,
        orchestrator: ToolOrchestrator,
        catalog_factory: CatalogFactory,
        messaging: MessagingAdapter,
        rate_limiter: Optional[RateLimiterStore] = None,
        inflight_guard: Optional[InFlightGuard] = None,
        usage_sink: Optional[UsageSink] = None,
    ):
        self._verifier = verifier
        self._directory = directory
        self._store = conversation_store
        self._assembler = context_assembler
        self._orchestrator = orchestrator
        self._catalog_factory = catalog_factory
        self._messaging = messaging
        self._rate_limiter = rate_limiter
        self._inflight = inflight_guard
        self._usage_sink = usage_sink or log_usage

    async def handle(self, request: SignedRequest, payload: Mapping[str, Any]) -> IngressResult:
        """
        Process one webhook delivery.

        Args:
            request: Raw request details for signature verification
            payload: Parsed form fields or JSON body
        """
        if not self._verifier.verify(request):
            logger.warning("Rejected webhook with invalid signature")
            return IngressResult(401, "invalid_signature")

        try:
            inbound = parse_inbound(payload)
        except ValidationError as e:
            logger.warning(f"Rejected webhook: {e.message}")
            return IngressResult(400, "invalid_payload", detail=e.message)

        tenant = await self._directory.find_tenant_by_address(inbound.to_address)
        if tenant is None:
            logger.warning(f"No tenant for recipient {mask_address(inbound.to_address)}")
            return IngressResult(404, "unknown_tenant")

        try:
            conversation = await self._store.find_or_create_conversation(
                tenant.id, inbound.from_address
            )
        except PersistenceError as e:
            # Nothing stored yet; let the provider redeliver
            logger.error(f"Delivery {inbound.provider_message_id} deferred: {e.message}")
            return IngressResult(503, "unavailable")
        conversation_id = str(conversation.id)
        message_id = inbound.provider_message_id

        if await self._store.has_processed(conversation_id, message_id):
            logger.info(f"Duplicate delivery {message_id} ignored")
            return IngressResult(200, "duplicate")

        if self._inflight is not None and not await self._inflight.claim(conversation_id, message_id):
            logger.info(f"Delivery {message_id} already in progress - ignored")
            return IngressResult(200, "in_progress")

        try:
            return await self._process(tenant, conversation, inbound)
        finally:
            if self._inflight is not None:
                await self._inflight.release(conversation_id, message_id)

    async def _process(
        self, tenant: Tenant, conversation: Conversation, inbound: InboundMessage
    ) -> IngressResult:
        start_time = time.time()
        tenant_id = str(tenant.id)
        conversation_id = str(conversation.id)

        await self._store.append_message(conversation_id, MessageRole.USER, inbound.body)

        if conversation.is_manual:
            logger.info(f"Conversation {conversation_id} is in manual mode - no automatic reply")
            await self._store.mark_processed(conversation_id, inbound.provider_message_id)
            return IngressResult(200, "manual")

        try:
            if self._rate_limiter is not None:
                allowed, _, _ = await self._rate_limiter.is_allowed(
                    f"tenant:{tenant_id}:sender:{inbound.from_address}"
                )
                if not allowed:
                    await self._reply(tenant, conversation_id, inbound, RATE_LIMIT_REPLY, None)
                    return IngressResult(200, "rate_limited", reply=RATE_LIMIT_REPLY)

            usage: Optional[Usage] = None
            model: Optional[str] = None
            try:
                context = await self._assembler.build_context(
                    tenant_id,
                    conversation_id,
                    inbound.body,
                    customer_address=inbound.from_address,
                )
                catalog = self._catalog_factory(
                    ToolContext(
                        tenant_id=tenant_id,
                        customer_address=inbound.from_address,
                        timezone=tenant.timezone,
                    )
                )
                result = await self._orchestrator.run(context, catalog)
                reply, usage, model = result.text, result.usage, result.model
            except Exception as e:
                logger.exception(f"Orchestration failed for {conversation_id}: {e}")
                reply = self._orchestrator.fallback_reply

            await self._reply(tenant, conversation_id, inbound, reply, usage, model)

            if usage is not None:
                try:
                    await self._usage_sink(tenant_id, usage)
                except Exception as e:
                    logger.error(f"Usage sink failed for tenant {tenant_id}: {e}")

            logger.info(
                f"Handled {inbound.provider_message_id} from {mask_address(inbound.from_address)} "
                f"in {(time.time() - start_time) * 1000:.0f}ms"
            )
            return IngressResult(200, "processed", reply=reply)

        except Exception as e:
            logger.exception(f"Webhook processing failed after persistence: {e}")
            return IngressResult(200, "failed", detail="logged")

    async def _reply(
        self,
        tenant: Tenant,
        conversation_id: str,
        inbound: InboundMessage,
        text: str,
        usage: Optional[Usage],
        model: Optional[str] = None,
    ) -> None:
        """Persist the outbound message, send it, then mark the delivery processed."""
        metadata = MessageMetadata(model=model)
        if usage is not None:
            metadata.input_tokens = usage.input_tokens
            metadata.output_tokens = usage.output_tokens
            metadata.total_tokens = usage.total_tokens
        await self._store.append_message(conversation_id, MessageRole.ASSISTANT, text, metadata)

        try:
            await self._messaging.send_message(tenant.whatsapp_number, inbound.from_address, text)
        except Exception as e:
            # The reply may be lost; it must not be sent twice
            logger.error(f"Outbound send failed for {conversation_id}: {e}")

        if not await self._store.mark_processed(conversation_id, inbound.provider_message_id):
            logger.warning(
                f"Delivery {inbound.provider_message_id} not marked processed; "
                "a redelivery will be handled again"
            )
