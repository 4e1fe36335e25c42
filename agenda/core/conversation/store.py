"""
Conversation Store.

Persists conversations, their messages and the markers that record which
provider message ids have already been handled.

Write failures are logged and never break the reply flow. A failed marker
write is reported as "not processed" so that a redelivery gets handled again
instead of being dropped.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agenda.core.errors import PersistenceError
from agenda.models.database import (
    Conversation, Message, MessageRole, ProcessedMessage, utcnow,
)
from agenda.utils.ids import parse_uuid
from agenda.utils.phone import mask_address, normalize_address

logger = logging.getLogger(__name__)

IdLike = Union[str, uuid.UUID]

# Roles that make up conversational history
HISTORY_ROLES = (MessageRole.USER, MessageRole.ASSISTANT)


@dataclass
class MessageMetadata:
    """Usage accounting attached to assistant messages."""

    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    total_tokens: Optional[int] = None
    model: Optional[str] = None
    extra: dict[str, Any] = field(default_factory=dict)


class ConversationStore:
    """Conversation and message persistence, one session per operation."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def find_or_create_conversation(
        self, tenant_id: IdLike, customer_address: str
    ) -> Conversation:
        """
        Idempotent upsert keyed on (tenant, normalized address).

        Two concurrent first messages from the same address both end up with
        the same row: the loser of the insert race re-reads.

        Raises:
            PersistenceError: The database is unavailable. Nothing has been
                stored yet, so the delivery should be retried.
        """
        tenant_uuid = parse_uuid(tenant_id, "tenant_id")
        address = normalize_address(customer_address)
        stmt = select(Conversation).where(
            Conversation.tenant_id == tenant_uuid,
            Conversation.customer_address == address,
        )

        try:
            async with self._session_factory() as session:
                conversation = (await session.execute(stmt)).scalar_one_or_none()
                if conversation is not None:
                    return conversation

                conversation = Conversation(tenant_id=tenant_uuid, customer_address=address)
                session.add(conversation)
                try:
                    await session.commit()
                    logger.info(
                        f"Conversation {conversation.id} started with {mask_address(address)}"
                    )
                    return conversation
                except IntegrityError:
                    await session.rollback()
                    return (await session.execute(stmt)).scalar_one()
        except SQLAlchemyError as e:
            logger.error(f"Conversation lookup failed for {mask_address(address)}: {e}")
            raise PersistenceError("Conversation store unavailable") from e

    async def append_message(
        self,
        conversation_id: IdLike,
        role: MessageRole,
        content: str,
        metadata: Optional[MessageMetadata] = None,
    ) -> Optional[Message]:
        """
        Append a message and touch the conversation timestamps.

        Returns the stored message, or None if the write failed (logged).
        """
        conversation_uuid = parse_uuid(conversation_id, "conversation_id")
        metadata = metadata or MessageMetadata()

        try:
            async with self._session_factory() as session:
                async with session.begin():
                    message = Message(
                        conversation_id=conversation_uuid,
                        role=role,
                        content=content,
                        input_tokens=metadata.input_tokens,
                        output_tokens=metadata.output_tokens,
                        total_tokens=metadata.total_tokens,
                        model=metadata.model,
                        created_at=utcnow(),
                    )
                    session.add(message)

                    conversation = await session.get(Conversation, conversation_uuid)
                    if conversation is not None:
                        now = message.created_at
                        conversation.updated_at = now
                        if role == MessageRole.USER:
                            conversation.last_inbound_at = now
                        elif role == MessageRole.ASSISTANT:
                            conversation.last_outbound_at = now
            return message
        except SQLAlchemyError as e:
            logger.error(f"Failed to persist {role.value} message for {conversation_uuid}: {e}")
            return None

    async def get_recent_messages(self, conversation_id: IdLike, limit: int) -> list[Message]:
        """Most recent ``limit`` user/assistant messages, oldest first."""
        if limit <= 0:
            return []

        conversation_uuid = parse_uuid(conversation_id, "conversation_id")
        stmt = (
            select(Message)
            .where(
                Message.conversation_id == conversation_uuid,
                Message.role.in_(HISTORY_ROLES),
            )
            .order_by(Message.created_at.desc(), Message.id.desc())
            .limit(limit)
        )
        async with self._session_factory() as session:
            recent = list((await session.execute(stmt)).scalars())

        recent.reverse()
        return recent

    async def has_processed(self, conversation_id: IdLike, provider_message_id: str) -> bool:
        """Whether a marker exists. Lookup failures answer False (reprocess)."""
        try:
            async with self._session_factory() as session:
                stmt = select(ProcessedMessage.id).where(
                    ProcessedMessage.conversation_id == parse_uuid(conversation_id, "conversation_id"),
                    ProcessedMessage.provider_message_id == provider_message_id,
                )
                return (await session.execute(stmt.limit(1))).first() is not None
        except SQLAlchemyError as e:
            logger.error(f"Idempotency lookup failed for {provider_message_id}: {e}")
            return False

    async def mark_processed(self, conversation_id: IdLike, provider_message_id: str) -> bool:
        """
        Record that a provider message id has been fully handled.

        Returns True when the marker is stored (or already was), False when
        the write failed. A False result never counts as processed.
        """
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    session.add(
                        ProcessedMessage(
                            conversation_id=parse_uuid(conversation_id, "conversation_id"),
                            provider_message_id=provider_message_id,
                        )
                    )
            return True
        except IntegrityError:
            logger.debug(f"Message {provider_message_id} already marked processed")
            return True
        except SQLAlchemyError as e:
            logger.error(f"Failed to mark {provider_message_id} processed: {e}")
            return False
