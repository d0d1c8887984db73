"""
SqlConversationStore — Portable SQL queries for PostgreSQL, MySQL, SQLite.

  - Priority ordering uses a case() expression, not a database-specific function
  - Nested conversation state (counter, lead score, milestone) is stored as JSON
  - Uniqueness violations surface as DuplicateRecordError
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Optional

from sqlalchemy import select, update, delete, and_, case, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database.models import (
    AgentConfigRow, ContactRow, ConversationRow, MessageRow, OutboundItemRow,
)
from database.session import session_scope
from database.store_base import BaseConversationStore, DuplicateRecordError
from models.schemas import (
    ChannelType, Contact, Conversation, ConversationStatus, DeliveryError,
    GlobalAgentConfig, LeadScore, Message, MessageDirection, Milestone,
    OutboundItem, OutboundStatus, ResponseCounter, PRIORITY_RANK,
)

logger = structlog.get_logger()

_IN_FLIGHT = (OutboundStatus.PENDING.value, OutboundStatus.PROCESSING.value)
_CLOSED = (ConversationStatus.CLOSED.value, ConversationStatus.ARCHIVED.value)
_AGENT_CONFIG_ID = "global"

# Higher rank first
_priority_rank = case(
    {p.value: rank for p, rank in PRIORITY_RANK.items()},
    value=OutboundItemRow.priority,
    else_=0,
)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands datetimes back naive; everything here is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SqlConversationStore(BaseConversationStore):
    """
    Persistent conversation store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.

    Pass ``session_factory`` to bind the store to a specific engine; by default
    it uses the process-wide engine from database.session.
    """

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self) -> AsyncGenerator[AsyncSession, None]:
        async with session_scope(self._session_factory) as db:
            yield db

    # ── Contact operations ─────────────────────────────────

    async def get_contact(self, contact_id: str) -> Optional[Contact]:
        async with self._session() as db:
            row = await db.get(ContactRow, contact_id)
            return self._row_to_contact(row) if row else None

    async def find_contact_by_address(self, channel: str, address: str) -> Optional[Contact]:
        async with self._session() as db:
            stmt = select(ContactRow).where(and_(
                ContactRow.channel == channel,
                ContactRow.address == address,
            ))
            row = (await db.execute(stmt)).scalar_one_or_none()
            return self._row_to_contact(row) if row else None

    async def create_contact(self, contact: Contact) -> Contact:
        try:
            async with self._session() as db:
                db.add(ContactRow(
                    id=contact.id,
                    channel=contact.channel.value,
                    address=contact.address,
                    display_name=contact.display_name,
                    created_at=contact.created_at,
                ))
                await db.flush()
        except IntegrityError as e:
            raise DuplicateRecordError("contact", f"{contact.channel.value}:{contact.address}") from e
        return contact

    # ── Conversation operations ────────────────────────────

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        async with self._session() as db:
            row = await db.get(ConversationRow, conversation_id)
            return self._row_to_conversation(row) if row else None

    async def find_open_conversation(
        self, contact_id: str, channel_account_id: str,
    ) -> Optional[Conversation]:
        async with self._session() as db:
            stmt = (
                select(ConversationRow)
                .where(and_(
                    ConversationRow.contact_id == contact_id,
                    ConversationRow.channel_account_id == channel_account_id,
                    ConversationRow.status.not_in(_CLOSED),
                ))
                .order_by(ConversationRow.created_at.desc())
                .limit(1)
            )
            row = (await db.execute(stmt)).scalar_one_or_none()
            return self._row_to_conversation(row) if row else None

    async def create_conversation(self, conversation: Conversation) -> Conversation:
        try:
            async with self._session() as db:
                db.add(ConversationRow(id=conversation.id, **self._conversation_values(conversation)))
                await db.flush()
        except IntegrityError as e:
            raise DuplicateRecordError("conversation", conversation.id) from e
        return conversation

    async def save_conversation(self, conversation: Conversation) -> None:
        async with self._session() as db:
            await db.execute(
                update(ConversationRow)
                .where(ConversationRow.id == conversation.id)
                .values(**self._conversation_values(conversation))
            )

    async def touch_conversation(self, conversation_id: str, at: datetime) -> None:
        async with self._session() as db:
            await db.execute(
                update(ConversationRow)
                .where(and_(
                    ConversationRow.id == conversation_id,
                    ConversationRow.last_activity_at < at,
                ))
                .values(last_activity_at=at)
            )

    # ── Message operations ─────────────────────────────────

    async def add_message(self, message: Message) -> Message:
        try:
            async with self._session() as db:
                db.add(MessageRow(
                    id=message.id,
                    conversation_id=message.conversation_id,
                    direction=message.direction.value,
                    external_id=message.external_id,
                    sender_ref=message.sender_ref,
                    text=message.text,
                    processed=message.processed,
                    created_at=message.created_at,
                ))
                await db.flush()
        except IntegrityError as e:
            raise DuplicateRecordError("message", message.external_id or message.id) from e
        return message

    async def get_message(self, message_id: str) -> Optional[Message]:
        async with self._session() as db:
            row = await db.get(MessageRow, message_id)
            return self._row_to_message(row) if row else None

    async def get_messages(self, message_ids: list[str]) -> list[Message]:
        if not message_ids:
            return []
        async with self._session() as db:
            stmt = (
                select(MessageRow)
                .where(MessageRow.id.in_(message_ids))
                .order_by(MessageRow.created_at.asc())
            )
            rows = (await db.execute(stmt)).scalars().all()
            return [self._row_to_message(r) for r in rows]

    async def get_message_by_external_id(self, external_id: str) -> Optional[Message]:
        async with self._session() as db:
            stmt = select(MessageRow).where(MessageRow.external_id == external_id)
            row = (await db.execute(stmt)).scalar_one_or_none()
            return self._row_to_message(row) if row else None

    async def find_recent_duplicate(
        self, conversation_id: str, text: str, since: datetime,
    ) -> Optional[Message]:
        async with self._session() as db:
            stmt = (
                select(MessageRow)
                .where(and_(
                    MessageRow.conversation_id == conversation_id,
                    MessageRow.direction == MessageDirection.INBOUND.value,
                    MessageRow.text == text,
                    MessageRow.created_at >= since,
                ))
                .order_by(MessageRow.created_at.desc())
                .limit(1)
            )
            row = (await db.execute(stmt)).scalar_one_or_none()
            return self._row_to_message(row) if row else None

    async def set_message_external_id(self, message_id: str, external_id: str) -> None:
        try:
            async with self._session() as db:
                await db.execute(
                    update(MessageRow)
                    .where(MessageRow.id == message_id)
                    .values(external_id=external_id)
                )
        except IntegrityError as e:
            raise DuplicateRecordError("message", external_id) from e

    async def mark_messages_processed(self, message_ids: list[str]) -> int:
        if not message_ids:
            return 0
        async with self._session() as db:
            result = await db.execute(
                update(MessageRow)
                .where(and_(MessageRow.id.in_(message_ids), MessageRow.processed.is_(False)))
                .values(processed=True)
            )
            return result.rowcount or 0

    async def list_unprocessed_inbound(
        self, created_before: datetime, limit: int = 500,
    ) -> list[Message]:
        async with self._session() as db:
            stmt = (
                select(MessageRow)
                .where(and_(
                    MessageRow.direction == MessageDirection.INBOUND.value,
                    MessageRow.processed.is_(False),
                    MessageRow.created_at < created_before,
                ))
                .order_by(MessageRow.created_at.asc())
                .limit(limit)
            )
            rows = (await db.execute(stmt)).scalars().all()
            return [self._row_to_message(r) for r in rows]

    async def get_conversation_messages(
        self, conversation_id: str, limit: int = 20,
    ) -> list[Message]:
        async with self._session() as db:
            stmt = (
                select(MessageRow)
                .where(MessageRow.conversation_id == conversation_id)
                .order_by(MessageRow.created_at.desc())
                .limit(limit)
            )
            rows = (await db.execute(stmt)).scalars().all()
            return [self._row_to_message(r) for r in reversed(rows)]

    async def delete_message(self, message_id: str) -> None:
        async with self._session() as db:
            await db.execute(delete(MessageRow).where(MessageRow.id == message_id))

    # ── Outbound item operations ───────────────────────────

    async def create_outbound_item(self, item: OutboundItem) -> OutboundItem:
        try:
            async with self._session() as db:
                db.add(OutboundItemRow(id=item.id, **self._item_values(item)))
                await db.flush()
        except IntegrityError as e:
            raise DuplicateRecordError("outbound_item", item.message_id) from e
        return item

    async def get_outbound_item(self, item_id: str) -> Optional[OutboundItem]:
        async with self._session() as db:
            row = await db.get(OutboundItemRow, item_id)
            return self._row_to_item(row) if row else None

    async def find_in_flight_item(self, conversation_id: str) -> Optional[OutboundItem]:
        async with self._session() as db:
            stmt = select(OutboundItemRow).where(OutboundItemRow.in_flight_key == conversation_id)
            row = (await db.execute(stmt)).scalar_one_or_none()
            return self._row_to_item(row) if row else None

    async def save_outbound_item(self, item: OutboundItem) -> None:
        try:
            async with self._session() as db:
                await db.execute(
                    update(OutboundItemRow)
                    .where(OutboundItemRow.id == item.id)
                    .values(**self._item_values(item))
                )
        except IntegrityError as e:
            raise DuplicateRecordError("in_flight_item", item.conversation_id) from e

    async def claim_outbound_item(self, item_id: str, now: datetime) -> Optional[OutboundItem]:
        async with self._session() as db:
            result = await db.execute(
                update(OutboundItemRow)
                .where(and_(
                    OutboundItemRow.id == item_id,
                    OutboundItemRow.status == OutboundStatus.PENDING.value,
                ))
                .values(status=OutboundStatus.PROCESSING.value, last_attempt_at=now)
            )
            if result.rowcount != 1:
                return None
            row = await db.get(OutboundItemRow, item_id, populate_existing=True)
            return self._row_to_item(row)

    async def list_ready_items(self, now: datetime, limit: int = 10) -> list[OutboundItem]:
        async with self._session() as db:
            stmt = (
                select(OutboundItemRow)
                .where(and_(
                    OutboundItemRow.status == OutboundStatus.PENDING.value,
                    OutboundItemRow.scheduled_for <= now,
                    (OutboundItemRow.next_attempt_at.is_(None)) | (OutboundItemRow.next_attempt_at <= now),
                    (OutboundItemRow.expires_at.is_(None)) | (OutboundItemRow.expires_at > now),
                ))
                .order_by(_priority_rank.desc(), OutboundItemRow.scheduled_for.asc())
                .limit(limit)
            )
            rows = (await db.execute(stmt)).scalars().all()
            return [self._row_to_item(r) for r in rows]

    async def list_expired_items(self, now: datetime) -> list[OutboundItem]:
        async with self._session() as db:
            stmt = select(OutboundItemRow).where(and_(
                OutboundItemRow.status == OutboundStatus.PENDING.value,
                OutboundItemRow.expires_at.is_not(None),
                OutboundItemRow.expires_at <= now,
            ))
            rows = (await db.execute(stmt)).scalars().all()
            return [self._row_to_item(r) for r in rows]

    async def list_stale_processing(self, claimed_before: datetime) -> list[OutboundItem]:
        async with self._session() as db:
            stmt = select(OutboundItemRow).where(and_(
                OutboundItemRow.status == OutboundStatus.PROCESSING.value,
                OutboundItemRow.last_attempt_at.is_not(None),
                OutboundItemRow.last_attempt_at < claimed_before,
            ))
            rows = (await db.execute(stmt)).scalars().all()
            return [self._row_to_item(r) for r in rows]

    async def list_outbound_items(
        self,
        status: Optional[OutboundStatus] = None,
        conversation_id: Optional[str] = None,
        limit: int = 100,
    ) -> list[OutboundItem]:
        async with self._session() as db:
            stmt = select(OutboundItemRow)
            if status is not None:
                stmt = stmt.where(OutboundItemRow.status == status.value)
            if conversation_id is not None:
                stmt = stmt.where(OutboundItemRow.conversation_id == conversation_id)
            stmt = stmt.order_by(OutboundItemRow.created_at.desc()).limit(limit)
            rows = (await db.execute(stmt)).scalars().all()
            return [self._row_to_item(r) for r in rows]

    async def count_outbound_by_status(self) -> dict[str, int]:
        counts = {s.value: 0 for s in OutboundStatus}
        async with self._session() as db:
            stmt = select(OutboundItemRow.status, func.count()).group_by(OutboundItemRow.status)
            for status, count in (await db.execute(stmt)).all():
                counts[status] = count
        return counts

    # ── Agent configuration ────────────────────────────────

    async def get_agent_config(self) -> Optional[GlobalAgentConfig]:
        async with self._session() as db:
            row = await db.get(AgentConfigRow, _AGENT_CONFIG_ID)
            return GlobalAgentConfig.model_validate(row.data) if row else None

    async def save_agent_config(self, config: GlobalAgentConfig) -> None:
        async with self._session() as db:
            row = await db.get(AgentConfigRow, _AGENT_CONFIG_ID)
            data = config.model_dump(mode="json")
            if row is None:
                db.add(AgentConfigRow(id=_AGENT_CONFIG_ID, data=data))
            else:
                row.data = data

    # ── Row conversion ─────────────────────────────────────

    @staticmethod
    def _conversation_values(conv: Conversation) -> dict[str, Any]:
        return {
            "contact_id": conv.contact_id,
            "channel_account_id": conv.channel_account_id,
            "channel": conv.channel.value,
            "status": conv.status.value,
            "ai_enabled": conv.ai_enabled,
            "response_counter": conv.response_counter.model_dump(mode="json"),
            "lead_score": conv.lead_score.model_dump(mode="json"),
            "milestone": conv.milestone.model_dump(mode="json"),
            "metadata_": conv.metadata,
            "created_at": conv.created_at,
            "last_activity_at": conv.last_activity_at,
        }

    @staticmethod
    def _item_values(item: OutboundItem) -> dict[str, Any]:
        return {
            "conversation_id": item.conversation_id,
            "message_id": item.message_id,
            "in_flight_key": item.conversation_id if item.in_flight else None,
            "channel_account_id": item.channel_account_id,
            "recipient_ref": item.recipient_ref,
            "priority": item.priority.value,
            "status": item.status.value,
            "attempts": item.attempts,
            "max_attempts": item.max_attempts,
            "scheduled_for": item.scheduled_for,
            "next_attempt_at": item.next_attempt_at,
            "last_attempt_at": item.last_attempt_at,
            "expires_at": item.expires_at,
            "sent_at": item.sent_at,
            "external_message_id": item.external_message_id,
            "error_history": [e.model_dump(mode="json") for e in item.error_history],
            "metadata_": item.metadata,
            "created_at": item.created_at,
        }

    @staticmethod
    def _row_to_contact(row: ContactRow) -> Contact:
        return Contact(
            id=row.id,
            channel=ChannelType(row.channel),
            address=row.address,
            display_name=row.display_name or "",
            created_at=_aware(row.created_at),
        )

    @staticmethod
    def _row_to_conversation(row: ConversationRow) -> Conversation:
        return Conversation(
            id=row.id,
            contact_id=row.contact_id,
            channel_account_id=row.channel_account_id,
            channel=ChannelType(row.channel),
            status=ConversationStatus(row.status),
            ai_enabled=row.ai_enabled,
            response_counter=ResponseCounter.model_validate(row.response_counter or {}),
            lead_score=LeadScore.model_validate(row.lead_score or {}),
            milestone=Milestone.model_validate(row.milestone or {}),
            metadata=row.metadata_ or {},
            created_at=_aware(row.created_at),
            last_activity_at=_aware(row.last_activity_at),
        )

    @staticmethod
    def _row_to_message(row: MessageRow) -> Message:
        return Message(
            id=row.id,
            conversation_id=row.conversation_id,
            direction=MessageDirection(row.direction),
            external_id=row.external_id,
            sender_ref=row.sender_ref or "",
            text=row.text,
            processed=row.processed,
            created_at=_aware(row.created_at),
        )

    @staticmethod
    def _row_to_item(row: OutboundItemRow) -> OutboundItem:
        return OutboundItem(
            id=row.id,
            conversation_id=row.conversation_id,
            message_id=row.message_id,
            channel_account_id=row.channel_account_id,
            recipient_ref=row.recipient_ref,
            priority=row.priority,
            status=row.status,
            attempts=row.attempts,
            max_attempts=row.max_attempts,
            scheduled_for=_aware(row.scheduled_for),
            next_attempt_at=_aware(row.next_attempt_at),
            last_attempt_at=_aware(row.last_attempt_at),
            expires_at=_aware(row.expires_at),
            sent_at=_aware(row.sent_at),
            external_message_id=row.external_message_id,
            error_history=[DeliveryError.model_validate(e) for e in (row.error_history or [])],
            metadata=row.metadata_ or {},
            created_at=_aware(row.created_at),
        )
