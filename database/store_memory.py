"""
InMemoryConversationStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database)
  - Full interface compatibility with SqlConversationStore
  - Safe under asyncio (no awaits inside read-modify-write sections)
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import structlog
from collections import defaultdict
from datetime import datetime
from typing import Optional

from database.store_base import BaseConversationStore, DuplicateRecordError
from models.schemas import (
    Contact, Conversation, ConversationStatus, GlobalAgentConfig,
    Message, MessageDirection, OutboundItem, OutboundStatus,
    PRIORITY_RANK,
)

logger = structlog.get_logger()

_CLOSED = (ConversationStatus.CLOSED, ConversationStatus.ARCHIVED)


class InMemoryConversationStore(BaseConversationStore):
    """
    Full-featured in-memory store with the same interface as SqlConversationStore.
    Models are copied on the way in and out so callers never share state.
    """

    def __init__(self):
        self._contacts: dict[str, Contact] = {}
        self._conversations: dict[str, Conversation] = {}
        self._messages: dict[str, Message] = {}
        self._items: dict[str, OutboundItem] = {}
        self._agent_config: Optional[GlobalAgentConfig] = None

        # Indexes
        self._address_index: dict[str, str] = {}            # "channel:address" → contact_id
        self._external_id_index: dict[str, str] = {}        # external_id → message_id
        self._conversation_messages: dict[str, list[str]] = defaultdict(list)
        self._item_by_message: dict[str, str] = {}          # message_id → item_id
        logger.info("inmemory_store_initialized")

    # ── Contacts ──────────────────────────────────────────

    async def get_contact(self, contact_id: str) -> Optional[Contact]:
        contact = self._contacts.get(contact_id)
        return contact.model_copy(deep=True) if contact else None

    async def find_contact_by_address(self, channel: str, address: str) -> Optional[Contact]:
        cid = self._address_index.get(f"{channel}:{address}")
        if not cid:
            return None
        return await self.get_contact(cid)

    async def create_contact(self, contact: Contact) -> Contact:
        key = f"{contact.channel.value}:{contact.address}"
        if key in self._address_index:
            raise DuplicateRecordError("contact", key)
        self._contacts[contact.id] = contact.model_copy(deep=True)
        self._address_index[key] = contact.id
        return contact

    # ── Conversations ─────────────────────────────────────

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        conv = self._conversations.get(conversation_id)
        return conv.model_copy(deep=True) if conv else None

    async def find_open_conversation(
        self, contact_id: str, channel_account_id: str,
    ) -> Optional[Conversation]:
        candidates = [
            c for c in self._conversations.values()
            if c.contact_id == contact_id
            and c.channel_account_id == channel_account_id
            and c.status not in _CLOSED
        ]
        if not candidates:
            return None
        latest = max(candidates, key=lambda c: c.created_at)
        return latest.model_copy(deep=True)

    async def create_conversation(self, conversation: Conversation) -> Conversation:
        if conversation.id in self._conversations:
            raise DuplicateRecordError("conversation", conversation.id)
        self._conversations[conversation.id] = conversation.model_copy(deep=True)
        return conversation

    async def save_conversation(self, conversation: Conversation) -> None:
        self._conversations[conversation.id] = conversation.model_copy(deep=True)

    async def touch_conversation(self, conversation_id: str, at: datetime) -> None:
        conv = self._conversations.get(conversation_id)
        if conv and at > conv.last_activity_at:
            conv.last_activity_at = at

    # ── Messages ──────────────────────────────────────────

    async def add_message(self, message: Message) -> Message:
        if message.external_id and message.external_id in self._external_id_index:
            raise DuplicateRecordError("message", message.external_id)
        self._messages[message.id] = message.model_copy(deep=True)
        if message.external_id:
            self._external_id_index[message.external_id] = message.id
        self._conversation_messages[message.conversation_id].append(message.id)
        return message

    async def get_message(self, message_id: str) -> Optional[Message]:
        msg = self._messages.get(message_id)
        return msg.model_copy(deep=True) if msg else None

    async def get_messages(self, message_ids: list[str]) -> list[Message]:
        found = [self._messages[mid] for mid in message_ids if mid in self._messages]
        return [m.model_copy(deep=True) for m in sorted(found, key=lambda m: m.created_at)]

    async def get_message_by_external_id(self, external_id: str) -> Optional[Message]:
        mid = self._external_id_index.get(external_id)
        return await self.get_message(mid) if mid else None

    async def find_recent_duplicate(
        self, conversation_id: str, text: str, since: datetime,
    ) -> Optional[Message]:
        for mid in reversed(self._conversation_messages.get(conversation_id, [])):
            msg = self._messages[mid]
            if (msg.direction == MessageDirection.INBOUND
                    and msg.text == text and msg.created_at >= since):
                return msg.model_copy(deep=True)
        return None

    async def set_message_external_id(self, message_id: str, external_id: str) -> None:
        owner = self._external_id_index.get(external_id)
        if owner and owner != message_id:
            raise DuplicateRecordError("message", external_id)
        msg = self._messages.get(message_id)
        if msg:
            msg.external_id = external_id
            self._external_id_index[external_id] = message_id

    async def mark_messages_processed(self, message_ids: list[str]) -> int:
        count = 0
        for mid in message_ids:
            msg = self._messages.get(mid)
            if msg and not msg.processed:
                msg.processed = True
                count += 1
        return count

    async def list_unprocessed_inbound(
        self, created_before: datetime, limit: int = 500,
    ) -> list[Message]:
        pending = [
            m for m in self._messages.values()
            if m.direction == MessageDirection.INBOUND
            and not m.processed
            and m.created_at < created_before
        ]
        pending.sort(key=lambda m: m.created_at)
        return [m.model_copy(deep=True) for m in pending[:limit]]

    async def get_conversation_messages(
        self, conversation_id: str, limit: int = 20,
    ) -> list[Message]:
        msgs = [self._messages[mid] for mid in self._conversation_messages.get(conversation_id, [])]
        msgs.sort(key=lambda m: m.created_at)
        return [m.model_copy(deep=True) for m in msgs[-limit:]]

    async def delete_message(self, message_id: str) -> None:
        msg = self._messages.pop(message_id, None)
        if msg is None:
            return
        if msg.external_id:
            self._external_id_index.pop(msg.external_id, None)
        self._conversation_messages[msg.conversation_id].remove(message_id)

    # ── Outbound items ────────────────────────────────────

    def _in_flight_for(self, conversation_id: str) -> Optional[OutboundItem]:
        for item in self._items.values():
            if item.conversation_id == conversation_id and item.in_flight:
                return item
        return None

    async def create_outbound_item(self, item: OutboundItem) -> OutboundItem:
        if item.message_id in self._item_by_message:
            raise DuplicateRecordError("outbound_item", item.message_id)
        if item.in_flight and self._in_flight_for(item.conversation_id):
            raise DuplicateRecordError("in_flight_item", item.conversation_id)
        self._items[item.id] = item.model_copy(deep=True)
        self._item_by_message[item.message_id] = item.id
        return item

    async def get_outbound_item(self, item_id: str) -> Optional[OutboundItem]:
        item = self._items.get(item_id)
        return item.model_copy(deep=True) if item else None

    async def find_in_flight_item(self, conversation_id: str) -> Optional[OutboundItem]:
        item = self._in_flight_for(conversation_id)
        return item.model_copy(deep=True) if item else None

    async def save_outbound_item(self, item: OutboundItem) -> None:
        if item.in_flight:
            other = self._in_flight_for(item.conversation_id)
            if other and other.id != item.id:
                raise DuplicateRecordError("in_flight_item", item.conversation_id)
        self._items[item.id] = item.model_copy(deep=True)

    async def claim_outbound_item(self, item_id: str, now: datetime) -> Optional[OutboundItem]:
        item = self._items.get(item_id)
        if not item or item.status != OutboundStatus.PENDING:
            return None
        item.status = OutboundStatus.PROCESSING
        item.last_attempt_at = now
        return item.model_copy(deep=True)

    async def list_ready_items(self, now: datetime, limit: int = 10) -> list[OutboundItem]:
        ready = [
            i for i in self._items.values()
            if i.status == OutboundStatus.PENDING
            and i.scheduled_for <= now
            and (i.next_attempt_at is None or i.next_attempt_at <= now)
            and (i.expires_at is None or i.expires_at > now)
        ]
        ready.sort(key=lambda i: (-PRIORITY_RANK[i.priority], i.scheduled_for))
        return [i.model_copy(deep=True) for i in ready[:limit]]

    async def list_expired_items(self, now: datetime) -> list[OutboundItem]:
        return [
            i.model_copy(deep=True) for i in self._items.values()
            if i.status == OutboundStatus.PENDING
            and i.expires_at is not None and i.expires_at <= now
        ]

    async def list_stale_processing(self, claimed_before: datetime) -> list[OutboundItem]:
        return [
            i.model_copy(deep=True) for i in self._items.values()
            if i.status == OutboundStatus.PROCESSING
            and i.last_attempt_at is not None and i.last_attempt_at < claimed_before
        ]

    async def list_outbound_items(
        self,
        status: Optional[OutboundStatus] = None,
        conversation_id: Optional[str] = None,
        limit: int = 100,
    ) -> list[OutboundItem]:
        items = [
            i for i in self._items.values()
            if (status is None or i.status == status)
            and (conversation_id is None or i.conversation_id == conversation_id)
        ]
        items.sort(key=lambda i: i.created_at, reverse=True)
        return [i.model_copy(deep=True) for i in items[:limit]]

    async def count_outbound_by_status(self) -> dict[str, int]:
        counts = {s.value: 0 for s in OutboundStatus}
        for item in self._items.values():
            counts[item.status.value] += 1
        return counts

    # ── Agent configuration ───────────────────────────────

    async def get_agent_config(self) -> Optional[GlobalAgentConfig]:
        if self._agent_config is None:
            return None
        return self._agent_config.model_copy(deep=True)

    async def save_agent_config(self, config: GlobalAgentConfig) -> None:
        self._agent_config = config.model_copy(deep=True)
