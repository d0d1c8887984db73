"""
Ingestion & Dedup — turns a normalized channel event into a stored Message.

Two fences keep webhook redeliveries out:
  1. the channel message id (external_id) is globally unique
  2. identical inbound text in the same conversation within a short window
     (some providers redeliver under a new wrapper id)

Either hit returns the existing message with ``is_new=False``. Storage
errors propagate; the webhook handler still acknowledges upstream, which
is safe because ingestion is idempotent.

Finding or opening the conversation is serialized per contact and account
within the process, so concurrent first messages share one conversation.
"""
from __future__ import annotations

import structlog
from datetime import timedelta
from typing import Optional

from channels.base import InputSanitizer
from config.settings import IngestionConfig
from core.locks import KeyedLocks
from core.milestones import set_milestone
from database.store_base import BaseConversationStore, DuplicateRecordError
from models.schemas import (
    Contact, Conversation, InboundEvent, Message, MessageDirection, MilestoneSetting, utcnow,
)

logger = structlog.get_logger()

# Event metadata worth keeping on the conversation for replies.
_THREAD_KEYS = ("thread_id", "subject", "rfc_message_id")


class IngestionService:

    def __init__(
        self,
        store: BaseConversationStore,
        duplicate_window_seconds: float = 10.0,
        max_text_length: int = 4000,
        default_milestones: Optional[dict[str, MilestoneSetting]] = None,
    ):
        self.store = store
        self.duplicate_window = timedelta(seconds=duplicate_window_seconds)
        self.sanitizer = InputSanitizer(max_length=max_text_length)
        self.default_milestones = default_milestones or {}
        # (contact_id, channel_account_id) -> lock around find-or-create
        self._conversation_locks = KeyedLocks()

    @classmethod
    def from_config(
        cls,
        store: BaseConversationStore,
        config: IngestionConfig,
        default_milestones: Optional[dict[str, MilestoneSetting]] = None,
    ) -> IngestionService:
        return cls(store, config.duplicate_window_seconds, config.max_text_length, default_milestones)

    async def ingest(self, event: InboundEvent) -> tuple[Message, bool]:
        existing = await self.store.get_message_by_external_id(event.external_id)
        if existing is not None:
            logger.info("inbound_duplicate",
                        fence="external_id",
                        external_id=event.external_id,
                        conversation_id=existing.conversation_id)
            return existing, False

        contact = await self._locate_contact(event)
        conversation = await self._locate_conversation(event, contact)

        now = utcnow()
        text = self.sanitizer.sanitize(event.text)
        duplicate = await self.store.find_recent_duplicate(
            conversation.id, text, now - self.duplicate_window,
        )
        if duplicate is not None:
            logger.info("inbound_duplicate",
                        fence="content",
                        external_id=event.external_id,
                        duplicate_of=duplicate.id,
                        conversation_id=conversation.id)
            return duplicate, False

        message = Message(
            conversation_id=conversation.id,
            direction=MessageDirection.INBOUND,
            external_id=event.external_id,
            sender_ref=contact.address,
            text=text,
            created_at=now,
        )
        try:
            await self.store.add_message(message)
        except DuplicateRecordError:
            # A concurrent delivery of the same event got there first.
            winner = await self.store.get_message_by_external_id(event.external_id)
            if winner is None:
                raise
            return winner, False

        await self.store.touch_conversation(conversation.id, now)
        logger.info("inbound_message_ingested",
                    conversation_id=conversation.id,
                    message_id=message.id,
                    channel=event.channel.value,
                    text_length=len(text))
        return message, True

    # ── Upserts ───────────────────────────────────────────────

    async def _locate_contact(self, event: InboundEvent) -> Contact:
        contact = await self.store.find_contact_by_address(event.channel.value, event.sender_address)
        if contact is not None:
            return contact
        contact = Contact(
            channel=event.channel,
            address=event.sender_address,
            display_name=self.sanitizer.sanitize(event.sender_name)[:200],
        )
        try:
            return await self.store.create_contact(contact)
        except DuplicateRecordError:
            found = await self.store.find_contact_by_address(event.channel.value, event.sender_address)
            if found is None:
                raise
            return found

    async def _locate_conversation(self, event: InboundEvent, contact: Contact) -> Conversation:
        async with self._conversation_locks.hold((contact.id, event.channel_account_id)):
            return await self._find_or_create_conversation(event, contact)

    async def _find_or_create_conversation(self, event: InboundEvent, contact: Contact) -> Conversation:
        conversation: Optional[Conversation] = await self.store.find_open_conversation(
            contact.id, event.channel_account_id,
        )
        if conversation is not None:
            return conversation

        conversation = Conversation(
            contact_id=contact.id,
            channel_account_id=event.channel_account_id,
            channel=event.channel,
            metadata={k: event.metadata[k] for k in _THREAD_KEYS if event.metadata.get(k)},
        )
        setting = self.default_milestones.get(event.channel_account_id)
        if setting is not None:
            set_milestone(conversation, setting)
        await self.store.create_conversation(conversation)
        logger.info("conversation_created",
                    conversation_id=conversation.id,
                    contact_id=contact.id,
                    channel_account_id=event.channel_account_id)
        return conversation
