"""
Abstract Conversation Store — Interface for all storage backends.

Implementations:
  - SqlConversationStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryConversationStore (dict-based, single-process, no persistence)

Uniqueness rules every backend must enforce atomically:
  - messages.external_id is globally unique
  - outbound_items.message_id is unique
  - at most one outbound item per conversation in pending/processing
Violations raise DuplicateRecordError.

Stores hand out copies: mutating a returned model changes nothing until
it is passed back through a save_* method.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from models.schemas import (
    Contact, Conversation, GlobalAgentConfig, Message,
    OutboundItem, OutboundStatus,
)


class DuplicateRecordError(Exception):
    """A uniqueness constraint would be violated."""

    def __init__(self, entity: str, key: str):
        super().__init__(f"duplicate {entity}: {key}")
        self.entity = entity
        self.key = key


class BaseConversationStore(ABC):
    """Interface that all conversation store backends must implement."""

    # ── Contacts ──────────────────────────────────────────────

    @abstractmethod
    async def get_contact(self, contact_id: str) -> Optional[Contact]:
        ...

    @abstractmethod
    async def find_contact_by_address(self, channel: str, address: str) -> Optional[Contact]:
        ...

    @abstractmethod
    async def create_contact(self, contact: Contact) -> Contact:
        ...

    # ── Conversations ─────────────────────────────────────────

    @abstractmethod
    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        ...

    @abstractmethod
    async def find_open_conversation(
        self, contact_id: str, channel_account_id: str,
    ) -> Optional[Conversation]:
        """Latest conversation for the pair that is not closed or archived."""
        ...

    @abstractmethod
    async def create_conversation(self, conversation: Conversation) -> Conversation:
        ...

    @abstractmethod
    async def save_conversation(self, conversation: Conversation) -> None:
        ...

    @abstractmethod
    async def touch_conversation(self, conversation_id: str, at: datetime) -> None:
        """Bump last_activity_at without rewriting the rest of the conversation."""
        ...

    # ── Messages ──────────────────────────────────────────────

    @abstractmethod
    async def add_message(self, message: Message) -> Message:
        ...

    @abstractmethod
    async def get_message(self, message_id: str) -> Optional[Message]:
        ...

    @abstractmethod
    async def get_messages(self, message_ids: list[str]) -> list[Message]:
        """Messages by id, ordered by created_at."""
        ...

    @abstractmethod
    async def get_message_by_external_id(self, external_id: str) -> Optional[Message]:
        ...

    @abstractmethod
    async def find_recent_duplicate(
        self, conversation_id: str, text: str, since: datetime,
    ) -> Optional[Message]:
        """Inbound message in the conversation with identical text created at or after ``since``."""
        ...

    @abstractmethod
    async def set_message_external_id(self, message_id: str, external_id: str) -> None:
        ...

    @abstractmethod
    async def mark_messages_processed(self, message_ids: list[str]) -> int:
        ...

    @abstractmethod
    async def delete_message(self, message_id: str) -> None:
        """Remove a message that never went out; unknown ids are ignored."""
        ...

    @abstractmethod
    async def list_unprocessed_inbound(
        self, created_before: datetime, limit: int = 500,
    ) -> list[Message]:
        """Inbound, unprocessed messages older than ``created_before``, oldest first."""
        ...

    @abstractmethod
    async def get_conversation_messages(
        self, conversation_id: str, limit: int = 20,
    ) -> list[Message]:
        """The most recent ``limit`` messages, returned oldest first."""
        ...

    # ── Outbound items ────────────────────────────────────────

    @abstractmethod
    async def create_outbound_item(self, item: OutboundItem) -> OutboundItem:
        ...

    @abstractmethod
    async def get_outbound_item(self, item_id: str) -> Optional[OutboundItem]:
        ...

    @abstractmethod
    async def find_in_flight_item(self, conversation_id: str) -> Optional[OutboundItem]:
        ...

    @abstractmethod
    async def save_outbound_item(self, item: OutboundItem) -> None:
        ...

    @abstractmethod
    async def claim_outbound_item(self, item_id: str, now: datetime) -> Optional[OutboundItem]:
        """Atomically move a pending item to processing. None if someone else got it."""
        ...

    @abstractmethod
    async def list_ready_items(self, now: datetime, limit: int = 10) -> list[OutboundItem]:
        """Pending, due, not expired; priority desc then scheduled_for asc."""
        ...

    @abstractmethod
    async def list_expired_items(self, now: datetime) -> list[OutboundItem]:
        """Pending items whose expires_at has passed."""
        ...

    @abstractmethod
    async def list_stale_processing(self, claimed_before: datetime) -> list[OutboundItem]:
        ...

    @abstractmethod
    async def list_outbound_items(
        self,
        status: Optional[OutboundStatus] = None,
        conversation_id: Optional[str] = None,
        limit: int = 100,
    ) -> list[OutboundItem]:
        ...

    @abstractmethod
    async def count_outbound_by_status(self) -> dict[str, int]:
        ...

    # ── Agent configuration ───────────────────────────────────

    @abstractmethod
    async def get_agent_config(self) -> Optional[GlobalAgentConfig]:
        ...

    @abstractmethod
    async def save_agent_config(self, config: GlobalAgentConfig) -> None:
        ...
