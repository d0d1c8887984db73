"""
Outbound Delivery Queue — durable, priority-ordered mailbox of pending sends.

Items live in the conversation store; this module owns their state rules:

  pending ──claim──▶ processing ──ok──▶ sent
     ▲                    │
     └──── backoff ◀──────┤ transient error (attempts < max)
                          └──────────▶ failed (exhausted or permanent)
  pending ──expires_at passed──▶ cancelled

Invariant: at most one pending/processing item per conversation. Checked
before insert and enforced again by the store's uniqueness rules.

Backoff: delay = base_delay_ms * multiplier ** attempts (1000ms * 2^n by default).
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta
from typing import Any, Optional

from config.settings import QueueConfig
from core.errors import ItemNotFoundError, QueueInvariantError
from database.store_base import BaseConversationStore, DuplicateRecordError
from models.schemas import (
    Conversation, DeliveryError, Message, OutboundItem, OutboundPriority,
    OutboundStatus, utcnow,
)

logger = structlog.get_logger()

_RESETTABLE = (OutboundStatus.FAILED, OutboundStatus.CANCELLED)


class OutboundQueue:
    """
    Queue operations over the store.

    Usage:
        queue = OutboundQueue(store)
        item = await queue.enqueue(conversation, message, recipient_ref="1784…")
        for item in await queue.ready_items(limit=10):
            claimed = await queue.claim(item)
            ...
            await queue.mark_sent(claimed, external_message_id)
    """

    def __init__(
        self,
        store: BaseConversationStore,
        base_delay_ms: int = 1000,
        backoff_multiplier: int = 2,
        max_attempts: int = 3,
        processing_timeout_seconds: float = 300.0,
        default_ttl_seconds: Optional[float] = None,
    ):
        self.store = store
        self.base_delay_ms = base_delay_ms
        self.backoff_multiplier = backoff_multiplier
        self.max_attempts = max_attempts
        self.processing_timeout_seconds = processing_timeout_seconds
        self.default_ttl_seconds = default_ttl_seconds

    @classmethod
    def from_config(cls, store: BaseConversationStore, config: QueueConfig) -> OutboundQueue:
        return cls(
            store,
            base_delay_ms=config.base_delay_ms,
            backoff_multiplier=config.backoff_multiplier,
            max_attempts=config.max_attempts,
            processing_timeout_seconds=config.processing_timeout_seconds,
            default_ttl_seconds=config.default_ttl_seconds,
        )

    def backoff_ms(self, attempts: int) -> int:
        return self.base_delay_ms * (self.backoff_multiplier ** attempts)

    # ── Creation ──────────────────────────────────────────────

    async def has_in_flight(self, conversation_id: str) -> bool:
        return await self.store.find_in_flight_item(conversation_id) is not None

    async def enqueue(
        self,
        conversation: Conversation,
        message: Message,
        recipient_ref: str,
        priority: OutboundPriority = OutboundPriority.NORMAL,
        scheduled_for: Optional[datetime] = None,
        expires_at: Optional[datetime] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Optional[OutboundItem]:
        """Create the pending item for an outbound message, or None if one is already in flight."""
        existing = await self.store.find_in_flight_item(conversation.id)
        if existing is not None:
            logger.warning("outbound_enqueue_skipped_in_flight",
                           conversation_id=conversation.id,
                           in_flight_item_id=existing.id,
                           message_id=message.id)
            return None

        now = utcnow()
        if expires_at is None and self.default_ttl_seconds:
            expires_at = now + timedelta(seconds=self.default_ttl_seconds)

        item = OutboundItem(
            conversation_id=conversation.id,
            message_id=message.id,
            channel_account_id=conversation.channel_account_id,
            recipient_ref=recipient_ref,
            priority=priority,
            max_attempts=self.max_attempts,
            scheduled_for=scheduled_for or now,
            expires_at=expires_at,
            metadata=metadata or {},
        )
        try:
            await self.store.create_outbound_item(item)
        except DuplicateRecordError as e:
            # Lost the race against another writer; theirs stands.
            logger.warning("outbound_enqueue_duplicate",
                           conversation_id=conversation.id,
                           message_id=message.id, entity=e.entity)
            return None

        logger.info("outbound_item_enqueued",
                    conversation_id=conversation.id,
                    item_id=item.id,
                    message_id=message.id,
                    priority=priority.value)
        return item

    # ── Selection & claiming ──────────────────────────────────

    async def ready_items(self, limit: int = 10, now: Optional[datetime] = None) -> list[OutboundItem]:
        return await self.store.list_ready_items(now or utcnow(), limit)

    async def claim(self, item: OutboundItem, now: Optional[datetime] = None) -> Optional[OutboundItem]:
        return await self.store.claim_outbound_item(item.id, now or utcnow())

    # ── Outcomes ──────────────────────────────────────────────

    async def mark_sent(
        self, item: OutboundItem, external_message_id: str, now: Optional[datetime] = None,
    ) -> OutboundItem:
        now = now or utcnow()
        item.attempts += 1
        item.status = OutboundStatus.SENT
        item.sent_at = now
        item.next_attempt_at = None
        item.external_message_id = external_message_id
        await self.store.save_outbound_item(item)
        logger.info("outbound_item_sent",
                    conversation_id=item.conversation_id,
                    item_id=item.id,
                    attempt=item.attempts,
                    external_message_id=external_message_id)
        return item

    async def record_failure(
        self,
        item: OutboundItem,
        error_code: str,
        error_message: str = "",
        permanent: bool = False,
        now: Optional[datetime] = None,
    ) -> OutboundItem:
        """Count the attempt; reschedule with backoff or fail for good."""
        now = now or utcnow()
        item.attempts += 1
        item.error_history.append(DeliveryError(
            attempt=item.attempts,
            timestamp=now,
            error_code=error_code,
            error_message=error_message,
        ))

        if permanent or item.attempts >= item.max_attempts:
            item.status = OutboundStatus.FAILED
            item.next_attempt_at = None
            logger.error("outbound_item_failed",
                         conversation_id=item.conversation_id,
                         item_id=item.id,
                         attempt=item.attempts,
                         error_code=error_code,
                         permanent=permanent)
        else:
            delay_ms = self.backoff_ms(item.attempts)
            item.status = OutboundStatus.PENDING
            item.next_attempt_at = now + timedelta(milliseconds=delay_ms)
            logger.warning("outbound_item_retry_scheduled",
                           conversation_id=item.conversation_id,
                           item_id=item.id,
                           attempt=item.attempts,
                           error_code=error_code,
                           delay_ms=delay_ms)

        await self.store.save_outbound_item(item)
        return item

    async def defer(
        self, item: OutboundItem, retry_after: float, reason: str, now: Optional[datetime] = None,
    ) -> OutboundItem:
        """Push the item back without touching its attempt counter."""
        now = now or utcnow()
        item.status = OutboundStatus.PENDING
        item.next_attempt_at = now + timedelta(seconds=retry_after)
        await self.store.save_outbound_item(item)
        logger.info("outbound_item_deferred",
                    conversation_id=item.conversation_id,
                    item_id=item.id,
                    reason=reason,
                    retry_after=round(retry_after, 3))
        return item

    # ── Sweeps ────────────────────────────────────────────────

    async def requeue_due_retries(self, now: Optional[datetime] = None) -> int:
        """
        Return processing items claimed longer ago than the processing
        timeout (the worker died mid-send) to pending. This counts as a failed
        attempt, so an item out of attempts fails instead. Ordinary retries
        stay pending with next_attempt_at and need no sweep.
        """
        now = now or utcnow()
        requeued = 0

        stale_before = now - timedelta(seconds=self.processing_timeout_seconds)
        for item in await self.store.list_stale_processing(stale_before):
            await self.record_failure(item, "PROCESSING_TIMEOUT",
                                      "claimed but never resolved", now=now)
            requeued += item.status == OutboundStatus.PENDING

        return requeued

    async def cancel_expired(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        cancelled = 0
        for item in await self.store.list_expired_items(now):
            item.status = OutboundStatus.CANCELLED
            item.next_attempt_at = None
            await self.store.save_outbound_item(item)
            cancelled += 1
            logger.info("outbound_item_expired",
                        conversation_id=item.conversation_id,
                        item_id=item.id,
                        expires_at=item.expires_at.isoformat() if item.expires_at else None)
        return cancelled

    # ── Operator actions ──────────────────────────────────────

    async def reset_item(self, item_id: str) -> OutboundItem:
        """Force a failed or cancelled item back to pending, outside the backoff schedule."""
        item = await self.store.get_outbound_item(item_id)
        if item is None:
            raise ItemNotFoundError(f"outbound item {item_id} not found")
        if item.status not in _RESETTABLE:
            raise QueueInvariantError(f"cannot reset item in status {item.status.value}")

        other = await self.store.find_in_flight_item(item.conversation_id)
        if other is not None:
            raise QueueInvariantError(
                f"conversation {item.conversation_id} already has item {other.id} in flight"
            )

        item.status = OutboundStatus.PENDING
        item.attempts = 0
        item.next_attempt_at = None
        item.expires_at = None
        item.scheduled_for = utcnow()
        try:
            await self.store.save_outbound_item(item)
        except DuplicateRecordError as e:
            raise QueueInvariantError(str(e)) from e

        logger.info("outbound_item_reset",
                    conversation_id=item.conversation_id,
                    item_id=item.id,
                    previous_errors=len(item.error_history))
        return item

    async def list_items(
        self,
        status: Optional[OutboundStatus] = None,
        conversation_id: Optional[str] = None,
        limit: int = 100,
    ) -> list[OutboundItem]:
        return await self.store.list_outbound_items(status, conversation_id, limit)

    async def stats(self) -> dict[str, int]:
        return await self.store.count_outbound_by_status()
