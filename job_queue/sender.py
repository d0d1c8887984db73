"""
Sender Worker — drains the outbound queue through the channel senders.

Per pass:
  1. take up to ``batch_size`` ready items (priority desc, scheduled asc)
  2. for each: check the account budget and the contact cooldown, claim,
     send with a timeout, then mark sent / schedule retry / fail
  3. requeue items whose retry time has come
  4. cancel expired pending items

A closed gate defers the item without counting an attempt. A
RECIPIENT_NOT_FOUND (or any other permanent transport error) fails the
item on the spot.
"""
from __future__ import annotations

import asyncio
import time
import structlog
from datetime import datetime
from typing import Any, Callable, Optional

from channels.base import (
    ChannelError, ChannelRegistry, TokenBucketRateLimiter, TransportPermanentError,
)
from config.settings import SenderConfig
from core.errors import RateLimited
from database.store_base import BaseConversationStore, DuplicateRecordError
from job_queue.outbound_queue import OutboundQueue
from models.schemas import OutboundItem, OutboundStatus, utcnow

logger = structlog.get_logger()


class ContactCooldown:
    """
    Minimum spacing between consecutive sends to the same contact. Only
    contacts still inside their cooldown are remembered.
    """

    def __init__(self, seconds: float = 1.0, clock: Callable[[], float] = time.monotonic):
        self.seconds = seconds
        self._clock = clock
        self._last_send: dict[str, float] = {}

    def retry_after(self, key: str) -> float:
        last = self._last_send.get(key)
        if last is None:
            return 0.0
        return max(0.0, self.seconds - (self._clock() - last))

    def mark(self, key: str):
        now = self._clock()
        self._last_send = {k: t for k, t in self._last_send.items() if now - t < self.seconds}
        self._last_send[key] = now

    @property
    def tracked(self) -> int:
        return len(self._last_send)


class SenderWorker:
    """
    Periodic queue drainer.

    Usage:
        worker = SenderWorker(queue, store, registry)
        await worker.start_background()
        ...
        await worker.stop()
    """

    def __init__(
        self,
        queue: OutboundQueue,
        store: BaseConversationStore,
        channels: ChannelRegistry,
        account_rate_per_second: float = 3.0,
        account_burst: int = 3,
        contact_cooldown_seconds: float = 1.0,
        batch_size: int = 10,
        interval: float = 30.0,
        send_timeout: float = 15.0,
    ):
        self.queue = queue
        self.store = store
        self.channels = channels
        self.account_rate_per_second = account_rate_per_second
        self.account_burst = account_burst
        self.cooldown = ContactCooldown(contact_cooldown_seconds)
        self.batch_size = batch_size
        self.interval = interval
        self.send_timeout = send_timeout
        self._account_limiters: dict[str, TokenBucketRateLimiter] = {}
        self._task: Optional[asyncio.Task] = None

    @classmethod
    def from_config(
        cls, queue: OutboundQueue, store: BaseConversationStore,
        channels: ChannelRegistry, config: SenderConfig,
    ) -> SenderWorker:
        return cls(
            queue, store, channels,
            account_rate_per_second=config.account_rate_per_second,
            account_burst=config.account_burst,
            contact_cooldown_seconds=config.contact_cooldown_seconds,
            batch_size=config.batch_size,
            interval=config.interval_seconds,
            send_timeout=config.send_timeout_seconds,
        )

    # ── Lifecycle ─────────────────────────────────────────────

    async def start_background(self) -> asyncio.Task:
        self._task = asyncio.create_task(self._run())
        return self._task

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _run(self):
        logger.info("sender_worker_started", interval=self.interval, batch_size=self.batch_size)
        while True:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("sender_pass_error", error=str(e))
            await asyncio.sleep(self.interval)

    # ── One pass ──────────────────────────────────────────────

    async def run_once(self, now: Optional[datetime] = None) -> dict[str, int]:
        now = now or utcnow()
        outcomes: dict[str, int] = {}

        for item in await self.queue.ready_items(self.batch_size, now):
            try:
                outcome = await self.process_item(item)
            except Exception as e:
                # One bad item never stops the pass.
                outcome = "error"
                logger.error("outbound_item_processing_error",
                             conversation_id=item.conversation_id,
                             item_id=item.id,
                             attempt=item.attempts + 1,
                             error=str(e))
            outcomes[outcome] = outcomes.get(outcome, 0) + 1

        outcomes["requeued"] = await self.queue.requeue_due_retries(now)
        outcomes["cancelled"] = await self.queue.cancel_expired(now)

        if any(outcomes.values()):
            logger.info("sender_pass_complete", **outcomes)
        return outcomes

    async def process_item(self, item: OutboundItem) -> str:
        """Take one ready item to its next state. Returns the outcome name."""
        try:
            self._check_gates(item)
        except RateLimited as e:
            await self.queue.defer(item, e.retry_after, e.gate)
            return "deferred"

        claimed = await self.queue.claim(item)
        if claimed is None:
            return "skipped"
        self.cooldown.mark(self._contact_key(claimed))

        message = await self.store.get_message(claimed.message_id)
        if message is None:
            await self.queue.record_failure(claimed, "MESSAGE_NOT_FOUND",
                                            f"message {claimed.message_id} is gone",
                                            permanent=True)
            return "failed"
        if message.external_id:
            # Already delivered by an earlier attempt whose outcome was lost.
            await self.queue.mark_sent(claimed, message.external_id)
            return "sent"

        try:
            sender = self.channels.for_account(claimed.channel_account_id)
            result = await asyncio.wait_for(
                sender.send(claimed.recipient_ref, message.text, claimed.metadata),
                timeout=self.send_timeout,
            )
        except asyncio.TimeoutError:
            await self.queue.record_failure(claimed, "SEND_TIMEOUT",
                                            f"no answer within {self.send_timeout}s")
            return self._outcome(claimed)
        except TransportPermanentError as e:
            await self.queue.record_failure(claimed, e.code, str(e), permanent=True)
            return "failed"
        except ChannelError as e:
            await self.queue.record_failure(claimed, e.code, str(e))
            return self._outcome(claimed)
        except Exception as e:
            await self.queue.record_failure(claimed, type(e).__name__, str(e))
            return self._outcome(claimed)

        try:
            await self.store.set_message_external_id(message.id, result.external_message_id)
        except DuplicateRecordError:
            logger.warning("external_id_already_recorded",
                           conversation_id=claimed.conversation_id,
                           message_id=message.id,
                           external_message_id=result.external_message_id)
        await self.queue.mark_sent(claimed, result.external_message_id)
        return "sent"

    # ── Gates ─────────────────────────────────────────────────

    def _check_gates(self, item: OutboundItem):
        wait = self.cooldown.retry_after(self._contact_key(item))
        if wait > 0:
            raise RateLimited("contact_cooldown", wait)

        limiter = self._limiter_for(item.channel_account_id)
        if not limiter.try_acquire():
            raise RateLimited("account", limiter.retry_after())

    def _limiter_for(self, account_id: str) -> TokenBucketRateLimiter:
        limiter = self._account_limiters.get(account_id)
        if limiter is None:
            limiter = TokenBucketRateLimiter(self.account_rate_per_second, self.account_burst)
            self._account_limiters[account_id] = limiter
        return limiter

    @staticmethod
    def _contact_key(item: OutboundItem) -> str:
        return f"{item.channel_account_id}:{item.recipient_ref}"

    @staticmethod
    def _outcome(item: OutboundItem) -> str:
        return "failed" if item.status == OutboundStatus.FAILED else "retry_scheduled"

    def stats(self) -> dict[str, Any]:
        return {
            "running": self._task is not None and not self._task.done(),
            "interval": self.interval,
            "batch_size": self.batch_size,
            "accounts": {
                acct: round(limiter.retry_after(), 3)
                for acct, limiter in self._account_limiters.items()
            },
        }
