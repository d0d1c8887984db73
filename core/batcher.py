"""
Collection Window — groups rapid-fire inbound messages per conversation.

The first message for a conversation opens a window that closes a fixed
``window_seconds`` later; messages arriving meanwhile join it without
moving the deadline. When the window closes it is removed from the map
and its messages are handed on as one batch.

Windows are process-local. The durable record is the message's
``processed`` flag, and the ReconciliationSweep picks up anything a lost
window left behind.
"""
from __future__ import annotations

import asyncio
import structlog
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional

from database.store_base import BaseConversationStore
from models.schemas import Message, utcnow

if TYPE_CHECKING:
    from core.pipeline import ConversationPipeline

logger = structlog.get_logger()

BatchHandler = Callable[[str, list[Message]], Awaitable[Any]]


@dataclass
class CollectionWindow:
    conversation_id: str
    opened_at: datetime
    expires_at: datetime
    messages: list[Message] = field(default_factory=list)
    timer: Optional[asyncio.Task] = None

    def add(self, message: Message) -> bool:
        if any(m.id == message.id for m in self.messages):
            return False
        self.messages.append(message)
        return True


class CollectionWindowManager:
    """
    Map of open windows keyed by conversation id, each owning its timer.

    ``notify`` never awaits, so on a single event loop it is the per-key
    critical section; the only other writer for a key is that key's timer.
    """

    def __init__(self, on_batch: BatchHandler, window_seconds: float = 5.0):
        self.on_batch = on_batch
        self.window_seconds = window_seconds
        self._windows: dict[str, CollectionWindow] = {}
        self._dispatching: set[asyncio.Task] = set()

    def notify(self, conversation_id: str, message: Message) -> CollectionWindow:
        window = self._windows.get(conversation_id)
        if window is None:
            now = utcnow()
            window = CollectionWindow(
                conversation_id=conversation_id,
                opened_at=now,
                expires_at=now + timedelta(seconds=self.window_seconds),
            )
            window.add(message)
            self._windows[conversation_id] = window
            window.timer = asyncio.create_task(self._close_after(conversation_id))
            logger.debug("collection_window_opened",
                         conversation_id=conversation_id,
                         expires_at=window.expires_at.isoformat())
        elif window.add(message):
            logger.debug("collection_window_appended",
                         conversation_id=conversation_id,
                         size=len(window.messages))
        return window

    def has_window(self, conversation_id: str) -> bool:
        return conversation_id in self._windows

    def open_windows(self) -> list[str]:
        return list(self._windows.keys())

    async def _close_after(self, conversation_id: str):
        await asyncio.sleep(self.window_seconds)
        window = self._windows.pop(conversation_id, None)
        if window is None:
            return

        task = asyncio.current_task()
        if task is not None:
            self._dispatching.add(task)
        logger.info("collection_window_closed",
                    conversation_id=conversation_id,
                    batch_size=len(window.messages))
        try:
            await self.on_batch(conversation_id, window.messages)
        except Exception as e:
            logger.error("batch_dispatch_failed",
                         conversation_id=conversation_id,
                         batch_size=len(window.messages),
                         error=str(e))
        finally:
            if task is not None:
                self._dispatching.discard(task)

    async def shutdown(self):
        """Drop open windows and wait for batches already being processed."""
        pending = list(self._windows.values())
        self._windows.clear()
        for window in pending:
            if window.timer:
                window.timer.cancel()
        for window in pending:
            if window.timer:
                try:
                    await window.timer
                except asyncio.CancelledError:
                    pass
        if self._dispatching:
            await asyncio.gather(*self._dispatching, return_exceptions=True)
        if pending:
            logger.info("collection_windows_dropped", count=len(pending))


# ══════════════════════════════════════════════════════════════
#  RECONCILIATION SWEEP
# ══════════════════════════════════════════════════════════════

class ReconciliationSweep:
    """
    Periodically feeds orphaned inbound messages straight to the pipeline.

    A message is orphaned when it is inbound, unprocessed, older than
    ``stale_after`` seconds and its conversation has no open window, no
    batch currently being processed and no outbound item in flight.
    """

    def __init__(
        self,
        store: BaseConversationStore,
        batcher: CollectionWindowManager,
        pipeline: ConversationPipeline,
        interval: float = 30.0,
        stale_after: float = 5.0,
        limit: int = 500,
    ):
        self.store = store
        self.batcher = batcher
        self.pipeline = pipeline
        self.interval = interval
        self.stale_after = stale_after
        self.limit = limit
        self._task: Optional[asyncio.Task] = None

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
        logger.info("reconciliation_sweep_started", interval=self.interval)
        while True:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("reconciliation_sweep_error", error=str(e))
            await asyncio.sleep(self.interval)

    async def run_once(self, now: Optional[datetime] = None) -> int:
        """One scan. Returns the number of conversations handed to the pipeline."""
        now = now or utcnow()
        orphans = await self.store.list_unprocessed_inbound(
            now - timedelta(seconds=self.stale_after), self.limit,
        )
        by_conversation: OrderedDict[str, list[Message]] = OrderedDict()
        for message in orphans:
            by_conversation.setdefault(message.conversation_id, []).append(message)

        dispatched = 0
        for conversation_id, messages in by_conversation.items():
            if self.batcher.has_window(conversation_id) or self.pipeline.is_busy(conversation_id):
                continue
            if await self.store.find_in_flight_item(conversation_id) is not None:
                logger.debug("sweep_skipped_in_flight", conversation_id=conversation_id)
                continue
            try:
                await self.pipeline.process_batch(conversation_id, messages)
                dispatched += 1
            except Exception as e:
                logger.error("sweep_batch_failed",
                             conversation_id=conversation_id,
                             batch_size=len(messages),
                             error=str(e))

        if dispatched:
            logger.info("reconciliation_sweep_dispatched",
                        conversations=dispatched, messages=len(orphans))
        return dispatched
