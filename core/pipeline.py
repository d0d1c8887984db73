"""
Glue between the inbound stages.

  webhook event → IngestionService.ingest → CollectionWindowManager.notify
  window closes / sweep finds orphans → process_batch
      → AgentRulesEngine.check → ResponseOrchestrator.orchestrate → queue

Batches for one conversation are processed one at a time (per-conversation
lock); different conversations run in parallel.
"""
from __future__ import annotations

import structlog
from typing import AsyncContextManager, Optional

from core.batcher import CollectionWindowManager
from core.ingestion import IngestionService
from core.locks import KeyedLocks
from core.orchestrator import ResponseOrchestrator
from database.store_base import BaseConversationStore
from models.schemas import (
    ConversationStatus, InboundEvent, Message, MessageDirection, OutboundItem,
)
from rules.engine import AgentRulesEngine

logger = structlog.get_logger()

_INACTIVE = (ConversationStatus.CLOSED, ConversationStatus.ARCHIVED)


class ConversationPipeline:

    def __init__(
        self,
        store: BaseConversationStore,
        ingestion: IngestionService,
        rules: AgentRulesEngine,
        orchestrator: ResponseOrchestrator,
        window_seconds: float = 5.0,
    ):
        self.store = store
        self.ingestion = ingestion
        self.rules = rules
        self.orchestrator = orchestrator
        self.batcher = CollectionWindowManager(self.process_batch, window_seconds)
        self.locks = KeyedLocks()

    async def handle_inbound(self, event: InboundEvent) -> tuple[Message, bool]:
        message, is_new = await self.ingestion.ingest(event)
        if is_new and message.direction == MessageDirection.INBOUND:
            self.batcher.notify(message.conversation_id, message)
        return message, is_new

    def conversation_lock(self, conversation_id: str) -> AsyncContextManager[None]:
        """
        Held while a batch for the conversation is processed; operator writes
        take it too. The lock is forgotten once nobody holds or waits for it.
        """
        return self.locks.hold(conversation_id)

    def is_busy(self, conversation_id: str) -> bool:
        return self.locks.locked(conversation_id)

    async def process_batch(
        self, conversation_id: str, messages: list[Message],
    ) -> Optional[OutboundItem]:
        async with self.conversation_lock(conversation_id):
            return await self._process(conversation_id, messages)

    async def _process(
        self, conversation_id: str, messages: list[Message],
    ) -> Optional[OutboundItem]:
        conversation = await self.store.get_conversation(conversation_id)
        if conversation is None:
            logger.warning("batch_conversation_missing", conversation_id=conversation_id)
            return None

        # Another path may have handled part of the batch while we waited.
        fresh = await self.store.get_messages([m.id for m in messages])
        batch = [m for m in fresh if not m.processed and m.direction == MessageDirection.INBOUND]
        if not batch:
            return None

        if conversation.status in _INACTIVE or not conversation.ai_enabled:
            await self.store.mark_messages_processed([m.id for m in batch])
            logger.info("batch_skipped",
                        conversation_id=conversation_id,
                        batch_size=len(batch),
                        reason="conversation_closed" if conversation.status in _INACTIVE else "ai_disabled")
            return None

        decision = await self.rules.check(conversation)
        if not decision.allow:
            await self.store.mark_messages_processed([m.id for m in batch])
            return None

        return await self.orchestrator.orchestrate(conversation, batch)

    async def shutdown(self):
        await self.batcher.shutdown()
