"""
Response Orchestrator — turns an allowed batch into at most one queued reply.

Order of work for a batch:
  1. mark every batch message processed (before generation, so a slow or
     crashed call can never cause the same input to be generated twice)
  2. build the generation context and call the generator under a timeout
  3. clamp the returned lead score (milestone cap, reminder gate)
  4. record the score in history with its progression
  5. run milestone detection over the batch text
  6. count the response
  7. store the outbound message and enqueue one pending item for it

If the conversation gained an in-flight item meanwhile, the reply is
dropped and nothing from steps 3-6 is saved.

A generation failure or timeout ends the batch quietly: no item is
created and the next inbound message re-triggers the pipeline.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Optional

from core.engine import ResponseGenerator
from core.errors import GenerationError, PipelineError
from core.lead_scoring import apply_generated_score
from core.milestones import KeywordMilestoneDetector, MilestoneDetector, mark_milestone_achieved
from database.store_base import BaseConversationStore
from job_queue.outbound_queue import OutboundQueue
from models.schemas import (
    Contact, Conversation, GenerationContext, Message, MessageDirection,
    MilestoneStatus, OutboundItem, OutboundPriority, TranscriptEntry, utcnow,
)
from rules.config_provider import AgentConfigProvider
from rules.engine import reset_response_counter

logger = structlog.get_logger()

BATCH_SEPARATOR = " | "
MAX_LATEST_MESSAGE = 1000


def consolidate_batch(messages: list[Message]) -> str:
    """Batch texts in arrival order, joined and capped for the prompt."""
    text = BATCH_SEPARATOR.join(m.text for m in messages if m.text)
    return text[:MAX_LATEST_MESSAGE]


class ResponseOrchestrator:

    def __init__(
        self,
        store: BaseConversationStore,
        generator: ResponseGenerator,
        queue: OutboundQueue,
        config_provider: AgentConfigProvider,
        detector: Optional[MilestoneDetector] = None,
        business_names: Optional[dict[str, str]] = None,
        default_business_name: str = "",
        generation_timeout: float = 30.0,
        transcript_limit: int = 20,
    ):
        self.store = store
        self.generator = generator
        self.queue = queue
        self.config_provider = config_provider
        self.detector = detector or KeywordMilestoneDetector()
        self.business_names = business_names or {}
        self.default_business_name = default_business_name
        self.generation_timeout = generation_timeout
        self.transcript_limit = transcript_limit

    async def orchestrate(
        self, conversation: Conversation, batch: list[Message],
    ) -> Optional[OutboundItem]:
        if not batch:
            return None
        if conversation.milestone.status == MilestoneStatus.ACHIEVED:
            logger.info("orchestration_skipped",
                        conversation_id=conversation.id, reason="milestone_achieved")
            return None
        if await self.queue.has_in_flight(conversation.id):
            logger.info("orchestration_skipped",
                        conversation_id=conversation.id, reason="outbound_in_flight")
            return None

        contact = await self.store.get_contact(conversation.contact_id)
        if contact is None:
            raise PipelineError(f"contact {conversation.contact_id} missing for conversation {conversation.id}")

        # 1. processed before generation
        await self.store.mark_messages_processed([m.id for m in batch])

        # 2. generate
        context = await self._build_context(conversation, contact, batch)
        try:
            result = await asyncio.wait_for(
                self.generator.generate(context), timeout=self.generation_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("generation_failed",
                           conversation_id=conversation.id,
                           batch_size=len(batch),
                           error=f"timed out after {self.generation_timeout}s")
            return None
        except GenerationError as e:
            logger.warning("generation_failed",
                           conversation_id=conversation.id,
                           batch_size=len(batch),
                           error=str(e))
            return None

        # An operator reset can take the conversation's slot while generation runs.
        if await self.queue.has_in_flight(conversation.id):
            logger.warning("reply_discarded",
                           conversation_id=conversation.id, reason="outbound_in_flight")
            return None

        # 3-4. score
        entry = apply_generated_score(conversation, result)
        logger.info("lead_score_recorded",
                    conversation_id=conversation.id,
                    score=entry.score,
                    raw_score=entry.raw_score,
                    progression=entry.progression.value)

        # 5. milestone
        hit = self.detector.detect(conversation.milestone, [m.text for m in batch])
        if hit is not None:
            mark_milestone_achieved(conversation, hit)
            config = await self.config_provider.get()
            if config.response_limits.reset_counter_on_milestone:
                reset_response_counter(conversation)

        # 6-7. reply
        now = utcnow()
        outbound = Message(
            conversation_id=conversation.id,
            direction=MessageDirection.OUTBOUND,
            sender_ref=conversation.channel_account_id,
            text=result.text,
            created_at=now,
            processed=True,
        )
        await self.store.add_message(outbound)
        item = await self.queue.enqueue(
            conversation,
            outbound,
            recipient_ref=contact.address,
            priority=OutboundPriority.NORMAL,
            metadata=dict(conversation.metadata),
        )
        if item is None:
            await self.store.delete_message(outbound.id)
            logger.warning("reply_discarded",
                           conversation_id=conversation.id, reason="enqueue_conflict")
            return None

        conversation.response_counter.total += 1
        conversation.last_activity_at = now
        await self.store.save_conversation(conversation)

        logger.info("response_orchestrated",
                    conversation_id=conversation.id,
                    item_id=item.id,
                    batch_size=len(batch),
                    responses=conversation.response_counter.total,
                    milestone=conversation.milestone.status.value)
        return item

    # ── Context ───────────────────────────────────────────────

    async def _build_context(
        self, conversation: Conversation, contact: Contact, batch: list[Message],
    ) -> GenerationContext:
        history = await self.store.get_conversation_messages(conversation.id, self.transcript_limit)
        transcript = [
            TranscriptEntry(
                role="user" if m.direction == MessageDirection.INBOUND else "assistant",
                content=m.text,
                timestamp=m.created_at,
            )
            for m in history
        ]
        milestone = conversation.milestone
        return GenerationContext(
            conversation_id=conversation.id,
            business_name=self.business_names.get(conversation.channel_account_id)
            or self.default_business_name,
            channel=conversation.channel,
            contact_name=contact.display_name,
            transcript=transcript,
            latest_message=consolidate_batch(batch),
            milestone_target=milestone.target,
            milestone_custom_target=milestone.custom_target,
            milestone_status=milestone.status,
            current_lead_score=conversation.lead_score.current,
        )
