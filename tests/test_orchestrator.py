"""
Tests for the response orchestrator.

Covers:
  - one batch → one generation call → one queued reply
  - batch consolidation into the prompt
  - generation timeout / failure leaves no item and no retry
  - lead score clamping and milestone detection
  - skip paths (item in flight, milestone achieved, missing contact)
  - a reply that loses its outbound slot leaves no trace
"""
import asyncio

import pytest

from conftest import FakeGenerator, add_inbound
from core.errors import GenerationError, PipelineError
from core.orchestrator import MAX_LATEST_MESSAGE, ResponseOrchestrator, consolidate_batch
from models.schemas import (
    ChannelType, Conversation, GenerationResult, GlobalAgentConfig, Message,
    MessageDirection, MilestoneStatus, MilestoneTarget, OutboundStatus, ResponseLimits,
)
from rules.config_provider import StaticAgentConfigProvider


def _orchestrator(store, queue, config_provider, generator=None, **kwargs):
    return ResponseOrchestrator(
        store, generator or FakeGenerator(), queue, config_provider,
        business_names={"ig_main": "Acme Studio"},
        generation_timeout=kwargs.pop("generation_timeout", 1.0),
        **kwargs,
    )


class TestConsolidate:
    def test_joins_in_order(self):
        batch = [Message(conversation_id="c", direction=MessageDirection.INBOUND, text=t)
                 for t in ("hola", "", "price?")]
        assert consolidate_batch(batch) == "hola | price?"

    def test_caps_length(self):
        batch = [Message(conversation_id="c", direction=MessageDirection.INBOUND, text="x" * 800)
                 for _ in range(2)]
        assert len(consolidate_batch(batch)) == MAX_LATEST_MESSAGE


class TestOrchestrate:
    @pytest.mark.asyncio
    async def test_batch_becomes_one_reply(self, store, queue, config_provider, conversation):
        generator = FakeGenerator()
        orchestrator = _orchestrator(store, queue, config_provider, generator)
        batch = [await add_inbound(store, conversation, "hola"),
                 await add_inbound(store, conversation, "how much is a session?")]

        item = await orchestrator.orchestrate(conversation, batch)

        assert item is not None
        assert item.status == OutboundStatus.PENDING
        assert item.recipient_ref == "17841400000001"
        assert generator.calls == 1
        context = generator.contexts[0]
        assert context.latest_message == "hola | how much is a session?"
        assert context.business_name == "Acme Studio"
        assert context.contact_name == "Lucia"
        assert [e.role for e in context.transcript] == ["user", "user"]

        for m in batch:
            assert (await store.get_message(m.id)).processed is True
        reply = await store.get_message(item.message_id)
        assert reply.direction == MessageDirection.OUTBOUND
        assert reply.text == "Thanks for reaching out!"
        saved = await store.get_conversation(conversation.id)
        assert saved.response_counter.total == 1
        assert saved.lead_score.current == 2

    @pytest.mark.asyncio
    async def test_thread_metadata_travels_with_item(self, store, queue, config_provider, conversation):
        conversation.metadata = {"thread_id": "t-1"}
        await store.save_conversation(conversation)
        batch = [await add_inbound(store, conversation, "hi")]

        item = await _orchestrator(store, queue, config_provider).orchestrate(conversation, batch)
        assert item.metadata == {"thread_id": "t-1"}

    @pytest.mark.asyncio
    async def test_generation_timeout_creates_nothing(self, store, queue, config_provider, conversation):
        generator = FakeGenerator(delay=1.0)
        orchestrator = _orchestrator(store, queue, config_provider, generator, generation_timeout=0.05)
        batch = [await add_inbound(store, conversation, "hello?")]

        assert await orchestrator.orchestrate(conversation, batch) is None

        assert await queue.list_items(conversation_id=conversation.id) == []
        assert (await store.get_message(batch[0].id)).processed is True
        assert (await store.get_conversation(conversation.id)).response_counter.total == 0

    @pytest.mark.asyncio
    async def test_generation_error_creates_nothing(self, store, queue, config_provider, conversation):
        generator = FakeGenerator([GenerationError("model output is not JSON")])
        orchestrator = _orchestrator(store, queue, config_provider, generator)
        batch = [await add_inbound(store, conversation, "hello?")]

        assert await orchestrator.orchestrate(conversation, batch) is None
        assert await queue.list_items() == []
        assert (await store.get_message(batch[0].id)).processed is True

    @pytest.mark.asyncio
    async def test_score_clamped_while_milestone_pending(self, store, queue, config_provider, conversation):
        generator = FakeGenerator([GenerationResult(text="Great!", lead_score=7)])
        conversation.milestone.target = MilestoneTarget.MEETING_SCHEDULED
        await store.save_conversation(conversation)
        batch = [await add_inbound(store, conversation, "sounds good")]

        await _orchestrator(store, queue, config_provider, generator).orchestrate(conversation, batch)

        saved = await store.get_conversation(conversation.id)
        assert saved.lead_score.current == 4
        assert saved.lead_score.history[-1].raw_score == 7

    @pytest.mark.asyncio
    async def test_score_not_clamped_without_milestone_target(self, store, queue, config_provider, conversation):
        generator = FakeGenerator([GenerationResult(text="Great!", lead_score=6)])
        batch = [await add_inbound(store, conversation, "we are ready to buy")]

        await _orchestrator(store, queue, config_provider, generator).orchestrate(conversation, batch)

        saved = await store.get_conversation(conversation.id)
        assert saved.milestone.target is None
        assert saved.lead_score.current == 6
        assert saved.lead_score.history[-1].score == 6

    @pytest.mark.asyncio
    async def test_milestone_detected_and_counter_reset(self, store, queue, conversation):
        provider = StaticAgentConfigProvider(GlobalAgentConfig(
            response_limits=ResponseLimits(reset_counter_on_milestone=True),
        ))
        conversation.milestone.target = MilestoneTarget.LINK_SHARED
        conversation.response_counter.total = 2
        await store.save_conversation(conversation)
        batch = [await add_inbound(store, conversation, "my site: https://lucia.example")]

        item = await _orchestrator(store, queue, provider).orchestrate(conversation, batch)

        assert item is not None
        saved = await store.get_conversation(conversation.id)
        assert saved.milestone.status == MilestoneStatus.ACHIEVED
        assert saved.milestone.achieved_by.startswith("keyword:")
        assert saved.ai_enabled is False
        assert saved.response_counter.total == 1
        assert saved.response_counter.last_reset_at is not None


class TestSkips:
    @pytest.mark.asyncio
    async def test_item_in_flight(self, store, queue, config_provider, conversation):
        generator = FakeGenerator()
        orchestrator = _orchestrator(store, queue, config_provider, generator)
        await orchestrator.orchestrate(conversation, [await add_inbound(store, conversation, "one")])

        late = await add_inbound(store, conversation, "two")
        assert await orchestrator.orchestrate(conversation, [late]) is None
        assert generator.calls == 1
        assert (await store.get_message(late.id)).processed is False

    @pytest.mark.asyncio
    async def test_milestone_already_achieved(self, store, queue, config_provider, conversation):
        generator = FakeGenerator()
        conversation.milestone.status = MilestoneStatus.ACHIEVED
        batch = [await add_inbound(store, conversation, "thanks")]

        result = await _orchestrator(store, queue, config_provider, generator).orchestrate(conversation, batch)
        assert result is None
        assert generator.calls == 0

    @pytest.mark.asyncio
    async def test_empty_batch(self, store, queue, config_provider, conversation):
        assert await _orchestrator(store, queue, config_provider).orchestrate(conversation, []) is None

    @pytest.mark.asyncio
    async def test_missing_contact(self, store, queue, config_provider):
        orphan = await store.create_conversation(Conversation(
            contact_id="nobody", channel_account_id="ig_main", channel=ChannelType.INSTAGRAM,
        ))
        batch = [await add_inbound(store, orphan, "hi")]
        with pytest.raises(PipelineError):
            await _orchestrator(store, queue, config_provider).orchestrate(orphan, batch)


class TestSlotLost:
    @pytest.mark.asyncio
    async def test_slot_taken_during_generation(self, store, queue, config_provider, conversation, contact):
        generator = FakeGenerator([GenerationResult(text="Late reply", lead_score=3)], delay=0.05)
        orchestrator = _orchestrator(store, queue, config_provider, generator)
        batch = [await add_inbound(store, conversation, "still there?")]

        async def operator_reply():
            await asyncio.sleep(0.01)
            manual = await store.add_message(Message(
                conversation_id=conversation.id, direction=MessageDirection.OUTBOUND,
                text="Operator here", processed=True,
            ))
            return await queue.enqueue(conversation, manual, recipient_ref=contact.address)

        result, manual_item = await asyncio.gather(
            orchestrator.orchestrate(conversation, batch), operator_reply(),
        )

        assert result is None
        assert manual_item is not None
        outbound = [m for m in await store.get_conversation_messages(conversation.id)
                    if m.direction == MessageDirection.OUTBOUND]
        assert [m.text for m in outbound] == ["Operator here"]
        saved = await store.get_conversation(conversation.id)
        assert saved.lead_score.history == []
        assert saved.response_counter.total == 0

    @pytest.mark.asyncio
    async def test_enqueue_conflict_removes_reply(self, store, queue, config_provider, conversation, monkeypatch):
        async def conflict(*args, **kwargs):
            return None

        monkeypatch.setattr(queue, "enqueue", conflict)
        generator = FakeGenerator([GenerationResult(text="Great!", lead_score=3)])
        batch = [await add_inbound(store, conversation, "hi")]

        assert await _orchestrator(store, queue, config_provider, generator).orchestrate(conversation, batch) is None

        assert [m.id for m in await store.get_conversation_messages(conversation.id)] == [batch[0].id]
        saved = await store.get_conversation(conversation.id)
        assert saved.response_counter.total == 0
        assert saved.lead_score.history == []
