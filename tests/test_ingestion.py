"""
Tests for ingestion and dedup.

Covers:
  - external_id fence (webhook redelivery)
  - content fence (same text, same sender, short window)
  - contact / conversation upserts
  - sanitisation
  - account milestone defaults on new conversations
  - concurrent first messages from one contact
"""
import asyncio
from datetime import timedelta

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine

from conftest import make_event
from core.ingestion import IngestionService
from database.session import create_session_factory, init_db
from database.store import SqlConversationStore
from models.schemas import (
    ConversationStatus, MessageDirection, MilestoneSetting, MilestoneStatus, MilestoneTarget, utcnow,
)


@pytest.fixture
def ingestion(store):
    return IngestionService(store, duplicate_window_seconds=10, max_text_length=50)


@pytest_asyncio.fixture
async def sql_store(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ingestion_test.db'}")
    await init_db(engine)
    yield SqlConversationStore(create_session_factory(engine))
    await engine.dispose()


class TestIngest:
    @pytest.mark.asyncio
    async def test_new_message_creates_contact_and_conversation(self, ingestion, store):
        message, is_new = await ingestion.ingest(make_event("Hola!", "mid.1"))

        assert is_new is True
        assert message.direction == MessageDirection.INBOUND
        assert message.processed is False
        contact = await store.find_contact_by_address("instagram", "17841400000001")
        assert contact is not None
        assert contact.display_name == "Lucia"
        conversation = await store.get_conversation(message.conversation_id)
        assert conversation.status == ConversationStatus.OPEN
        assert conversation.contact_id == contact.id
        assert conversation.channel_account_id == "ig_main"

    @pytest.mark.asyncio
    async def test_same_external_id_is_duplicate(self, ingestion, store):
        first, _ = await ingestion.ingest(make_event("Hola!", "mid.1"))
        again, is_new = await ingestion.ingest(make_event("Hola!", "mid.1"))

        assert is_new is False
        assert again.id == first.id
        assert len(await store.get_conversation_messages(first.conversation_id)) == 1

    @pytest.mark.asyncio
    async def test_same_text_inside_window_is_duplicate(self, ingestion, store):
        first, _ = await ingestion.ingest(make_event("price?", "mid.1"))
        second, is_new = await ingestion.ingest(make_event("price?", "mid.2"))

        assert is_new is False
        assert second.id == first.id
        assert len(await store.get_conversation_messages(first.conversation_id)) == 1

    @pytest.mark.asyncio
    async def test_same_text_after_window_is_new(self, ingestion, store):
        first, _ = await ingestion.ingest(make_event("price?", "mid.1"))
        stale = await store.get_message(first.id)
        # Age the stored message past the window.
        store._messages[first.id].created_at = utcnow() - timedelta(seconds=11)

        second, is_new = await ingestion.ingest(make_event("price?", "mid.2"))
        assert is_new is True
        assert second.id != stale.id

    @pytest.mark.asyncio
    async def test_different_text_is_new(self, ingestion):
        first, _ = await ingestion.ingest(make_event("hi", "mid.1"))
        second, is_new = await ingestion.ingest(make_event("how much?", "mid.2"))
        assert is_new is True
        assert second.conversation_id == first.conversation_id

    @pytest.mark.asyncio
    async def test_other_sender_gets_own_conversation(self, ingestion):
        first, _ = await ingestion.ingest(make_event("hi", "mid.1"))
        other, is_new = await ingestion.ingest(make_event("hi", "mid.2", sender="17841400000002"))
        assert is_new is True
        assert other.conversation_id != first.conversation_id

    @pytest.mark.asyncio
    async def test_closed_conversation_starts_new_one(self, ingestion, store):
        first, _ = await ingestion.ingest(make_event("hi", "mid.1"))
        conv = await store.get_conversation(first.conversation_id)
        conv.status = ConversationStatus.CLOSED
        await store.save_conversation(conv)

        second, _ = await ingestion.ingest(make_event("back again", "mid.2"))
        assert second.conversation_id != first.conversation_id

    @pytest.mark.asyncio
    async def test_text_is_sanitised(self, ingestion):
        message, _ = await ingestion.ingest(make_event("  he\x00llo\x07  " + "x" * 100, "mid.1"))
        assert "\x00" not in message.text
        assert message.text.startswith("hello")
        assert message.text.endswith("[truncated]")

    @pytest.mark.asyncio
    async def test_thread_metadata_kept_on_conversation(self, ingestion, store):
        message, _ = await ingestion.ingest(
            make_event("hi", "mid.1", thread_id="t-9", subject="Quote", unrelated="x"),
        )
        conv = await store.get_conversation(message.conversation_id)
        assert conv.metadata == {"thread_id": "t-9", "subject": "Quote"}

    @pytest.mark.asyncio
    async def test_activity_is_touched(self, ingestion, store):
        message, _ = await ingestion.ingest(make_event("hi", "mid.1"))
        conv = await store.get_conversation(message.conversation_id)
        assert conv.last_activity_at >= message.created_at


class TestDefaultMilestone:
    @pytest.mark.asyncio
    async def test_account_default_applied_to_new_conversation(self, store):
        ingestion = IngestionService(store, default_milestones={
            "ig_main": MilestoneSetting(target=MilestoneTarget.LINK_SHARED, auto_disable_agent=False),
        })
        message, _ = await ingestion.ingest(make_event("hi", "mid.1"))

        milestone = (await store.get_conversation(message.conversation_id)).milestone
        assert milestone.target == MilestoneTarget.LINK_SHARED
        assert milestone.status == MilestoneStatus.PENDING
        assert milestone.auto_disable_agent is False
        assert milestone.set_at is not None

    @pytest.mark.asyncio
    async def test_account_without_default_has_no_target(self, store):
        ingestion = IngestionService(store, default_milestones={
            "gmail_sales": MilestoneSetting(target=MilestoneTarget.DEMO_BOOKED),
        })
        message, _ = await ingestion.ingest(make_event("hi", "mid.1"))

        milestone = (await store.get_conversation(message.conversation_id)).milestone
        assert milestone.target is None
        assert milestone.set_at is None

    @pytest.mark.asyncio
    async def test_existing_conversation_keeps_its_milestone(self, store):
        ingestion = IngestionService(store, default_milestones={
            "ig_main": MilestoneSetting(target=MilestoneTarget.LINK_SHARED),
        })
        first, _ = await ingestion.ingest(make_event("hi", "mid.1"))
        conv = await store.get_conversation(first.conversation_id)
        conv.milestone.status = MilestoneStatus.ACHIEVED
        await store.save_conversation(conv)

        second, _ = await ingestion.ingest(make_event("one more thing", "mid.2"))
        assert second.conversation_id == first.conversation_id
        assert (await store.get_conversation(first.conversation_id)).milestone.status == MilestoneStatus.ACHIEVED


class TestConcurrentFirstMessages:
    @pytest.mark.asyncio
    async def test_share_one_conversation_on_sql(self, sql_store):
        ingestion = IngestionService(sql_store)
        results = await asyncio.gather(
            ingestion.ingest(make_event("hi", "mid.1")),
            ingestion.ingest(make_event("price?", "mid.2")),
            ingestion.ingest(make_event("are you open today?", "mid.3")),
        )

        assert all(is_new for _, is_new in results)
        conversation_ids = {message.conversation_id for message, _ in results}
        assert len(conversation_ids) == 1
        contact = await sql_store.find_contact_by_address("instagram", "17841400000001")
        open_conv = await sql_store.find_open_conversation(contact.id, "ig_main")
        assert conversation_ids == {open_conv.id}
        assert len(await sql_store.get_conversation_messages(open_conv.id)) == 3

    @pytest.mark.asyncio
    async def test_share_one_conversation_in_memory(self, ingestion, store):
        results = await asyncio.gather(*(
            ingestion.ingest(make_event(f"message {n}", f"mid.{n}")) for n in range(5)
        ))
        assert len({message.conversation_id for message, _ in results}) == 1
