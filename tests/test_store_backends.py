"""
Tests for all conversation store backends.

Covers:
  - InMemoryConversationStore
  - SqlConversationStore (via SQLite for test portability)
  - Store factory
  - Async URL translation
  - Cross-DB model portability (JSON, no JSONB)

Every behavioural test runs against both backends.
"""
from datetime import timedelta

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine

from database.session import create_session_factory, init_db
from database.store import SqlConversationStore
from database.store_base import DuplicateRecordError
from database.store_memory import InMemoryConversationStore
from models.schemas import (
    ChannelType, Contact, Conversation, ConversationStatus, DeliveryError,
    GlobalAgentConfig, LeadScoreEntry, Message, MessageDirection, MilestoneTarget,
    OutboundItem, OutboundPriority, OutboundStatus, ScoreProgression, utcnow,
)


# ──────────────────────────────────────────────────────────────
#  Fixtures
# ──────────────────────────────────────────────────────────────

@pytest_asyncio.fixture(params=["memory", "sql"])
async def backend(request, tmp_path):
    if request.param == "memory":
        yield InMemoryConversationStore()
        return
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'inbox_agent_test.db'}")
    await init_db(engine)
    yield SqlConversationStore(create_session_factory(engine))
    await engine.dispose()


@pytest_asyncio.fixture
async def conv(backend):
    contact = await backend.create_contact(Contact(
        channel=ChannelType.GMAIL, address="lucia@example.com", display_name="Lucia",
    ))
    return await backend.create_conversation(Conversation(
        contact_id=contact.id, channel_account_id="gmail_sales", channel=ChannelType.GMAIL,
        metadata={"thread_id": "t-1"},
    ))


async def _message(backend, conv, text, direction=MessageDirection.INBOUND, **kwargs) -> Message:
    return await backend.add_message(Message(
        conversation_id=conv.id, direction=direction, text=text, **kwargs,
    ))


async def _item(backend, conv, **kwargs) -> OutboundItem:
    message = await _message(backend, conv, "reply", MessageDirection.OUTBOUND, processed=True)
    return await backend.create_outbound_item(OutboundItem(
        conversation_id=conv.id, message_id=message.id, channel_account_id="gmail_sales",
        recipient_ref="lucia@example.com", **kwargs,
    ))


# ──────────────────────────────────────────────────────────────
#  Contacts & conversations
# ──────────────────────────────────────────────────────────────

class TestContactsAndConversations:
    @pytest.mark.asyncio
    async def test_contact_unique_per_channel_address(self, backend):
        contact = await backend.create_contact(Contact(channel=ChannelType.INSTAGRAM, address="1784"))
        found = await backend.find_contact_by_address("instagram", "1784")
        assert found.id == contact.id
        assert await backend.find_contact_by_address("gmail", "1784") is None

        with pytest.raises(DuplicateRecordError):
            await backend.create_contact(Contact(channel=ChannelType.INSTAGRAM, address="1784"))

    @pytest.mark.asyncio
    async def test_open_conversation_lookup(self, backend, conv):
        found = await backend.find_open_conversation(conv.contact_id, "gmail_sales")
        assert found.id == conv.id
        assert found.metadata == {"thread_id": "t-1"}
        assert await backend.find_open_conversation(conv.contact_id, "other_account") is None

        conv.status = ConversationStatus.CLOSED
        await backend.save_conversation(conv)
        assert await backend.find_open_conversation(conv.contact_id, "gmail_sales") is None

    @pytest.mark.asyncio
    async def test_nested_state_survives_save(self, backend, conv):
        conv.ai_enabled = False
        conv.response_counter.total = 2
        conv.response_counter.disabled_by_lead_score = True
        conv.lead_score.current = 4
        conv.lead_score.history.append(LeadScoreEntry(
            score=4, previous_score=1, raw_score=6, progression=ScoreProgression.INCREASED,
        ))
        conv.milestone.target = MilestoneTarget.DEMO_BOOKED
        await backend.save_conversation(conv)

        loaded = await backend.get_conversation(conv.id)
        assert loaded.ai_enabled is False
        assert loaded.response_counter.total == 2
        assert loaded.response_counter.disabled_by_lead_score is True
        assert loaded.lead_score.current == 4
        assert loaded.lead_score.history[0].raw_score == 6
        assert loaded.milestone.target == MilestoneTarget.DEMO_BOOKED

    @pytest.mark.asyncio
    async def test_returned_models_are_copies(self, backend, conv):
        loaded = await backend.get_conversation(conv.id)
        loaded.response_counter.total = 99
        assert (await backend.get_conversation(conv.id)).response_counter.total == 0

    @pytest.mark.asyncio
    async def test_touch_only_moves_forward(self, backend, conv):
        later = conv.last_activity_at + timedelta(minutes=5)
        await backend.touch_conversation(conv.id, later)
        await backend.touch_conversation(conv.id, later - timedelta(minutes=10))
        loaded = await backend.get_conversation(conv.id)
        assert loaded.last_activity_at == later


# ──────────────────────────────────────────────────────────────
#  Messages
# ──────────────────────────────────────────────────────────────

class TestMessages:
    @pytest.mark.asyncio
    async def test_external_id_unique(self, backend, conv):
        await _message(backend, conv, "hi", external_id="m-1")
        with pytest.raises(DuplicateRecordError):
            await _message(backend, conv, "hi again", external_id="m-1")
        assert (await backend.get_message_by_external_id("m-1")).text == "hi"

    @pytest.mark.asyncio
    async def test_set_external_id_conflict(self, backend, conv):
        await _message(backend, conv, "in", external_id="m-1")
        out = await _message(backend, conv, "out", MessageDirection.OUTBOUND)
        with pytest.raises(DuplicateRecordError):
            await backend.set_message_external_id(out.id, "m-1")
        await backend.set_message_external_id(out.id, "m-2")
        assert (await backend.get_message(out.id)).external_id == "m-2"

    @pytest.mark.asyncio
    async def test_recent_duplicate(self, backend, conv):
        now = utcnow()
        original = await _message(backend, conv, "price?", created_at=now - timedelta(seconds=3))
        found = await backend.find_recent_duplicate(conv.id, "price?", now - timedelta(seconds=10))
        assert found.id == original.id
        assert await backend.find_recent_duplicate(conv.id, "price?", now - timedelta(seconds=1)) is None
        assert await backend.find_recent_duplicate(conv.id, "other", now - timedelta(seconds=10)) is None

    @pytest.mark.asyncio
    async def test_processed_flag_and_orphans(self, backend, conv):
        now = utcnow()
        old = await _message(backend, conv, "old", created_at=now - timedelta(minutes=1))
        await _message(backend, conv, "new", created_at=now)
        await _message(backend, conv, "ours", MessageDirection.OUTBOUND,
                       created_at=now - timedelta(minutes=1))

        orphans = await backend.list_unprocessed_inbound(now - timedelta(seconds=5))
        assert [m.id for m in orphans] == [old.id]

        assert await backend.mark_messages_processed([old.id]) == 1
        assert await backend.mark_messages_processed([old.id]) == 0
        assert await backend.list_unprocessed_inbound(now - timedelta(seconds=5)) == []

    @pytest.mark.asyncio
    async def test_conversation_messages_latest_window(self, backend, conv):
        start = utcnow() - timedelta(minutes=10)
        for n in range(5):
            await _message(backend, conv, f"m{n}", created_at=start + timedelta(seconds=n))
        recent = await backend.get_conversation_messages(conv.id, limit=3)
        assert [m.text for m in recent] == ["m2", "m3", "m4"]

    @pytest.mark.asyncio
    async def test_delete_message(self, backend, conv):
        kept = await _message(backend, conv, "hi", external_id="m-1")
        dropped = await _message(backend, conv, "reply", MessageDirection.OUTBOUND, external_id="m-2")

        await backend.delete_message(dropped.id)
        await backend.delete_message("no-such-message")

        assert await backend.get_message(dropped.id) is None
        assert await backend.get_message_by_external_id("m-2") is None
        assert [m.id for m in await backend.get_conversation_messages(conv.id)] == [kept.id]


# ──────────────────────────────────────────────────────────────
#  Outbound items
# ──────────────────────────────────────────────────────────────

class TestOutboundItems:
    @pytest.mark.asyncio
    async def test_one_in_flight_per_conversation(self, backend, conv):
        first = await _item(backend, conv)
        assert (await backend.find_in_flight_item(conv.id)).id == first.id
        with pytest.raises(DuplicateRecordError):
            await _item(backend, conv)

        first.status = OutboundStatus.SENT
        await backend.save_outbound_item(first)
        assert await backend.find_in_flight_item(conv.id) is None
        second = await _item(backend, conv)
        assert (await backend.find_in_flight_item(conv.id)).id == second.id

    @pytest.mark.asyncio
    async def test_save_cannot_create_second_in_flight(self, backend, conv):
        first = await _item(backend, conv)
        first.status = OutboundStatus.FAILED
        await backend.save_outbound_item(first)
        await _item(backend, conv)

        first.status = OutboundStatus.PENDING
        with pytest.raises(DuplicateRecordError):
            await backend.save_outbound_item(first)

    @pytest.mark.asyncio
    async def test_claim_only_once(self, backend, conv):
        item = await _item(backend, conv)
        now = utcnow()
        claimed = await backend.claim_outbound_item(item.id, now)
        assert claimed.status == OutboundStatus.PROCESSING
        assert claimed.last_attempt_at == now
        assert await backend.claim_outbound_item(item.id, now) is None

    @pytest.mark.asyncio
    async def test_ready_ordering_and_filters(self, backend):
        now = utcnow()
        ids = {}
        specs = {
            "low": dict(priority=OutboundPriority.LOW, scheduled_for=now - timedelta(minutes=5)),
            "high": dict(priority=OutboundPriority.HIGH, scheduled_for=now - timedelta(minutes=1)),
            "urgent": dict(priority=OutboundPriority.URGENT, scheduled_for=now - timedelta(seconds=5)),
            "future": dict(scheduled_for=now + timedelta(minutes=5)),
            "backoff": dict(next_attempt_at=now + timedelta(seconds=30)),
            "expired": dict(expires_at=now - timedelta(seconds=1)),
        }
        for n, (name, spec) in enumerate(specs.items()):
            contact = await backend.create_contact(Contact(channel=ChannelType.GMAIL, address=f"{name}@x.example"))
            conv = await backend.create_conversation(Conversation(
                contact_id=contact.id, channel_account_id="gmail_sales", channel=ChannelType.GMAIL,
            ))
            ids[name] = (await _item(backend, conv, **spec)).id

        ready = await backend.list_ready_items(now, limit=10)
        assert [i.id for i in ready] == [ids["urgent"], ids["high"], ids["low"]]
        assert [i.id for i in await backend.list_expired_items(now)] == [ids["expired"]]

    @pytest.mark.asyncio
    async def test_stale_processing(self, backend, conv):
        item = await _item(backend, conv)
        await backend.claim_outbound_item(item.id, utcnow() - timedelta(minutes=10))
        stale = await backend.list_stale_processing(utcnow() - timedelta(minutes=5))
        assert [i.id for i in stale] == [item.id]
        assert await backend.list_stale_processing(utcnow() - timedelta(minutes=20)) == []

    @pytest.mark.asyncio
    async def test_error_history_round_trip(self, backend, conv):
        item = await _item(backend, conv, metadata={"thread_id": "t-1"})
        item.attempts = 1
        item.error_history.append(DeliveryError(attempt=1, error_code="GMAIL_503", error_message="busy"))
        await backend.save_outbound_item(item)

        loaded = await backend.get_outbound_item(item.id)
        assert loaded.error_history[0].error_code == "GMAIL_503"
        assert loaded.metadata == {"thread_id": "t-1"}

    @pytest.mark.asyncio
    async def test_listing_and_counts(self, backend, conv):
        item = await _item(backend, conv)
        item.status = OutboundStatus.SENT
        await backend.save_outbound_item(item)
        await _item(backend, conv)

        counts = await backend.count_outbound_by_status()
        assert counts["sent"] == 1
        assert counts["pending"] == 1
        assert counts["cancelled"] == 0
        assert len(await backend.list_outbound_items(status=OutboundStatus.SENT)) == 1
        assert len(await backend.list_outbound_items(conversation_id=conv.id)) == 2


# ──────────────────────────────────────────────────────────────
#  Agent configuration
# ──────────────────────────────────────────────────────────────

class TestAgentConfig:
    @pytest.mark.asyncio
    async def test_round_trip(self, backend):
        assert await backend.get_agent_config() is None
        config = GlobalAgentConfig()
        config.response_limits.max_per_conversation = 7
        await backend.save_agent_config(config)
        config.lead_scoring.auto_disable_on_score = 5
        await backend.save_agent_config(config)

        loaded = await backend.get_agent_config()
        assert loaded.response_limits.max_per_conversation == 7
        assert loaded.lead_scoring.auto_disable_on_score == 5


# ──────────────────────────────────────────────────────────────
#  Store Factory
# ──────────────────────────────────────────────────────────────

class TestStoreFactory:
    def setup_method(self):
        from database.store_factory import reset_store
        reset_store()

    def teardown_method(self):
        from database.store_factory import reset_store
        reset_store()

    def test_create_memory_store(self):
        from database.store_factory import create_store
        assert isinstance(create_store("memory"), InMemoryConversationStore)

    def test_create_sql_store(self):
        from database.store_factory import create_store
        assert isinstance(create_store("sql"), SqlConversationStore)

    def test_default_is_memory(self):
        from database.store_factory import create_store
        assert isinstance(create_store(), InMemoryConversationStore)

    def test_unknown_backend(self):
        from database.store_factory import create_store
        with pytest.raises(ValueError):
            create_store("file")

    def test_singleton(self):
        from database.store_factory import create_store, get_store
        s1 = create_store("memory")
        assert get_store() is s1


# ──────────────────────────────────────────────────────────────
#  Database Session — URL Translation
# ──────────────────────────────────────────────────────────────

class TestSessionUrlTranslation:
    @pytest.mark.parametrize("url,expected", [
        ("postgresql://u:p@h/db", "postgresql+asyncpg://u:p@h/db"),
        ("postgres://u:p@h/db", "postgresql+asyncpg://u:p@h/db"),
        ("mysql://u:p@h/db", "mysql+aiomysql://u:p@h/db"),
        ("mysql+pymysql://u:p@h/db", "mysql+aiomysql://u:p@h/db"),
        ("sqlite:///./inbox_agent.db", "sqlite+aiosqlite:///./inbox_agent.db"),
        ("postgresql+asyncpg://u:p@h/db", "postgresql+asyncpg://u:p@h/db"),
    ])
    def test_translation(self, url, expected):
        from database.session import async_database_url
        assert async_database_url(url) == expected


# ──────────────────────────────────────────────────────────────
#  Cross-DB Models Portability
# ──────────────────────────────────────────────────────────────

class TestModelsPortability:
    def test_nested_state_is_json(self):
        from sqlalchemy import JSON
        from database.models import ConversationRow, OutboundItemRow
        for col in ("response_counter", "lead_score", "milestone", "metadata"):
            assert isinstance(ConversationRow.__table__.columns[col].type, JSON)
        assert isinstance(OutboundItemRow.__table__.columns["error_history"].type, JSON)

    def test_no_jsonb_anywhere(self):
        from database.models import Base
        for table in Base.metadata.tables.values():
            for col in table.columns:
                assert type(col.type).__name__ != "JSONB", f"{table.name}.{col.name} uses JSONB"

    def test_all_tables_defined(self):
        from database.models import Base
        assert set(Base.metadata.tables.keys()) == {
            "contacts", "conversations", "messages", "outbound_items", "agent_config",
        }
