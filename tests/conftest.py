"""Shared test fixtures for InboxAgent."""
import asyncio
from typing import Any, Optional

import pytest
import pytest_asyncio

from channels.base import ChannelRegistry, ChannelSender
from core.engine import ResponseGenerator
from database.store_memory import InMemoryConversationStore
from job_queue.outbound_queue import OutboundQueue
from models.schemas import (
    ChannelType, Contact, Conversation, GenerationContext, GenerationResult,
    GlobalAgentConfig, InboundEvent, Message, MessageDirection,
)
from rules.config_provider import StaticAgentConfigProvider


# ──────────────────────────────────────────────────────────────
#  Fakes
# ──────────────────────────────────────────────────────────────

class FakeGenerator(ResponseGenerator):
    """Returns scripted results in order, then repeats the last one."""

    def __init__(self, results: Optional[list[Any]] = None, delay: float = 0.0):
        self.results = list(results or [])
        self.delay = delay
        self.contexts: list[GenerationContext] = []

    async def generate(self, context: GenerationContext) -> GenerationResult:
        self.contexts.append(context)
        if self.delay:
            await asyncio.sleep(self.delay)
        if not self.results:
            return GenerationResult(text="Thanks for reaching out!", lead_score=2,
                                    intent="greeting", next_action="ask_need", confidence=0.8)
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        return result

    @property
    def calls(self) -> int:
        return len(self.contexts)


class FakeSender(ChannelSender):
    """Records sends; each scripted outcome is an external id or an exception."""

    channel_type = ChannelType.INSTAGRAM

    def __init__(self, account_id: str = "ig_main", outcomes: Optional[list[Any]] = None):
        super().__init__(account_id)
        self.outcomes = list(outcomes or [])
        self.sent: list[tuple[str, str, dict]] = []

    async def initialize(self, config: dict[str, Any]) -> None:
        self._config = config
        self._initialized = True

    async def _do_send(self, recipient_ref: str, text: str, metadata: dict[str, Any]) -> str:
        self.sent.append((recipient_ref, text, metadata))
        outcome = self.outcomes.pop(0) if self.outcomes else f"mid.{len(self.sent)}"
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def _parse_inbound(self, payload: dict[str, Any]) -> list[InboundEvent]:
        return [InboundEvent(**e) for e in payload.get("events", [])]


# ──────────────────────────────────────────────────────────────
#  Fixtures
# ──────────────────────────────────────────────────────────────

@pytest.fixture
def store() -> InMemoryConversationStore:
    return InMemoryConversationStore()


@pytest.fixture
def agent_config() -> GlobalAgentConfig:
    return GlobalAgentConfig()


@pytest.fixture
def config_provider(agent_config) -> StaticAgentConfigProvider:
    return StaticAgentConfigProvider(agent_config)


@pytest.fixture
def generator() -> FakeGenerator:
    return FakeGenerator()


@pytest.fixture
def fake_sender() -> FakeSender:
    return FakeSender()


@pytest.fixture
def registry(fake_sender) -> ChannelRegistry:
    reg = ChannelRegistry()
    reg.register(fake_sender)
    return reg


@pytest.fixture
def queue(store) -> OutboundQueue:
    return OutboundQueue(store)


@pytest_asyncio.fixture
async def contact(store) -> Contact:
    return await store.create_contact(Contact(
        channel=ChannelType.INSTAGRAM, address="17841400000001", display_name="Lucia",
    ))


@pytest_asyncio.fixture
async def conversation(store, contact) -> Conversation:
    return await store.create_conversation(Conversation(
        contact_id=contact.id,
        channel_account_id="ig_main",
        channel=ChannelType.INSTAGRAM,
    ))


async def add_inbound(store, conversation: Conversation, text: str, external_id: str = "") -> Message:
    """Store an unprocessed inbound message on the conversation."""
    message = Message(
        conversation_id=conversation.id,
        direction=MessageDirection.INBOUND,
        external_id=external_id or None,
        text=text,
    )
    return await store.add_message(message)


def make_event(text: str, external_id: str, sender: str = "17841400000001",
               account: str = "ig_main", **metadata) -> InboundEvent:
    return InboundEvent(
        channel=ChannelType.INSTAGRAM,
        channel_account_id=account,
        external_id=external_id,
        sender_address=sender,
        sender_name="Lucia",
        text=text,
        metadata=metadata,
    )
