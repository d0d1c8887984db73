"""
Runtime bootstrap — wires every pipeline component from settings.

    runtime = build_runtime()
    await runtime.start()      # channels, reconciliation sweep, sender worker
    ...
    await runtime.stop()

Anything passed to ``build_runtime`` replaces the component built from
settings, which is how tests swap in fakes.
"""
from __future__ import annotations

import structlog
from typing import Optional

from channels.base import ChannelRegistry, ChannelSender
from channels.gmail_adapter import GmailSender
from channels.instagram_adapter import InstagramSender
from config.settings import ChannelAccountConfig, Settings, get_settings
from core.batcher import ReconciliationSweep
from core.engine import ResponseEngine, ResponseGenerator
from core.ingestion import IngestionService
from core.milestones import KeywordMilestoneDetector, MilestoneDetector
from core.orchestrator import ResponseOrchestrator
from core.pipeline import ConversationPipeline
from database.store_base import BaseConversationStore
from database.store_factory import create_store
from job_queue.outbound_queue import OutboundQueue
from job_queue.sender import SenderWorker
from models.schemas import ChannelType, MilestoneSetting
from rules.config_provider import AgentConfigProvider, StoreAgentConfigProvider
from rules.engine import AgentRulesEngine

logger = structlog.get_logger()

SENDER_CLASSES: dict[ChannelType, type[ChannelSender]] = {
    ChannelType.INSTAGRAM: InstagramSender,
    ChannelType.GMAIL: GmailSender,
}


def build_channel_registry(accounts: dict[str, ChannelAccountConfig]) -> ChannelRegistry:
    """One sender per enabled channel account."""
    registry = ChannelRegistry()
    for account_id, account in accounts.items():
        if not account.enabled:
            continue
        try:
            sender_cls = SENDER_CLASSES[ChannelType(account.channel)]
        except (KeyError, ValueError):
            logger.warning("channel_account_unsupported",
                           account_id=account_id, channel=account.channel)
            continue
        registry.register(sender_cls(account_id))
    return registry


class AgentRuntime:
    """The assembled pipeline plus its background workers."""

    def __init__(
        self,
        settings: Settings,
        store: BaseConversationStore,
        config_provider: AgentConfigProvider,
        channels: ChannelRegistry,
        queue: OutboundQueue,
        rules: AgentRulesEngine,
        pipeline: ConversationPipeline,
        sweep: ReconciliationSweep,
        sender: SenderWorker,
    ):
        self.settings = settings
        self.store = store
        self.config_provider = config_provider
        self.channels = channels
        self.queue = queue
        self.rules = rules
        self.pipeline = pipeline
        self.sweep = sweep
        self.sender = sender
        self._started = False

    async def start(self):
        if self._started:
            return
        if self.settings.database.store_backend == "sql":
            from database.session import init_db
            await init_db()
        await self.channels.initialize_all(self.settings.channel_accounts)
        await self.config_provider.get()
        await self.sweep.start_background()
        await self.sender.start_background()
        self._started = True
        logger.info("inbox_agent_started",
                    store=type(self.store).__name__,
                    accounts=self.channels.accounts())

    async def stop(self):
        if not self._started:
            return
        await self.sweep.stop()
        await self.sender.stop()
        await self.pipeline.shutdown()
        await self.channels.shutdown_all()
        self._started = False
        logger.info("inbox_agent_stopped")


def build_runtime(
    settings: Optional[Settings] = None,
    store: Optional[BaseConversationStore] = None,
    generator: Optional[ResponseGenerator] = None,
    channels: Optional[ChannelRegistry] = None,
    config_provider: Optional[AgentConfigProvider] = None,
    detector: Optional[MilestoneDetector] = None,
) -> AgentRuntime:
    settings = settings or get_settings()
    store = store or create_store(settings.database.store_backend)
    config_provider = config_provider or StoreAgentConfigProvider(store, settings.agent_defaults)
    channels = channels or build_channel_registry(settings.channel_accounts)
    generator = generator or ResponseEngine(settings.llm)

    queue = OutboundQueue.from_config(store, settings.queue)
    rules = AgentRulesEngine(store, config_provider)
    orchestrator = ResponseOrchestrator(
        store,
        generator,
        queue,
        config_provider,
        detector=detector or KeywordMilestoneDetector(),
        business_names={
            account_id: account.name
            for account_id, account in settings.channel_accounts.items() if account.name
        },
        default_business_name=settings.business_name,
        generation_timeout=settings.generation.timeout_seconds,
        transcript_limit=settings.generation.transcript_limit,
    )
    pipeline = ConversationPipeline(
        store,
        IngestionService.from_config(store, settings.ingestion, default_milestones={
            account_id: MilestoneSetting.model_validate(account.milestone)
            for account_id, account in settings.channel_accounts.items() if account.milestone
        }),
        rules,
        orchestrator,
        window_seconds=settings.batching.window_seconds,
    )
    sweep = ReconciliationSweep(
        store,
        pipeline.batcher,
        pipeline,
        interval=settings.batching.sweep_interval_seconds,
        stale_after=settings.batching.effective_stale_after,
    )
    sender = SenderWorker.from_config(queue, store, channels, settings.sender)

    return AgentRuntime(
        settings=settings,
        store=store,
        config_provider=config_provider,
        channels=channels,
        queue=queue,
        rules=rules,
        pipeline=pipeline,
        sweep=sweep,
        sender=sender,
    )
