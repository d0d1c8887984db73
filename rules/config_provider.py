"""
Agent configuration providers.

The rule engine asks a provider for the GlobalAgentConfig on every
evaluation. Nothing is cached, so operator edits apply to the next batch.
"""
from __future__ import annotations

import abc
import structlog
from typing import Any, Optional

from database.store_base import BaseConversationStore
from models.schemas import GlobalAgentConfig, utcnow

logger = structlog.get_logger()


class AgentConfigProvider(abc.ABC):
    @abc.abstractmethod
    async def get(self) -> GlobalAgentConfig:
        ...


class StaticAgentConfigProvider(AgentConfigProvider):
    """Fixed configuration, for tests and single-tenant scripts."""

    def __init__(self, config: Optional[GlobalAgentConfig] = None):
        self.config = config or GlobalAgentConfig()

    async def get(self) -> GlobalAgentConfig:
        return self.config.model_copy(deep=True)


class StoreAgentConfigProvider(AgentConfigProvider):
    """
    Read-through provider backed by the conversation store.

    The first read seeds the store from ``defaults`` (the ``agent_defaults``
    settings section) when no record exists yet.
    """

    def __init__(self, store: BaseConversationStore, defaults: Optional[dict[str, Any]] = None):
        self.store = store
        self.defaults = defaults or {}

    async def get(self) -> GlobalAgentConfig:
        config = await self.store.get_agent_config()
        if config is None:
            config = GlobalAgentConfig.model_validate(self.defaults)
            await self.store.save_agent_config(config)
            logger.info("agent_config_seeded", **config.response_limits.model_dump())
        return config

    async def update(self, config: GlobalAgentConfig) -> GlobalAgentConfig:
        config.updated_at = utcnow()
        await self.store.save_agent_config(config)
        logger.info("agent_config_updated",
                    max_per_conversation=config.response_limits.max_per_conversation,
                    auto_disable_on_score=config.lead_scoring.auto_disable_on_score)
        return config
