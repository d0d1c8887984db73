"""
Agent Rules Engine — decides whether the agent may reply at all.

Rules run in a fixed order and the first match wins:
  1. response limit   (responseCounter.total >= maxPerConversation)
  2. lead score       (leadScore.current >= autoDisableOnScore, threshold in 1..7)
  3. milestone        (milestone achieved and autoDisableAgent)

``evaluate`` is pure. ``check`` reads the configuration through the
provider, evaluates, and records a veto on the conversation.
"""
from __future__ import annotations

import structlog
from typing import Optional

from database.store_base import BaseConversationStore
from models.schemas import (
    Conversation, GlobalAgentConfig, LEAD_SCORING_STEPS, MAX_LEAD_SCORE,
    MIN_LEAD_SCORE, MilestoneStatus, RuleDecision, RuleType, utcnow,
)
from rules.config_provider import AgentConfigProvider

logger = structlog.get_logger()


def valid_score_threshold(value) -> bool:
    """Unset, zero, non-integer and out-of-range thresholds never trigger."""
    return (
        isinstance(value, int)
        and not isinstance(value, bool)
        and MIN_LEAD_SCORE <= value <= MAX_LEAD_SCORE
    )


# ──────────────────────────────────────────────────────────────
#  Rules Engine
# ──────────────────────────────────────────────────────────────

class AgentRulesEngine:
    """Evaluates global agent policy against a conversation."""

    def __init__(self, store: BaseConversationStore, config_provider: AgentConfigProvider):
        self.store = store
        self.config_provider = config_provider

    # ── Pure evaluation ───────────────────────────────────────

    @staticmethod
    def evaluate(conversation: Conversation, config: GlobalAgentConfig) -> RuleDecision:
        for rule in (_check_response_limit, _check_lead_score, _check_milestone):
            decision = rule(conversation, config)
            if decision is not None:
                return decision
        return RuleDecision(allow=True)

    @staticmethod
    def apply_decision(conversation: Conversation, decision: RuleDecision) -> bool:
        """Record a veto on the conversation. Returns True if anything changed."""
        if decision.allow:
            return False
        counter = conversation.response_counter
        before = (conversation.ai_enabled, counter.disabled_by_response_limit,
                  counter.disabled_by_lead_score, counter.disabled_by_milestone)

        conversation.ai_enabled = False
        if decision.rule_type == RuleType.RESPONSE_LIMIT:
            counter.disabled_by_response_limit = True
        elif decision.rule_type == RuleType.LEAD_SCORE:
            counter.disabled_by_lead_score = True
        elif decision.rule_type == RuleType.MILESTONE:
            counter.disabled_by_milestone = True

        after = (conversation.ai_enabled, counter.disabled_by_response_limit,
                 counter.disabled_by_lead_score, counter.disabled_by_milestone)
        return before != after

    # ── Evaluate + record ─────────────────────────────────────

    async def check(self, conversation: Conversation) -> RuleDecision:
        """Evaluate against fresh configuration; persist the veto if there is one."""
        config = await self.config_provider.get()
        decision = self.evaluate(conversation, config)

        if not decision.allow:
            if self.apply_decision(conversation, decision):
                await self.store.save_conversation(conversation)
            logger.info("agent_disabled_by_rule",
                        conversation_id=conversation.id,
                        rule_type=decision.rule_type.value if decision.rule_type else None,
                        reason=decision.reason)
        elif config.system_settings.log_all_decisions:
            logger.info("agent_rules_passed",
                        conversation_id=conversation.id,
                        responses=conversation.response_counter.total,
                        lead_score=conversation.lead_score.current,
                        milestone=conversation.milestone.status.value)
        return decision

    # ── Operator actions ──────────────────────────────────────

    async def reset_response_counter(self, conversation_id: str) -> Optional[Conversation]:
        """Zero the counter, clear every rule flag and re-enable the agent."""
        conversation = await self.store.get_conversation(conversation_id)
        if conversation is None:
            return None
        reset_response_counter(conversation)
        conversation.ai_enabled = True
        await self.store.save_conversation(conversation)
        logger.info("response_counter_reset", conversation_id=conversation_id)
        return conversation


def reset_response_counter(conversation: Conversation) -> None:
    counter = conversation.response_counter
    counter.total = 0
    counter.last_reset_at = utcnow()
    counter.disabled_by_response_limit = False
    counter.disabled_by_lead_score = False
    counter.disabled_by_milestone = False


# ── Individual rules ──────────────────────────────────────────

def _check_response_limit(conv: Conversation, config: GlobalAgentConfig) -> Optional[RuleDecision]:
    if not config.system_settings.enable_response_limits:
        return None
    limit = config.response_limits.max_per_conversation
    total = conv.response_counter.total
    if total >= limit:
        return RuleDecision(
            allow=False,
            reason=f"Response limit reached ({total}/{limit})",
            rule_type=RuleType.RESPONSE_LIMIT,
        )
    return None


def _check_lead_score(conv: Conversation, config: GlobalAgentConfig) -> Optional[RuleDecision]:
    if not config.system_settings.enable_lead_score_auto_disable:
        return None
    threshold = config.lead_scoring.auto_disable_on_score
    if not valid_score_threshold(threshold):
        return None
    score = conv.lead_score.current
    if score >= threshold:
        return RuleDecision(
            allow=False,
            reason=f"Lead score milestone reached ({score}/{MAX_LEAD_SCORE}: {LEAD_SCORING_STEPS.get(score, '')})",
            rule_type=RuleType.LEAD_SCORE,
        )
    return None


def _check_milestone(conv: Conversation, config: GlobalAgentConfig) -> Optional[RuleDecision]:
    if not (config.system_settings.enable_milestone_auto_disable
            and config.lead_scoring.auto_disable_on_milestone):
        return None
    milestone = conv.milestone
    if milestone.status == MilestoneStatus.ACHIEVED and milestone.auto_disable_agent:
        target = milestone.target.value if milestone.target else "unspecified"
        return RuleDecision(
            allow=False,
            reason=f"Conversation milestone achieved: {target}",
            rule_type=RuleType.MILESTONE,
        )
    return None
