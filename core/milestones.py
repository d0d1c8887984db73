"""
Decides whether a batch of inbound text shows that the conversation's
milestone has been reached.

The orchestrator only talks to ``MilestoneDetector``; the keyword
implementation below can be swapped for a model-based one.
"""
from __future__ import annotations

import abc
import re
import structlog
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from models.schemas import (
    Conversation, Milestone, MilestoneSetting, MilestoneStatus, MilestoneTarget, utcnow,
)

logger = structlog.get_logger()


@dataclass
class MilestoneHit:
    target: MilestoneTarget
    matched: str                  # the text fragment or keyword that matched
    detector: str


class MilestoneDetector(abc.ABC):
    """Strategy interface for milestone detection."""

    name: str = "detector"

    @abc.abstractmethod
    def detect(self, milestone: Milestone, texts: list[str]) -> Optional[MilestoneHit]:
        ...


# ──────────────────────────────────────────────────────────────
#  Keyword / pattern detector
# ──────────────────────────────────────────────────────────────

LINK_PATTERN = re.compile(r"(https?://\S+|www\.\S+\.\S+)", re.IGNORECASE)
SCHEDULING_PATTERN = re.compile(
    r"\b(agenda|agendar|schedule[ds]?|scheduling|cita|appointment|booked|calendly|"
    r"meeting|reuni[oó]n|disponible|available)\b",
    re.IGNORECASE,
)
DEMO_PATTERN = re.compile(
    r"\b(demo|demostraci[oó]n|videollamada|videocall|llamada|call)\b",
    re.IGNORECASE,
)


class KeywordMilestoneDetector(MilestoneDetector):
    """
    Matches the batch text against the patterns for the milestone's target:
    links for LINK_SHARED, scheduling words for MEETING_SCHEDULED, demo
    words for DEMO_BOOKED and the comma-separated ``custom_target``
    keywords for CUSTOM.
    """

    name = "keyword"

    def detect(self, milestone: Milestone, texts: list[str]) -> Optional[MilestoneHit]:
        if milestone.target is None or milestone.status != MilestoneStatus.PENDING:
            return None
        text = "\n".join(t for t in texts if t)
        if not text:
            return None

        if milestone.target == MilestoneTarget.CUSTOM:
            matched = self._match_custom(milestone.custom_target, text)
        else:
            pattern = {
                MilestoneTarget.LINK_SHARED: LINK_PATTERN,
                MilestoneTarget.MEETING_SCHEDULED: SCHEDULING_PATTERN,
                MilestoneTarget.DEMO_BOOKED: DEMO_PATTERN,
            }[milestone.target]
            m = pattern.search(text)
            matched = m.group(0) if m else None

        if matched is None:
            return None
        return MilestoneHit(target=milestone.target, matched=matched, detector=self.name)

    @staticmethod
    def _match_custom(custom_target: str, text: str) -> Optional[str]:
        lowered = text.lower()
        for keyword in (k.strip().lower() for k in custom_target.split(",")):
            if keyword and keyword in lowered:
                return keyword
        return None


def mark_milestone_achieved(
    conversation: Conversation, hit: MilestoneHit, now: Optional[datetime] = None,
) -> None:
    """pending → achieved; turns the agent off when the milestone asks for it."""
    milestone = conversation.milestone
    milestone.status = MilestoneStatus.ACHIEVED
    milestone.achieved_at = now or utcnow()
    milestone.achieved_by = f"{hit.detector}:{hit.matched}"
    if milestone.auto_disable_agent:
        conversation.ai_enabled = False
    logger.info("milestone_achieved",
                conversation_id=conversation.id,
                target=hit.target.value,
                matched=hit.matched,
                agent_disabled=milestone.auto_disable_agent)


def set_milestone(
    conversation: Conversation, setting: MilestoneSetting, now: Optional[datetime] = None,
) -> None:
    """Replace the milestone with a fresh pending one for ``setting.target``."""
    conversation.milestone = Milestone(
        target=setting.target,
        custom_target=setting.custom_target,
        auto_disable_agent=setting.auto_disable_agent,
        set_at=now or utcnow(),
    )
    logger.info("milestone_set",
                conversation_id=conversation.id,
                target=setting.target.value,
                auto_disable_agent=setting.auto_disable_agent)
