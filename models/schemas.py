"""
Core data models for the InboxAgent system.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class ChannelType(str, Enum):
    INSTAGRAM = "instagram"
    GMAIL = "gmail"


class MessageDirection(str, Enum):
    INBOUND = "in"
    OUTBOUND = "out"


class ConversationStatus(str, Enum):
    OPEN = "open"
    SCHEDULED = "scheduled"
    CLOSED = "closed"
    ARCHIVED = "archived"


class MilestoneTarget(str, Enum):
    LINK_SHARED = "link_shared"
    MEETING_SCHEDULED = "meeting_scheduled"
    DEMO_BOOKED = "demo_booked"
    CUSTOM = "custom"


class MilestoneStatus(str, Enum):
    PENDING = "pending"
    ACHIEVED = "achieved"
    FAILED = "failed"


class ScoreProgression(str, Enum):
    INCREASED = "increased"
    DECREASED = "decreased"
    MAINTAINED = "maintained"


class OutboundPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class OutboundStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RuleType(str, Enum):
    RESPONSE_LIMIT = "response_limit"
    LEAD_SCORE = "lead_score"
    MILESTONE = "milestone"


IN_FLIGHT_STATUSES = (OutboundStatus.PENDING, OutboundStatus.PROCESSING)

PRIORITY_RANK = {
    OutboundPriority.LOW: 0,
    OutboundPriority.NORMAL: 1,
    OutboundPriority.HIGH: 2,
    OutboundPriority.URGENT: 3,
}


# ──────────────────────────────────────────────────────────────
#  Lead scoring steps
# ──────────────────────────────────────────────────────────────

LEAD_SCORING_STEPS: dict[int, str] = {
    1: "Contact Received",
    2: "Answers 1 Question",
    3: "Confirms Interest",
    4: "Milestone Met",
    5: "Reminder Sent",
    6: "Reminder Answered",
    7: "Sales Done",
}

MIN_LEAD_SCORE = 1
MAX_LEAD_SCORE = 7


# ──────────────────────────────────────────────────────────────
#  Contacts
# ──────────────────────────────────────────────────────────────

class Contact(BaseModel):
    """A channel participant; the address is what the sender delivers to."""
    id: str = Field(default_factory=_new_id)
    channel: ChannelType
    address: str                              # instagram-scoped id, email address
    display_name: str = ""
    created_at: datetime = Field(default_factory=utcnow)


# ──────────────────────────────────────────────────────────────
#  Messages
# ──────────────────────────────────────────────────────────────

class Message(BaseModel):
    id: str = Field(default_factory=_new_id)
    conversation_id: str
    direction: MessageDirection
    external_id: Optional[str] = None         # channel message id, globally unique
    sender_ref: str = ""                      # contact address for inbound, account id for outbound
    text: str
    created_at: datetime = Field(default_factory=utcnow)
    processed: bool = False


class InboundEvent(BaseModel):
    """A channel event normalized by a webhook parser, before persistence."""
    channel: ChannelType
    channel_account_id: str
    external_id: str
    sender_address: str
    sender_name: str = ""
    text: str
    received_at: datetime = Field(default_factory=utcnow)
    metadata: dict[str, Any] = {}             # thread_id, subject, …


# ──────────────────────────────────────────────────────────────
#  Conversation state
# ──────────────────────────────────────────────────────────────

class ResponseCounter(BaseModel):
    total: int = 0
    last_reset_at: Optional[datetime] = None
    disabled_by_response_limit: bool = False
    disabled_by_lead_score: bool = False
    disabled_by_milestone: bool = False


class LeadScoreEntry(BaseModel):
    score: int
    previous_score: int
    raw_score: int                            # what generation asked for, before clamping
    progression: ScoreProgression
    reason: str = ""
    intent: str = ""
    next_action: str = ""
    confidence: float = 0.0
    recorded_at: datetime = Field(default_factory=utcnow)
    milestone_status: MilestoneStatus = MilestoneStatus.PENDING


class LeadScore(BaseModel):
    current: int = Field(default=MIN_LEAD_SCORE, ge=MIN_LEAD_SCORE, le=MAX_LEAD_SCORE)
    history: list[LeadScoreEntry] = []
    reminder_sent_at: Optional[datetime] = None


class Milestone(BaseModel):
    target: Optional[MilestoneTarget] = None
    custom_target: str = ""                   # comma separated keywords for CUSTOM
    status: MilestoneStatus = MilestoneStatus.PENDING
    auto_disable_agent: bool = True
    set_at: Optional[datetime] = None
    achieved_at: Optional[datetime] = None
    achieved_by: str = ""                     # which heuristic matched


class MilestoneSetting(BaseModel):
    """What an operator or an account default assigns; status starts at pending."""
    target: MilestoneTarget
    custom_target: str = ""
    auto_disable_agent: bool = True


class Conversation(BaseModel):
    id: str = Field(default_factory=_new_id)
    contact_id: str
    channel_account_id: str
    channel: ChannelType
    status: ConversationStatus = ConversationStatus.OPEN
    ai_enabled: bool = True
    response_counter: ResponseCounter = Field(default_factory=ResponseCounter)
    lead_score: LeadScore = Field(default_factory=LeadScore)
    milestone: Milestone = Field(default_factory=Milestone)
    metadata: dict[str, Any] = {}             # thread_id, subject, …
    created_at: datetime = Field(default_factory=utcnow)
    last_activity_at: datetime = Field(default_factory=utcnow)


# ──────────────────────────────────────────────────────────────
#  Outbound delivery
# ──────────────────────────────────────────────────────────────

class DeliveryError(BaseModel):
    attempt: int
    timestamp: datetime = Field(default_factory=utcnow)
    error_code: str
    error_message: str = ""


class OutboundItem(BaseModel):
    id: str = Field(default_factory=_new_id)
    conversation_id: str
    message_id: str
    channel_account_id: str
    recipient_ref: str
    priority: OutboundPriority = OutboundPriority.NORMAL
    status: OutboundStatus = OutboundStatus.PENDING
    attempts: int = 0
    max_attempts: int = 3
    scheduled_for: datetime = Field(default_factory=utcnow)
    next_attempt_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    external_message_id: Optional[str] = None
    error_history: list[DeliveryError] = []
    metadata: dict[str, Any] = {}
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def in_flight(self) -> bool:
        return self.status in IN_FLIGHT_STATUSES


# ──────────────────────────────────────────────────────────────
#  Global agent configuration
# ──────────────────────────────────────────────────────────────

class ResponseLimits(BaseModel):
    max_per_conversation: int = Field(default=3, ge=1, le=20)
    reset_counter_on_milestone: bool = False


class LeadScoringSettings(BaseModel):
    # Not range-checked; rules ignore values outside 1..7.
    auto_disable_on_score: Optional[int] = None
    auto_disable_on_milestone: bool = True


class SystemSettings(BaseModel):
    enable_response_limits: bool = True
    enable_lead_score_auto_disable: bool = True
    enable_milestone_auto_disable: bool = True
    log_all_decisions: bool = True


class GlobalAgentConfig(BaseModel):
    response_limits: ResponseLimits = Field(default_factory=ResponseLimits)
    lead_scoring: LeadScoringSettings = Field(default_factory=LeadScoringSettings)
    system_settings: SystemSettings = Field(default_factory=SystemSettings)
    updated_at: datetime = Field(default_factory=utcnow)


class RuleDecision(BaseModel):
    allow: bool
    reason: str = ""
    rule_type: Optional[RuleType] = None


# ──────────────────────────────────────────────────────────────
#  Generation contract
# ──────────────────────────────────────────────────────────────

class TranscriptEntry(BaseModel):
    role: str                                 # "user" | "assistant"
    content: str
    timestamp: Optional[datetime] = None


class GenerationContext(BaseModel):
    conversation_id: str
    business_name: str
    channel: ChannelType
    contact_name: str = ""
    transcript: list[TranscriptEntry] = []
    latest_message: str = ""                  # batch texts joined
    milestone_target: Optional[MilestoneTarget] = None
    milestone_custom_target: str = ""
    milestone_status: MilestoneStatus = MilestoneStatus.PENDING
    current_lead_score: int = MIN_LEAD_SCORE


class GenerationResult(BaseModel):
    text: str = Field(min_length=1)
    lead_score: int = Field(ge=MIN_LEAD_SCORE, le=MAX_LEAD_SCORE)
    intent: str = ""
    next_action: str = ""
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
