"""
Lead scoring — the seven-step sales-readiness scale and its guard rails.

While a milestone is set and pending the score may not go past step 4 (Milestone
Met). Step 5 (Reminder Sent) describes an action taken by us, so it only
stands once a real reminder has been recorded on the conversation.
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from models.schemas import (
    Conversation, GenerationResult, LEAD_SCORING_STEPS, LeadScoreEntry,
    MAX_LEAD_SCORE, MIN_LEAD_SCORE, Milestone, MilestoneStatus,
    ScoreProgression, utcnow,
)

MILESTONE_STEP = 4
REMINDER_STEP = 5


def step_name(score: int) -> str:
    return LEAD_SCORING_STEPS.get(score, "Unknown")


def max_allowed_score(milestone: Milestone) -> int:
    """Upper bound for the lead score given the milestone state."""
    if milestone.target is None:
        return MAX_LEAD_SCORE
    if milestone.status == MilestoneStatus.PENDING:
        return MILESTONE_STEP
    return MAX_LEAD_SCORE


def clamp_score(
    raw_score: int, milestone: Milestone, reminder_sent: bool,
) -> tuple[int, list[str]]:
    """Apply the milestone cap and the reminder gate. Returns (score, reasons)."""
    reasons: list[str] = []
    score = max(MIN_LEAD_SCORE, min(MAX_LEAD_SCORE, raw_score))

    ceiling = max_allowed_score(milestone)
    if score > ceiling:
        reasons.append(f"Score limited to {ceiling} (milestone {milestone.status.value})")
        score = ceiling

    if score == REMINDER_STEP and not reminder_sent:
        reasons.append("Score 5 (Reminder Sent) requires an actual reminder")
        score = MILESTONE_STEP

    return score, reasons


def calculate_progression(current: int, previous: int) -> ScoreProgression:
    if current > previous:
        return ScoreProgression.INCREASED
    if current < previous:
        return ScoreProgression.DECREASED
    return ScoreProgression.MAINTAINED


def apply_generated_score(
    conversation: Conversation, result: GenerationResult, now: Optional[datetime] = None,
) -> LeadScoreEntry:
    """Clamp the generated score, record it in history and update current."""
    lead = conversation.lead_score
    milestone = conversation.milestone
    score, reasons = clamp_score(result.lead_score, milestone, lead.reminder_sent_at is not None)
    previous = lead.current

    entry = LeadScoreEntry(
        score=score,
        previous_score=previous,
        raw_score=result.lead_score,
        progression=calculate_progression(score, previous),
        reason="; ".join(reasons) or step_name(score),
        intent=result.intent,
        next_action=result.next_action,
        confidence=result.confidence,
        recorded_at=now or utcnow(),
        milestone_status=milestone.status,
    )
    lead.history.append(entry)
    lead.current = score
    return entry


def mark_reminder_sent(conversation: Conversation, now: Optional[datetime] = None) -> None:
    """Record that a real reminder went out; unlocks step 5."""
    conversation.lead_score.reminder_sent_at = now or utcnow()
