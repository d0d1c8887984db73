"""Tests for keyword milestone detection and the achieved transition."""
import pytest

from core.milestones import KeywordMilestoneDetector, MilestoneHit, mark_milestone_achieved
from models.schemas import (
    ChannelType, Conversation, Milestone, MilestoneStatus, MilestoneTarget,
)


@pytest.fixture
def detector():
    return KeywordMilestoneDetector()


class TestKeywordDetector:
    def test_link_shared(self, detector):
        hit = detector.detect(Milestone(target=MilestoneTarget.LINK_SHARED),
                              ["here you go", "https://acme.example/portfolio"])
        assert hit is not None
        assert hit.matched.startswith("https://")
        assert hit.detector == "keyword"

    def test_meeting_scheduled(self, detector):
        hit = detector.detect(Milestone(target=MilestoneTarget.MEETING_SCHEDULED),
                              ["I just booked a slot for Tuesday"])
        assert hit is not None
        assert hit.target == MilestoneTarget.MEETING_SCHEDULED

    def test_demo_booked_spanish(self, detector):
        hit = detector.detect(Milestone(target=MilestoneTarget.DEMO_BOOKED),
                              ["Quiero una demostración"])
        assert hit is not None

    def test_custom_keywords(self, detector):
        milestone = Milestone(target=MilestoneTarget.CUSTOM, custom_target="deposit, paid")
        assert detector.detect(milestone, ["I PAID the invoice"]).matched == "paid"
        assert detector.detect(milestone, ["still thinking"]) is None

    def test_no_target(self, detector):
        assert detector.detect(Milestone(), ["https://example.com"]) is None

    def test_already_achieved(self, detector):
        milestone = Milestone(target=MilestoneTarget.LINK_SHARED, status=MilestoneStatus.ACHIEVED)
        assert detector.detect(milestone, ["https://example.com"]) is None

    def test_no_match(self, detector):
        assert detector.detect(Milestone(target=MilestoneTarget.LINK_SHARED), ["hello there"]) is None


class TestMarkAchieved:
    def _conv(self, auto_disable=True):
        return Conversation(
            contact_id="ct1", channel_account_id="ig_main", channel=ChannelType.INSTAGRAM,
            milestone=Milestone(target=MilestoneTarget.LINK_SHARED, auto_disable_agent=auto_disable),
        )

    def test_transition_disables_agent(self):
        conv = self._conv()
        mark_milestone_achieved(conv, MilestoneHit(MilestoneTarget.LINK_SHARED, "https://x.io", "keyword"))
        assert conv.milestone.status == MilestoneStatus.ACHIEVED
        assert conv.milestone.achieved_at is not None
        assert conv.milestone.achieved_by == "keyword:https://x.io"
        assert conv.ai_enabled is False

    def test_transition_keeps_agent_when_not_auto_disabling(self):
        conv = self._conv(auto_disable=False)
        mark_milestone_achieved(conv, MilestoneHit(MilestoneTarget.LINK_SHARED, "https://x.io", "keyword"))
        assert conv.milestone.status == MilestoneStatus.ACHIEVED
        assert conv.ai_enabled is True
