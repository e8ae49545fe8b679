"""Closed vocabularies shared by agents, loops and analytics."""

from __future__ import annotations

from enum import Enum


class Persona(str, Enum):
    STUDENT = "student"
    PARENT = "parent"
    TUTOR = "tutor"


class UserTrigger(str, Enum):
    """User events that may start a viral loop."""

    SESSION_COMPLETE = "session_complete"
    BADGE_EARNED = "badge_earned"
    STREAK_PRESERVED = "streak_preserved"
    RESULTS_PAGE_VIEW = "results_page_view"
    STREAK_AT_RISK = "streak_at_risk"
    CLASS_RECORDED = "class_recorded"
    CLUB_JOINED = "club_joined"
    MILESTONE_REACHED = "milestone_reached"
    SESSION_RATED = "session_rated"


class ViralLoop(str, Enum):
    BUDDY_CHALLENGE = "buddy_challenge"
    RESULTS_RALLY = "results_rally"
    PROUD_PARENT = "proud_parent"
    TUTOR_SPOTLIGHT = "tutor_spotlight"
    CLASS_WATCH_PARTY = "class_watch_party"
    STREAK_RESCUE = "streak_rescue"
    SUBJECT_CLUBS = "subject_clubs"
    ACHIEVEMENT_SPOTLIGHT = "achievement_spotlight"


class RewardType(str, Enum):
    AI_TUTOR_MINUTES = "ai_tutor_minutes"
    CLASS_PASS = "class_pass"
    GEM_BOOST = "gem_boost"
    XP_BOOST = "xp_boost"
    STREAK_SHIELD = "streak_shield"
    PRACTICE_POWER_UP = "practice_power_up"


class Channel(str, Enum):
    IN_APP = "in_app"
    PUSH = "push"
    EMAIL = "email"
    SMS = "sms"


class FvmType(str, Enum):
    """Landing surface of an attribution link."""

    PRACTICE = "practice"
    AI_TUTOR = "ai_tutor"
    SESSION = "session"
    CHALLENGE = "challenge"


class EventType(str, Enum):
    # invites
    INVITE_SENT = "invites_sent"
    INVITE_OPENED = "invite_opened"
    INVITE_CLICKED = "invite_clicked"
    INVITE_FAILED = "invite_failed"
    # conversion
    ACCOUNT_CREATED = "account_created"
    FVM_REACHED = "FVM_reached"
    ACTIVE_DAY = "active_day"
    # rewards
    REWARD_CLAIMED = "reward_claimed"
    # loops
    LOOP_TRIGGERED = "loop_triggered"
    # guardrails
    COMPLAINT_FILED = "complaint_filed"
    OPT_OUT = "opt_out"
    FRAUD_DETECTED = "fraud_detected"
    SUPPORT_TICKET = "support_ticket"


class ErrorCode(str, Enum):
    VALIDATION = "VALIDATION"
    INELIGIBLE = "INELIGIBLE"
    AGENT_UNAVAILABLE = "AGENT_UNAVAILABLE"
    LINK_INVALID = "LINK_INVALID"
    LINK_EXPIRED = "LINK_EXPIRED"
    BUDGET_EXCEEDED = "BUDGET_EXCEEDED"
    RATE_LIMITED = "RATE_LIMITED"
    ABUSE_DETECTED = "ABUSE_DETECTED"
    INVALID_ACTION = "INVALID_ACTION"
    NOT_FOUND = "NOT_FOUND"
    INTERNAL = "INTERNAL"


class BreakerState(str, Enum):
    CLOSED = "closed"
    HALF_OPEN = "half-open"
    OPEN = "open"


__all__ = [
    "BreakerState",
    "Channel",
    "ErrorCode",
    "EventType",
    "FvmType",
    "Persona",
    "RewardType",
    "UserTrigger",
    "ViralLoop",
]
