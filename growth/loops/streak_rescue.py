"""Phone-a-friend co-practice for students whose streak is about to lapse."""

from __future__ import annotations

import math
from typing import Any, Dict, Optional

from xfactor.types import FvmType, Persona, RewardType, ViralLoop

from growth.links import LinkContext

from .base import BaseLoop, LoopContext, Reward, RewardConditions, RewardPair, as_datetime

RISK_WINDOW_HOURS = 24


class StreakRescueLoop(BaseLoop):
    loop_id = ViralLoop.STREAK_RESCUE
    name = "Streak Rescue"
    description = "Phone-a-friend to save your streak"
    supported_personas = frozenset({Persona.STUDENT})
    fvm_type = FvmType.PRACTICE
    requires_join = True
    join_message = "Help your friend save their streak!"

    def hours_until_expiry(self, context: LoopContext) -> Optional[float]:
        expires_at = as_datetime(context.get("streak_expires_at"))
        if expires_at is None:
            return None
        return (expires_at - self.now()).total_seconds() / 3600

    async def check_eligibility(self, context: LoopContext) -> bool:
        streak = context.get("current_streak") or 0
        if streak < 1:
            return False
        hours = self.hours_until_expiry(context)
        if hours is None:
            return False
        return 0 <= hours <= RISK_WINDOW_HOURS

    def link_context(self, context: LoopContext) -> LinkContext:
        return LinkContext(subject=context.subject, skill=context.get("practice_topic"))

    def link_expiry(self, context: LoopContext):
        # The invite is worthless once the streak itself has lapsed.
        return as_datetime(context.get("streak_expires_at"))

    def message_prefix(self, context: LoopContext) -> str:
        hours = context.get("hours_until_expiry")
        if hours is None:
            hours = self.hours_until_expiry(context) or 0
        streak = context.get("current_streak")
        return f"I need help! My {streak}-day streak expires in {math.ceil(hours)} hours! "

    def invite_metadata(self, context: LoopContext) -> Dict[str, Any]:
        expires_at = as_datetime(context.get("streak_expires_at"))
        return {
            "current_streak": context.get("current_streak"),
            "hours_until_expiry": self.hours_until_expiry(context),
            "streak_expires_at": expires_at.isoformat() if expires_at else None,
        }

    def rewards(self) -> RewardPair:
        return RewardPair(
            inviter=Reward(RewardType.STREAK_SHIELD, 1, "1 streak shield for friend helping save your streak"),
            invitee=Reward(RewardType.STREAK_SHIELD, 1, "1 streak shield for helping a friend"),
            conditions=RewardConditions(fvm_required=True, time_window_hours=RISK_WINDOW_HOURS),
        )
