"""Student to student "beat my score" micro-deck challenge.

Both sides earn a streak shield when the friend reaches FVM within 48 hours.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Any, Dict, Optional

from xfactor.types import FvmType, Persona, RewardType, ViralLoop

from growth.links import LinkContext

from .base import BaseLoop, LoopContext, Reward, RewardConditions, RewardPair

FVM_WINDOW_HOURS = 48


def infer_difficulty(score: Optional[float]) -> str:
    if not score:
        return "medium"
    if score >= 80:
        return "hard"
    if score >= 60:
        return "medium"
    return "easy"


def challenge_deck_id(context: LoopContext) -> str:
    subject = context.subject or context.get("practice_subject") or "general"
    skill = context.get("practice_skill") or "practice"
    seed = f"{subject}-{skill}-{context.user_id}"
    return f"challenge-{seed[:16]}"


class BuddyChallengeLoop(BaseLoop):
    loop_id = ViralLoop.BUDDY_CHALLENGE
    name = "Buddy Challenge"
    description = "Challenge a friend to beat your practice score"
    supported_personas = frozenset({Persona.STUDENT})
    fvm_type = FvmType.CHALLENGE
    reward_window = timedelta(hours=FVM_WINDOW_HOURS)
    join_message = "Challenge accepted!"

    async def check_eligibility(self, context: LoopContext) -> bool:
        # Under-13 students stay eligible; consent is enforced by trust & safety.
        return context.get("practice_score") is not None or bool(context.get("challenge_deck_id"))

    def link_context(self, context: LoopContext) -> LinkContext:
        return LinkContext(
            subject=context.subject or context.get("practice_subject"),
            skill=context.get("practice_skill"),
            difficulty=infer_difficulty(context.get("practice_score")),
            challenge_id=context.get("challenge_deck_id") or challenge_deck_id(context),
        )

    def link_expiry(self, context: LoopContext):
        return self.now() + self.reward_window

    def invite_metadata(self, context: LoopContext) -> Dict[str, Any]:
        return {
            "challenge_deck_id": context.get("challenge_deck_id") or challenge_deck_id(context),
            "practice_score": context.get("practice_score"),
        }

    def rewards(self) -> RewardPair:
        return RewardPair(
            inviter=Reward(RewardType.STREAK_SHIELD, 1, "1 streak shield for friend completing challenge"),
            invitee=Reward(RewardType.STREAK_SHIELD, 1, "1 streak shield for completing challenge"),
            conditions=RewardConditions(fvm_required=True, time_window_hours=FVM_WINDOW_HOURS),
        )
