"""Tutors share a spotlight card after a five-star session."""

from __future__ import annotations

import uuid
from datetime import timedelta
from typing import Any, Dict
from urllib.parse import urlencode

from xfactor.types import FvmType, Persona, RewardType, ViralLoop

from growth.links import LinkContext, UtmParams

from .base import BaseLoop, LoopContext, Reward, RewardConditions, RewardPair

MIN_RATING = 5
FVM_WINDOW_DAYS = 30


class TutorSpotlightLoop(BaseLoop):
    loop_id = ViralLoop.TUTOR_SPOTLIGHT
    name = "Tutor Spotlight"
    description = "Share your expertise and get referral credits"
    supported_personas = frozenset({Persona.TUTOR})
    fvm_type = FvmType.SESSION
    reward_window = timedelta(days=FVM_WINDOW_DAYS)
    requires_join = True
    join_message = "Try a class sampler with this tutor!"

    async def check_eligibility(self, context: LoopContext) -> bool:
        rating = context.get("session_rating")
        return rating is not None and rating >= MIN_RATING

    def link_context(self, context: LoopContext) -> LinkContext:
        return LinkContext(subject=context.subject)

    def utm(self, context: LoopContext) -> UtmParams:
        return UtmParams(
            source="tutor_referral",
            medium="referral",
            campaign=self.loop_id.value,
            term=context.user_id,
        )

    def link_expiry(self, context: LoopContext):
        return self.now() + self.reward_window

    def class_sampler_link(self, context: LoopContext) -> str:
        if context.get("class_sampler_link"):
            return context.get("class_sampler_link")
        sampler_id = str(uuid.uuid4())[:8]
        query = urlencode({"subject": context.subject or "general", "ref": context.user_id})
        return f"{self._links.base_url}/class-sampler/{sampler_id}?{query}"

    def message_prefix(self, context: LoopContext) -> str:
        tutor_name = context.get("tutor_name", "Expert Tutor")
        rating = context.get("tutor_rating") or context.get("session_rating") or MIN_RATING
        subject = context.subject or "your subject"
        return f"{tutor_name} ({rating}★) specializes in {subject}. "

    def message_suffix(self, context: LoopContext) -> str:
        return f"\n\nClass Sampler: {self.class_sampler_link(context)}"

    def invite_metadata(self, context: LoopContext) -> Dict[str, Any]:
        return {
            "session_id": context.get("session_id"),
            "session_rating": context.get("session_rating"),
        }

    def rewards(self) -> RewardPair:
        return RewardPair(
            inviter=Reward(
                RewardType.XP_BOOST, 200, "200 XP for successful referral (family booked first session)"
            ),
            invitee=Reward(RewardType.CLASS_PASS, 1, "1 class pass to try your first session"),
            conditions=RewardConditions(fvm_required=True, time_window_hours=FVM_WINDOW_DAYS * 24),
        )
