from __future__ import annotations

from typing import Any, Dict

from xfactor.types import FvmType, Persona, RewardType, ViralLoop

from growth.links import LinkContext

from .base import BaseLoop, LoopContext, Reward, RewardPair


class ResultsRallyLoop(BaseLoop):
    """Share a results page and rally peers into practice."""

    loop_id = ViralLoop.RESULTS_RALLY
    name = "Results Rally"
    description = "Share your results and challenge peers"
    supported_personas = frozenset({Persona.STUDENT, Persona.PARENT})
    fvm_type = FvmType.PRACTICE
    join_message = "View results and join the rally!"

    async def check_eligibility(self, context: LoopContext) -> bool:
        if not context.get("result_type"):
            return False
        return context.get("score") is not None or context.get("percentile") is not None

    def link_context(self, context: LoopContext) -> LinkContext:
        skills = context.get("skills") or []
        return LinkContext(subject=context.subject, skill=skills[0] if skills else None)

    def message_prefix(self, context: LoopContext) -> str:
        rank = context.get("rank")
        total = context.get("total_participants")
        if rank and total:
            return f"I ranked #{rank} out of {total}! "
        percentile = context.get("percentile")
        if percentile is not None:
            return f"I scored in the {percentile}th percentile! "
        return ""

    def invite_metadata(self, context: LoopContext) -> Dict[str, Any]:
        return {
            "result_type": context.get("result_type"),
            "score": context.get("score"),
            "percentile": context.get("percentile"),
            "rank": context.get("rank"),
        }

    def rewards(self) -> RewardPair:
        return RewardPair(
            inviter=Reward(RewardType.GEM_BOOST, 50, "50 gems for bringing a friend to the rally"),
            invitee=Reward(RewardType.PRACTICE_POWER_UP, 1, "1 practice power-up to get started"),
        )
