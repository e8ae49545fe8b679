from __future__ import annotations

from typing import Any, Dict

from xfactor.types import FvmType, Persona, RewardType, ViralLoop

from growth.links import LinkContext

from .base import BaseLoop, LoopContext, Reward, RewardPair


class ProudParentLoop(BaseLoop):
    """Parents share a privacy-safe progress recap with other parents."""

    loop_id = ViralLoop.PROUD_PARENT
    name = "Proud Parent"
    description = "Share your child's progress with other parents"
    supported_personas = frozenset({Persona.PARENT})
    fvm_type = FvmType.SESSION
    join_message = "Try a class sampler!"

    async def check_eligibility(self, context: LoopContext) -> bool:
        return bool(context.get("milestone_type") or context.get("child_progress"))

    def link_context(self, context: LoopContext) -> LinkContext:
        progress = context.get("child_progress") or {}
        return LinkContext(subject=progress.get("subject") or context.subject)

    def message_prefix(self, context: LoopContext) -> str:
        progress = context.get("child_progress") or {}
        message = ""
        if progress.get("improvement"):
            message = f"My child improved {progress['improvement']}%! "
        achievements = progress.get("achievements") or []
        if achievements:
            message += f"Earned {len(achievements)} achievement(s)! "
        return message

    def invite_metadata(self, context: LoopContext) -> Dict[str, Any]:
        return {"milestone_type": context.get("milestone_type"), "reel_url": context.get("reel_url")}

    def rewards(self) -> RewardPair:
        return RewardPair(
            inviter=Reward(RewardType.CLASS_PASS, 1, "1 class pass for inviting another parent"),
            invitee=Reward(RewardType.CLASS_PASS, 1, "1 class pass to get started"),
        )
