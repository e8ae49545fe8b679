"""Decides which viral loops a user trigger should start."""

from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from xfactor.config import settings
from xfactor.types import ErrorCode, Persona, UserTrigger, ViralLoop

from .protocol import AgentRequest, AgentResponse, BaseAgent

logger = logging.getLogger(__name__)

_S = Persona.STUDENT
_P = Persona.PARENT
_T = Persona.TUTOR

# Every trigger lists every persona, even when no loop applies.
TRIGGER_LOOP_MATRIX: Mapping[UserTrigger, Mapping[Persona, Tuple[ViralLoop, ...]]] = {
    UserTrigger.SESSION_COMPLETE: {
        _S: (ViralLoop.BUDDY_CHALLENGE,),
        _P: (ViralLoop.PROUD_PARENT,),
        # Tutors enter through SESSION_RATED instead.
        _T: (),
    },
    UserTrigger.RESULTS_PAGE_VIEW: {
        _S: (ViralLoop.BUDDY_CHALLENGE, ViralLoop.RESULTS_RALLY),
        _P: (ViralLoop.PROUD_PARENT,),
        _T: (),
    },
    UserTrigger.BADGE_EARNED: {
        _S: (ViralLoop.BUDDY_CHALLENGE,),
        _P: (ViralLoop.PROUD_PARENT,),
        _T: (),
    },
    UserTrigger.STREAK_PRESERVED: {
        _S: (ViralLoop.BUDDY_CHALLENGE,),
        _P: (),
        _T: (),
    },
    UserTrigger.STREAK_AT_RISK: {
        _S: (ViralLoop.STREAK_RESCUE,),
        _P: (),
        _T: (),
    },
    UserTrigger.CLASS_RECORDED: {
        _S: (ViralLoop.BUDDY_CHALLENGE,),
        _P: (),
        _T: (),
    },
    UserTrigger.CLUB_JOINED: {
        _S: (ViralLoop.BUDDY_CHALLENGE,),
        _P: (),
        _T: (),
    },
    UserTrigger.MILESTONE_REACHED: {
        _S: (ViralLoop.BUDDY_CHALLENGE,),
        _P: (ViralLoop.PROUD_PARENT,),
        _T: (),
    },
    UserTrigger.SESSION_RATED: {
        _S: (),
        _P: (),
        _T: (ViralLoop.TUTOR_SPOTLIGHT,),
    },
}


def _check_matrix_coverage() -> None:
    for trigger in UserTrigger:
        row = TRIGGER_LOOP_MATRIX.get(trigger)
        if row is None:
            raise RuntimeError(f"trigger {trigger.value} missing from loop matrix")
        missing = [persona.value for persona in Persona if persona not in row]
        if missing:
            raise RuntimeError(f"trigger {trigger.value} lacks personas: {', '.join(missing)}")


_check_matrix_coverage()


@dataclass(slots=True)
class Eligibility:
    eligible: bool
    reason: Optional[str] = None


@dataclass(slots=True)
class Throttling:
    throttled: bool
    reason: Optional[str] = None
    retry_after: Optional[int] = None


def _parse_ts(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class OrchestratorAgent(BaseAgent):
    name = "orchestrator"
    actions = {"allocate_loops": "allocate_loops"}
    default_action = "allocate_loops"

    def __init__(
        self,
        *,
        clock: Callable[[], datetime] | None = None,
        max_invites_per_day: int | None = None,
        cooldown_minutes: int | None = None,
        max_loops_per_trigger: int | None = None,
        max_latency_ms: int | None = None,
    ) -> None:
        super().__init__(max_latency_ms=max_latency_ms)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.max_invites_per_day = max_invites_per_day or settings.MAX_INVITES_PER_DAY
        self.cooldown = timedelta(minutes=cooldown_minutes or settings.INVITE_COOLDOWN_MINUTES)
        self.max_loops_per_trigger = max_loops_per_trigger or settings.MAX_LOOPS_PER_TRIGGER

    async def allocate_loops(self, request: AgentRequest) -> AgentResponse:
        ctx = request.context
        try:
            trigger = UserTrigger(ctx.get("trigger"))
            persona = Persona(ctx.get("persona"))
        except ValueError as exc:
            return self.fail(request, ErrorCode.VALIDATION, str(exc), rationale="Unknown trigger or persona")

        eligibility = self.check_eligibility(ctx)
        if not eligibility.eligible:
            logger.info("user %s ineligible for growth loops: %s", request.user_id, eligibility.reason)
            return self.fail(
                request,
                ErrorCode.INELIGIBLE,
                eligibility.reason or "ineligible",
                rationale=f"User not eligible: {eligibility.reason}",
                data=self._payload([], eligibility, Throttling(False)),
            )

        throttling = self.check_throttling(ctx)
        if throttling.throttled:
            logger.info("user %s throttled: %s", request.user_id, throttling.reason)
            return self.fail(
                request,
                ErrorCode.RATE_LIMITED,
                throttling.reason or "throttled",
                rationale=f"Request throttled: {throttling.reason}",
                data=self._payload([], eligibility, throttling),
            )

        selected = self.select_loops(trigger, persona, ctx.get("recent_loops") or [])
        if selected:
            rationale = (
                f"Selected {len(selected)} loop(s) [{', '.join(loop.value for loop in selected)}] "
                f"for {persona.value} triggered by {trigger.value}. Based on user context: "
                f"{ctx.get('subject') or 'no subject'}, {ctx.get('invite_count') or 0} invites today."
            )
        else:
            rationale = f"No loops selected for trigger {trigger.value} and persona {persona.value}"

        return self.ok(
            request,
            rationale,
            self._payload(selected, eligibility, throttling),
            features_used=["trigger_type", "persona", "subject", "recent_loops", "invite_count", "user_preferences"],
            confidence=0.85,
        )

    def check_eligibility(self, ctx: Mapping[str, Any]) -> Eligibility:
        preferences = ctx.get("preferences") or {}
        if preferences.get("opted_out"):
            return Eligibility(False, "User has opted out of growth communications")
        return Eligibility(True)

    def check_throttling(self, ctx: Mapping[str, Any]) -> Throttling:
        invite_count = int(ctx.get("invite_count") or 0)
        last_invite = _parse_ts(ctx.get("last_invite_at"))
        now = self._clock()

        if invite_count >= self.max_invites_per_day:
            if last_invite is None:
                retry_after = 3600
            else:
                remaining = (last_invite + timedelta(hours=24) - now).total_seconds()
                retry_after = max(0, math.ceil(remaining))
            return Throttling(
                True,
                f"Daily invite limit reached ({self.max_invites_per_day})",
                retry_after,
            )

        if last_invite is not None:
            since = now - last_invite
            if since < self.cooldown:
                minutes = int(self.cooldown.total_seconds() // 60)
                return Throttling(
                    True,
                    f"Cooldown period active ({minutes} minutes)",
                    math.ceil((self.cooldown - since).total_seconds()),
                )

        return Throttling(False)

    def select_loops(
        self,
        trigger: UserTrigger,
        persona: Persona,
        recent_loops: Sequence[str],
    ) -> List[ViralLoop]:
        candidates = list(TRIGGER_LOOP_MATRIX[trigger][persona])
        recent = {str(getattr(loop, "value", loop)) for loop in recent_loops}
        fresh = [loop for loop in candidates if loop.value not in recent]
        # Recently used loops are only a preference; fall back rather than go silent.
        chosen = fresh or candidates
        return chosen[: self.max_loops_per_trigger]

    @staticmethod
    def _payload(selected: List[ViralLoop], eligibility: Eligibility, throttling: Throttling) -> Dict[str, Any]:
        return {
            "selected_loops": [loop.value for loop in selected],
            "eligibility": asdict(eligibility),
            "throttling": asdict(throttling),
        }


__all__ = ["Eligibility", "OrchestratorAgent", "TRIGGER_LOOP_MATRIX", "Throttling"]
