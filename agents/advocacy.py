"""Tutor share packs and referral tracking."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import quote, urlencode

from growth.links import AttributionLinkService, LinkConfig, LinkContext, UtmParams
from xfactor.types import ErrorCode, FvmType, Persona, ViralLoop

from .protocol import AgentRequest, AgentResponse, BaseAgent

XP_PER_CONVERSION = 200
RECENT_REFERRALS = 10


def referral_code_for(tutor_id: str) -> str:
    return f"TUTOR-{tutor_id[:8].upper()}"


def share_links(url: str) -> Dict[str, str]:
    return {
        "direct": url,
        "whatsapp": "https://wa.me/?text=" + quote(f"Check out Varsity Tutors! {url}", safe=""),
        "sms": "sms:?body=" + quote(f"Check out Varsity Tutors: {url}", safe=""),
        "email": "mailto:?subject={}&body={}".format(
            quote("Try Varsity Tutors", safe=""),
            quote(f"I recommend trying Varsity Tutors! {url}", safe=""),
        ),
    }


@dataclass(slots=True)
class Referral:
    user_id: str
    referral_code: str
    created_at: datetime
    converted: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "referral_code": self.referral_code,
            "converted": self.converted,
            "timestamp": self.created_at.isoformat(),
        }


class AdvocacyAgent(BaseAgent):
    name = "advocacy"
    actions = {
        "generate_share_pack": "generate_share_pack",
        "track_referral": "track_referral",
        "get_referral_stats": "get_referral_stats",
    }

    def __init__(
        self,
        links: AttributionLinkService,
        *,
        clock: Callable[[], datetime] | None = None,
        max_latency_ms: int | None = None,
    ) -> None:
        super().__init__(max_latency_ms=max_latency_ms)
        self._links = links
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._referrals: Dict[str, List[Referral]] = {}

    async def generate_share_pack(self, request: AgentRequest) -> AgentResponse:
        ctx = request.context
        tutor_id = request.user_id
        subject: Optional[str] = ctx.get("subject")
        referral_code = ctx.get("referral_code") or referral_code_for(tutor_id)
        base = self._links.base_url

        link = await self._links.generate_link(
            LinkConfig(
                user_id=tutor_id,
                loop_id=ViralLoop.TUTOR_SPOTLIGHT,
                persona=Persona.TUTOR,
                fvm_type=FvmType.SESSION,
                cohort=ctx.get("cohort"),
                context=LinkContext(subject=subject),
                utm=UtmParams(
                    source="tutor_referral",
                    medium="referral",
                    campaign=ViralLoop.TUTOR_SPOTLIGHT.value,
                    term=referral_code,
                ),
            )
        )

        class_sampler = None
        if ctx.get("class_sampler"):
            class_sampler = f"{base}/class-sampler?" + urlencode({"ref": referral_code, "subject": subject or ""})
        prep_pack = None
        session_id = ctx.get("session_id")
        if ctx.get("prep_pack") and session_id:
            prep_pack = f"{base}/prep-pack/{session_id}?" + urlencode({"ref": referral_code})

        channels = share_links(link.full_url)
        pack = {
            "pack_id": str(uuid.uuid4()),
            "tutor_id": tutor_id,
            "short_code": link.short_code,
            "share_links": channels,
            "thumbnail_url": f"{base}/tutor-thumbnail/{tutor_id}",
            "class_sampler_link": class_sampler,
            "prep_pack_link": prep_pack,
            "message": f"Try Varsity Tutors with tutor {tutor_id}! {link.full_url}",
            "referral_code": referral_code,
            "created_at": self._clock().isoformat(),
        }
        return self.ok(
            request,
            (
                f"Generated share pack for tutor {tutor_id} with referral code {referral_code}. "
                f"Includes {len(channels)} share channels."
            ),
            {"share_pack": pack, "referral_code": referral_code},
            features_used=["tutor_id", "smart_link_generation", "channel_generation", "referral_code"],
            confidence=0.95,
        )

    async def track_referral(self, request: AgentRequest) -> AgentResponse:
        ctx = request.context
        referral_code = ctx.get("referral_code")
        referred_user = ctx.get("referred_user_id")
        if not referral_code or not referred_user:
            return self.fail(request, ErrorCode.VALIDATION, "Referral code and referred user required")

        tutor_id = request.user_id
        referrals = self._referrals.setdefault(tutor_id, [])
        entry = next((r for r in referrals if r.user_id == referred_user), None)
        if entry is None:
            entry = Referral(referred_user, referral_code, self._clock())
            referrals.append(entry)
        if ctx.get("converted"):
            entry.converted = True

        return self.ok(
            request,
            f"Referral tracked for tutor {tutor_id} with code {referral_code}",
            {"referral_code": referral_code, "referral": entry.to_dict()},
            features_used=["referral_code", "tutor_id"],
            confidence=1.0,
        )

    async def get_referral_stats(self, request: AgentRequest) -> AgentResponse:
        tutor_id = request.user_id
        referrals = self._referrals.get(tutor_id, [])
        total = len(referrals)
        converted = sum(1 for r in referrals if r.converted)
        rate = converted / total if total else 0.0
        xp = converted * XP_PER_CONVERSION
        return self.ok(
            request,
            (
                f"Referral stats for tutor {tutor_id}: {total} total, {converted} converted "
                f"({rate * 100:.1f}%), {xp} XP earned"
            ),
            {
                "referral_stats": {
                    "total_referrals": total,
                    "converted_referrals": converted,
                    "conversion_rate": rate,
                    "total_xp": xp,
                    "recent_referrals": [r.to_dict() for r in referrals[-RECENT_REFERRALS:]],
                }
            },
            features_used=["tutor_id", "referral_tracking", "conversion_tracking"],
            confidence=0.9,
        )


__all__ = ["AdvocacyAgent", "Referral", "XP_PER_CONVERSION", "referral_code_for", "share_links"]
