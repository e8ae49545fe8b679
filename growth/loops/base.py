"""Shared vocabulary and behaviour of viral loop state machines."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, ClassVar, Dict, FrozenSet, Mapping, Optional

from xfactor.config import settings
from xfactor.storage import KeyValueStore
from xfactor.types import Channel, ErrorCode, FvmType, Persona, RewardType, ViralLoop

from growth.events import utcnow
from growth.links import (
    AttributionLink,
    AttributionLinkService,
    ClickMetadata,
    LinkConfig,
    LinkContext,
    UtmParams,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

_JOIN_KEY = "loop_join:{code}:{user_id}"
_FVM_KEY = "loop_fvm:{code}:{user_id}"


class InviteState(str, Enum):
    """Lifecycle of a single invite."""

    PENDING = "pending"
    INELIGIBLE = "ineligible"
    PERSONALIZATION_FAILED = "personalization_failed"
    INVITE_GENERATED = "invite_generated"
    JOINED = "joined"
    FVM_REACHED = "fvm_reached"
    EXPIRED = "expired"


def as_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(slots=True)
class LoopContext:
    """Who triggered a loop (or joined through one) and what we know about them.

    Loop-specific inputs (practice score, streak expiry, session rating...)
    travel in ``metadata`` under snake_case keys.
    """

    user_id: str
    persona: Persona
    subject: Optional[str] = None
    age: Optional[int] = None
    grade: Optional[str] = None
    cohort: Optional[str] = None
    referred: bool = False
    referrer_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.persona = Persona(self.persona)

    def get(self, key: str, default: Any = None) -> Any:
        value = self.metadata.get(key)
        return default if value is None else value

    @property
    def cohort_or_default(self) -> str:
        return self.cohort or settings.DEFAULT_COHORT


@dataclass(slots=True)
class Copy:
    headline: str
    body: str
    cta: str
    tone: str = "default"


@dataclass(slots=True)
class Reward:
    type: RewardType
    amount: float
    description: str

    def __post_init__(self) -> None:
        self.type = RewardType(self.type)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value, "amount": self.amount, "description": self.description}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Reward":
        return cls(
            type=RewardType(data["type"]),
            amount=data["amount"],
            description=str(data.get("description") or ""),
        )


@dataclass(slots=True)
class RewardConditions:
    fvm_required: bool = True
    time_window_hours: Optional[float] = None


@dataclass(slots=True)
class RewardPair:
    inviter: Reward
    invitee: Optional[Reward] = None
    conditions: Optional[RewardConditions] = None


@dataclass(slots=True)
class PersonalizationData:
    copy: Copy
    channel: Channel
    reward: Optional[Reward] = None
    variant: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PersonalizationData":
        copy = data["copy"]
        reward = data.get("reward")
        return cls(
            copy=Copy(
                headline=str(copy["headline"]),
                body=str(copy["body"]),
                cta=str(copy["cta"]),
                tone=str(copy.get("tone") or "default"),
            ),
            channel=Channel(data.get("channel") or Channel.IN_APP.value),
            reward=Reward.from_dict(reward) if reward else None,
            variant=data.get("variant"),
        )


@dataclass(slots=True)
class LoopInvite:
    invite_id: str
    short_code: str
    link: str
    message: str
    channel: Channel
    expires_at: Optional[datetime] = None
    invitee_id: Optional[str] = None


@dataclass(slots=True)
class LoopOutcome:
    """Result of a loop's join/FVM step; declines are not errors."""

    success: bool
    state: InviteState
    rationale: str
    error_code: Optional[ErrorCode] = None
    invite: Optional[LoopInvite] = None
    reward: Optional[RewardPair] = None
    # Set when the step had already been recorded; no telemetry is due.
    repeated: bool = False


class BaseLoop:
    """Common plumbing for loop state machines.

    Subclasses declare their identity and policy as class attributes and
    implement :meth:`check_eligibility`, :meth:`link_context` and
    :meth:`rewards`.
    """

    loop_id: ClassVar[ViralLoop]
    name: ClassVar[str]
    description: ClassVar[str] = ""
    supported_personas: ClassVar[FrozenSet[Persona]] = frozenset()
    fvm_type: ClassVar[FvmType] = FvmType.PRACTICE
    # How long after invite creation FVM still pays out; ``None`` means no
    # window beyond the link's own expiry.
    reward_window: ClassVar[Optional[timedelta]] = None
    requires_join: ClassVar[bool] = False
    join_message: ClassVar[str] = "Welcome aboard!"
    utm_source: ClassVar[str] = "viral_growth"

    def __init__(
        self,
        links: AttributionLinkService,
        store: KeyValueStore,
        *,
        clock: Clock | None = None,
    ) -> None:
        self._links = links
        self._store = store
        self._clock = clock or utcnow

    def now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # Eligibility and invites
    # ------------------------------------------------------------------

    async def is_eligible(self, context: LoopContext) -> bool:
        if context.persona not in self.supported_personas:
            return False
        return await self.check_eligibility(context)

    async def check_eligibility(self, context: LoopContext) -> bool:
        raise NotImplementedError

    def link_context(self, context: LoopContext) -> LinkContext:
        return LinkContext(subject=context.subject)

    def utm(self, context: LoopContext) -> UtmParams:
        return UtmParams(source=self.utm_source, medium="referral", campaign=self.loop_id.value)

    def link_expiry(self, context: LoopContext) -> Optional[datetime]:
        return None

    def message_prefix(self, context: LoopContext) -> str:
        return ""

    def message_suffix(self, context: LoopContext) -> str:
        return ""

    def invite_metadata(self, context: LoopContext) -> Dict[str, Any]:
        """Loop specific fields attached to the invite telemetry."""

        return {}

    def rewards(self) -> RewardPair:
        raise NotImplementedError

    def compose_message(self, context: LoopContext, personalization: PersonalizationData) -> str:
        copy = personalization.copy
        message = f"{copy.headline}\n\n{self.message_prefix(context)}{copy.body}\n\n{copy.cta}"
        return message + self.message_suffix(context)

    async def generate_invite(
        self, context: LoopContext, personalization: PersonalizationData
    ) -> LoopInvite:
        link = await self._links.generate_link(
            LinkConfig(
                user_id=context.user_id,
                loop_id=self.loop_id,
                persona=context.persona,
                fvm_type=self.fvm_type,
                referrer_id=context.referrer_id,
                cohort=context.cohort_or_default,
                context=self.link_context(context),
                utm=self.utm(context),
                expires_at=self.link_expiry(context),
            )
        )
        return LoopInvite(
            invite_id=str(uuid.uuid4()),
            short_code=link.short_code,
            link=link.full_url,
            message=self.compose_message(context, personalization),
            channel=personalization.channel,
            expires_at=link.expires_at,
        )

    # ------------------------------------------------------------------
    # Join / FVM
    # ------------------------------------------------------------------

    async def _attributed_link(
        self, short_code: str, link: Optional[AttributionLink]
    ) -> AttributionLink | LoopOutcome:
        if link is None:
            resolution = await self._links.resolve(short_code)
            if resolution.link is None:
                expired = resolution.error_code is ErrorCode.LINK_EXPIRED
                return LoopOutcome(
                    success=False,
                    state=InviteState.EXPIRED if expired else InviteState.PENDING,
                    rationale="Invite has expired" if expired else "Invalid invite code",
                    error_code=resolution.error_code,
                )
            link = resolution.link
        if link.metadata.loop_id is not self.loop_id:
            return LoopOutcome(
                success=False,
                state=InviteState.PENDING,
                rationale=f"Invite belongs to {link.metadata.loop_id.value}, not {self.loop_id.value}",
                error_code=ErrorCode.LINK_INVALID,
            )
        if link.is_expired(self.now()):
            return LoopOutcome(
                success=False,
                state=InviteState.EXPIRED,
                rationale="Invite has expired",
                error_code=ErrorCode.LINK_EXPIRED,
            )
        return link

    async def has_joined(self, short_code: str, user_id: str) -> bool:
        return await self._store.get(_JOIN_KEY.format(code=short_code, user_id=user_id)) is not None

    async def process_join(
        self,
        short_code: str,
        invitee: LoopContext,
        link: Optional[AttributionLink] = None,
    ) -> LoopOutcome:
        attributed = await self._attributed_link(short_code, link)
        if isinstance(attributed, LoopOutcome):
            return attributed
        link = attributed

        if invitee.user_id == link.metadata.inviter_id:
            return LoopOutcome(
                success=False,
                state=InviteState.INVITE_GENERATED,
                rationale="Inviters cannot join through their own invite",
                error_code=ErrorCode.INELIGIBLE,
            )

        now = self.now()
        first_join = await self._store.set_if_absent(
            _JOIN_KEY.format(code=short_code, user_id=invitee.user_id),
            {"joined_at": now.isoformat(), "loop_id": self.loop_id.value},
        )
        if first_join:
            await self._links.track_click(
                short_code,
                ClickMetadata(
                    timestamp=now,
                    device_id=invitee.get("device_id", invitee.user_id),
                    user_agent=invitee.get("user_agent"),
                    ip_address=invitee.get("ip_address"),
                ),
            )
        return LoopOutcome(
            success=True,
            state=InviteState.JOINED,
            rationale=(
                f"Invitee successfully joined {self.name}" if first_join else f"Invitee already joined {self.name}"
            ),
            repeated=not first_join,
            invite=LoopInvite(
                invite_id=link.metadata.link_id,
                short_code=short_code,
                link=link.deep_link,
                message=self.join_message,
                channel=Channel.IN_APP,
                expires_at=link.expires_at,
                invitee_id=invitee.user_id,
            ),
        )

    async def process_fvm(
        self,
        short_code: str,
        invitee: LoopContext,
        link: Optional[AttributionLink] = None,
    ) -> LoopOutcome:
        attributed = await self._attributed_link(short_code, link)
        if isinstance(attributed, LoopOutcome):
            return attributed
        link = attributed

        if invitee.user_id == link.metadata.inviter_id:
            return LoopOutcome(
                success=False,
                state=InviteState.INVITE_GENERATED,
                rationale="Inviters cannot reward themselves",
                error_code=ErrorCode.INELIGIBLE,
            )

        now = self.now()
        if self.reward_window is not None and now - link.metadata.created_at > self.reward_window:
            return LoopOutcome(
                success=False,
                state=InviteState.EXPIRED,
                rationale=f"FVM conditions not met: outside the {self._window_hours():g}h reward window",
            )

        joined = await self.has_joined(short_code, invitee.user_id)
        if self.requires_join and not joined:
            return LoopOutcome(
                success=False,
                state=InviteState.INVITE_GENERATED,
                rationale="FVM conditions not met: invitee has not joined through this invite",
            )

        fvm_key = _FVM_KEY.format(code=short_code, user_id=invitee.user_id)
        if not await self._store.set_if_absent(fvm_key, {"reached_at": now.isoformat(), "loop_id": self.loop_id.value}):
            return LoopOutcome(
                success=False,
                state=InviteState.FVM_REACHED,
                rationale="FVM already rewarded for this invitee",
            )

        return LoopOutcome(
            success=True,
            state=InviteState.FVM_REACHED,
            rationale=f"FVM achieved for {self.name}, rewards allocated",
            reward=self.rewards(),
        )

    def _window_hours(self) -> float:
        if self.reward_window is None:
            return 0.0
        return self.reward_window.total_seconds() / 3600


__all__ = [
    "BaseLoop",
    "Copy",
    "InviteState",
    "LoopContext",
    "LoopInvite",
    "LoopOutcome",
    "PersonalizationData",
    "Reward",
    "RewardConditions",
    "RewardPair",
    "as_datetime",
]
