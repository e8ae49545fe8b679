"""Attribution links: signed short codes that land invitees on a first value moment.

Every invite carries exactly one :class:`AttributionLink`.  The link record is
the only source of truth about who invited whom through which loop; loops and
the executor reconstruct attribution exclusively through
:meth:`AttributionLinkService.resolve`.
"""

from __future__ import annotations

import hashlib
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional
from urllib.parse import urlencode

from xfactor.config import settings
from xfactor.metrics import LINK_CLICKS
from xfactor.signing import short_code_for, sign_link, verify_link
from xfactor.storage import KeyValueStore
from xfactor.types import ErrorCode, FvmType, Persona, ViralLoop

from growth.events import utcnow

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

_LINK_KEY = "link:{code}"
_USER_LINKS_KEY = "user_links:{user_id}"
_CLICKS_KEY = "link_clicks:{code}"
_CLICK_COUNT_KEY = "link_click_count:{code}"

_FVM_PATHS = {
    FvmType.PRACTICE: "/practice/start",
    FvmType.AI_TUTOR: "/ai-tutor/start",
    FvmType.SESSION: "/session/book",
}

# Loops whose invites live shorter than the default window.
LOOP_EXPIRY_OVERRIDES: Dict[ViralLoop, timedelta] = {
    ViralLoop.BUDDY_CHALLENGE: timedelta(hours=48),
}

_MAX_CODE_ATTEMPTS = 8


class ShortCodeCollisionError(RuntimeError):
    pass


def fvm_path(fvm_type: FvmType, challenge_id: str | None = None) -> str:
    if fvm_type is FvmType.CHALLENGE:
        return f"/challenge/{challenge_id}" if challenge_id else "/challenge/start"
    return _FVM_PATHS[fvm_type]


@dataclass(slots=True)
class LinkContext:
    subject: Optional[str] = None
    skill: Optional[str] = None
    difficulty: Optional[str] = None
    challenge_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "subject": self.subject,
            "skill": self.skill,
            "difficulty": self.difficulty,
            "challenge_id": self.challenge_id,
        }


@dataclass(slots=True)
class UtmParams:
    source: Optional[str] = None
    medium: Optional[str] = None
    campaign: Optional[str] = None
    term: Optional[str] = None
    content: Optional[str] = None


@dataclass(slots=True)
class LinkConfig:
    """Input of :meth:`AttributionLinkService.generate_link`."""

    user_id: str
    loop_id: ViralLoop
    persona: Persona
    fvm_type: FvmType
    referrer_id: Optional[str] = None
    cohort: Optional[str] = None
    context: LinkContext = field(default_factory=LinkContext)
    utm: UtmParams = field(default_factory=UtmParams)
    expires_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        self.loop_id = ViralLoop(self.loop_id)
        self.persona = Persona(self.persona)
        self.fvm_type = FvmType(self.fvm_type)
        if not self.user_id:
            raise ValueError("link user_id must not be empty")


@dataclass(slots=True)
class LinkMetadata:
    link_id: str
    inviter_id: str
    loop_id: ViralLoop
    persona: Persona
    fvm_type: FvmType
    created_at: datetime
    cohort: str
    click_count: int = 0
    referrer_id: Optional[str] = None
    context: Dict[str, Optional[str]] = field(default_factory=dict)


@dataclass(slots=True)
class AttributionLink:
    short_code: str
    full_url: str
    deep_link: str
    signature: str
    expires_at: datetime
    metadata: LinkMetadata

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        meta = self.metadata
        return {
            "short_code": self.short_code,
            "full_url": self.full_url,
            "deep_link": self.deep_link,
            "signature": self.signature,
            "expires_at": self.expires_at.isoformat(),
            "metadata": {
                "link_id": meta.link_id,
                "inviter_id": meta.inviter_id,
                "referrer_id": meta.referrer_id,
                "loop_id": meta.loop_id.value,
                "persona": meta.persona.value,
                "fvm_type": meta.fvm_type.value,
                "created_at": meta.created_at.isoformat(),
                "cohort": meta.cohort,
                "click_count": meta.click_count,
                "context": dict(meta.context),
            },
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AttributionLink":
        meta = data["metadata"]
        return cls(
            short_code=str(data["short_code"]),
            full_url=str(data["full_url"]),
            deep_link=str(data["deep_link"]),
            signature=str(data["signature"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
            metadata=LinkMetadata(
                link_id=str(meta["link_id"]),
                inviter_id=str(meta["inviter_id"]),
                referrer_id=meta.get("referrer_id"),
                loop_id=ViralLoop(meta["loop_id"]),
                persona=Persona(meta["persona"]),
                fvm_type=FvmType(meta["fvm_type"]),
                created_at=datetime.fromisoformat(meta["created_at"]),
                cohort=str(meta["cohort"]),
                click_count=int(meta.get("click_count", 0)),
                context=dict(meta.get("context") or {}),
            ),
        )


@dataclass(slots=True)
class LinkResolution:
    """Outcome of resolving a short code; ``link`` is ``None`` on failure."""

    link: Optional[AttributionLink]
    error_code: Optional[ErrorCode] = None

    @property
    def ok(self) -> bool:
        return self.link is not None


@dataclass(slots=True)
class ClickMetadata:
    timestamp: Optional[datetime] = None
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    device_id: Optional[str] = None

    def fingerprint(self) -> str:
        raw = "|".join(
            [
                self.timestamp.isoformat() if self.timestamp else "",
                self.user_agent or "",
                self.ip_address or "",
                self.device_id or "",
            ]
        )
        return hashlib.sha1(raw.encode("utf-8")).hexdigest()


@dataclass(slots=True)
class LinkStats:
    clicks: int
    created_at: datetime
    expires_at: datetime
    tracked_clicks: int


class AttributionLinkService:
    def __init__(
        self,
        store: KeyValueStore,
        *,
        base_url: str | None = None,
        secret: str | None = None,
        clock: Clock | None = None,
        default_expiry: timedelta | None = None,
        loop_expiry: Mapping[ViralLoop, timedelta] | None = None,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self._store = store
        self._base_url = (base_url or settings.BASE_URL).rstrip("/")
        self._secret = secret
        self._clock = clock or utcnow
        self._default_expiry = default_expiry or timedelta(days=settings.LINK_DEFAULT_EXPIRY_DAYS)
        self._loop_expiry = dict(LOOP_EXPIRY_OVERRIDES if loop_expiry is None else loop_expiry)
        self._id_factory = id_factory or (lambda: str(uuid.uuid4()))

    @property
    def base_url(self) -> str:
        return self._base_url

    async def generate_link(self, config: LinkConfig) -> AttributionLink:
        now = self._clock()
        link_id, short_code = await self._allocate_code()
        signature = sign_link(link_id, config.user_id, config.loop_id.value, secret=self._secret)
        deep_link = self._build_deep_link(config, link_id, signature)
        full_url = self._build_full_url(config, deep_link)

        link = AttributionLink(
            short_code=short_code,
            full_url=full_url,
            deep_link=deep_link,
            signature=signature,
            expires_at=self._expiry_for(config, now),
            metadata=LinkMetadata(
                link_id=link_id,
                inviter_id=config.user_id,
                referrer_id=config.referrer_id,
                loop_id=config.loop_id,
                persona=config.persona,
                fvm_type=config.fvm_type,
                created_at=now,
                cohort=config.cohort or settings.DEFAULT_COHORT,
                context=config.context.to_dict(),
            ),
        )
        await self._save(link)

        index_key = _USER_LINKS_KEY.format(user_id=config.user_id)
        codes = await self._store.get(index_key) or []
        codes.append(short_code)
        await self._store.set(index_key, codes)

        logger.info(
            "link generated code=%s loop=%s inviter=%s fvm=%s",
            short_code,
            config.loop_id.value,
            config.user_id,
            config.fvm_type.value,
        )
        return link

    async def resolve(self, short_code: str) -> LinkResolution:
        """Resolve a short code, counting the resolution as a click.

        Expired links are evicted here; nothing sweeps them proactively.
        """

        link = await self._load(short_code)
        if link is None:
            LINK_CLICKS.labels("invalid").inc()
            return LinkResolution(None, ErrorCode.LINK_INVALID)

        if link.is_expired(self._clock()):
            await self._store.delete(_LINK_KEY.format(code=short_code))
            await self._store.delete(_CLICK_COUNT_KEY.format(code=short_code))
            LINK_CLICKS.labels("expired").inc()
            logger.info("link expired code=%s loop=%s", short_code, link.metadata.loop_id.value)
            return LinkResolution(None, ErrorCode.LINK_EXPIRED)

        if not self.verify_signature(link):
            LINK_CLICKS.labels("invalid").inc()
            logger.warning("link signature mismatch code=%s", short_code)
            return LinkResolution(None, ErrorCode.LINK_INVALID)

        link.metadata.click_count = await self._store.incr(_CLICK_COUNT_KEY.format(code=short_code))
        LINK_CLICKS.labels("resolved").inc()
        return LinkResolution(link)

    async def resolve_link(self, short_code: str) -> Optional[AttributionLink]:
        return (await self.resolve(short_code)).link

    def verify_signature(self, link: AttributionLink) -> bool:
        meta = link.metadata
        return verify_link(
            link.signature,
            meta.link_id,
            meta.inviter_id,
            meta.loop_id.value,
            secret=self._secret,
        )

    async def track_click(self, short_code: str, click: ClickMetadata | None = None) -> bool:
        """Record click telemetry for fraud signals.

        Does not count a click and does not grant attribution.  Recording the
        same click twice stores it once.
        """

        link = await self._load(short_code)
        if link is None or link.is_expired(self._clock()):
            return False

        click = click or ClickMetadata(timestamp=self._clock())
        key = _CLICKS_KEY.format(code=short_code)
        records: List[Dict[str, Any]] = await self._store.get(key) or []
        fingerprint = click.fingerprint()
        if any(record.get("id") == fingerprint for record in records):
            return True

        records.append(
            {
                "id": fingerprint,
                "timestamp": (click.timestamp or self._clock()).isoformat(),
                "user_agent": click.user_agent,
                "ip_address": click.ip_address,
                "device_id": click.device_id,
            }
        )
        await self._store.set(key, records)
        logger.info(
            "click tracked code=%s inviter=%s referrer=%s loop=%s device=%s",
            short_code,
            link.metadata.inviter_id,
            link.metadata.referrer_id,
            link.metadata.loop_id.value,
            click.device_id,
        )
        return True

    async def get_clicks(self, short_code: str) -> List[Dict[str, Any]]:
        return await self._store.get(_CLICKS_KEY.format(code=short_code)) or []

    async def get_link_stats(self, short_code: str) -> Optional[LinkStats]:
        link = await self._load(short_code)
        if link is None:
            return None
        clicks = await self.get_clicks(short_code)
        return LinkStats(
            clicks=link.metadata.click_count,
            created_at=link.metadata.created_at,
            expires_at=link.expires_at,
            tracked_clicks=len(clicks),
        )

    async def get_user_links(self, user_id: str) -> List[AttributionLink]:
        codes = await self._store.get(_USER_LINKS_KEY.format(user_id=user_id)) or []
        links: List[AttributionLink] = []
        for code in codes:
            link = await self._load(code)
            if link is not None:
                links.append(link)
        return links

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _allocate_code(self) -> tuple[str, str]:
        for _ in range(_MAX_CODE_ATTEMPTS):
            link_id = self._id_factory()
            short_code = short_code_for(link_id)
            if await self._store.get(_LINK_KEY.format(code=short_code)) is None:
                return link_id, short_code
            logger.warning("short code collision code=%s, regenerating", short_code)
        raise ShortCodeCollisionError("could not allocate a unique short code")

    def _expiry_for(self, config: LinkConfig, now: datetime) -> datetime:
        if config.expires_at is not None:
            return config.expires_at
        return now + self._loop_expiry.get(config.loop_id, self._default_expiry)

    async def _load(self, short_code: str) -> Optional[AttributionLink]:
        if not short_code:
            return None
        raw = await self._store.get(_LINK_KEY.format(code=short_code))
        if raw is None:
            return None
        link = AttributionLink.from_dict(raw)
        link.metadata.click_count = int(await self._store.get(_CLICK_COUNT_KEY.format(code=short_code)) or 0)
        return link

    async def _save(self, link: AttributionLink) -> None:
        await self._store.set(_LINK_KEY.format(code=link.short_code), link.to_dict())

    def _build_deep_link(self, config: LinkConfig, link_id: str, signature: str) -> str:
        params: Dict[str, str] = {
            "linkId": link_id,
            "sig": signature,
            "loop": config.loop_id.value,
            "persona": config.persona.value,
            "fvm": config.fvm_type.value,
        }
        ctx = config.context
        if ctx.subject:
            params["subject"] = ctx.subject
        if ctx.skill:
            params["skill"] = ctx.skill
        if ctx.difficulty:
            params["difficulty"] = ctx.difficulty
        if ctx.challenge_id:
            params["challenge"] = ctx.challenge_id
        path = fvm_path(config.fvm_type, ctx.challenge_id)
        return f"{self._base_url}{path}?{urlencode(params)}"

    def _build_full_url(self, config: LinkConfig, deep_link: str) -> str:
        utm = config.utm
        params: Dict[str, str] = {}
        if utm.source:
            params["utm_source"] = utm.source
        params["utm_medium"] = utm.medium or "referral"
        params["utm_campaign"] = utm.campaign or config.loop_id.value
        if utm.term:
            params["utm_term"] = utm.term
        if utm.content:
            params["utm_content"] = utm.content
        params["ref"] = config.user_id
        if config.referrer_id:
            params["referrer"] = config.referrer_id
        return f"{deep_link}&{urlencode(params)}"


__all__ = [
    "AttributionLink",
    "AttributionLinkService",
    "ClickMetadata",
    "LOOP_EXPIRY_OVERRIDES",
    "LinkConfig",
    "LinkContext",
    "LinkMetadata",
    "LinkResolution",
    "LinkStats",
    "ShortCodeCollisionError",
    "UtmParams",
    "fvm_path",
]
