"""Fraud scoring, PII redaction, duplicate detection and invite rate limits."""

from __future__ import annotations

import logging
import math
import re
import uuid
from collections import deque
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Deque, Dict, List, Optional, Set

from xfactor.config import settings
from xfactor.types import ErrorCode

from .protocol import AgentRequest, AgentResponse, BaseAgent

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("audit")

EMAIL_RE = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")
PHONE_RE = re.compile(r"\b\d{3}-\d{3}-\d{4}\b")
NAME_RE = re.compile(r"\b[A-Z][a-z]+ [A-Z][a-z]+\b")
SSN_RE = re.compile(r"\b\d{3}-\d{2}-\d{4}\b")

HOUR = timedelta(hours=1)
DAY = timedelta(hours=24)


def redact(content: str, age: int | None, *, min_age: int | None = None) -> str:
    """Mask PII in free text; children under the COPPA age get full masking."""

    threshold = settings.TS_MIN_AGE_COPPA if min_age is None else min_age
    if age is not None and age < threshold:
        content = EMAIL_RE.sub("[EMAIL]", content)
        content = PHONE_RE.sub("[PHONE]", content)
        return NAME_RE.sub("[NAME]", content)
    return SSN_RE.sub("[SSN]", content)


@dataclass(slots=True)
class AbuseReport:
    report_id: str
    user_id: str
    reason: str
    created_at: datetime
    resolved: bool = False


class TrustSafetyAgent(BaseAgent):
    name = "trust_safety"
    actions = {
        "check_fraud": "check_fraud",
        "redact_pii": "redact_pii",
        "check_duplicate": "check_duplicate",
        "rate_limit": "rate_limit",
        "report": "report",
        "undo": "undo",
    }
    default_action = "check_fraud"

    def __init__(
        self,
        *,
        clock: Callable[[], datetime] | None = None,
        max_invites_per_hour: int | None = None,
        max_invites_per_day: int | None = None,
        fraud_threshold: int | None = None,
        max_latency_ms: int | None = None,
    ) -> None:
        super().__init__(max_latency_ms=max_latency_ms)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.max_invites_per_hour = max_invites_per_hour or settings.TS_MAX_INVITES_PER_HOUR
        self.max_invites_per_day = max_invites_per_day or settings.TS_MAX_INVITES_PER_DAY
        self.fraud_threshold = fraud_threshold or settings.TS_FRAUD_SCORE_THRESHOLD
        self._device_users: Dict[str, Set[str]] = {}
        self._email_users: Dict[str, Set[str]] = {}
        self._invites: Dict[str, Deque[datetime]] = {}
        self._reports: Dict[str, AbuseReport] = {}

    async def check_fraud(self, request: AgentRequest) -> AgentResponse:
        ctx = request.context
        score = 0
        reasons: List[str] = []

        device_id = ctx.get("device_id")
        if device_id:
            accounts = len(self._device_users.get(device_id, ()))
            if accounts > 3:
                score += 30
                reasons.append(f"Device used by {accounts} accounts")

        email = ctx.get("email")
        if email:
            accounts = len(self._email_users.get(email.lower(), ()))
            if accounts > 1:
                score += 40
                reasons.append(f"Email used by {accounts} accounts")

        if len(self._window(request.user_id, DAY)) >= self.max_invites_per_day:
            score += 20
            reasons.append("Daily invite limit reached")

        reason = "; ".join(reasons) or None
        data = {"allowed": score < self.fraud_threshold, "risk_score": score, "reason": reason}
        if score >= self.fraud_threshold:
            logger.warning("fraud suspected for user %s: score=%s %s", request.user_id, score, reason)
            return self.fail(
                request,
                ErrorCode.ABUSE_DETECTED,
                reason or "fraud suspected",
                rationale=f"Fraud detected: {reason}",
                data=data,
            )
        return self.ok(
            request,
            "No fraud patterns detected",
            data,
            features_used=["device_id", "email", "rate_limits", "duplicate_detection"],
            confidence=0.85,
        )

    async def redact_pii(self, request: AgentRequest) -> AgentResponse:
        content = request.context.get("content")
        if not content:
            return self.fail(request, ErrorCode.VALIDATION, "Content required for redaction")
        age = request.context.get("age")
        coppa = age is not None and age < settings.TS_MIN_AGE_COPPA
        return self.ok(
            request,
            "PII redaction completed. "
            + ("COPPA-compliant redaction applied." if coppa else "Standard redaction applied."),
            {"redacted_content": redact(content, age)},
            features_used=["content", "age", "coppa_compliance"],
            confidence=0.9,
        )

    async def check_duplicate(self, request: AgentRequest) -> AgentResponse:
        user_id = request.user_id
        email = (request.context.get("email") or "").lower() or None
        device_id = request.context.get("device_id")
        reasons: List[str] = []

        for label, value, index in (("Email", email, self._email_users), ("Device", device_id, self._device_users)):
            if not value:
                continue
            owners = index.setdefault(value, set())
            if owners and user_id not in owners:
                reasons.append(f"{label} already used by {len(owners)} account(s)")
            owners.add(user_id)

        duplicate = bool(reasons)
        if duplicate:
            logger.info("duplicate account signal for %s: %s", user_id, "; ".join(reasons))
        return self.ok(
            request,
            f"Duplicate detected: {'; '.join(reasons)}" if duplicate else "No duplicate accounts detected",
            {"duplicate_detected": duplicate, "reason": "; ".join(reasons) or None},
            features_used=["email", "device_id", "duplicate_detection"],
            confidence=0.95,
        )

    async def rate_limit(self, request: AgentRequest) -> AgentResponse:
        now = self._clock()
        day = self._window(request.user_id, DAY)
        hour = [stamp for stamp in day if now - stamp < HOUR]

        retry_after: Optional[int] = None
        reason = None
        if len(hour) >= self.max_invites_per_hour:
            retry_after = math.ceil((hour[0] + HOUR - now).total_seconds())
            reason = f"Hourly invite limit reached ({self.max_invites_per_hour})"
        if len(day) >= self.max_invites_per_day:
            retry_after = max(retry_after or 0, math.ceil((day[0] + DAY - now).total_seconds()))
            reason = f"Daily invite limit reached ({self.max_invites_per_day})"

        if reason is not None:
            return self.fail(
                request,
                ErrorCode.RATE_LIMITED,
                reason,
                rationale=f"Rate limit reached. Retry after {retry_after} seconds.",
                data={"allowed": False, "rate_limited": True, "retry_after": retry_after},
            )

        day.append(now)
        return self.ok(
            request,
            f"Rate limit OK. {len(day)}/{self.max_invites_per_day} invites today.",
            {"allowed": True, "rate_limited": False, "retry_after": None},
            features_used=["user_id", "rate_limits", "time_tracking"],
            confidence=1.0,
        )

    async def report(self, request: AgentRequest) -> AgentResponse:
        reason = request.context.get("action_type") or "abuse_reported"
        entry = AbuseReport(str(uuid.uuid4()), request.user_id, reason, self._clock())
        self._reports[entry.report_id] = entry
        audit_logger.info("report filed: id=%s user=%s reason=%s", entry.report_id, entry.user_id, reason)
        return self.ok(
            request,
            f"Abuse report filed: {entry.report_id}. Reason: {reason}",
            {"report_id": entry.report_id, "reason": reason},
            features_used=["user_id", "report_type"],
            confidence=1.0,
        )

    async def undo(self, request: AgentRequest) -> AgentResponse:
        report_id = request.context.get("report_id")
        if not report_id:
            return self.fail(request, ErrorCode.VALIDATION, "Report ID required")
        entry = self._reports.get(report_id)
        if entry is None:
            return self.fail(request, ErrorCode.NOT_FOUND, f"Report {report_id} not found")
        entry.resolved = True
        audit_logger.info("report resolved: id=%s by=%s", report_id, request.user_id)
        return self.ok(
            request,
            f"Action undone for report {report_id}",
            {"report": {**asdict(entry), "created_at": entry.created_at.isoformat()}},
            features_used=["report_id"],
            confidence=1.0,
        )

    def get_report(self, report_id: str) -> Optional[AbuseReport]:
        return self._reports.get(report_id)

    def _window(self, user_id: str, span: timedelta) -> Deque[datetime]:
        stamps = self._invites.setdefault(user_id, deque())
        now = self._clock()
        while stamps and now - stamps[0] >= span:
            stamps.popleft()
        return stamps


__all__ = ["AbuseReport", "TrustSafetyAgent", "redact"]
