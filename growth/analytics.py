"""Derived growth metrics over the viral event log.

Every method is a pure read over :class:`growth.events.EventLog`; results are
recomputed on demand and nothing is cached or mutated.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from xfactor.config import settings
from xfactor.types import EventType

from .events import EventLog, ViralEvent, utcnow

RETENTION_DAYS = (1, 7, 28)


@dataclass(frozen=True, slots=True)
class TimeRange:
    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.end < self.start:
            raise ValueError("time range end precedes start")

    def to_dict(self) -> Dict[str, str]:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}


@dataclass(slots=True)
class KFactorMetrics:
    cohort: str
    invites_per_user: float
    conversion_rate: float
    k_factor: float
    target_met: bool
    time_range: TimeRange
    total_invites: int = 0
    unique_inviters: int = 0
    total_fvm: int = 0


@dataclass(slots=True)
class LoopMetrics:
    loop_id: str
    total_invites: int
    total_opens: int
    total_joins: int
    total_fvm: int
    conversion_rate: float
    time_range: TimeRange


@dataclass(slots=True)
class GuardrailMetrics:
    complaint_rate: float
    opt_out_rate: float
    fraud_rate: float
    support_tickets: int
    healthy: bool
    time_range: TimeRange
    total_events: int = 0


@dataclass(slots=True)
class CohortGroupMetrics:
    total_users: int
    fvm_rate: float
    d1_retention: float
    d7_retention: float
    d28_retention: float


@dataclass(slots=True)
class CohortAnalysis:
    cohort: str
    referred: CohortGroupMetrics
    baseline: CohortGroupMetrics
    uplift: Dict[str, float]
    time_range: TimeRange


def metrics_to_dict(metrics) -> Dict[str, object]:
    """Serialise any metrics dataclass with ISO timestamps."""

    payload = asdict(metrics)
    time_range = getattr(metrics, "time_range", None)
    if isinstance(time_range, TimeRange):
        payload["time_range"] = time_range.to_dict()
    return payload


def _ratio(numerator: float, denominator: float) -> float:
    return numerator / denominator if denominator > 0 else 0.0


class AnalyticsEngine:
    def __init__(
        self,
        log: EventLog,
        *,
        clock: Callable[[], datetime] | None = None,
        k_factor_target: float | None = None,
        complaint_threshold: float | None = None,
        opt_out_threshold: float | None = None,
        fraud_threshold: float | None = None,
        support_ticket_threshold: int | None = None,
    ) -> None:
        self._log = log
        self._clock = clock or utcnow
        self.k_factor_target = settings.K_FACTOR_TARGET if k_factor_target is None else k_factor_target
        self.complaint_threshold = (
            settings.GUARDRAIL_COMPLAINT_RATE if complaint_threshold is None else complaint_threshold
        )
        self.opt_out_threshold = settings.GUARDRAIL_OPT_OUT_RATE if opt_out_threshold is None else opt_out_threshold
        self.fraud_threshold = settings.GUARDRAIL_FRAUD_RATE if fraud_threshold is None else fraud_threshold
        self.support_ticket_threshold = (
            settings.GUARDRAIL_SUPPORT_TICKETS if support_ticket_threshold is None else support_ticket_threshold
        )

    # ------------------------------------------------------------------
    # Headline metrics
    # ------------------------------------------------------------------

    def calculate_k_factor(self, cohort: str, time_range: TimeRange | None = None) -> KFactorMetrics:
        events = self._window(time_range)
        invites = [e for e in events if e.cohort == cohort and e.event_type is EventType.INVITE_SENT]
        fvm = [e for e in events if e.cohort == cohort and e.event_type is EventType.FVM_REACHED]

        inviters = {e.user_id for e in invites}
        invites_per_user = _ratio(len(invites), len(inviters))
        # FVM of invites sent before the window can land inside it.
        conversion_rate = min(_ratio(len(fvm), len(invites)), 1.0)
        k_factor = invites_per_user * conversion_rate

        return KFactorMetrics(
            cohort=cohort,
            invites_per_user=invites_per_user,
            conversion_rate=conversion_rate,
            k_factor=k_factor,
            target_met=k_factor >= self.k_factor_target,
            time_range=time_range or self._observed_range(events),
            total_invites=len(invites),
            unique_inviters=len(inviters),
            total_fvm=len(fvm),
        )

    def get_loop_metrics(self, loop_id: str, time_range: TimeRange | None = None) -> LoopMetrics:
        loop_id = getattr(loop_id, "value", loop_id)
        events = [e for e in self._window(time_range) if e.loop_id == loop_id]
        counts = self._count_by_type(events)
        invites = counts.get(EventType.INVITE_SENT, 0)
        fvm = counts.get(EventType.FVM_REACHED, 0)
        return LoopMetrics(
            loop_id=loop_id,
            total_invites=invites,
            total_opens=counts.get(EventType.INVITE_OPENED, 0),
            total_joins=counts.get(EventType.ACCOUNT_CREATED, 0),
            total_fvm=fvm,
            conversion_rate=min(_ratio(fvm, invites), 1.0),
            time_range=time_range or self._observed_range(events),
        )

    def get_all_loop_metrics(self, time_range: TimeRange | None = None) -> List[LoopMetrics]:
        loop_ids: Dict[str, None] = {}
        for event in self._window(time_range):
            if event.loop_id:
                loop_ids.setdefault(event.loop_id, None)
        return [self.get_loop_metrics(loop_id, time_range) for loop_id in loop_ids]

    def get_guardrail_metrics(self, time_range: TimeRange | None = None) -> GuardrailMetrics:
        events = self._window(time_range)
        total = len(events)
        counts = self._count_by_type(events)

        complaint_rate = _ratio(counts.get(EventType.COMPLAINT_FILED, 0), total)
        opt_out_rate = _ratio(counts.get(EventType.OPT_OUT, 0), total)
        fraud_rate = _ratio(counts.get(EventType.FRAUD_DETECTED, 0), total)
        support = counts.get(EventType.SUPPORT_TICKET, 0)

        healthy = (
            complaint_rate <= self.complaint_threshold
            and opt_out_rate <= self.opt_out_threshold
            and fraud_rate <= self.fraud_threshold
            and support <= self.support_ticket_threshold
        )
        return GuardrailMetrics(
            complaint_rate=complaint_rate,
            opt_out_rate=opt_out_rate,
            fraud_rate=fraud_rate,
            support_tickets=support,
            healthy=healthy,
            time_range=time_range or self._observed_range(events),
            total_events=total,
        )

    def get_cohort_analysis(self, cohort: str, time_range: TimeRange | None = None) -> CohortAnalysis:
        events = [e for e in self._window(time_range) if e.cohort == cohort]
        referred = self._group_metrics([e for e in events if e.referred])
        baseline = self._group_metrics([e for e in events if not e.referred])
        return CohortAnalysis(
            cohort=cohort,
            referred=referred,
            baseline=baseline,
            uplift={
                "fvm": referred.fvm_rate - baseline.fvm_rate,
                "d1": referred.d1_retention - baseline.d1_retention,
                "d7": referred.d7_retention - baseline.d7_retention,
                "d28": referred.d28_retention - baseline.d28_retention,
            },
            time_range=time_range or self._observed_range(events),
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _window(self, time_range: TimeRange | None) -> List[ViralEvent]:
        if time_range is None:
            return list(self._log)
        return self._log.select(since=time_range.start, until=time_range.end)

    def _observed_range(self, events: Sequence[ViralEvent]) -> TimeRange:
        if not events:
            now = self._clock()
            return TimeRange(now, now)
        stamps = [e.timestamp for e in events]
        return TimeRange(min(stamps), max(stamps))

    @staticmethod
    def _count_by_type(events: Iterable[ViralEvent]) -> Dict[EventType, int]:
        counts: Dict[EventType, int] = {}
        for event in events:
            counts[event.event_type] = counts.get(event.event_type, 0) + 1
        return counts

    @staticmethod
    def _group_metrics(events: Sequence[ViralEvent]) -> CohortGroupMetrics:
        first_seen: Dict[str, datetime] = {}
        last_active: Dict[str, datetime] = {}
        fvm_users = set()
        for event in events:
            seen = first_seen.get(event.user_id)
            if seen is None or event.timestamp < seen:
                first_seen[event.user_id] = event.timestamp
            if event.event_type is EventType.FVM_REACHED:
                fvm_users.add(event.user_id)
            if event.event_type is EventType.ACTIVE_DAY:
                latest = last_active.get(event.user_id)
                if latest is None or event.timestamp > latest:
                    last_active[event.user_id] = event.timestamp

        total = len(first_seen)

        def retention(days: int) -> float:
            # Retained at dN: active again at least N days after first contact.
            horizon = timedelta(days=days)
            retained = sum(
                1
                for user_id, active_at in last_active.items()
                if active_at - first_seen[user_id] >= horizon
            )
            return _ratio(retained, total)

        d1, d7, d28 = (retention(days) for days in RETENTION_DAYS)
        return CohortGroupMetrics(
            total_users=total,
            fvm_rate=_ratio(len(fvm_users), total),
            d1_retention=d1,
            d7_retention=d7,
            d28_retention=d28,
        )


__all__ = [
    "AnalyticsEngine",
    "CohortAnalysis",
    "CohortGroupMetrics",
    "GuardrailMetrics",
    "KFactorMetrics",
    "LoopMetrics",
    "TimeRange",
    "metrics_to_dict",
]
