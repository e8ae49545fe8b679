"""A/B allocation and growth measurement agent."""

from __future__ import annotations

import hashlib
from datetime import datetime
from typing import Any, Mapping, Optional

from growth.analytics import AnalyticsEngine, TimeRange, metrics_to_dict
from growth.events import EventBus, InvalidEventError
from xfactor.config import settings
from xfactor.storage import InMemoryKeyValueStore, KeyValueStore
from xfactor.types import ErrorCode, EventType

from .protocol import AgentRequest, AgentResponse, BaseAgent

CONTROL = "control"
TREATMENT = "treatment"
DEFAULT_EXPERIMENT = "default"


def hash_allocate(experiment_id: str, user_id: str, treatment_share: float) -> str:
    seed = f"{experiment_id}:{user_id}".encode("utf-8")
    digest = hashlib.sha1(seed).digest()
    value = int.from_bytes(digest[:8], "big") / float(1 << 64)
    return TREATMENT if value < treatment_share else CONTROL


def _parse_time_range(raw: Any) -> Optional[TimeRange]:
    if not raw:
        return None
    if isinstance(raw, TimeRange):
        return raw

    def _ts(value: Any) -> datetime:
        if isinstance(value, datetime):
            return value
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))

    return TimeRange(_ts(raw["start"]), _ts(raw["end"]))


class ExperimentationAgent(BaseAgent):
    name = "experimentation"
    actions = {
        "allocate": "allocate",
        "log_event": "log_event",
        "calculate_k": "calculate_k",
        "check_guardrails": "check_guardrails",
    }

    def __init__(
        self,
        bus: EventBus,
        analytics: AnalyticsEngine,
        *,
        store: KeyValueStore | None = None,
        treatment_share: float | None = None,
        max_latency_ms: int | None = None,
    ) -> None:
        super().__init__(max_latency_ms=max_latency_ms)
        self._bus = bus
        self._analytics = analytics
        self._store = store if store is not None else InMemoryKeyValueStore()
        self.treatment_share = (
            settings.EXPERIMENT_TREATMENT_SHARE if treatment_share is None else treatment_share
        )

    async def allocate(self, request: AgentRequest) -> AgentResponse:
        experiment_id = request.context.get("experiment_id") or DEFAULT_EXPERIMENT
        key = f"experiment:{experiment_id}:{request.user_id}"
        existing = await self._store.get(key)
        if existing:
            return self.ok(
                request,
                f"User already allocated to {existing} in experiment {experiment_id}",
                {"variant": existing, "experiment_id": experiment_id},
                features_used=["user_id", "experiment_id", "existing_allocation"],
                confidence=1.0,
            )

        variant = hash_allocate(experiment_id, request.user_id, self.treatment_share)
        await self._store.set(key, variant)
        return self.ok(
            request,
            f"Allocated user to {variant} group in experiment {experiment_id}",
            {"variant": variant, "experiment_id": experiment_id},
            features_used=["user_id", "experiment_id", "hash_allocation"],
            confidence=1.0,
        )

    async def log_event(self, request: AgentRequest) -> AgentResponse:
        raw = request.context.get("event")
        if not isinstance(raw, Mapping):
            return self.fail(request, ErrorCode.VALIDATION, "Event data is required")
        if "cohort" not in raw or "referred" not in raw:
            return self.fail(request, ErrorCode.VALIDATION, "Event cohort and referred flag are required")
        try:
            event_type = EventType(raw.get("event_type"))
            event = self._bus.emit(
                event_type,
                raw.get("user_id") or request.user_id,
                cohort=raw["cohort"],
                referred=raw["referred"],
                metadata={**(raw.get("metadata") or {}), "request_id": request.request_id},
            )
        except (ValueError, InvalidEventError) as exc:
            return self.fail(request, ErrorCode.VALIDATION, str(exc), rationale="Event rejected")

        return self.ok(
            request,
            f"Logged event {event.event_type.value} for user {event.user_id}",
            features_used=["event_type", "user_id", "timestamp"],
            confidence=1.0,
        )

    async def calculate_k(self, request: AgentRequest) -> AgentResponse:
        cohort = request.context.get("cohort") or settings.DEFAULT_COHORT
        try:
            time_range = _parse_time_range(request.context.get("time_range"))
        except (KeyError, ValueError) as exc:
            return self.fail(request, ErrorCode.VALIDATION, f"Invalid time range: {exc}")

        metrics = self._analytics.calculate_k_factor(cohort, time_range)
        rationale = (
            f"K-factor calculated: {metrics.k_factor:.2f} (target: {self._analytics.k_factor_target}). "
            f"Invites/user: {metrics.invites_per_user:.2f}, Conversion: {metrics.conversion_rate * 100:.1f}%"
        )
        return self.ok(
            request,
            rationale,
            {"k_factor": metrics.k_factor, "metrics": metrics_to_dict(metrics)},
            features_used=["invite_events", "fvm_events", "cohort_filter", "time_range"],
            confidence=0.85,
        )

    async def check_guardrails(self, request: AgentRequest) -> AgentResponse:
        try:
            time_range = _parse_time_range(request.context.get("time_range"))
        except (KeyError, ValueError) as exc:
            return self.fail(request, ErrorCode.VALIDATION, f"Invalid time range: {exc}")

        guardrails = self._analytics.get_guardrail_metrics(time_range)
        rationale = (
            f"Guardrails checked: {'HEALTHY' if guardrails.healthy else 'VIOLATED'}. "
            f"Complaint: {guardrails.complaint_rate * 100:.2f}%, Opt-out: {guardrails.opt_out_rate * 100:.2f}%, "
            f"Fraud: {guardrails.fraud_rate * 100:.2f}%, Support: {guardrails.support_tickets}"
        )
        return self.ok(
            request,
            rationale,
            {"guardrails": metrics_to_dict(guardrails)},
            features_used=["complaint_events", "opt_out_events", "fraud_events", "support_events", "time_range"],
            confidence=0.9,
        )


__all__ = ["CONTROL", "ExperimentationAgent", "TREATMENT", "hash_allocate"]
