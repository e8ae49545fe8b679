"""Request/response contract shared by every capability agent."""

from __future__ import annotations

import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, ClassVar, Dict, List, Mapping, Optional, Protocol

from xfactor.config import settings
from xfactor.types import ErrorCode

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_ts(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if value:
        return datetime.fromisoformat(str(value))
    return _utcnow()


@dataclass(slots=True)
class AgentRequest:
    """Envelope sent to an agent.

    ``action`` selects the operation on multi-action agents; ``context``
    carries the action-specific fields.
    """

    agent_id: str
    user_id: str
    action: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=_utcnow)

    def missing_fields(self) -> List[str]:
        missing = []
        for name in ("agent_id", "request_id", "user_id"):
            if not getattr(self, name):
                missing.append(name)
        if self.timestamp is None:
            missing.append("timestamp")
        return missing

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "request_id": self.request_id,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "user_id": self.user_id,
            "action": self.action,
            "context": self.context,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, default=str)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AgentRequest":
        return cls(
            agent_id=str(data.get("agent_id") or ""),
            user_id=str(data.get("user_id") or ""),
            action=data.get("action"),
            context=dict(data.get("context") or {}),
            request_id=str(data.get("request_id") or uuid.uuid4()),
            timestamp=_parse_ts(data.get("timestamp")),
        )


@dataclass(slots=True)
class AgentError:
    code: ErrorCode
    message: str

    def __post_init__(self) -> None:
        if not isinstance(self.code, ErrorCode):
            self.code = ErrorCode(self.code)


@dataclass(slots=True)
class AgentResponse:
    request_id: str
    success: bool
    rationale: str
    data: Any = None
    error: Optional[AgentError] = None
    latency_ms: float = 0.0
    timestamp: datetime = field(default_factory=_utcnow)
    features_used: List[str] = field(default_factory=list)
    confidence: Optional[float] = None

    @property
    def error_code(self) -> Optional[ErrorCode]:
        return self.error.code if self.error else None

    @property
    def degraded(self) -> bool:
        return self.error_code is ErrorCode.AGENT_UNAVAILABLE

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "request_id": self.request_id,
            "timestamp": self.timestamp.isoformat(),
            "success": self.success,
            "rationale": self.rationale,
            "data": self.data,
            "latency_ms": self.latency_ms,
            "features_used": list(self.features_used),
            "confidence": self.confidence,
        }
        if self.error is not None:
            payload["error"] = {"code": self.error.code.value, "message": self.error.message}
        return payload

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AgentResponse":
        if "request_id" not in data or "success" not in data:
            raise ValueError("agent response is missing request_id/success")
        raw_error = data.get("error")
        error = None
        if raw_error:
            error = AgentError(ErrorCode(raw_error["code"]), str(raw_error.get("message", "")))
        return cls(
            request_id=str(data["request_id"]),
            success=bool(data["success"]),
            rationale=str(data.get("rationale") or ""),
            data=data.get("data"),
            error=error,
            latency_ms=float(data.get("latency_ms") or 0.0),
            timestamp=_parse_ts(data.get("timestamp")),
            features_used=list(data.get("features_used") or []),
            confidence=data.get("confidence"),
        )


@dataclass(slots=True)
class HealthProbe:
    healthy: bool
    latency_ms: float


class AgentHandler(Protocol):
    """Anything the communication layer can route requests to."""

    async def handle(self, request: AgentRequest) -> AgentResponse:
        ...

    async def health_check(self) -> HealthProbe:
        ...


ActionHandler = Callable[[AgentRequest], Awaitable[AgentResponse]]


class BaseAgent:
    """Base class for in-process capability agents.

    Subclasses either override :meth:`process` or declare ``actions`` mapping
    an action name to a coroutine method name.  :meth:`handle` is the
    boundary: it validates the envelope, times the call and converts any
    unexpected exception into an ``INTERNAL`` response.
    """

    name: ClassVar[str] = "agent"
    version: ClassVar[str] = "1.0.0"
    actions: ClassVar[Mapping[str, str]] = {}
    default_action: ClassVar[Optional[str]] = None

    def __init__(self, *, max_latency_ms: int | None = None) -> None:
        self.max_latency_ms = max_latency_ms if max_latency_ms is not None else settings.AGENT_SLA_MS

    async def handle(self, request: AgentRequest) -> AgentResponse:
        started = time.perf_counter()
        missing = request.missing_fields()
        if missing:
            response = self.fail(
                request,
                ErrorCode.VALIDATION,
                f"Missing required fields: {', '.join(missing)}",
                rationale="Request rejected: malformed envelope",
            )
        else:
            try:
                response = await self.process(request)
            except Exception as exc:
                logger.exception("agent %s failed on request %s", self.name, request.request_id)
                response = self.fail(
                    request,
                    ErrorCode.INTERNAL,
                    str(exc) or exc.__class__.__name__,
                    rationale=f"Unexpected error in {self.name}",
                )

        latency_ms = (time.perf_counter() - started) * 1000
        response.latency_ms = latency_ms
        if latency_ms > self.max_latency_ms:
            logger.warning(
                "agent %s exceeded SLA: %.1fms > %sms", self.name, latency_ms, self.max_latency_ms
            )
        return response

    async def process(self, request: AgentRequest) -> AgentResponse:
        action = request.action or self.default_action
        method_name = self.actions.get(action or "")
        if method_name is None:
            return self.fail(
                request,
                ErrorCode.INVALID_ACTION,
                f"Unknown action: {action}",
                rationale=f"{self.name} does not support action {action!r}",
            )
        method: ActionHandler = getattr(self, method_name)
        return await method(request)

    async def health_check(self) -> HealthProbe:
        return HealthProbe(healthy=True, latency_ms=0.0)

    def metadata(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "max_latency_ms": self.max_latency_ms,
            "actions": sorted(self.actions),
        }

    @staticmethod
    def ok(
        request: AgentRequest,
        rationale: str,
        data: Any = None,
        *,
        features_used: Optional[List[str]] = None,
        confidence: Optional[float] = None,
    ) -> AgentResponse:
        return AgentResponse(
            request_id=request.request_id,
            success=True,
            rationale=rationale,
            data=data,
            features_used=list(features_used or []),
            confidence=confidence,
        )

    @staticmethod
    def fail(
        request: AgentRequest,
        code: ErrorCode,
        message: str,
        *,
        rationale: Optional[str] = None,
        data: Any = None,
    ) -> AgentResponse:
        return AgentResponse(
            request_id=request.request_id,
            success=False,
            rationale=rationale or message,
            data=data,
            error=AgentError(code, message),
        )


__all__ = [
    "AgentError",
    "AgentHandler",
    "AgentRequest",
    "AgentResponse",
    "BaseAgent",
    "HealthProbe",
]
