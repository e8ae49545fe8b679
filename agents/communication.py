"""Resilient routing of requests to capability agents.

Every call goes through a per-agent circuit breaker, a bounded retry loop and
a timeout race.  Callers always receive an :class:`AgentResponse`; when an
agent cannot be reached they get a degraded ``AGENT_UNAVAILABLE`` fallback
instead of an exception.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from typing import Awaitable, Callable, Dict, List, MutableMapping, Optional

from xfactor.config import settings
from xfactor.metrics import AGENT_CALLS, AGENT_LATENCY, BREAKER_TRIPS, observe_breaker
from xfactor.types import BreakerState, ErrorCode

from .protocol import AgentError, AgentHandler, AgentRequest, AgentResponse

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]


class AgentTimeoutError(TimeoutError):
    def __init__(self, agent: str, timeout: float) -> None:
        super().__init__(f"Request timeout after {int(timeout * 1000)}ms")
        self.agent = agent


class MalformedResponseError(RuntimeError):
    pass


@dataclass(slots=True)
class CircuitBreakerState:
    failures: int = 0
    last_failure_time: Optional[float] = None
    state: BreakerState = BreakerState.CLOSED
    half_open_in_flight: bool = False


@dataclass(slots=True)
class AgentHealth:
    exists: bool
    healthy: bool
    circuit_breaker_state: str


def _discard_late_result(task: asyncio.Future) -> None:
    # Results of timed-out attempts are dropped; exceptions are retrieved so
    # the loop does not report them as never retrieved.
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.debug("late agent failure discarded: %r", exc)


class AgentCommunicationLayer:
    def __init__(
        self,
        *,
        max_retries: int | None = None,
        retry_delay: float | None = None,
        timeout: float | None = None,
        breaker_threshold: int | None = None,
        breaker_cooldown: float | None = None,
        clock: Clock | None = None,
        sleep: Sleep | None = None,
        breakers: MutableMapping[str, CircuitBreakerState] | None = None,
    ) -> None:
        self._max_retries = settings.AGENT_MAX_RETRIES if max_retries is None else max_retries
        self._retry_delay = settings.AGENT_RETRY_DELAY if retry_delay is None else retry_delay
        self._timeout = settings.AGENT_TIMEOUT if timeout is None else timeout
        self._threshold = settings.AGENT_BREAKER_THRESHOLD if breaker_threshold is None else breaker_threshold
        self._cooldown = settings.AGENT_BREAKER_COOLDOWN if breaker_cooldown is None else breaker_cooldown
        if self._max_retries < 0:
            raise ValueError("max_retries must be non-negative")
        if self._threshold <= 0:
            raise ValueError("breaker_threshold must be positive")
        if self._timeout <= 0:
            raise ValueError("timeout must be positive")
        if self._retry_delay < 0 or self._cooldown < 0:
            raise ValueError("delay values must be non-negative")
        self._clock = clock or time.monotonic
        self._sleep = sleep or asyncio.sleep
        self._agents: Dict[str, AgentHandler] = {}
        self._breakers: MutableMapping[str, CircuitBreakerState] = breakers if breakers is not None else {}

    def register(self, agent_name: str, handler: AgentHandler) -> None:
        self._agents[agent_name] = handler
        self._breakers[agent_name] = CircuitBreakerState()
        observe_breaker(agent_name, BreakerState.CLOSED.value)
        logger.info("agent registered: %s", agent_name)

    def list_agents(self) -> List[str]:
        return list(self._agents)

    def handler(self, agent_name: str) -> Optional[AgentHandler]:
        return self._agents.get(agent_name)

    def breaker(self, agent_name: str) -> Optional[CircuitBreakerState]:
        state = self._breakers.get(agent_name)
        return replace(state) if state is not None else None

    def reset(self, agent_name: str) -> None:
        if agent_name in self._agents:
            self._breakers[agent_name] = CircuitBreakerState()
            observe_breaker(agent_name, BreakerState.CLOSED.value)

    async def call(self, agent_name: str, request: AgentRequest) -> AgentResponse:
        handler = self._agents.get(agent_name)
        if handler is None:
            AGENT_CALLS.labels(agent_name, "unknown").inc()
            return self._fallback(request, f"Agent {agent_name} not found")

        breaker = self._breakers.setdefault(agent_name, CircuitBreakerState())
        if breaker.state is BreakerState.OPEN:
            elapsed = self._clock() - (breaker.last_failure_time or 0.0)
            if elapsed < self._cooldown:
                AGENT_CALLS.labels(agent_name, "short_circuit").inc()
                return self._fallback(request, f"Circuit breaker open for agent {agent_name}")
            breaker.state = BreakerState.HALF_OPEN
            breaker.half_open_in_flight = False
            observe_breaker(agent_name, breaker.state.value)
            logger.warning("circuit breaker half-open for agent %s", agent_name)

        trial = False
        if breaker.state is BreakerState.HALF_OPEN:
            if breaker.half_open_in_flight:
                AGENT_CALLS.labels(agent_name, "short_circuit").inc()
                return self._fallback(request, f"Circuit breaker trial in progress for agent {agent_name}")
            breaker.half_open_in_flight = True
            trial = True

        attempts = 1 if trial else self._max_retries + 1
        started = time.perf_counter()
        last_error: Exception | None = None
        try:
            for attempt in range(1, attempts + 1):
                try:
                    response = await self._attempt(agent_name, handler, request)
                except Exception as exc:
                    last_error = exc
                    logger.debug("agent %s attempt %s failed: %r", agent_name, attempt, exc)
                    if attempt < attempts:
                        await self._sleep(self._retry_delay * attempt)
                    continue

                if response.error_code is ErrorCode.INTERNAL:
                    # The agent answered, but only to report its own crash.
                    self._record_failure(agent_name, breaker, trial)
                    AGENT_CALLS.labels(agent_name, "internal").inc()
                    return response

                if response.success:
                    self._record_success(agent_name, breaker)
                    AGENT_CALLS.labels(agent_name, "success").inc()
                else:
                    # Declines leave the failure count alone; a declined trial stays half-open.
                    breaker.half_open_in_flight = False
                    AGENT_CALLS.labels(agent_name, "declined").inc()
                return response
        finally:
            AGENT_LATENCY.labels(agent_name).observe(time.perf_counter() - started)

        self._record_failure(agent_name, breaker, trial)
        AGENT_CALLS.labels(agent_name, "unavailable").inc()
        reason = f"Agent {agent_name} failed after {attempts} attempts: {last_error or 'Unknown error'}"
        logger.warning("%s", reason)
        return self._fallback(request, reason)

    async def health(self, agent_name: str) -> AgentHealth:
        handler = self._agents.get(agent_name)
        if handler is None:
            return AgentHealth(exists=False, healthy=False, circuit_breaker_state="unknown")

        breaker = self._breakers.setdefault(agent_name, CircuitBreakerState())
        try:
            probe = await handler.health_check()
            healthy = bool(probe.healthy)
        except Exception:
            logger.warning("health check failed for agent %s", agent_name, exc_info=True)
            healthy = False
        return AgentHealth(
            exists=True,
            healthy=healthy and breaker.state is not BreakerState.OPEN,
            circuit_breaker_state=breaker.state.value,
        )

    async def _attempt(
        self,
        agent_name: str,
        handler: AgentHandler,
        request: AgentRequest,
    ) -> AgentResponse:
        task = asyncio.ensure_future(handler.handle(request))
        done, _ = await asyncio.wait({task}, timeout=self._timeout)
        if not done:
            # The in-flight handler keeps running; its result is discarded.
            task.add_done_callback(_discard_late_result)
            raise AgentTimeoutError(agent_name, self._timeout)

        response = task.result()
        if not isinstance(response, AgentResponse):
            raise MalformedResponseError(f"Agent {agent_name} returned {type(response).__name__}")
        if not response.success and response.error is None:
            raise MalformedResponseError(f"Agent {agent_name} declined without an error")
        return response

    def _record_success(self, agent_name: str, breaker: CircuitBreakerState) -> None:
        if breaker.state is not BreakerState.CLOSED:
            logger.info("circuit breaker closed for agent %s", agent_name)
        breaker.failures = 0
        breaker.state = BreakerState.CLOSED
        breaker.half_open_in_flight = False
        observe_breaker(agent_name, breaker.state.value)

    def _record_failure(self, agent_name: str, breaker: CircuitBreakerState, trial: bool) -> None:
        breaker.failures += 1
        breaker.last_failure_time = self._clock()
        breaker.half_open_in_flight = False
        if trial or breaker.failures >= self._threshold:
            if breaker.state is not BreakerState.OPEN:
                BREAKER_TRIPS.labels(agent_name).inc()
            breaker.state = BreakerState.OPEN
            logger.warning(
                "circuit breaker open for agent %s after %s failures", agent_name, breaker.failures
            )
        observe_breaker(agent_name, breaker.state.value)

    @staticmethod
    def _fallback(request: AgentRequest, reason: str) -> AgentResponse:
        return AgentResponse(
            request_id=request.request_id,
            success=False,
            rationale=f"Fallback response: {reason}. Using default behavior.",
            error=AgentError(ErrorCode.AGENT_UNAVAILABLE, reason),
            latency_ms=0.0,
        )


__all__ = [
    "AgentCommunicationLayer",
    "AgentHealth",
    "AgentTimeoutError",
    "CircuitBreakerState",
    "MalformedResponseError",
]
