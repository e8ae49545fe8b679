from __future__ import annotations

import time

from aiohttp import web
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)


# Availability gauge used by the smoke test and alerting rules.
_UP_GAUGE = Gauge("xfactor_up", "Growth service availability")

_REQUEST_COUNTER = Counter(
    "xfactor_http_requests_total",
    "HTTP requests processed by the aiohttp server",
    ("method", "route", "status"),
)
_REQUEST_LATENCY = Histogram(
    "xfactor_http_request_duration_seconds",
    "HTTP request latency in seconds",
    ("method", "route"),
)

AGENT_CALLS = Counter(
    "xfactor_agent_calls_total",
    "Agent calls routed through the communication layer",
    ("agent", "outcome"),
)
AGENT_LATENCY = Histogram(
    "xfactor_agent_call_duration_seconds",
    "Agent call latency including retries",
    ("agent",),
)
BREAKER_STATE = Gauge(
    "xfactor_agent_breaker_open",
    "1 when the agent circuit breaker is open, 0.5 half-open, 0 closed",
    ("agent",),
)
BREAKER_TRIPS = Counter(
    "xfactor_agent_breaker_trips_total",
    "Number of times an agent circuit breaker opened",
    ("agent",),
)
LOOP_OUTCOMES = Counter(
    "xfactor_loop_outcomes_total",
    "Loop executor results by loop, stage and state",
    ("loop", "stage", "state"),
)
LINK_CLICKS = Counter(
    "xfactor_link_clicks_total",
    "Attribution link resolutions",
    ("result",),
)
K_FACTOR = Gauge(
    "xfactor_k_factor",
    "Most recently computed K-factor per cohort",
    ("cohort",),
)
GUARDRAIL_RATE = Gauge(
    "xfactor_guardrail_rate",
    "Guardrail rates relative to total event volume",
    ("metric",),
)
GUARDRAILS_HEALTHY = Gauge(
    "xfactor_guardrails_healthy",
    "1 when every guardrail threshold holds",
)

_BREAKER_VALUES = {"closed": 0.0, "half-open": 0.5, "open": 1.0}


def mark_app_ready() -> None:
    """Mark the aiohttp application as ready for scraping."""

    _UP_GAUGE.set(1)


def observe_breaker(agent: str, state: str) -> None:
    BREAKER_STATE.labels(agent).set(_BREAKER_VALUES.get(state, 0.0))


def _route_label(request: web.Request) -> str:
    resource = getattr(request.match_info.route, "resource", None)
    canonical = getattr(resource, "canonical", None)
    return canonical if isinstance(canonical, str) else request.path


@web.middleware
async def metrics_middleware(request: web.Request, handler):
    """Collect request metrics for every non-metrics endpoint."""

    if request.path == "/metrics":
        return await handler(request)

    start = time.perf_counter()
    status_code = 500
    route = _route_label(request)

    try:
        response = await handler(request)
        status_code = response.status
        return response
    except web.HTTPException as exc:
        status_code = exc.status
        raise
    finally:
        elapsed = time.perf_counter() - start
        _REQUEST_LATENCY.labels(request.method, route).observe(elapsed)
        _REQUEST_COUNTER.labels(request.method, route, str(status_code)).inc()


async def metrics_handler(_: web.Request) -> web.Response:
    """Expose Prometheus metrics for scraping."""

    payload = generate_latest()
    return web.Response(body=payload, headers={"Content-Type": CONTENT_TYPE_LATEST})
