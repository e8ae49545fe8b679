"""Periodic growth jobs: gauge refresh and loop funnel digest."""

import logging
import time
from collections.abc import Awaitable, Callable
from functools import wraps
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from growth.analytics import AnalyticsEngine
from xfactor.config import settings
from xfactor.metrics import GUARDRAIL_RATE, GUARDRAILS_HEALTHY, K_FACTOR

log = logging.getLogger("scheduler")

Job = Callable[..., Awaitable[Any]]


def guarded(name: str, job: Job) -> Job:
    """Run ``job`` with timing logs; a failure is logged and yields ``None``."""

    @wraps(job)
    async def run(*args: Any, **kwargs: Any) -> Any:
        started = time.perf_counter()
        try:
            result = await job(*args, **kwargs)
        except Exception:
            log.exception("job failed", extra={"job": name, "duration": time.perf_counter() - started})
            return None
        log.info("job finished", extra={"job": name, "duration": time.perf_counter() - started})
        return result

    return run


async def refresh_growth_metrics(analytics: AnalyticsEngine, cohorts: list[str]) -> dict[str, Any]:
    """Recompute K-factor and guardrails, push them to gauges and log a digest."""

    digest: dict[str, Any] = {"k_factor": {}}
    for cohort in cohorts:
        metrics = analytics.calculate_k_factor(cohort)
        K_FACTOR.labels(cohort).set(metrics.k_factor)
        digest["k_factor"][cohort] = round(metrics.k_factor, 3)

    guardrails = analytics.get_guardrail_metrics()
    for name, rate in (
        ("complaint", guardrails.complaint_rate),
        ("opt_out", guardrails.opt_out_rate),
        ("fraud", guardrails.fraud_rate),
    ):
        GUARDRAIL_RATE.labels(name).set(rate)
    GUARDRAILS_HEALTHY.set(1 if guardrails.healthy else 0)
    digest["guardrails_healthy"] = guardrails.healthy
    digest["support_tickets"] = guardrails.support_tickets

    if guardrails.healthy:
        log.info("growth digest: %s", digest)
    else:
        log.warning("growth digest with guardrail breach: %s", digest)
    return digest


async def log_loop_funnels(analytics: AnalyticsEngine) -> list[dict[str, Any]]:
    """Log one funnel line per loop seen in the event log."""

    funnels = []
    for metrics in analytics.get_all_loop_metrics():
        funnel = {
            "loop_id": metrics.loop_id,
            "invites": metrics.total_invites,
            "opens": metrics.total_opens,
            "joins": metrics.total_joins,
            "fvm": metrics.total_fvm,
            "conversion_rate": round(metrics.conversion_rate, 3),
        }
        log.info("loop funnel: %s", funnel)
        funnels.append(funnel)
    return funnels


def start_scheduler(analytics: AnalyticsEngine, cohorts: list[str] | None = None) -> AsyncIOScheduler:
    scheduler = AsyncIOScheduler(
        job_defaults={
            "coalesce": True,
            "max_instances": 1,
            "misfire_grace_time": 60,
        },
    )
    jobs: list[tuple[str, Job, int, list[Any]]] = [
        (
            "refresh_growth_metrics",
            refresh_growth_metrics,
            settings.METRICS_REFRESH_SECONDS,
            [analytics, list(cohorts or settings.REPORT_COHORTS)],
        ),
        ("log_loop_funnels", log_loop_funnels, settings.LOOP_DIGEST_SECONDS, [analytics]),
    ]
    for name, job, seconds, args in jobs:
        scheduler.add_job(
            guarded(name, job),
            trigger=IntervalTrigger(seconds=seconds),
            args=args,
            name=name,
            misfire_grace_time=30,
        )
    scheduler.start()
    return scheduler
