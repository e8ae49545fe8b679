from __future__ import annotations

import logging

import pytest

from growth.analytics import AnalyticsEngine
from growth.events import EventBus, EventLog
from xfactor import scheduler
from xfactor.metrics import GUARDRAILS_HEALTHY, K_FACTOR
from xfactor.types import EventType


@pytest.fixture
def bus(clock) -> EventBus:
    return EventBus(EventLog(1000), clock=clock)


@pytest.mark.asyncio
async def test_refresh_growth_metrics_digest(bus, clock) -> None:
    for n in range(4):
        bus.emit(EventType.INVITE_SENT, f"inviter-{n % 2}", cohort="spring")
    for n in range(3):
        bus.emit(EventType.FVM_REACHED, f"friend-{n}", cohort="spring", referred=True)

    digest = await scheduler.refresh_growth_metrics(AnalyticsEngine(bus.log, clock=clock), ["spring", "fall"])

    assert digest == {
        "k_factor": {"spring": 1.5, "fall": 0.0},
        "guardrails_healthy": True,
        "support_tickets": 0,
    }
    assert K_FACTOR.labels("spring")._value.get() == pytest.approx(1.5)
    assert GUARDRAILS_HEALTHY._value.get() == 1


@pytest.mark.asyncio
async def test_refresh_warns_on_breach(bus, clock, caplog) -> None:
    bus.emit(EventType.INVITE_SENT, "u1", cohort="spring")
    bus.emit(EventType.COMPLAINT_FILED, "u2", cohort="spring")

    with caplog.at_level(logging.INFO, logger="scheduler"):
        digest = await scheduler.refresh_growth_metrics(AnalyticsEngine(bus.log, clock=clock), ["spring"])

    assert digest["guardrails_healthy"] is False
    assert GUARDRAILS_HEALTHY._value.get() == 0
    assert any(r.levelno == logging.WARNING and "guardrail breach" in r.getMessage() for r in caplog.records)


@pytest.mark.asyncio
async def test_loop_funnels(bus, clock) -> None:
    bus.emit(EventType.INVITE_SENT, "u1", metadata={"loop_id": "results_rally"})
    bus.emit(EventType.INVITE_SENT, "u1", metadata={"loop_id": "results_rally"})
    bus.emit(EventType.FVM_REACHED, "f1", referred=True, metadata={"loop_id": "results_rally"})
    bus.emit(EventType.INVITE_SENT, "u2", metadata={"loop_id": "buddy_challenge"})

    funnels = await scheduler.log_loop_funnels(AnalyticsEngine(bus.log, clock=clock))

    assert [f["loop_id"] for f in funnels] == ["results_rally", "buddy_challenge"]
    assert funnels[0] == {
        "loop_id": "results_rally",
        "invites": 2,
        "opens": 0,
        "joins": 0,
        "fvm": 1,
        "conversion_rate": 0.5,
    }


@pytest.mark.asyncio
async def test_guarded_job_swallows_failures(caplog) -> None:
    async def explode() -> None:
        raise RuntimeError("boom")

    with caplog.at_level(logging.INFO, logger="scheduler"):
        assert await scheduler.guarded("explode", explode)() is None
    assert any(r.getMessage() == "job failed" and r.job == "explode" for r in caplog.records)


@pytest.mark.asyncio
async def test_start_scheduler_registers_jobs(bus, clock) -> None:
    started = scheduler.start_scheduler(AnalyticsEngine(bus.log, clock=clock))
    try:
        jobs = {job.name: job for job in started.get_jobs()}
        assert set(jobs) == {"refresh_growth_metrics", "log_loop_funnels"}
        assert jobs["refresh_growth_metrics"].args[1] == ["organic"]
    finally:
        started.shutdown(wait=False)


@pytest.mark.asyncio
async def test_refresh_job_covers_configured_cohorts(bus, clock, monkeypatch) -> None:
    monkeypatch.setattr(scheduler.settings, "REPORT_COHORTS", ["spring", "fall"])
    started = scheduler.start_scheduler(AnalyticsEngine(bus.log, clock=clock))
    try:
        (job,) = [job for job in started.get_jobs() if job.name == "refresh_growth_metrics"]
        assert job.args[1] == ["spring", "fall"]
    finally:
        started.shutdown(wait=False)
