from __future__ import annotations

from datetime import timedelta

import pytest

from agents.experimentation import CONTROL, TREATMENT, ExperimentationAgent, hash_allocate
from agents.protocol import AgentRequest
from growth.analytics import AnalyticsEngine
from growth.events import EventBus, EventLog
from xfactor.storage import InMemoryKeyValueStore
from xfactor.types import ErrorCode, EventType


@pytest.fixture
def bus(clock) -> EventBus:
    return EventBus(EventLog(1000), clock=clock)


@pytest.fixture
def agent(bus, clock) -> ExperimentationAgent:
    return ExperimentationAgent(bus, AnalyticsEngine(bus.log, clock=clock))


def _request(action: str, user_id: str = "u1", **context) -> AgentRequest:
    return AgentRequest(agent_id="test", user_id=user_id, action=action, context=context)


def test_hash_allocation_is_stable_and_respects_share() -> None:
    assert hash_allocate("exp", "u1", 0.5) == hash_allocate("exp", "u1", 0.5)
    assert hash_allocate("exp", "u1", 0.0) == CONTROL
    assert hash_allocate("exp", "u1", 1.0) == TREATMENT

    treated = sum(hash_allocate("exp", f"user-{n}", 0.5) == TREATMENT for n in range(1000))
    assert 400 < treated < 600


@pytest.mark.asyncio
async def test_allocation_is_sticky(agent) -> None:
    first = await agent.handle(_request("allocate", experiment_id="copy-test"))
    second = await agent.handle(_request("allocate", experiment_id="copy-test"))

    assert first.data == second.data
    assert first.data["experiment_id"] == "copy-test"
    assert first.data["variant"] in {CONTROL, TREATMENT}
    assert second.rationale.startswith("User already allocated to")


@pytest.mark.asyncio
async def test_allocation_survives_share_change(bus, clock) -> None:
    store = InMemoryKeyValueStore()
    always = ExperimentationAgent(bus, AnalyticsEngine(bus.log, clock=clock), store=store, treatment_share=1.0)
    never = ExperimentationAgent(bus, AnalyticsEngine(bus.log, clock=clock), store=store, treatment_share=0.0)

    await always.handle(_request("allocate"))
    response = await never.handle(_request("allocate"))

    assert response.data == {"variant": TREATMENT, "experiment_id": "default"}


@pytest.mark.asyncio
async def test_log_event_requires_attribution(agent) -> None:
    missing = await agent.handle(_request("log_event", event={"event_type": "invites_sent"}))
    assert missing.error_code is ErrorCode.VALIDATION

    absent = await agent.handle(_request("log_event"))
    assert absent.error_code is ErrorCode.VALIDATION

    bad_type = await agent.handle(
        _request("log_event", event={"event_type": "nope", "cohort": "spring", "referred": False})
    )
    assert bad_type.error_code is ErrorCode.VALIDATION


@pytest.mark.asyncio
async def test_log_event_appends_to_bus(agent, bus) -> None:
    request = _request(
        "log_event",
        event={
            "event_type": "complaint_filed",
            "cohort": "spring",
            "referred": True,
            "metadata": {"loop_id": "buddy_challenge"},
        },
    )
    response = await agent.handle(request)

    assert response.success
    (event,) = bus.log.snapshot()
    assert event.event_type is EventType.COMPLAINT_FILED
    assert event.user_id == "u1"
    assert event.referred is True
    assert event.metadata["request_id"] == request.request_id


@pytest.mark.asyncio
async def test_calculate_k(agent, bus, clock) -> None:
    start = clock.now
    for n in range(4):
        bus.emit(EventType.INVITE_SENT, f"inviter-{n % 2}", cohort="spring")
    bus.emit(EventType.FVM_REACHED, "friend", cohort="spring", referred=True)

    response = await agent.handle(
        _request(
            "calculate_k",
            cohort="spring",
            time_range={"start": start.isoformat(), "end": (start + timedelta(hours=1)).isoformat()},
        )
    )

    assert response.success
    assert response.data["k_factor"] == pytest.approx(0.5)
    assert response.data["metrics"]["invites_per_user"] == pytest.approx(2.0)
    assert response.data["metrics"]["target_met"] is False
    assert "K-factor calculated: 0.50" in response.rationale


@pytest.mark.asyncio
async def test_calculate_k_rejects_bad_range(agent) -> None:
    response = await agent.handle(_request("calculate_k", time_range={"start": "yesterday"}))
    assert response.error_code is ErrorCode.VALIDATION


@pytest.mark.asyncio
async def test_check_guardrails(agent, bus) -> None:
    bus.emit(EventType.INVITE_SENT, "u1")
    bus.emit(EventType.FRAUD_DETECTED, "u2")

    response = await agent.handle(_request("check_guardrails"))

    assert response.success
    assert response.data["guardrails"]["healthy"] is False
    assert response.data["guardrails"]["fraud_rate"] == pytest.approx(0.5)
    assert response.rationale.startswith("Guardrails checked: VIOLATED")


@pytest.mark.asyncio
async def test_action_is_required(agent) -> None:
    response = await agent.handle(AgentRequest(agent_id="t", user_id="u"))
    assert response.error_code is ErrorCode.INVALID_ACTION
