"""Test configuration helpers."""

from __future__ import annotations

import asyncio
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from agents.communication import AgentCommunicationLayer  # noqa: E402
from agents.personalization import PersonalizationAgent  # noqa: E402
from growth.events import EventBus, EventLog  # noqa: E402
from growth.links import AttributionLinkService  # noqa: E402
from growth.loops import create_default_registry  # noqa: E402
from growth.loops.executor import LoopExecutor  # noqa: E402
from xfactor.storage import InMemoryKeyValueStore  # noqa: E402

START = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def pytest_configure(config: pytest.Config) -> None:
    """Register the asyncio marker for the lightweight runner below."""

    config.addinivalue_line("markers", "asyncio: execute the test inside an event loop")


@pytest.hookimpl(tryfirst=True)
def pytest_pyfunc_call(pyfuncitem: pytest.Function) -> bool | None:
    """Execute ``@pytest.mark.asyncio`` tests without requiring pytest-asyncio."""

    marker = pyfuncitem.get_closest_marker("asyncio")
    if marker is None:
        return None

    func = pyfuncitem.obj
    if not asyncio.iscoroutinefunction(func):
        return None

    loop = asyncio.new_event_loop()
    try:
        asyncio.set_event_loop(loop)
        # Fixtures requested only by other fixtures are resolved too; pass the test its own.
        kwargs = {name: pyfuncitem.funcargs[name] for name in pyfuncitem._fixtureinfo.argnames}
        loop.run_until_complete(func(**kwargs))
    finally:
        asyncio.set_event_loop(None)
        loop.close()
    return True


class FakeClock:
    """Mutable wall clock shared by the components under test."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class GrowthHarness:
    def __init__(self, clock: FakeClock) -> None:
        self.clock = clock
        self.store = InMemoryKeyValueStore()
        self.bus = EventBus(EventLog(1000), clock=clock)
        self.links = AttributionLinkService(
            self.store,
            base_url="https://example.test",
            secret="test-secret",
            clock=clock,
        )
        self.registry = create_default_registry(self.links, self.store, clock=clock)
        self.agents = AgentCommunicationLayer(retry_delay=0, timeout=1.0)
        self.agents.register("personalization", PersonalizationAgent())
        self.executor = LoopExecutor(self.registry, self.agents, self.links, self.bus)

    def events(self, event_type=None):
        return [e for e in self.bus.log if event_type is None or e.event_type is event_type]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def harness(clock: FakeClock) -> GrowthHarness:
    return GrowthHarness(clock)
