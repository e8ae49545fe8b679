"""Wiring of the growth components and the end-to-end trigger pipeline."""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence

import httpx

from agents.advocacy import AdvocacyAgent
from agents.communication import AgentCommunicationLayer
from agents.experimentation import ExperimentationAgent
from agents.incentives import IncentivesAgent
from agents.orchestrator import OrchestratorAgent
from agents.personalization import PersonalizationAgent
from agents.protocol import AgentRequest, AgentResponse
from agents.remote import RemoteAgent
from agents.trust_safety import TrustSafetyAgent
from growth.analytics import AnalyticsEngine
from growth.content import EmptySummaryProvider, SummaryProvider
from growth.events import EventBus, EventLog, utcnow
from growth.links import AttributionLinkService
from growth.loops import LoopContext, LoopRegistry, Reward, create_default_registry
from growth.loops.executor import ExecuteLoopResult, LoopExecutor

from .config import settings
from .storage import InMemoryKeyValueStore, KeyValueStore
from .types import ErrorCode, EventType, UserTrigger, ViralLoop

logger = logging.getLogger(__name__)

SYSTEM_AGENT_ID = "growth-system"

ORCHESTRATOR = "orchestrator"
PERSONALIZATION = "personalization"
EXPERIMENTATION = "experimentation"
INCENTIVES = "incentives"
TRUST_SAFETY = "trust_safety"
ADVOCACY = "advocacy"


@dataclass(slots=True)
class TriggerSignals:
    """Per-user facts the orchestrator and trust & safety checks read."""

    invite_count: int = 0
    last_invite_at: Optional[datetime] = None
    recent_loops: Sequence[str] = ()
    opted_out: bool = False
    email: Optional[str] = None
    device_id: Optional[str] = None
    transcript: Optional[str] = None


@dataclass(slots=True)
class RewardSettlement:
    recipient_id: str
    reward: Reward
    approved: bool
    rationale: str
    error_code: Optional[ErrorCode] = None


@dataclass(slots=True)
class FvmSettlement:
    result: ExecuteLoopResult
    settlements: List[RewardSettlement] = field(default_factory=list)

    @property
    def approved(self) -> List[RewardSettlement]:
        return [item for item in self.settlements if item.approved]


class GrowthSystem:
    def __init__(
        self,
        *,
        store: KeyValueStore,
        bus: EventBus,
        links: AttributionLinkService,
        registry: LoopRegistry,
        agents: AgentCommunicationLayer,
        executor: LoopExecutor,
        analytics: AnalyticsEngine,
        summaries: SummaryProvider | None = None,
        remote_agents: Sequence[RemoteAgent] = (),
    ) -> None:
        self.store = store
        self.bus = bus
        self.links = links
        self.registry = registry
        self.agents = agents
        self.executor = executor
        self.analytics = analytics
        self.summaries = summaries or EmptySummaryProvider()
        self.remote_agents = list(remote_agents)

    @classmethod
    def build(
        cls,
        *,
        store: KeyValueStore | None = None,
        clock=None,
        summaries: SummaryProvider | None = None,
        agents: AgentCommunicationLayer | None = None,
        remote_agents: Mapping[str, str] | None = None,
        remote_client: httpx.AsyncClient | None = None,
    ) -> "GrowthSystem":
        """Assemble the default in-process system.

        ``clock`` is shared by links, loops, the event bus and the agents so
        that tests can move time for every component at once.  Agents named in
        ``remote_agents`` (default ``settings.REMOTE_AGENTS``) replace their
        in-process counterparts with HTTP clients of the given base URL.
        """

        store = store if store is not None else InMemoryKeyValueStore()
        now = clock or utcnow
        bus = EventBus(EventLog(settings.EVENT_LOG_CAPACITY), clock=now)
        links = AttributionLinkService(store, clock=now)
        registry = create_default_registry(links, store, clock=now)
        analytics = AnalyticsEngine(bus.log, clock=now)

        layer = agents or AgentCommunicationLayer()
        layer.register(ORCHESTRATOR, OrchestratorAgent(clock=now))
        layer.register(PERSONALIZATION, PersonalizationAgent())
        layer.register(EXPERIMENTATION, ExperimentationAgent(bus, analytics, store=store))
        layer.register(INCENTIVES, IncentivesAgent(bus=bus, clock=now))
        layer.register(TRUST_SAFETY, TrustSafetyAgent(clock=now))
        layer.register(ADVOCACY, AdvocacyAgent(links, clock=now))

        remotes = []
        endpoints = settings.REMOTE_AGENTS if remote_agents is None else remote_agents
        for name, endpoint in endpoints.items():
            remote = RemoteAgent(name, endpoint, http_client=remote_client)
            layer.register(name, remote)
            remotes.append(remote)
            logger.info("agent %s served remotely at %s", name, remote.url)

        executor = LoopExecutor(registry, layer, links, bus, personalization_agent=PERSONALIZATION)
        bus.subscribe("*", _log_event)
        return cls(
            store=store,
            bus=bus,
            links=links,
            registry=registry,
            agents=layer,
            executor=executor,
            analytics=analytics,
            summaries=summaries,
            remote_agents=remotes,
        )

    async def close(self) -> None:
        for remote in self.remote_agents:
            await remote.close()

    async def call(self, agent: str, user_id: str, action: str, context: Dict[str, Any]) -> AgentResponse:
        return await self.agents.call(
            agent,
            AgentRequest(agent_id=SYSTEM_AGENT_ID, user_id=user_id, action=action, context=context),
        )

    async def process_trigger(
        self,
        trigger: UserTrigger | str,
        context: LoopContext,
        signals: TriggerSignals | None = None,
    ) -> List[ExecuteLoopResult]:
        """Run a user trigger through safety, loop selection and execution.

        Returns one result per executed loop. An empty list means the trigger
        was stopped before any loop ran.
        """

        trigger = UserTrigger(trigger)
        signals = signals or TriggerSignals()
        user_id = context.user_id

        safety = await self.call(
            TRUST_SAFETY,
            user_id,
            "check_fraud",
            {"email": signals.email, "device_id": signals.device_id},
        )
        if not safety.success:
            if safety.error_code is ErrorCode.ABUSE_DETECTED:
                reason = (safety.data or {}).get("reason") or safety.rationale
                logger.warning("trigger %s blocked for %s: %s", trigger.value, user_id, reason)
                self.bus.emit(
                    EventType.FRAUD_DETECTED,
                    user_id,
                    cohort=context.cohort_or_default,
                    referred=context.referred,
                    metadata={"reason": reason, "trigger": trigger.value},
                )
            else:
                # Safety could not be established; skip without recording fraud.
                logger.warning("trigger %s skipped for %s: %s", trigger.value, user_id, safety.rationale)
            return []

        orchestration = await self.call(
            ORCHESTRATOR,
            user_id,
            "allocate_loops",
            {
                "trigger": trigger.value,
                "persona": context.persona.value,
                "subject": context.subject,
                "invite_count": signals.invite_count,
                "last_invite_at": signals.last_invite_at.isoformat() if signals.last_invite_at else None,
                "recent_loops": list(signals.recent_loops),
                "preferences": {"opted_out": signals.opted_out},
            },
        )
        if not orchestration.success or not orchestration.data:
            logger.info("no loops allocated for %s on %s: %s", user_id, trigger.value, orchestration.rationale)
            return []

        selected = [ViralLoop(loop_id) for loop_id in orchestration.data.get("selected_loops", [])]
        runnable = [loop_id for loop_id in selected if loop_id in self.registry]
        if not runnable:
            logger.info("no registered loops for trigger %s (selected %s)", trigger.value, selected)
            return []

        if signals.transcript:
            summary = await self.summaries.summarize(signals.transcript)
            context = dataclasses.replace(
                context,
                metadata={**context.metadata, "session_summary": summary.to_context()},
            )

        results: List[ExecuteLoopResult] = []
        for loop_id in runnable:
            result = await self.executor.execute(loop_id, context)
            results.append(result)
            if not result.success:
                self.bus.emit(
                    EventType.INVITE_FAILED,
                    user_id,
                    cohort=context.cohort_or_default,
                    referred=context.referred,
                    metadata={
                        "loop_id": loop_id.value,
                        "error": result.error_code.value if result.error_code else None,
                        "rationale": result.rationale,
                    },
                )
        return results

    async def process_join(self, short_code: str, invitee: LoopContext) -> ExecuteLoopResult:
        return await self.executor.process_join(short_code, invitee)

    async def process_fvm(self, short_code: str, invitee: LoopContext) -> FvmSettlement:
        result = await self.executor.process_fvm(short_code, invitee)
        settlement = FvmSettlement(result)
        if not result.success or result.reward is None:
            return settlement

        grants = [(result.inviter_id, result.reward.inviter)]
        if result.reward.invitee is not None:
            grants.append((invitee.user_id, result.reward.invitee))

        for recipient, reward in grants:
            if not recipient:
                continue
            response = await self.call(
                INCENTIVES,
                recipient,
                "allocate",
                {
                    "reward_type": reward.type.value,
                    "amount": reward.amount,
                    "loop_id": result.loop_id.value if result.loop_id else None,
                    "invite_code": short_code,
                },
            )
            settlement.settlements.append(
                RewardSettlement(
                    recipient_id=recipient,
                    reward=reward,
                    approved=response.success,
                    rationale=response.rationale,
                    error_code=response.error_code,
                )
            )
        return settlement


def _log_event(event) -> None:
    logger.debug("event %s user=%s cohort=%s", event.event_type.value, event.user_id, event.cohort)


__all__ = ["FvmSettlement", "GrowthSystem", "RewardSettlement", "TriggerSignals"]
