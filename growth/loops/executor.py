"""Drives an invite through its lifecycle.

``execute`` covers eligibility, personalization and invite generation for the
inviter; ``process_join`` and ``process_fvm`` advance the invite when the
invitee shows up.  The executor never raises: every outcome is an
:class:`ExecuteLoopResult`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from agents.communication import AgentCommunicationLayer
from agents.protocol import AgentRequest
from xfactor.metrics import LOOP_OUTCOMES
from xfactor.types import ErrorCode, EventType, ViralLoop

from growth.events import EventBus
from growth.links import AttributionLink, AttributionLinkService

from .base import BaseLoop, InviteState, LoopContext, LoopInvite, LoopOutcome, PersonalizationData, RewardPair
from .registry import LoopRegistry

logger = logging.getLogger(__name__)

PERSONALIZATION_AGENT = "personalization"


@dataclass(slots=True)
class ExecuteLoopResult:
    success: bool
    loop_id: Optional[ViralLoop]
    state: InviteState
    rationale: str
    error_code: Optional[ErrorCode] = None
    invite: Optional[LoopInvite] = None
    reward: Optional[RewardPair] = None
    personalization: Optional[PersonalizationData] = None
    inviter_id: Optional[str] = None


class LoopExecutor:
    def __init__(
        self,
        registry: LoopRegistry,
        agents: AgentCommunicationLayer,
        links: AttributionLinkService,
        bus: EventBus,
        *,
        personalization_agent: str = PERSONALIZATION_AGENT,
    ) -> None:
        self._registry = registry
        self._agents = agents
        self._links = links
        self._bus = bus
        self._personalization_agent = personalization_agent

    async def execute(self, loop_id: ViralLoop | str, context: LoopContext) -> ExecuteLoopResult:
        loop = self._registry.get(loop_id)
        if loop is None:
            return self._finish(
                "execute",
                ExecuteLoopResult(
                    success=False,
                    loop_id=None,
                    state=InviteState.PENDING,
                    rationale=f"Loop {loop_id} not found",
                    error_code=ErrorCode.NOT_FOUND,
                ),
            )

        try:
            if not await loop.is_eligible(context):
                return self._finish(
                    "execute",
                    ExecuteLoopResult(
                        success=False,
                        loop_id=loop.loop_id,
                        state=InviteState.INELIGIBLE,
                        rationale=f"User not eligible for {loop.name} loop",
                        error_code=ErrorCode.INELIGIBLE,
                    ),
                )

            response = await self._agents.call(
                self._personalization_agent,
                AgentRequest(
                    agent_id="loop-executor",
                    user_id=context.user_id,
                    action="personalize",
                    context=self._personalization_context(loop, context),
                ),
            )
            if not response.success or not response.data:
                # Never send un-personalized copy.
                return self._finish(
                    "execute",
                    ExecuteLoopResult(
                        success=False,
                        loop_id=loop.loop_id,
                        state=InviteState.PERSONALIZATION_FAILED,
                        rationale=f"Personalization failed: {response.rationale}",
                        error_code=response.error_code or ErrorCode.AGENT_UNAVAILABLE,
                    ),
                )
            personalization = PersonalizationData.from_dict(response.data)

            invite = await loop.generate_invite(context, personalization)
            metadata: Dict[str, Any] = {
                **loop.invite_metadata(context),
                "loop_id": loop.loop_id.value,
                "invite_id": invite.invite_id,
                "invite_code": invite.short_code,
                "channel": invite.channel.value,
                "fvm_type": loop.fvm_type.value,
                "variant": personalization.variant,
            }
            for event_type in (EventType.LOOP_TRIGGERED, EventType.INVITE_SENT):
                self._bus.emit(
                    event_type,
                    context.user_id,
                    cohort=context.cohort_or_default,
                    referred=context.referred,
                    metadata=metadata,
                )
        except Exception as exc:
            logger.exception("loop %s execution failed for user %s", loop.loop_id.value, context.user_id)
            return self._finish(
                "execute",
                ExecuteLoopResult(
                    success=False,
                    loop_id=loop.loop_id,
                    state=InviteState.PENDING,
                    rationale=f"Error executing loop: {exc}",
                    error_code=ErrorCode.INTERNAL,
                ),
            )

        return self._finish(
            "execute",
            ExecuteLoopResult(
                success=True,
                loop_id=loop.loop_id,
                state=InviteState.INVITE_GENERATED,
                rationale=f"Successfully generated invite for {loop.name}",
                invite=invite,
                personalization=personalization,
                inviter_id=context.user_id,
            ),
        )

    async def process_join(self, short_code: str, invitee: LoopContext) -> ExecuteLoopResult:
        return await self._advance("join", short_code, invitee)

    async def process_fvm(self, short_code: str, invitee: LoopContext) -> ExecuteLoopResult:
        return await self._advance("fvm", short_code, invitee)

    async def _advance(self, stage: str, short_code: str, invitee: LoopContext) -> ExecuteLoopResult:
        try:
            resolution = await self._links.resolve(short_code)
        except Exception as exc:
            logger.exception("link resolution failed for code %s", short_code)
            return self._finish(
                stage,
                ExecuteLoopResult(
                    success=False,
                    loop_id=None,
                    state=InviteState.PENDING,
                    rationale=f"Error resolving invite: {exc}",
                    error_code=ErrorCode.INTERNAL,
                ),
            )

        link = resolution.link
        if link is None:
            expired = resolution.error_code is ErrorCode.LINK_EXPIRED
            return self._finish(
                stage,
                ExecuteLoopResult(
                    success=False,
                    loop_id=None,
                    state=InviteState.EXPIRED if expired else InviteState.PENDING,
                    rationale="Invite has expired" if expired else "Invalid invite code",
                    error_code=resolution.error_code,
                ),
            )

        # The link metadata is the only source of truth for loop ownership.
        loop = self._registry.get(link.metadata.loop_id)
        if loop is None:
            return self._finish(
                stage,
                ExecuteLoopResult(
                    success=False,
                    loop_id=link.metadata.loop_id,
                    state=InviteState.PENDING,
                    rationale=f"Loop {link.metadata.loop_id.value} is not registered",
                    error_code=ErrorCode.NOT_FOUND,
                    inviter_id=link.metadata.inviter_id,
                ),
            )

        try:
            if stage == "join":
                outcome = await loop.process_join(short_code, invitee, link=link)
            else:
                outcome = await loop.process_fvm(short_code, invitee, link=link)
        except Exception as exc:
            logger.exception("loop %s %s failed for code %s", loop.loop_id.value, stage, short_code)
            return self._finish(
                stage,
                ExecuteLoopResult(
                    success=False,
                    loop_id=loop.loop_id,
                    state=InviteState.PENDING,
                    rationale=f"Error processing {stage}: {exc}",
                    error_code=ErrorCode.INTERNAL,
                    inviter_id=link.metadata.inviter_id,
                ),
            )

        if outcome.success and not outcome.repeated:
            self._log_progress(stage, loop, link, invitee, outcome)
        elif outcome.error_code is None:
            logger.info(
                "loop %s %s declined for code %s: %s",
                loop.loop_id.value,
                stage,
                short_code,
                outcome.rationale,
            )

        return self._finish(
            stage,
            ExecuteLoopResult(
                success=outcome.success,
                loop_id=loop.loop_id,
                state=outcome.state,
                rationale=outcome.rationale,
                error_code=outcome.error_code,
                invite=outcome.invite,
                reward=outcome.reward,
                inviter_id=link.metadata.inviter_id,
            ),
        )

    def _log_progress(
        self,
        stage: str,
        loop: BaseLoop,
        link: AttributionLink,
        invitee: LoopContext,
        outcome: LoopOutcome,
    ) -> None:
        metadata = {
            "loop_id": loop.loop_id.value,
            "invite_code": link.short_code,
            "referrer_id": link.metadata.inviter_id,
            "fvm_type": loop.fvm_type.value,
        }
        cohort = link.metadata.cohort
        if stage == "join":
            self._bus.emit(EventType.INVITE_OPENED, invitee.user_id, cohort=cohort, referred=True, metadata=metadata)
            if not invitee.get("existing_user", False):
                self._bus.emit(
                    EventType.ACCOUNT_CREATED, invitee.user_id, cohort=cohort, referred=True, metadata=metadata
                )
            return

        reward = outcome.reward
        if reward is not None:
            metadata["inviter_reward"] = reward.inviter.to_dict()
            metadata["invitee_reward"] = reward.invitee.to_dict() if reward.invitee else None
        self._bus.emit(EventType.FVM_REACHED, invitee.user_id, cohort=cohort, referred=True, metadata=metadata)

    @staticmethod
    def _personalization_context(loop: BaseLoop, context: LoopContext) -> Dict[str, Any]:
        return {
            "persona": context.persona.value,
            "loop_id": loop.loop_id.value,
            "subject": context.subject,
            "age": context.age,
            "grade": context.grade,
            "preferred_channels": context.get("preferred_channels", []),
            "past_invites": context.get("past_invites", 0),
        }

    @staticmethod
    def _finish(stage: str, result: ExecuteLoopResult) -> ExecuteLoopResult:
        loop_label = result.loop_id.value if result.loop_id else "unknown"
        LOOP_OUTCOMES.labels(loop_label, stage, result.state.value).inc()
        return result


__all__ = ["ExecuteLoopResult", "InviteState", "LoopExecutor", "PERSONALIZATION_AGENT"]
