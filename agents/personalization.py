"""Copy, reward and channel selection for invites."""

from __future__ import annotations

import hashlib
import math
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Mapping, NamedTuple

import yaml

from xfactor.types import Channel, ErrorCode, Persona, RewardType, ViralLoop

from .protocol import AgentRequest, AgentResponse, BaseAgent

TEMPLATES_FILE = Path(__file__).resolve().parent / "templates" / "copy.yaml"

TONES = ("default", "competitive", "supportive")


class RewardRule(NamedTuple):
    type: RewardType
    base_amount: int


_RT = RewardType
REWARD_MATRIX: Mapping[Persona, Mapping[ViralLoop, RewardRule]] = {
    Persona.STUDENT: {
        ViralLoop.BUDDY_CHALLENGE: RewardRule(_RT.STREAK_SHIELD, 1),
        ViralLoop.RESULTS_RALLY: RewardRule(_RT.GEM_BOOST, 50),
        ViralLoop.STREAK_RESCUE: RewardRule(_RT.STREAK_SHIELD, 1),
        ViralLoop.ACHIEVEMENT_SPOTLIGHT: RewardRule(_RT.XP_BOOST, 100),
        ViralLoop.CLASS_WATCH_PARTY: RewardRule(_RT.AI_TUTOR_MINUTES, 15),
        ViralLoop.SUBJECT_CLUBS: RewardRule(_RT.PRACTICE_POWER_UP, 1),
        ViralLoop.PROUD_PARENT: RewardRule(_RT.CLASS_PASS, 1),
        ViralLoop.TUTOR_SPOTLIGHT: RewardRule(_RT.XP_BOOST, 50),
    },
    Persona.PARENT: {loop: RewardRule(_RT.CLASS_PASS, 1) for loop in ViralLoop},
    Persona.TUTOR: {
        ViralLoop.TUTOR_SPOTLIGHT: RewardRule(_RT.XP_BOOST, 200),
        ViralLoop.PROUD_PARENT: RewardRule(_RT.XP_BOOST, 100),
        ViralLoop.BUDDY_CHALLENGE: RewardRule(_RT.XP_BOOST, 50),
        ViralLoop.RESULTS_RALLY: RewardRule(_RT.XP_BOOST, 50),
        ViralLoop.CLASS_WATCH_PARTY: RewardRule(_RT.XP_BOOST, 100),
        ViralLoop.STREAK_RESCUE: RewardRule(_RT.XP_BOOST, 50),
        ViralLoop.SUBJECT_CLUBS: RewardRule(_RT.XP_BOOST, 50),
        ViralLoop.ACHIEVEMENT_SPOTLIGHT: RewardRule(_RT.XP_BOOST, 100),
    },
}

DEFAULT_CHANNELS: Mapping[Persona, Channel] = {
    Persona.STUDENT: Channel.IN_APP,
    Persona.PARENT: Channel.EMAIL,
    Persona.TUTOR: Channel.EMAIL,
}


def _check_reward_coverage() -> None:
    for persona in Persona:
        row = REWARD_MATRIX.get(persona, {})
        missing = [loop.value for loop in ViralLoop if loop not in row]
        if missing:
            raise RuntimeError(f"reward matrix for {persona.value} lacks loops: {', '.join(missing)}")
        if persona not in DEFAULT_CHANNELS:
            raise RuntimeError(f"no default channel for {persona.value}")


_check_reward_coverage()


class TemplateError(RuntimeError):
    """Raised when the copy template file is malformed."""


@lru_cache(maxsize=1)
def load_templates() -> Mapping[str, Any]:
    if not TEMPLATES_FILE.exists():
        raise TemplateError(f"Copy templates missing: {TEMPLATES_FILE}")
    with TEMPLATES_FILE.open("r", encoding="utf-8") as fh:
        payload = yaml.safe_load(fh) or {}
    if not isinstance(payload, Mapping) or not isinstance(payload.get("fallback"), Mapping):
        raise TemplateError("copy.yaml must contain a 'fallback' mapping")
    return payload


def reward_description(reward_type: RewardType, amount: int) -> str:
    plural = amount > 1
    if reward_type is RewardType.AI_TUTOR_MINUTES:
        return f"{amount} minutes of AI Tutor"
    if reward_type is RewardType.CLASS_PASS:
        return f"{amount} class pass{'es' if plural else ''}"
    if reward_type is RewardType.GEM_BOOST:
        return f"{amount} gems"
    if reward_type is RewardType.XP_BOOST:
        return f"{amount} XP"
    if reward_type is RewardType.STREAK_SHIELD:
        return f"{amount} streak shield{'s' if plural else ''}"
    if reward_type is RewardType.PRACTICE_POWER_UP:
        return f"{amount} practice power-up{'s' if plural else ''}"
    return f"{amount} reward"


def select_tone(age: int | None) -> str:
    if age is None:
        return "default"
    if age < 13:
        return "supportive"
    if age >= 18:
        return "competitive"
    return "default"


def select_variant(user_id: str, loop_id: str) -> str:
    digest = hashlib.sha1(f"{user_id}{loop_id}".encode("utf-8")).digest()
    return "A" if digest[-1] % 2 == 0 else "B"


def _interpolate(template: str, ctx: Mapping[str, Any]) -> str:
    age = ctx.get("age")
    return (
        template.replace("{subject}", ctx.get("subject") or "your subject")
        .replace("{age}", "" if age is None else str(age))
        .replace("{grade}", ctx.get("grade") or "")
    )


class PersonalizationAgent(BaseAgent):
    name = "personalization"
    actions = {"personalize": "personalize"}
    default_action = "personalize"

    async def personalize(self, request: AgentRequest) -> AgentResponse:
        ctx = request.context
        try:
            persona = Persona(ctx.get("persona"))
            loop_id = ViralLoop(ctx.get("loop_id"))
        except ValueError as exc:
            return self.fail(request, ErrorCode.VALIDATION, str(exc), rationale="Unknown persona or loop")

        copy = self.generate_copy(loop_id, ctx)
        reward = self.select_reward(persona, loop_id, int(ctx.get("past_invites") or 0))
        channel = self.select_channel(persona, ctx.get("preferred_channels") or [])
        variant = select_variant(request.user_id, loop_id.value)

        rationale = (
            f"Personalized for {persona.value} with {loop_id.value} loop. Selected {copy['tone']} tone copy, "
            f"{reward['type']} reward ({reward['amount']}), and {channel.value} channel. Based on subject: "
            f"{ctx.get('subject') or 'none'}, age: {ctx.get('age') if ctx.get('age') is not None else 'unknown'}, "
            f"past invites: {ctx.get('past_invites') or 0}."
        )
        return self.ok(
            request,
            rationale,
            {"copy": copy, "reward": reward, "channel": channel.value, "variant": variant},
            features_used=["persona", "loop_id", "subject", "age", "past_invites", "preferred_channels"],
            confidence=0.8,
        )

    def generate_copy(self, loop_id: ViralLoop, ctx: Mapping[str, Any]) -> Dict[str, str]:
        templates = load_templates()
        by_loop = (templates.get("loops") or {}).get(loop_id.value) or templates["fallback"]
        tone_key = select_tone(ctx.get("age"))
        template = by_loop.get(tone_key) or by_loop.get("default") or templates["fallback"]["default"]
        return {
            "headline": _interpolate(template["headline"], ctx),
            "body": _interpolate(template["body"], ctx),
            "cta": _interpolate(template["cta"], ctx),
            "tone": template.get("tone", tone_key),
        }

    @staticmethod
    def select_reward(persona: Persona, loop_id: ViralLoop, past_invites: int) -> Dict[str, Any]:
        rule = REWARD_MATRIX[persona][loop_id]
        multiplier = min(1 + max(past_invites, 0) * 0.1, 2.0)
        amount = math.floor(rule.base_amount * multiplier)
        return {
            "type": rule.type.value,
            "amount": amount,
            "description": reward_description(rule.type, amount),
        }

    @staticmethod
    def select_channel(persona: Persona, preferred: list) -> Channel:
        for value in preferred:
            try:
                return Channel(value)
            except ValueError:
                continue
        return DEFAULT_CHANNELS[persona]


__all__ = [
    "DEFAULT_CHANNELS",
    "PersonalizationAgent",
    "REWARD_MATRIX",
    "RewardRule",
    "load_templates",
    "reward_description",
    "select_tone",
    "select_variant",
]
