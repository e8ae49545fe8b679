from __future__ import annotations

from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import pytest

from growth.loops import (
    BuddyChallengeLoop,
    InviteState,
    LoopContext,
    LoopRegistry,
    PersonalizationData,
    ProudParentLoop,
    ResultsRallyLoop,
    StreakRescueLoop,
    TutorSpotlightLoop,
)
from growth.loops.base import Copy
from growth.loops.buddy_challenge import infer_difficulty
from growth.loops.registry import DuplicateLoopError
from xfactor.types import Channel, ErrorCode, Persona, RewardType, ViralLoop

PERSONALIZATION = PersonalizationData(
    copy=Copy(headline="Headline", body="Body text", cta="Join now"),
    channel=Channel.PUSH,
)


def _student(**metadata) -> LoopContext:
    return LoopContext(user_id="student-1", persona=Persona.STUDENT, subject="algebra", metadata=metadata)


def _invitee(user_id: str = "friend-1", **metadata) -> LoopContext:
    return LoopContext(user_id=user_id, persona=Persona.STUDENT, metadata=metadata)


def _loop(harness, loop_id: ViralLoop):
    return harness.registry.get(loop_id)


def test_default_registry_holds_five_loops(harness) -> None:
    stats = harness.registry.stats()
    assert stats["total_loops"] == 5
    assert stats["loops_by_persona"] == {"student": 3, "parent": 2, "tutor": 1}
    assert ViralLoop.STREAK_RESCUE in harness.registry
    assert "buddy_challenge" in harness.registry
    assert "class_watch_party" not in harness.registry
    assert harness.registry.get("nonsense") is None


def test_registry_refuses_replacement(harness) -> None:
    registry = LoopRegistry()
    registry.register(ResultsRallyLoop(harness.links, harness.store))
    with pytest.raises(DuplicateLoopError):
        registry.register(ResultsRallyLoop(harness.links, harness.store))
    assert len(registry) == 1


@pytest.mark.parametrize(
    "score, expected",
    [(None, "medium"), (0, "medium"), (45, "easy"), (60, "medium"), (92, "hard")],
)
def test_infer_difficulty(score, expected: str) -> None:
    assert infer_difficulty(score) == expected


@pytest.mark.asyncio
async def test_buddy_challenge_eligibility(harness) -> None:
    loop = _loop(harness, ViralLoop.BUDDY_CHALLENGE)
    assert await loop.is_eligible(_student(practice_score=75))
    assert await loop.is_eligible(_student(challenge_deck_id="deck-1"))
    assert not await loop.is_eligible(_student())
    parent = LoopContext(user_id="p1", persona=Persona.PARENT, metadata={"practice_score": 90})
    assert not await loop.is_eligible(parent)


@pytest.mark.asyncio
async def test_buddy_challenge_invite_targets_challenge_deck(harness, clock) -> None:
    loop = _loop(harness, ViralLoop.BUDDY_CHALLENGE)
    invite = await loop.generate_invite(_student(practice_score=85, challenge_deck_id="deck-42"), PERSONALIZATION)

    assert urlparse(invite.link).path == "/challenge/deck-42"
    query = parse_qs(urlparse(invite.link).query)
    assert query["difficulty"] == ["hard"]
    assert invite.expires_at == clock.now + timedelta(hours=48)
    assert invite.channel is Channel.PUSH
    assert invite.message == "Headline\n\nBody text\n\nJoin now"


@pytest.mark.asyncio
async def test_buddy_challenge_rewards_inside_window(harness, clock) -> None:
    loop = _loop(harness, ViralLoop.BUDDY_CHALLENGE)
    invite = await loop.generate_invite(_student(practice_score=70), PERSONALIZATION)
    clock.advance(hours=48)

    outcome = await loop.process_fvm(invite.short_code, _invitee())

    assert outcome.success
    assert outcome.state is InviteState.FVM_REACHED
    assert outcome.reward.inviter.type is RewardType.STREAK_SHIELD
    assert outcome.reward.inviter.amount == 1
    assert outcome.reward.invitee.type is RewardType.STREAK_SHIELD
    assert outcome.reward.invitee.amount == 1
    assert outcome.reward.conditions.time_window_hours == 48


@pytest.mark.asyncio
async def test_buddy_challenge_no_reward_after_window(harness, clock) -> None:
    loop = _loop(harness, ViralLoop.BUDDY_CHALLENGE)
    invite = await loop.generate_invite(_student(practice_score=70), PERSONALIZATION)
    clock.advance(hours=48, minutes=1)

    outcome = await loop.process_fvm(invite.short_code, _invitee())

    assert not outcome.success
    assert outcome.reward is None
    assert outcome.state is InviteState.EXPIRED


@pytest.mark.asyncio
async def test_fvm_is_rewarded_once_per_invitee(harness) -> None:
    loop = _loop(harness, ViralLoop.BUDDY_CHALLENGE)
    invite = await loop.generate_invite(_student(practice_score=70), PERSONALIZATION)

    first = await loop.process_fvm(invite.short_code, _invitee())
    repeat = await loop.process_fvm(invite.short_code, _invitee())
    other = await loop.process_fvm(invite.short_code, _invitee("friend-2"))

    assert first.success
    assert not repeat.success
    assert repeat.reward is None
    assert repeat.rationale == "FVM already rewarded for this invitee"
    assert other.success


@pytest.mark.asyncio
async def test_self_referral_is_blocked(harness) -> None:
    loop = _loop(harness, ViralLoop.BUDDY_CHALLENGE)
    invite = await loop.generate_invite(_student(practice_score=70), PERSONALIZATION)

    join = await loop.process_join(invite.short_code, _invitee("student-1"))
    fvm = await loop.process_fvm(invite.short_code, _invitee("student-1"))

    assert join.error_code is ErrorCode.INELIGIBLE
    assert fvm.error_code is ErrorCode.INELIGIBLE
    assert fvm.reward is None


@pytest.mark.asyncio
async def test_loop_rejects_codes_from_other_loops(harness) -> None:
    buddy = _loop(harness, ViralLoop.BUDDY_CHALLENGE)
    rally = _loop(harness, ViralLoop.RESULTS_RALLY)
    invite = await buddy.generate_invite(_student(practice_score=70), PERSONALIZATION)

    outcome = await rally.process_fvm(invite.short_code, _invitee())
    assert outcome.error_code is ErrorCode.LINK_INVALID


@pytest.mark.asyncio
async def test_join_records_click_telemetry(harness) -> None:
    loop = _loop(harness, ViralLoop.RESULTS_RALLY)
    context = _student(result_type="diagnostic", score=88)
    invite = await loop.generate_invite(context, PERSONALIZATION)

    outcome = await loop.process_join(invite.short_code, _invitee(device_id="device-9", user_agent="UA"))

    assert outcome.success
    assert outcome.state is InviteState.JOINED
    assert outcome.invite.invitee_id == "friend-1"
    assert await loop.has_joined(invite.short_code, "friend-1")
    clicks = await harness.links.get_clicks(invite.short_code)
    assert clicks[0]["device_id"] == "device-9"


@pytest.mark.parametrize(
    "hours, eligible",
    [(10, True), (0, True), (24, True), (30, False), (-1, False)],
)
@pytest.mark.asyncio
async def test_streak_rescue_risk_window(harness, clock, hours: float, eligible: bool) -> None:
    loop = _loop(harness, ViralLoop.STREAK_RESCUE)
    context = _student(current_streak=7, streak_expires_at=(clock.now + timedelta(hours=hours)).isoformat())
    assert await loop.is_eligible(context) is eligible


@pytest.mark.asyncio
async def test_streak_rescue_needs_active_streak(harness, clock) -> None:
    loop = _loop(harness, ViralLoop.STREAK_RESCUE)
    expires = clock.now + timedelta(hours=5)
    assert not await loop.is_eligible(_student(current_streak=0, streak_expires_at=expires))
    assert not await loop.is_eligible(_student(current_streak=3))


@pytest.mark.asyncio
async def test_streak_rescue_invite_expires_with_streak(harness, clock) -> None:
    loop = _loop(harness, ViralLoop.STREAK_RESCUE)
    expires = clock.now + timedelta(hours=9, minutes=30)
    invite = await loop.generate_invite(_student(current_streak=7, streak_expires_at=expires), PERSONALIZATION)

    assert invite.expires_at == expires
    assert "My 7-day streak expires in 10 hours! Body text" in invite.message


@pytest.mark.asyncio
async def test_streak_rescue_requires_join_before_fvm(harness, clock) -> None:
    loop = _loop(harness, ViralLoop.STREAK_RESCUE)
    context = _student(current_streak=4, streak_expires_at=clock.now + timedelta(hours=6))
    invite = await loop.generate_invite(context, PERSONALIZATION)

    early = await loop.process_fvm(invite.short_code, _invitee())
    assert not early.success
    assert early.error_code is None
    assert early.state is InviteState.INVITE_GENERATED

    assert (await loop.process_join(invite.short_code, _invitee())).success
    rewarded = await loop.process_fvm(invite.short_code, _invitee())
    assert rewarded.success
    assert rewarded.reward.inviter.type is RewardType.STREAK_SHIELD


@pytest.mark.asyncio
async def test_results_rally_eligibility_and_copy(harness) -> None:
    loop = _loop(harness, ViralLoop.RESULTS_RALLY)
    assert not await loop.is_eligible(_student(score=90))
    assert not await loop.is_eligible(_student(result_type="diagnostic"))
    assert await loop.is_eligible(_student(result_type="diagnostic", percentile=91))

    ranked = loop.message_prefix(_student(rank=3, total_participants=40))
    assert ranked == "I ranked #3 out of 40! "
    assert loop.message_prefix(_student(percentile=91)) == "I scored in the 91th percentile! "

    rewards = loop.rewards()
    assert (rewards.inviter.type, rewards.inviter.amount) == (RewardType.GEM_BOOST, 50)
    assert (rewards.invitee.type, rewards.invitee.amount) == (RewardType.PRACTICE_POWER_UP, 1)


@pytest.mark.asyncio
async def test_results_rally_has_no_reward_window(harness, clock) -> None:
    loop = _loop(harness, ViralLoop.RESULTS_RALLY)
    invite = await loop.generate_invite(_student(result_type="quiz", score=70), PERSONALIZATION)
    clock.advance(days=20)
    assert (await loop.process_fvm(invite.short_code, _invitee())).success


@pytest.mark.asyncio
async def test_proud_parent(harness) -> None:
    loop = _loop(harness, ViralLoop.PROUD_PARENT)
    parent = LoopContext(
        user_id="parent-1",
        persona=Persona.PARENT,
        metadata={"child_progress": {"subject": "chemistry", "improvement": 20, "achievements": ["a", "b"]}},
    )
    assert await loop.is_eligible(parent)
    assert not await loop.is_eligible(LoopContext(user_id="parent-2", persona=Persona.PARENT))
    assert loop.message_prefix(parent) == "My child improved 20%! Earned 2 achievement(s)! "

    invite = await loop.generate_invite(parent, PERSONALIZATION)
    assert urlparse(invite.link).path == "/session/book"
    assert parse_qs(urlparse(invite.link).query)["subject"] == ["chemistry"]

    rewards = loop.rewards()
    assert rewards.inviter.type is RewardType.CLASS_PASS
    assert rewards.invitee.type is RewardType.CLASS_PASS


@pytest.mark.parametrize("rating, eligible", [(5, True), (4.5, False), (None, False)])
@pytest.mark.asyncio
async def test_tutor_spotlight_requires_five_stars(harness, rating, eligible: bool) -> None:
    loop = _loop(harness, ViralLoop.TUTOR_SPOTLIGHT)
    tutor = LoopContext(user_id="tutor-1", persona=Persona.TUTOR, metadata={"session_rating": rating})
    assert await loop.is_eligible(tutor) is eligible


@pytest.mark.asyncio
async def test_tutor_spotlight_invite_and_window(harness, clock) -> None:
    loop = _loop(harness, ViralLoop.TUTOR_SPOTLIGHT)
    tutor = LoopContext(
        user_id="tutor-1",
        persona=Persona.TUTOR,
        subject="physics",
        metadata={"session_rating": 5, "tutor_name": "Dr. Lee"},
    )
    invite = await loop.generate_invite(tutor, PERSONALIZATION)

    query = parse_qs(urlparse(invite.link).query)
    assert query["utm_source"] == ["tutor_referral"]
    assert query["utm_term"] == ["tutor-1"]
    assert "Dr. Lee (5★) specializes in physics. " in invite.message
    assert "\n\nClass Sampler: https://example.test/class-sampler/" in invite.message
    assert invite.expires_at == clock.now + timedelta(days=30)

    family = LoopContext(user_id="family-1", persona=Persona.PARENT)
    assert (await loop.process_join(invite.short_code, family)).success
    clock.advance(days=29)
    rewarded = await loop.process_fvm(invite.short_code, family)
    assert rewarded.success
    assert (rewarded.reward.inviter.type, rewarded.reward.inviter.amount) == (RewardType.XP_BOOST, 200)
    assert rewarded.reward.invitee.type is RewardType.CLASS_PASS


def test_loop_classes_declare_policy() -> None:
    assert BuddyChallengeLoop.reward_window == timedelta(hours=48)
    assert TutorSpotlightLoop.reward_window == timedelta(days=30)
    assert ResultsRallyLoop.reward_window is None
    assert ProudParentLoop.reward_window is None
    assert StreakRescueLoop.requires_join and TutorSpotlightLoop.requires_join
