from __future__ import annotations

import re
from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import pytest

from growth.links import (
    AttributionLinkService,
    ClickMetadata,
    LinkConfig,
    LinkContext,
    ShortCodeCollisionError,
    UtmParams,
    fvm_path,
)
from xfactor.signing import short_code_for, sign_link, verify_link
from xfactor.storage import InMemoryKeyValueStore
from xfactor.types import ErrorCode, FvmType, Persona, ViralLoop


def _config(**overrides) -> LinkConfig:
    values = dict(
        user_id="student-1",
        loop_id=ViralLoop.RESULTS_RALLY,
        persona=Persona.STUDENT,
        fvm_type=FvmType.PRACTICE,
        context=LinkContext(subject="algebra", skill="fractions", difficulty="medium"),
        utm=UtmParams(source="viral_growth", term="spring"),
    )
    values.update(overrides)
    return LinkConfig(**values)


@pytest.mark.parametrize(
    "fvm_type, challenge_id, expected",
    [
        (FvmType.PRACTICE, None, "/practice/start"),
        (FvmType.AI_TUTOR, None, "/ai-tutor/start"),
        (FvmType.SESSION, None, "/session/book"),
        (FvmType.CHALLENGE, None, "/challenge/start"),
        (FvmType.CHALLENGE, "deck-9", "/challenge/deck-9"),
    ],
)
def test_fvm_path(fvm_type: FvmType, challenge_id, expected: str) -> None:
    assert fvm_path(fvm_type, challenge_id) == expected


def test_signing_helpers_roundtrip() -> None:
    signature = sign_link("link-1", "u1", "buddy_challenge", secret="s")
    assert len(signature) == 16
    assert verify_link(signature, "link-1", "u1", "buddy_challenge", secret="s")
    assert not verify_link(signature, "link-1", "u2", "buddy_challenge", secret="s")
    assert not verify_link(signature, "link-1", "u1", "buddy_challenge", secret="other")
    assert not verify_link(None, "link-1", "u1", "buddy_challenge", secret="s")


def test_truncated_signature_is_rejected() -> None:
    signature = sign_link("link-1", "u1", "buddy_challenge", secret="s")
    for size in (1, 8, 15):
        assert not verify_link(signature[:size], "link-1", "u1", "buddy_challenge", secret="s")
    assert verify_link(signature[:8], "link-1", "u1", "buddy_challenge", secret="s", length=8)


def test_short_code_is_uppercase_and_fixed_length() -> None:
    code = short_code_for("some-link-id")
    assert re.fullmatch(r"[0-9A-F]{8}", code)
    assert short_code_for("some-link-id") == code


@pytest.mark.asyncio
async def test_generate_link_builds_attribution_url(harness) -> None:
    link = await harness.links.generate_link(_config(referrer_id="parent-7"))

    assert re.fullmatch(r"[0-9A-Z]{8}", link.short_code)
    parsed = urlparse(link.full_url)
    assert parsed.netloc == "example.test"
    assert parsed.path == "/practice/start"

    query = parse_qs(parsed.query)
    assert query["linkId"] == [link.metadata.link_id]
    assert query["sig"] == [link.signature]
    assert query["loop"] == ["results_rally"]
    assert query["persona"] == ["student"]
    assert query["fvm"] == ["practice"]
    assert query["subject"] == ["algebra"]
    assert query["skill"] == ["fractions"]
    assert query["difficulty"] == ["medium"]
    assert query["utm_source"] == ["viral_growth"]
    assert query["utm_medium"] == ["referral"]
    assert query["utm_campaign"] == ["results_rally"]
    assert query["utm_term"] == ["spring"]
    assert query["ref"] == ["student-1"]
    assert query["referrer"] == ["parent-7"]
    assert link.full_url.startswith(link.deep_link)
    assert "utm_source" not in link.deep_link


@pytest.mark.asyncio
async def test_default_and_loop_specific_expiry(harness, clock) -> None:
    rally = await harness.links.generate_link(_config())
    buddy = await harness.links.generate_link(
        _config(loop_id=ViralLoop.BUDDY_CHALLENGE, fvm_type=FvmType.CHALLENGE)
    )

    assert rally.expires_at == clock.now + timedelta(days=30)
    assert buddy.expires_at == clock.now + timedelta(hours=48)
    assert "/challenge/start" in buddy.deep_link


@pytest.mark.asyncio
async def test_resolve_counts_clicks_monotonically(harness) -> None:
    link = await harness.links.generate_link(_config())

    first = await harness.links.resolve(link.short_code)
    second = await harness.links.resolve(link.short_code)

    assert first.ok and second.ok
    assert first.link.metadata.click_count == 1
    assert second.link.metadata.click_count == 2
    stats = await harness.links.get_link_stats(link.short_code)
    assert stats.clicks == 2
    assert stats.tracked_clicks == 0


@pytest.mark.asyncio
async def test_resolve_unknown_code(harness) -> None:
    resolution = await harness.links.resolve("NOPE0000")
    assert not resolution.ok
    assert resolution.error_code is ErrorCode.LINK_INVALID
    assert await harness.links.resolve_link("") is None


@pytest.mark.asyncio
async def test_expired_link_is_evicted_on_resolution(harness, clock) -> None:
    link = await harness.links.generate_link(_config())
    clock.advance(days=30, seconds=1)

    expired = await harness.links.resolve(link.short_code)
    assert expired.error_code is ErrorCode.LINK_EXPIRED
    assert await harness.store.get(f"link:{link.short_code}") is None

    again = await harness.links.resolve(link.short_code)
    assert again.error_code is ErrorCode.LINK_INVALID


@pytest.mark.asyncio
async def test_link_resolves_until_exact_expiry(harness, clock) -> None:
    link = await harness.links.generate_link(_config())
    clock.now = link.expires_at
    assert (await harness.links.resolve(link.short_code)).ok


@pytest.mark.asyncio
async def test_tampered_signature_is_rejected(harness) -> None:
    link = await harness.links.generate_link(_config())
    key = f"link:{link.short_code}"
    raw = await harness.store.get(key)
    raw["metadata"]["inviter_id"] = "someone-else"
    await harness.store.set(key, raw)

    resolution = await harness.links.resolve(link.short_code)
    assert resolution.error_code is ErrorCode.LINK_INVALID


@pytest.mark.asyncio
async def test_link_from_other_secret_fails_verification(clock) -> None:
    store = InMemoryKeyValueStore()
    issuer = AttributionLinkService(store, base_url="https://a.test", secret="one", clock=clock)
    reader = AttributionLinkService(store, base_url="https://a.test", secret="two", clock=clock)
    link = await issuer.generate_link(_config())

    assert (await reader.resolve(link.short_code)).error_code is ErrorCode.LINK_INVALID
    assert (await issuer.resolve(link.short_code)).ok


@pytest.mark.asyncio
async def test_track_click_is_idempotent_and_does_not_count(harness, clock) -> None:
    link = await harness.links.generate_link(_config())
    click = ClickMetadata(timestamp=clock.now, user_agent="UA/1", ip_address="10.0.0.1", device_id="dev-1")

    assert await harness.links.track_click(link.short_code, click)
    assert await harness.links.track_click(link.short_code, click)
    assert await harness.links.track_click(
        link.short_code, ClickMetadata(timestamp=clock.now, device_id="dev-2")
    )

    clicks = await harness.links.get_clicks(link.short_code)
    assert [c["device_id"] for c in clicks] == ["dev-1", "dev-2"]
    stats = await harness.links.get_link_stats(link.short_code)
    assert stats.clicks == 0
    assert stats.tracked_clicks == 2


@pytest.mark.asyncio
async def test_track_click_ignores_unknown_and_expired(harness, clock) -> None:
    assert not await harness.links.track_click("MISSING1")
    link = await harness.links.generate_link(_config())
    clock.advance(days=31)
    assert not await harness.links.track_click(link.short_code)


@pytest.mark.asyncio
async def test_short_code_collision_is_regenerated(clock) -> None:
    ids = iter(["dup", "dup", "fresh"])
    service = AttributionLinkService(
        InMemoryKeyValueStore(), base_url="https://a.test", secret="s", clock=clock, id_factory=lambda: next(ids)
    )
    first = await service.generate_link(_config())
    second = await service.generate_link(_config())

    assert first.short_code == short_code_for("dup")
    assert second.short_code == short_code_for("fresh")


@pytest.mark.asyncio
async def test_short_code_collision_gives_up(clock) -> None:
    service = AttributionLinkService(
        InMemoryKeyValueStore(), base_url="https://a.test", secret="s", clock=clock, id_factory=lambda: "same"
    )
    await service.generate_link(_config())
    with pytest.raises(ShortCodeCollisionError):
        await service.generate_link(_config())


@pytest.mark.asyncio
async def test_user_link_index(harness) -> None:
    first = await harness.links.generate_link(_config())
    second = await harness.links.generate_link(_config(loop_id=ViralLoop.PROUD_PARENT, persona=Persona.PARENT))
    await harness.links.generate_link(_config(user_id="student-2"))

    links = await harness.links.get_user_links("student-1")
    assert [link.short_code for link in links] == [first.short_code, second.short_code]


def test_link_config_rejects_empty_user() -> None:
    with pytest.raises(ValueError):
        _config(user_id="")
