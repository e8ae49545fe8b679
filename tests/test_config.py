from __future__ import annotations

import pytest
from pydantic import ValidationError

from xfactor.config import Settings


def test_defaults() -> None:
    config = Settings(_env_file=None)
    assert config.BASE_URL == "https://varsitytutors.com"
    assert config.LINK_SHORT_CODE_LENGTH == 8
    assert config.AGENT_MAX_RETRIES == 3
    assert config.AGENT_TIMEOUT == pytest.approx(0.2)
    assert config.K_FACTOR_TARGET == pytest.approx(1.2)
    assert config.DEFAULT_COHORT == "organic"


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("https://example.test/", "https://example.test"),
        ("  https://example.test  ", "https://example.test"),
        ("", "https://varsitytutors.com"),
    ],
)
def test_base_url_is_normalised(raw: str, expected: str) -> None:
    assert Settings(_env_file=None, BASE_URL=raw).BASE_URL == expected


def test_prod_requires_real_link_secret() -> None:
    with pytest.raises(ValidationError):
        Settings(_env_file=None, ENVIRONMENT="prod")
    config = Settings(_env_file=None, ENVIRONMENT="prod", LINK_SECRET="rotated-secret")
    assert config.LINK_SECRET == "rotated-secret"


def test_link_secret_env_alias(monkeypatch) -> None:
    monkeypatch.setenv("SMART_LINK_SECRET", "from-env")
    assert Settings(_env_file=None).LINK_SECRET == "from-env"


@pytest.mark.parametrize(
    "field, value",
    [
        ("LINK_SHORT_CODE_LENGTH", 2),
        ("AGENT_TIMEOUT", 0),
        ("EXPERIMENT_TREATMENT_SHARE", 1.5),
    ],
)
def test_bounds_are_validated(field: str, value) -> None:
    with pytest.raises(ValidationError):
        Settings(_env_file=None, **{field: value})


def test_cohorts_and_remote_agents_from_env(monkeypatch) -> None:
    monkeypatch.setenv("REPORT_COHORTS", '["organic", "spring-2026"]')
    monkeypatch.setenv("REMOTE_AGENTS", '{"incentives": "https://incentives.internal"}')

    config = Settings(_env_file=None)

    assert config.REPORT_COHORTS == ["organic", "spring-2026"]
    assert config.REMOTE_AGENTS == {"incentives": "https://incentives.internal"}
    assert Settings(_env_file=None, REMOTE_AGENTS={}).REMOTE_AGENTS == {}
