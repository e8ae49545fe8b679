from pydantic import AliasChoices, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    ENVIRONMENT: str = Field(default="local")
    BASE_URL: str = "https://varsitytutors.com"

    # Attribution links
    LINK_SECRET: str = Field(
        default="dev-link-secret",
        validation_alias=AliasChoices("LINK_SECRET", "SMART_LINK_SECRET"),
    )
    LINK_SHORT_CODE_LENGTH: int = Field(default=8, ge=4, le=64)
    LINK_SIGNATURE_LENGTH: int = Field(default=16, ge=8, le=64)
    LINK_DEFAULT_EXPIRY_DAYS: int = Field(default=30, ge=1)

    # Agent calls
    AGENT_MAX_RETRIES: int = Field(default=3, ge=0)
    AGENT_RETRY_DELAY: float = Field(default=0.1, ge=0.0)
    AGENT_TIMEOUT: float = Field(default=0.2, gt=0.0)
    AGENT_BREAKER_THRESHOLD: int = Field(default=5, ge=1)
    AGENT_BREAKER_COOLDOWN: float = Field(default=60.0, ge=0.0)
    AGENT_SLA_MS: int = 150

    # Event log / analytics
    EVENT_LOG_CAPACITY: int = Field(default=100_000, ge=1)
    DEFAULT_COHORT: str = "organic"
    K_FACTOR_TARGET: float = 1.20
    GUARDRAIL_COMPLAINT_RATE: float = 0.01
    GUARDRAIL_OPT_OUT_RATE: float = 0.01
    GUARDRAIL_FRAUD_RATE: float = 0.005
    GUARDRAIL_SUPPORT_TICKETS: int = 100
    EXPERIMENT_TREATMENT_SHARE: float = Field(default=0.5, ge=0.0, le=1.0)

    # Orchestrator
    MAX_INVITES_PER_DAY: int = 5
    INVITE_COOLDOWN_MINUTES: int = 60
    MAX_LOOPS_PER_TRIGGER: int = 2

    # Trust & safety
    TS_MAX_INVITES_PER_HOUR: int = 3
    TS_MAX_INVITES_PER_DAY: int = 5
    TS_MIN_AGE_COPPA: int = 13
    TS_FRAUD_SCORE_THRESHOLD: int = 50

    # Incentives
    MAX_DAILY_REWARDS: int = 10
    MAX_WEEKLY_REWARDS: int = 50
    MAX_MONTHLY_REWARDS: int = 200
    DAILY_BUDGET: float = 1000
    WEEKLY_BUDGET: float = 5000
    MONTHLY_BUDGET: float = 20000

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_DIR: str = "logs"

    # Storage / web
    REDIS_URL: str | None = None
    WEB_HOST: str = "0.0.0.0"
    WEB_PORT: int = 8080
    METRICS_REFRESH_SECONDS: int = Field(default=60, ge=1)
    LOOP_DIGEST_SECONDS: int = Field(default=3600, ge=1)
    # JSON list in the environment, e.g. ["organic", "spring-2026"]
    REPORT_COHORTS: list[str] = Field(default_factory=lambda: ["organic"])

    # Agents hosted elsewhere: JSON object of agent name to base URL
    REMOTE_AGENTS: dict[str, str] = Field(default_factory=dict)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    @field_validator("BASE_URL", mode="before")
    @classmethod
    def _strip_base_url(cls, v):
        if v in (None, ""):
            return "https://varsitytutors.com"
        return str(v).strip().rstrip("/")

    @model_validator(mode="after")
    def _check_secret(self) -> "Settings":
        env = (self.ENVIRONMENT or "").strip().lower()
        if env == "prod" and self.LINK_SECRET == "dev-link-secret":
            raise ValueError("LINK_SECRET must be configured in prod")
        return self


settings = Settings()
