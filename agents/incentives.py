"""Reward economy: budgets, per-user caps and abuse scoring."""

from __future__ import annotations

import logging
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional, Tuple

from growth.events import EventBus
from xfactor.config import settings
from xfactor.types import ErrorCode, EventType, RewardType

from .personalization import reward_description
from .protocol import AgentRequest, AgentResponse, BaseAgent

logger = logging.getLogger(__name__)

REWARD_COSTS: Mapping[RewardType, float] = {
    RewardType.AI_TUTOR_MINUTES: 10,
    RewardType.CLASS_PASS: 500,
    RewardType.GEM_BOOST: 1,
    RewardType.XP_BOOST: 0.5,
    RewardType.STREAK_SHIELD: 50,
    RewardType.PRACTICE_POWER_UP: 25,
}

RECENT_REWARDS_KEPT = 20
ABUSE_SCORE_THRESHOLD = 50


def reward_cost(reward_type: RewardType, amount: float) -> float:
    return REWARD_COSTS.get(RewardType(reward_type), 1) * amount


def _period_keys(moment: datetime) -> Tuple[date, Tuple[int, int], Tuple[int, int]]:
    iso = moment.isocalendar()
    return moment.date(), (iso[0], iso[1]), (moment.year, moment.month)


class BudgetLedger:
    """Program-wide reward budget that refills on calendar boundaries."""

    def __init__(
        self,
        *,
        daily: float | None = None,
        weekly: float | None = None,
        monthly: float | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.daily_limit = settings.DAILY_BUDGET if daily is None else daily
        self.weekly_limit = settings.WEEKLY_BUDGET if weekly is None else weekly
        self.monthly_limit = settings.MONTHLY_BUDGET if monthly is None else monthly
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._keys = _period_keys(self._clock())
        self.daily = self.daily_limit
        self.weekly = self.weekly_limit
        self.monthly = self.monthly_limit

    def roll(self) -> None:
        day, week, month = _period_keys(self._clock())
        if day != self._keys[0]:
            self.daily = self.daily_limit
        if week != self._keys[1]:
            self.weekly = self.weekly_limit
        if month != self._keys[2]:
            self.monthly = self.monthly_limit
        self._keys = (day, week, month)

    def can_afford(self, cost: float) -> bool:
        self.roll()
        return self.daily >= cost and self.weekly >= cost and self.monthly >= cost

    def debit(self, cost: float) -> None:
        self.roll()
        self.daily -= cost
        self.weekly -= cost
        self.monthly -= cost

    def status(self) -> Dict[str, float]:
        self.roll()
        return {
            "daily_remaining": self.daily,
            "weekly_remaining": self.weekly,
            "monthly_remaining": self.monthly,
        }


@dataclass(slots=True)
class _GrantedReward:
    type: str
    amount: float
    granted_at: datetime


@dataclass(slots=True)
class UserRewardHistory:
    keys: Tuple[date, Tuple[int, int], Tuple[int, int]]
    daily: int = 0
    weekly: int = 0
    monthly: int = 0
    recent: Deque[_GrantedReward] = field(default_factory=lambda: deque(maxlen=RECENT_REWARDS_KEPT))

    def roll(self, now: datetime) -> None:
        day, week, month = _period_keys(now)
        if day != self.keys[0]:
            self.daily = 0
        if week != self.keys[1]:
            self.weekly = 0
        if month != self.keys[2]:
            self.monthly = 0
        self.keys = (day, week, month)


@dataclass(slots=True)
class AbuseCheck:
    detected: bool
    score: int
    reasons: List[str]

    @property
    def reason(self) -> Optional[str]:
        return "; ".join(self.reasons) or None


class IncentivesAgent(BaseAgent):
    name = "incentives"
    actions = {
        "allocate": "allocate",
        "check_budget": "check_budget",
        "detect_abuse": "detect_abuse",
        "track_redemption": "track_redemption",
    }

    def __init__(
        self,
        *,
        bus: EventBus | None = None,
        ledger: BudgetLedger | None = None,
        clock: Callable[[], datetime] | None = None,
        max_daily_rewards: int | None = None,
        max_weekly_rewards: int | None = None,
        max_monthly_rewards: int | None = None,
        max_latency_ms: int | None = None,
    ) -> None:
        super().__init__(max_latency_ms=max_latency_ms)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._bus = bus
        self.ledger = ledger or BudgetLedger(clock=self._clock)
        self.max_daily_rewards = max_daily_rewards or settings.MAX_DAILY_REWARDS
        self.max_weekly_rewards = max_weekly_rewards or settings.MAX_WEEKLY_REWARDS
        self.max_monthly_rewards = max_monthly_rewards or settings.MAX_MONTHLY_REWARDS
        self._users: Dict[str, UserRewardHistory] = {}

    async def allocate(self, request: AgentRequest) -> AgentResponse:
        parsed = self._parse_reward(request.context)
        if isinstance(parsed, str):
            return self.fail(request, ErrorCode.VALIDATION, parsed)
        reward_type, amount = parsed

        abuse = self.score_abuse(request.user_id)
        if abuse.detected:
            logger.info("reward denied for %s: abuse score %s", request.user_id, abuse.score)
            return self.fail(
                request,
                ErrorCode.ABUSE_DETECTED,
                abuse.reason or "abuse detected",
                rationale=f"Abuse detected: {abuse.reason}. Reward allocation denied.",
                data={"approved": False, "abuse_detected": True, "abuse_score": abuse.score},
            )

        cost = reward_cost(reward_type, amount)
        if not self.ledger.can_afford(cost):
            logger.info("reward denied for %s: budget exhausted (cost %s)", request.user_id, cost)
            return self.fail(
                request,
                ErrorCode.BUDGET_EXCEEDED,
                "Budget limit reached",
                rationale="Budget exceeded. Cannot allocate reward.",
                data={"approved": False, "budget_status": self.ledger.status()},
            )

        history = self._history(request.user_id)
        cap = self._exceeded_cap(history)
        if cap is not None:
            return self.fail(
                request,
                ErrorCode.RATE_LIMITED,
                f"{cap} limit exceeded",
                rationale=f"{cap} reward limit reached.",
                data={"approved": False},
            )

        self.ledger.debit(cost)
        history.daily += 1
        history.weekly += 1
        history.monthly += 1
        history.recent.append(_GrantedReward(reward_type.value, amount, self._clock()))

        budget = self.ledger.status()
        return self.ok(
            request,
            (
                f"Reward allocated: {amount} {reward_type.value} (cost: {cost} units). Budget remaining: "
                f"{budget['daily_remaining']} daily, {budget['weekly_remaining']} weekly."
            ),
            {
                "approved": True,
                "reward": {
                    "type": reward_type.value,
                    "amount": amount,
                    "description": reward_description(reward_type, amount),
                },
                "budget_status": budget,
            },
            features_used=["reward_type", "amount", "cost_calculation", "budget_check", "user_limits", "abuse_detection"],
            confidence=0.9,
        )

    async def check_budget(self, request: AgentRequest) -> AgentResponse:
        self.ledger.roll()
        return self.ok(
            request,
            (
                f"Budget status: Daily {self.ledger.daily}/{self.ledger.daily_limit}, "
                f"Weekly {self.ledger.weekly}/{self.ledger.weekly_limit}, "
                f"Monthly {self.ledger.monthly}/{self.ledger.monthly_limit}"
            ),
            {"budget_status": self.ledger.status()},
            features_used=["budget_tracking"],
            confidence=1.0,
        )

    async def detect_abuse(self, request: AgentRequest) -> AgentResponse:
        abuse = self.score_abuse(request.user_id)
        return self.ok(
            request,
            f"Abuse detected: {abuse.reason}" if abuse.detected else "No abuse patterns detected",
            {"abuse_detected": abuse.detected, "abuse_score": abuse.score, "reason": abuse.reason},
            features_used=["user_history", "reward_patterns", "rate_limits"],
            confidence=0.85,
        )

    async def track_redemption(self, request: AgentRequest) -> AgentResponse:
        ctx = request.context
        parsed = self._parse_reward(ctx)
        if isinstance(parsed, str):
            return self.fail(request, ErrorCode.VALIDATION, parsed)
        reward_type, amount = parsed
        if self._bus is not None:
            self._bus.emit(
                EventType.REWARD_CLAIMED,
                request.user_id,
                cohort=ctx.get("cohort"),
                referred=bool(ctx.get("referred", False)),
                metadata={
                    "reward_type": reward_type.value,
                    "amount": amount,
                    "loop_id": ctx.get("loop_id"),
                    "invite_code": ctx.get("invite_code"),
                },
            )
        return self.ok(request, "Reward redemption tracked", features_used=["redemption_tracking"], confidence=1.0)

    def score_abuse(self, user_id: str) -> AbuseCheck:
        history = self._history(user_id)
        horizon = self._clock() - timedelta(hours=1)
        last_hour = [reward for reward in history.recent if reward.granted_at > horizon]

        score = 0
        reasons: List[str] = []
        if len(last_hour) > 10:
            score += 50
            reasons.append(f"Too many rewards in short time ({len(last_hour)} in 1 hour)")
        if last_hour:
            _, same_type = Counter(reward.type for reward in last_hour).most_common(1)[0]
            if same_type > 5:
                score += 30
                reasons.append("Suspicious pattern: same reward type repeatedly")
        if history.daily > self.max_daily_rewards:
            score += 40
            reasons.append(f"Daily limit exceeded: {history.daily}")
        return AbuseCheck(score >= ABUSE_SCORE_THRESHOLD, score, reasons)

    def _history(self, user_id: str) -> UserRewardHistory:
        now = self._clock()
        history = self._users.get(user_id)
        if history is None:
            history = self._users[user_id] = UserRewardHistory(keys=_period_keys(now))
        history.roll(now)
        return history

    def _exceeded_cap(self, history: UserRewardHistory) -> Optional[str]:
        if history.daily >= self.max_daily_rewards:
            return "Daily"
        if history.weekly >= self.max_weekly_rewards:
            return "Weekly"
        if history.monthly >= self.max_monthly_rewards:
            return "Monthly"
        return None

    @staticmethod
    def _parse_reward(ctx: Mapping[str, Any]) -> Tuple[RewardType, float] | str:
        raw_type = ctx.get("reward_type")
        amount = ctx.get("amount")
        if not raw_type or not amount:
            return "Reward type and amount required"
        try:
            reward_type = RewardType(raw_type)
        except ValueError:
            return f"Unknown reward type: {raw_type}"
        if not isinstance(amount, (int, float)) or isinstance(amount, bool) or amount <= 0:
            return "Reward amount must be a positive number"
        return reward_type, amount


__all__ = [
    "AbuseCheck",
    "BudgetLedger",
    "IncentivesAgent",
    "REWARD_COSTS",
    "UserRewardHistory",
    "reward_cost",
]
