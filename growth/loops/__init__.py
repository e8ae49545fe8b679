"""Viral loop state machines, their registry and the executor driving them."""

from .base import (
    BaseLoop,
    InviteState,
    LoopContext,
    LoopInvite,
    LoopOutcome,
    PersonalizationData,
    Reward,
    RewardPair,
)
from .buddy_challenge import BuddyChallengeLoop
from .proud_parent import ProudParentLoop
from .registry import LoopRegistry, create_default_registry
from .results_rally import ResultsRallyLoop
from .streak_rescue import StreakRescueLoop
from .tutor_spotlight import TutorSpotlightLoop

__all__ = [
    "BaseLoop",
    "BuddyChallengeLoop",
    "InviteState",
    "LoopContext",
    "LoopInvite",
    "LoopOutcome",
    "LoopRegistry",
    "PersonalizationData",
    "ProudParentLoop",
    "ResultsRallyLoop",
    "Reward",
    "RewardPair",
    "StreakRescueLoop",
    "TutorSpotlightLoop",
    "create_default_registry",
]
