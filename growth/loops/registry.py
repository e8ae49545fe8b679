from __future__ import annotations

import logging
from typing import Dict, Iterator, List, Optional

from xfactor.storage import KeyValueStore
from xfactor.types import Persona, ViralLoop

from growth.links import AttributionLinkService

from .base import BaseLoop, Clock
from .buddy_challenge import BuddyChallengeLoop
from .proud_parent import ProudParentLoop
from .results_rally import ResultsRallyLoop
from .streak_rescue import StreakRescueLoop
from .tutor_spotlight import TutorSpotlightLoop

logger = logging.getLogger(__name__)

DEFAULT_LOOPS = (
    BuddyChallengeLoop,
    ResultsRallyLoop,
    ProudParentLoop,
    StreakRescueLoop,
    TutorSpotlightLoop,
)


class DuplicateLoopError(ValueError):
    pass


class LoopRegistry:
    """Owns loop definitions for the lifetime of the process.

    Loops can be added but never replaced or removed.
    """

    def __init__(self) -> None:
        self._loops: Dict[ViralLoop, BaseLoop] = {}

    def register(self, loop: BaseLoop) -> None:
        if loop.loop_id in self._loops:
            raise DuplicateLoopError(f"Loop {loop.loop_id.value} already registered")
        self._loops[loop.loop_id] = loop
        logger.info("loop registered: %s", loop.loop_id.value)

    def get(self, loop_id: ViralLoop | str) -> Optional[BaseLoop]:
        try:
            key = ViralLoop(loop_id)
        except ValueError:
            return None
        return self._loops.get(key)

    def all(self) -> List[BaseLoop]:
        return list(self._loops.values())

    def by_persona(self, persona: Persona) -> List[BaseLoop]:
        return [loop for loop in self._loops.values() if persona in loop.supported_personas]

    def stats(self) -> Dict[str, object]:
        return {
            "total_loops": len(self._loops),
            "loops_by_persona": {
                persona.value: len(self.by_persona(persona)) for persona in Persona
            },
            "loop_ids": [loop_id.value for loop_id in self._loops],
        }

    def __contains__(self, loop_id: object) -> bool:
        return self.get(loop_id) is not None  # type: ignore[arg-type]

    def __iter__(self) -> Iterator[BaseLoop]:
        return iter(self.all())

    def __len__(self) -> int:
        return len(self._loops)


def create_default_registry(
    links: AttributionLinkService,
    store: KeyValueStore,
    *,
    clock: Clock | None = None,
) -> LoopRegistry:
    registry = LoopRegistry()
    for loop_cls in DEFAULT_LOOPS:
        registry.register(loop_cls(links, store, clock=clock))
    return registry


__all__ = ["DEFAULT_LOOPS", "DuplicateLoopError", "LoopRegistry", "create_default_registry"]
