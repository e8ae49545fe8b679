"""Session summary collaborator.

Transcription and summarisation live outside this service; the trigger
pipeline only attaches whatever the provider returns as opaque context.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Protocol


@dataclass(slots=True)
class SessionSummary:
    skill_gaps: List[str] = field(default_factory=list)
    strengths: List[str] = field(default_factory=list)
    next_steps: List[str] = field(default_factory=list)

    def to_context(self) -> Dict[str, Any]:
        return {
            "skill_gaps": list(self.skill_gaps),
            "strengths": list(self.strengths),
            "next_steps": list(self.next_steps),
        }


class SummaryProvider(Protocol):
    async def summarize(self, transcript: str) -> SessionSummary:
        ...


class EmptySummaryProvider:
    async def summarize(self, transcript: str) -> SessionSummary:  # noqa: ARG002
        return SessionSummary()


__all__ = ["EmptySummaryProvider", "SessionSummary", "SummaryProvider"]
