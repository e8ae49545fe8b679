"""Viral growth loops: event stream, attribution links, loop state machines and analytics."""
from .events import EventBus, EventLog, ViralEvent
from .links import AttributionLink, AttributionLinkService, LinkConfig

__all__ = [
    "AttributionLink",
    "AttributionLinkService",
    "EventBus",
    "EventLog",
    "LinkConfig",
    "ViralEvent",
]
