"""Capability agents and the resilient layer that routes requests to them."""

from .communication import AgentCommunicationLayer, AgentHealth, CircuitBreakerState
from .protocol import AgentError, AgentRequest, AgentResponse, BaseAgent, HealthProbe

__all__ = [
    "AgentCommunicationLayer",
    "AgentError",
    "AgentHealth",
    "AgentRequest",
    "AgentResponse",
    "BaseAgent",
    "CircuitBreakerState",
    "HealthProbe",
]
