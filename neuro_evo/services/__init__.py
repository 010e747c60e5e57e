"""
neuro_evo/services/

Running the simulation as a service.

Architecture:
- Engine: owns the population, runs the tick loop and generation transitions
- Events: publishes lifecycle events and stats snapshots to viewers
- Advisory: optional outside scoring of finished generations

The engine only ever hands out frozen snapshots. Nothing it receives
back can stall or crash the loop.
"""

from .events import (
    EventPublisher,
    InMemoryEventPublisher,
    RedisEventPublisher,
    SimulationEvent,
    create_publisher,
)
from .advisory import Advisor, AdvisorConfig, AdvisoryRecord, OpenAIAdvisor, create_advisor
from .engine import EngineConfig, EngineState, SimulationEngine

__all__ = [
    "EventPublisher",
    "InMemoryEventPublisher",
    "RedisEventPublisher",
    "SimulationEvent",
    "create_publisher",
    "Advisor",
    "AdvisorConfig",
    "AdvisoryRecord",
    "OpenAIAdvisor",
    "create_advisor",
    "EngineConfig",
    "EngineState",
    "SimulationEngine",
]
