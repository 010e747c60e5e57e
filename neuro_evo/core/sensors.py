"""
core/sensors.py

What an agent perceives each tick.

Perception is pluggable. The reference provider knows only where the
agent is; the remaining six channels are noise, placeholders for real
sensing of the environment.
"""

from __future__ import annotations
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Optional
import numpy as np

from .policy import SENSOR_COUNT

if TYPE_CHECKING:
    from neuro_evo.environments.arena import Arena
    from .agent import Agent


class SensorProvider(ABC):
    """Produces the sensor vector for one agent at the current tick."""

    @abstractmethod
    def read(self, agent: Agent, environment: Arena) -> np.ndarray:
        """Return a vector of SENSOR_COUNT floats."""
        pass


class RandomSensorProvider(SensorProvider):
    """
    Normalized position plus six uniform noise channels.

        [x / width, y / height, r1, r2, r3, r4, r5, r6]
    """

    def __init__(self, rng: Optional[np.random.Generator] = None):
        self.rng = rng if rng is not None else np.random.default_rng()

    def read(self, agent: Agent, environment: Arena) -> np.ndarray:
        x, y = environment.normalize(agent.x, agent.y)
        noise = self.rng.random(SENSOR_COUNT - 2)
        return np.concatenate([[x, y], noise])
