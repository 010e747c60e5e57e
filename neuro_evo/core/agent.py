"""
core/agent.py

One walker in the arena.

Sense, decide, move, count the distance.
Nothing else is asked of it.
"""

from __future__ import annotations
from collections import deque
from typing import TYPE_CHECKING, Deque, Optional, Tuple
import itertools
import math
import numpy as np

from neuro_evo.errors import ShapeMismatchError
from .policy import PolicyNetwork, SENSOR_COUNT

if TYPE_CHECKING:
    from neuro_evo.environments.arena import Arena
    from .sensors import SensorProvider

HISTORY_LENGTH = 5

# Action index -> unit step (screen coordinates, y grows downward)
MOVES = {
    0: (0.0, -1.0),   # up
    1: (1.0, 0.0),    # right
    2: (0.0, 1.0),    # down
    3: (-1.0, 0.0),   # left
}

_agent_ids = itertools.count()


class Agent:
    """
    A single simulated entity.

    Owns exactly one PolicyNetwork. Position never leaves the arena.
    Fitness is the distance travelled this generation.
    """

    def __init__(
        self,
        brain: PolicyNetwork,
        position: Tuple[float, float],
        environment: Arena,
        agent_id: Optional[str] = None,
    ):
        self.id = agent_id or f"agent_{next(_agent_ids)}"
        self.brain = brain
        self.environment = environment

        self.x, self.y = environment.clamp(float(position[0]), float(position[1]))

        self.fitness = 0.0
        self.distance_traveled = 0.0
        self.age = 0
        # Fitness this agent carried over as an elite
        self.inherited_fitness = 0.0

        # Pre-move positions, display heading only
        self.history: Deque[Tuple[float, float]] = deque(maxlen=HISTORY_LENGTH)

    # ==================== Core Loop ====================

    def sense(self, environment: Arena, sensors: SensorProvider) -> np.ndarray:
        """Sensor vector for this tick."""
        reading = np.asarray(sensors.read(self, environment), dtype=np.float64)
        if reading.shape != (SENSOR_COUNT,):
            raise ShapeMismatchError(
                f"Sensor provider returned shape {reading.shape}, expected ({SENSOR_COUNT},)"
            )
        return reading

    def decide(self, sensor_vector: np.ndarray) -> int:
        return self.brain.evaluate(sensor_vector)

    def act(self, action: int, speed: float) -> float:
        """
        Move `speed` units in a cardinal direction, clamped to the arena.

        Returns the distance actually moved (0 against a wall).
        """
        if action not in MOVES:
            raise ValueError(f"Unknown action: {action}")

        prev_x, prev_y = self.x, self.y
        self.history.append((prev_x, prev_y))

        dx, dy = MOVES[action]
        self.x, self.y = self.environment.clamp(prev_x + dx * speed, prev_y + dy * speed)

        moved = math.hypot(self.x - prev_x, self.y - prev_y)
        self.distance_traveled += moved
        self.age += 1
        return moved

    def update_fitness(self) -> None:
        self.fitness = self.distance_traveled

    def reset(self) -> None:
        """Clear everything scoped to a generation."""
        self.fitness = 0.0
        self.distance_traveled = 0.0
        self.age = 0
        self.inherited_fitness = 0.0
        self.history.clear()

    # ==================== Utilities ====================

    @property
    def position(self) -> Tuple[float, float]:
        return self.x, self.y

    @property
    def heading(self) -> float:
        """Direction of the last move in radians, 0 before any move."""
        if not self.history:
            return 0.0
        prev_x, prev_y = self.history[-1]
        return math.atan2(self.y - prev_y, self.x - prev_x)

    def __repr__(self) -> str:
        return (
            f"Agent(id={self.id}, "
            f"pos=[{self.x:.2f}, {self.y:.2f}], "
            f"fitness={self.fitness:.2f}, "
            f"age={self.age})"
        )
