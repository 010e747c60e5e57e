"""
environments/arena.py

Bounded 2D rectangle for the movement task.

No wrapping, no friction, no obstacles. Agents that push against
a wall stay at the wall.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Optional, Tuple
import numpy as np

from neuro_evo.errors import ConfigurationError


@dataclass(frozen=True)
class Arena:
    """The world: [0, width] x [0, height]."""
    width: float = 800.0
    height: float = 600.0

    def __post_init__(self):
        if self.width <= 0 or self.height <= 0:
            raise ConfigurationError(
                f"Arena dimensions must be positive, got {self.width}x{self.height}"
            )

    def clamp(self, x: float, y: float) -> Tuple[float, float]:
        return (
            min(max(x, 0.0), self.width),
            min(max(y, 0.0), self.height),
        )

    def contains(self, x: float, y: float) -> bool:
        return 0.0 <= x <= self.width and 0.0 <= y <= self.height

    def normalize(self, x: float, y: float) -> Tuple[float, float]:
        """Position scaled to [0, 1] on both axes."""
        return x / self.width, y / self.height

    def random_position(self, rng: Optional[np.random.Generator] = None) -> Tuple[float, float]:
        rng = rng if rng is not None else np.random.default_rng()
        return float(rng.uniform(0, self.width)), float(rng.uniform(0, self.height))
