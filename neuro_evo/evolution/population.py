"""
neuro_evo/evolution/population.py

The population and its generational transition.

One generation:
- Tick: every agent senses, decides, moves, scores (cheap, independent)
- Evolve: sort, keep the elites, fill the rest by tournament + mutation

The outgoing population is never modified by evolve. The next one is
built aside and swapped in only once it is complete.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import List, Optional, Tuple
import itertools
import logging
import math
import numpy as np

from neuro_evo.core.agent import Agent
from neuro_evo.core.policy import (
    ACTION_COUNT,
    DEFAULT_LAYER_SIZES,
    SENSOR_COUNT,
    PolicyNetwork,
)
from neuro_evo.core.sensors import RandomSensorProvider, SensorProvider
from neuro_evo.environments.arena import Arena
from neuro_evo.errors import ConfigurationError, ShapeMismatchError

logger = logging.getLogger(__name__)


@dataclass
class PopulationConfig:
    """Configuration for the population and its evolution operators."""
    capacity: int = 30
    elite_fraction: float = 0.1
    tournament_size: int = 5
    mutation_rate: float = 0.3
    mutation_magnitude: float = 0.1
    speed: float = 5.0
    layer_sizes: Tuple[int, ...] = DEFAULT_LAYER_SIZES

    def validate(self) -> None:
        if self.capacity < 1:
            raise ConfigurationError(f"Capacity must be >= 1, got {self.capacity}")
        if not 0.0 <= self.elite_fraction <= 1.0:
            raise ConfigurationError(
                f"Elite fraction must be in [0, 1], got {self.elite_fraction}"
            )
        if self.tournament_size < 1:
            raise ConfigurationError(
                f"Tournament size must be >= 1, got {self.tournament_size}"
            )
        if not 0.0 <= self.mutation_rate <= 1.0:
            raise ConfigurationError(
                f"Mutation rate must be in [0, 1], got {self.mutation_rate}"
            )
        if self.mutation_magnitude < 0.0:
            raise ConfigurationError(
                f"Mutation magnitude must be >= 0, got {self.mutation_magnitude}"
            )
        if self.speed <= 0.0:
            raise ConfigurationError(f"Speed must be positive, got {self.speed}")
        sizes = tuple(self.layer_sizes)
        if len(sizes) < 2 or any(s < 1 for s in sizes):
            raise ConfigurationError(f"Illegal layer sizes: {sizes}")
        if sizes[0] != SENSOR_COUNT or sizes[-1] != ACTION_COUNT:
            raise ConfigurationError(
                f"Topology must map {SENSOR_COUNT} sensors to {ACTION_COUNT} actions, "
                f"got {sizes}"
            )


class Population:
    """
    Fixed-capacity, ordered collection of agents.

    Holds the generation and tick counters. Exclusively owns its agents.
    """

    def __init__(
        self,
        config: PopulationConfig,
        environment: Optional[Arena] = None,
        sensors: Optional[SensorProvider] = None,
        rng: Optional[np.random.Generator] = None,
    ):
        config.validate()
        self.config = config
        self.environment = environment or Arena()
        self.rng = rng if rng is not None else np.random.default_rng()
        self.sensors = sensors or RandomSensorProvider(self.rng)

        self.generation = 1
        self.tick_count = 0
        # Ids are unique within this population and stable for carried elites
        self._agent_ids = itertools.count()

        self.agents: List[Agent] = [
            self._create_agent(self.environment.random_position(self.rng))
            for _ in range(config.capacity)
        ]
        self.topology = self.agents[0].brain.topology

        logger.info(f"Initialized population with {len(self.agents)} agents")

    def _next_id(self) -> str:
        return f"agent_{next(self._agent_ids)}"

    def _create_agent(self, position: Tuple[float, float]) -> Agent:
        brain = PolicyNetwork(self.config.layer_sizes, rng=self.rng)
        return Agent(brain, position, self.environment, self._next_id())

    # ==================== Intra-generation ====================

    def tick(self) -> int:
        """
        Advance every agent by one step.

        A failing agent is skipped for this tick; the others proceed.
        Returns the number of agents that failed.
        """
        failures = 0
        for agent in self.agents:
            try:
                sensor_vector = agent.sense(self.environment, self.sensors)
                action = agent.decide(sensor_vector)
                agent.act(action, self.config.speed)
                agent.update_fitness()
            except Exception as e:
                failures += 1
                logger.warning(f"Agent {agent.id} failed during tick {self.tick_count}: {e}")

        self.tick_count += 1
        return failures

    # ==================== Generation transition ====================

    @property
    def elite_count(self) -> int:
        # Round first so 30 * 0.1 is 3, not 4
        count = math.ceil(round(self.config.capacity * self.config.elite_fraction, 9))
        return min(count, self.config.capacity)

    def select_parent(self) -> Agent:
        """
        Tournament selection, drawn uniformly with replacement.

        Highest fitness wins; the first one encountered wins ties.
        """
        best: Optional[Agent] = None
        for _ in range(self.config.tournament_size):
            contestant = self.agents[int(self.rng.integers(len(self.agents)))]
            if best is None or contestant.fitness > best.fitness:
                best = contestant
        return best

    def _carry_elite(self, elite: Agent) -> Agent:
        carried = Agent(elite.brain, elite.position, self.environment, elite.id)
        carried.inherited_fitness = elite.fitness
        return carried

    def _create_offspring(self, parent: Agent) -> Agent:
        brain = parent.brain.mutate(
            self.config.mutation_rate,
            self.config.mutation_magnitude,
            self.rng,
        )
        if brain.topology != self.topology:
            raise ShapeMismatchError(
                f"Offspring of {parent.id} has topology {brain.topology}, "
                f"expected {self.topology}"
            )
        return Agent(brain, parent.position, self.environment, self._next_id())

    def evolve(self) -> None:
        """
        Replace this generation with the next.

        Elites are carried unchanged (same network, fresh counters); the
        remaining slots are mutated offspring of tournament winners.
        On any failure the current generation is left exactly as it was.
        """
        ranked = sorted(self.agents, key=lambda a: a.fitness, reverse=True)

        next_agents = [self._carry_elite(a) for a in ranked[:self.elite_count]]

        while len(next_agents) < self.config.capacity:
            parent = self.select_parent()
            next_agents.append(self._create_offspring(parent))

        best = ranked[0].fitness if ranked else 0.0
        mean = float(np.mean([a.fitness for a in ranked])) if ranked else 0.0

        self.agents = next_agents
        self.generation += 1
        self.tick_count = 0

        logger.info(
            f"Evolved to generation {self.generation}: "
            f"{self.elite_count} elites, best fitness {best:.2f}, mean {mean:.2f}"
        )

    # ==================== Utilities ====================

    def __len__(self) -> int:
        return len(self.agents)

    def __iter__(self):
        return iter(self.agents)

    def __repr__(self) -> str:
        return (
            f"Population(size={len(self.agents)}, "
            f"generation={self.generation}, "
            f"tick={self.tick_count})"
        )
