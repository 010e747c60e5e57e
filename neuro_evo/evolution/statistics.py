"""
neuro_evo/evolution/statistics.py

Population and network statistics.

A StatsSnapshot is what leaves the engine: frozen, detached from the
live agents, safe to serialize and hand to anyone.
"""

from __future__ import annotations
from dataclasses import asdict, dataclass, field, replace
from typing import TYPE_CHECKING, Any, Dict, Optional, Sequence, Tuple
import numpy as np

if TYPE_CHECKING:
    from neuro_evo.services.advisory import AdvisoryRecord
    from .population import Population

# No speciation policy exists yet; every living agent is one species
SPECIES_PLACEHOLDER = 1


@dataclass(frozen=True)
class PopulationStats:
    size: int = 0
    avg_fitness: float = 0.0
    max_fitness: float = 0.0
    avg_distance: float = 0.0
    max_distance: float = 0.0


@dataclass(frozen=True)
class AgentView:
    """Where an agent is and which way it faces, for display."""
    id: str
    x: float
    y: float
    fitness: float
    rotation: float


@dataclass(frozen=True)
class LayerStats:
    name: str
    avg_weight: float
    weight_variance: float


@dataclass(frozen=True)
class PerformanceInfo:
    generation: int = 1
    current_step: int = 0
    steps_per_generation: int = 0
    mutation_rate: float = 0.0
    elite_percentage: str = "0%"


@dataclass(frozen=True)
class StatsSnapshot:
    """Immutable point-in-time aggregate of a population."""
    generation: int
    tick: int
    population: PopulationStats
    agents: Tuple[AgentView, ...] = ()
    layers: Tuple[LayerStats, ...] = ()
    active_species: int = 0
    total_species_ever: int = 0
    performance: PerformanceInfo = field(default_factory=PerformanceInfo)
    analysis: Optional[AdvisoryRecord] = None

    @property
    def average_weights(self) -> Tuple[float, ...]:
        return tuple(layer.avg_weight for layer in self.layers)

    @property
    def weight_variance(self) -> Tuple[float, ...]:
        return tuple(layer.weight_variance for layer in self.layers)

    def with_analysis(self, analysis: Optional[AdvisoryRecord]) -> "StatsSnapshot":
        return replace(self, analysis=analysis)

    def to_dict(self) -> Dict[str, Any]:
        """JSON-safe representation."""
        return {
            "generation": self.generation,
            "tick": self.tick,
            "population": asdict(self.population),
            "agents": [asdict(a) for a in self.agents],
            "neural_stats": {
                layer.name: {
                    "avg_weight": layer.avg_weight,
                    "variance": layer.weight_variance,
                }
                for layer in self.layers
            },
            "network_stats": {
                "average_weights": list(self.average_weights),
                "weight_variance": list(self.weight_variance),
            },
            "active_species": self.active_species,
            "total_species_ever": self.total_species_ever,
            "performance": asdict(self.performance),
            "analysis": self.analysis.to_dict() if self.analysis is not None else None,
        }


def _mean(values: Sequence[float]) -> float:
    return float(np.mean(values)) if len(values) else 0.0


def _max(values: Sequence[float]) -> float:
    return float(np.max(values)) if len(values) else 0.0


def layer_statistics(weights) -> Tuple[LayerStats, ...]:
    """Mean and population variance of each weight matrix; biases excluded."""
    stats = []
    for i, (w, _bias) in enumerate(weights):
        flat = np.asarray(w, dtype=np.float64).ravel()
        stats.append(LayerStats(
            name=f"Layer {i + 1}",
            avg_weight=_mean(flat),
            weight_variance=float(np.var(flat)) if flat.size else 0.0,
        ))
    return tuple(stats)


def summarize(population: Population, steps_per_generation: int = 0) -> StatsSnapshot:
    """
    Snapshot of the population as it stands.

    Pure: reads the population, never modifies it. Network statistics
    come from the first agent only, as a representative sample.
    """
    agents = list(population.agents)
    fitnesses = [a.fitness for a in agents]
    distances = [a.distance_traveled for a in agents]

    config = population.config
    species = SPECIES_PLACEHOLDER if agents else 0

    return StatsSnapshot(
        generation=population.generation,
        tick=population.tick_count,
        population=PopulationStats(
            size=len(agents),
            avg_fitness=_mean(fitnesses),
            max_fitness=_max(fitnesses),
            avg_distance=_mean(distances),
            max_distance=_max(distances),
        ),
        agents=tuple(
            AgentView(id=a.id, x=a.x, y=a.y, fitness=a.fitness, rotation=a.heading)
            for a in agents
        ),
        layers=layer_statistics(agents[0].brain.get_weights()) if agents else (),
        active_species=species,
        total_species_ever=species,
        performance=PerformanceInfo(
            generation=population.generation,
            current_step=population.tick_count,
            steps_per_generation=steps_per_generation,
            mutation_rate=config.mutation_rate,
            elite_percentage=f"{config.elite_fraction * 100:g}%",
        ),
    )
