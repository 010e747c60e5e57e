"""
neuro_evo/evolution/

Generational evolution over policy network weights.

One generation:
- Tick: every agent senses, decides, moves (independent, cheap)
- Evolve: keep the elites, fill the rest by tournament + mutation
- Summarize: frozen statistics for whoever is watching
"""

from .population import Population, PopulationConfig
from .statistics import (
    AgentView,
    LayerStats,
    PerformanceInfo,
    PopulationStats,
    StatsSnapshot,
    summarize,
)

__all__ = [
    "Population",
    "PopulationConfig",
    "AgentView",
    "LayerStats",
    "PerformanceInfo",
    "PopulationStats",
    "StatsSnapshot",
    "summarize",
]
