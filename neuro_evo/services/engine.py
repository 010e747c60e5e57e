"""
neuro_evo/services/engine.py

Simulation engine: tick scheduler and generation controller.

The engine owns one Population and drives it through generations:
1. Tick every agent, once per scheduling turn
2. Publish a stats snapshot every `stats_interval` ticks
3. At the end of a generation, evolve and publish
4. Every `analysis_interval` generations, ask the advisor (in the background)

States:
    IDLE --start()--> RUNNING_TICKS --(tick == length)--> EVALUATING
         <--stop()--       ^                                  |
                           +------------ evolve() ------------+

One asyncio task runs the loop. It yields for `tick_interval` seconds
between turns and checks for stop() before every turn.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Set, Tuple

import numpy as np

from neuro_evo.core.policy import DEFAULT_LAYER_SIZES
from neuro_evo.core.sensors import SensorProvider
from neuro_evo.environments.arena import Arena
from neuro_evo.errors import AdvisoryUnavailable, ConfigurationError
from neuro_evo.evolution.population import Population, PopulationConfig
from neuro_evo.evolution.statistics import StatsSnapshot, summarize

from .advisory import Advisor, AdvisoryRecord, create_advisor
from .events import (
    EVOLUTION_FAILED,
    GENERATION_STARTED,
    GENERATION_STOPPED,
    STATS_SNAPSHOT,
    EventPublisher,
    SimulationEvent,
    create_publisher,
)

logger = logging.getLogger(__name__)


class EngineState(Enum):
    """Phase of the engine's state machine."""
    IDLE = "idle"
    RUNNING_TICKS = "running_ticks"
    EVALUATING = "evaluating"


@dataclass
class EngineConfig:
    """Configuration for the simulation engine."""
    # Population
    capacity: int = 30
    elite_fraction: float = 0.1
    tournament_size: int = 5
    mutation_rate: float = 0.3
    mutation_magnitude: float = 0.1
    layer_sizes: Tuple[int, ...] = DEFAULT_LAYER_SIZES

    # Arena and movement
    width: float = 800.0
    height: float = 600.0
    speed: float = 5.0

    # Scheduling
    generation_length: int = 800  # Ticks per generation
    stats_interval: int = 10  # Ticks between snapshots
    analysis_interval: int = 10  # Generations between advisory requests
    tick_interval: float = 0.016  # Seconds yielded between turns
    max_generations: int | None = None  # Stop after this many; None runs forever

    # Random seed (None = unseeded)
    seed: int | None = None

    # Event publishing
    publisher_backend: str = "memory"  # "memory" or "redis"
    redis_url: str = "redis://localhost:6379"

    # Advisory
    advisor_backend: str = "none"  # "none" or "openai"
    openai_api_key: str | None = field(default_factory=lambda: os.environ.get("OPENAI_API_KEY"))
    openai_model: str = "gpt-3.5-turbo-0125"

    # History
    history_limit: int = 1000

    def population_config(self) -> PopulationConfig:
        return PopulationConfig(
            capacity=self.capacity,
            elite_fraction=self.elite_fraction,
            tournament_size=self.tournament_size,
            mutation_rate=self.mutation_rate,
            mutation_magnitude=self.mutation_magnitude,
            speed=self.speed,
            layer_sizes=tuple(self.layer_sizes),
        )

    def validate(self) -> None:
        self.population_config().validate()
        if self.generation_length < 1:
            raise ConfigurationError(
                f"Generation length must be >= 1, got {self.generation_length}"
            )
        if self.stats_interval < 1:
            raise ConfigurationError(f"Stats interval must be >= 1, got {self.stats_interval}")
        if self.analysis_interval < 1:
            raise ConfigurationError(
                f"Analysis interval must be >= 1, got {self.analysis_interval}"
            )
        if self.tick_interval < 0:
            raise ConfigurationError(f"Tick interval must be >= 0, got {self.tick_interval}")
        if self.max_generations is not None and self.max_generations < 1:
            raise ConfigurationError(
                f"Max generations must be >= 1, got {self.max_generations}"
            )


class SimulationEngine:
    """
    Explicitly constructed owner of one live population.

    Only frozen StatsSnapshots leave the engine, through the publisher.
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        publisher: EventPublisher | None = None,
        advisor: Advisor | None = None,
        sensors: SensorProvider | None = None,
    ):
        self.config = config or EngineConfig()
        self.publisher = publisher or create_publisher(
            backend=self.config.publisher_backend,
            redis_url=self.config.redis_url,
        )
        self.advisor = advisor if advisor is not None else create_advisor(
            self.config.advisor_backend,
            **self._advisor_kwargs(),
        )
        self.sensors = sensors

        self.rng = np.random.default_rng(self.config.seed)

        # State tracking
        self.state = EngineState.IDLE
        self.population: Population | None = None
        self.history: list[dict[str, Any]] = []
        self.last_error: str | None = None
        self.start_time: float | None = None
        self.generations_completed = 0

        # Advisory record waiting for the next snapshot
        self._pending_analysis: AdvisoryRecord | None = None
        self._advisory_tasks: Set[asyncio.Task] = set()

        # Each start() opens a new run; stale loops and advisories check this
        self._run_id = 0
        self._task: asyncio.Task | None = None
        self._sequence = 0

        logger.info(
            f"Engine initialized: capacity={self.config.capacity}, "
            f"generation_length={self.config.generation_length}"
        )

    def _advisor_kwargs(self) -> dict[str, Any]:
        if self.config.advisor_backend != "openai":
            return {}
        return {
            "api_key": self.config.openai_api_key,
            "model": self.config.openai_model,
        }

    # ==================== Lifecycle ====================

    @property
    def running(self) -> bool:
        return self.state is not EngineState.IDLE

    async def start(self) -> None:
        """
        Create a fresh population and launch the tick loop.

        Raises ConfigurationError if the configuration is illegal.
        Calling start() while already running does nothing.
        """
        if self.running:
            logger.warning("Engine already running, ignoring start()")
            return

        self.initialize()
        self._task = asyncio.get_running_loop().create_task(self._run(self._run_id))

    def initialize(self) -> None:
        """
        IDLE -> RUNNING_TICKS with a freshly created population.

        Does not schedule anything; start() adds the loop, or the
        caller drives step() directly.
        """
        if self.running:
            raise RuntimeError("Engine is already running")

        self.config.validate()
        self.population = self._create_population()

        self._run_id += 1
        self._pending_analysis = None
        self.generations_completed = 0
        self.last_error = None
        self.start_time = time.time()
        self.state = EngineState.RUNNING_TICKS

        self._publish(GENERATION_STARTED, {"generation": self.population.generation})
        self._publish_stats()

        logger.info(f"Starting generation {self.population.generation}")

    def stop(self) -> None:
        """
        Return to IDLE.

        Takes effect before the next tick. Work in flight is abandoned;
        a pending advisory call may finish but its answer is dropped.
        """
        if not self.running:
            return
        self.state = EngineState.IDLE
        generation = self.population.generation if self.population else 0
        self._publish(GENERATION_STOPPED, {"generation": generation})
        logger.info("Stopping simulation...")

    async def wait(self) -> None:
        """Wait for the loop task to finish."""
        if self._task is not None:
            await self._task

    def _create_population(self) -> Population:
        return Population(
            self.config.population_config(),
            environment=Arena(self.config.width, self.config.height),
            sensors=self.sensors,
            rng=self.rng,
        )

    # ==================== Scheduling ====================

    async def _run(self, run_id: int) -> None:
        try:
            while self.running and run_id == self._run_id:
                await self.step()
                await asyncio.sleep(self.config.tick_interval)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"Simulation loop crashed: {e}")
            self.last_error = str(e)
            if run_id == self._run_id:
                self.stop()

    async def step(self) -> EngineState:
        """
        Execute one scheduling turn.

        Returns the state after the turn.
        """
        if self.state is EngineState.RUNNING_TICKS:
            self._tick()
        elif self.state is EngineState.EVALUATING:
            self._evaluate()
        return self.state

    def _tick(self) -> None:
        population = self.population
        population.tick()

        if population.tick_count % self.config.stats_interval == 0:
            logger.debug(f"Generation {population.generation} tick {population.tick_count}")
            self._publish_stats()

        if population.tick_count >= self.config.generation_length:
            self.state = EngineState.EVALUATING

    def _evaluate(self) -> None:
        population = self.population
        completed = population.generation
        outgoing = self._summarize()

        try:
            population.evolve()
        except Exception as e:
            # Previous generation is intact; the next turn retries
            self.last_error = str(e)
            logger.error(f"Evolution of generation {completed} failed: {e}")
            self._publish(EVOLUTION_FAILED, {"generation": completed, "error": str(e)})
            return

        self.state = EngineState.RUNNING_TICKS
        self.generations_completed += 1
        self._record_history(outgoing)
        self._publish_stats()

        logger.info(
            f"Generation {completed} complete: "
            f"best fitness {outgoing.population.max_fitness:.2f}, "
            f"mean {outgoing.population.avg_fitness:.2f}"
        )
        logger.info(f"Starting generation {population.generation}")

        if self.advisor is not None and completed % self.config.analysis_interval == 0:
            self._schedule_advisory(outgoing, completed)

        if (
            self.config.max_generations is not None
            and self.generations_completed >= self.config.max_generations
        ):
            logger.info(f"Reached {self.generations_completed} generations")
            self.stop()

    # ==================== Statistics ====================

    def _summarize(self) -> StatsSnapshot:
        return summarize(self.population, self.config.generation_length)

    def _publish_stats(self) -> StatsSnapshot:
        snapshot = self._summarize()
        if self._pending_analysis is not None:
            snapshot = snapshot.with_analysis(self._pending_analysis)
            self._pending_analysis = None
        self._publish(STATS_SNAPSHOT, snapshot.to_dict())
        return snapshot

    def _record_history(self, snapshot: StatsSnapshot) -> None:
        self.history.append({
            "generation": snapshot.generation,
            "size": snapshot.population.size,
            "mean_fitness": snapshot.population.avg_fitness,
            "max_fitness": snapshot.population.max_fitness,
            "mean_distance": snapshot.population.avg_distance,
            "max_distance": snapshot.population.max_distance,
        })
        if len(self.history) > self.config.history_limit:
            del self.history[: len(self.history) - self.config.history_limit]

    def _publish(self, kind: str, payload: dict[str, Any]) -> None:
        self._sequence += 1
        event = SimulationEvent(kind=kind, payload=payload, sequence=self._sequence)
        try:
            self.publisher.publish(event)
        except Exception as e:
            logger.warning(f"Failed to publish {kind}: {e}")

    # ==================== Advisory ====================

    def _schedule_advisory(self, snapshot: StatsSnapshot, generation: int) -> None:
        task = asyncio.get_running_loop().create_task(
            self.request_advisory(snapshot, generation, self._run_id)
        )
        self._advisory_tasks.add(task)
        task.add_done_callback(self._advisory_tasks.discard)

    async def request_advisory(
        self,
        snapshot: StatsSnapshot,
        generation: int,
        run_id: int | None = None,
    ) -> AdvisoryRecord | None:
        """
        Ask the advisor about one generation.

        A record that arrives while the same run is still active is
        attached to the next published snapshot. Otherwise it is dropped.
        Advisor failures are logged and never propagate.
        """
        if self.advisor is None:
            return None
        run_id = self._run_id if run_id is None else run_id

        try:
            record = await asyncio.to_thread(self.advisor.score_generation, snapshot, generation)
        except AdvisoryUnavailable as e:
            logger.warning(f"Advisory unavailable for generation {generation}: {e}")
            return None
        except Exception as e:
            logger.error(f"Advisor failed for generation {generation}: {e}")
            return None

        if record is None:
            return None

        if not self.running or run_id != self._run_id:
            logger.info(f"Discarding advisory for generation {generation}: engine not running")
            return None

        self._pending_analysis = record
        return record

    # ==================== Status ====================

    def get_status(self) -> dict[str, Any]:
        """Get current engine status."""
        elapsed = 0.0
        if self.start_time and self.running:
            elapsed = time.time() - self.start_time

        return {
            "running": self.running,
            "state": self.state.value,
            "generation": self.population.generation if self.population else 0,
            "tick": self.population.tick_count if self.population else 0,
            "generations_completed": self.generations_completed,
            "elapsed_time": elapsed,
            "history_length": len(self.history),
            "pending_advisories": len(self._advisory_tasks),
            "last_error": self.last_error,
        }


def run_engine(config: EngineConfig | None = None) -> None:
    """
    Run the engine as a standalone service.

    Flags default to environment variables where one applies.
    """
    import argparse
    import signal

    parser = argparse.ArgumentParser(description="Neuroevolution Simulation Engine")
    parser.add_argument("--capacity", type=int, default=30)
    parser.add_argument("--generation-length", type=int, default=800)
    parser.add_argument("--generations", type=int, default=None)
    parser.add_argument("--stats-interval", type=int, default=10)
    parser.add_argument("--analysis-interval", type=int, default=10)
    parser.add_argument("--tick-interval", type=float, default=0.016)
    parser.add_argument("--mutation-rate", type=float, default=0.3)
    parser.add_argument("--seed", type=int, default=None)
    parser.add_argument("--publisher", default="memory", choices=["memory", "redis"])
    parser.add_argument("--redis-url", default=os.environ.get("REDIS_URL", "redis://localhost:6379"))
    parser.add_argument("--advisor", default="none", choices=["none", "openai"])
    parser.add_argument("--openai-model", default=os.environ.get("OPENAI_MODEL", "gpt-3.5-turbo-0125"))

    args = parser.parse_args()

    if config is None:
        config = EngineConfig(
            capacity=args.capacity,
            generation_length=args.generation_length,
            max_generations=args.generations,
            stats_interval=args.stats_interval,
            analysis_interval=args.analysis_interval,
            tick_interval=args.tick_interval,
            mutation_rate=args.mutation_rate,
            seed=args.seed,
            publisher_backend=args.publisher,
            redis_url=args.redis_url,
            advisor_backend=args.advisor,
            openai_model=args.openai_model,
        )

    engine = SimulationEngine(config)

    async def serve() -> None:
        loop = asyncio.get_running_loop()
        # Handle signals for graceful shutdown
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, engine.stop)
            except NotImplementedError:
                logger.debug(f"Signal handlers unsupported, {sig.name} not bound")

        await engine.start()
        await engine.wait()

        status = engine.get_status()
        logger.info(
            f"Simulation finished: {status['generations_completed']} generations completed"
        )
        engine.publisher.close()

    asyncio.run(serve())


def main() -> None:
    """Console entry point: INFO logging to stderr, then run the engine."""
    logging.basicConfig(level=logging.INFO)
    run_engine()


if __name__ == "__main__":
    main()
