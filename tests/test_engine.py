"""
Tests for neuro_evo/services/engine.py

Async paths are driven with asyncio.run from plain test functions.
"""

import asyncio
import logging
import subprocess
import sys
from unittest.mock import MagicMock, patch

import pytest

from neuro_evo.errors import AdvisoryUnavailable, ConfigurationError
from neuro_evo.services.advisory import Advisor, AdvisoryRecord
from neuro_evo.services.engine import (
    EngineConfig,
    EngineState,
    SimulationEngine,
    run_engine,
)
from neuro_evo.services.events import (
    EVOLUTION_FAILED,
    GENERATION_STARTED,
    GENERATION_STOPPED,
    STATS_SNAPSHOT,
    InMemoryEventPublisher,
)

RECORD = AdvisoryRecord(
    performance_score=75.0,
    summary="steady progress",
    insights=("agents spread out",),
    recommendations=("keep going",),
)


class FixedAdvisor(Advisor):
    """Advisor that always answers with the same record."""

    def __init__(self, record=RECORD):
        self.record = record
        self.calls = []

    def score_generation(self, snapshot, generation):
        self.calls.append((snapshot, generation))
        return self.record


class FailingAdvisor(Advisor):
    """Advisor whose backend is unreachable."""

    def score_generation(self, snapshot, generation):
        raise AdvisoryUnavailable("service down")


def small_config(**overrides) -> EngineConfig:
    defaults = dict(
        capacity=4,
        generation_length=5,
        stats_interval=1,
        analysis_interval=1,
        tick_interval=0.0,
        seed=7,
        openai_api_key=None,
    )
    defaults.update(overrides)
    return EngineConfig(**defaults)


def make_engine(advisor=None, **overrides):
    publisher = InMemoryEventPublisher()
    engine = SimulationEngine(small_config(**overrides), publisher=publisher, advisor=advisor)
    return engine, publisher


async def drive(engine: SimulationEngine, turns: int) -> None:
    for _ in range(turns):
        await engine.step()


def snapshot_payloads(publisher):
    return [e.payload for e in publisher.of_kind(STATS_SNAPSHOT)]


# ==================== Config Tests ====================

class TestEngineConfig:
    """Tests for engine configuration."""

    def test_defaults(self):
        """Defaults match the reference simulation."""
        config = EngineConfig()
        assert config.capacity == 30
        assert config.generation_length == 800
        assert config.stats_interval == 10
        assert config.analysis_interval == 10
        assert config.publisher_backend == "memory"
        assert config.advisor_backend == "none"

    @pytest.mark.parametrize("overrides", [
        {"capacity": 0},
        {"generation_length": 0},
        {"stats_interval": 0},
        {"analysis_interval": 0},
        {"tick_interval": -1.0},
        {"max_generations": 0},
        {"elite_fraction": 2.0},
    ])
    def test_invalid_config_raises(self, overrides):
        """Illegal settings are configuration errors."""
        with pytest.raises(ConfigurationError):
            small_config(**overrides).validate()

    def test_population_config_mirrors_fields(self):
        """The population config carries the engine's population settings."""
        config = small_config(mutation_rate=0.5, tournament_size=3)
        pop_config = config.population_config()
        assert pop_config.capacity == 4
        assert pop_config.mutation_rate == 0.5
        assert pop_config.tournament_size == 3


# ==================== Lifecycle Tests ====================

class TestLifecycle:
    """Tests for start, stop and initialization."""

    def test_engine_starts_idle(self):
        """A new engine has no population and is idle."""
        engine, _ = make_engine()
        assert engine.state is EngineState.IDLE
        assert engine.population is None
        assert not engine.running

    def test_initialize_publishes_started_and_snapshot(self):
        """Initialization announces the first generation and its stats."""
        engine, publisher = make_engine()
        engine.initialize()

        kinds = [e.kind for e in publisher.events]
        assert kinds == [GENERATION_STARTED, STATS_SNAPSHOT]
        first = publisher.events[1].payload
        assert first["generation"] == 1
        assert first["tick"] == 0
        assert first["population"]["size"] == 4
        assert engine.state is EngineState.RUNNING_TICKS

    def test_initialize_twice_raises(self):
        """A running engine cannot be reinitialized."""
        engine, _ = make_engine()
        engine.initialize()
        with pytest.raises(RuntimeError):
            engine.initialize()

    def test_start_with_invalid_config_raises(self):
        """start() refuses an illegal configuration and stays idle."""
        engine, publisher = make_engine(capacity=0)
        with pytest.raises(ConfigurationError):
            asyncio.run(engine.start())
        assert engine.state is EngineState.IDLE
        assert len(publisher.events) == 0

    def test_start_while_running_is_ignored(self):
        """A second start() neither restarts nor duplicates the loop."""
        engine, publisher = make_engine()

        async def scenario():
            await engine.start()
            task = engine._task
            population = engine.population
            await engine.start()
            assert engine._task is task
            assert engine.population is population
            engine.stop()
            await engine.wait()

        asyncio.run(scenario())
        assert len(publisher.of_kind(GENERATION_STARTED)) == 1

    def test_stop_halts_loop(self):
        """After stop() the loop exits and no further ticks happen."""
        engine, publisher = make_engine(generation_length=1000)

        async def scenario():
            await engine.start()
            for _ in range(5):
                await asyncio.sleep(0)
            engine.stop()
            ticks = engine.population.tick_count
            await engine.wait()
            return ticks

        ticks = asyncio.run(scenario())

        assert engine.state is EngineState.IDLE
        assert engine.population.tick_count == ticks
        assert publisher.events[-1].kind == GENERATION_STOPPED

    def test_stop_when_idle_is_noop(self):
        """Stopping an idle engine publishes nothing."""
        engine, publisher = make_engine()
        engine.stop()
        assert len(publisher.events) == 0

    def test_max_generations_stops_engine(self):
        """The loop ends by itself after the configured number of generations."""
        engine, publisher = make_engine(max_generations=2, generation_length=3)

        async def scenario():
            await engine.start()
            await engine.wait()

        asyncio.run(scenario())

        assert engine.state is EngineState.IDLE
        assert engine.generations_completed == 2
        assert engine.population.generation == 3
        assert len(engine.history) == 2
        assert publisher.events[-1].kind == GENERATION_STOPPED

    def test_restart_creates_fresh_population(self):
        """Starting again after stop begins at generation one."""
        engine, _ = make_engine(generation_length=2)
        engine.initialize()
        asyncio.run(drive(engine, 3))
        assert engine.population.generation == 2
        engine.stop()

        engine.initialize()
        assert engine.population.generation == 1
        assert engine.population.tick_count == 0


# ==================== Scheduling Tests ====================

class TestScheduling:
    """Tests for the tick and evaluate state machine."""

    def test_step_when_idle_does_nothing(self):
        """An idle engine ignores step()."""
        engine, publisher = make_engine()
        assert asyncio.run(engine.step()) is EngineState.IDLE
        assert len(publisher.events) == 0

    def test_generation_transition(self):
        """Ticks until the generation length, then one evaluating turn."""
        engine, _ = make_engine(generation_length=5)
        engine.initialize()

        states = [asyncio.run(engine.step()) for _ in range(5)]
        assert states == [EngineState.RUNNING_TICKS] * 4 + [EngineState.EVALUATING]
        assert engine.population.tick_count == 5

        assert asyncio.run(engine.step()) is EngineState.RUNNING_TICKS
        assert engine.population.generation == 2
        assert engine.population.tick_count == 0
        assert engine.generations_completed == 1

    def test_stats_interval(self):
        """A snapshot is published every stats_interval ticks."""
        engine, publisher = make_engine(stats_interval=2, generation_length=100)
        engine.initialize()
        asyncio.run(drive(engine, 6))

        ticks = [p["tick"] for p in snapshot_payloads(publisher)]
        assert ticks == [0, 2, 4, 6]

    def test_snapshots_are_ordered(self):
        """Snapshots never go backwards in (generation, tick); sequences increase."""
        engine, publisher = make_engine(generation_length=3)
        engine.initialize()
        asyncio.run(drive(engine, 14))

        keys = [(p["generation"], p["tick"]) for p in snapshot_payloads(publisher)]
        assert keys == sorted(set(keys))
        sequences = [e.sequence for e in publisher.events]
        assert sequences == sorted(set(sequences))

    def test_population_size_constant(self):
        """Every snapshot reports the configured capacity."""
        engine, publisher = make_engine(generation_length=2)
        engine.initialize()
        asyncio.run(drive(engine, 9))
        assert {p["population"]["size"] for p in snapshot_payloads(publisher)} == {4}

    def test_history_records_outgoing_generation(self):
        """History keeps the fitness of the generation that just finished."""
        engine, _ = make_engine(generation_length=4)
        engine.initialize()
        asyncio.run(drive(engine, 4))
        best = max(a.fitness for a in engine.population)

        asyncio.run(engine.step())

        assert engine.history[-1]["generation"] == 1
        assert engine.history[-1]["max_fitness"] == pytest.approx(best)

    def test_history_limit(self):
        """History is trimmed to its configured length."""
        engine, _ = make_engine(generation_length=1, history_limit=2)
        engine.initialize()
        asyncio.run(drive(engine, 10))
        assert [h["generation"] for h in engine.history] == [4, 5]

    def test_failed_evolution_keeps_generation_and_retries(self):
        """A failed evolve reports an error, keeps the population, retries next turn."""
        engine, publisher = make_engine(generation_length=2)
        engine.initialize()
        asyncio.run(drive(engine, 2))
        agents = list(engine.population.agents)

        with patch.object(engine.population, "evolve", side_effect=RuntimeError("boom")):
            state = asyncio.run(engine.step())

        assert state is EngineState.EVALUATING
        assert engine.population.agents == agents
        assert engine.population.generation == 1
        assert engine.last_error == "boom"
        failures = publisher.of_kind(EVOLUTION_FAILED)
        assert len(failures) == 1
        assert failures[0].payload == {"generation": 1, "error": "boom"}

        assert asyncio.run(engine.step()) is EngineState.RUNNING_TICKS
        assert engine.population.generation == 2

    def test_publisher_failure_does_not_stop_engine(self):
        """Errors raised by the publisher are contained."""
        publisher = MagicMock()
        publisher.publish.side_effect = RuntimeError("viewer gone")
        engine = SimulationEngine(small_config(), publisher=publisher, advisor=None)

        engine.initialize()
        asyncio.run(drive(engine, 3))

        assert engine.population.tick_count == 3
        assert publisher.publish.call_count == 5

    def test_seeded_engines_agree(self):
        """Two engines with the same seed produce identical snapshots, agent ids included."""
        runs = []
        for _ in range(2):
            engine, publisher = make_engine(generation_length=3, seed=11)
            engine.initialize()
            asyncio.run(drive(engine, 8))
            runs.append(snapshot_payloads(publisher))
        assert runs[0] == runs[1]


# ==================== Advisory Tests ====================

class TestAdvisory:
    """Tests for advisory requests and their attachment to snapshots."""

    def test_record_attaches_to_next_snapshot_only(self):
        """An advisory shows up on exactly one snapshot."""
        engine, publisher = make_engine(advisor=FixedAdvisor(), generation_length=100)

        async def scenario():
            engine.initialize()
            record = await engine.request_advisory(engine._summarize(), 1)
            assert record == RECORD
            await drive(engine, 2)

        asyncio.run(scenario())

        payloads = snapshot_payloads(publisher)
        assert payloads[0]["analysis"] is None
        assert payloads[1]["analysis"]["performance_score"] == 75.0
        assert payloads[2]["analysis"] is None

    def test_engine_schedules_advisory_at_interval(self):
        """The advisor sees the finished generation's statistics."""
        advisor = FixedAdvisor()
        engine, publisher = make_engine(advisor=advisor, generation_length=2)

        async def scenario():
            engine.initialize()
            await drive(engine, 3)
            await asyncio.gather(*engine._advisory_tasks)
            await drive(engine, 1)

        asyncio.run(scenario())

        assert len(advisor.calls) == 1
        snapshot, generation = advisor.calls[0]
        assert generation == 1
        assert snapshot.generation == 1
        assert snapshot.tick == 2
        assert snapshot_payloads(publisher)[-1]["analysis"]["summary"] == "steady progress"

    def test_analysis_interval_skips_generations(self):
        """No advisory is requested between intervals."""
        advisor = FixedAdvisor()
        engine, _ = make_engine(advisor=advisor, generation_length=1, analysis_interval=3)

        async def scenario():
            engine.initialize()
            await drive(engine, 6)
            await asyncio.gather(*engine._advisory_tasks)

        asyncio.run(scenario())
        assert [generation for _, generation in advisor.calls] == [3]

    def test_record_discarded_after_stop(self):
        """An advisory that completes after stop() is dropped."""
        engine, _ = make_engine(advisor=FixedAdvisor())
        engine.initialize()
        snapshot = engine._summarize()
        engine.stop()

        assert asyncio.run(engine.request_advisory(snapshot, 1)) is None
        assert engine._pending_analysis is None

    def test_record_discarded_from_previous_run(self):
        """An advisory requested by an earlier run never reaches a new one."""
        engine, _ = make_engine(advisor=FixedAdvisor())
        engine.initialize()
        old_run = engine._run_id
        snapshot = engine._summarize()
        engine.stop()
        engine.initialize()

        assert asyncio.run(engine.request_advisory(snapshot, 1, old_run)) is None
        assert engine._pending_analysis is None

    def test_unavailable_advisor_is_contained(self, caplog):
        """Advisor failures are logged and the engine keeps running."""
        engine, publisher = make_engine(advisor=FailingAdvisor())
        engine.initialize()

        with caplog.at_level(logging.WARNING):
            result = asyncio.run(engine.request_advisory(engine._summarize(), 1))

        assert result is None
        assert engine.running
        assert "Advisory unavailable" in caplog.text
        assert all(p["analysis"] is None for p in snapshot_payloads(publisher))

    def test_no_advisor_returns_none(self):
        """Without an advisor nothing is requested."""
        engine, _ = make_engine(advisor=None)
        engine.initialize()
        assert asyncio.run(engine.request_advisory(engine._summarize(), 1)) is None


# ==================== Status and Entry Point Tests ====================

class TestStatus:
    """Tests for get_status()."""

    def test_status_idle(self):
        """An idle engine reports zeros."""
        engine, _ = make_engine()
        status = engine.get_status()
        assert status["running"] is False
        assert status["state"] == "idle"
        assert status["generation"] == 0
        assert status["tick"] == 0
        assert status["elapsed_time"] == 0.0

    def test_status_running(self):
        """A running engine reports its position in the run."""
        engine, _ = make_engine(generation_length=2)
        engine.initialize()
        asyncio.run(drive(engine, 4))

        status = engine.get_status()
        assert status["running"] is True
        assert status["state"] == "running_ticks"
        assert status["generation"] == 2
        assert status["tick"] == 1
        assert status["generations_completed"] == 1
        assert status["history_length"] == 1
        assert status["last_error"] is None


class TestRunEngine:
    """Tests for the command-line entry point."""

    def test_runs_to_completion(self, caplog):
        """The service runs the requested number of generations and exits."""
        argv = [
            "neuro-evo",
            "--capacity", "3",
            "--generation-length", "2",
            "--generations", "1",
            "--tick-interval", "0",
            "--seed", "5",
        ]
        with patch("sys.argv", argv), caplog.at_level(logging.INFO):
            run_engine()

        assert "Simulation finished: 1 generations completed" in caplog.text

    def test_console_entry_point_logs_to_stderr(self):
        """The installed entry point configures logging on its own."""
        code = "from neuro_evo.services.engine import main; main()"
        args = [
            "--capacity", "3",
            "--generation-length", "2",
            "--generations", "1",
            "--tick-interval", "0",
        ]
        result = subprocess.run(
            [sys.executable, "-c", code, *args],
            capture_output=True,
            text=True,
            timeout=60,
        )

        assert result.returncode == 0, result.stderr
        assert "Simulation finished: 1 generations completed" in result.stderr
        assert "Starting generation 1" in result.stderr
