"""
neuro_evo/services/advisory.py

Advisory collaborator: an outside opinion on a generation.

The advisor reads a StatsSnapshot and answers with a score (0-100),
a summary, insights and recommendations. Its answer is informational;
the simulation never waits for it and never depends on it.
"""

from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, Optional, Tuple
import json
import logging
import os
import re

import requests

from neuro_evo.errors import AdvisoryUnavailable

if TYPE_CHECKING:
    from neuro_evo.evolution.statistics import StatsSnapshot

logger = logging.getLogger(__name__)

OPENAI_CHAT_URL = "https://api.openai.com/v1/chat/completions"

SYSTEM_PROMPT = (
    "You are an AI expert specialized in analyzing neural network evolution "
    "simulations. Provide detailed, technical analysis focused on improving "
    "performance."
)


@dataclass(frozen=True)
class AdvisoryRecord:
    """The advisor's verdict on one generation."""
    performance_score: float
    summary: str = ""
    insights: Tuple[str, ...] = ()
    recommendations: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "performance_score": self.performance_score,
            "summary": self.summary,
            "insights": list(self.insights),
            "recommendations": list(self.recommendations),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AdvisoryRecord":
        """
        Build a record from advisor output.

        Accepts both camelCase (performanceScore) and snake_case keys.
        """
        if not isinstance(data, dict):
            raise AdvisoryUnavailable(f"Advisory payload is not an object: {data!r}")

        score = data.get("performance_score", data.get("performanceScore"))
        if isinstance(score, bool) or not isinstance(score, (int, float)):
            raise AdvisoryUnavailable(f"Missing or non-numeric performance score: {score!r}")
        if not 0 <= score <= 100:
            raise AdvisoryUnavailable(f"Performance score out of range: {score}")

        def as_strings(key: str) -> Tuple[str, ...]:
            values = data.get(key) or []
            if isinstance(values, str):
                values = [values]
            return tuple(str(v) for v in values)

        return cls(
            performance_score=float(score),
            summary=str(data.get("summary", "")),
            insights=as_strings("insights"),
            recommendations=as_strings("recommendations"),
        )


class Advisor(ABC):
    """Scores a generation's statistics."""

    @abstractmethod
    def score_generation(
        self,
        snapshot: StatsSnapshot,
        generation: int,
    ) -> Optional[AdvisoryRecord]:
        """
        Return a record, or None when the advisor chooses not to answer.

        Raises AdvisoryUnavailable when it tried and failed.
        """
        pass


@dataclass
class AdvisorConfig:
    """Configuration for the OpenAI-backed advisor."""
    api_key: Optional[str] = field(default_factory=lambda: os.environ.get("OPENAI_API_KEY"))
    model: str = "gpt-3.5-turbo-0125"
    api_url: str = OPENAI_CHAT_URL
    temperature: float = 0.2
    max_tokens: int = 1000
    timeout: float = 30.0


def build_prompt(snapshot: StatsSnapshot, generation: int) -> str:
    """Prompt asking for a scored analysis of one generation."""
    pop = snapshot.population
    neural = json.dumps(snapshot.to_dict()["neural_stats"], indent=2)

    return f"""Analyze the following neural evolution simulation data for generation {generation}:

Population Stats:
- Size: {pop.size}
- Average Fitness: {pop.avg_fitness}
- Max Fitness: {pop.max_fitness}
- Average Distance: {pop.avg_distance}
- Max Distance: {pop.max_distance}

Neural Network Stats:
{neural}

Species Information:
- Active Species: {snapshot.active_species}
- Total Species Ever: {snapshot.total_species_ever}

Calculate the performance score (0-100) using these criteria:
- Population diversity (0-25): Based on number of active species and their distribution
- Learning progress (0-25): Based on generation-over-generation improvement in average fitness
- Exploration efficiency (0-25): Based on the ratio of average distance to max distance
- Neural network health (0-25): Based on weight distributions and network architecture

Then:
1. Evaluate the current performance using the above metrics
2. Identify potential issues or bottlenecks
3. Suggest specific improvements to the neural network architecture or training process
4. Recommend parameter adjustments if needed

Format the response as JSON with the following structure:
{{
    "performanceScore": number (0-100),
    "summary": "brief overview",
    "insights": ["key insight 1", "key insight 2"],
    "recommendations": ["specific recommendation 1", "specific recommendation 2"]
}}"""


_FENCED_JSON = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)


def parse_analysis(text: str) -> AdvisoryRecord:
    """Parse the advisor's reply, tolerating a fenced code block."""
    match = _FENCED_JSON.search(text or "")
    body = match.group(1) if match else (text or "")
    try:
        data = json.loads(body)
    except json.JSONDecodeError as e:
        raise AdvisoryUnavailable(f"Unparsable advisory response: {e}") from e
    return AdvisoryRecord.from_dict(data)


class OpenAIAdvisor(Advisor):
    """Advisor backed by the OpenAI chat completions API."""

    def __init__(self, config: Optional[AdvisorConfig] = None):
        self.config = config or AdvisorConfig()

    def score_generation(
        self,
        snapshot: StatsSnapshot,
        generation: int,
    ) -> Optional[AdvisoryRecord]:
        if not self.config.api_key:
            logger.warning("OpenAI API key not found. Skipping analysis.")
            return None

        logger.info(f"Analyzing generation {generation}")
        content = self._call(build_prompt(snapshot, generation))
        record = parse_analysis(content)
        logger.info(f"Generation {generation} performance score: {record.performance_score}")
        return record

    def _call(self, prompt: str) -> str:
        try:
            response = requests.post(
                self.config.api_url,
                json={
                    "model": self.config.model,
                    "messages": [
                        {"role": "system", "content": SYSTEM_PROMPT},
                        {"role": "user", "content": prompt},
                    ],
                    "temperature": self.config.temperature,
                    "max_tokens": self.config.max_tokens,
                },
                headers={
                    "Authorization": f"Bearer {self.config.api_key}",
                    "Content-Type": "application/json",
                },
                timeout=self.config.timeout,
            )
            response.raise_for_status()
            return response.json()["choices"][0]["message"]["content"]
        except requests.RequestException as e:
            raise AdvisoryUnavailable(f"OpenAI request failed: {e}") from e
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise AdvisoryUnavailable(f"Unexpected OpenAI response shape: {e}") from e


def create_advisor(backend: str = "none", **kwargs) -> Optional[Advisor]:
    """
    Factory function to create an advisor.

    Args:
        backend: "none" or "openai"
        **kwargs: AdvisorConfig fields (for openai backend)

    Returns:
        Advisor instance, or None for no advisory
    """
    if backend == "none":
        return None
    elif backend == "openai":
        return OpenAIAdvisor(AdvisorConfig(**kwargs))
    else:
        raise ValueError(f"Unknown advisor backend: {backend}")
