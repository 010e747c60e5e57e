"""
neuro_evo/services/events.py

Event publishing for simulation viewers.

The engine speaks; it never listens to what viewers say back.
Two backends:
- In-memory: callback subscribers, for tests and embedding
- Redis: pub/sub channel plus a "latest snapshot" key

A failing backend or subscriber is logged and never reaches the engine.
"""

from __future__ import annotations
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional
import json
import logging
import threading
import time

logger = logging.getLogger(__name__)

# Event kinds
GENERATION_STARTED = "generation_started"
GENERATION_STOPPED = "generation_stopped"
STATS_SNAPSHOT = "stats_snapshot"
EVOLUTION_FAILED = "evolution_failed"

# Redis key constants
REDIS_KEY_PREFIX = "neuro_evo:"
EVENTS_CHANNEL = f"{REDIS_KEY_PREFIX}events"
LATEST_SNAPSHOT_KEY = f"{REDIS_KEY_PREFIX}stats:latest"


@dataclass
class SimulationEvent:
    """
    One message on the viewer channel.

    `sequence` increases strictly within one engine instance.
    """
    kind: str
    payload: Dict[str, Any] = field(default_factory=dict)
    sequence: int = 0
    timestamp: float = field(default_factory=time.time)

    def to_json(self) -> str:
        """Serialize event to JSON."""
        return json.dumps({
            "kind": self.kind,
            "payload": self.payload,
            "sequence": self.sequence,
            "timestamp": self.timestamp,
        })

    @classmethod
    def from_json(cls, data: str) -> "SimulationEvent":
        """Deserialize event from JSON."""
        d = json.loads(data)
        return cls(
            kind=d["kind"],
            payload=d.get("payload", {}),
            sequence=d.get("sequence", 0),
            timestamp=d.get("timestamp", time.time()),
        )


Subscriber = Callable[[SimulationEvent], None]


class EventPublisher(ABC):
    """Abstract base for event publishing backends."""

    @abstractmethod
    def publish(self, event: SimulationEvent) -> bool:
        """Publish an event. Returns True if delivered to the backend."""
        pass

    def close(self) -> None:
        """Release backend resources."""
        pass


class InMemoryEventPublisher(EventPublisher):
    """
    Synchronous callback fan-out.

    Keeps a bounded buffer of recent events for late inspection.
    """

    def __init__(self, history_limit: int = 1000):
        self._subscribers: List[Subscriber] = []
        self._lock = threading.Lock()
        self.events: Deque[SimulationEvent] = deque(maxlen=history_limit)

    def subscribe(self, callback: Subscriber) -> None:
        with self._lock:
            self._subscribers.append(callback)

    def unsubscribe(self, callback: Subscriber) -> None:
        with self._lock:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

    def publish(self, event: SimulationEvent) -> bool:
        with self._lock:
            self.events.append(event)
            subscribers = list(self._subscribers)

        for callback in subscribers:
            try:
                callback(event)
            except Exception as e:
                logger.warning(f"Subscriber {callback!r} failed on {event.kind}: {e}")
        return True

    def of_kind(self, kind: str) -> List[SimulationEvent]:
        """Buffered events of one kind, oldest first."""
        with self._lock:
            return [e for e in self.events if e.kind == kind]


class RedisEventPublisher(EventPublisher):
    """
    Redis pub/sub publisher for remote viewers.

    Every event goes to the channel; the latest stats snapshot is also
    stored under a key so a viewer that joins late can catch up.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        channel: str = EVENTS_CHANNEL,
        latest_key: str = LATEST_SNAPSHOT_KEY,
    ):
        self.redis_url = redis_url
        self.channel = channel
        self.latest_key = latest_key
        self._redis = None

    def _get_redis(self):
        """Lazy connection to Redis."""
        if self._redis is None:
            try:
                import redis
            except ImportError as err:
                raise ImportError(
                    "redis package required for RedisEventPublisher. "
                    "Install with: pip install redis"
                ) from err
            self._redis = redis.from_url(self.redis_url, decode_responses=True)
            self._redis.ping()
            logger.info(f"Connected to Redis at {self.redis_url}")
        return self._redis

    def publish(self, event: SimulationEvent) -> bool:
        try:
            r = self._get_redis()
            data = event.to_json()
            r.publish(self.channel, data)
            if event.kind == STATS_SNAPSHOT:
                r.set(self.latest_key, data)
            return True
        except ImportError:
            raise
        except Exception as e:
            logger.warning(f"Failed to publish {event.kind} event: {e}")
            self._redis = None
            return False

    def close(self) -> None:
        if self._redis is not None:
            try:
                self._redis.close()
            except Exception as e:
                logger.debug(f"Error closing Redis connection: {e}")
            self._redis = None


def create_publisher(
    backend: str = "memory",
    redis_url: str = "redis://localhost:6379",
    **kwargs
) -> EventPublisher:
    """
    Factory function to create an event publisher.

    Args:
        backend: "memory" or "redis"
        redis_url: Redis connection URL (for redis backend)
        **kwargs: Additional backend-specific options

    Returns:
        EventPublisher instance
    """
    if backend == "memory":
        return InMemoryEventPublisher(**kwargs)
    elif backend == "redis":
        return RedisEventPublisher(redis_url=redis_url, **kwargs)
    else:
        raise ValueError(f"Unknown backend: {backend}")
