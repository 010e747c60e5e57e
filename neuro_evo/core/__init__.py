"""
Core components of the neuro-evo system.

- policy: PolicyNetwork - 8 sensors in, 4 actions out
- agent: Agent - one walker and its score
- sensors: pluggable perception
"""

from .policy import PolicyNetwork, DenseLayer, SENSOR_COUNT, ACTION_COUNT
from .agent import Agent
from .sensors import SensorProvider, RandomSensorProvider

__all__ = [
    "PolicyNetwork",
    "DenseLayer",
    "SENSOR_COUNT",
    "ACTION_COUNT",
    "Agent",
    "SensorProvider",
    "RandomSensorProvider",
]
