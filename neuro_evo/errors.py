"""
neuro_evo/errors.py

Failure taxonomy for the simulation engine.

- ConfigurationError: the engine refuses to start
- ShapeMismatchError: a network was handed parameters of the wrong topology
- AdvisoryUnavailable: the advisory collaborator could not produce a score
"""


class ConfigurationError(ValueError):
    """Illegal capacity, topology or parameter range. Fatal at construction."""


class ShapeMismatchError(ValueError):
    """Parameters do not match the network topology."""


class AdvisoryUnavailable(RuntimeError):
    """Advisor unreachable, misconfigured, or returned unparsable output."""
