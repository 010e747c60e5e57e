"""
core/policy.py

The policy: a small feed-forward network from senses to action.

    8 sensors -> 16 (ReLU) -> 16 (ReLU) -> 4 actions (Softmax)

Fixed topology. Weights are born Glorot-normal, replaced wholesale,
or perturbed into a copy. Never resized.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple
import numpy as np

from neuro_evo.errors import ConfigurationError, ShapeMismatchError

SENSOR_COUNT = 8
ACTION_COUNT = 4
DEFAULT_LAYER_SIZES: Tuple[int, ...] = (SENSOR_COUNT, 16, 16, ACTION_COUNT)

Topology = Tuple[Tuple[Tuple[int, int], Tuple[int]], ...]


def relu(x: np.ndarray) -> np.ndarray:
    return np.maximum(x, 0.0)


def softmax(x: np.ndarray) -> np.ndarray:
    # Shift for numerical stability
    exp = np.exp(x - np.max(x))
    return exp / exp.sum()


ACTIVATIONS = {
    "relu": relu,
    "softmax": softmax,
}


@dataclass
class DenseLayer:
    """One fully connected layer: y = activation(W @ x + b)."""
    weights: np.ndarray           # (outputs, inputs)
    bias: np.ndarray              # (outputs,)
    activation: str = "relu"

    def __post_init__(self):
        self.weights = np.asarray(self.weights, dtype=np.float64)
        self.bias = np.asarray(self.bias, dtype=np.float64)
        if self.activation not in ACTIVATIONS:
            raise ConfigurationError(f"Unknown activation: {self.activation}")

    @property
    def input_dim(self) -> int:
        return self.weights.shape[1]

    @property
    def output_dim(self) -> int:
        return self.weights.shape[0]

    def forward(self, x: np.ndarray) -> np.ndarray:
        return ACTIVATIONS[self.activation](self.weights @ x + self.bias)


class PolicyNetwork:
    """
    Feed-forward policy mapping a sensor vector to a discrete action.

    Hidden layers use ReLU, the output layer uses Softmax. Action
    selection is greedy: the index of the largest output.
    """

    def __init__(
        self,
        layer_sizes: Sequence[int] = DEFAULT_LAYER_SIZES,
        rng: Optional[np.random.Generator] = None,
        weights: Optional[List[Tuple[np.ndarray, np.ndarray]]] = None,
    ):
        layer_sizes = tuple(int(s) for s in layer_sizes)
        if len(layer_sizes) < 2:
            raise ConfigurationError(
                f"Network needs at least an input and an output size, got {layer_sizes}"
            )
        if any(s < 1 for s in layer_sizes):
            raise ConfigurationError(f"Layer sizes must be positive, got {layer_sizes}")

        self.layer_sizes = layer_sizes
        if weights is None and rng is None:
            rng = np.random.default_rng()

        self.layers: List[DenseLayer] = []
        last = len(layer_sizes) - 2
        for i, (fan_in, fan_out) in enumerate(zip(layer_sizes[:-1], layer_sizes[1:])):
            if weights is None:
                # Glorot / Xavier normal
                std = np.sqrt(2.0 / (fan_in + fan_out))
                w = rng.normal(0.0, std, size=(fan_out, fan_in))
            else:
                w = np.zeros((fan_out, fan_in))
            self.layers.append(DenseLayer(
                weights=w,
                bias=np.zeros(fan_out),
                activation="softmax" if i == last else "relu",
            ))

        if weights is not None:
            self.set_weights(weights)

    # ==================== Inference ====================

    def forward(self, sensor_vector: Sequence[float]) -> np.ndarray:
        """Action distribution for a sensor vector."""
        x = np.asarray(sensor_vector, dtype=np.float64)
        if x.shape != (self.input_dim,):
            raise ShapeMismatchError(
                f"Expected sensor vector of shape ({self.input_dim},), got {x.shape}"
            )
        for layer in self.layers:
            x = layer.forward(x)
        return x

    def evaluate(self, sensor_vector: Sequence[float]) -> int:
        """Greedy action: index of the most probable output."""
        return int(np.argmax(self.forward(sensor_vector)))

    # ==================== Parameters ====================

    @property
    def input_dim(self) -> int:
        return self.layer_sizes[0]

    @property
    def output_dim(self) -> int:
        return self.layer_sizes[-1]

    @property
    def topology(self) -> Topology:
        """Per-layer (weight shape, bias shape)."""
        return tuple((layer.weights.shape, layer.bias.shape) for layer in self.layers)

    def get_weights(self) -> List[Tuple[np.ndarray, np.ndarray]]:
        """Copies of every layer's (weights, bias)."""
        return [(layer.weights.copy(), layer.bias.copy()) for layer in self.layers]

    def set_weights(self, weights: List[Tuple[np.ndarray, np.ndarray]]) -> None:
        """
        Replace every layer's parameters.

        All shapes are checked before anything is written, so a
        mismatch leaves the network untouched.
        """
        if len(weights) != len(self.layers):
            raise ShapeMismatchError(
                f"Expected {len(self.layers)} layers, got {len(weights)}"
            )

        staged = []
        for i, ((w, b), layer) in enumerate(zip(weights, self.layers)):
            w = np.array(w, dtype=np.float64)
            b = np.array(b, dtype=np.float64)
            if w.shape != layer.weights.shape or b.shape != layer.bias.shape:
                raise ShapeMismatchError(
                    f"Layer {i}: expected {layer.weights.shape}/{layer.bias.shape}, "
                    f"got {w.shape}/{b.shape}"
                )
            staged.append((w, b))

        for layer, (w, b) in zip(self.layers, staged):
            layer.weights = w
            layer.bias = b

    # ==================== Variation ====================

    def mutate(
        self,
        rate: float,
        magnitude: float,
        rng: Optional[np.random.Generator] = None,
    ) -> "PolicyNetwork":
        """
        Return a perturbed copy.

        Each scalar, independently with probability `rate`, gets
        U(-magnitude, +magnitude) added. Everything else is copied as is.
        """
        if not 0.0 <= rate <= 1.0:
            raise ValueError(f"Mutation rate must be in [0, 1], got {rate}")
        if magnitude < 0.0:
            raise ValueError(f"Mutation magnitude must be >= 0, got {magnitude}")

        if rate == 0.0 or magnitude == 0.0:
            return self.copy()

        rng = rng if rng is not None else np.random.default_rng()

        def perturb(values: np.ndarray) -> np.ndarray:
            mask = rng.random(values.shape) < rate
            noise = rng.uniform(-magnitude, magnitude, size=values.shape)
            return np.where(mask, values + noise, values)

        mutated = [(perturb(w), perturb(b)) for w, b in self.get_weights()]
        return PolicyNetwork(self.layer_sizes, weights=mutated)

    def copy(self) -> "PolicyNetwork":
        return PolicyNetwork(self.layer_sizes, weights=self.get_weights())

    def __repr__(self) -> str:
        return f"PolicyNetwork(layers={list(self.layer_sizes)})"
