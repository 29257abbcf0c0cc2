"""Finite-difference checks of the hand-written backward passes.

Every check perturbs one input value at a time, re-runs the forward pass and
compares the centered difference quotient with the gradient the backward pass
accumulated for that value. The loss is a weighted sum of every output of the
circuit. One weight, ``weights[0][0]``, gets a coefficient different from its
peers: weightings sum to 1, so with equal coefficients a wrong gradient on them
would go unnoticed.
"""

from collections.abc import Callable, Iterator
from dataclasses import dataclass

import numpy as np
import torch

from ntm_circuit.circuit import Circuit, Sequence
from ntm_circuit.head import Head, heads_from_units
from ntm_circuit.memory import InitialState
from ntm_circuit.units import MACHINE_EPSILON_SQRT, Units

OUTPUT_GRADIENT = 1.234
FIRST_WEIGHT_GRADIENT = 0.987

HEAD_FIELDS = ("erase", "add", "key", "beta", "gate", "shift", "gamma")


@dataclass
class GradientMismatch:
    name: str
    index: tuple[int, ...]
    analytic: float
    numeric: float

    def __str__(self) -> str:
        return f"{self.name}{list(self.index)}: analytic {self.analytic:.8f}, numeric {self.numeric:.8f}"


def centered_difference(loss: Callable[[], float], units: Units, index: tuple[int, ...]) -> float:
    """Estimate d loss / d units.val[index] with a centered difference."""
    x = units.val[index].item()
    h = MACHINE_EPSILON_SQRT * max(abs(x), 1.0)
    try:
        units.val[index] = x + h
        plus = loss()
        units.val[index] = x - h
        minus = loss()
    finally:
        units.val[index] = x
    return (plus - minus) / (2 * h)


def check_gradients(
    loss: Callable[[], float], named_units: dict[str, Units], atol: float = 1e-5
) -> list[GradientMismatch]:
    """Compare the accumulated gradient of every value in ``named_units`` with a numeric estimate.

    ``loss`` must recompute the forward pass from the current values.
    """
    mismatches = []
    for name, units in named_units.items():
        analytic = units.grad.detach().numpy().copy()
        numeric = np.zeros_like(analytic)
        for index in np.ndindex(*units.shape):
            numeric[index] = centered_difference(loss, units, index)
        bad = np.isnan(numeric) | (np.abs(numeric - analytic) > atol)
        for index in np.ndindex(*units.shape):
            if bad[index]:
                mismatches.append(
                    GradientMismatch(name, index, float(analytic[index]), float(numeric[index]))
                )
    return mismatches


def _coefficients(shape: torch.Size) -> torch.Tensor:
    c = torch.full(shape, OUTPUT_GRADIENT, dtype=torch.float64)
    c[0, 0] = FIRST_WEIGHT_GRADIENT
    return c


def circuit_loss(circuit: Circuit) -> float:
    """Weighted sum of every weight, read and memory value of a circuit."""
    weights = circuit.weight_values()
    total = (weights * _coefficients(weights.shape)).sum()
    total += circuit.read_values().sum() * OUTPUT_GRADIENT
    total += circuit.memory_values().sum() * OUTPUT_GRADIENT
    return total.item()


def seed_output_grads(circuit: Circuit) -> None:
    """Set the output gradients matching ``circuit_loss``."""
    weights = circuit.weight_values()
    circuit.add_output_grads(
        reads=torch.full_like(circuit.read_values(), OUTPUT_GRADIENT),
        weights=_coefficients(weights.shape),
        memory=torch.full_like(circuit.memory_values(), OUTPUT_GRADIENT),
    )


def _head_units(prefix: str, heads: list[Head]) -> Iterator[tuple[str, Units]]:
    for k, head in enumerate(heads):
        for field in HEAD_FIELDS:
            yield f"{prefix}head[{k}].{field}", getattr(head, field)


def check_circuit(heads: list[Head], memory: Units, atol: float = 1e-5) -> list[GradientMismatch]:
    """Check the gradients of one circuit on memory, head parameters and previous weightings.

    Gradients already present on the inputs are cleared first.
    """
    memory.zero_grad()
    for head in heads:
        head.units.zero_grad()
        head.wtm1.zero_grad()

    circuit = Circuit(heads, memory)
    seed_output_grads(circuit)
    circuit.backward()

    named = {"memory": memory}
    named.update(_head_units("", heads))
    named.update((f"wtm1[{k}]", head.wtm1) for k, head in enumerate(heads))
    return check_gradients(lambda: circuit_loss(Circuit(heads, memory)), named, atol)


def run_sequence(weight_bias: Units, memory_bias: Units, head_params: list[Units]) -> Sequence:
    """Unroll a sequence over per-step ``(num_heads, 3M+4)`` parameter buffers."""
    sequence = Sequence(InitialState(weight_bias, memory_bias))
    m = memory_bias.shape[1]
    for params in head_params:
        sequence.step(heads_from_units(params, m))
    return sequence


def sequence_loss(sequence: Sequence) -> float:
    total = sum(circuit_loss(c) for c in sequence.circuits)
    total += sum(r.top.val.sum().item() for r in sequence.initial.reads) * OUTPUT_GRADIENT
    return total


def check_sequence(
    weight_bias: Units, memory_bias: Units, head_params: list[Units], atol: float = 1e-5
) -> list[GradientMismatch]:
    """Check backpropagation through time down to the bias parameters.

    Every circuit's outputs and the initial reads enter the loss, so gradients
    reach earlier timesteps both directly and through later ones.
    """
    for units in (weight_bias, memory_bias, *head_params):
        units.zero_grad()

    sequence = run_sequence(weight_bias, memory_bias, head_params)
    for circuit in sequence.circuits:
        seed_output_grads(circuit)
    for r in sequence.initial.reads:
        r.top.grad += OUTPUT_GRADIENT
    sequence.backward()

    named = {"weight_bias": weight_bias, "memory_bias": memory_bias}
    named.update((f"step[{t}].params", params) for t, params in enumerate(head_params))
    return check_gradients(
        lambda: sequence_loss(run_sequence(weight_bias, memory_bias, head_params)), named, atol
    )
