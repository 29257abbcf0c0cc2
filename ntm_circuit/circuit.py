import logging

import torch
from torch import Tensor

from ntm_circuit.addressing import Addressing, Read
from ntm_circuit.errors import ShapeMismatch
from ntm_circuit.head import Head
from ntm_circuit.memory import InitialState, WrittenMemory
from ntm_circuit.units import DTYPE, Units

logger = logging.getLogger(__name__)


class Circuit:
    """Addressing, reading and writing of all heads for one timestep.

    Every head addresses and reads the memory bank of the previous timestep,
    then all heads write into a new bank together. The circuit keeps every
    intermediate node alive because ``backward`` needs their forward values.

    Attributes:
        heads: Heads emitted by the controller for this timestep.
        mtm1: Memory bank at time t-1.
        addressing: Addressing chain of every head.
        reads: Read node of every head.
        memory: The new memory bank.
    """

    def __init__(self, heads: list[Head], mtm1: Units) -> None:
        if not heads:
            raise ShapeMismatch("a circuit needs at least one head")
        if mtm1.val.dim() != 2:
            raise ShapeMismatch(f"memory must be an (N, M) matrix, got {tuple(mtm1.shape)}")
        n, m = mtm1.shape
        for i, head in enumerate(heads):
            if head.m != m:
                raise ShapeMismatch(f"head {i} has width {head.m}, memory has width {m}")
            if head.wtm1 is None or head.wtm1.shape != (n,):
                shape = None if head.wtm1 is None else tuple(head.wtm1.shape)
                raise ShapeMismatch(f"head {i} previous weighting has shape {shape}, expected ({n},)")

        self.heads = heads
        self.mtm1 = mtm1
        self.addressing = [Addressing(head, mtm1) for head in heads]
        self.reads = [Read(a.top, mtm1) for a in self.addressing]
        self.memory = WrittenMemory(self.weights, heads, mtm1)
        logger.debug("built circuit with %d heads over a %dx%d memory", len(heads), n, m)

    @property
    def weights(self) -> list[Units]:
        """Final weighting of every head."""
        return [a.top for a in self.addressing]

    def backward(self) -> None:
        """Propagate the gradients on weights, reads and memory back to every input.

        Gradients on this circuit's outputs must be complete: the controller's
        gradients on the reads and, when a later timestep exists, that
        timestep's backward must already have run.
        """
        for r in self.reads:
            r.backward()
        self.memory.backward()
        for a in self.addressing:
            a.backward()

    def zero_grad(self) -> None:
        """Reset the gradients of every input, intermediate and output of the timestep."""
        for head in self.heads:
            head.units.zero_grad()
            head.wtm1.zero_grad()
        self.mtm1.zero_grad()
        for a in self.addressing:
            a.zero_grad()
        for r in self.reads:
            r.top.zero_grad()
        self.memory.top.zero_grad()

    def add_output_grads(
        self,
        reads: Tensor | None = None,
        weights: Tensor | None = None,
        memory: Tensor | None = None,
    ) -> None:
        """Accumulate upstream gradients of shape (H, M), (H, N) and (N, M)."""
        if reads is not None:
            for r, g in zip(self.reads, reads, strict=True):
                r.top.grad += g
        if weights is not None:
            for w, g in zip(self.weights, weights, strict=True):
                w.grad += g
        if memory is not None:
            self.memory.top.grad += memory

    def read_values(self) -> Tensor:
        return torch.stack([r.top.val for r in self.reads])

    def weight_values(self) -> Tensor:
        return torch.stack([w.val for w in self.weights])

    def memory_values(self) -> Tensor:
        return self.memory.top.val.clone()


class Sequence:
    """The chain of circuits of one training sequence.

    Each step reads the memory and weightings produced by the step before it,
    the first step reads the initial state. The sequence owns every circuit
    until ``backward`` has run, after which it can be dropped as a whole.
    """

    def __init__(self, initial: InitialState) -> None:
        self.initial = initial
        self.circuits: list[Circuit] = []

    @property
    def num_heads(self) -> int:
        return len(self.initial.content)

    @property
    def weights(self) -> list[Units]:
        if self.circuits:
            return self.circuits[-1].weights
        return self.initial.weights

    @property
    def memory(self) -> Units:
        if self.circuits:
            return self.circuits[-1].memory.top
        return self.initial.memory

    @property
    def reads(self) -> list[Units]:
        """Read vectors the controller consumes at the next step."""
        if self.circuits:
            return [r.top for r in self.circuits[-1].reads]
        return [r.top for r in self.initial.reads]

    def step(self, heads: list[Head]) -> Circuit:
        if len(heads) != self.num_heads:
            raise ShapeMismatch(f"expected {self.num_heads} heads, got {len(heads)}")
        for head, wtm1 in zip(heads, self.weights):
            head.wtm1 = wtm1
        circuit = Circuit(heads, self.memory)
        self.circuits.append(circuit)
        logger.debug("sequence advanced to step %d", len(self.circuits))
        return circuit

    def backward(self) -> None:
        """Backpropagation through time, newest circuit first, then the initial state."""
        for circuit in reversed(self.circuits):
            circuit.backward()
        self.initial.backward()

    def head_weights(self) -> Tensor:
        """Final weightings of every head across time, shape (num_heads, T, N)."""
        if not self.circuits:
            return torch.empty(self.num_heads, 0, len(self.initial.memory), dtype=DTYPE)
        return torch.stack([c.weight_values() for c in self.circuits], dim=1)

    def __len__(self) -> int:
        return len(self.circuits)
