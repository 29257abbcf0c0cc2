from typing import Any

import torch
import torch.nn.functional as F
from torch import Tensor, nn
from torch.autograd.function import once_differentiable
from torch.nn import Parameter

from ntm_circuit.circuit import Circuit
from ntm_circuit.config import CircuitConfig
from ntm_circuit.errors import ShapeMismatch
from ntm_circuit.head import heads_from_units
from ntm_circuit.units import DTYPE, Units

# (reads (H, M), weights (H, N), memory (N, M))
MemoryState = tuple[Tensor, Tensor, Tensor]


def _build_circuit(
    head_params: Tensor, weights: Tensor, memory: Tensor
) -> tuple[Circuit, Units, Units, Units]:
    if head_params.dim() != 2 or weights.dim() != 2 or memory.dim() != 2:
        raise ShapeMismatch("head_params, weights and memory must all be matrices")
    params = Units.from_values(head_params)
    wtm1 = Units.from_values(weights)
    mtm1 = Units.from_values(memory)
    m = memory.shape[1]
    heads = heads_from_units(params, m, [wtm1[i] for i in range(len(wtm1))])
    return Circuit(heads, mtm1), params, wtm1, mtm1


class CircuitFunction(torch.autograd.Function):
    """One memory timestep as an autograd function with a hand-written backward.

    Lets a PyTorch controller drive the memory: autograd chains the timesteps
    and calls ``backward`` once per timestep with the gradients on its outputs.
    The forward circuit stays on the context, so backward reuses its saved
    intermediates instead of recomputing them.
    """

    @staticmethod
    def forward(ctx: Any, head_params: Tensor, weights: Tensor, memory: Tensor) -> MemoryState:
        """Run one timestep.

        Args:
            ctx: Autograd context.
            head_params: Flat parameters of every head, shape (H, 3M+4).
            weights: Final weightings of the previous timestep, shape (H, N).
            memory: Memory bank of the previous timestep, shape (N, M).

        Returns:
            Tuple of reads (H, M), weights (H, N) and the new memory (N, M).
        """
        circuit, params, wtm1, mtm1 = _build_circuit(head_params, weights, memory)
        ctx.circuit = circuit
        ctx.inputs = (params, wtm1, mtm1)
        ctx.dtypes = (head_params.dtype, weights.dtype, memory.dtype)
        dtype = memory.dtype
        return (
            circuit.read_values().to(dtype),
            circuit.weight_values().to(dtype),
            circuit.memory_values().to(dtype),
        )

    @staticmethod
    @once_differentiable
    def backward(
        ctx: Any, grad_reads: Tensor, grad_weights: Tensor, grad_memory: Tensor
    ) -> tuple[Tensor, Tensor, Tensor]:
        circuit = ctx.circuit
        # A graph kept with retain_graph may be walked again; each walk starts clean.
        circuit.zero_grad()
        circuit.add_output_grads(
            reads=grad_reads.to(DTYPE),
            weights=grad_weights.to(DTYPE),
            memory=grad_memory.to(DTYPE),
        )
        circuit.backward()
        return tuple(u.grad.clone().to(dtype) for u, dtype in zip(ctx.inputs, ctx.dtypes))


class NTMMemory(nn.Module):
    """Neural Turing Machine memory with learnable initial state.

    The controller emits a ``(num_heads, 3M+4)`` parameter matrix every
    timestep; ``forward`` addresses, reads and writes the memory and returns the
    read vectors to feed back into the controller.

    Attributes:
        config: Memory dimensions and head count.
        weight_bias: Unnormalized log-weights of the initial weightings, (H, N).
        memory_bias: Initial memory bank, (N, M).
    """

    def __init__(self, config: CircuitConfig) -> None:
        super().__init__()
        self.config = config
        self.weight_bias = Parameter(torch.randn(config.num_heads, config.n, dtype=DTYPE) * 1e-5)
        self.memory_bias = Parameter(torch.randn(config.n, config.m, dtype=DTYPE) * 0.05)

    def get_initial_state(self) -> MemoryState:
        """Get the state the first timestep reads from.

        Returns:
            Tuple of initial reads, weightings (softmax of the weight bias) and memory.
        """
        weights = F.softmax(self.weight_bias, dim=1)
        reads = weights @ self.memory_bias
        return reads, weights, self.memory_bias

    def forward(self, head_params: Tensor, previous_state: MemoryState) -> tuple[Tensor, MemoryState]:
        """Process one timestep of head parameters.

        Args:
            head_params: Tensor of shape [num_heads, 3M+4].
            previous_state: State returned by the previous call or by get_initial_state.

        Returns:
            Tuple containing:
                - Read vectors of shape [num_heads, M]
                - New state tuple
        """
        expected = (self.config.num_heads, self.config.head_size)
        if tuple(head_params.shape) != expected:
            raise ShapeMismatch(f"head_params must have shape {expected}, got {tuple(head_params.shape)}")
        _, previous_weights, previous_memory = previous_state
        reads, weights, memory = CircuitFunction.apply(head_params, previous_weights, previous_memory)
        return reads, (reads, weights, memory)
