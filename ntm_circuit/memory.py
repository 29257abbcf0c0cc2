"""Neural Turing Machine Memory Module.

This module contains the two places where a memory bank is produced:

- WrittenMemory: the bank at time t, obtained from the bank at time t-1 by
  letting every head erase and then add, with its hand-written backward pass.
- InitialState: the bank and head weightings the first timestep starts from,
  derived from learnable bias parameters.

A bank is an ``(N, M)`` Units: N memory locations of width M. The bank at t
never mutates the bank at t-1, it only accumulates gradients into it.
"""

import logging

import torch
from torch import Tensor

from ntm_circuit.addressing import ContentAddressing, Read
from ntm_circuit.errors import ShapeMismatch
from ntm_circuit.head import Head
from ntm_circuit.units import MACHINE_EPSILON_SQRT, Units, check_not_nan

logger = logging.getLogger(__name__)


class WrittenMemory:
    """Memory bank after all heads have written to it.

    For every row ``i`` and column ``j``:

        new[i][j] = old[i][j] * prod_k (1 - w_k[i] * e_k[j]) + sum_k w_k[i] * a_k[j]

    where ``e_k = sigmoid(erase_k)`` and ``a_k = sigmoid(add_k)``. Heads compose
    through a product of their retain factors, so their order does not matter.

    Attributes:
        weights: Final weighting of every head, each of shape (N,).
        heads: Heads supplying the raw erase and add vectors.
        mtm1: Memory bank at time t-1.
        erase: Erase factors, shape (H, M).
        add: Add factors, shape (H, M).
        factors: Retain factor ``1 - w_k[i] * e_k[j]`` of every head, shape (H, N, M).
        retained: Product of ``factors`` over heads, shape (N, M).
        top: Memory bank at time t.
    """

    def __init__(self, weights: list[Units], heads: list[Head], mtm1: Units) -> None:
        if not heads or len(weights) != len(heads):
            raise ShapeMismatch(f"{len(weights)} weightings for {len(heads)} heads")
        n, m = mtm1.shape
        for w, head in zip(weights, heads):
            if w.shape != (n,) or head.m != m:
                raise ShapeMismatch(
                    f"head with width {head.m} and weighting {tuple(w.shape)} "
                    f"does not match memory of shape {(n, m)}"
                )
        self.weights = weights
        self.heads = heads
        self.mtm1 = mtm1

        self.w = torch.stack([w.val for w in weights])
        self.erase = torch.sigmoid(torch.stack([h.erase.val for h in heads]))
        self.add = torch.sigmoid(torch.stack([h.add.val for h in heads]))

        self.factors = 1 - self.w.unsqueeze(2) * self.erase.unsqueeze(1)
        self.retained = self.factors.prod(dim=0)
        self.top = Units.wrap(mtm1.val * self.retained + self.w.T @ self.add)
        check_not_nan("written memory", self.top.val, weights=self.w, erase=self.erase, add=self.add)

    def _others(self) -> Tensor:
        """Product of every other head's retain factor, for each head; shape (H, N, M)."""
        others = self.retained.unsqueeze(0) / self.factors
        near_zero = self.factors.abs() < MACHINE_EPSILON_SQRT
        for k in torch.nonzero(near_zero.flatten(1).any(dim=1)).flatten().tolist():
            logger.debug("head %d retain factor vanishes, using the explicit product", k)
            exclusive = torch.cat([self.factors[:k], self.factors[k + 1 :]]).prod(dim=0)
            others[k] = torch.where(near_zero[k], exclusive, others[k])
        return others

    def backward(self) -> None:
        g = self.top.grad
        prev = self.mtm1.val
        others = self._others()

        # Weightings take part in both the erase and the add path.
        g_erase = -self.erase.unsqueeze(1) * prev.unsqueeze(0) * others
        grad_w = ((g_erase + self.add.unsqueeze(1)) * g.unsqueeze(0)).sum(dim=2)
        for k, w in enumerate(self.weights):
            w.grad += grad_w[k]

        grad_e = (g.unsqueeze(0) * prev.unsqueeze(0) * others * -self.w.unsqueeze(2)).sum(dim=1)
        grad_e = grad_e * self.erase * (1 - self.erase)
        grad_a = self.w @ g * self.add * (1 - self.add)
        for k, head in enumerate(self.heads):
            head.erase.grad += grad_e[k]
            head.add.grad += grad_a[k]

        self.mtm1.grad += self.retained * g


class InitialState:
    """Memory and weightings the first timestep of a sequence starts from.

    The weighting of each head is content addressing over that head's row of
    ``weight_bias``, treated as unnormalized log-weights. The memory bank is
    ``memory_bias`` itself, so gradients flowing into the first timestep's
    previous memory land directly in the bias. The initial reads are what the
    controller sees before the first step.

    Args:
        weight_bias: Bias of the initial weightings, shape (num_heads, N).
        memory_bias: Bias of the initial memory bank, shape (N, M).
    """

    def __init__(self, weight_bias: Units, memory_bias: Units) -> None:
        if weight_bias.val.dim() != 2 or memory_bias.val.dim() != 2:
            raise ShapeMismatch("weight_bias and memory_bias must both be matrices")
        if weight_bias.shape[1] != memory_bias.shape[0]:
            raise ShapeMismatch(
                f"weight bias of shape {tuple(weight_bias.shape)} "
                f"does not match memory bias of shape {tuple(memory_bias.shape)}"
            )
        self.weight_bias = weight_bias
        self.memory = memory_bias
        self.content = [ContentAddressing(weight_bias[i]) for i in range(len(weight_bias))]
        self.reads = [Read(ca.top, memory_bias) for ca in self.content]

    @property
    def weights(self) -> list[Units]:
        return [ca.top for ca in self.content]

    def backward(self) -> None:
        for r in self.reads:
            r.backward()
        for ca in self.content:
            ca.backward()
