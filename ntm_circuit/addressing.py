"""Addressing stages of a memory head.

Each stage is a node that computes its ``top`` output when constructed and
keeps whatever it needs from the forward pass so that ``backward`` can turn the
gradient accumulated on ``top`` into gradients on its inputs. Nodes are chained
for one head by ``Addressing``:

    similarity -> key strength -> content addressing -> gate -> shift -> refocus

and ``Read`` turns the final weighting into a read vector.
"""

import logging
import math
from abc import ABC, abstractmethod

import torch
import torch.nn.functional as F
from torch import Tensor

from ntm_circuit.errors import InvariantViolation, ShapeMismatch
from ntm_circuit.head import Head
from ntm_circuit.units import MACHINE_EPSILON, MAX_LOGGED_INDICES, Units, check_not_nan

logger = logging.getLogger(__name__)


class Node(ABC):
    """A forward computation with a hand-written adjoint.

    Subclasses compute ``top`` in ``__init__``. ``backward`` assumes the
    gradient on ``top`` is complete and adds its contributions to the gradients
    of the inputs; it must run after every consumer of ``top`` has run its own
    backward.
    """

    top: Units

    @abstractmethod
    def backward(self) -> None:
        pass


class Similarity(Node):
    """Cosine similarity between a key and every row of a memory bank."""

    def __init__(self, key: Units, memory: Units) -> None:
        if memory.val.dim() != 2 or key.shape != memory.shape[1:]:
            raise ShapeMismatch(
                f"key of shape {tuple(key.shape)} does not match memory of shape {tuple(memory.shape)}"
            )
        self.key = key
        self.memory = memory

        self.uv = memory.val @ key.val
        self.key_norm = torch.linalg.vector_norm(key.val)
        self.row_norms = torch.linalg.vector_norm(memory.val, dim=1)
        if self.key_norm == 0 or (self.row_norms == 0).any():
            logger.error(
                "zero-norm vector in similarity: key norm %g, zero memory rows %s of %d",
                self.key_norm.item(),
                torch.nonzero(self.row_norms == 0).flatten()[:MAX_LOGGED_INDICES].tolist(),
                len(memory),
            )
            raise InvariantViolation("cosine similarity is undefined for a zero-norm vector")
        self.top = Units.wrap(self.uv / (self.key_norm * self.row_norms))
        check_not_nan("similarity", self.top.val, key=key.val, memory=memory.val)

    def backward(self) -> None:
        k = self.key.val
        m = self.memory.val
        uvuu = (self.uv / self.key_norm**2).unsqueeze(1)
        uvvv = (self.uv / self.row_norms**2).unsqueeze(1)
        uvg = (self.top.grad / (self.key_norm * self.row_norms)).unsqueeze(1)
        self.key.grad += ((m - k * uvuu) * uvg).sum(dim=0)
        self.memory.grad += (k - m * uvvv) * uvg


class BetaSimilarity(Node):
    """Similarities scaled by the key strength exp(beta).

    Beta is unconstrained, so exponentiating keeps the strength positive with a
    smooth gradient everywhere.
    """

    def __init__(self, beta: Units, similarity: Similarity) -> None:
        self.beta = beta
        self.similarity = similarity
        self.b = torch.exp(beta.val)
        if torch.isinf(self.b):
            logger.error("key strength exp(beta) overflows for beta=%g", beta.val.item())
            raise InvariantViolation("key strength exp(beta) overflows")
        self.top = Units.wrap(self.b * similarity.top.val)
        check_not_nan("key strength", self.top.val, beta=beta.val)

    def backward(self) -> None:
        s = self.similarity.top
        self.beta.grad += (s.val * self.b * self.top.grad).sum()
        s.grad += self.b * self.top.grad


class ContentAddressing(Node):
    """Softmax over unnormalized scores, one per memory row."""

    def __init__(self, units: Units) -> None:
        if units.val.dim() != 1:
            raise ShapeMismatch(f"content addressing expects a vector, got {tuple(units.shape)}")
        self.units = units
        # Subtract the max before exponentiating so large scores cannot overflow.
        e = torch.exp(units.val - units.val.max())
        self.top = Units.wrap(e / e.sum())
        check_not_nan("content addressing", self.top.val, scores=units.val)

    def backward(self) -> None:
        w = self.top.val
        g = self.top.grad
        gv = (g * w).sum()
        self.units.grad += (g - gv) * w


class GatedWeighting(Node):
    """Interpolation between the content weighting and the previous weighting."""

    def __init__(self, gate: Units, content: Units, wtm1: Units) -> None:
        if content.shape != wtm1.shape:
            raise ShapeMismatch(
                f"previous weighting of shape {tuple(wtm1.shape)} does not match {tuple(content.shape)}"
            )
        self.gate = gate
        self.content = content
        self.wtm1 = wtm1
        self.gt = torch.sigmoid(gate.val)
        self.top = Units.wrap(self.gt * content.val + (1 - self.gt) * wtm1.val)
        check_not_nan("gated weighting", self.top.val, gate=gate.val, wtm1=wtm1.val)

    def backward(self) -> None:
        g = self.top.grad
        grad = ((self.content.val - self.wtm1.val) * g).sum()
        self.gate.grad += grad * self.gt * (1 - self.gt)
        self.content.grad += self.gt * g
        # This is the edge that carries the gradient back to the previous timestep.
        self.wtm1.grad += (1 - self.gt) * g


def wrap_shift(amount: float, n: int) -> float:
    """Wrap a real shift amount into [0, n)."""
    wrapped = amount % n
    # amount % n rounds up to n for tiny negative amounts.
    return 0.0 if wrapped >= n else wrapped


def rotate(weights: Tensor, amount: float) -> Tensor:
    """Circularly shift ``weights`` by a real ``amount`` with a two-tap kernel.

    ``out[i] = w[i + z] * frac + w[i + z + 1] * (1 - frac)`` where ``z`` is the
    integer part of the wrapped amount and ``frac = 1 - (amount - z)``. The
    result only depends on ``amount`` modulo ``len(weights)``.
    """
    wrapped = wrap_shift(amount, len(weights))
    z = math.floor(wrapped)
    simj = 1 - (wrapped - z)
    return torch.roll(weights, -z) * simj + torch.roll(weights, -(z + 1)) * (1 - simj)


class ShiftedWeighting(Node):
    """Rotation of the gated weighting by ``(2 * sigmoid(s) - 1) mod N``."""

    def __init__(self, shift: Units, gated: Units) -> None:
        self.shift = shift
        self.gated = gated
        n = len(gated)
        self.sig = torch.sigmoid(shift.val)
        self.z = wrap_shift(float(2 * self.sig - 1), n)
        self.top = Units.wrap(rotate(gated.val, self.z))
        if torch.isnan(self.top.val).any() or (self.top.val < 0).any():
            logger.error(
                "invalid shifted weighting at indices %s of %d: z=%f",
                torch.nonzero(~(self.top.val >= 0)).flatten()[:MAX_LOGGED_INDICES].tolist(),
                n,
                self.z,
            )
            raise InvariantViolation("shifted weighting is negative or NaN")

    def backward(self) -> None:
        g = self.top.grad
        z = math.floor(self.z)
        simj = 1 - (self.z - z)
        wg = self.gated.val

        grad = ((torch.roll(wg, -(z + 1)) - torch.roll(wg, -z)) * g).sum()
        self.shift.grad += grad * 2 * self.sig * (1 - self.sig)

        # Inverse of the forward index map: gated[i] fed top[i - z] and top[i - z - 1].
        self.gated.grad += torch.roll(g, z) * simj + torch.roll(g, z + 1) * (1 - simj)


class Refocus(Node):
    """Sharpening of the shifted weighting by the power ``softplus(gamma) + 1``.

    Elements below machine epsilon are treated as exactly zero in both passes,
    since their logarithm and the division by them would produce NaN.

    The powers are taken of the weights divided by their maximum. That leaves
    the normalized result unchanged and keeps the largest power at 1, so a
    large exponent over many small weights cannot underflow to all zeros.
    """

    def __init__(self, gamma: Units, shifted: Units) -> None:
        self.gamma = gamma
        self.shifted = shifted
        self.g = F.softplus(gamma.val) + 1

        x = shifted.val
        self.mask = x >= MACHINE_EPSILON
        pows = torch.where(self.mask, (x / x.max()) ** self.g, torch.zeros_like(x))
        self.top = Units.wrap(pows / pows.sum())
        check_not_nan("refocus", self.top.val, g=self.g, shifted=x)

    def backward(self) -> None:
        w = self.top.val
        g = self.top.grad
        x = torch.where(self.mask, self.shifted.val, torch.ones_like(self.shifted.val))

        gw = (g * w).sum()
        grad = self.g / x * w * (g - gw)
        self.shifted.grad += torch.where(self.mask, grad, torch.zeros_like(grad))

        lns = torch.where(self.mask, torch.log(x), torch.zeros_like(x))
        lnexps = (lns * w).sum()
        grad = (g * w * (lns - lnexps)).sum()
        # d(softplus)/d(gamma) is the sigmoid.
        self.gamma.grad += grad * torch.sigmoid(self.gamma.val)


class Read(Node):
    """Weighted sum of memory rows."""

    def __init__(self, weights: Units, memory: Units) -> None:
        if weights.shape != memory.shape[:1]:
            raise ShapeMismatch(
                f"weighting of shape {tuple(weights.shape)} does not match memory of shape {tuple(memory.shape)}"
            )
        self.weights = weights
        self.memory = memory
        self.top = Units.wrap(weights.val @ memory.val)
        check_not_nan("read", self.top.val, weights=weights.val, memory=memory.val)

    def backward(self) -> None:
        g = self.top.grad
        self.weights.grad += self.memory.val @ g
        self.memory.grad += torch.outer(self.weights.val, g)


class Addressing:
    """The full addressing chain of one head over the previous memory bank.

    ``top`` is the head's final weighting for the timestep.
    """

    def __init__(self, head: Head, memory: Units) -> None:
        if head.wtm1 is None:
            raise ShapeMismatch("head has no previous weighting")
        self.head = head
        self.similarity = Similarity(head.key, memory)
        self.scaled = BetaSimilarity(head.beta, self.similarity)
        self.content = ContentAddressing(self.scaled.top)
        self.gated = GatedWeighting(head.gate, self.content.top, head.wtm1)
        self.shifted = ShiftedWeighting(head.shift, self.gated.top)
        self.refocus = Refocus(head.gamma, self.shifted.top)

    @property
    def top(self) -> Units:
        return self.refocus.top

    def zero_grad(self) -> None:
        for node in (self.similarity, self.scaled, self.content, self.gated, self.shifted, self.refocus):
            node.top.zero_grad()

    def backward(self) -> None:
        self.refocus.backward()
        self.shifted.backward()
        self.gated.backward()
        self.content.backward()
        self.scaled.backward()
        self.similarity.backward()
