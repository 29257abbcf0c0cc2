from collections.abc import Callable

import pytest
import torch
import torch.nn.functional as F
from torch import Tensor

from ntm_circuit.head import Head
from ntm_circuit.units import DTYPE, Units


def pytest_configure(config):
    config.addinivalue_line("markers", "slow: gradient checks over larger circuits")


@pytest.fixture(autouse=True)
def seed() -> None:
    torch.manual_seed(1)


@pytest.fixture
def random_weighting() -> Callable[[int], Units]:
    def make(n: int) -> Units:
        w = torch.randn(n, dtype=DTYPE).abs()
        return Units.from_values(w / w.sum())

    return make


@pytest.fixture
def random_inputs(random_weighting) -> Callable[[int, int, int], tuple[list[Head], Units]]:
    """Factory for ``(heads, memory)`` with normally distributed values."""

    def make(n: int, m: int, num_heads: int) -> tuple[list[Head], Units]:
        memory = Units.from_values(torch.randn(n, m, dtype=DTYPE))
        heads = [
            Head.from_values(m, torch.randn(3 * m + 4, dtype=DTYPE), random_weighting(n))
            for _ in range(num_heads)
        ]
        return heads, memory

    return make


def _reference_step(params: Tensor, wtm1: Tensor, memory: Tensor) -> tuple[Tensor, Tensor, Tensor]:
    """The same timestep written with plain autograd-tracked torch operations."""
    n, m = memory.shape
    weights = []
    for k in range(params.shape[0]):
        p = params[k]
        key = p[2 * m : 3 * m]
        beta, gate, shift, gamma = p[3 * m], p[3 * m + 1], p[3 * m + 2], p[3 * m + 3]

        similarity = (memory @ key) / (key.norm() * memory.norm(dim=1))
        wc = torch.softmax(torch.exp(beta) * similarity, dim=0)
        g = torch.sigmoid(gate)
        wg = g * wc + (1 - g) * wtm1[k]
        amount = (2 * torch.sigmoid(shift) - 1) % n
        z = int(torch.floor(amount))
        frac = 1 - (amount - z)
        ws = torch.roll(wg, -z) * frac + torch.roll(wg, -(z + 1)) * (1 - frac)
        w = ws ** (F.softplus(gamma) + 1)
        weights.append(w / w.sum())

    w = torch.stack(weights)
    erase = torch.sigmoid(params[:, :m])
    add = torch.sigmoid(params[:, m : 2 * m])
    new_memory = memory * torch.prod(1 - w.unsqueeze(2) * erase.unsqueeze(1), dim=0) + w.T @ add
    return w @ memory, w, new_memory


@pytest.fixture
def reference_step() -> Callable[[Tensor, Tensor, Tensor], tuple[Tensor, Tensor, Tensor]]:
    return _reference_step
