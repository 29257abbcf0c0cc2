"""Value/gradient buffers for the memory circuit.

Every quantity that takes part in backpropagation is stored as a pair of
float64 tensors of identical shape: the value written during the forward pass
and the gradient accumulated during the backward pass. Indexing a ``Units``
returns another ``Units`` whose tensors are views, so a head parameter or a
memory row can be handed to a node and the gradient it accumulates lands in
the owning buffer.
"""

import logging
from dataclasses import dataclass
from typing import Any, Self

import numpy as np
import torch
from torch import Tensor

from ntm_circuit.errors import InvariantViolation, ShapeMismatch

logger = logging.getLogger(__name__)

DTYPE = torch.float64
MACHINE_EPSILON = float(np.finfo(np.float64).eps)
MACHINE_EPSILON_SQRT = float(np.sqrt(MACHINE_EPSILON))
MAX_LOGGED_INDICES = 10


@dataclass(eq=False)
class Units:
    """A tensor of values paired with a tensor of gradients.

    Attributes:
        val: Values computed in the forward pass.
        grad: Gradients accumulated in the backward pass. Always added to,
            never overwritten, because a value may feed several consumers.
    """

    val: Tensor
    grad: Tensor

    def __post_init__(self) -> None:
        if self.val.shape != self.grad.shape:
            raise ShapeMismatch(
                f"value shape {tuple(self.val.shape)} != gradient shape {tuple(self.grad.shape)}"
            )

    @classmethod
    def zeros(cls, *shape: int) -> Self:
        return cls(torch.zeros(*shape, dtype=DTYPE), torch.zeros(*shape, dtype=DTYPE))

    @classmethod
    def wrap(cls, val: Tensor) -> Self:
        """Pair an already computed value tensor with a zero gradient."""
        return cls(val, torch.zeros_like(val))

    @classmethod
    def from_values(cls, values: Any) -> Self:
        """Copy ``values`` (tensor, array or nested list) into a fresh float64 buffer."""
        val = torch.as_tensor(values, dtype=DTYPE).detach().clone()
        return cls.wrap(val)

    def __getitem__(self, index: Any) -> "Units":
        return Units(self.val[index], self.grad[index])

    def __len__(self) -> int:
        return len(self.val)

    @property
    def shape(self) -> torch.Size:
        return self.val.shape

    def zero_grad(self) -> None:
        self.grad.zero_()

    def __repr__(self) -> str:
        return f"Units(val={self.val.tolist()}, grad={self.grad.tolist()})"


def check_not_nan(name: str, value: Tensor, **context: Any) -> None:
    """Raise InvariantViolation if ``value`` holds a NaN, logging ``context`` first.

    Only shapes and the first NaN indices are logged; scalar context is logged
    by value.
    """
    nans = torch.isnan(value)
    if nans.any():
        logger.error(
            "%s of shape %s produced %d NaN, first at %s: %s",
            name,
            tuple(value.shape),
            int(nans.sum()),
            torch.nonzero(nans)[:MAX_LOGGED_INDICES].tolist(),
            _format(context),
        )
        raise InvariantViolation(f"{name} produced NaN")


def _format(context: dict[str, Any]) -> str:
    def describe(value: Any) -> Any:
        if not isinstance(value, Tensor):
            return value
        if value.numel() == 1:
            return value.item()
        return f"shape {tuple(value.shape)}"

    return ", ".join(f"{key}={describe(value)}" for key, value in context.items())
