from typing import Any, Self

from ntm_circuit.config import head_size
from ntm_circuit.errors import ShapeMismatch
from ntm_circuit.units import Units


class Head:
    """One read/write head's parameters for a single timestep.

    The controller writes every parameter into one contiguous buffer laid out as
    ``|erase (M)|add (M)|key (M)|beta|gate|shift|gamma|``; the properties below
    are views into it, so gradients accumulated on a property land in the
    buffer. ``wtm1`` is the final weighting of the same head at the previous
    timestep. It is borrowed from that timestep, not owned.
    """

    def __init__(self, m: int, units: Units | None = None, wtm1: Units | None = None) -> None:
        if units is None:
            units = Units.zeros(head_size(m))
        if units.shape != (head_size(m),):
            raise ShapeMismatch(
                f"head buffer must have shape ({head_size(m)},), got {tuple(units.shape)}"
            )
        self.m = m
        self.units = units
        self.wtm1 = wtm1

    @classmethod
    def from_values(cls, m: int, values: Any, wtm1: Units | None = None) -> Self:
        return cls(m, Units.from_values(values), wtm1)

    @property
    def erase(self) -> Units:
        return self.units[0 : self.m]

    @property
    def add(self) -> Units:
        return self.units[self.m : 2 * self.m]

    @property
    def key(self) -> Units:
        """Target of content addressing."""
        return self.units[2 * self.m : 3 * self.m]

    @property
    def beta(self) -> Units:
        """Key strength, unconstrained; scaling uses exp(beta)."""
        return self.units[3 * self.m]

    @property
    def gate(self) -> Units:
        """How much content addressing is preferred over the previous weighting."""
        return self.units[3 * self.m + 1]

    @property
    def shift(self) -> Units:
        """How far the weighting is rotated, mapped through 2 * sigmoid - 1."""
        return self.units[3 * self.m + 2]

    @property
    def gamma(self) -> Units:
        """Sharpening, mapped through softplus + 1."""
        return self.units[3 * self.m + 3]


def heads_from_units(units: Units, m: int, wtm1: list[Units] | None = None) -> list[Head]:
    """Split a controller-owned ``(num_heads, 3M+4)`` buffer into heads sharing its storage."""
    if units.val.dim() != 2:
        raise ShapeMismatch(f"expected a (num_heads, {head_size(m)}) buffer, got {tuple(units.shape)}")
    if wtm1 is not None and len(wtm1) != len(units):
        raise ShapeMismatch(f"{len(units)} heads but {len(wtm1)} previous weightings")
    return [Head(m, units[i], None if wtm1 is None else wtm1[i]) for i in range(len(units))]
