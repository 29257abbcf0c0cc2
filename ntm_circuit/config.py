from dataclasses import dataclass

from ntm_circuit.errors import ShapeMismatch


def head_size(m: int) -> int:
    """Length of one head's flat parameter buffer for memory rows of width ``m``."""
    return 3 * m + 4


@dataclass(frozen=True)
class CircuitConfig:
    """Dimensions of a memory circuit.

    Attributes:
        memory_size: Tuple of (memory locations N, memory vector size M).
        num_heads: Number of read/write heads sharing the memory bank.
    """

    memory_size: tuple[int, int]
    num_heads: int = 1

    def __post_init__(self) -> None:
        if len(self.memory_size) != 2:
            raise ShapeMismatch(f"memory_size must be (N, M), got {self.memory_size}")
        n, m = self.memory_size
        if n < 1 or m < 1:
            raise ShapeMismatch(f"memory dimensions must be positive, got {self.memory_size}")
        if self.num_heads < 1:
            raise ShapeMismatch(f"num_heads must be positive, got {self.num_heads}")

    @property
    def n(self) -> int:
        return self.memory_size[0]

    @property
    def m(self) -> int:
        return self.memory_size[1]

    @property
    def head_size(self) -> int:
        return head_size(self.m)
