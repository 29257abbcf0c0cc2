import argparse
import random
import sys

import numpy as np
import torch

from ntm_circuit.config import CircuitConfig
from ntm_circuit.gradcheck import GradientMismatch, check_circuit, check_sequence
from ntm_circuit.head import Head
from ntm_circuit.units import Units

parser = argparse.ArgumentParser(
    description="Check the memory circuit's analytic gradients against finite differences."
)
parser.add_argument("--rows", help="Number of memory locations N", type=int, default=3)
parser.add_argument("--cols", help="Width of a memory location M", type=int, default=2)
parser.add_argument("--heads", help="Number of heads", type=int, default=2)
parser.add_argument(
    "--steps",
    help="Also check backpropagation through time over this many steps (0 to skip)",
    type=int,
    default=3,
)
parser.add_argument("--seed", help="Random seed", type=int, default=1)
parser.add_argument("--atol", help="Absolute tolerance", type=float, default=1e-5)


def random_weighting(n: int) -> Units:
    """A random distribution over ``n`` memory locations."""
    w = torch.randn(n, dtype=torch.float64).abs()
    return Units.from_values(w / w.sum())


def random_circuit_inputs(config: CircuitConfig) -> tuple[list[Head], Units]:
    """Generate random heads and a random memory bank for one timestep.

    Args:
        config: Memory dimensions and head count.

    Returns:
        A tuple containing:
            - heads: Heads with normally distributed parameters and a random previous weighting
            - memory: The previous memory bank, shape (N, M)
    """
    memory = Units.from_values(torch.randn(config.n, config.m, dtype=torch.float64))
    heads = [
        Head.from_values(
            config.m,
            torch.randn(config.head_size, dtype=torch.float64),
            random_weighting(config.n),
        )
        for _ in range(config.num_heads)
    ]
    return heads, memory


def report(title: str, mismatches: list[GradientMismatch]) -> bool:
    if mismatches:
        print(f"{title}: {len(mismatches)} mismatching gradients")
        for mismatch in mismatches:
            print(f"  {mismatch}")
        return False
    print(f"{title}: OK")
    return True


def main() -> int:
    args = parser.parse_args()
    random.seed(args.seed)
    np.random.seed(args.seed)
    torch.manual_seed(args.seed)

    config = CircuitConfig(memory_size=(args.rows, args.cols), num_heads=args.heads)
    print(f"Checking gradients, {config=}, seed={args.seed}")

    heads, memory = random_circuit_inputs(config)
    ok = report("circuit", check_circuit(heads, memory, atol=args.atol))

    if args.steps > 0:
        weight_bias = Units.from_values(torch.randn(config.num_heads, config.n, dtype=torch.float64))
        memory_bias = Units.from_values(torch.randn(config.n, config.m, dtype=torch.float64))
        head_params = [
            Units.from_values(torch.randn(config.num_heads, config.head_size, dtype=torch.float64))
            for _ in range(args.steps)
        ]
        mismatches = check_sequence(weight_bias, memory_bias, head_params, atol=args.atol)
        ok = report(f"sequence of {args.steps} steps", mismatches) and ok

    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
