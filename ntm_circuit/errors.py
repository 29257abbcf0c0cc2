"""Exceptions raised by the memory circuit.

Both kinds are fatal: a circuit that raised is invalid and so is everything
downstream of it in the recurrent chain.
"""


class NTMError(Exception):
    """Base class for memory circuit errors."""


class InvariantViolation(NTMError, ArithmeticError):
    """A NaN, a negative probability or a zero-norm vector was produced.

    This points at a defect in the caller-supplied parameters or at an earlier
    numerical bug, never at an operational failure.
    """


class ShapeMismatch(NTMError, ValueError):
    """Vector lengths, head counts or configuration values do not line up."""
