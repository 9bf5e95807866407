"""Exception types raised by the solver core.

Non-convergence is never raised; it is reported through result status flags.
"""


class PreconditionError(ValueError):
    """Caller error: partition or length mismatch, misuse of a level, unbuilt state."""


class ArithmeticFailure(ArithmeticError):
    """NaN or Inf produced inside a residual, directional derivative or Krylov solve."""
