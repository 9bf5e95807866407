"""
Linear solvers usable for the Newton step on an assembled operator.

Both follow the same two-phase protocol: ``init(matrix)`` once per
linearization, then ``solve(rhs)`` any number of times.

Solvers deriving from ``ProgrammableTermination`` accept a
``termination_criterion(iteration, r0_norm, r_norm) -> bool`` that the
Newton driver installs to implement the inexact-Newton forcing term.
"""

from typing import Callable, Optional

import numpy as np
import scipy.sparse as sp
from scipy.sparse.linalg import splu
from loguru import logger

from ..exceptions import ArithmeticFailure, PreconditionError
from ..numerics.gmres import gmres
from .preconditioner import BlockJacobiPreconditioner


class ProgrammableTermination:
    """Mixin for iterative solvers whose stopping rule can be replaced."""

    termination_criterion: Optional[Callable[[int, float, float], bool]] = None


class DirectLinearSolver:
    """Sparse LU (SuperLU) solve."""

    def __init__(self):
        self._lu = None
        self.n = 0

    def init(self, matrix) -> None:
        A = sp.csc_matrix(matrix)
        if A.shape[0] != A.shape[1]:
            raise PreconditionError(f"direct solve needs a square matrix, got {A.shape}")
        try:
            self._lu = splu(A)
        except RuntimeError as e:
            raise ArithmeticFailure(f"sparse LU factorization failed: {e}") from e
        self.n = A.shape[0]

    def solve(self, rhs: np.ndarray, x0: Optional[np.ndarray] = None) -> np.ndarray:
        if self._lu is None:
            raise PreconditionError("solve() called before init()")
        rhs = np.asarray(rhs, dtype=np.float64)
        if rhs.shape[0] != self.n:
            raise PreconditionError(f"expected a right-hand side of length {self.n}, got {rhs.shape[0]}")
        x = self._lu.solve(rhs)
        if not np.all(np.isfinite(x)):
            raise ArithmeticFailure("NaN/Inf in direct solve")
        return x


class KrylovLinearSolver(ProgrammableTermination):
    """
    Restarted GMRES on an assembled matrix with optional block-Jacobi.

    Parameters
    ----------
    restart : int
        Krylov dimension per cycle.
    max_iter : int
        Total iteration cap across restarts.
    tol : float
        Relative tolerance.
    block_size : int, optional
        Cell block size for block-Jacobi preconditioning; none if None.
    """

    def __init__(self, restart: int = 30, max_iter: int = 300, tol: float = 1e-10,
                 block_size: Optional[int] = None, reduction=None):
        self.restart = restart
        self.max_iter = max_iter
        self.tol = tol
        self.block_size = block_size
        self.reduction = reduction
        self.termination_criterion = None
        self.matrix = None
        self.preconditioner = None
        self.last_iterations = 0
        self.last_converged = False

    def init(self, matrix) -> None:
        self.matrix = sp.csr_matrix(matrix)
        self.preconditioner = None
        if self.block_size:
            self.preconditioner = BlockJacobiPreconditioner().setup(self.matrix, self.block_size)

    def solve(self, rhs: np.ndarray, x0: Optional[np.ndarray] = None) -> np.ndarray:
        if self.matrix is None:
            raise PreconditionError("solve() called before init()")
        A = self.matrix

        criterion = self.termination_criterion
        max_iter = self.max_iter

        def termination(it, r0, r):
            if it >= max_iter:
                return False
            return criterion is None or criterion(it, r0, r)

        restart = min(self.restart, max(A.shape[0], 1))
        result = gmres(
            lambda v: A @ v, rhs, x0=x0, tol=self.tol, restart=restart,
            restart_limit=max(self.max_iter // restart, 0),
            preconditioner=self.preconditioner, reduction=self.reduction,
            termination=termination,
        )
        self.last_iterations = result.iterations
        self.last_converged = result.converged
        logger.debug(f"Krylov solve: {result.iterations} iterations, |r| = {result.residual_norm:.3e}")
        return result.x
