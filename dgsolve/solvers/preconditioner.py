"""
Preconditioners for the Newton-Krylov linear step.

The linear system is posed in the coordinates of the current linearization
(top level of the operator hierarchy, or the raw problem coordinates when no
hierarchy is used). Both preconditioners are set up from a linearization
snapshot via ``init(linearization)`` and applied as P^{-1} r with
``apply(r)``; instances are callable so they can be passed to ``gmres``
directly.

- BlockJacobiPreconditioner: inverts the cell-diagonal blocks of the operator.
- MultigridPreconditioner: one V-cycle over the operator hierarchy with
  damped block-Jacobi smoothing and a sparse LU solve on the coarsest level.
"""

from typing import List, Optional

import numpy as np
import scipy.sparse as sp
from scipy.sparse.linalg import splu
from loguru import logger

from ..exceptions import PreconditionError


class BlockJacobiPreconditioner:
    """Block-Jacobi preconditioner with one dense block per cell.

    Attributes
    ----------
    P_inv : np.ndarray
        Inverted diagonal blocks, shape (n_blocks, block_size, block_size).
    block_size : int
        Number of unknowns per cell.
    """

    def __init__(self, omega: float = 1.0):
        self.omega = omega
        self.P_inv: Optional[np.ndarray] = None
        self.block_size = 1

    def init(self, linearization) -> "BlockJacobiPreconditioner":
        if linearization.jacobian is None:
            raise PreconditionError("block-Jacobi preconditioning needs an assembled Jacobian")
        return self.setup(linearization.jacobian, linearization.block_size)

    def setup(self, matrix, block_size: int) -> "BlockJacobiPreconditioner":
        """Extract and invert the diagonal blocks of ``matrix``.

        Parameters
        ----------
        matrix : sparse matrix, shape (n, n)
            Operator; unknowns of one cell must be contiguous.
        block_size : int
            Unknowns per cell; must divide n.
        """
        A = sp.csr_matrix(matrix)
        n = A.shape[0]
        if block_size <= 0 or n % block_size != 0:
            raise PreconditionError(f"block size {block_size} does not divide the system size {n}")
        n_blocks = n // block_size

        blocks = A.tobsr(blocksize=(block_size, block_size))
        D = np.zeros((n_blocks, block_size, block_size))
        for k in range(n_blocks):
            for ptr in range(blocks.indptr[k], blocks.indptr[k + 1]):
                if blocks.indices[ptr] == k:
                    D[k] += blocks.data[ptr]

        try:
            self.P_inv = np.linalg.inv(D)
        except np.linalg.LinAlgError:
            logger.debug("Singular diagonal block; using pseudo-inverse for block-Jacobi")
            self.P_inv = np.linalg.pinv(D)
        self.block_size = block_size
        return self

    def apply(self, r: np.ndarray) -> np.ndarray:
        """Apply omega * D^{-1} to ``r``."""
        if self.P_inv is None:
            raise PreconditionError("preconditioner used before init()")
        bs = self.block_size
        v = np.asarray(r, dtype=np.float64).reshape(-1, bs)
        return self.omega * np.einsum('kij,kj->ki', self.P_inv, v).ravel()

    __call__ = apply


class MultigridPreconditioner:
    """V-cycle over a ``MultigridOperatorHierarchy``.

    Parameters
    ----------
    pre_sweeps, post_sweeps : int
        Damped block-Jacobi sweeps before and after the coarse correction.
    omega : float
        Smoother damping factor.
    """

    def __init__(self, pre_sweeps: int = 2, post_sweeps: int = 2, omega: float = 0.7):
        self.pre_sweeps = pre_sweeps
        self.post_sweeps = post_sweeps
        self.omega = omega
        self.hierarchy = None
        self.smoothers: List[BlockJacobiPreconditioner] = []
        self._coarse_lu = None

    def init(self, linearization) -> "MultigridPreconditioner":
        hierarchy = linearization.hierarchy
        if hierarchy is None:
            raise PreconditionError("multigrid preconditioning needs an operator hierarchy")
        hierarchy.build()
        self.hierarchy = hierarchy

        self.smoothers = [
            BlockJacobiPreconditioner(self.omega).setup(lvl.operator, max(lvl.mapping.n_per_cell, 1))
            for lvl in hierarchy.levels
        ]
        coarsest = hierarchy.levels[-1]
        try:
            self._coarse_lu = splu(coarsest.operator.tocsc())
        except RuntimeError:
            logger.warning(f"Coarsest level {coarsest.index} operator is singular; smoothing only")
            self._coarse_lu = None
        return self

    def _smooth(self, level: int, x: np.ndarray, r: np.ndarray, sweeps: int) -> np.ndarray:
        A = self.hierarchy.levels[level].operator
        smoother = self.smoothers[level]
        for _ in range(sweeps):
            x = x + smoother.apply(r - A @ x)
        return x

    def apply(self, r: np.ndarray, level: int = 0) -> np.ndarray:
        """Approximate A_level^{-1} r with one V-cycle starting at ``level``."""
        if self.hierarchy is None:
            raise PreconditionError("preconditioner used before init()")
        levels = self.hierarchy.levels
        r = np.asarray(r, dtype=np.float64)
        x = np.zeros_like(r)

        if level == len(levels) - 1:
            if self._coarse_lu is not None:
                return self._coarse_lu.solve(r)
            return self._smooth(level, x, r, self.pre_sweeps + self.post_sweeps)

        A = levels[level].operator
        x = self._smooth(level, x, r, self.pre_sweeps)

        coarse = levels[level + 1]
        rc = coarse.restrict(r - A @ x)
        ec = self.apply(rc, level + 1)
        x = coarse.prolongate(1.0, x, 1.0, ec)

        return self._smooth(level, x, r, self.post_sweeps)

    __call__ = apply
