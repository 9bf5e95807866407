"""
Multigrid basis projection on aggregation grids.

For every aggregation level this module provides two orthonormal
polynomial bases per aggregate:

1. The level basis obtained from the global bounding-box polynomials
   (``create_sequence``). Level 0 uses B_0 = inv(a), which reproduces the DG
   basis; coarser levels orthonormalize the summed bounding-box mass
   matrices with an LDL^T (Cholesky) inversion. The injector from level L
   into child cell jF of level L-1 is ``inv(B_{L-1}[jF]) @ B_L[j]``.

2. The composite basis relative to the base cells, used to restrict and
   prolongate full-grid DG vectors directly: for an aggregate with base cells
   k_0..k_m, E_i extrapolates the basis of k_0 onto k_i, M = sum E_i^T E_i,
   B is upper triangular with B^T M B = I and CB_i = E_i B.

Both bases are hierarchical: truncating to degree q is a leading sub-block.

Design: per-aggregate dense algebra in numpy/scipy; transfers between the
base grid and a level are Numba kernels over stacked (J_base, Np, Np) arrays.
"""

from typing import List, Optional

import numpy as np
import scipy.linalg as la
import scipy.sparse as sp
from numba import njit, prange
from loguru import logger

from .basis import LegendreBasis
from ..constants import ORTHONORMALITY_TOL
from ..exceptions import ArithmeticFailure, PreconditionError
from ..grid.aggregation import AggregationGrid


def ldl_inversion(M: np.ndarray) -> np.ndarray:
    """
    Upper-triangular B with B^T M B = I for a symmetric positive definite M.

    Raises
    ------
    ArithmeticFailure
        If M is not numerically positive definite.
    """
    try:
        U = la.cholesky(0.5 * (M + M.T), lower=False)
    except la.LinAlgError as exc:
        raise ArithmeticFailure("aggregate mass matrix is not positive definite") from exc
    return la.solve_triangular(U, np.eye(M.shape[0]), lower=False)


@njit(cache=True)
def _restrict_kernel(cb: np.ndarray, base_to_agg: np.ndarray, full: np.ndarray,
                     n_agg: int, n: int, m: int) -> np.ndarray:
    """agg[j] = sum over base cells k of j of CB[k, :n, :m]^T full[k, :n]."""
    out = np.zeros((n_agg, m))
    for k in range(cb.shape[0]):
        j = base_to_agg[k]
        for c in range(m):
            acc = 0.0
            for r in range(n):
                acc += cb[k, r, c] * full[k, r]
            out[j, c] += acc
    return out


@njit(cache=True, parallel=True)
def _prolongate_kernel(cb: np.ndarray, base_to_agg: np.ndarray, agg: np.ndarray,
                       n: int, m: int) -> np.ndarray:
    """full[k, :n] = CB[k, :n, :m] @ agg[base_to_agg[k], :m]."""
    K = cb.shape[0]
    out = np.zeros((K, n))
    for k in prange(K):
        j = base_to_agg[k]
        for r in range(n):
            acc = 0.0
            for c in range(m):
                acc += cb[k, r, c] * agg[j, c]
            out[k, r] = acc
    return out


class AggregationBasis:
    """
    Polynomial basis on one aggregation level.

    Attributes
    ----------
    grid : AggregationGrid
        The aggregation level.
    dg_basis : LegendreBasis
        DG basis on the base grid.
    parent_basis : AggregationBasis or None
        Basis of level L-1.
    B : ndarray, shape (J, Np, Np)
        Orthonormalizer of the bounding-box polynomials per aggregate.
    injectors : list of ndarray or None
        Per aggregate, shape (n_members, Np, Np): maps coefficients of this
        level into the basis of each member cell of level L-1.
    """

    def __init__(self, grid: AggregationGrid, dg_basis: LegendreBasis,
                 parent_basis: Optional["AggregationBasis"], B: np.ndarray,
                 mass: np.ndarray, injectors: Optional[List[np.ndarray]] = None):
        if grid.base is not dg_basis.grid:
            raise PreconditionError("mismatch between DG basis grid and aggregation base grid")
        if parent_basis is not None and grid.parent is not parent_basis.grid:
            raise PreconditionError("mismatch in parent grid")
        self.grid = grid
        self.dg_basis = dg_basis
        self.parent_basis = parent_basis
        self.B = B
        self.mass = mass
        self.injectors = injectors
        self._composite: Optional[np.ndarray] = None

    @property
    def level(self) -> int:
        return self.grid.level

    @property
    def n_modes(self) -> int:
        return self.dg_basis.n_modes

    def length(self, p: Optional[int] = None) -> int:
        return self.dg_basis.length(p)

    def local_dim(self, p: Optional[int] = None) -> int:
        """Number of local coefficients of one field of degree ``p``."""
        return self.grid.n_cells * self.length(p)

    # =========================================================================
    # Composite basis (relative to base cells)
    # =========================================================================

    @property
    def composite_basis(self) -> np.ndarray:
        """Stacked composite basis CB[k] for every base cell k, shape (J_base, Np, Np)."""
        if self._composite is None:
            self._composite = self._compute_composite_basis()
        return self._composite

    def _compute_composite_basis(self) -> np.ndarray:
        Np = self.n_modes
        J_base = self.grid.base.n_cells
        cb = np.zeros((J_base, Np, Np))
        eye = np.eye(Np)
        worst = 0.0

        for j in range(self.grid.n_cells):
            cells = self.grid.base_cells(j)
            if cells.size == 1:
                cb[cells[0]] = eye
                continue

            k0 = cells[0]
            E = [self.dg_basis.extrapolation_matrix(k0, k) for k in cells]
            M = sum(Ei.T @ Ei for Ei in E)
            B = ldl_inversion(M)
            for k, Ei in zip(cells, E):
                cb[k] = Ei @ B

            # Orthonormality check
            S = sum(cb[k].T @ cb[k] for k in cells)
            err = np.linalg.norm(S - eye)
            worst = max(worst, err)
            if err > ORTHONORMALITY_TOL:
                raise ArithmeticFailure(
                    f"level {self.level}: composite basis of aggregate {j} is not "
                    f"orthonormal (|CB^T CB - I|_F = {err:.3e})"
                )

        logger.debug(f"Composite basis level {self.level}: max orthonormality error {worst:.2e}")
        return cb

    def _check_full(self, full: np.ndarray) -> np.ndarray:
        full = np.asarray(full, dtype=np.float64)
        if full.ndim != 2 or full.shape[0] != self.grid.base.n_cells:
            raise PreconditionError(
                f"full-grid vector must have shape ({self.grid.base.n_cells}, n), got {full.shape}"
            )
        if full.shape[1] > self.n_modes:
            raise PreconditionError(f"at most {self.n_modes} modes per cell, got {full.shape[1]}")
        return full

    def restrict_from_full_grid(self, full: np.ndarray, p: Optional[int] = None) -> np.ndarray:
        """
        Restrict base-grid DG coefficients onto this level.

        Parameters
        ----------
        full : ndarray, shape (J_base, n)
            Coefficients per base cell (``n`` modes).
        p : int, optional
            Degree of the result (default: the degree matching ``n``).

        Returns
        -------
        ndarray, shape (J_agg, m)
        """
        full = self._check_full(full)
        n = full.shape[1]
        m = n if p is None else self.length(p)
        return _restrict_kernel(self.composite_basis, self.grid.base_to_agg,
                                np.ascontiguousarray(full), self.grid.n_cells, n, m)

    def prolongate_to_full_grid(self, agg: np.ndarray, p: Optional[int] = None) -> np.ndarray:
        """
        Evaluate level coefficients on the base grid.

        Parameters
        ----------
        agg : ndarray, shape (J_agg, m)
            Coefficients per aggregate.
        p : int, optional
            Degree of the result on the base grid (default: matching ``m``).

        Returns
        -------
        ndarray, shape (J_base, n)
        """
        agg = np.asarray(agg, dtype=np.float64)
        if agg.ndim != 2 or agg.shape[0] != self.grid.n_cells or agg.shape[1] > self.n_modes:
            raise PreconditionError(
                f"aggregate vector must have shape ({self.grid.n_cells}, <= {self.n_modes}), got {agg.shape}"
            )
        m = agg.shape[1]
        n = m if p is None else self.length(p)
        return _prolongate_kernel(self.composite_basis, self.grid.base_to_agg,
                                  np.ascontiguousarray(agg), n, m)

    def get_restriction_matrix(self, mapping, ifld: int) -> sp.csr_matrix:
        """
        Explicit restriction of one field from the full problem onto this level.

        Parameters
        ----------
        mapping : MultigridMapping
            Layout of this level; its degree for ``ifld`` is the cutoff.
        ifld : int
            Field index.

        Returns
        -------
        scipy.sparse.csr_matrix, shape (mapping.local_length, problem.local_length)
        """
        if mapping.basis is not self:
            raise PreconditionError("mapping does not belong to this aggregation basis")
        problem = mapping.problem_mapping
        n = problem.field_length(ifld)
        m = mapping.field_length(ifld)
        cb = self.composite_basis

        rows, cols, vals = [], [], []
        for k in range(self.grid.base.n_cells):
            j = self.grid.base_to_agg[k]
            blk = cb[k, :n, :m].T                    # (m, n)
            r = mapping.local_index(j, ifld, np.arange(m))
            c = problem.local_index(k, ifld, np.arange(n))
            rows.append(np.repeat(r, n))
            cols.append(np.tile(c, m))
            vals.append(blk.ravel())

        R = sp.csr_matrix(
            (np.concatenate(vals), (np.concatenate(rows), np.concatenate(cols))),
            shape=(mapping.local_length, problem.local_length),
        )
        R.eliminate_zeros()
        return R

    def __repr__(self):
        return f"AggregationBasis(level={self.level}, n_cells={self.grid.n_cells}, n_modes={self.n_modes})"


def create_sequence(agg_seq: List[AggregationGrid], dg_basis: LegendreBasis) -> List[AggregationBasis]:
    """
    Build the bounding-box basis sequence and injectors for all levels.

    Parameters
    ----------
    agg_seq : list of AggregationGrid
        Levels ordered finest to coarsest, level 0 first.
    dg_basis : LegendreBasis
        DG basis on the base grid.

    Returns
    -------
    list of AggregationBasis
        One basis per level.

    Raises
    ------
    PreconditionError
        If the sequence is empty, unordered, or does not share one base grid.
    """
    if len(agg_seq) == 0:
        raise PreconditionError("empty aggregation sequence")
    base = agg_seq[0].base
    if agg_seq[0].parent is not None:
        raise PreconditionError("level 0 must be the identity aggregation of the base grid")
    for i, g in enumerate(agg_seq):
        if g.level != i:
            raise PreconditionError("grid levels must be provided in order")
        if g.base is not base:
            raise PreconditionError("mismatch in ancestor grid")
        if i > 0 and g.parent is not agg_seq[i - 1]:
            raise PreconditionError(f"mismatch in parent grid at level {i}")
    if agg_seq[0].global_cell_count() != int(agg_seq[0].reduction.sum(base.n_cells)):
        raise PreconditionError("mismatch in number of cells for level 0")
    if dg_basis.grid is not base:
        raise PreconditionError("mismatch between DG basis grid and multigrid ancestor")

    # Level 0: B_0 = inv(a), mass of the bounding-box polynomials per cell
    a = dg_basis.bounding_box_projection()
    mass = np.einsum('jnl,jnk->jlk', a, a)
    B = np.linalg.inv(a)
    seq = [AggregationBasis(agg_seq[0], dg_basis, None, B, mass)]

    for grid in agg_seq[1:]:
        prev = seq[-1]
        inv_B_prev = np.linalg.inv(prev.B)
        Jagg = grid.n_cells
        Np = dg_basis.n_modes

        mass_L = np.zeros((Jagg, Np, Np))
        np.add.at(mass_L, grid.fine_to_coarse, prev.mass)
        B_L = np.empty_like(mass_L)
        injectors = []
        for j in range(Jagg):
            B_L[j] = ldl_inversion(mass_L[j])
            members = grid.members(j)
            injectors.append(np.einsum('lnk,km->lnm', inv_B_prev[members], B_L[j]))

        seq.append(AggregationBasis(grid, dg_basis, prev, B_L, mass_L, injectors))

    logger.debug(f"Created basis sequence with {len(seq)} levels, {dg_basis.n_modes} modes per cell")
    return seq
