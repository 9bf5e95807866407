"""
Multigrid Operator Hierarchy.

This module provides the MultigridOperatorHierarchy class that turns an
assembled operator matrix (and optional mass matrix) on the base grid into
Galerkin-projected operators on every aggregation level:

    P_raw = inv(R_finer) @ P_inj,   R_raw = P_raw^T
    A_raw = R_raw @ A_finer @ P_raw
    A     = L @ A_raw @ R          (block change of basis)

Rows left empty by dropped modes are replaced with identity rows. A single
reference row per field with a free mean value (e.g. pressure) is pinned at
the top level to remove the null-space mode.

Design: levels are kept in a flat list; each node stores the indices of its
finer/coarser neighbours. ``build()`` materializes all levels finest first
and must be called before any matrix is accessed.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import scipy.sparse as sp
from loguru import logger

from ..exceptions import PreconditionError
from ..numerics.change_of_basis import (
    ChangeOfBasisConfig, ChangeOfBasisMode, compute_block_transform,
    extract_block, assemble_block_diagonal,
)
from ..numerics.mapping import MultigridMapping, ProblemMapping
from ..numerics.projector import AggregationBasis
from ..utils.reduction import default_reduction


RhsBackup = List[Tuple[int, float]]
MatrixBackup = List[Tuple[int, int, float]]


class LevelState(Enum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"


def _matrix_bytes(mat) -> int:
    if mat is None:
        return 0
    mat = mat.tocsr()
    return mat.data.nbytes + mat.indices.nbytes + mat.indptr.nbytes


def patch_zero_rows(mat: sp.csr_matrix) -> Tuple[sp.csr_matrix, int]:
    """Put a 1 on the diagonal of every all-zero row."""
    mat = mat.tocsr()
    mat.eliminate_zeros()
    empty = np.flatnonzero(np.diff(mat.indptr) == 0)
    if empty.size == 0:
        return mat, 0
    patch = sp.csr_matrix((np.ones(empty.size), (empty, empty)), shape=mat.shape)
    return (mat + patch).tocsr(), int(empty.size)


@dataclass
class MultigridLevel:
    """
    One node of the operator hierarchy.

    Matrices are available once ``state`` is READY; accessing them earlier
    raises ``PreconditionError``.
    """

    index: int
    mapping: MultigridMapping
    cob_configs: List[ChangeOfBasisConfig]
    finer: Optional[int] = None
    coarser: Optional[int] = None
    state: LevelState = LevelState.UNINITIALIZED

    _operator: Optional[sp.csr_matrix] = field(default=None, repr=False)
    _mass: Optional[sp.csr_matrix] = field(default=None, repr=False)
    _left: Optional[sp.csr_matrix] = field(default=None, repr=False)
    _right: Optional[sp.csr_matrix] = field(default=None, repr=False)
    _left_inv: Optional[sp.csr_matrix] = field(default=None, repr=False)
    _right_inv: Optional[sp.csr_matrix] = field(default=None, repr=False)
    _prolongation: Optional[sp.csr_matrix] = field(default=None, repr=False)
    _restriction: Optional[sp.csr_matrix] = field(default=None, repr=False)
    n_patched_rows: int = 0

    def _require_ready(self):
        if self.state is not LevelState.READY:
            raise PreconditionError(f"level {self.index} has not been built; call build() first")

    @property
    def is_top(self) -> bool:
        return self.finer is None

    @property
    def operator(self) -> sp.csr_matrix:
        self._require_ready()
        return self._operator

    @property
    def mass(self) -> Optional[sp.csr_matrix]:
        self._require_ready()
        return self._mass

    @property
    def left(self) -> sp.csr_matrix:
        self._require_ready()
        return self._left

    @property
    def right(self) -> sp.csr_matrix:
        self._require_ready()
        return self._right

    @property
    def left_inv(self) -> sp.csr_matrix:
        self._require_ready()
        return self._left_inv

    @property
    def right_inv(self) -> sp.csr_matrix:
        self._require_ready()
        return self._right_inv

    @property
    def prolongation(self) -> sp.csr_matrix:
        """Raw prolongation from this level into the finer level's coordinates."""
        self._require_ready()
        if self.is_top:
            raise PreconditionError("the top level has no finer level to prolongate to")
        return self._prolongation

    @property
    def restriction(self) -> sp.csr_matrix:
        self._require_ready()
        if self.is_top:
            raise PreconditionError("the top level has no finer level to restrict from")
        return self._restriction

    def restrict(self, fine: np.ndarray) -> np.ndarray:
        """Restrict a finer-level residual: L (R_raw fine)."""
        fine = np.asarray(fine, dtype=np.float64)
        if fine.shape[0] != self.restriction.shape[1]:
            raise PreconditionError(
                f"level {self.index}: expected fine vector of length {self.restriction.shape[1]}, got {fine.shape[0]}"
            )
        return self._left @ (self._restriction @ fine)

    def prolongate(self, alpha: float, fine: Optional[np.ndarray], beta: float,
                   coarse: np.ndarray) -> np.ndarray:
        """Return beta * fine + alpha * P_raw (R coarse)."""
        coarse = np.asarray(coarse, dtype=np.float64)
        if coarse.shape[0] != self.mapping.local_length:
            raise PreconditionError(
                f"level {self.index}: expected coarse vector of length {self.mapping.local_length}, got {coarse.shape[0]}"
            )
        out = alpha * (self.prolongation @ (self._right @ coarse))
        if fine is not None and beta != 0.0:
            out = out + beta * np.asarray(fine, dtype=np.float64)
        return out

    def used_memory(self) -> int:
        """Bytes held by the sparse matrices of this level."""
        return sum(_matrix_bytes(m) for m in (
            self._operator, self._mass, self._left, self._right,
            self._left_inv, self._right_inv, self._prolongation, self._restriction,
        ))


class MultigridOperatorHierarchy:
    """
    Galerkin operator hierarchy over an aggregation basis sequence.

    Example
    -------
    >>> hierarchy = MultigridOperatorHierarchy(basis_seq, mapping, A, mass=M)
    >>> hierarchy.build()
    >>> print(hierarchy.level_info())
    >>> r_coarse = hierarchy.levels[1].restrict(hierarchy.transform_rhs_into(r))

    Parameters
    ----------
    basis_sequence : list of AggregationBasis
        One basis per level, finest first.
    problem_mapping : ProblemMapping
        Layout of the full problem (rows/columns of ``operator``).
    operator : sparse matrix
        Finest-level operator (e.g. Jacobian).
    mass : sparse matrix, optional
        Finest-level mass matrix; identity if None.
    cob_configs : list of list of ChangeOfBasisConfig, optional
        Change of basis per level; the last entry is reused for deeper levels.
    free_mean_value : sequence of bool, optional
        Fields whose mean value is a null-space mode.
    reduction : SerialReduction, optional
        Distributed reduction.
    max_levels : int, optional
        Limit on the number of levels.
    """

    def __init__(self,
                 basis_sequence: Sequence[AggregationBasis],
                 problem_mapping: ProblemMapping,
                 operator,
                 mass=None,
                 cob_configs: Optional[Sequence[Sequence[ChangeOfBasisConfig]]] = None,
                 free_mean_value: Optional[Sequence[bool]] = None,
                 reduction=None,
                 max_levels: Optional[int] = None):
        self.reduction = default_reduction(reduction)
        self.problem_mapping = problem_mapping
        n = problem_mapping.local_length

        operator = sp.csr_matrix(operator)
        if operator.shape != (n, n):
            raise PreconditionError(
                f"operator partition {operator.shape} does not match the coordinate mapping ({n}, {n})"
            )
        if mass is not None:
            mass = sp.csr_matrix(mass)
            if mass.shape != (n, n):
                raise PreconditionError(
                    f"mass matrix partition {mass.shape} does not match the coordinate mapping ({n}, {n})"
                )
        if len(basis_sequence) == 0:
            raise PreconditionError("empty basis sequence")

        self.operator_raw = operator
        self.mass_raw = mass
        self.free_mean_value = [False] * problem_mapping.n_fields if free_mean_value is None \
            else [bool(f) for f in free_mean_value]
        if len(self.free_mean_value) != problem_mapping.n_fields:
            raise PreconditionError("free_mean_value needs one flag per field")

        if cob_configs is None or len(cob_configs) == 0:
            cob_configs = [[ChangeOfBasisConfig(
                var_index=list(range(problem_mapping.n_fields)),
                degree=list(problem_mapping.degrees),
                mode=ChangeOfBasisMode.EYE,
            )]]
        self.cob_configs = [list(c) for c in cob_configs]

        n_levels = len(basis_sequence) if max_levels is None else min(max_levels, len(basis_sequence))
        self.levels: List[MultigridLevel] = []
        degrees = list(problem_mapping.degrees)
        for i in range(n_levels):
            configs = self.cob_configs[min(i, len(self.cob_configs) - 1)]
            degrees = self._level_degrees(configs, degrees)
            mapping = MultigridMapping(problem_mapping, basis_sequence[i], degrees)
            self.levels.append(MultigridLevel(
                index=i, mapping=mapping, cob_configs=configs,
                finer=i - 1 if i > 0 else None,
                coarser=i + 1 if i + 1 < n_levels else None,
            ))

        self.index_subset = self.levels[0].mapping.index_into_problem_mapping()
        self.reference_indices: List[int] = []
        self.define_reference_indices()

    @staticmethod
    def _level_degrees(configs: Sequence[ChangeOfBasisConfig], finer: List[int]) -> List[int]:
        degrees = list(finer)
        for cfg in configs:
            for f, p in zip(cfg.var_index, cfg.degree):
                if f < 0 or f >= len(degrees):
                    raise PreconditionError(f"change of basis refers to unknown field {f}")
                degrees[f] = min(int(p), finer[f])
        return degrees

    @property
    def num_levels(self) -> int:
        return len(self.levels)

    @property
    def top(self) -> MultigridLevel:
        return self.levels[0]

    @property
    def is_built(self) -> bool:
        return all(lvl.state is LevelState.READY for lvl in self.levels)

    # =========================================================================
    # Reference point
    # =========================================================================

    def define_reference_indices(self) -> List[int]:
        """
        Select one global row per free-mean field.

        The first local cell with a non-empty basis is each process' candidate;
        the global minimum wins, so every process agrees on the same row.
        """
        pm = self.problem_mapping
        sentinel = np.iinfo(np.int64).max
        self.reference_indices = []
        for f, free in enumerate(self.free_mean_value):
            if not free:
                continue
            candidate = sentinel
            for j in range(pm.n_cells):
                if pm.field_length(f) > 0 and pm.grid.volumes[j] > 0.0:
                    candidate = int(pm.global_index(j, f, 0))
                    break
            gi = int(self.reduction.min(candidate))
            if gi == sentinel:
                raise PreconditionError(f"no cell can host the reference point of field {f}")
            self.reference_indices.append(gi)
        if self.reference_indices:
            logger.debug(f"Reference point rows: {self.reference_indices}")
        return self.reference_indices

    def _local_reference_rows(self) -> List[int]:
        part = self.problem_mapping.partitioning
        return [gi - part.i0 for gi in self.reference_indices if part.is_in_local_range(gi)]

    def set_reference_point_rhs(self, rhs: np.ndarray) -> Tuple[np.ndarray, RhsBackup]:
        """Zero the reference entries of a full-problem RHS; returns (pinned copy, backup)."""
        out = np.array(rhs, dtype=np.float64, copy=True)
        backup = []
        for i in self._local_reference_rows():
            backup.append((i, float(out[i])))
            out[i] = 0.0
        return out, backup

    @staticmethod
    def restore_reference_point_rhs(rhs: np.ndarray, backup: RhsBackup) -> np.ndarray:
        out = np.array(rhs, dtype=np.float64, copy=True)
        for i, val in backup:
            out[i] = val
        return out

    def set_reference_point_mtx(self, mtx) -> Tuple[sp.csr_matrix, MatrixBackup]:
        """
        Pin the reference rows of a full-problem matrix.

        Row and column of every reference index are zeroed and the diagonal
        set to 1. The removed entries are returned for restoration.
        """
        A = sp.coo_matrix(mtx)
        rows, cols, vals = A.row, A.col, A.data
        backup: MatrixBackup = []
        for i in self._local_reference_rows():
            hit = (rows == i) | (cols == i)
            backup.extend(zip(rows[hit].tolist(), cols[hit].tolist(), vals[hit].tolist()))
            keep = ~hit
            rows = np.concatenate([rows[keep], [i]])
            cols = np.concatenate([cols[keep], [i]])
            vals = np.concatenate([vals[keep], [1.0]])
        pinned = sp.csr_matrix((vals, (rows, cols)), shape=A.shape)
        return pinned, backup

    def restore_reference_point_mtx(self, mtx, backup: MatrixBackup) -> sp.csr_matrix:
        A = sp.coo_matrix(mtx)
        rows, cols, vals = A.row, A.col, A.data
        for i in self._local_reference_rows():
            keep = ~((rows == i) | (cols == i))
            rows, cols, vals = rows[keep], cols[keep], vals[keep]
        if backup:
            b_rows, b_cols, b_vals = (np.asarray(x) for x in zip(*backup))
            rows = np.concatenate([rows, b_rows])
            cols = np.concatenate([cols, b_cols])
            vals = np.concatenate([vals, b_vals])
        return sp.csr_matrix((vals, (rows, cols)), shape=A.shape)

    # =========================================================================
    # Build
    # =========================================================================

    def build(self) -> "MultigridOperatorHierarchy":
        """Materialize all levels, finest to coarsest. Idempotent."""
        for lvl in self.levels:
            if lvl.state is LevelState.READY:
                continue
            if lvl.is_top:
                pinned, _ = self.set_reference_point_mtx(self.operator_raw)
                idx = self.index_subset
                A_raw = pinned[idx][:, idx]
                M_raw = None if self.mass_raw is None else self.mass_raw[idx][:, idx]
            else:
                finer = self.levels[lvl.finer]
                P_inj = finer.mapping.prolongation_from(lvl.mapping)
                P = (finer.right_inv @ P_inj).tocsr()
                R = P.T.tocsr()
                lvl._prolongation = P
                lvl._restriction = R
                A_raw = (R @ finer.operator @ P).tocsr()
                M_raw = None if finer.mass is None else (R @ finer.mass @ P).tocsr()

            self._setup_change_of_basis(lvl, A_raw, M_raw)
            lvl.state = LevelState.READY

        logger.debug(f"Built multigrid hierarchy with {self.num_levels} levels")
        return self

    def _setup_change_of_basis(self, lvl: MultigridLevel, A_raw: sp.csr_matrix,
                               M_raw: Optional[sp.csr_matrix]) -> None:
        mapping = lvl.mapping
        n = mapping.local_length
        L_blocks, R_blocks, Li_blocks, Ri_blocks = [], [], [], []
        for cfg in lvl.cob_configs:
            if cfg.mode == ChangeOfBasisMode.EYE:
                continue
            for j in range(mapping.n_cells):
                idx = mapping.cell_indices(j, cfg.var_index)
                L, R, L_inv, R_inv = compute_block_transform(
                    cfg.mode, extract_block(A_raw, idx), extract_block(M_raw, idx))
                L_blocks.append((idx, L))
                R_blocks.append((idx, R))
                Li_blocks.append((idx, L_inv))
                Ri_blocks.append((idx, R_inv))

        lvl._left = assemble_block_diagonal(n, L_blocks)
        lvl._right = assemble_block_diagonal(n, R_blocks)
        lvl._left_inv = assemble_block_diagonal(n, Li_blocks)
        lvl._right_inv = assemble_block_diagonal(n, Ri_blocks)

        op = (lvl._left @ A_raw @ lvl._right).tocsr()
        lvl._operator, lvl.n_patched_rows = patch_zero_rows(op)
        if lvl.n_patched_rows:
            logger.debug(f"Level {lvl.index}: patched {lvl.n_patched_rows} indefinite rows")
        if M_raw is not None:
            lvl._mass, _ = patch_zero_rows((lvl._left @ M_raw @ lvl._right).tocsr())

    # =========================================================================
    # Top-level transforms
    # =========================================================================

    def _require_top(self, level: int):
        if level != 0:
            raise PreconditionError("coordinate transforms are only valid on the finest level")
        self.top._require_ready()

    def _check_full(self, u: np.ndarray) -> np.ndarray:
        u = np.asarray(u, dtype=np.float64)
        if u.shape[0] != self.problem_mapping.local_length:
            raise PreconditionError(
                f"expected a full-problem vector of length {self.problem_mapping.local_length}, got {u.shape[0]}"
            )
        return u

    def transform_sol_into(self, u: np.ndarray, level: int = 0) -> np.ndarray:
        """Full-problem solution -> level coordinates: R^-1 u[idx]."""
        self._require_top(level)
        return self.top.right_inv @ self._check_full(u)[self.index_subset]

    def transform_sol_from(self, v: np.ndarray, level: int = 0) -> np.ndarray:
        """Level coordinates -> full-problem solution (entries outside the subset are 0)."""
        self._require_top(level)
        u = np.zeros(self.problem_mapping.local_length)
        u[self.index_subset] = self.top.right @ v
        return u

    def transform_rhs_into(self, r: np.ndarray, level: int = 0) -> np.ndarray:
        """Full-problem residual -> level coordinates: L r[idx], reference rows zeroed."""
        self._require_top(level)
        pinned, _ = self.set_reference_point_rhs(self._check_full(r))
        return self.top.left @ pinned[self.index_subset]

    def transform_rhs_from(self, v: np.ndarray, level: int = 0) -> np.ndarray:
        self._require_top(level)
        u = np.zeros(self.problem_mapping.local_length)
        u[self.index_subset] = self.top.left_inv @ v
        return u

    def use_solver(self, solver, x: np.ndarray, rhs: np.ndarray, use_guess: bool = False) -> np.ndarray:
        """
        Solve the pinned top-level system with ``solver`` in full-problem coordinates.

        ``x`` receives the solution in place; with ``use_guess`` its current
        content is passed to the solver as the initial guess.
        """
        self._check_full(x)
        solver.init(self.top.operator)
        x0 = self.transform_sol_into(x) if use_guess else None
        v = solver.solve(self.transform_rhs_into(rhs), x0=x0)
        x[:] = self.transform_sol_from(v)
        return x

    # =========================================================================
    # Diagnostics
    # =========================================================================

    def used_memory(self) -> int:
        return sum(lvl.used_memory() for lvl in self.levels)

    def memory_info(self) -> Dict[int, int]:
        """Bytes held per level, keyed by level index."""
        return {lvl.index: lvl.used_memory() for lvl in self.levels}

    def level_info(self) -> str:
        """Get formatted string with hierarchy information."""
        lines = [f"Multigrid operator hierarchy: {self.num_levels} levels"]
        for lvl in self.levels:
            status = lvl.state.value
            nnz = lvl._operator.nnz if lvl._operator is not None else 0
            modes = sorted({c.mode.value for c in lvl.cob_configs})
            lines.append(
                f"  Level {lvl.index}: {lvl.mapping.n_cells:6d} cells, {lvl.mapping.local_length:7d} dofs, "
                f"nnz={nnz:8d}, degrees={lvl.mapping.degrees}, cob={','.join(modes)}, {status}"
            )
        lines.append(f"  Memory: {self.used_memory() / 1024:.1f} KiB")
        return "\n".join(lines)


@dataclass
class MultigridSetup:
    """Everything needed to rebuild a hierarchy for a new operator.

    The Newton solver keeps one of these and builds a fresh hierarchy at
    every re-linearization.
    """
    problem_mapping: ProblemMapping
    basis_sequence: List[AggregationBasis]
    cob_configs: Optional[List[List[ChangeOfBasisConfig]]] = None
    free_mean_value: Optional[List[bool]] = None
    mass: Optional[sp.spmatrix] = None
    reduction: Optional[object] = None
    max_levels: Optional[int] = None

    def hierarchy(self, operator) -> MultigridOperatorHierarchy:
        return MultigridOperatorHierarchy(
            self.basis_sequence, self.problem_mapping, operator, mass=self.mass,
            cob_configs=self.cob_configs, free_mean_value=self.free_mean_value,
            reduction=self.reduction, max_levels=self.max_levels,
        ).build()
