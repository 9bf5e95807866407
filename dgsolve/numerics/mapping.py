"""
Coordinate layouts for the full problem and for multigrid levels.

Vectors are stored cell-major: all coefficients of cell j are contiguous,
ordered by field and, within a field, by mode (hierarchical in degree):

    index(j, f, n) = j * n_per_cell + offset[f] + n
"""

from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np
import scipy.sparse as sp

from .basis import LegendreBasis
from .projector import AggregationBasis
from ..exceptions import PreconditionError
from ..grid.cells import CellGrid
from ..utils.reduction import default_reduction


@dataclass(frozen=True)
class Partitioning:
    """Owned index range of this process in a globally partitioned vector."""
    i0: int
    local_length: int
    total_length: int

    @staticmethod
    def create(local_length: int, reduction=None) -> "Partitioning":
        reduction = default_reduction(reduction)
        return Partitioning(
            i0=int(reduction.exscan(local_length)),
            local_length=int(local_length),
            total_length=int(reduction.sum(local_length)),
        )

    @property
    def i_end(self) -> int:
        return self.i0 + self.local_length

    def is_in_local_range(self, i: int) -> bool:
        return self.i0 <= i < self.i_end

    def equals(self, other: "Partitioning") -> bool:
        return (self.i0, self.local_length, self.total_length) == \
            (other.i0, other.local_length, other.total_length)


class CellMajorLayout:
    """Shared index arithmetic of ``ProblemMapping`` and ``MultigridMapping``."""

    def __init__(self, n_cells: int, field_lengths: Sequence[int], reduction=None):
        self.reduction = default_reduction(reduction)
        self.n_cells = int(n_cells)
        self.field_lengths = [int(n) for n in field_lengths]
        self.field_offsets = np.concatenate([[0], np.cumsum(self.field_lengths)]).astype(np.int64)
        self.n_per_cell = int(self.field_offsets[-1])
        self.partitioning = Partitioning.create(self.n_cells * self.n_per_cell, self.reduction)

    @property
    def n_fields(self) -> int:
        return len(self.field_lengths)

    @property
    def local_length(self) -> int:
        return self.partitioning.local_length

    @property
    def total_length(self) -> int:
        return self.partitioning.total_length

    def field_length(self, ifld: int) -> int:
        return self.field_lengths[ifld]

    def local_index(self, j, ifld: int, n):
        """Local index of mode ``n`` of field ``ifld`` in cell ``j`` (broadcasts)."""
        return np.asarray(j) * self.n_per_cell + self.field_offsets[ifld] + np.asarray(n)

    def global_index(self, j, ifld: int, n):
        return self.partitioning.i0 + self.local_index(j, ifld, n)

    def cell_indices(self, j: int, fields: Optional[Sequence[int]] = None,
                     lengths: Optional[Sequence[int]] = None) -> np.ndarray:
        """All indices of cell ``j`` for ``fields``, optionally truncated to ``lengths``."""
        fields = range(self.n_fields) if fields is None else fields
        parts = []
        for i, f in enumerate(fields):
            n = self.field_lengths[f] if lengths is None else min(lengths[i], self.field_lengths[f])
            parts.append(self.local_index(j, f, np.arange(n)))
        return np.concatenate(parts) if parts else np.zeros(0, dtype=np.int64)

    def field_indices(self, ifld: int) -> np.ndarray:
        """All local indices of one field, shape (n_cells, field_length)."""
        j = np.arange(self.n_cells)[:, None]
        n = np.arange(self.field_lengths[ifld])[None, :]
        return self.local_index(j, ifld, n)


class ProblemMapping(CellMajorLayout):
    """
    Layout of the full problem on the base grid.

    Parameters
    ----------
    grid : CellGrid
        Base grid.
    degrees : sequence of int
        Polynomial degree of every field.
    """

    def __init__(self, grid: CellGrid, degrees: Sequence[int], reduction=None):
        if len(degrees) == 0:
            raise PreconditionError("at least one field is required")
        self.grid = grid
        self.degrees = [int(p) for p in degrees]
        self.basis = LegendreBasis(grid, max(self.degrees), reduction)
        super().__init__(grid.n_cells, [self.basis.length(p) for p in self.degrees], reduction)

    def field_mean(self, u: np.ndarray, ifld: int) -> float:
        """Domain mean of one field (uses the constant mode only)."""
        c0 = u[self.local_index(np.arange(self.n_cells), ifld, 0)]
        integral = self.reduction.sum(float(np.dot(c0, np.sqrt(self.grid.volumes))))
        volume = self.reduction.sum(float(self.grid.volumes.sum()))
        return integral / volume

    def add_constant(self, u: np.ndarray, ifld: int, c: float) -> np.ndarray:
        """Return ``u`` with the constant ``c`` added to field ``ifld``."""
        out = np.array(u, dtype=np.float64, copy=True)
        idx = self.local_index(np.arange(self.n_cells), ifld, 0)
        out[idx] += c * np.sqrt(self.grid.volumes)
        return out


class MultigridMapping(CellMajorLayout):
    """
    Layout of one multigrid level.

    Parameters
    ----------
    problem_mapping : ProblemMapping
        Full problem layout.
    basis : AggregationBasis
        Basis of this level.
    degrees : sequence of int
        Degree of every field on this level (at most the problem degree).
    """

    def __init__(self, problem_mapping: ProblemMapping, basis: AggregationBasis,
                 degrees: Sequence[int]):
        if len(degrees) != problem_mapping.n_fields:
            raise PreconditionError(f"expected {problem_mapping.n_fields} degrees, got {len(degrees)}")
        if basis.dg_basis is not problem_mapping.basis:
            raise PreconditionError("basis sequence was not created from the problem's DG basis")
        self.problem_mapping = problem_mapping
        self.basis = basis
        self.degrees = [min(int(p), q) for p, q in zip(degrees, problem_mapping.degrees)]
        super().__init__(basis.grid.n_cells, [basis.length(p) for p in self.degrees],
                         problem_mapping.reduction)

    @property
    def level(self) -> int:
        return self.basis.level

    def index_into_problem_mapping(self) -> np.ndarray:
        """Problem indices of this (top) level's coordinates; valid on level 0 only."""
        if self.level != 0:
            raise PreconditionError("index subset into the problem is only defined on level 0")
        pm = self.problem_mapping
        parts = []
        for j in range(self.n_cells):
            for f in range(self.n_fields):
                parts.append(pm.local_index(j, f, np.arange(self.field_lengths[f])))
        return np.concatenate(parts).astype(np.int64)

    def prolongation_from(self, coarser: "MultigridMapping") -> sp.csr_matrix:
        """
        Injection of coarse-level coefficients into this level's coordinates.

        Returns
        -------
        scipy.sparse.csr_matrix, shape (self.local_length, coarser.local_length)
        """
        if coarser.basis.parent_basis is not self.basis:
            raise PreconditionError("coarser mapping is not the next level of this mapping")

        rows, cols, vals = [], [], []
        grid = coarser.basis.grid
        for j in range(grid.n_cells):
            inj = coarser.basis.injectors[j]
            for l, jF in enumerate(grid.members(j)):
                for f in range(self.n_fields):
                    n = self.field_lengths[f]
                    m = coarser.field_lengths[f]
                    blk = inj[l, :n, :m]
                    r = self.local_index(jF, f, np.arange(n))
                    c = coarser.local_index(j, f, np.arange(m))
                    rows.append(np.repeat(r, m))
                    cols.append(np.tile(c, n))
                    vals.append(blk.ravel())

        P = sp.csr_matrix(
            (np.concatenate(vals), (np.concatenate(rows), np.concatenate(cols))),
            shape=(self.local_length, coarser.local_length),
        )
        P.eliminate_zeros()
        return P

    def __repr__(self):
        return f"MultigridMapping(level={self.level}, degrees={self.degrees}, length={self.local_length})"
