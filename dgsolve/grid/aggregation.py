"""
Aggregation Coarsening for Algebraic Multigrid.

This module builds a sequence of aggregation grids on top of a ``CellGrid``.
Each coarsening step greedily pairs neighbouring cells:

- Cells are visited in order of ascending volume (smallest first)
- Among the unused neighbours of a cell, the partner minimizes
  0.7 * size / max(size) + 0.3 * aspect / max(aspect), where size is the
  combined volume and aspect the aspect ratio of the merged bounding box
- A cell without unused neighbours becomes a singleton aggregate

Coarsening never fails: inability to merge only yields singletons.

Design: the pairing is a Numba kernel over flat arrays; the Python driver
derives maps, volumes, boxes and the coarse neighbour graph.
"""

from typing import List, Optional

import numpy as np
import scipy.sparse as sp
from numba import njit
from loguru import logger

from .cells import CellGrid
from ..constants import QUALITY_WEIGHT_SIZE, QUALITY_WEIGHT_ASPECT
from ..exceptions import PreconditionError
from ..utils.reduction import default_reduction


@njit(cache=True)
def _merged_aspect(bbox: np.ndarray, a: int, b: int) -> float:
    """Aspect ratio (max extent / min extent) of the union of two boxes."""
    D = bbox.shape[1]
    ext_max = 0.0
    ext_min = np.inf
    for d in range(D):
        lo = min(bbox[a, d, 0], bbox[b, d, 0])
        hi = max(bbox[a, d, 1], bbox[b, d, 1])
        ext = hi - lo
        if ext > ext_max:
            ext_max = ext
        if ext < ext_min:
            ext_min = ext
    if ext_min <= 0.0:
        return np.inf
    return ext_max / ext_min


@njit(cache=True)
def greedy_pairing(volumes: np.ndarray, bbox: np.ndarray,
                   adj_ptr: np.ndarray, adj_idx: np.ndarray,
                   order: np.ndarray, w_size: float, w_aspect: float):
    """
    Pair cells greedily into aggregates of at most ``MAX_AGGREGATE_MEMBERS`` (two) cells.
    Pair cells greedily into aggregates of at most two cells.

    Parameters
    ----------
    volumes : ndarray, shape (J,)
        Cell volumes.
    bbox : ndarray, shape (J, D, 2)
        Cell bounding boxes.
    adj_ptr, adj_idx : ndarray
        CSR neighbour graph.
    order : ndarray, shape (J,)
        Visiting order (ascending volume).
    w_size, w_aspect : float
        Weights of the normalized size and aspect terms.

    Returns
    -------
    fine_to_coarse : ndarray, shape (J,)
        Aggregate index of every cell.
    n_coarse : int
        Number of aggregates.
    """
    J = volumes.shape[0]
    fine_to_coarse = -np.ones(J, dtype=np.int64)
    n_coarse = 0

    for t in range(J):
        j = order[t]
        if fine_to_coarse[j] >= 0:
            continue

        # First pass: normalization over the candidates
        max_size = 0.0
        max_aspect = 0.0
        n_cand = 0
        first = -1
        for k in range(adj_ptr[j], adj_ptr[j + 1]):
            jn = adj_idx[k]
            if jn == j or fine_to_coarse[jn] >= 0:
                continue
            if first < 0:
                first = jn
            size = volumes[j] + volumes[jn]
            aspect = _merged_aspect(bbox, j, jn)
            if size > max_size:
                max_size = size
            if aspect > max_aspect:
                max_aspect = aspect
            n_cand += 1

        if n_cand > 0:
            best = -1
            best_q = np.inf
            for k in range(adj_ptr[j], adj_ptr[j + 1]):
                jn = adj_idx[k]
                if jn == j or fine_to_coarse[jn] >= 0:
                    continue
                q_size = (volumes[j] + volumes[jn]) / max_size if max_size > 0.0 else 0.0
                aspect = _merged_aspect(bbox, j, jn)
                if np.isinf(max_aspect):
                    q_aspect = 1.0 if np.isinf(aspect) else 0.0
                else:
                    q_aspect = aspect / max_aspect if max_aspect > 0.0 else 0.0
                q = w_size * q_size + w_aspect * q_aspect
                if q < best_q:
                    best_q = q
                    best = jn
            if best < 0:
                best = first
            fine_to_coarse[best] = n_coarse

        fine_to_coarse[j] = n_coarse
        n_coarse += 1

    return fine_to_coarse, n_coarse


def _csr_groups(labels: np.ndarray, n_groups: int):
    """Group indices by label; members stay in ascending index order."""
    order = np.argsort(labels, kind='stable').astype(np.int64)
    counts = np.bincount(labels, minlength=n_groups)
    ptr = np.zeros(n_groups + 1, dtype=np.int64)
    np.cumsum(counts, out=ptr[1:])
    return ptr, order


class AggregationGrid(CellGrid):
    """
    One level of the aggregation hierarchy.

    Level 0 is the identity aggregation of the base grid. Each aggregate at
    level L is a set of cells of level L-1 (``parent``). Instances are
    immutable after construction and only referenced by higher components.

    Attributes
    ----------
    level : int
        Multigrid level (0 = finest).
    parent : AggregationGrid or None
        Level L-1, or None for level 0.
    base : CellGrid
        The base grid all levels refer to.
    fine_to_coarse : ndarray, shape (J_parent,)
        Aggregate index of each parent cell.
    c2f_ptr, c2f_idx : ndarray
        CSR list of parent cells per aggregate.
    base_ptr, base_idx : ndarray
        CSR list of base cells per aggregate.
    base_to_agg : ndarray, shape (J_base,)
        Aggregate index of each base cell.
    """

    def __init__(self, level: int, base: CellGrid, parent: Optional["AggregationGrid"],
                 fine_to_coarse: np.ndarray, n_coarse: int, reduction=None):
        self.level = level
        self.base = base
        self.parent = parent
        self.reduction = default_reduction(reduction)
        fine = base if parent is None else parent

        self.fine_to_coarse = np.ascontiguousarray(fine_to_coarse, dtype=np.int64)
        if self.fine_to_coarse.shape[0] != fine.n_cells:
            raise PreconditionError("fine_to_coarse must cover every parent cell")
        self.c2f_ptr, self.c2f_idx = _csr_groups(self.fine_to_coarse, n_coarse)

        parent_base = np.arange(base.n_cells) if parent is None else parent.base_to_agg
        self.base_to_agg = self.fine_to_coarse[parent_base]
        self.base_ptr, self.base_idx = _csr_groups(self.base_to_agg, n_coarse)

        volumes = np.bincount(self.fine_to_coarse, weights=fine.volumes, minlength=n_coarse)
        D = fine.dim
        bbox = np.empty((n_coarse, D, 2))
        bbox[:, :, 0] = np.inf
        bbox[:, :, 1] = -np.inf
        np.minimum.at(bbox[:, :, 0], self.fine_to_coarse, fine.bbox[:, :, 0])
        np.maximum.at(bbox[:, :, 1], self.fine_to_coarse, fine.bbox[:, :, 1])

        # Coarse neighbour graph: Agg^T A Agg without the diagonal
        agg = sp.csr_matrix(
            (np.ones(fine.n_cells), (np.arange(fine.n_cells), self.fine_to_coarse)),
            shape=(fine.n_cells, n_coarse),
        )
        C = (agg.T @ fine.adjacency_matrix() @ agg).tocsr()
        C = (C - sp.diags(C.diagonal())).tocsr()
        C.eliminate_zeros()
        C.sort_indices()

        super().__init__(volumes=volumes, bbox=bbox, adj_ptr=C.indptr, adj_idx=C.indices,
                         i0=self.reduction.exscan(n_coarse))

    def members(self, j: int) -> np.ndarray:
        """Parent-level cells of aggregate ``j``."""
        return self.c2f_idx[self.c2f_ptr[j]:self.c2f_ptr[j + 1]]

    def base_cells(self, j: int) -> np.ndarray:
        """Base-grid cells of aggregate ``j`` (ascending)."""
        return self.base_idx[self.base_ptr[j]:self.base_ptr[j + 1]]

    def coarse_to_fine(self) -> List[np.ndarray]:
        return [self.members(j) for j in range(self.n_cells)]

    def global_cell_count(self) -> int:
        return int(self.reduction.sum(self.n_cells))

    def check_partition(self) -> None:
        """
        Verify that the aggregates partition the parent cells.

        Raises
        ------
        PreconditionError
            If a parent cell is missing, duplicated, or the child/parent
            maps are not mutual inverses.
        """
        n_fine = self.fine_to_coarse.shape[0]
        seen = np.zeros(n_fine, dtype=np.int64)
        np.add.at(seen, self.c2f_idx, 1)
        if np.any(seen != 1):
            raise PreconditionError(f"level {self.level}: aggregates do not partition the parent cells")
        for j in range(self.n_cells):
            m = self.members(j)
            if m.size == 0:
                raise PreconditionError(f"level {self.level}: aggregate {j} is empty")
            if np.any(self.fine_to_coarse[m] != j):
                raise PreconditionError(f"level {self.level}: maps are not mutual inverses at aggregate {j}")

    def color_cells(self) -> np.ndarray:
        """Greedy colouring so that neighbouring aggregates differ in colour."""
        colors = -np.ones(self.n_cells, dtype=np.int64)
        for j in range(self.n_cells):
            used = set(colors[self.neighbours(j)].tolist())
            c = 0
            while c in used:
                c += 1
            colors[j] = c
        return colors

    def __repr__(self):
        return f"AggregationGrid(level={self.level}, n_cells={self.n_cells})"


def zero_aggregation(grid: CellGrid, reduction=None) -> AggregationGrid:
    """Level 0: every base cell is its own aggregate."""
    return AggregationGrid(0, grid, None, np.arange(grid.n_cells), grid.n_cells, reduction)


def coarsen(level: AggregationGrid) -> AggregationGrid:
    """Build the next coarser aggregation level by greedy pairing."""
    order = np.argsort(level.volumes, kind='stable').astype(np.int64)
    fine_to_coarse, n_coarse = greedy_pairing(
        level.volumes, level.bbox, level.adj_ptr, level.adj_idx, order,
        QUALITY_WEIGHT_SIZE, QUALITY_WEIGHT_ASPECT,
    )
    return AggregationGrid(level.level + 1, level.base, level, fine_to_coarse, int(n_coarse),
                           level.reduction)


def build_sequence(grid: CellGrid, max_depth: int = -1, reduction=None) -> List[AggregationGrid]:
    """
    Build the aggregation grid sequence.

    Parameters
    ----------
    grid : CellGrid
        Base grid.
    max_depth : int
        Maximum number of levels including level 0 (negative = unlimited).
    reduction : SerialReduction, optional
        Distributed reduction for the global cell counts.

    Returns
    -------
    list of AggregationGrid
        Levels ordered finest to coarsest. Building stops as soon as a
        coarsening step does not reduce the global cell count.
    """
    max_depth = max_depth if max_depth >= 0 else np.iinfo(np.int64).max
    seq = [zero_aggregation(grid, reduction)]
    while len(seq) < max_depth:
        nxt = coarsen(seq[-1])
        if nxt.global_cell_count() >= seq[-1].global_cell_count():
            break
        seq.append(nxt)

    logger.debug("Aggregation sequence: " + " -> ".join(str(g.global_cell_count()) for g in seq))
    return seq
