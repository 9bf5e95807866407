"""
Cell-grid topology consumed by the aggregation builder.

A ``CellGrid`` is the minimal view of a mesh the solver core needs: cell
volumes, axis-aligned bounding boxes, a symmetric neighbour graph in CSR
form and the owned cell range of this process. ``box_grid`` builds such a
view for tensor-product grids of box cells in 1D, 2D or 3D.

Design: flat arrays only, so numba kernels can consume them directly.
"""

from dataclasses import dataclass, field
from typing import Optional, Sequence

import numpy as np
import scipy.sparse as sp

from ..exceptions import PreconditionError


@dataclass
class CellGrid:
    """Topology and geometry of the base grid.

    Attributes
    ----------
    volumes : ndarray, shape (J,)
        Cell volumes.
    bbox : ndarray, shape (J, D, 2)
        Per-cell bounding boxes, ``bbox[j, d] = (lo, hi)``.
    adj_ptr, adj_idx : ndarray
        CSR neighbour graph (face neighbours, no self loops).
    i0 : int
        Global index of the first locally owned cell.
    """
    volumes: np.ndarray
    bbox: np.ndarray
    adj_ptr: np.ndarray
    adj_idx: np.ndarray
    i0: int = 0
    _adjacency: Optional[sp.csr_matrix] = field(default=None, repr=False, compare=False)

    def __post_init__(self):
        self.volumes = np.ascontiguousarray(self.volumes, dtype=np.float64)
        self.bbox = np.ascontiguousarray(self.bbox, dtype=np.float64)
        self.adj_ptr = np.ascontiguousarray(self.adj_ptr, dtype=np.int64)
        self.adj_idx = np.ascontiguousarray(self.adj_idx, dtype=np.int64)

        J = self.volumes.shape[0]
        if self.bbox.ndim != 3 or self.bbox.shape[0] != J or self.bbox.shape[2] != 2:
            raise PreconditionError(f"bbox must have shape ({J}, D, 2), got {self.bbox.shape}")
        if self.adj_ptr.shape[0] != J + 1:
            raise PreconditionError(f"adj_ptr must have length {J + 1}, got {self.adj_ptr.shape[0]}")

    @property
    def n_cells(self) -> int:
        return self.volumes.shape[0]

    @property
    def dim(self) -> int:
        return self.bbox.shape[1]

    def neighbours(self, j: int) -> np.ndarray:
        return self.adj_idx[self.adj_ptr[j]:self.adj_ptr[j + 1]]

    def adjacency_matrix(self) -> sp.csr_matrix:
        """Unweighted adjacency as a sparse (J, J) matrix."""
        if self._adjacency is None:
            J = self.n_cells
            data = np.ones(self.adj_idx.shape[0])
            self._adjacency = sp.csr_matrix((data, self.adj_idx, self.adj_ptr), shape=(J, J))
        return self._adjacency

    def centers(self) -> np.ndarray:
        return self.bbox.mean(axis=2)


def box_grid(*edges: Sequence[float], i0: int = 0) -> CellGrid:
    """
    Create a tensor-product grid of box cells.

    Parameters
    ----------
    *edges : array_like
        Node coordinates along each axis (one array per dimension).
    i0 : int
        Global index of the first cell.

    Returns
    -------
    CellGrid
        Grid with cells numbered in C order (last axis fastest), matching
        ``np.meshgrid(..., indexing='ij')``.

    Example
    -------
    >>> grid = box_grid(np.linspace(0, 1, 5), np.linspace(0, 1, 3))
    >>> grid.n_cells
    8
    """
    if len(edges) == 0 or len(edges) > 3:
        raise PreconditionError("box_grid supports 1 to 3 dimensions")

    edges = [np.asarray(e, dtype=np.float64) for e in edges]
    shape = tuple(e.size - 1 for e in edges)
    if min(shape) < 1:
        raise PreconditionError("each axis needs at least two nodes")
    D = len(shape)
    J = int(np.prod(shape))

    # Per-axis lower/upper node of every cell
    idx = np.stack(np.meshgrid(*[np.arange(n) for n in shape], indexing='ij'), axis=-1).reshape(J, D)
    bbox = np.empty((J, D, 2))
    for d in range(D):
        bbox[:, d, 0] = edges[d][idx[:, d]]
        bbox[:, d, 1] = edges[d][idx[:, d] + 1]
    volumes = np.prod(bbox[:, :, 1] - bbox[:, :, 0], axis=1)

    # Face neighbours: +/- 1 along each axis
    flat = np.arange(J).reshape(shape)
    rows, cols = [], []
    for d in range(D):
        lo = [slice(None)] * D
        hi = [slice(None)] * D
        lo[d] = slice(0, shape[d] - 1)
        hi[d] = slice(1, shape[d])
        a = flat[tuple(lo)].ravel()
        b = flat[tuple(hi)].ravel()
        rows.extend([a, b])
        cols.extend([b, a])
    if rows:
        rows = np.concatenate(rows)
        cols = np.concatenate(cols)
    else:
        rows = cols = np.zeros(0, dtype=np.int64)
    A = sp.csr_matrix((np.ones(rows.size), (rows, cols)), shape=(J, J))
    A.sort_indices()

    return CellGrid(volumes=volumes, bbox=bbox, adj_ptr=A.indptr, adj_idx=A.indices, i0=i0)


def isolated_cells(volumes: Sequence[float], dim: int = 1) -> CellGrid:
    """Grid of unit-extent cells without any neighbours (nothing can merge)."""
    volumes = np.asarray(volumes, dtype=np.float64)
    J = volumes.size
    bbox = np.zeros((J, dim, 2))
    bbox[:, :, 0] = np.arange(J)[:, None] * 2.0
    bbox[:, :, 1] = bbox[:, :, 0] + volumes[:, None] ** (1.0 / dim)
    return CellGrid(volumes=volumes, bbox=bbox,
                    adj_ptr=np.zeros(J + 1, dtype=np.int64),
                    adj_idx=np.zeros(0, dtype=np.int64))
