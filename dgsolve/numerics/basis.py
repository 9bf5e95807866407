"""
Orthonormal Legendre basis on box cells.

Modes are tensor products of normalized Legendre polynomials with total
degree <= p, ordered hierarchically by total degree so that the first
``length(q)`` modes span all polynomials of degree <= q. On each cell the
modes are L2-orthonormal:

    phi_k(x) = prod_d psi_{k_d}(xi_d) / sqrt(prod_d h_d),
    psi_k(xi) = sqrt((2k+1)/2) P_k(xi),  xi_d = (x_d - c_d) / h_d

All integrals are evaluated with tensor Gauss-Legendre rules, separably per
axis, which is exact for the polynomial products involved.
"""

import itertools
from typing import List, Optional

import numpy as np
from numpy.polynomial import legendre

from ..grid.cells import CellGrid
from ..utils.reduction import default_reduction


def mode_degrees(dim: int, p: int) -> np.ndarray:
    """Multi-indices of all modes with total degree <= p, hierarchical order."""
    modes = [k for k in itertools.product(range(p + 1), repeat=dim) if sum(k) <= p]
    modes.sort(key=lambda k: (sum(k), tuple(-x for x in k)))
    return np.array(modes, dtype=np.int64).reshape(len(modes), dim)


def basis_length(dim: int, p: int) -> int:
    """Number of modes of total degree <= p (0 for p < 0)."""
    if p < 0:
        return 0
    return mode_degrees(dim, p).shape[0]


def _psi(xi: np.ndarray, p: int) -> np.ndarray:
    """Normalized 1D Legendre values, shape (len(xi), p+1)."""
    scale = np.sqrt((2.0 * np.arange(p + 1) + 1.0) / 2.0)
    return legendre.legvander(xi, p) * scale


class LegendreBasis:
    """
    DG basis of degree ``degree`` on every cell of a box grid.

    Parameters
    ----------
    grid : CellGrid
        Base grid of box cells.
    degree : int
        Maximum total polynomial degree.
    """

    def __init__(self, grid: CellGrid, degree: int, reduction=None):
        self.grid = grid
        self.degree = degree
        self.reduction = default_reduction(reduction)
        self.modes = mode_degrees(grid.dim, degree)
        self.xq, self.wq = legendre.leggauss(degree + 1)

        self.center = grid.bbox.mean(axis=2)
        self.half = 0.5 * (grid.bbox[:, :, 1] - grid.bbox[:, :, 0])

    @property
    def n_modes(self) -> int:
        return self.modes.shape[0]

    def length(self, p: Optional[int] = None) -> int:
        """Number of modes up to degree ``p`` (default: full degree)."""
        if p is None:
            p = self.degree
        return basis_length(self.grid.dim, min(p, self.degree))

    def mode_index_for_degree(self, p: int) -> int:
        """First mode index of total degree ``p``."""
        return self.length(p - 1)

    def evaluate(self, j: int, x: np.ndarray) -> np.ndarray:
        """
        Evaluate all modes of cell ``j`` at global points.

        Parameters
        ----------
        j : int
            Cell index.
        x : ndarray, shape (n, D)
            Global coordinates.

        Returns
        -------
        ndarray, shape (n, n_modes)
        """
        x = np.atleast_2d(x)
        xi = (x - self.center[j]) / self.half[j]
        vals = np.ones((x.shape[0], self.n_modes))
        for d in range(self.grid.dim):
            psi = _psi(xi[:, d], self.degree)
            vals *= psi[:, self.modes[:, d]]
        return vals / np.sqrt(np.prod(self.half[j]))

    def constant_mode_value(self, j: int) -> float:
        """Value of mode 0 on cell ``j`` (1 / sqrt(volume))."""
        return 1.0 / np.sqrt(self.grid.volumes[j])

    def _extrapolation_1d(self, a: int, b: int, d: int) -> np.ndarray:
        """e[k, l] = integral over cell b along axis d of psi^b_k psi^a_l."""
        p = self.degree
        x = self.center[b, d] + self.half[b, d] * self.xq
        psi_b = _psi(self.xq, p) / np.sqrt(self.half[b, d])
        psi_a = _psi((x - self.center[a, d]) / self.half[a, d], p) / np.sqrt(self.half[a, d])
        return (psi_b * (self.wq * self.half[b, d])[:, None]).T @ psi_a

    def extrapolation_matrix(self, a: int, b: int) -> np.ndarray:
        """
        Express the basis of cell ``a`` in the basis of cell ``b``.

        Returns
        -------
        E : ndarray, shape (n_modes, n_modes)
            ``phi^a_m = sum_n E[n, m] phi^b_n`` on cell ``b``.
        """
        E = np.ones((self.n_modes, self.n_modes))
        for d in range(self.grid.dim):
            e = self._extrapolation_1d(a, b, d)
            E *= e[np.ix_(self.modes[:, d], self.modes[:, d])]
        return E

    def extrapolation_matrices(self, pairs) -> List[np.ndarray]:
        """Extrapolation matrices for a sequence of ``(a, b)`` cell pairs."""
        return [self.extrapolation_matrix(a, b) for a, b in pairs]

    def global_bounding_box(self) -> np.ndarray:
        """Bounding box of the whole (distributed) grid, shape (D, 2)."""
        lo = self.reduction.min(self.grid.bbox[:, :, 0].min(axis=0))
        hi = self.reduction.max(self.grid.bbox[:, :, 1].max(axis=0))
        return np.stack([np.asarray(lo, dtype=float), np.asarray(hi, dtype=float)], axis=-1)

    def bounding_box_projection(self) -> np.ndarray:
        """
        Project the global bounding-box polynomials onto every cell basis.

        The bounding-box polynomials are Legendre products on the global
        bounding box mapped to [-1, 1]^D, in the same mode order.

        Returns
        -------
        a : ndarray, shape (J, n_modes, n_modes)
            ``a[j, n, m] = integral over cell j of phi_{j,n} P_m``.
        """
        J = self.grid.n_cells
        p = self.degree
        bb = self.global_bounding_box()
        bb_c = bb.mean(axis=1)
        bb_h = 0.5 * (bb[:, 1] - bb[:, 0])

        a = np.ones((J, self.n_modes, self.n_modes))
        for d in range(self.grid.dim):
            x = self.center[:, d, None] + self.half[:, d, None] * self.xq[None, :]   # (J, q)
            eta = (x - bb_c[d]) / bb_h[d]
            psi_j = _psi(self.xq, p)                                                  # (q, p+1)
            P = legendre.legvander(eta, p)                                            # (J, q, p+1)
            w = self.wq * np.sqrt(self.half[:, d, None])                              # (J, q)
            # integral of psi_k(xi)/sqrt(h) * P_l(eta) * h dxi
            e = np.einsum('jq,qk,jql->jkl', w, psi_j, P)
            a *= e[:, self.modes[:, d][:, None], self.modes[:, d][None, :]]
        return a
