"""
Block change of basis for multigrid levels.

For every cell, the coefficients of a configured group of fields form one
block. From the diagonal operator block A and mass block M a left transform
L and right transform R are derived, and the level works with L A R:

- ``eye``                         L = R = I
- ``left_inverse_diag_block``     L = inv(A), R = I
- ``diag_block_equilib``          A = U S V^T, L = S^-1/2 U^T, R = V S^-1/2
- ``id_mass``                     M = C C^T, L = inv(C), R = inv(C)^T
- ``id_mass_drop_indefinite``     M = Q diag(w) Q^T, L = w^-1/2 Q^T, R = Q w^-1/2
- ``sym_part_diag_block_equilib`` sym(A) = Q diag(w) Q^T, scaled by |w|^-1/2
- ``sym_part_diag_block_equilib_drop_indefinite``  as above, small |w| dropped

Dropped modes leave zero rows in L A R; the operator hierarchy replaces
them with identity rows.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence, Tuple

import numpy as np
import scipy.sparse as sp
from loguru import logger

from ..constants import COB_DROP_TOL


class ChangeOfBasisMode(str, Enum):
    EYE = "eye"
    LEFT_INVERSE_DIAG_BLOCK = "left_inverse_diag_block"
    DIAG_BLOCK_EQUILIB = "diag_block_equilib"
    ID_MASS = "id_mass"
    ID_MASS_DROP_INDEFINITE = "id_mass_drop_indefinite"
    SYM_PART_DIAG_BLOCK_EQUILIB = "sym_part_diag_block_equilib"
    SYM_PART_DIAG_BLOCK_EQUILIB_DROP_INDEFINITE = "sym_part_diag_block_equilib_drop_indefinite"


@dataclass
class ChangeOfBasisConfig:
    """Change of basis for one group of fields on one level.

    ``degree[i]`` is the polynomial degree of field ``var_index[i]`` on the
    level; it also defines the level's coordinate layout for that field.
    """
    var_index: List[int] = field(default_factory=lambda: [0])
    degree: List[int] = field(default_factory=lambda: [0])
    mode: ChangeOfBasisMode = ChangeOfBasisMode.EYE

    def __post_init__(self):
        self.mode = ChangeOfBasisMode(self.mode)
        if len(self.var_index) != len(self.degree):
            raise ValueError("var_index and degree must have the same length")


BlockTransform = Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]


def _scaled(values: np.ndarray, drop: bool) -> Tuple[np.ndarray, np.ndarray, int]:
    """Return v^-1/2 and v^1/2 of |values|, zeroing (drop) or unscaling small ones."""
    mag = np.abs(values)
    tol = COB_DROP_TOL * max(mag.max(initial=0.0), np.finfo(float).tiny)
    small = mag <= tol
    inv_sqrt = np.where(small, 0.0 if drop else 1.0, 1.0 / np.sqrt(np.where(small, 1.0, mag)))
    sqrt = np.where(small, 0.0 if drop else 1.0, np.sqrt(mag))
    return inv_sqrt, sqrt, int(small.sum())


def compute_block_transform(mode: ChangeOfBasisMode, A: np.ndarray,
                            M: Optional[np.ndarray] = None) -> BlockTransform:
    """
    Compute L, R and their (pseudo-)inverses for one diagonal block.

    Parameters
    ----------
    mode : ChangeOfBasisMode
        Transform type.
    A : ndarray, shape (n, n)
        Diagonal operator block.
    M : ndarray, shape (n, n), optional
        Diagonal mass block; identity if None.

    Returns
    -------
    L, R, L_inv, R_inv : ndarray, shape (n, n)
    """
    n = A.shape[0]
    eye = np.eye(n)
    mode = ChangeOfBasisMode(mode)

    if mode == ChangeOfBasisMode.EYE or n == 0:
        return eye, eye, eye, eye

    if mode == ChangeOfBasisMode.LEFT_INVERSE_DIAG_BLOCK:
        try:
            L = np.linalg.inv(A)
        except np.linalg.LinAlgError:
            logger.debug("Singular diagonal block; using identity")
            return eye, eye, eye, eye
        return L, eye, A.copy(), eye

    if mode == ChangeOfBasisMode.DIAG_BLOCK_EQUILIB:
        U, s, Vt = np.linalg.svd(A)
        inv_sqrt, sqrt, _ = _scaled(s, drop=True)
        L = inv_sqrt[:, None] * U.T
        R = Vt.T * inv_sqrt[None, :]
        return L, R, U * sqrt[None, :], sqrt[:, None] * Vt

    if mode in (ChangeOfBasisMode.ID_MASS, ChangeOfBasisMode.ID_MASS_DROP_INDEFINITE):
        if M is None:
            return eye, eye, eye, eye
        Ms = 0.5 * (M + M.T)
        if mode == ChangeOfBasisMode.ID_MASS:
            try:
                C = np.linalg.cholesky(Ms)
            except np.linalg.LinAlgError:
                logger.debug("Mass block not positive definite; falling back to eigen-decomposition")
                mode = ChangeOfBasisMode.ID_MASS_DROP_INDEFINITE
            else:
                C_inv = np.linalg.inv(C)
                return C_inv, C_inv.T, C, C.T
        w, Q = np.linalg.eigh(Ms)
        w = np.where(w > 0.0, w, 0.0)
        inv_sqrt, sqrt, _ = _scaled(w, drop=True)
        return inv_sqrt[:, None] * Q.T, Q * inv_sqrt[None, :], Q * sqrt[None, :], sqrt[:, None] * Q.T

    # Symmetric part equilibration
    drop = mode == ChangeOfBasisMode.SYM_PART_DIAG_BLOCK_EQUILIB_DROP_INDEFINITE
    w, Q = np.linalg.eigh(0.5 * (A + A.T))
    inv_sqrt, sqrt, _ = _scaled(w, drop=drop)
    return inv_sqrt[:, None] * Q.T, Q * inv_sqrt[None, :], Q * sqrt[None, :], sqrt[:, None] * Q.T


def extract_block(mat: Optional[sp.csr_matrix], idx: np.ndarray) -> Optional[np.ndarray]:
    if mat is None:
        return None
    return mat[idx][:, idx].toarray()


def assemble_block_diagonal(n: int, blocks: Sequence[Tuple[np.ndarray, np.ndarray]]) -> sp.csr_matrix:
    """
    Assemble a sparse block-diagonal matrix; uncovered indices get identity.

    Parameters
    ----------
    n : int
        Matrix dimension.
    blocks : sequence of (indices, dense block)
        Disjoint index sets with their square blocks.
    """
    covered = np.zeros(n, dtype=bool)
    rows, cols, vals = [], [], []
    for idx, blk in blocks:
        k = idx.size
        covered[idx] = True
        rows.append(np.repeat(idx, k))
        cols.append(np.tile(idx, k))
        vals.append(np.asarray(blk).ravel())
    free = np.flatnonzero(~covered)
    rows.append(free)
    cols.append(free)
    vals.append(np.ones(free.size))

    T = sp.csr_matrix((np.concatenate(vals), (np.concatenate(rows), np.concatenate(cols))), shape=(n, n))
    T.eliminate_zeros()
    return T
