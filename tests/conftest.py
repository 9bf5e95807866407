"""
Shared pytest fixtures for the test suite.

This module provides small box grids, problem mappings and SPD test
operators in the cell-major DG layout.
"""

import sys
from pathlib import Path

import numpy as np
import pytest
import scipy.sparse as sp


# Project root directory
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from dgsolve.grid import box_grid, build_sequence
from dgsolve.numerics import ProblemMapping, create_sequence


# =============================================================================
# Test operators
# =============================================================================

def spd_operator(grid, n_per_cell: int, shift: float = 2.0, seed: int = 0) -> sp.csr_matrix:
    """
    Block SPD operator on a cell-major layout.

    (graph Laplacian + shift * I) coupled mode by mode between neighbours,
    plus a small symmetric random perturbation of every diagonal block.
    """
    rng = np.random.default_rng(seed)
    adj = grid.adjacency_matrix()
    lap = sp.diags(np.asarray(adj.sum(axis=1)).ravel()) - adj
    K = (lap + shift * sp.identity(grid.n_cells)).tocsr()
    A = sp.kron(K, sp.identity(n_per_cell))

    blocks = []
    for _ in range(grid.n_cells):
        S = rng.standard_normal((n_per_cell, n_per_cell))
        S = 0.5 * (S + S.T)
        S *= 0.25 / max(np.linalg.norm(S, 2), 1e-12)
        blocks.append(S)
    return (A + sp.block_diag(blocks)).tocsr()


def neumann_laplacian(grid) -> sp.csr_matrix:
    """Singular graph Laplacian (constants are the null space)."""
    adj = grid.adjacency_matrix()
    return (sp.diags(np.asarray(adj.sum(axis=1)).ravel()) - adj).tocsr()


# =============================================================================
# Grid fixtures
# =============================================================================

@pytest.fixture
def grid_1d():
    """8 uniform cells on [0, 1]."""
    return box_grid(np.linspace(0.0, 1.0, 9))


@pytest.fixture
def grid_2d():
    """4 x 4 stretched box cells on [0, 1] x [0, 2]."""
    x = np.array([0.0, 0.2, 0.45, 0.7, 1.0])
    y = np.linspace(0.0, 2.0, 5)
    return box_grid(x, y)


@pytest.fixture
def mapping_2d(grid_2d):
    """Two fields on the 2D grid: degree 1 and degree 0."""
    return ProblemMapping(grid_2d, [1, 0])


@pytest.fixture
def basis_sequence_2d(grid_2d, mapping_2d):
    """Aggregation bases for the 2D grid (finest first)."""
    agg_seq = build_sequence(grid_2d, max_depth=3)
    return create_sequence(agg_seq, mapping_2d.basis)


@pytest.fixture
def operator_2d(grid_2d, mapping_2d):
    """SPD operator matching ``mapping_2d``."""
    return spd_operator(grid_2d, mapping_2d.n_per_cell)
