"""
Tests for the per-cell block change of basis.

Tests cover:
1. Configuration coercion and validation
2. Left and right transforms for every mode
3. Dropping of indefinite or negligible modes
4. Block-diagonal assembly
"""

import numpy as np
import pytest
from numpy.testing import assert_allclose, assert_array_equal

from dgsolve.numerics import ChangeOfBasisConfig, ChangeOfBasisMode, compute_block_transform
from dgsolve.numerics.change_of_basis import assemble_block_diagonal


@pytest.fixture
def spd_block():
    rng = np.random.default_rng(7)
    X = rng.standard_normal((4, 4))
    return X @ X.T + 4.0 * np.eye(4)


@pytest.fixture
def general_block(spd_block):
    rng = np.random.default_rng(8)
    return spd_block + 0.5 * rng.standard_normal((4, 4))


class TestConfig:

    def test_mode_from_string(self):
        cfg = ChangeOfBasisConfig(var_index=[0, 1], degree=[1, 0], mode="id_mass")
        assert cfg.mode is ChangeOfBasisMode.ID_MASS

    def test_length_mismatch(self):
        with pytest.raises(ValueError):
            ChangeOfBasisConfig(var_index=[0, 1], degree=[1])

    def test_unknown_mode(self):
        with pytest.raises(ValueError):
            ChangeOfBasisConfig(mode="nope")


class TestTransforms:
    """L A R for each transform type."""

    def test_eye(self, general_block):
        L, R, L_inv, R_inv = compute_block_transform(ChangeOfBasisMode.EYE, general_block)
        for T in (L, R, L_inv, R_inv):
            assert_array_equal(T, np.eye(4))

    def test_left_inverse(self, general_block):
        L, R, L_inv, _ = compute_block_transform(ChangeOfBasisMode.LEFT_INVERSE_DIAG_BLOCK, general_block)
        assert_allclose(L @ general_block @ R, np.eye(4), atol=1e-12)
        assert_allclose(L_inv, general_block)

    def test_left_inverse_of_singular_block(self):
        L, R, _, _ = compute_block_transform(ChangeOfBasisMode.LEFT_INVERSE_DIAG_BLOCK, np.zeros((2, 2)))
        assert_array_equal(L, np.eye(2))

    def test_diag_block_equilib(self, general_block):
        L, R, L_inv, R_inv = compute_block_transform(ChangeOfBasisMode.DIAG_BLOCK_EQUILIB, general_block)
        assert_allclose(L @ general_block @ R, np.eye(4), atol=1e-10)
        assert_allclose(L_inv @ L, np.eye(4), atol=1e-10)
        assert_allclose(R @ R_inv, np.eye(4), atol=1e-10)

    def test_id_mass(self, general_block, spd_block):
        L, R, L_inv, R_inv = compute_block_transform(ChangeOfBasisMode.ID_MASS, general_block, spd_block)
        assert_allclose(L @ spd_block @ R, np.eye(4), atol=1e-10)
        assert_allclose(R, L.T)
        assert_allclose(L_inv @ L, np.eye(4), atol=1e-10)

    def test_id_mass_without_mass(self, general_block):
        L, R, _, _ = compute_block_transform(ChangeOfBasisMode.ID_MASS, general_block)
        assert_array_equal(L, np.eye(4))
        assert_array_equal(R, np.eye(4))

    def test_id_mass_indefinite_drops_modes(self, general_block):
        M = np.diag([2.0, 1.0, -1.0, 0.5])
        L, R, _, _ = compute_block_transform(ChangeOfBasisMode.ID_MASS, general_block, M)
        LMR = L @ M @ R
        assert_allclose(np.sort(np.diag(LMR)), [0.0, 1.0, 1.0, 1.0], atol=1e-12)

    def test_sym_part_equilib_of_spd(self, spd_block):
        L, R, _, _ = compute_block_transform(ChangeOfBasisMode.SYM_PART_DIAG_BLOCK_EQUILIB, spd_block)
        assert_allclose(L @ spd_block @ R, np.eye(4), atol=1e-10)

    def test_sym_part_equilib_of_indefinite(self):
        A = np.diag([4.0, -9.0])
        L, R, _, _ = compute_block_transform(ChangeOfBasisMode.SYM_PART_DIAG_BLOCK_EQUILIB, A)
        assert_allclose(np.sort(np.diag(L @ A @ R)), [-1.0, 1.0], atol=1e-12)

    def test_sym_part_drop_indefinite(self):
        A = np.diag([1.0, 1e-20])
        kept = compute_block_transform(ChangeOfBasisMode.SYM_PART_DIAG_BLOCK_EQUILIB, A)
        dropped = compute_block_transform(ChangeOfBasisMode.SYM_PART_DIAG_BLOCK_EQUILIB_DROP_INDEFINITE, A)
        assert np.count_nonzero(np.abs(np.diag(kept[0] @ A @ kept[1])) > 0.5) == 1
        assert_allclose(np.sort(np.abs(np.diag(kept[0]))), [1.0, 1.0])
        assert_allclose(np.sort(np.diag(dropped[0] @ A @ dropped[1])), [0.0, 1.0], atol=1e-12)

    def test_empty_block(self):
        L, R, _, _ = compute_block_transform(ChangeOfBasisMode.ID_MASS, np.zeros((0, 0)))
        assert L.shape == (0, 0)


class TestAssembly:

    def test_uncovered_indices_get_identity(self):
        T = assemble_block_diagonal(5, [(np.array([1, 3]), np.array([[2.0, 1.0], [0.5, 3.0]]))])
        expected = np.eye(5)
        expected[np.ix_([1, 3], [1, 3])] = [[2.0, 1.0], [0.5, 3.0]]
        assert_allclose(T.toarray(), expected)
