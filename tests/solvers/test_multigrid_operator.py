"""
Tests for the Galerkin operator hierarchy.

Tests cover:
1. Argument validation and unbuilt-state access
2. Galerkin coarse operators and raw prolongation
3. Adjointness of restriction and prolongation under change of basis
4. Reference-point pinning of matrices and right-hand sides
5. Top-level coordinate transforms and use_solver
6. Zero-row patching and diagnostics
"""

import numpy as np
import pytest
import scipy.sparse as sp
from numpy.testing import assert_allclose
from scipy.sparse.linalg import spsolve

from conftest import neumann_laplacian
from dgsolve.exceptions import PreconditionError
from dgsolve.grid import box_grid, build_sequence
from dgsolve.numerics import (
    ChangeOfBasisConfig, ChangeOfBasisMode, ProblemMapping, create_sequence,
)
from dgsolve.solvers import (
    DirectLinearSolver, KrylovLinearSolver, MultigridOperatorHierarchy, MultigridSetup,
    patch_zero_rows,
)


# =============================================================================
# Helpers
# =============================================================================

def cob(mapping, mode):
    return [ChangeOfBasisConfig(var_index=list(range(mapping.n_fields)),
                                degree=list(mapping.degrees), mode=mode)]


def make_hierarchy(mapping, basis_seq, A, top=ChangeOfBasisMode.EYE,
                   coarse=ChangeOfBasisMode.EYE, **kwargs):
    configs = [cob(mapping, top), cob(mapping, coarse)]
    return MultigridOperatorHierarchy(basis_seq, mapping, A, cob_configs=configs, **kwargs)


@pytest.fixture
def uniform_problem():
    """Degree-0 single-field problem on a uniform 4 x 4 grid."""
    grid = box_grid(np.linspace(0.0, 1.0, 5), np.linspace(0.0, 1.0, 5))
    mapping = ProblemMapping(grid, [0])
    basis_seq = create_sequence(build_sequence(grid, max_depth=3), mapping.basis)
    return grid, mapping, basis_seq


# =============================================================================
# Construction
# =============================================================================

class TestConstruction:

    def test_operator_shape_mismatch(self, mapping_2d, basis_sequence_2d):
        with pytest.raises(PreconditionError):
            MultigridOperatorHierarchy(basis_sequence_2d, mapping_2d, sp.identity(10))

    def test_mass_shape_mismatch(self, mapping_2d, basis_sequence_2d, operator_2d):
        with pytest.raises(PreconditionError):
            MultigridOperatorHierarchy(basis_sequence_2d, mapping_2d, operator_2d, mass=sp.identity(10))

    def test_free_mean_value_length(self, mapping_2d, basis_sequence_2d, operator_2d):
        with pytest.raises(PreconditionError):
            MultigridOperatorHierarchy(basis_sequence_2d, mapping_2d, operator_2d, free_mean_value=[True])

    def test_unknown_field_in_change_of_basis(self, mapping_2d, basis_sequence_2d, operator_2d):
        configs = [[ChangeOfBasisConfig(var_index=[5], degree=[0])]]
        with pytest.raises(PreconditionError):
            MultigridOperatorHierarchy(basis_sequence_2d, mapping_2d, operator_2d, cob_configs=configs)

    def test_unbuilt_access_raises(self, mapping_2d, basis_sequence_2d, operator_2d):
        h = MultigridOperatorHierarchy(basis_sequence_2d, mapping_2d, operator_2d)
        assert not h.is_built
        with pytest.raises(PreconditionError):
            h.top.operator
        with pytest.raises(PreconditionError):
            h.transform_sol_into(np.zeros(mapping_2d.local_length))

    def test_build_is_idempotent(self, mapping_2d, basis_sequence_2d, operator_2d):
        h = MultigridOperatorHierarchy(basis_sequence_2d, mapping_2d, operator_2d).build()
        op = h.levels[1].operator
        h.build()
        assert h.levels[1].operator is op
        assert h.is_built

    def test_max_levels(self, mapping_2d, basis_sequence_2d, operator_2d):
        h = MultigridOperatorHierarchy(basis_sequence_2d, mapping_2d, operator_2d, max_levels=2)
        assert h.num_levels == 2
        assert h.levels[-1].coarser is None

    def test_setup_builds_hierarchy(self, mapping_2d, basis_sequence_2d, operator_2d):
        setup = MultigridSetup(problem_mapping=mapping_2d, basis_sequence=basis_sequence_2d)
        h = setup.hierarchy(operator_2d)
        assert h.is_built
        assert h.num_levels == len(basis_sequence_2d)


# =============================================================================
# Galerkin projection
# =============================================================================

class TestGalerkin:

    def test_coarse_operator_is_galerkin(self, mapping_2d, basis_sequence_2d, operator_2d):
        h = make_hierarchy(mapping_2d, basis_sequence_2d, operator_2d).build()
        P = h.levels[0].mapping.prolongation_from(h.levels[1].mapping)
        assert_allclose(h.levels[1].prolongation.toarray(), P.toarray())
        assert_allclose(h.levels[1].operator.toarray(), (P.T @ operator_2d @ P).toarray(), atol=1e-12)

    def test_top_operator_without_pin_is_input(self, mapping_2d, basis_sequence_2d, operator_2d):
        h = make_hierarchy(mapping_2d, basis_sequence_2d, operator_2d).build()
        assert_allclose(h.top.operator.toarray(), operator_2d.toarray())

    def test_top_level_has_no_prolongation(self, mapping_2d, basis_sequence_2d, operator_2d):
        h = make_hierarchy(mapping_2d, basis_sequence_2d, operator_2d).build()
        with pytest.raises(PreconditionError):
            h.top.prolongation

    def test_coarse_operators_stay_symmetric(self, mapping_2d, basis_sequence_2d, operator_2d):
        h = make_hierarchy(mapping_2d, basis_sequence_2d, operator_2d).build()
        for lvl in h.levels[1:]:
            A = lvl.operator.toarray()
            assert_allclose(A, A.T, atol=1e-12)
            assert np.linalg.eigvalsh(A).min() > 0.0

    def test_sym_part_equilibration_gives_identity_blocks(self, mapping_2d, basis_sequence_2d, operator_2d):
        h = make_hierarchy(mapping_2d, basis_sequence_2d, operator_2d,
                           coarse=ChangeOfBasisMode.SYM_PART_DIAG_BLOCK_EQUILIB).build()
        lvl = h.levels[1]
        A = lvl.operator.toarray()
        for j in range(lvl.mapping.n_cells):
            idx = lvl.mapping.cell_indices(j)
            assert_allclose(A[np.ix_(idx, idx)], np.eye(idx.size), atol=1e-10)

    def test_transfers_reproduce_coarse_operator(self, mapping_2d, basis_sequence_2d, operator_2d):
        h = make_hierarchy(mapping_2d, basis_sequence_2d, operator_2d,
                           coarse=ChangeOfBasisMode.SYM_PART_DIAG_BLOCK_EQUILIB).build()
        fine, coarse = h.levels[1], h.levels[2]
        c = np.random.default_rng(5).standard_normal(coarse.mapping.local_length)
        via_transfers = coarse.restrict(fine.operator @ coarse.prolongate(1.0, None, 0.0, c))
        assert_allclose(coarse.operator @ c, via_transfers, atol=1e-10)


class TestAdjointness:
    """<restrict(f), c> == <f, prolongate(c)> when L = R^T."""

    @pytest.mark.parametrize("mode", [
        ChangeOfBasisMode.EYE,
        ChangeOfBasisMode.ID_MASS,
        ChangeOfBasisMode.SYM_PART_DIAG_BLOCK_EQUILIB,
    ])
    def test_restriction_is_adjoint_of_prolongation(self, mapping_2d, basis_sequence_2d,
                                                    operator_2d, mode):
        mass = sp.identity(mapping_2d.local_length, format='csr')
        h = make_hierarchy(mapping_2d, basis_sequence_2d, operator_2d, coarse=mode, mass=mass).build()
        rng = np.random.default_rng(6)
        for k in (1, 2):
            f = rng.standard_normal(h.levels[k - 1].mapping.local_length)
            c = rng.standard_normal(h.levels[k].mapping.local_length)
            lhs = np.dot(h.levels[k].restrict(f), c)
            rhs = np.dot(f, h.levels[k].prolongate(1.0, None, 0.0, c))
            assert lhs == pytest.approx(rhs, rel=1e-10)

    def test_prolongate_accumulates(self, mapping_2d, basis_sequence_2d, operator_2d):
        h = make_hierarchy(mapping_2d, basis_sequence_2d, operator_2d).build()
        lvl = h.levels[1]
        rng = np.random.default_rng(7)
        fine = rng.standard_normal(h.levels[0].mapping.local_length)
        c = rng.standard_normal(lvl.mapping.local_length)
        out = lvl.prolongate(2.0, fine, 0.5, c)
        assert_allclose(out, 0.5 * fine + 2.0 * (lvl.prolongation @ c))

    def test_length_checks(self, mapping_2d, basis_sequence_2d, operator_2d):
        h = make_hierarchy(mapping_2d, basis_sequence_2d, operator_2d).build()
        with pytest.raises(PreconditionError):
            h.levels[1].restrict(np.zeros(3))
        with pytest.raises(PreconditionError):
            h.levels[1].prolongate(1.0, None, 0.0, np.zeros(3))


# =============================================================================
# Reference point
# =============================================================================

class TestReferencePoint:

    @pytest.mark.parametrize("free,expected", [([True, False], [0]), ([False, True], [3]),
                                               ([True, True], [0, 3]), ([False, False], [])])
    def test_reference_indices(self, mapping_2d, basis_sequence_2d, operator_2d, free, expected):
        h = MultigridOperatorHierarchy(basis_sequence_2d, mapping_2d, operator_2d, free_mean_value=free)
        assert h.reference_indices == expected

    def test_matrix_pin_round_trip(self, mapping_2d, basis_sequence_2d, operator_2d):
        h = MultigridOperatorHierarchy(basis_sequence_2d, mapping_2d, operator_2d,
                                       free_mean_value=[False, True])
        pinned, backup = h.set_reference_point_mtx(operator_2d)
        P = pinned.toarray()
        e3 = np.zeros(mapping_2d.local_length)
        e3[3] = 1.0
        assert_allclose(P[3], e3)
        assert_allclose(P[:, 3], e3)
        restored = h.restore_reference_point_mtx(pinned, backup)
        assert (restored != operator_2d).nnz == 0
        assert np.array_equal(restored.toarray(), operator_2d.toarray())

    def test_rhs_pin_round_trip(self, mapping_2d, basis_sequence_2d, operator_2d):
        h = MultigridOperatorHierarchy(basis_sequence_2d, mapping_2d, operator_2d,
                                       free_mean_value=[True, False])
        r = np.arange(1.0, mapping_2d.local_length + 1.0)
        pinned, backup = h.set_reference_point_rhs(r)
        assert pinned[0] == 0.0
        assert_allclose(pinned[1:], r[1:])
        assert_allclose(h.restore_reference_point_rhs(pinned, backup), r)

    def test_pinned_neumann_problem(self, uniform_problem):
        grid, mapping, basis_seq = uniform_problem
        A = neumann_laplacian(grid)
        h = MultigridOperatorHierarchy(basis_seq, mapping, A, free_mean_value=[True]).build()

        b = np.where(np.arange(grid.n_cells) % 2 == 0, 1.0, -1.0)
        u = np.zeros(grid.n_cells)
        h.use_solver(DirectLinearSolver(), u, b)
        assert u[0] == pytest.approx(0.0, abs=1e-12)
        assert_allclose(A @ u, b, atol=1e-10)


# =============================================================================
# Top-level transforms
# =============================================================================

class TestTransforms:

    def test_only_top_level(self, mapping_2d, basis_sequence_2d, operator_2d):
        h = make_hierarchy(mapping_2d, basis_sequence_2d, operator_2d).build()
        u = np.zeros(mapping_2d.local_length)
        with pytest.raises(PreconditionError):
            h.transform_sol_into(u, level=1)
        with pytest.raises(PreconditionError):
            h.transform_rhs_into(u, level=1)

    def test_full_vector_length(self, mapping_2d, basis_sequence_2d, operator_2d):
        h = make_hierarchy(mapping_2d, basis_sequence_2d, operator_2d).build()
        with pytest.raises(PreconditionError):
            h.transform_sol_into(np.zeros(5))

    def test_solution_round_trip(self, mapping_2d, basis_sequence_2d, operator_2d):
        h = make_hierarchy(mapping_2d, basis_sequence_2d, operator_2d,
                           top=ChangeOfBasisMode.SYM_PART_DIAG_BLOCK_EQUILIB).build()
        u = np.random.default_rng(8).standard_normal(mapping_2d.local_length)
        assert_allclose(h.transform_sol_from(h.transform_sol_into(u)), u, atol=1e-10)
        assert_allclose(h.transform_rhs_from(h.transform_rhs_into(u)), u, atol=1e-10)

    def test_transformed_operator_is_consistent(self, mapping_2d, basis_sequence_2d, operator_2d):
        """L A R applied to R^-1 u equals L (A u)."""
        h = make_hierarchy(mapping_2d, basis_sequence_2d, operator_2d,
                           top=ChangeOfBasisMode.DIAG_BLOCK_EQUILIB).build()
        u = np.random.default_rng(9).standard_normal(mapping_2d.local_length)
        assert_allclose(h.top.operator @ h.transform_sol_into(u),
                        h.transform_rhs_into(operator_2d @ u), atol=1e-10)

    def test_use_solver_matches_direct_solve(self, mapping_2d, basis_sequence_2d, operator_2d):
        h = make_hierarchy(mapping_2d, basis_sequence_2d, operator_2d,
                           top=ChangeOfBasisMode.SYM_PART_DIAG_BLOCK_EQUILIB).build()
        b = np.random.default_rng(10).standard_normal(mapping_2d.local_length)
        x = np.zeros(mapping_2d.local_length)
        out = h.use_solver(DirectLinearSolver(), x, b)
        assert out is x
        assert_allclose(x, spsolve(operator_2d.tocsc(), b), atol=1e-10)

    def test_use_solver_starts_from_guess(self, mapping_2d, basis_sequence_2d, operator_2d):
        h = make_hierarchy(mapping_2d, basis_sequence_2d, operator_2d).build()
        b = np.random.default_rng(11).standard_normal(mapping_2d.local_length)
        exact = spsolve(operator_2d.tocsc(), b)
        solver = KrylovLinearSolver(restart=30, max_iter=300, tol=1e-12)
        x = exact.copy()
        h.use_solver(solver, x, b, use_guess=True)
        assert solver.last_iterations == 0
        assert_allclose(x, exact, atol=1e-10)


# =============================================================================
# Utilities
# =============================================================================

class TestUtilities:

    def test_patch_zero_rows(self):
        A = sp.csr_matrix(np.array([[2.0, 0.0, 0.0], [0.0, 0.0, 0.0], [1.0, 0.0, 3.0]]))
        patched, n = patch_zero_rows(A)
        assert n == 1
        assert_allclose(patched.toarray(), [[2.0, 0.0, 0.0], [0.0, 1.0, 0.0], [1.0, 0.0, 3.0]])

    def test_patch_nothing(self):
        patched, n = patch_zero_rows(sp.identity(3, format='csr'))
        assert n == 0

    def test_level_info_and_memory(self, mapping_2d, basis_sequence_2d, operator_2d):
        h = make_hierarchy(mapping_2d, basis_sequence_2d, operator_2d).build()
        info = h.level_info()
        assert "3 levels" in info
        assert "ready" in info
        assert h.used_memory() > 0
        per_level = h.memory_info()
        assert sorted(per_level) == [0, 1, 2]
        assert sum(per_level.values()) == h.used_memory()
