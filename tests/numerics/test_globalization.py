"""
Tests for line search and dogleg globalization.

Tests cover:
1. Safeguarded parabolic step model
2. Armijo backtracking (full step, reduction, exhaustion)
3. Cauchy point and dogleg curve
4. Trust-region acceptance, expansion and failure
"""

import numpy as np
import pytest
import scipy.sparse as sp
from numpy.testing import assert_allclose

from dgsolve.exceptions import ArithmeticFailure
from dgsolve.numerics import dogleg, line_search, parab3p
from dgsolve.numerics.globalization import cauchy_point, initial_trust_radius, point_on_dogleg


class TestParab3p:

    def test_exact_parabola_minimizer(self):
        """q(l) = 1 - 2 l + 10 l^2 has its minimum at 0.1."""
        q = lambda l: 1.0 - 2.0 * l + 10.0 * l * l
        assert parab3p(0.5, 1.0, q(0.0), q(0.5), q(1.0)) == pytest.approx(0.1)

    def test_nonconvex_model_halves(self):
        assert parab3p(0.5, 1.0, 1.0, 2.0, 1.0) == pytest.approx(0.25)

    @pytest.mark.parametrize("ffc,ffm", [(0.9, 4.0), (0.999, 1.0), (0.1, 50.0)])
    def test_safeguards(self, ffc, ffm):
        lam = parab3p(0.5, 1.0, 1.0, ffc, ffm)
        assert 0.05 - 1e-15 <= lam <= 0.25 + 1e-15


class TestLineSearch:

    def test_full_step_on_linear_problem(self):
        x = np.array([3.0, -2.0])
        f0 = x - 1.0
        result = line_search(lambda u: u - 1.0, x, f0, -f0)
        assert result.accepted
        assert result.trials == 0
        assert result.step_length == 1.0
        assert_allclose(result.x, 1.0)

    def test_overshooting_step_is_reduced(self):
        x = np.array([10.0])
        f0 = np.arctan(x)
        step = -f0 * (1.0 + x ** 2)
        result = line_search(np.arctan, x, f0, step)
        assert result.accepted
        assert result.trials >= 1
        assert result.step_length < 1.0
        assert result.residual_norm < np.linalg.norm(f0)

    def test_exhaustion_returns_last_trial(self):
        x = np.array([1.0])
        result = line_search(lambda u: u, x, x.copy(), np.array([1.0]), max_step=3)
        assert not result.accepted
        assert result.trials == 3
        assert_allclose(result.x, x + result.step_length)
        assert_allclose(result.residual, result.x)

    def test_nan_residual_raises(self):
        x = np.array([1.0])
        with pytest.raises(ArithmeticFailure):
            line_search(lambda u: np.log(u - 1.5), x, np.array([1.0]), np.array([-1.0]))


class TestDoglegCurve:

    def test_cauchy_point_identity(self):
        f = np.array([1.0, -2.0])
        assert_allclose(cauchy_point(sp.identity(2, format='csr'), f), -f)

    def test_newton_inside_region(self):
        step = point_on_dogleg(np.array([1.0, 0.0]), np.array([3.0, 0.0]), radius=5.0)
        assert_allclose(step, [3.0, 0.0])

    def test_interpolated_to_boundary(self):
        step = point_on_dogleg(np.array([1.0, 0.0]), np.array([3.0, 0.0]), radius=2.0)
        assert_allclose(step, [2.0, 0.0])

    def test_scaled_cauchy_point(self):
        step = point_on_dogleg(np.array([0.0, 4.0]), np.array([3.0, 6.0]), radius=1.0)
        assert_allclose(step, [0.0, 1.0])

    def test_initial_radius(self):
        assert initial_trust_radius(np.array([3.0, 4.0])) == pytest.approx(5.0)
        assert initial_trust_radius(np.zeros(2)) == pytest.approx(2e-6)


class TestDogleg:

    def test_linear_problem_accepts_newton_step(self):
        A = sp.csr_matrix(np.array([[3.0, 1.0], [1.0, 2.0]]))
        b = np.array([1.0, 1.0])
        x = np.zeros(2)
        f0 = A @ x - b
        step = np.linalg.solve(A.toarray(), -f0)
        result = dogleg(lambda u: A @ u - b, A, x, f0, step)
        assert result.accepted
        assert result.trials == 0
        assert result.residual_norm < 1e-12
        assert result.radius == pytest.approx(np.linalg.norm(step))

    def test_wrong_model_is_rejected(self):
        x = np.array([1.0, 1.0])
        result = dogleg(lambda u: u, -sp.identity(2, format='csr'), x, x.copy(), x.copy(),
                        radius=1.0, max_step=5)
        assert not result.accepted
        assert result.trials == 5
        assert result.radius == pytest.approx(1.0 / 32.0)

    def test_radius_out_of_range(self):
        x = np.ones(2)
        with pytest.raises(ArithmeticFailure):
            dogleg(lambda u: u, sp.identity(2), x, x, -x, radius=1e-9)
