"""
Globalization strategies for Newton's method.

- ``line_search``: Armijo backtracking from the full step. The first
  reduction halves the step; later reductions use a safeguarded three-point
  parabolic model (Kelley's parab3p) bounded to [0.1, 0.5] of the last trial.
- ``dogleg``: trust-region step on the dogleg curve between the Cauchy point
  and the (inexact) Newton step, accepted when the actual residual reduction
  is at least 1e-4 of the reduction predicted by the linear model.

References:
- Kelley (2003), "Solving Nonlinear Equations with Newton's Method", SIAM.
- Pawlowski et al. (2006), "Globalization Techniques for Newton-Krylov
  Methods and Applications to the Fully Coupled Solution of the
  Navier-Stokes Equations", SIAM Review 48(4).
"""

from dataclasses import dataclass
from typing import Callable, Optional

import numpy as np
from loguru import logger

from ..constants import (
    LINE_SEARCH_ALPHA, PARAB_SIGMA0, PARAB_SIGMA1,
    DOGLEG_ACCEPT, DOGLEG_DELTA_MIN, DOGLEG_DELTA_MAX,
)
from ..exceptions import ArithmeticFailure
from ..utils.reduction import default_reduction


def _checked(residual_fn: Callable[[np.ndarray], np.ndarray], x: np.ndarray) -> np.ndarray:
    f = np.asarray(residual_fn(x), dtype=np.float64)
    if not np.all(np.isfinite(f)):
        raise ArithmeticFailure("NaN/Inf in residual evaluation during globalization")
    return f


# =============================================================================
# Line search
# =============================================================================

@dataclass
class LineSearchResult:
    """Outcome of one line search."""
    x: np.ndarray
    residual: np.ndarray
    residual_norm: float
    step_length: float
    trials: int
    accepted: bool


def parab3p(lambdac: float, lambdam: float, ff0: float, ffc: float, ffm: float) -> float:
    """
    Three-point safeguarded parabolic model for a line search.

    Parameters
    ----------
    lambdac : float
        Current step length.
    lambdam : float
        Previous step length.
    ff0 : float
        ||F(x_c)||^2.
    ffc : float
        ||F(x_c + lambdac d)||^2.
    ffm : float
        ||F(x_c + lambdam d)||^2.

    Returns
    -------
    float
        New step length in [0.1 lambdac, 0.5 lambdac].
    """
    c2 = lambdam * (ffc - ff0) - lambdac * (ffm - ff0)
    if c2 >= 0:
        return PARAB_SIGMA1 * lambdac
    c1 = lambdac * lambdac * (ffm - ff0) - lambdam * lambdam * (ffc - ff0)
    lambdap = -c1 * 0.5 / c2
    lambdap = max(lambdap, PARAB_SIGMA0 * lambdac)
    lambdap = min(lambdap, PARAB_SIGMA1 * lambdac)
    return lambdap


def line_search(
    residual_fn: Callable[[np.ndarray], np.ndarray],
    x: np.ndarray,
    f0: np.ndarray,
    step: np.ndarray,
    max_step: int = 30,
    reduction=None,
    print_lambda: bool = False,
) -> LineSearchResult:
    """
    Backtracking line search along ``step``.

    Parameters
    ----------
    residual_fn : callable
        F(x).
    x : np.ndarray
        Current point.
    f0 : np.ndarray
        F(x).
    step : np.ndarray
        Newton step.
    max_step : int
        Maximum number of step reductions.
    reduction : SerialReduction, optional
        Distributed reduction.
    print_lambda : bool
        Log every trial step length.

    Returns
    -------
    LineSearchResult
        Last trial point; ``accepted`` is False if sufficient decrease was
        not reached within ``max_step`` reductions.
    """
    reduction = default_reduction(reduction)

    lam = 1.0
    lamm = 1.0
    lamc = lam
    iarm = 0

    xt = x + lam * step
    ft = _checked(residual_fn, xt)
    nft = reduction.norm(ft)
    nf0 = reduction.norm(f0)
    ff0 = nf0 * nf0
    ffc = nft * nft
    ffm = nft * nft

    while nft >= (1.0 - LINE_SEARCH_ALPHA * lam) * nf0 and iarm < max_step:
        if iarm == 0:
            lam = PARAB_SIGMA1 * lam
        else:
            lam = parab3p(lamc, lamm, ff0, ffc, ffm)

        xt = x + lam * step
        lamm = lamc
        lamc = lam

        ft = _checked(residual_fn, xt)
        nft = reduction.norm(ft)
        ffm = ffc
        ffc = nft * nft
        iarm += 1

        if print_lambda:
            logger.info(f"    Residual: {nft:.6e}  lambda = {lam:.4e}")

    accepted = nft < (1.0 - LINE_SEARCH_ALPHA * lam) * nf0
    if not accepted:
        logger.warning(f"Line search: no sufficient decrease after {iarm} reductions (lambda = {lam:.3e})")
    return LineSearchResult(x=xt, residual=ft, residual_norm=nft, step_length=lam,
                            trials=iarm, accepted=bool(accepted))


# =============================================================================
# Dogleg trust region
# =============================================================================

@dataclass
class DoglegResult:
    """Outcome of one dogleg step."""
    x: np.ndarray
    residual: np.ndarray
    residual_norm: float
    radius: float
    trials: int
    accepted: bool


def initial_trust_radius(step: np.ndarray, reduction=None) -> float:
    """Trust-region width estimate from the first Newton step."""
    reduction = default_reduction(reduction)
    norm_step = reduction.norm(step)
    delta = 2.0 * DOGLEG_DELTA_MIN if norm_step < DOGLEG_DELTA_MIN else norm_step
    return min(DOGLEG_DELTA_MAX, delta)


def cauchy_point(jac, f: np.ndarray, reduction=None) -> np.ndarray:
    """Minimizer of the linear model ||f + J s|| along the steepest descent -J^T f."""
    reduction = default_reduction(reduction)
    dk = -(jac.T @ f)
    Mdk = jac @ dk
    a0 = reduction.inner(f, Mdk)
    a1 = reduction.inner(Mdk, Mdk)
    if a1 == 0.0:
        return np.zeros_like(f)
    return (-a0 / a1) * dk


def point_on_dogleg(step_cp: np.ndarray, step_newton: np.ndarray, radius: float,
                    reduction=None) -> np.ndarray:
    """Point on the dogleg curve inside the trust region of width ``radius``."""
    reduction = default_reduction(reduction)
    l2_cp = reduction.norm(step_cp)
    l2_n = reduction.norm(step_newton)

    if l2_n <= radius:
        return step_newton.copy()
    if l2_cp < radius:
        # Cauchy point inside, Newton step outside: interpolate to the boundary
        tau = (l2_cp - radius) / (l2_cp - l2_n)
        return (1.0 - tau) * step_cp + tau * step_newton
    return step_cp * (radius / l2_cp)


def dogleg(
    residual_fn: Callable[[np.ndarray], np.ndarray],
    jac,
    x: np.ndarray,
    f0: np.ndarray,
    step_newton: np.ndarray,
    radius: Optional[float] = None,
    max_step: int = 30,
    reduction=None,
) -> DoglegResult:
    """
    Dogleg trust-region globalization.

    Parameters
    ----------
    residual_fn : callable
        F(x).
    jac : sparse matrix or LinearOperator
        Jacobian at ``x`` (supports ``@`` and ``.T``).
    x : np.ndarray
        Current point.
    f0 : np.ndarray
        F(x).
    step_newton : np.ndarray
        (Inexact) Newton step.
    radius : float, optional
        Current trust-region width; estimated from the step when None.
    max_step : int
        Maximum number of radius reductions.
    reduction : SerialReduction, optional
        Distributed reduction.

    Returns
    -------
    DoglegResult
        Updated point and the trust-region width for the next iteration.
    """
    reduction = default_reduction(reduction)
    if radius is None:
        radius = initial_trust_radius(step_newton, reduction)
    if radius < DOGLEG_DELTA_MIN or radius > DOGLEG_DELTA_MAX:
        raise ArithmeticFailure(f"trust region width {radius:.3e} out of allowed range")

    step_cp = cauchy_point(jac, f0, reduction)
    l2_f0 = reduction.norm(f0)

    def pred(step):
        return l2_f0 - reduction.norm(f0 + jac @ step)

    step = point_on_dogleg(step_cp, step_newton, radius, reduction)
    x_new = x + step
    f_new = _checked(residual_fn, x_new)
    ared = l2_f0 - reduction.norm(f_new)
    predicted = pred(step)

    trials = 0
    while ared < DOGLEG_ACCEPT * predicted:
        if radius <= DOGLEG_DELTA_MIN or trials >= max_step:
            break
        radius = max(DOGLEG_DELTA_MIN, 0.5 * radius)
        step = point_on_dogleg(step_cp, step_newton, radius, reduction)
        x_new = x + step
        f_new = _checked(residual_fn, x_new)
        ared = l2_f0 - reduction.norm(f_new)
        predicted = pred(step)
        trials += 1

    accepted = ared >= DOGLEG_ACCEPT * predicted
    if not accepted:
        logger.warning(f"Dogleg: step not accepted at minimum radius {radius:.3e}")

    return DoglegResult(x=x_new, residual=f_new, residual_norm=reduction.norm(f_new),
                        radius=radius, trials=trials, accepted=bool(accepted))
