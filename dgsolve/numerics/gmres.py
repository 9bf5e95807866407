"""
Restarted GMRES for Jacobian-free Newton-Krylov methods.

Implements GMRES(m) with:
- Left preconditioning support
- Modified Gram-Schmidt orthogonalization, re-orthogonalized when the
  Brown/Hindmarsh test detects loss of orthogonality
- Givens rotations applied incrementally to the Hessenberg matrix
- Happy-breakdown handling (no normalization of a zero Krylov vector)
- Restarts until the relative residual drops below the tolerance or the
  restart limit is exhausted
- Optional programmable termination (inexact Newton forcing)

All inner products and norms go through an injected reduction, so the same
code runs serially or on distributed vector shards.

Reference: Kelley (1995), "Iterative Methods for Linear and Nonlinear
Equations", SIAM, algorithms gmres/fdgmres.
"""

from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

import numpy as np
from loguru import logger

from ..constants import FD_EPSILON
from ..exceptions import ArithmeticFailure
from ..utils.reduction import default_reduction


@dataclass
class GMRESResult:
    """Result of GMRES solve.

    Attributes
    ----------
    x : np.ndarray
        Solution vector.
    residual_norm : float
        Final (preconditioned) residual estimate.
    converged : bool
        Whether the solver converged to tolerance.
    iterations : int
        Number of Arnoldi steps performed across all restarts.
    restarts : int
        Number of restarts after the first cycle.
    residual_history : list
        Residual estimate after every Arnoldi step.
    """
    x: np.ndarray
    residual_norm: float
    converged: bool
    iterations: int
    restarts: int = 0
    residual_history: List[float] = field(default_factory=list)


def rotmat(a: float, b: float) -> Tuple[float, float]:
    """Givens rotation parameters (c, s) zeroing ``b`` against ``a``."""
    if b == 0.0:
        return 1.0, 0.0
    if abs(b) > abs(a):
        temp = a / b
        s = 1.0 / np.sqrt(1.0 + temp * temp)
        return temp * s, s
    temp = b / a
    c = 1.0 / np.sqrt(1.0 + temp * temp)
    return c, temp * c


def _back_substitute(R: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Solve the upper triangular system Rx = b; NaN/Inf is fatal."""
    n = b.size
    x = np.zeros(n)
    with np.errstate(divide='ignore', invalid='ignore'):
        for i in range(n - 1, -1, -1):
            s = b[i] - np.dot(R[i, i + 1:n], x[i + 1:n])
            x[i] = s / R[i, i]
    if not np.all(np.isfinite(x)):
        raise ArithmeticFailure("NaN/Inf in GMRES Hessenberg solve")
    return x


def _gmres_cycle(matvec, r, x, m, tol_abs, preconditioner, reduction, history,
                 termination, total_iters):
    """One Arnoldi cycle starting from residual ``r``; returns (x, rho, k, stop)."""
    rho = reduction.norm(r)
    if rho <= tol_abs:
        return x, rho, 0, False

    n = r.size
    V = np.zeros((m + 1, n))
    H = np.zeros((m + 1, m))
    c = np.zeros(m)
    s = np.zeros(m)
    g = np.zeros(m + 1)
    g[0] = rho
    r0 = rho

    V[0] = r / rho
    k = 0
    stop = False
    while rho > tol_abs and k < m:
        w = matvec(V[k])
        if preconditioner is not None:
            w = preconditioner(w)
        normav = reduction.norm(w)

        # Modified Gram-Schmidt
        for j in range(k + 1):
            H[j, k] = reduction.inner(w, V[j])
            w = w - H[j, k] * V[j]
        H[k + 1, k] = reduction.norm(w)
        normav2 = H[k + 1, k]

        # Brown/Hindmarsh condition
        if round(normav + 0.001 * normav2, 3) == round(normav, 3):
            for j in range(k + 1):
                hr = reduction.inner(w, V[j])
                H[j, k] += hr
                w = w - hr * V[j]
            H[k + 1, k] = reduction.norm(w)

        # Watch out for happy breakdown
        if H[k + 1, k] != 0.0:
            V[k + 1] = w / H[k + 1, k]

        # Apply previous rotations, then form the new one
        for i in range(k):
            temp = c[i] * H[i, k] + s[i] * H[i + 1, k]
            H[i + 1, k] = -s[i] * H[i, k] + c[i] * H[i + 1, k]
            H[i, k] = temp
        c[k], s[k] = rotmat(H[k, k], H[k + 1, k])
        temp = c[k] * g[k]
        H[k, k] = c[k] * H[k, k] + s[k] * H[k + 1, k]
        H[k + 1, k] = 0.0
        g[k + 1] = -s[k] * g[k]
        g[k] = temp

        rho = abs(g[k + 1])
        history.append(rho)
        k += 1

        if termination is not None and not termination(total_iters + k, r0, rho):
            stop = True
            break

    y = _back_substitute(H[:k, :k], g[:k])
    x = x + V[:k].T @ y
    return x, rho, k, stop


def gmres(
    matvec: Callable[[np.ndarray], np.ndarray],
    b: np.ndarray,
    x0: Optional[np.ndarray] = None,
    tol: float = 1e-6,
    restart: int = 30,
    restart_limit: int = 1000,
    preconditioner: Optional[Callable[[np.ndarray], np.ndarray]] = None,
    reduction=None,
    termination: Optional[Callable[[int, float, float], bool]] = None,
) -> GMRESResult:
    """Solve Ax = b using restarted GMRES.

    Parameters
    ----------
    matvec : callable
        Matrix-vector product A @ v.
    b : np.ndarray
        Right-hand side vector.
    x0 : np.ndarray, optional
        Initial guess. Defaults to zeros.
    tol : float
        Relative tolerance: stop when ||P^{-1}(b - Ax)|| <= tol * ||P^{-1} b||.
    restart : int
        Krylov dimension per cycle (GMRES(m) parameter).
    restart_limit : int
        Maximum number of restarts after the first cycle.
    preconditioner : callable, optional
        Left preconditioner P^{-1}.
    reduction : SerialReduction, optional
        Distributed reduction for inner products and norms.
    termination : callable, optional
        ``termination(iteration, r0_norm, r_norm) -> bool``; iteration
        continues while it returns True.

    Returns
    -------
    GMRESResult
        Solution and convergence information.
    """
    reduction = default_reduction(reduction)
    b = np.asarray(b, dtype=np.float64)
    x = np.zeros_like(b) if x0 is None else np.array(x0, dtype=np.float64, copy=True)

    b_pre = preconditioner(b) if preconditioner is not None else b
    b_norm = reduction.norm(b_pre)
    if b_norm == 0.0:
        return GMRESResult(x=np.zeros_like(b), residual_norm=0.0, converged=True,
                           iterations=0, residual_history=[0.0])
    tol_abs = tol * b_norm

    history: List[float] = []
    total_iters = 0
    restarts = 0
    rho = b_norm
    while True:
        r = b - matvec(x) if reduction.norm(x) != 0.0 else b.copy()
        if preconditioner is not None:
            r = preconditioner(r)
        x, rho, k, stop = _gmres_cycle(matvec, r, x, restart, tol_abs, preconditioner,
                                       reduction, history, termination, total_iters)
        total_iters += k
        if rho <= tol_abs or stop or k == 0 or restarts >= restart_limit:
            break
        restarts += 1

    converged = bool(rho <= tol_abs)
    logger.trace(f"GMRES: {total_iters} iterations, {restarts} restarts, |r| = {rho:.3e}")
    return GMRESResult(x=x, residual_norm=float(rho), converged=converged,
                       iterations=total_iters, restarts=restarts, residual_history=history)


# =============================================================================
# Jacobian-free Newton-Krylov matvec
# =============================================================================

def directional_derivative(
    residual_fn: Callable[[np.ndarray], np.ndarray],
    x: np.ndarray,
    w: np.ndarray,
    f0: np.ndarray,
    reduction=None,
    eps: float = FD_EPSILON,
) -> np.ndarray:
    """Finite-difference approximation of F'(x) w.

    The perturbation is scaled by the projection of ``x`` onto ``w`` and
    sign-matched to it, then divided by ||w||, to limit cancellation.

    Parameters
    ----------
    residual_fn : callable
        F(x).
    x : np.ndarray
        Current point.
    w : np.ndarray
        Direction.
    f0 : np.ndarray
        F(x), usually available from the outer iteration.
    reduction : SerialReduction, optional
        Distributed reduction.
    eps : float
        Base perturbation.

    Returns
    -------
    np.ndarray
        (F(x + delta w) - F(x)) / delta

    Raises
    ------
    ArithmeticFailure
        If the result contains NaN or Inf.
    """
    reduction = default_reduction(reduction)
    norm_w = reduction.norm(w)
    if norm_w == 0.0:
        return np.zeros_like(f0)

    xs = reduction.inner(x, w) / norm_w
    delta = eps
    if xs != 0.0:
        delta = eps * max(abs(xs), 1.0) * np.sign(xs)
    delta = delta / norm_w

    fx = (np.asarray(residual_fn(x + delta * w)) - f0) / delta
    if not np.all(np.isfinite(fx)):
        raise ArithmeticFailure("NaN/Inf in finite-difference directional derivative")
    return fx


def make_jfnk_matvec(
    residual_fn: Callable[[np.ndarray], np.ndarray],
    x: np.ndarray,
    f0: np.ndarray,
    reduction=None,
) -> Callable[[np.ndarray], np.ndarray]:
    """Create a Jacobian-free matvec ``v -> F'(x) v`` by finite differences."""
    def matvec(v):
        return directional_derivative(residual_fn, x, v, f0, reduction)
    return matvec


def make_jvp_matvec(
    residual_fn: Callable,
    u: np.ndarray,
) -> Callable[[np.ndarray], np.ndarray]:
    """Create an exact matvec ``v -> F'(u) v`` via JAX forward-mode AD.

    ``residual_fn`` must be traceable by JAX (written with ``jnp``).
    """
    from ..utils.jax_config import jax, jnp

    u_j = jnp.asarray(u)
    jvp = jax.jit(lambda v: jax.jvp(residual_fn, (u_j,), (v,))[1])

    def matvec(v):
        out = np.asarray(jvp(jnp.asarray(v)))
        if not np.all(np.isfinite(out)):
            raise ArithmeticFailure("NaN/Inf in Jacobian-vector product")
        return out
    return matvec
