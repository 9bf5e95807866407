"""
Newton-Krylov nonlinear solver.

Solves F(x) = rhs with a globalized (inexact) Newton iteration:

    repeat
        solve   J dy = -F          (matrix-free GMRES, or a linear solver on the assembled Jacobian)
        y <- globalize(y, dy)      (line search or dogleg trust region)
        refresh the linearization every ``constant_newton_it`` iterations
        re-evaluate F
    until ||F|| <= tol * ||F0|| + tol (and at least ``min_iter`` iterations)

The linear step is posed in the coordinates of the current linearization,
which is an immutable ``Linearization`` snapshot replaced wholesale at every
refresh. With a multigrid setup these are the top-level coordinates of the
operator hierarchy (change of basis and reference-point pinning applied);
without one they are the problem coordinates.

Failure modes:
- NaN/Inf in any residual, directional derivative or Hessenberg solve raises
  ``ArithmeticFailure`` and aborts the solve.
- Reaching ``max_iter`` is not an error: the result carries status
  ``MAX_ITER_REACHED`` and the best iterate found.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional

import numpy as np
import scipy.sparse as sp
from loguru import logger

from ..config.schema import NewtonSettings
from ..constants import INEXACT_NEWTON_FACTOR, INEXACT_NEWTON_MAX_ITER
from ..exceptions import PreconditionError
from ..numerics.diagnostics import check_finite
from ..numerics.globalization import dogleg, initial_trust_radius, line_search
from ..numerics.gmres import gmres, make_jfnk_matvec, make_jvp_matvec
from ..numerics.mapping import ProblemMapping
from ..utils.reduction import default_reduction
from .linear_solvers import DirectLinearSolver, ProgrammableTermination
from .multigrid_operator import MultigridOperatorHierarchy, MultigridSetup


class SolverStatus(Enum):
    CONVERGED = "converged"
    MAX_ITER_REACHED = "max_iter_reached"


@dataclass
class SolverStats:
    """Work counters of one ``solver_driver`` call."""
    iterations: int = 0
    gmres_iterations: int = 0
    residual_evaluations: int = 0
    jacobian_updates: int = 0
    globalization_trials: int = 0
    wall_time: float = 0.0
    history: List[float] = field(default_factory=list)

    def summary(self) -> str:
        return (f"{self.iterations} Newton iterations, {self.gmres_iterations} linear iterations, "
                f"{self.residual_evaluations} residual evaluations, "
                f"{self.jacobian_updates} Jacobian updates, {self.wall_time:.2f}s")


@dataclass(frozen=True, eq=False)
class Linearization:
    """
    Operator state at one linearization point.

    Linearized coordinates y relate to problem coordinates x by the affine map

        x = solution + S (y - origin),   origin = S^-1 solution

    where S is the hierarchy's solution transform (identity without a
    hierarchy). Residuals map linearly via the hierarchy's RHS transform.

    Attributes
    ----------
    solution, residual : np.ndarray
        Problem-coordinate state at the linearization point.
    jacobian : sparse matrix, optional
        Operator in linearized coordinates (top level of the hierarchy).
    hierarchy : MultigridOperatorHierarchy, optional
        Operator hierarchy built from the Jacobian.
    block_size : int
        Unknowns per cell in linearized coordinates.
    origin : np.ndarray
        ``solution`` in linearized coordinates.
    """
    solution: np.ndarray
    residual: np.ndarray
    origin: np.ndarray
    jacobian: Optional[sp.csr_matrix] = None
    hierarchy: Optional[MultigridOperatorHierarchy] = None
    block_size: int = 1

    @classmethod
    def create(cls, solution: np.ndarray, residual: np.ndarray, jacobian=None,
               hierarchy: Optional[MultigridOperatorHierarchy] = None,
               block_size: int = 1) -> "Linearization":
        solution = np.array(solution, dtype=np.float64, copy=True)
        residual = np.array(residual, dtype=np.float64, copy=True)
        if hierarchy is not None:
            hierarchy.build()
            return cls(solution=solution, residual=residual,
                       origin=hierarchy.transform_sol_into(solution),
                       jacobian=hierarchy.top.operator, hierarchy=hierarchy,
                       block_size=hierarchy.top.mapping.n_per_cell)
        jac = None if jacobian is None else sp.csr_matrix(jacobian)
        return cls(solution=solution, residual=residual, origin=solution.copy(),
                   jacobian=jac, block_size=block_size)

    def sol_into(self, x: np.ndarray) -> np.ndarray:
        if self.hierarchy is None:
            return np.array(x, dtype=np.float64, copy=True)
        return self.origin + self.hierarchy.transform_sol_into(np.asarray(x) - self.solution)

    def sol_from(self, y: np.ndarray) -> np.ndarray:
        return self.solution + self.step_from(np.asarray(y) - self.origin)

    def step_from(self, dy: np.ndarray) -> np.ndarray:
        """Map a linearized-coordinate increment to problem coordinates."""
        if self.hierarchy is None:
            return np.array(dy, dtype=np.float64, copy=True)
        return self.hierarchy.transform_sol_from(dy)

    def rhs_into(self, r: np.ndarray) -> np.ndarray:
        if self.hierarchy is None:
            return np.array(r, dtype=np.float64, copy=True)
        return self.hierarchy.transform_rhs_into(r)


@dataclass
class NewtonResult:
    """Result of a Newton solve.

    Attributes
    ----------
    x : np.ndarray
        Final iterate if converged, otherwise the best iterate found.
    residual_norm : float
        Residual norm of ``x`` in linearized coordinates.
    status : SolverStatus
    iterations : int
    residual_history : list
        Residual norm before the first and after every iteration.
    stats : SolverStats
    """
    x: np.ndarray
    residual_norm: float
    status: SolverStatus
    iterations: int
    residual_history: List[float] = field(default_factory=list)
    stats: SolverStats = field(default_factory=SolverStats)

    @property
    def converged(self) -> bool:
        return self.status is SolverStatus.CONVERGED


IterationCallback = Callable[[int, np.ndarray, np.ndarray, Linearization], None]


class NewtonKrylovSolver:
    """
    Globalized Newton-Krylov driver.

    Parameters
    ----------
    residual_fn : callable
        ``F(x) -> residual`` in problem coordinates.
    config : NewtonSettings, optional
        Solver parameters; defaults if None.
    jacobian_fn : callable, optional
        ``J(x) -> sparse matrix``; required for the direct-solve step,
        dogleg, preconditioning and multigrid.
    multigrid : MultigridSetup, optional
        Builds an operator hierarchy at every re-linearization.
    mapping : ProblemMapping, optional
        Problem layout; required for gauge normalization.
    linear_solver : object, optional
        ``init(matrix)`` / ``solve(rhs)`` solver for the direct-solve step;
        a sparse LU solver if None.
    preconditioner : object, optional
        ``init(linearization)`` / ``apply(r)`` left preconditioner for GMRES.
    reduction : SerialReduction, optional
        Distributed reduction.
    iteration_callback : callable, optional
        ``callback(iteration, x, residual, linearization)`` after every iteration.
    """

    def __init__(self,
                 residual_fn: Callable[[np.ndarray], np.ndarray],
                 config: Optional[NewtonSettings] = None,
                 jacobian_fn: Optional[Callable[[np.ndarray], sp.spmatrix]] = None,
                 multigrid: Optional[MultigridSetup] = None,
                 mapping: Optional[ProblemMapping] = None,
                 linear_solver=None,
                 preconditioner=None,
                 reduction=None,
                 iteration_callback: Optional[IterationCallback] = None):
        self.residual_fn = residual_fn
        self.config = config if config is not None else NewtonSettings()
        self.jacobian_fn = jacobian_fn
        self.multigrid = multigrid
        self.mapping = mapping if mapping is not None else (
            multigrid.problem_mapping if multigrid is not None else None)
        self.preconditioner = preconditioner
        self.reduction = default_reduction(reduction)
        self.iteration_callback = iteration_callback
        self.stats = SolverStats()

        cfg = self.config
        if cfg.approx_jac not in ("matrix_free_gmres", "direct_solver"):
            raise ValueError(f"Unknown approx_jac: {cfg.approx_jac}")
        if cfg.globalization not in ("line_search", "dogleg"):
            raise ValueError(f"Unknown globalization: {cfg.globalization}")
        if cfg.directional_derivative not in ("finite_difference", "jvp"):
            raise ValueError(f"Unknown directional_derivative: {cfg.directional_derivative}")
        if cfg.constant_newton_it < 1:
            raise PreconditionError(f"constant_newton_it must be at least 1, got {cfg.constant_newton_it}")

        if jacobian_fn is None:
            if cfg.approx_jac == "direct_solver":
                raise PreconditionError("the direct-solve Newton step needs jacobian_fn")
            if cfg.globalization == "dogleg":
                raise PreconditionError("dogleg globalization needs jacobian_fn")
            if multigrid is not None:
                raise PreconditionError("a multigrid setup needs jacobian_fn to build the operator hierarchy")
            if preconditioner is not None:
                raise PreconditionError("preconditioning needs jacobian_fn")
        if cfg.gauge_field is not None and not cfg.use_pressure_reference_point and self.mapping is None:
            raise PreconditionError("gauge normalization needs the problem mapping")

        if linear_solver is None and cfg.approx_jac == "direct_solver":
            linear_solver = DirectLinearSolver()
        self.linear_solver = linear_solver

    # =========================================================================
    # Building blocks
    # =========================================================================

    def _residual(self, x: np.ndarray, rhs: Optional[np.ndarray]) -> np.ndarray:
        self.stats.residual_evaluations += 1
        f = np.asarray(self.residual_fn(x), dtype=np.float64)
        if rhs is not None:
            f = f - rhs
        return check_finite(f, "residual evaluation")

    def _linearized_residual(self, lin: Linearization, rhs: Optional[np.ndarray]):
        def F(y):
            return lin.rhs_into(self._residual(lin.sol_from(y), rhs))
        return F

    def linearize(self, x: np.ndarray, f: np.ndarray) -> Linearization:
        """Assemble the Jacobian (and hierarchy) at ``x`` and set up the preconditioner."""
        jacobian = None
        hierarchy = None
        if self.jacobian_fn is not None:
            jacobian = sp.csr_matrix(self.jacobian_fn(x))
            self.stats.jacobian_updates += 1
            if self.multigrid is not None:
                hierarchy = self.multigrid.hierarchy(jacobian)

        block_size = self.mapping.n_per_cell if self.mapping is not None else 1
        lin = Linearization.create(x, f, jacobian, hierarchy, block_size)
        if self.preconditioner is not None:
            self.preconditioner.init(lin)
        return lin

    def _gauge_normalize(self, x: np.ndarray) -> np.ndarray:
        cfg = self.config
        if cfg.gauge_field is None or cfg.use_pressure_reference_point:
            return x
        mean = self.mapping.field_mean(x, cfg.gauge_field)
        return self.mapping.add_constant(x, cfg.gauge_field, -mean)

    def _newton_step(self, lin: Linearization, F_lin, y: np.ndarray,
                     f_lin: np.ndarray, fnorm: float) -> np.ndarray:
        """Approximate solution of J dy = -F in linearized coordinates."""
        cfg = self.config

        if cfg.approx_jac == "direct_solver":
            solver = self.linear_solver
            if isinstance(solver, ProgrammableTermination):
                threshold = INEXACT_NEWTON_FACTOR * fnorm

                def criterion(it, r0, r):
                    return it < INEXACT_NEWTON_MAX_ITER and r > threshold
                solver.termination_criterion = criterion
            solver.init(lin.jacobian)
            step = solver.solve(-f_lin)
            self.stats.gmres_iterations += getattr(solver, 'last_iterations', 0)
            return step

        if cfg.directional_derivative == "jvp":
            jvp = make_jvp_matvec(self.residual_fn, lin.sol_from(y))

            def matvec(w):
                return lin.rhs_into(jvp(lin.step_from(w)))
        else:
            matvec = make_jfnk_matvec(F_lin, y, f_lin, self.reduction)

        result = gmres(
            matvec, -f_lin,
            tol=cfg.gmres_conv_crit,
            restart=cfg.max_krylov_dim,
            restart_limit=cfg.restart_limit,
            preconditioner=self.preconditioner,
            reduction=self.reduction,
        )
        self.stats.gmres_iterations += result.iterations
        if not result.converged:
            logger.debug(f"GMRES stopped at |r| = {result.residual_norm:.3e} after {result.iterations} iterations")
        return result.x

    # =========================================================================
    # Driver
    # =========================================================================

    def solver_driver(self, initial_guess: np.ndarray,
                      rhs: Optional[np.ndarray] = None) -> NewtonResult:
        """
        Run the nonlinear solve to convergence or ``max_iter``.

        Parameters
        ----------
        initial_guess : np.ndarray
            Starting point in problem coordinates.
        rhs : np.ndarray, optional
            Solve F(x) = rhs instead of F(x) = 0.

        Returns
        -------
        NewtonResult
        """
        cfg = self.config
        tol = cfg.conv_crit
        reduction = self.reduction
        self.stats = SolverStats()
        t_start = time.perf_counter()

        x = np.array(initial_guess, dtype=np.float64, copy=True)
        rhs = None if rhs is None else np.asarray(rhs, dtype=np.float64)
        f = self._residual(x, rhs)

        lin = self.linearize(x, f)
        F_lin = self._linearized_residual(lin, rhs)
        f_lin = lin.rhs_into(f)
        fnorm = reduction.norm(f_lin)
        fnorm0 = fnorm

        history = [fnorm]
        best_x, best_norm = x.copy(), fnorm
        radius = None
        logger.info(f"Newton: initial residual {fnorm0:.6e}")

        itc = 0
        while (fnorm > tol * fnorm0 + tol and itc < cfg.max_iter) or itc < cfg.min_iter:
            gmres_before = self.stats.gmres_iterations
            y = lin.sol_into(x)
            step = self._newton_step(lin, F_lin, y, f_lin, fnorm)

            if reduction.norm(step) == 0.0:
                y_new = y
            elif cfg.globalization == "dogleg":
                if radius is None:
                    radius = initial_trust_radius(step, reduction)
                res = dogleg(F_lin, lin.jacobian, y, f_lin, step, radius=radius,
                             max_step=cfg.max_step, reduction=reduction)
                radius = res.radius
                self.stats.globalization_trials += res.trials
                y_new = res.x
            else:
                res = line_search(F_lin, y, f_lin, step, max_step=cfg.max_step,
                                  reduction=reduction, print_lambda=cfg.print_lambda)
                self.stats.globalization_trials += res.trials
                y_new = res.x

            x = self._gauge_normalize(lin.sol_from(y_new))
            itc += 1

            f = self._residual(x, rhs)
            if itc % cfg.constant_newton_it == 0:
                lin = self.linearize(x, f)
                F_lin = self._linearized_residual(lin, rhs)
            f_lin = lin.rhs_into(f)
            fnorm = reduction.norm(f_lin)
            history.append(fnorm)

            if fnorm < best_norm:
                best_x, best_norm = x.copy(), fnorm

            logger.info(f"Newton iteration {itc:4d}: residual {fnorm:.6e} "
                        f"(linear iterations: {self.stats.gmres_iterations - gmres_before})")

            if self.iteration_callback is not None:
                self.iteration_callback(itc, x, f, lin)

        converged = fnorm <= tol * fnorm0 + tol
        self.stats.iterations = itc
        self.stats.history = list(history)
        self.stats.wall_time = time.perf_counter() - t_start

        if converged:
            logger.info(f"Newton converged: {self.stats.summary()}")
            return NewtonResult(x=x, residual_norm=fnorm, status=SolverStatus.CONVERGED,
                                iterations=itc, residual_history=history, stats=self.stats)

        logger.warning(f"Newton reached max_iter={cfg.max_iter}; best residual {best_norm:.6e}")
        return NewtonResult(x=best_x, residual_norm=best_norm, status=SolverStatus.MAX_ITER_REACHED,
                            iterations=itc, residual_history=history, stats=self.stats)
