"""
Configuration schema for the nonlinear solver stack.

Dataclass-based configuration that can be loaded from YAML or constructed programmatically.
"""

from dataclasses import dataclass, field, asdict
from typing import Optional, List


@dataclass
class MultigridSettings:
    """Aggregation multigrid configuration."""

    enabled: bool = True
    max_depth: int = -1                 # Levels including level 0; negative = unlimited
    change_of_basis: str = "eye"        # Mode applied on every level
    coarse_degrees: Optional[List[int]] = None  # Per-field degree on coarse levels (None = same as problem)
    pre_sweeps: int = 2
    post_sweeps: int = 2
    omega: float = 0.7                  # Block-Jacobi smoother damping


@dataclass
class NewtonSettings:
    """Newton-Krylov driver settings."""

    max_iter: int = 50
    min_iter: int = 1
    conv_crit: float = 1e-10            # ||F|| <= conv_crit * ||F0|| + conv_crit
    constant_newton_it: int = 1         # Re-linearize every n iterations (>1 = frozen Newton)

    # Linear step: "matrix_free_gmres" or "direct_solver"
    approx_jac: str = "matrix_free_gmres"
    # Directional derivative for matrix-free GMRES: "finite_difference" or "jvp"
    directional_derivative: str = "finite_difference"
    max_krylov_dim: int = 30            # GMRES(m) restart parameter
    restart_limit: int = 100            # Restarts after the first cycle
    gmres_conv_crit: float = 1e-6       # Relative tolerance for GMRES
    preconditioner: str = "none"        # "none", "block_jacobi" or "multigrid"

    # Globalization: "line_search" or "dogleg"
    globalization: str = "line_search"
    max_step: int = 30                  # Line-search trials / radius reductions
    print_lambda: bool = False

    use_pressure_reference_point: bool = False
    gauge_field: Optional[int] = None   # Field with a free mean value (pinned or normalized)


@dataclass
class LinearSolverSettings:
    """External linear solver for the direct-solve Newton step."""

    kind: str = "direct"                # "direct" or "gmres"
    restart: int = 30
    max_iter: int = 300
    tol: float = 1e-10


@dataclass
class LoggingSettings:
    """Logging configuration."""

    level: str = "INFO"
    show_time: bool = True


@dataclass
class SolverConfig:
    """Complete solver configuration."""

    multigrid: MultigridSettings = field(default_factory=MultigridSettings)
    newton: NewtonSettings = field(default_factory=NewtonSettings)
    linear_solver: LinearSolverSettings = field(default_factory=LinearSolverSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)

    def to_dict(self) -> dict:
        """Convert to nested dictionary."""
        return asdict(self)


# Preset configurations
def matrix_free_preset() -> NewtonSettings:
    """Jacobian-free Newton-GMRES with line search."""
    return NewtonSettings(
        approx_jac="matrix_free_gmres",
        globalization="line_search",
        preconditioner="none",
    )


def multigrid_preset() -> NewtonSettings:
    """Matrix-free GMRES preconditioned by an aggregation multigrid V-cycle."""
    return NewtonSettings(
        approx_jac="matrix_free_gmres",
        globalization="line_search",
        preconditioner="multigrid",
        max_krylov_dim=50,
    )


def direct_preset() -> NewtonSettings:
    """Exact Newton with a sparse direct solve and dogleg globalization."""
    return NewtonSettings(
        approx_jac="direct_solver",
        globalization="dogleg",
    )
