"""
Solver components for the multigrid Newton-Krylov core.

This package provides:
    - Galerkin operator hierarchy with change of basis and reference-point pinning
    - Block-Jacobi and multigrid V-cycle preconditioners
    - Direct and Krylov linear solvers
    - The globalized Newton-Krylov driver and a factory wiring it from configuration
"""

from .multigrid_operator import (
    LevelState,
    MultigridLevel,
    MultigridOperatorHierarchy,
    MultigridSetup,
    patch_zero_rows,
)

from .preconditioner import (
    BlockJacobiPreconditioner,
    MultigridPreconditioner,
)

from .linear_solvers import (
    ProgrammableTermination,
    DirectLinearSolver,
    KrylovLinearSolver,
)

from .newton import (
    SolverStatus,
    SolverStats,
    Linearization,
    NewtonResult,
    NewtonKrylovSolver,
)

from .factory import (
    change_of_basis_configs,
    create_solver,
)

__all__ = [
    # Operator hierarchy
    'LevelState',
    'MultigridLevel',
    'MultigridOperatorHierarchy',
    'MultigridSetup',
    'patch_zero_rows',
    # Preconditioners
    'BlockJacobiPreconditioner',
    'MultigridPreconditioner',
    # Linear solvers
    'ProgrammableTermination',
    'DirectLinearSolver',
    'KrylovLinearSolver',
    # Newton
    'SolverStatus',
    'SolverStats',
    'Linearization',
    'NewtonResult',
    'NewtonKrylovSolver',
    # Factory
    'change_of_basis_configs',
    'create_solver',
]
