"""
dgsolve: aggregation multigrid and Jacobian-free Newton-Krylov core for
discontinuous Galerkin discretizations.

Subpackages:
    - grid: box-cell grids and the aggregation hierarchy
    - numerics: bases, multigrid projection, coordinate mappings, GMRES, globalization
    - solvers: operator hierarchy, preconditioners, linear solvers, Newton driver
    - config: dataclass schema and YAML loader
"""

__version__ = "0.1.0"

from .exceptions import PreconditionError, ArithmeticFailure

from .config import SolverConfig, NewtonSettings, MultigridSettings, load_yaml, from_dict

from .grid import CellGrid, box_grid, AggregationGrid, build_sequence

from .numerics import LegendreBasis, AggregationBasis, create_sequence, ProblemMapping, gmres

from .solvers import (
    MultigridOperatorHierarchy,
    MultigridSetup,
    NewtonKrylovSolver,
    NewtonResult,
    SolverStatus,
    create_solver,
)

__all__ = [
    '__version__',
    # Errors
    'PreconditionError',
    'ArithmeticFailure',
    # Configuration
    'SolverConfig',
    'NewtonSettings',
    'MultigridSettings',
    'load_yaml',
    'from_dict',
    # Grid
    'CellGrid',
    'box_grid',
    'AggregationGrid',
    'build_sequence',
    # Numerics
    'LegendreBasis',
    'AggregationBasis',
    'create_sequence',
    'ProblemMapping',
    'gmres',
    # Solvers
    'MultigridOperatorHierarchy',
    'MultigridSetup',
    'NewtonKrylovSolver',
    'NewtonResult',
    'SolverStatus',
    'create_solver',
]
