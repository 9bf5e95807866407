"""
Solver Factory Module.

Builds the complete solver stack (aggregation sequence, multigrid bases,
change-of-basis configuration, preconditioner, linear solver and Newton
driver) from a ``SolverConfig``, so that every caller wires the pieces
together the same way.
"""

from typing import Callable, List, Optional, Sequence

import numpy as np
from loguru import logger

from ..config.schema import SolverConfig
from ..exceptions import PreconditionError
from ..grid.aggregation import build_sequence
from ..grid.cells import CellGrid
from ..numerics.change_of_basis import ChangeOfBasisConfig, ChangeOfBasisMode
from ..numerics.mapping import ProblemMapping
from ..numerics.projector import create_sequence
from ..utils.logging import configure_from
from ..utils.reduction import default_reduction
from .linear_solvers import DirectLinearSolver, KrylovLinearSolver
from .multigrid_operator import MultigridSetup
from .newton import NewtonKrylovSolver
from .preconditioner import BlockJacobiPreconditioner, MultigridPreconditioner


def change_of_basis_configs(config: SolverConfig,
                            mapping: ProblemMapping) -> List[List[ChangeOfBasisConfig]]:
    """
    Per-level change-of-basis configuration: [finest level, all coarser levels].

    The finest level keeps the full problem degrees so that the linearized
    coordinates cover every problem unknown.
    """
    mg = config.multigrid
    mode = ChangeOfBasisMode(mg.change_of_basis)
    fields = list(range(mapping.n_fields))

    coarse_degrees = list(mapping.degrees) if mg.coarse_degrees is None else list(mg.coarse_degrees)
    if len(coarse_degrees) != mapping.n_fields:
        raise PreconditionError(
            f"multigrid.coarse_degrees needs {mapping.n_fields} entries, got {len(coarse_degrees)}"
        )
    return [
        [ChangeOfBasisConfig(var_index=fields, degree=list(mapping.degrees), mode=mode)],
        [ChangeOfBasisConfig(var_index=fields, degree=coarse_degrees, mode=mode)],
    ]


def create_solver(
    config: SolverConfig,
    residual_fn: Callable[[np.ndarray], np.ndarray],
    jacobian_fn: Optional[Callable] = None,
    grid: Optional[CellGrid] = None,
    degrees: Optional[Sequence[int]] = None,
    mass=None,
    reduction=None,
    iteration_callback: Optional[Callable] = None,
) -> NewtonKrylovSolver:
    """
    Create a NewtonKrylovSolver with consistent settings.

    Parameters
    ----------
    config : SolverConfig
        Complete configuration.
    residual_fn : callable
        ``F(x)`` in problem coordinates.
    jacobian_fn : callable, optional
        ``J(x)`` as a sparse matrix; needed for multigrid, preconditioning,
        dogleg and the direct-solve step.
    grid : CellGrid, optional
        Base grid; needed for multigrid and gauge normalization.
    degrees : sequence of int, optional
        Polynomial degree per field on ``grid``.
    mass : sparse matrix, optional
        Finest-level mass matrix for the ``id_mass`` change of basis.
    reduction : SerialReduction, optional
        Distributed reduction.
    iteration_callback : callable, optional
        Forwarded to the Newton solver.

    Returns
    -------
    NewtonKrylovSolver
    """
    configure_from(config.logging)
    reduction = default_reduction(reduction)
    nt = config.newton
    mg = config.multigrid

    mapping = None
    if grid is not None:
        if degrees is None:
            raise PreconditionError("degrees are required together with grid")
        mapping = ProblemMapping(grid, degrees, reduction)

    multigrid = None
    if mg.enabled and mapping is not None and jacobian_fn is not None:
        agg_seq = build_sequence(grid, max_depth=mg.max_depth, reduction=reduction)
        basis_seq = create_sequence(agg_seq, mapping.basis)
        free_mean_value = None
        if nt.use_pressure_reference_point:
            free_mean_value = [f == nt.gauge_field for f in range(mapping.n_fields)]
        multigrid = MultigridSetup(
            problem_mapping=mapping,
            basis_sequence=basis_seq,
            cob_configs=change_of_basis_configs(config, mapping),
            free_mean_value=free_mean_value,
            mass=mass,
            reduction=reduction,
        )
        logger.info(f"Multigrid: {len(basis_seq)} levels, change of basis '{mg.change_of_basis}'")
    elif nt.preconditioner == "multigrid" or nt.use_pressure_reference_point:
        raise PreconditionError("multigrid needs a grid, degrees and jacobian_fn")

    preconditioner = None
    if nt.preconditioner == "block_jacobi":
        preconditioner = BlockJacobiPreconditioner()
    elif nt.preconditioner == "multigrid":
        preconditioner = MultigridPreconditioner(mg.pre_sweeps, mg.post_sweeps, mg.omega)

    linear_solver = None
    if nt.approx_jac == "direct_solver":
        ls = config.linear_solver
        if ls.kind == "gmres":
            block_size = mapping.n_per_cell if mapping is not None else None
            linear_solver = KrylovLinearSolver(ls.restart, ls.max_iter, ls.tol,
                                               block_size=block_size, reduction=reduction)
        else:
            linear_solver = DirectLinearSolver()

    return NewtonKrylovSolver(
        residual_fn,
        config=nt,
        jacobian_fn=jacobian_fn,
        multigrid=multigrid,
        mapping=mapping,
        linear_solver=linear_solver,
        preconditioner=preconditioner,
        reduction=reduction,
        iteration_callback=iteration_callback,
    )
