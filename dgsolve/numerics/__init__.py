"""
Numerical methods for the multigrid Newton-Krylov core.

This module provides:
- Orthonormal Legendre bases on box cells
- Aggregation bases (composite basis, injectors) and restriction/prolongation
- Cell-major coordinate mappings for the problem and multigrid levels
- Block change of basis
- Restarted GMRES and finite-difference / JAX Jacobian-vector products
- Line search and dogleg globalization
"""

from .basis import (
    LegendreBasis,
    mode_degrees,
    basis_length,
)

from .projector import (
    AggregationBasis,
    create_sequence,
    ldl_inversion,
)

from .mapping import (
    Partitioning,
    ProblemMapping,
    MultigridMapping,
)

from .change_of_basis import (
    ChangeOfBasisMode,
    ChangeOfBasisConfig,
    compute_block_transform,
)

from .gmres import (
    GMRESResult,
    gmres,
    rotmat,
    directional_derivative,
    make_jfnk_matvec,
    make_jvp_matvec,
)

from .globalization import (
    LineSearchResult,
    DoglegResult,
    parab3p,
    line_search,
    dogleg,
)

from .diagnostics import (
    VectorStatistics,
    vector_statistics,
    check_finite,
)

__all__ = [
    # Bases
    'LegendreBasis',
    'mode_degrees',
    'basis_length',
    'AggregationBasis',
    'create_sequence',
    'ldl_inversion',
    # Mappings
    'Partitioning',
    'ProblemMapping',
    'MultigridMapping',
    # Change of basis
    'ChangeOfBasisMode',
    'ChangeOfBasisConfig',
    'compute_block_transform',
    # Krylov
    'GMRESResult',
    'gmres',
    'rotmat',
    'directional_derivative',
    'make_jfnk_matvec',
    'make_jvp_matvec',
    # Globalization
    'LineSearchResult',
    'DoglegResult',
    'parab3p',
    'line_search',
    'dogleg',
    # Diagnostics
    'VectorStatistics',
    'vector_statistics',
    'check_finite',
]
