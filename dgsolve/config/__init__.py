"""
Configuration module for the solver stack.

Provides YAML-based configuration with dataclass schema.
"""

from .schema import (
    SolverConfig,
    MultigridSettings,
    NewtonSettings,
    LinearSolverSettings,
    LoggingSettings,
    matrix_free_preset,
    multigrid_preset,
    direct_preset,
)

from .loader import (
    load_yaml,
    from_dict,
    validate,
    apply_cli_overrides,
    save_yaml,
)

__all__ = [
    # Schema classes
    'SolverConfig',
    'MultigridSettings',
    'NewtonSettings',
    'LinearSolverSettings',
    'LoggingSettings',
    # Presets
    'matrix_free_preset',
    'multigrid_preset',
    'direct_preset',
    # Loader functions
    'load_yaml',
    'from_dict',
    'validate',
    'apply_cli_overrides',
    'save_yaml',
]
