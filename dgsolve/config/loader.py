"""
YAML configuration loader with validation.
"""

import yaml
from pathlib import Path
from typing import Dict, Any, Union
from dataclasses import fields, is_dataclass

from .schema import (
    SolverConfig, MultigridSettings, NewtonSettings,
    LinearSolverSettings, LoggingSettings,
    matrix_free_preset, multigrid_preset, direct_preset,
)
from ..numerics.change_of_basis import ChangeOfBasisMode


APPROX_JAC_CHOICES = ("matrix_free_gmres", "direct_solver")
DIRDER_CHOICES = ("finite_difference", "jvp")
GLOBALIZATION_CHOICES = ("line_search", "dogleg")
PRECONDITIONER_CHOICES = ("none", "block_jacobi", "multigrid")
LINEAR_SOLVER_CHOICES = ("direct", "gmres")


def _merge_dict(base: dict, override: dict) -> dict:
    """Recursively merge override into base dict."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _merge_dict(result[key], value)
        else:
            result[key] = value
    return result


def _coerce_type(value, field_type):
    """Coerce value to the expected field type."""
    # Handle string representations of numbers (e.g., "1e-10")
    if field_type in (float, 'float') and isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return value
    if field_type in (int, 'int') and isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            return value
    if field_type in (bool, 'bool') and isinstance(value, str):
        if value.lower() in ('true', 'yes', 'on', '1'):
            return True
        if value.lower() in ('false', 'no', 'off', '0'):
            return False
    return value


def _dict_to_dataclass(cls, data: dict):
    """Convert a nested dictionary to a dataclass instance."""
    if not is_dataclass(cls):
        return data

    field_types = {f.name: f.type for f in fields(cls)}
    kwargs = {}

    for key, value in data.items():
        if key not in field_types:
            continue  # Skip unknown fields

        field_type = field_types[key]

        # Handle nested dataclasses
        if is_dataclass(field_type) and isinstance(value, dict):
            kwargs[key] = _dict_to_dataclass(field_type, value)
        else:
            kwargs[key] = _coerce_type(value, field_type)

    return cls(**kwargs)


def _check_choice(section: str, name: str, value, choices) -> None:
    if value not in choices:
        raise ValueError(f"{section}.{name} must be one of {', '.join(choices)}; got {value!r}")


def validate(config: SolverConfig) -> SolverConfig:
    """
    Check option values and cross-section consistency.

    Raises
    ------
    ValueError
        On an unknown option value or inconsistent settings.
    """
    nt = config.newton
    _check_choice('newton', 'approx_jac', nt.approx_jac, APPROX_JAC_CHOICES)
    _check_choice('newton', 'directional_derivative', nt.directional_derivative, DIRDER_CHOICES)
    _check_choice('newton', 'globalization', nt.globalization, GLOBALIZATION_CHOICES)
    _check_choice('newton', 'preconditioner', nt.preconditioner, PRECONDITIONER_CHOICES)
    _check_choice('linear_solver', 'kind', config.linear_solver.kind, LINEAR_SOLVER_CHOICES)
    _check_choice('multigrid', 'change_of_basis', config.multigrid.change_of_basis,
                  [m.value for m in ChangeOfBasisMode])

    if nt.max_iter < 0 or nt.min_iter < 0:
        raise ValueError("newton.max_iter and newton.min_iter must be non-negative")
    if nt.min_iter > nt.max_iter:
        raise ValueError(f"newton.min_iter ({nt.min_iter}) exceeds newton.max_iter ({nt.max_iter})")
    if nt.constant_newton_it < 1:
        raise ValueError("newton.constant_newton_it must be at least 1")
    if nt.max_krylov_dim < 1:
        raise ValueError("newton.max_krylov_dim must be at least 1")
    if nt.use_pressure_reference_point and nt.gauge_field is None:
        raise ValueError("newton.use_pressure_reference_point needs newton.gauge_field")
    if nt.use_pressure_reference_point and not config.multigrid.enabled:
        raise ValueError("newton.use_pressure_reference_point requires multigrid.enabled")
    if nt.preconditioner == "multigrid" and not config.multigrid.enabled:
        raise ValueError("newton.preconditioner 'multigrid' requires multigrid.enabled")
    return config


def load_yaml(path: Union[str, Path]) -> SolverConfig:
    """
    Load solver configuration from a YAML file.

    Args:
        path: Path to YAML configuration file

    Returns:
        SolverConfig instance

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    with open(path) as f:
        data = yaml.safe_load(f)

    if data is None:
        data = {}

    return from_dict(data)


def from_dict(data: Dict[str, Any]) -> SolverConfig:
    """
    Create SolverConfig from a dictionary.

    Handles nested structures and applies defaults for missing values.
    """
    data = dict(data)

    # Check for preset
    preset = data.pop('preset', None)
    if preset:
        newton_preset = {
            'matrix-free': matrix_free_preset(),
            'multigrid': multigrid_preset(),
            'direct': direct_preset(),
        }.get(preset)
        if newton_preset is None:
            raise ValueError(f"Unknown preset: {preset}")
        preset_dict = {f.name: getattr(newton_preset, f.name) for f in fields(NewtonSettings)}
        data['newton'] = _merge_dict(preset_dict, data.get('newton') or {})

    config_dict = {}
    sections = {
        'multigrid': MultigridSettings,
        'newton': NewtonSettings,
        'linear_solver': LinearSolverSettings,
        'logging': LoggingSettings,
    }
    for name, cls in sections.items():
        if name in data and data[name] is not None:
            config_dict[name] = _dict_to_dataclass(cls, data[name])

    return validate(SolverConfig(**config_dict))


def apply_cli_overrides(config: SolverConfig, args) -> SolverConfig:
    """
    Apply command-line argument overrides to a configuration.

    Only overrides values that were explicitly set (not None).

    Args:
        config: Base configuration
        args: argparse.Namespace with CLI arguments

    Returns:
        Updated SolverConfig
    """
    config_dict = config.to_dict()

    # Map CLI args to config paths
    cli_mapping = {
        # Multigrid
        'max_depth': ('multigrid', 'max_depth'),
        'change_of_basis': ('multigrid', 'change_of_basis'),

        # Newton
        'max_iter': ('newton', 'max_iter'),
        'min_iter': ('newton', 'min_iter'),
        'tol': ('newton', 'conv_crit'),
        'approx_jac': ('newton', 'approx_jac'),
        'globalization': ('newton', 'globalization'),
        'preconditioner': ('newton', 'preconditioner'),
        'krylov_dim': ('newton', 'max_krylov_dim'),
        'gmres_tol': ('newton', 'gmres_conv_crit'),

        # Logging
        'log_level': ('logging', 'level'),
    }

    for cli_name, config_path in cli_mapping.items():
        if hasattr(args, cli_name):
            value = getattr(args, cli_name)
            if value is not None:
                target = config_dict
                for key in config_path[:-1]:
                    target = target[key]
                target[config_path[-1]] = value

    return from_dict(config_dict)


def save_yaml(config: SolverConfig, path: Union[str, Path]) -> None:
    """Save configuration to a YAML file."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, 'w') as f:
        yaml.dump(config.to_dict(), f, default_flow_style=False, sort_keys=False)
