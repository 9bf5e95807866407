"""Diagnostic quantities for solver vectors."""

from typing import NamedTuple

import numpy as np
import numpy.typing as npt

from ..exceptions import ArithmeticFailure
from ..utils.reduction import default_reduction

NDArrayFloat = npt.NDArray[np.floating]


class VectorStatistics(NamedTuple):
    """Finite-ness and magnitude summary of a vector."""
    n_nan: int
    n_inf: int
    l2_norm: float
    max_abs: float
    argmax: int


def vector_statistics(v: NDArrayFloat, reduction=None) -> VectorStatistics:
    """Count NaN/Inf entries and compute norms over the finite entries."""
    reduction = default_reduction(reduction)
    v = np.asarray(v, dtype=np.float64)
    finite = np.isfinite(v)
    vf = np.where(finite, v, 0.0)
    argmax = int(np.argmax(np.abs(vf))) if v.size else -1
    return VectorStatistics(
        n_nan=int(reduction.sum(int(np.isnan(v).sum()))),
        n_inf=int(reduction.sum(int(np.isinf(v).sum()))),
        l2_norm=float(reduction.norm(vf)),
        max_abs=float(reduction.max(float(np.abs(vf).max(initial=0.0)))),
        argmax=argmax,
    )


def check_finite(v: NDArrayFloat, what: str = "vector") -> NDArrayFloat:
    """
    Return ``v`` unchanged if all entries are finite.

    Raises
    ------
    ArithmeticFailure
        Naming ``what`` and the number of offending entries otherwise.
    """
    v = np.asarray(v, dtype=np.float64)
    bad = ~np.isfinite(v)
    if np.any(bad):
        raise ArithmeticFailure(
            f"NaN/Inf in {what}: {int(np.isnan(v).sum())} NaN, {int(np.isinf(v).sum())} Inf "
            f"(first at index {int(np.flatnonzero(bad)[0])})"
        )
    return v
