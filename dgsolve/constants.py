"""
Algorithm constants for the aggregation multigrid and Newton-Krylov core.

Values are shared between kernels, solvers and tests so that every part of
the code agrees on thresholds and weights.
"""

import numpy as np

# Coarsening quality score: weighted sum of normalized pair size and
# normalized bounding-box aspect ratio (smaller is better)
QUALITY_WEIGHT_SIZE = 0.7
QUALITY_WEIGHT_ASPECT = 0.3

# Maximum number of cells merged into one aggregate per coarsening step
MAX_AGGREGATE_MEMBERS = 2

# Tolerance of the composite-basis orthonormality check (Frobenius norm)
ORTHONORMALITY_TOL = 1e-9

# Relative eigen-/singular-value threshold below which a mode is dropped
# by the *_DROP_INDEFINITE change-of-basis variants
COB_DROP_TOL = 1e-12

# Finite-difference perturbation for the directional derivative
FD_EPSILON = float(np.sqrt(np.finfo(np.float64).eps))

# Armijo line search (Kelley)
LINE_SEARCH_ALPHA = 1e-4   # Sufficient decrease parameter
PARAB_SIGMA0 = 0.1         # Lower safeguard of the parabolic model
PARAB_SIGMA1 = 0.5         # Upper safeguard / first reduction factor

# Dogleg trust region (Pawlowski et al. 2006)
DOGLEG_ACCEPT = 1e-4       # Minimum ared/pred ratio for acceptance
DOGLEG_DELTA_MIN = 1e-6
DOGLEG_DELTA_MAX = 1e10

# Inexact Newton forcing term for solvers with programmable termination
INEXACT_NEWTON_FACTOR = 1e-5
INEXACT_NEWTON_MAX_ITER = 100
