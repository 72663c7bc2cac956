"""
Configuration parameters for the dual-hierarchy t-SNE solver.

This module defines all tunable parameters:
- Similarity graph (perplexity, neighbor counts, calibration search)
- Field hierarchy (approximation thetas, texel scaling, resolution caps)
- Gradient descent schedule (exaggeration, momentum, gains)
- Interactive editing limits (attribute / similarity weights)

Module-level constants are the defaults; a run is described by a Params
record built from them. Params.validate() checks caller preconditions once,
before any component is constructed.
"""

import math
from dataclasses import dataclass
from typing import Optional

# ==============================================================================
# Similarity graph
# ==============================================================================

PERPLEXITY = 30.0           # Target effective neighborhood size
K_MAX = 192                 # Upper bound on k (memory grows as n * k)
PERPLEXITY_ITERS = 200      # Binary search bound for sigma calibration
PERPLEXITY_EPS = 1e-4       # Entropy tolerance (bits)

# ==============================================================================
# Field hierarchy / force approximation
# ==============================================================================

SINGLE_HIERARCHY_THETA = 0.5
DUAL_HIERARCHY_THETA = 0.25
FIELD_SCALING_2D = 2.0      # Texels per embedding unit (2D)
FIELD_SCALING_3D = 1.2      # Voxels per embedding unit (3D)
FIELD_MIN_SIZE = 5          # Smallest resolution before power-of-two rounding
FIELD_MAX_SIZE_2D = 1024    # Caps keep node counts and Morton codes in i32
FIELD_MAX_SIZE_3D = 128
FIELD_PADDING = 0.005       # Relative padding around the bounds
HIERARCHY_REBUILD_INTERVAL = 4          # Full rebuild cadence (refit in between)
DUAL_HIERARCHY_MIN_POINTS = 100_000     # Auto-switch to dual mode (2D only)

# ==============================================================================
# Embedding initialization
# ==============================================================================

SEED = 1
RNG_RANGE = 0.1

# ==============================================================================
# Gradient descent
# ==============================================================================

ITERATIONS = 1000
MOMENTUM_SWITCH_ITER = 250
N_EXAGGERATION_ITERS = 250
N_EXPONENTIAL_DECAY_ITERS = 150
MINIMUM_GAIN = 0.1
ETA = 200.0
MOMENTUM = 0.2
FINAL_MOMENTUM = 0.5
EXAGGERATION_FACTOR = 4.0
GAIN_INCREASE = 0.2         # Additive gain step when gradient sign persists
GAIN_DECREASE = 0.8         # Multiplicative gain shrink on sign flip

# Collapse guard used by re-centering while exaggeration is active
COLLAPSE_EXAGGERATION = 1.2
COLLAPSE_RANGE = 0.1

# ==============================================================================
# Interactive editing
# ==============================================================================

MAX_ATTRIBUTE_WEIGHT = 2.0
MAX_SIMILARITY_WEIGHT = 3.0
WEIGHT_FALLOFF = 0.0        # 0 = neighbor weights ignored in attraction

# ==============================================================================
# Kernels / logging
# ==============================================================================

BLOCK_SIZE = 256            # Work per block in reduce/scan passes
LOG_EVERY = 100             # Progress line cadence (iterations)
EPS = 1e-12

# Node type tags (low two bits of a hierarchy node word; skip index above)
NODE_EMPTY = 0
NODE_LEAF = 1
NODE_NODE = 2


def default_k(perplexity: float, k_max: int = K_MAX) -> int:
    """Neighbor count used for a given perplexity: min(kMax, 3 * perplexity + 1)."""
    return min(k_max, 3 * int(perplexity) + 1)


@dataclass
class Params:
    """Configuration record for one run."""
    n: int = 0
    n_high_dims: int = 0
    n_low_dims: int = 2

    perplexity: float = PERPLEXITY
    k_max: int = K_MAX
    k: Optional[int] = None
    iterations: int = ITERATIONS

    single_hierarchy_theta: float = SINGLE_HIERARCHY_THETA
    dual_hierarchy_theta: float = DUAL_HIERARCHY_THETA
    field_scaling_2d: float = FIELD_SCALING_2D
    field_scaling_3d: float = FIELD_SCALING_3D
    dual_hierarchy: Optional[bool] = None   # None = pick by dimension and size

    seed: int = SEED
    rng_range: float = RNG_RANGE

    momentum_switch_iter: int = MOMENTUM_SWITCH_ITER
    n_exaggeration_iters: int = N_EXAGGERATION_ITERS
    n_exponential_decay_iters: int = N_EXPONENTIAL_DECAY_ITERS
    minimum_gain: float = MINIMUM_GAIN
    eta: float = ETA
    momentum: float = MOMENTUM
    final_momentum: float = FINAL_MOMENTUM
    exaggeration_factor: float = EXAGGERATION_FACTOR

    max_attribute_weight: float = MAX_ATTRIBUTE_WEIGHT
    max_similarity_weight: float = MAX_SIMILARITY_WEIGHT
    weight_falloff: float = WEIGHT_FALLOFF

    verbose: bool = True

    def __post_init__(self):
        if self.k is None:
            self.k = default_k(self.perplexity, self.k_max)

    @property
    def use_dual_hierarchy(self) -> bool:
        if self.dual_hierarchy is not None:
            return self.dual_hierarchy
        return self.n_low_dims == 2 and self.n >= DUAL_HIERARCHY_MIN_POINTS

    @property
    def theta(self) -> float:
        return self.dual_hierarchy_theta if self.use_dual_hierarchy else self.single_hierarchy_theta

    @property
    def field_scaling(self) -> float:
        return self.field_scaling_2d if self.n_low_dims == 2 else self.field_scaling_3d

    def validate(self):
        """
        Check caller preconditions. Raises ValueError on the first violation.

        These are never re-checked inside kernels.
        """
        if self.n_low_dims not in (2, 3):
            raise ValueError(f"n_low_dims must be 2 or 3, got {self.n_low_dims}")
        if self.n < 2:
            raise ValueError(f"need at least 2 points, got n={self.n}")
        if self.n_high_dims < 1:
            raise ValueError(f"n_high_dims must be positive, got {self.n_high_dims}")
        if not 2 <= self.k <= self.k_max:
            raise ValueError(f"k must lie in [2, k_max={self.k_max}], got {self.k}")
        if self.k > self.n:
            raise ValueError(f"k={self.k} exceeds the number of points n={self.n}")
        if self.perplexity <= 0.0 or not math.isfinite(self.perplexity):
            raise ValueError(f"perplexity must be positive, got {self.perplexity}")
        if self.perplexity >= self.k - 1:
            raise ValueError(f"perplexity {self.perplexity} needs more than k-1={self.k - 1} neighbors")
        for name in ("single_hierarchy_theta", "dual_hierarchy_theta"):
            if not 0.0 < getattr(self, name) < 1.0:
                raise ValueError(f"{name} must lie in (0, 1)")
        return self
