"""
Buffer ownership for the solver components.

Each component keys its device buffers by a closed IntEnum, and allocates
them from an Arena: a Taichi FieldsBuilder tree that is finalized once and
destroyed as a unit. Buffers never grow in place; a component that needs a
bigger buffer builds a new arena, fills it, then destroys the old one.

The *Buffers named tuples are the read-only handle bundles handed to
external consumers (renderers, diagnostics). They hold field references only.
"""

from enum import IntEnum
from typing import NamedTuple

import taichi as ti


class Arena:
    """
    A group of 1D fields that share one SNode tree.

    Usage:
        arena = Arena()
        x = arena.field(ti.f32, n)
        v = arena.field(ti.f32, n, dim=2)
        arena.finalize()
        ...
        arena.destroy()
    """

    def __init__(self):
        self._builder = ti.FieldsBuilder()
        self._tree = None
        self.nbytes = 0

    def field(self, dtype, n, dim: int = 1):
        """1D field of n elements, or a 0-D field when n is None."""
        if self._tree is not None:
            raise RuntimeError("Arena already finalized")
        if dim == 1:
            f = ti.field(dtype)
        else:
            f = ti.Vector.field(dim, dtype)
        if n is None:
            self._builder.place(f)
            n = 1
        else:
            n = max(int(n), 1)  # zero-length fields are not allowed
            self._builder.dense(ti.i, n).place(f)
        self.nbytes += n * dim * 4
        return f

    def finalize(self):
        self._tree = self._builder.finalize()
        return self

    def destroy(self):
        if self._tree is not None:
            self._tree.destroy()
            self._tree = None

    @property
    def alive(self) -> bool:
        return self._tree is not None


# ==============================================================================
# Buffer keys
# ==============================================================================

class SimilaritiesBufferType(IntEnum):
    DATASET = 0
    LAYOUT = 1
    PERPLEXITIES = 2
    ATTRIBUTE_WEIGHTS = 3
    NEIGHBORS = 4
    SIMILARITIES = 5
    SIMILARITIES_ORIGINAL = 6
    DISTANCES_L1 = 7


class MinimizationBufferType(IntEnum):
    EMBEDDING = 0
    BOUNDS = 1
    Z = 2
    FIELD = 3
    ATTRACTIVE = 4
    GRADIENTS = 5
    PREV_GRADIENTS = 6
    GAIN = 7
    SELECTION = 8
    FIXED = 9
    DISABLED = 10
    TRANSLATING = 11
    WEIGHTS = 12
    LABELS = 13
    LABELED = 14
    NEIGHBORHOOD_PRESERVATION = 15


class HierarchyBufferType(IntEnum):
    NODE = 0
    MASS = 1
    POSITION_SUM = 2
    FIELD = 3
    POINT_LEAF = 4
    DOMAIN = 5


# ==============================================================================
# Handle bundles
# ==============================================================================

class SimilaritiesBuffers(NamedTuple):
    dataset: object
    layout: object
    neighbors: object
    similarities: object
    attribute_weights: object


class MinimizationBuffers(NamedTuple):
    embedding: object
    field: object
    bounds: object
    labels: object
    labeled: object
    selection: object
    fixed: object
    disabled: object
    neighborhood_preservation: object


class FieldHierarchyBuffers(NamedTuple):
    node: object
    mass: object
    field: object
    domain: object
