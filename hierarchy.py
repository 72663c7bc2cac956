"""
Spatial field hierarchy over the embedding's bounding domain.

The tree is implicit and complete with branching K = 2^D. Nodes are stored
breadth first, Morton order inside each level, so for node i:
    first_child(i) = K * i + 1
    parent(i)      = (i - 1) // K
    offset(l)      = (K^l - 1) / (K - 1)      (index of the first node of level l)

Per node:
    node         - (skip << 2) | type, type in {EMPTY, LEAF, NODE}
    mass         - number of points in the subtree
    position_sum - sum of their positions (center of mass = sum / mass)
    field        - accumulated (density, gradient) used by the dual evaluator

A skip points from a NODE past a chain of single-child nodes to the first
node that splits (or a leaf). Skips are derived on rebuild only; a refit keeps
them and traversal honors a skip only when it is still a descendant carrying
the same mass.
"""

import math

import taichi as ti

from buffers import Arena, FieldHierarchyBuffers
from buffers import HierarchyBufferType as BufferType
from config import (FIELD_MIN_SIZE, FIELD_MAX_SIZE_2D, FIELD_MAX_SIZE_3D, FIELD_PADDING,
                    NODE_EMPTY, NODE_LEAF, NODE_NODE)

MAX_BITS = 10   # Morton bits per axis (resolution <= 1024)


class HierarchyLayout:
    """Closed-form sizing of the hierarchy for a resolution `size` per axis."""

    def __init__(self, size: int, n_dims: int):
        self.size = int(size)
        self.n_dims = int(n_dims)
        self.branch = 2 ** self.n_dims
        volume = self.size ** self.n_dims
        # 1 + ceil(log_K(volume)), in integers
        n_lvls = 1
        cells = 1
        while cells < volume:
            cells *= self.branch
            n_lvls += 1
        self.n_lvls = n_lvls
        self.n_nodes = (self.branch ** n_lvls - 1) // (self.branch - 1)

    @property
    def leaf_offset(self) -> int:
        return (self.branch ** (self.n_lvls - 1) - 1) // (self.branch - 1)

    def __eq__(self, other):
        return (isinstance(other, HierarchyLayout)
                and self.size == other.size and self.n_dims == other.n_dims)

    def __repr__(self):
        return f"HierarchyLayout(size={self.size}, D={self.n_dims}, lvls={self.n_lvls}, nodes={self.n_nodes})"


def field_resolution(range_x: float, scaling: float, n_dims: int) -> int:
    """Texel resolution for an embedding extent: scaled, floored, next power of two, capped."""
    size = max(int(range_x * scaling), FIELD_MIN_SIZE)
    size = 2 ** int(math.ceil(math.log2(size)))
    cap = FIELD_MAX_SIZE_2D if n_dims == 2 else FIELD_MAX_SIZE_3D
    return min(size, cap)


# ==============================================================================
# Implicit tree helpers
# ==============================================================================

@ti.func
def level_offset(lvl: ti.i32, K: ti.template()) -> ti.i32:
    off = 0
    width = 1
    for _ in range(lvl):
        off += width
        width *= K
    return off


@ti.func
def node_level(idx: ti.i32, K: ti.template()) -> ti.i32:
    lvl = 0
    off = 0
    width = 1
    while idx >= off + width:
        off += width
        width *= K
        lvl += 1
    return lvl


@ti.func
def is_ancestor(a: ti.i32, b: ti.i32, K: ti.template()) -> ti.i32:
    """1 if node a is b or one of its ancestors."""
    x = b
    while x > a:
        x = (x - 1) // K
    result = 0
    if x == a:
        result = 1
    return result


@ti.func
def next_node(idx: ti.i32, K: ti.template()) -> ti.i32:
    """Next node in a depth-first walk that skips idx's subtree; -1 when done."""
    result = -1
    cur = idx
    while cur > 0:
        if (cur - 1) % K == K - 1:
            cur = (cur - 1) // K
        else:
            result = cur + 1
            cur = 0
    return result


@ti.func
def morton_encode(c, D: ti.template()) -> ti.i32:
    m = 0
    for b in ti.static(range(MAX_BITS)):
        for d in ti.static(range(D)):
            m |= ((c[d] >> b) & 1) << (b * D + d)
    return m


@ti.func
def morton_decode(m: ti.i32, D: ti.template()):
    c = ti.Vector.zero(ti.i32, D)
    for b in ti.static(range(MAX_BITS)):
        for d in ti.static(range(D)):
            c[d] |= ((m >> (b * D + d)) & 1) << b
    return c


# ==============================================================================
# Construction kernels
# ==============================================================================

@ti.kernel
def _domain_comp(bounds: ti.template(), domain: ti.template(), padding: ti.f32):
    D = ti.static(bounds.n)
    rng = bounds[2]
    side = 1e-6
    for d in ti.static(range(D)):
        side = ti.max(side, rng[d])
    pad = side * padding
    ext = ti.Vector.zero(ti.f32, D)
    for d in ti.static(range(D)):
        ext[d] = side + 2.0 * pad
    domain[0] = bounds[0] - pad
    domain[1] = ext


@ti.kernel
def _clear(node: ti.template(), mass: ti.template(), position_sum: ti.template(),
           field: ti.template(), n_nodes: ti.i32, clear_node: ti.i32):
    for i in range(n_nodes):
        mass[i] = 0
        position_sum[i] = ti.Vector.zero(ti.f32, position_sum.n)
        field[i] = ti.Vector.zero(ti.f32, field.n)
        if clear_node == 1:
            node[i] = 0


@ti.kernel
def _bin_points(embedding: ti.template(), disabled: ti.template(), n: ti.i32,
                domain: ti.template(), point_leaf: ti.template(), mass: ti.template(),
                position_sum: ti.template(), K: ti.template(), leaf_offset: ti.i32, size: ti.i32):
    D = ti.static(embedding.n)
    for i in range(n):
        y = embedding[i]
        origin = domain[0]
        side = domain[1][0]
        c = ti.Vector.zero(ti.i32, D)
        for d in ti.static(range(D)):
            cell = ti.cast(ti.floor((y[d] - origin[d]) / side * size), ti.i32)
            c[d] = ti.min(ti.max(cell, 0), size - 1)
        leaf = leaf_offset + morton_encode(c, D)
        point_leaf[i] = leaf
        if disabled[i] == 0:
            idx = leaf
            walking = 1
            while walking == 1:
                mass[idx] += 1
                position_sum[idx] += y
                if idx == 0:
                    walking = 0
                else:
                    idx = (idx - 1) // K


@ti.kernel
def _types_comp(node: ti.template(), mass: ti.template(), n_nodes: ti.i32,
                leaf_offset: ti.i32, keep_skip: ti.i32):
    for i in range(n_nodes):
        t = NODE_EMPTY
        if mass[i] > 0:
            t = NODE_NODE
            if i >= leaf_offset or mass[i] == 1:
                t = NODE_LEAF
        skip = 0
        if keep_skip == 1:
            skip = node[i] >> 2
        node[i] = (skip << 2) | t


@ti.kernel
def _skips_comp(node: ti.template(), mass: ti.template(), n_nodes: ti.i32,
                leaf_offset: ti.i32, K: ti.template()):
    for i in range(n_nodes):
        t = node[i] & 3
        skip = 0
        if t == NODE_NODE:
            j = i
            walking = 1
            while walking == 1:
                if j >= leaf_offset:
                    walking = 0
                else:
                    first = K * j + 1
                    count = 0
                    only = -1
                    for c in range(K):
                        if mass[first + c] > 0:
                            count += 1
                            only = first + c
                    if count == 1:
                        j = only
                    else:
                        walking = 0
            if j != i:
                skip = j
        node[i] = (skip << 2) | t


class FieldHierarchy:
    """
    Hierarchy storage plus rebuild/refit.

    Args:
        n_dims: embedding dimensionality (2 or 3)
        n: number of points
    """

    def __init__(self, n_dims: int, n: int, verbose: bool = False):
        self._n_dims = n_dims
        self._branch = 2 ** n_dims
        self._n = n
        self._verbose = verbose
        self._layout = None
        self._arena = None
        self._buffers = {}
        self._point_arena = Arena()
        self._buffers[BufferType.DOMAIN] = self._point_arena.field(ti.f32, 2, dim=n_dims)
        self._buffers[BufferType.POINT_LEAF] = self._point_arena.field(ti.i32, n)
        self._point_arena.finalize()
        self.n_rebuilds = 0
        self.n_refits = 0

    def _alloc(self, layout: HierarchyLayout):
        arena = Arena()
        buffers = {
            BufferType.NODE: arena.field(ti.i32, layout.n_nodes),
            BufferType.MASS: arena.field(ti.i32, layout.n_nodes),
            BufferType.POSITION_SUM: arena.field(ti.f32, layout.n_nodes, dim=self._n_dims),
            BufferType.FIELD: arena.field(ti.f32, layout.n_nodes, dim=self._n_dims + 1),
        }
        arena.finalize()
        if self._arena is not None:
            self._arena.destroy()
        self._arena = arena
        self._buffers.update(buffers)
        if self._verbose:
            print(f"[Hierarchy] Allocated {layout} ({arena.nbytes / 1048576:.2f} mb)")

    def comp(self, rebuild: bool, layout: HierarchyLayout, embedding, bounds, disabled):
        """
        Bin the embedding into the hierarchy.

        Args:
            rebuild: recompute topology (skips); forced on first build and
                whenever the node count changes
            layout: HierarchyLayout for this iteration
            embedding, bounds, disabled: fields owned by the minimization
        """
        resized = self._layout is None or layout.n_nodes != self._layout.n_nodes
        if resized:
            self._alloc(layout)
        rebuild = rebuild or resized
        self._layout = layout

        b = self._buffers
        _domain_comp(bounds, b[BufferType.DOMAIN], FIELD_PADDING)
        _clear(b[BufferType.NODE], b[BufferType.MASS], b[BufferType.POSITION_SUM],
               b[BufferType.FIELD], layout.n_nodes, 1 if rebuild else 0)
        _bin_points(embedding, disabled, self._n, b[BufferType.DOMAIN], b[BufferType.POINT_LEAF],
                    b[BufferType.MASS], b[BufferType.POSITION_SUM], self._branch,
                    layout.leaf_offset, layout.size)
        _types_comp(b[BufferType.NODE], b[BufferType.MASS], layout.n_nodes,
                    layout.leaf_offset, 0 if rebuild else 1)
        if rebuild:
            _skips_comp(b[BufferType.NODE], b[BufferType.MASS], layout.n_nodes,
                        layout.leaf_offset, self._branch)
            self.n_rebuilds += 1
        else:
            self.n_refits += 1
        ti.sync()

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def layout(self) -> HierarchyLayout:
        return self._layout

    @property
    def branch(self) -> int:
        return self._branch

    def buffer(self, key: BufferType):
        return self._buffers[key]

    def mem_size(self) -> int:
        return self._arena.nbytes if self._arena is not None else 0

    def buffers(self) -> FieldHierarchyBuffers:
        return FieldHierarchyBuffers(
            node=self._buffers.get(BufferType.NODE),
            mass=self._buffers.get(BufferType.MASS),
            field=self._buffers.get(BufferType.FIELD),
            domain=self._buffers[BufferType.DOMAIN],
        )

    def destroy(self):
        if self._arena is not None:
            self._arena.destroy()
            self._arena = None
        self._point_arena.destroy()
