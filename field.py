"""
Approximate repulsive field of the embedding.

For every point i the evaluator writes a (D+1)-vector
    density  = sum_j t_ij
    gradient = sum_j t_ij^2 (y_i - y_j)
with t_ij = 1 / (1 + |y_i - y_j|^2) and j != i. Z is the sum of densities.

Two evaluation modes over the same FieldHierarchy:

Single hierarchy (theta ~0.5)
    One thread per point walks the implicit tree without a stack. A node is
    taken as one aggregate at its center of mass when diag / dist < theta or
    when it is a leaf. The point's own leaf is taken without the point itself.

Dual hierarchy (theta ~0.25)
    One thread per node f. Same-level node pairs (f, e) are accepted when
    diag_f + diag_e < theta * boxdist(f, e). Child boxes sit inside parent
    boxes, so acceptance only grows under refinement and (f, e) is handled
    exactly once: when its parent pair is rejected and it is accepted, or at
    the leaf level. Interactions are evaluated at f's center and summed down
    each point's ancestor chain; the own leaf is evaluated at the point.
"""

import math
import time

import taichi as ti

from config import HIERARCHY_REBUILD_INTERVAL, NODE_LEAF
from buffers import HierarchyBufferType
from hierarchy import (FieldHierarchy, HierarchyLayout, is_ancestor, level_offset,
                       morton_decode, morton_encode, next_node, node_level)


@ti.func
def interaction(p, com, mass, D: ti.template()):
    """Field contribution at p of `mass` points located at com."""
    m = ti.cast(mass, ti.f32)
    diff = p - com
    t = 1.0 / (1.0 + diff.dot(diff))
    out = ti.Vector.zero(ti.f32, D + 1)
    out[0] = m * t
    for d in ti.static(range(D)):
        out[d + 1] = m * t * t * diff[d]
    return out


@ti.func
def accepts(P, Q, accept_sq: ti.f32, D: ti.template()) -> ti.i32:
    """Same-level cell pair acceptance in integer cell units."""
    g2 = 0
    for d in ti.static(range(D)):
        g = ti.max(ti.abs(P[d] - Q[d]) - 1, 0)
        g2 += g * g
    result = 0
    if ti.cast(g2, ti.f32) > accept_sq:
        result = 1
    return result


# ==============================================================================
# Single hierarchy
# ==============================================================================

@ti.kernel
def _field_single(embedding: ti.template(), disabled: ti.template(), n: ti.i32,
                  node: ti.template(), mass: ti.template(), position_sum: ti.template(),
                  point_leaf: ti.template(), domain: ti.template(), out: ti.template(),
                  K: ti.template(), theta: ti.f32):
    D = ti.static(embedding.n)
    sqrt_d = ti.static(math.sqrt(embedding.n))
    for i in range(n):
        val = ti.Vector.zero(ti.f32, D + 1)
        if disabled[i] == 0:
            y = embedding[i]
            own = point_leaf[i]
            side = domain[1][0]
            idx = 0
            while idx >= 0:
                m = mass[idx]
                descend = 0
                if m > 0:
                    word = node[idx]
                    t = word & 3
                    if is_ancestor(idx, own, K) == 1:
                        if t == NODE_LEAF:
                            rest = m - 1
                            if rest > 0:
                                com = (position_sum[idx] - y) / rest
                                val += interaction(y, com, rest, D)
                        else:
                            descend = 1
                    else:
                        com = position_sum[idx] / m
                        if t == NODE_LEAF:
                            val += interaction(y, com, m, D)
                        else:
                            lvl = node_level(idx, K)
                            diag = side / ti.cast(1 << lvl, ti.f32) * sqrt_d
                            diff = y - com
                            if diag < theta * diff.norm():
                                val += interaction(y, com, m, D)
                            else:
                                descend = 1
                if descend == 1:
                    target = K * idx + 1
                    skip = node[idx] >> 2
                    if skip > 0:
                        if mass[skip] == m and is_ancestor(idx, skip, K) == 1:
                            target = skip
                    idx = target
                else:
                    idx = next_node(idx, K)
        out[i] = val


# ==============================================================================
# Dual hierarchy
# ==============================================================================

@ti.kernel
def _field_dual_nodes(node_field: ti.template(), mass: ti.template(), position_sum: ti.template(),
                      domain: ti.template(), n_nodes: ti.i32, n_lvls: ti.i32,
                      K: ti.template(), radius: ti.i32, accept_sq: ti.f32):
    D = ti.static(position_sum.n)
    for f in range(n_nodes):
        acc = ti.Vector.zero(ti.f32, D + 1)
        if f > 0 and mass[f] > 0:
            lvl = node_level(f, K)
            P = morton_decode(f - level_offset(lvl, K), D)
            width = domain[1][0] / ti.cast(1 << lvl, ti.f32)
            center = domain[0] + (ti.cast(P, ti.f32) + 0.5) * width
            Pp = P // 2
            size_p = 1 << (lvl - 1)
            off_p = level_offset(lvl - 1, K)
            span = 2 * radius + 1
            total = 1
            for _ in ti.static(range(D)):
                total *= span
            for q in range(total):
                Qp = ti.Vector.zero(ti.i32, D)
                rem = q
                inside = 1
                for d in ti.static(range(D)):
                    Qp[d] = Pp[d] + rem % span - radius
                    rem = rem // span
                    if Qp[d] < 0 or Qp[d] >= size_p:
                        inside = 0
                if inside == 1:
                    if accepts(Pp, Qp, accept_sq, D) == 0:
                        e_parent = off_p + morton_encode(Qp, D)
                        if mass[e_parent] > 0:
                            for c in range(K):
                                e = K * e_parent + 1 + c
                                me = mass[e]
                                if me > 0 and e != f:
                                    Q = Qp * 2
                                    for d in ti.static(range(D)):
                                        Q[d] += (c >> d) & 1
                                    if accepts(P, Q, accept_sq, D) == 1 or lvl == n_lvls - 1:
                                        acc += interaction(center, position_sum[e] / me, me, D)
        node_field[f] = acc


@ti.kernel
def _field_dual_points(embedding: ti.template(), disabled: ti.template(), n: ti.i32,
                       point_leaf: ti.template(), node_field: ti.template(), mass: ti.template(),
                       position_sum: ti.template(), out: ti.template(), K: ti.template()):
    D = ti.static(embedding.n)
    for i in range(n):
        val = ti.Vector.zero(ti.f32, D + 1)
        if disabled[i] == 0:
            leaf = point_leaf[i]
            idx = leaf
            while idx > 0:
                val += node_field[idx]
                idx = (idx - 1) // K
            y = embedding[i]
            rest = mass[leaf] - 1
            if rest > 0:
                val += interaction(y, (position_sum[leaf] - y) / rest, rest, D)
        out[i] = val


class Field:
    """
    Repulsive field evaluator.

    Args:
        params: config.Params (dimensionality, thetas, mode)
        n: number of points
    """

    def __init__(self, params, n: int):
        self._params = params
        self._n = n
        self._n_dims = params.n_low_dims
        self._dual = params.use_dual_hierarchy
        self._theta = params.theta
        self._hierarchy = FieldHierarchy(self._n_dims, n, verbose=params.verbose)
        self.time_hierarchy = 0.0
        self.time_field = 0.0

    @property
    def dual(self) -> bool:
        return self._dual

    @property
    def hierarchy(self) -> FieldHierarchy:
        return self._hierarchy

    def size(self) -> int:
        layout = self._hierarchy.layout
        return layout.size if layout is not None else 0

    def mem_size(self) -> int:
        return self._hierarchy.mem_size()

    def comp(self, size: int, iteration: int, embedding, bounds, disabled, out, rebuild=None):
        """
        Evaluate the field for all points into `out` (n x (D+1)).

        Args:
            size: hierarchy resolution per axis (power of two)
            iteration: used for the rebuild cadence when rebuild is None
        """
        if rebuild is None:
            rebuild = iteration % HIERARCHY_REBUILD_INTERVAL == 0
        layout = HierarchyLayout(size, self._n_dims)

        t0 = time.perf_counter()
        self._hierarchy.comp(rebuild, layout, embedding, bounds, disabled)
        t1 = time.perf_counter()

        h = self._hierarchy
        if self._dual:
            radius = int(math.floor(2.0 * math.sqrt(self._n_dims) / self._theta)) + 1
            accept_sq = 4.0 * self._n_dims / (self._theta * self._theta)
            node_field = h.buffer(HierarchyBufferType.FIELD)
            _field_dual_nodes(node_field, h.buffer(HierarchyBufferType.MASS),
                              h.buffer(HierarchyBufferType.POSITION_SUM),
                              h.buffer(HierarchyBufferType.DOMAIN), layout.n_nodes, layout.n_lvls,
                              h.branch, radius, accept_sq)
            ti.sync()
            _field_dual_points(embedding, disabled, self._n, h.buffer(HierarchyBufferType.POINT_LEAF),
                               node_field, h.buffer(HierarchyBufferType.MASS),
                               h.buffer(HierarchyBufferType.POSITION_SUM), out, h.branch)
        else:
            _field_single(embedding, disabled, self._n, h.buffer(HierarchyBufferType.NODE),
                          h.buffer(HierarchyBufferType.MASS), h.buffer(HierarchyBufferType.POSITION_SUM),
                          h.buffer(HierarchyBufferType.POINT_LEAF), h.buffer(HierarchyBufferType.DOMAIN),
                          out, h.branch, self._theta)
        ti.sync()
        t2 = time.perf_counter()
        self.time_hierarchy = t1 - t0
        self.time_field = t2 - t1

    def destroy(self):
        self._hierarchy.destroy()
