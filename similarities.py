"""
Symmetric KNN similarity graph for t-SNE.

Pipeline (comp):
1. knn_search: exact KNN on the host (scikit-learn), self forced into slot 0
2. _similarities_comp: per-point binary search for the Gaussian precision
   matching the point's perplexity (base-2 entropy)
3. _expand: count reciprocal neighbors each point does not list itself
4. inclusive scan of expanded sizes -> symmetric size (host read-back)
5. _layout_comp / _neighbors_comp: fill the symmetric arena
6. _neighbors_sort: sort each neighbor set by index
7. _l1_distances: per-entry L1 distance in data space (attribute reweighing)

The graph arena (neighbors, similarities, original snapshot, L1 distances) is
rebuilt wholesale on every comp/recomp. All edits keep the graph symmetric:
entry (i, j) and entry (j, i) always carry the same weight.
"""

import math
import time

import numpy as np
import taichi as ti
from sklearn.neighbors import NearestNeighbors

from buffers import Arena, SimilaritiesBuffers
from buffers import SimilaritiesBufferType as BufferType
from primitives import ReduceOp
from config import PERPLEXITY_EPS, PERPLEXITY_ITERS, EPS

FLT_MAX = 3.402823e38
BETA_MAX = 1e30
LN2 = math.log(2.0)


def knn_search(points: np.ndarray, k: int):
    """
    Exact k-nearest-neighbor search.

    Args:
        points: (n, d) float array
        k: neighbors per point, counting the point itself

    Returns:
        (indices, squared_distances), both (n, k); column 0 is the point itself
    """
    points = np.ascontiguousarray(points, dtype=np.float32)
    n = points.shape[0]
    nn = NearestNeighbors(n_neighbors=k - 1).fit(points)
    distances, indices = nn.kneighbors()  # query points excluded from their own lists
    self_idx = np.arange(n, dtype=np.int32)[:, None]
    indices = np.hstack([self_idx, indices.astype(np.int32)])
    distances = np.hstack([np.zeros((n, 1), dtype=np.float32), distances.astype(np.float32)])
    return np.ascontiguousarray(indices), np.ascontiguousarray(distances * distances)


# ==============================================================================
# Helpers
# ==============================================================================

@ti.func
def find_neighbor(neighbors: ti.template(), offset: ti.i32, size: ti.i32, j: ti.i32) -> ti.i32:
    """Binary search for j in a sorted neighbor set. Returns the arena index or -1."""
    lo = 0
    hi = size - 1
    pos = -1
    while lo <= hi:
        mid = (lo + hi) // 2
        v = neighbors[offset + mid]
        if v == j:
            pos = offset + mid
            lo = hi + 1
        elif v < j:
            lo = mid + 1
        else:
            hi = mid - 1
    return pos


# ==============================================================================
# Graph construction kernels
# ==============================================================================

@ti.kernel
def _similarities_comp(distances: ti.template(), similarities: ti.template(),
                       perplexities: ti.template(), n: ti.i32, k: ti.i32,
                       n_iters: ti.i32, eps: ti.f32):
    """
    Calibrate p_{j|i} for every point.

    Distances are shifted by the row minimum before exponentiation, which
    leaves the normalized distribution unchanged but keeps the sum >= 1.
    If the search runs out of iterations the last precision is kept.
    """
    for i in range(n):
        base = i * k
        d_min = FLT_MAX
        for s in range(1, k):
            d_min = ti.min(d_min, distances[base + s])

        target = ti.log(perplexities[i]) / LN2
        beta = 1.0
        beta_min = -FLT_MAX
        beta_max = FLT_MAX
        it = 0
        done = 0
        while it < n_iters and done == 0:
            total = 0.0
            weighted = 0.0
            for s in range(1, k):
                d = distances[base + s] - d_min
                p = ti.exp(-beta * d)
                total += p
                weighted += d * p
            entropy = (ti.log(total) + beta * weighted / total) / LN2
            diff = entropy - target
            if ti.abs(diff) < eps:
                done = 1
            else:
                if diff > 0:
                    beta_min = beta
                    if beta_max == FLT_MAX:
                        beta = ti.min(beta * 2.0, BETA_MAX)
                    else:
                        beta = (beta + beta_max) * 0.5
                else:
                    beta_max = beta
                    if beta_min == -FLT_MAX:
                        beta = beta * 0.5
                    else:
                        beta = (beta + beta_min) * 0.5
            it += 1

        total = 0.0
        for s in range(1, k):
            p = ti.exp(-beta * (distances[base + s] - d_min))
            similarities[base + s] = p
            total += p
        similarities[base] = 0.0
        for s in range(1, k):
            similarities[base + s] = similarities[base + s] / total


@ti.kernel
def _expand(knn: ti.template(), sizes: ti.template(), n: ti.i32, k: ti.i32):
    for i in range(n):
        for s in range(1, k):
            j = knn[i * k + s]
            found = 0
            for r in range(1, k):
                if knn[j * k + r] == i:
                    found = 1
            if found == 0:
                ti.atomic_add(sizes[j], 1)


@ti.kernel
def _layout_comp(scan: ti.template(), sizes: ti.template(), layout: ti.template(), n: ti.i32):
    for i in range(n):
        layout[i] = ti.Vector([scan[i] - sizes[i], sizes[i]])


@ti.kernel
def _neighbors_comp(knn: ti.template(), cond: ti.template(), counts: ti.template(),
                    layout: ti.template(), neighbors: ti.template(), similarities: ti.template(),
                    n: ti.i32, k: ti.i32):
    for i, s in ti.ndrange(n, k):
        if s > 0:
            j = knn[i * k + s]
            p_ij = cond[i * k + s]
            r = -1
            for t in range(1, k):
                if knn[j * k + t] == i:
                    r = t
            if r >= 0:
                # Mutual pair: the mirror entry is written by thread (j, r)
                sim = 0.5 * (p_ij + cond[j * k + r])
                c = ti.atomic_add(counts[i], 1)
                neighbors[layout[i][0] + c] = j
                similarities[layout[i][0] + c] = sim
            else:
                sim = 0.5 * p_ij
                c = ti.atomic_add(counts[i], 1)
                neighbors[layout[i][0] + c] = j
                similarities[layout[i][0] + c] = sim
                c2 = ti.atomic_add(counts[j], 1)
                neighbors[layout[j][0] + c2] = i
                similarities[layout[j][0] + c2] = sim


@ti.kernel
def _neighbors_sort(layout: ti.template(), neighbors: ti.template(),
                    similarities: ti.template(), n: ti.i32):
    for i in range(n):
        offset = layout[i][0]
        size = layout[i][1]
        for a in range(1, size):
            key = neighbors[offset + a]
            val = similarities[offset + a]
            b = a - 1
            moving = 1
            while moving == 1:
                if b >= 0:
                    if neighbors[offset + b] > key:
                        neighbors[offset + b + 1] = neighbors[offset + b]
                        similarities[offset + b + 1] = similarities[offset + b]
                        b -= 1
                    else:
                        moving = 0
                else:
                    moving = 0
            neighbors[offset + b + 1] = key
            similarities[offset + b + 1] = val


@ti.kernel
def _l1_distances(dataset: ti.template(), layout: ti.template(), neighbors: ti.template(),
                  distances_l1: ti.template(), n: ti.i32, h: ti.i32):
    for i in range(n):
        offset = layout[i][0]
        for s in range(layout[i][1]):
            j = neighbors[offset + s]
            acc = 0.0
            for a in range(h):
                acc += ti.abs(dataset[i * h + a] - dataset[j * h + a])
            distances_l1[offset + s] = acc


@ti.kernel
def _copy(src: ti.template(), dst: ti.template(), n: ti.i32):
    for i in range(n):
        dst[i] = src[i]


@ti.kernel
def _set_selected(buf: ti.template(), selection: ti.template(), n: ti.i32, value: ti.f32):
    for i in range(n):
        if selection[i] != 0:
            buf[i] = value


# ==============================================================================
# Editing kernels
# ==============================================================================

@ti.kernel
def _weigh_similarities(layout: ti.template(), neighbors: ti.template(),
                        similarities: ti.template(), original: ti.template(),
                        selection: ti.template(), use_selection: ti.template(),
                        inter_only: ti.i32, weight: ti.f32, max_weight: ti.f32, n: ti.i32):
    for i in range(n):
        offset = layout[i][0]
        for s in range(layout[i][1]):
            e = offset + s
            apply = 1
            if ti.static(use_selection):
                si = selection[i]
                sj = selection[neighbors[e]]
                if si == 0 or sj == 0:
                    apply = 0
                if inter_only == 1 and si == sj:
                    apply = 0
            if apply == 1:
                similarities[e] = ti.min(ti.max(similarities[e] * weight, 0.0),
                                         original[e] * max_weight)


@ti.kernel
def _weigh_per_attribute(dataset: ti.template(), layout: ti.template(), neighbors: ti.template(),
                         similarities: ti.template(), distances_l1: ti.template(),
                         attribute_weights: ti.template(), mask: ti.template(),
                         selection: ti.template(), weighted: ti.template(), n: ti.i32, h: ti.i32):
    for i in range(n):
        offset = layout[i][0]
        size = layout[i][1]
        if selection[i] == 0:
            for s in range(size):
                weighted[offset + s] = similarities[offset + s]
        else:
            before = 0.0
            after = 0.0
            for s in range(size):
                e = offset + s
                j = neighbors[e]
                wl1 = 0.0
                for a in range(h):
                    w = 1.0
                    if mask[a] != 0:
                        w = attribute_weights[a]
                    wl1 += w * ti.abs(dataset[i * h + a] - dataset[j * h + a])
                factor = 1.0
                if wl1 > EPS:
                    factor = distances_l1[e] / wl1
                elif distances_l1[e] > EPS:
                    factor = 0.0
                before += similarities[e]
                weighted[e] = similarities[e] * factor
                after += weighted[e]
            if after > EPS:
                scale = before / after
                for s in range(size):
                    weighted[offset + s] = weighted[offset + s] * scale


@ti.kernel
def _symmetrize(layout: ti.template(), neighbors: ti.template(), weighted: ti.template(),
                similarities: ti.template(), n: ti.i32):
    for i in range(n):
        offset = layout[i][0]
        for s in range(layout[i][1]):
            e = offset + s
            j = neighbors[e]
            r = find_neighbor(neighbors, layout[j][0], layout[j][1], i)
            similarities[e] = 0.5 * (weighted[e] + weighted[r])


@ti.kernel
def _clamp(buf: ti.template(), n: ti.i32, lo: ti.f32, hi: ti.f32):
    for i in range(n):
        buf[i] = ti.min(ti.max(buf[i], lo), hi)


class Similarities:
    """
    Owner of the dataset and the symmetric similarity graph.

    Args:
        data: (n, n_high_dims) float array
        params: config.Params
        tools: primitives.BufferTools shared by the run
    """

    def __init__(self, data, params, tools):
        data = np.ascontiguousarray(data, dtype=np.float32)
        self._params = params
        self._tools = tools
        self._n = params.n
        self._h = params.n_high_dims
        self._k = params.k
        self._symmetric_size = 0
        self._buffers = {}
        self._point_arena = None
        self._graph_arena = None
        self.timings = {}

        self._point_arena = self._alloc_points(self._n, self._buffers)
        self._buffers[BufferType.DATASET].from_numpy(data.reshape(-1))
        tools.set(self._buffers[BufferType.PERPLEXITIES], self._n, params.perplexity)
        tools.set(self._buffers[BufferType.ATTRIBUTE_WEIGHTS], self._h, 1.0)

    def _alloc_points(self, n, buffers):
        arena = Arena()
        buffers[BufferType.DATASET] = arena.field(ti.f32, n * self._h)
        buffers[BufferType.LAYOUT] = arena.field(ti.i32, n, dim=2)
        buffers[BufferType.PERPLEXITIES] = arena.field(ti.f32, n)
        buffers[BufferType.ATTRIBUTE_WEIGHTS] = arena.field(ti.f32, self._h)
        return arena.finalize()

    def _log(self, msg):
        if self._params.verbose:
            print(f"[Similarities] {msg}")

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    def comp(self):
        """Build the symmetric graph from the current dataset, k and perplexities."""
        n, h, k = self._n, self._h, self._k
        tools = self._tools
        buffers = self._buffers

        t0 = time.perf_counter()
        data = buffers[BufferType.DATASET].to_numpy().reshape(n, h)
        knn_indices, knn_distances = knn_search(data, k)
        t_knn = time.perf_counter() - t0

        temp = Arena()
        knn = temp.field(ti.i32, n * k)
        distances = temp.field(ti.f32, n * k)
        cond = temp.field(ti.f32, n * k)
        sizes = temp.field(ti.i32, n)
        scan = temp.field(ti.i32, n)
        counts = temp.field(ti.i32, n)
        temp.finalize()
        knn.from_numpy(knn_indices.reshape(-1))
        distances.from_numpy(knn_distances.reshape(-1))

        t0 = time.perf_counter()
        _similarities_comp(distances, cond, buffers[BufferType.PERPLEXITIES], n, k,
                           PERPLEXITY_ITERS, PERPLEXITY_EPS)
        tools.set(sizes, n, k - 1)
        tools.set(counts, n, 0)
        tools.barrier()
        _expand(knn, sizes, n, k)
        tools.barrier()

        # Only true host/device stall of the build: the arena size
        symmetric_size = tools.scan(sizes, scan, n, inclusive=True)

        graph = Arena()
        graph_buffers = {
            BufferType.NEIGHBORS: graph.field(ti.i32, symmetric_size),
            BufferType.SIMILARITIES: graph.field(ti.f32, symmetric_size),
            BufferType.SIMILARITIES_ORIGINAL: graph.field(ti.f32, symmetric_size),
            BufferType.DISTANCES_L1: graph.field(ti.f32, symmetric_size),
        }
        graph.finalize()

        layout = buffers[BufferType.LAYOUT]
        _layout_comp(scan, sizes, layout, n)
        tools.barrier()
        _neighbors_comp(knn, cond, counts, layout, graph_buffers[BufferType.NEIGHBORS],
                        graph_buffers[BufferType.SIMILARITIES], n, k)
        tools.barrier()
        _neighbors_sort(layout, graph_buffers[BufferType.NEIGHBORS],
                        graph_buffers[BufferType.SIMILARITIES], n)
        tools.barrier()
        _l1_distances(buffers[BufferType.DATASET], layout, graph_buffers[BufferType.NEIGHBORS],
                      graph_buffers[BufferType.DISTANCES_L1], n, h)
        _copy(graph_buffers[BufferType.SIMILARITIES],
              graph_buffers[BufferType.SIMILARITIES_ORIGINAL], symmetric_size)
        tools.barrier()
        t_graph = time.perf_counter() - t0

        temp.destroy()
        if self._graph_arena is not None:
            self._graph_arena.destroy()
        self._graph_arena = graph
        buffers.update(graph_buffers)
        self._symmetric_size = symmetric_size

        self.timings = {"knn": t_knn, "graph": t_graph}
        self._log(f"n={n}, k={k}, symmetric size={symmetric_size}, "
                  f"knn {t_knn * 1000:.1f} ms, graph {t_graph * 1000:.1f} ms, "
                  f"storage {(self._point_arena.nbytes + graph.nbytes) / 1048576:.2f} mb")

    def recomp(self, selection=None, perplexity=None, k=None):
        """
        Rebuild the graph with new parameters.

        Points with selection != 0 (all points if selection is None) are
        recalibrated with the new perplexity; the others keep theirs.
        """
        if k is not None:
            if not 2 <= k <= min(self._params.k_max, self._n):
                raise ValueError(f"k={k} outside [2, {min(self._params.k_max, self._n)}]")
            self._k = k
            self._params.k = k
        if perplexity is not None:
            if not 0.0 < perplexity < self._k - 1:
                raise ValueError(f"perplexity {perplexity} needs more than k-1={self._k - 1} neighbors")
            if selection is None:
                self._tools.set(self._buffers[BufferType.PERPLEXITIES], self._n, perplexity)
                self._params.perplexity = perplexity
            else:
                _set_selected(self._buffers[BufferType.PERPLEXITIES], selection, self._n, perplexity)
        self.comp()

    # ------------------------------------------------------------------
    # Editing
    # ------------------------------------------------------------------

    def weigh_similarities(self, weight: float, selection=None, inter_only: bool = False):
        """
        Scale entries whose endpoints are both selected (or, with inter_only,
        selected into different groups). Results are clamped to
        [0, original * max_similarity_weight].
        """
        use_selection = selection is not None
        buffers = self._buffers
        _weigh_similarities(buffers[BufferType.LAYOUT], buffers[BufferType.NEIGHBORS],
                            buffers[BufferType.SIMILARITIES], buffers[BufferType.SIMILARITIES_ORIGINAL],
                            selection if use_selection else self._tools.dummy_i32, use_selection,
                            1 if inter_only else 0, float(weight),
                            self._params.max_similarity_weight, self._n)
        self._tools.barrier()

    def set_attribute_weights(self, weights):
        weights = np.clip(np.asarray(weights, dtype=np.float32), 0.0, self._params.max_attribute_weight)
        if weights.shape != (self._h,):
            raise ValueError(f"expected {self._h} attribute weights, got shape {weights.shape}")
        self._buffers[BufferType.ATTRIBUTE_WEIGHTS].from_numpy(weights)

    def weigh_similarities_per_attribute(self, attribute_indices, selection):
        """
        Reweigh the neighbor sets of selected points by the attribute weights
        on attribute_indices, keeping each point's total similarity mass.
        """
        buffers = self._buffers
        mask = np.zeros(self._h, dtype=np.int32)
        for a in attribute_indices:
            mask[int(a)] = 1
        _clamp(buffers[BufferType.ATTRIBUTE_WEIGHTS], self._h, 0.0, self._params.max_attribute_weight)

        temp = Arena()
        mask_field = temp.field(ti.i32, self._h)
        weighted = temp.field(ti.f32, self._symmetric_size)
        temp.finalize()
        mask_field.from_numpy(mask)

        _weigh_per_attribute(buffers[BufferType.DATASET], buffers[BufferType.LAYOUT],
                             buffers[BufferType.NEIGHBORS], buffers[BufferType.SIMILARITIES],
                             buffers[BufferType.DISTANCES_L1], buffers[BufferType.ATTRIBUTE_WEIGHTS],
                             mask_field, selection, weighted, self._n, self._h)
        self._tools.barrier()
        _symmetrize(buffers[BufferType.LAYOUT], buffers[BufferType.NEIGHBORS], weighted,
                    buffers[BufferType.SIMILARITIES], self._n)
        self._tools.barrier()
        temp.destroy()

    def reset(self):
        """Restore similarities from the snapshot taken at the last comp."""
        _copy(self._buffers[BufferType.SIMILARITIES_ORIGINAL],
              self._buffers[BufferType.SIMILARITIES], self._symmetric_size)
        self._tools.barrier()

    def remove_points(self, selection) -> int:
        """
        Drop points with selection != 0 from the dataset, then rebuild the graph.

        Returns:
            New number of points
        """
        tools = self._tools
        n_new = tools.reduce(selection, self._n, ReduceOp.COUNT, count_val=0)
        if n_new < 2:
            raise ValueError(f"removal would leave {n_new} points")

        old = self._buffers
        new = {}
        arena = self._alloc_points(n_new, new)
        tools.remove(old[BufferType.DATASET], new[BufferType.DATASET], self._n, self._h, selection)
        tools.remove(old[BufferType.PERPLEXITIES], new[BufferType.PERPLEXITIES], self._n, 1, selection)
        _copy(old[BufferType.ATTRIBUTE_WEIGHTS], new[BufferType.ATTRIBUTE_WEIGHTS], self._h)
        tools.barrier()
        self._point_arena.destroy()
        self._point_arena = arena
        self._buffers.update(new)

        self._log(f"removed {self._n - n_new} points ({n_new} remain)")
        self._n = n_new
        self._params.n = n_new
        if self._k > n_new:
            self._k = n_new
            self._params.k = n_new
        self.comp()
        return n_new

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def n(self) -> int:
        return self._n

    @property
    def k(self) -> int:
        return self._k

    @property
    def symmetric_size(self) -> int:
        return self._symmetric_size

    def buffers(self) -> SimilaritiesBuffers:
        return SimilaritiesBuffers(
            dataset=self._buffers[BufferType.DATASET],
            layout=self._buffers[BufferType.LAYOUT],
            neighbors=self._buffers[BufferType.NEIGHBORS],
            similarities=self._buffers[BufferType.SIMILARITIES],
            attribute_weights=self._buffers[BufferType.ATTRIBUTE_WEIGHTS],
        )

    def graph(self):
        """Host copies (layout, neighbors, similarities) for diagnostics and tests."""
        return (self._buffers[BufferType.LAYOUT].to_numpy()[:self._n],
                self._buffers[BufferType.NEIGHBORS].to_numpy()[:self._symmetric_size],
                self._buffers[BufferType.SIMILARITIES].to_numpy()[:self._symmetric_size])

    def perplexities(self) -> np.ndarray:
        return self._buffers[BufferType.PERPLEXITIES].to_numpy()[:self._n]

    def similarities_original(self) -> np.ndarray:
        return self._buffers[BufferType.SIMILARITIES_ORIGINAL].to_numpy()[:self._symmetric_size]

    def destroy(self):
        if self._graph_arena is not None:
            self._graph_arena.destroy()
            self._graph_arena = None
        if self._point_arena is not None:
            self._point_arena.destroy()
            self._point_arena = None
