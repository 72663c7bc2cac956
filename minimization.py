"""
Gradient descent on the embedding.

One iteration:
1. bounds of the active (non-translating, non-disabled) points
2. hierarchy resolution from the x range, then the field evaluation
3. Z = sum of densities over enabled points
4. attractive forces over the similarity graph
5. gradient = 4 * (exaggeration * attractive - field_gradient / Z)
6. gain / momentum update (fixed, disabled and translating points stay put)
7. re-center, with a scale-up guard against early collapse

Interactive edits (selection, fixing, translation, weights, removal) act on
per-point flag buffers that the kernels above consult every iteration.
"""

import time

import numpy as np
import taichi as ti

from buffers import Arena, MinimizationBuffers
from buffers import MinimizationBufferType as BufferType
from config import COLLAPSE_EXAGGERATION, COLLAPSE_RANGE, EPS, GAIN_DECREASE, GAIN_INCREASE, LOG_EVERY
from field import Field
from hierarchy import field_resolution
from primitives import FLT_MAX, ReduceOp
from similarities import find_neighbor, knn_search


def random_embedding(n: int, n_dims: int, seed: int, rng_range: float) -> np.ndarray:
    """Gaussian initial positions (polar Box-Muller), scaled by rng_range."""
    rng = np.random.RandomState(seed)
    out = np.empty((n, n_dims), dtype=np.float32)
    filled = 0
    while filled < n:
        v = rng.uniform(-1.0, 1.0, size=(n, n_dims))
        r = (v * v).sum(axis=1)
        ok = (r > 0.0) & (r < 1.0)
        v, r = v[ok], r[ok]
        v *= np.sqrt(-2.0 * np.log(r) / r)[:, None]
        take = min(len(v), n - filled)
        out[filled:filled + take] = v[:take] * rng_range
        filled += take
    return out


# ==============================================================================
# Iteration kernels
# ==============================================================================

@ti.kernel
def _bounds_comp(embedding: ti.template(), translating: ti.template(), disabled: ti.template(),
                 n: ti.i32, bounds: ti.template()):
    D = ti.static(embedding.n)
    for d in ti.static(range(D)):
        bounds[0][d] = FLT_MAX
        bounds[1][d] = -FLT_MAX
    for i in range(n):
        if translating[i] == 0 and disabled[i] == 0:
            y = embedding[i]
            for d in ti.static(range(D)):
                ti.atomic_min(bounds[0][d], y[d])
                ti.atomic_max(bounds[1][d], y[d])
    if bounds[1][0] < bounds[0][0]:
        # nothing active
        bounds[0] = ti.Vector.zero(ti.f32, D)
        bounds[1] = ti.Vector.zero(ti.f32, D)
    bounds[2] = bounds[1] - bounds[0]
    bounds[3] = 0.5 * (bounds[0] + bounds[1])


@ti.kernel
def _attractive_comp(embedding: ti.template(), layout: ti.template(), neighbors: ti.template(),
                     similarities: ti.template(), weights: ti.template(), disabled: ti.template(),
                     attractive: ti.template(), n: ti.i32, inv_n: ti.f32, falloff: ti.f32):
    D = ti.static(embedding.n)
    for i in range(n):
        acc = ti.Vector.zero(ti.f32, D)
        if disabled[i] == 0:
            y = embedding[i]
            w_i = weights[i]
            offset = layout[i][0]
            for s in range(layout[i][1]):
                j = neighbors[offset + s]
                if disabled[j] == 0:
                    diff = y - embedding[j]
                    t = 1.0 / (1.0 + diff.dot(diff))
                    mult = w_i * (1.0 + falloff * (weights[j] - 1.0))
                    acc += similarities[offset + s] * t * mult * diff
        attractive[i] = acc * inv_n


@ti.kernel
def _gradients_comp(attractive: ti.template(), field: ti.template(), z: ti.template(),
                    gradients: ti.template(), n: ti.i32, exaggeration: ti.f32):
    D = ti.static(attractive.n)
    for i in range(n):
        f = field[i]
        rep = ti.Vector.zero(ti.f32, D)
        for d in ti.static(range(D)):
            rep[d] = f[d + 1]
        inv_z = 1.0 / ti.max(z[None], EPS)
        gradients[i] = 4.0 * (exaggeration * attractive[i] - rep * inv_z)


@ti.kernel
def _update_embedding(embedding: ti.template(), gradients: ti.template(), prev: ti.template(),
                      gain: ti.template(), fixed: ti.template(), disabled: ti.template(),
                      translating: ti.template(), n: ti.i32, eta: ti.f32, min_gain: ti.f32,
                      momentum: ti.f32):
    D = ti.static(embedding.n)
    for i in range(n):
        if fixed[i] == 0 and disabled[i] == 0 and translating[i] == 0:
            g = gradients[i]
            p = prev[i]
            gn = gain[i]
            for d in ti.static(range(D)):
                if (g[d] > 0.0) == (p[d] > 0.0):
                    gn[d] = gn[d] + GAIN_INCREASE
                else:
                    gn[d] = gn[d] * GAIN_DECREASE
                gn[d] = ti.max(gn[d], min_gain)
                p[d] = momentum * p[d] + gn[d] * g[d]
            gain[i] = gn
            prev[i] = p
            embedding[i] -= eta * p


@ti.kernel
def _center_embedding(embedding: ti.template(), bounds: ti.template(), n: ti.i32, scaling: ti.f32):
    center = bounds[3]
    for i in range(n):
        embedding[i] = (embedding[i] - center) * scaling


@ti.kernel
def _neighborhood_preservation(knn: ti.template(), k: ti.i32, layout: ti.template(),
                               neighbors: ti.template(), out: ti.template(), n: ti.i32):
    for i in range(n):
        found = 0
        for s in range(1, k):
            if find_neighbor(neighbors, layout[i][0], layout[i][1], knn[i * k + s]) >= 0:
                found += 1
        out[i] = ti.cast(found, ti.f32) / ti.cast(k - 1, ti.f32)


# ==============================================================================
# Interaction kernels
# ==============================================================================

@ti.kernel
def _select(embedding: ti.template(), disabled: ti.template(), labeled: ti.template(),
            only_labeled: ti.i32, selection: ti.template(), n: ti.i32,
            center: ti.template(), radius: ti.f32, value: ti.i32):
    for i in range(n):
        if disabled[i] == 0 and (only_labeled == 0 or labeled[i] != 0):
            diff = embedding[i] - center[None]
            if diff.norm() <= radius:
                selection[i] = value


@ti.kernel
def _binarize(buf: ti.template(), n: ti.i32):
    for i in range(n):
        if buf[i] != 0:
            buf[i] = 1


@ti.kernel
def _set_where_selected(buf: ti.template(), selection: ti.template(), n: ti.i32, value: ti.f32):
    for i in range(n):
        if selection[i] != 0:
            buf[i] = ti.cast(value, buf.dtype)


@ti.kernel
def _translate(embedding: ti.template(), selection: ti.template(), translating: ti.template(),
               n: ti.i32, offset: ti.template()):
    for i in range(n):
        if selection[i] != 0:
            translating[i] = 1
            embedding[i] += offset[None]


@ti.kernel
def _reset_momentum(gain: ti.template(), prev: ti.template(), n: ti.i32):
    for i in range(n):
        gain[i] = ti.Vector.zero(ti.f32, gain.n) + 1.0
        prev[i] = ti.Vector.zero(ti.f32, prev.n)


@ti.kernel
def _labeled_comp(labels: ti.template(), labeled: ti.template(), n: ti.i32):
    for i in range(n):
        labeled[i] = 0
        if labels[i] >= 0:
            labeled[i] = 1


# Buffers that travel with each point through removal and state export
_STATE = {
    "embedding": BufferType.EMBEDDING,
    "gain": BufferType.GAIN,
    "prev_gradients": BufferType.PREV_GRADIENTS,
    "selection": BufferType.SELECTION,
    "fixed": BufferType.FIXED,
    "disabled": BufferType.DISABLED,
    "weights": BufferType.WEIGHTS,
    "labels": BufferType.LABELS,
}


class Minimization:
    """
    Embedding state and the iteration driver.

    Args:
        similarities: similarities.Similarities with a computed graph
        params: config.Params
        tools: primitives.BufferTools shared by the run
        labels: optional (n,) int labels, negative for unlabeled points
    """

    def __init__(self, similarities, params, tools, labels=None):
        self._similarities = similarities
        self._params = params
        self._tools = tools
        self._n = similarities.n
        self._n_dims = params.n_low_dims
        self._buffers = {}
        self._state = Arena()
        self._buffers[BufferType.BOUNDS] = self._state.field(ti.f32, 4, dim=self._n_dims)
        self._buffers[BufferType.Z] = self._state.field(ti.f32, None)
        self._vec = self._state.field(ti.f32, None, dim=self._n_dims)
        self._state.finalize()
        self._arena = self._alloc(self._n, self._buffers)
        self._field = Field(params, self._n)

        self._tools.set(self._buffers[BufferType.WEIGHTS], self._n, 1.0)
        self._tools.set(self._buffers[BufferType.LABELS], self._n, -1)
        if labels is not None:
            labels = np.asarray(labels, dtype=np.int32)
            if labels.shape != (self._n,):
                raise ValueError(f"expected {self._n} labels, got shape {labels.shape}")
            self._buffers[BufferType.LABELS].from_numpy(labels)
        _labeled_comp(self._buffers[BufferType.LABELS], self._buffers[BufferType.LABELED], self._n)

        self._iteration = 0
        self._remove_exaggeration_iter = params.n_exaggeration_iters
        self._requested_dims = None
        self._np_requested = False
        self._bounds = np.zeros((4, self._n_dims), dtype=np.float32)
        self.time_iteration = 0.0
        self.restart()

    def _alloc(self, n, buffers):
        D = self._n_dims
        arena = Arena()
        for key in (BufferType.EMBEDDING, BufferType.ATTRACTIVE, BufferType.GRADIENTS,
                    BufferType.PREV_GRADIENTS, BufferType.GAIN):
            buffers[key] = arena.field(ti.f32, n, dim=D)
        buffers[BufferType.FIELD] = arena.field(ti.f32, n, dim=D + 1)
        for key in (BufferType.SELECTION, BufferType.FIXED, BufferType.DISABLED,
                    BufferType.TRANSLATING, BufferType.LABELS, BufferType.LABELED):
            buffers[key] = arena.field(ti.i32, n)
        buffers[BufferType.WEIGHTS] = arena.field(ti.f32, n)
        buffers[BufferType.NEIGHBORHOOD_PRESERVATION] = arena.field(ti.f32, n)
        return arena.finalize()

    def _log(self, msg):
        if self._params.verbose:
            print(f"[Minimization] {msg}")

    # ------------------------------------------------------------------
    # Schedule
    # ------------------------------------------------------------------

    @property
    def iteration(self) -> int:
        return self._iteration

    def exaggeration(self) -> float:
        p = self._params
        it = self._iteration
        start = self._remove_exaggeration_iter
        if it < start:
            return p.exaggeration_factor
        if it < start + p.n_exponential_decay_iters:
            frac = (it - start) / p.n_exponential_decay_iters
            return 1.0 + (p.exaggeration_factor - 1.0) * (1.0 - frac)
        return 1.0

    def momentum(self) -> float:
        p = self._params
        return p.momentum if self._iteration < p.momentum_switch_iter else p.final_momentum

    # ------------------------------------------------------------------
    # Iteration
    # ------------------------------------------------------------------

    def comp(self):
        """Run until params.iterations."""
        t0 = time.perf_counter()
        while self._iteration < self._params.iterations:
            if self.comp_iteration():
                break
        ti.sync()
        self._log(f"Done! {self._iteration} iterations in {time.perf_counter() - t0:.2f} s")

    def comp_iteration(self) -> bool:
        """
        One gradient descent step.

        Returns:
            True when a dimensionality change was requested; the step is not
            run and the owner must rebuild this component.
        """
        if self._requested_dims is not None and self._requested_dims != self._n_dims:
            return True

        t0 = time.perf_counter()
        b = self._buffers
        n = self._n
        p = self._params
        sb = self._similarities.buffers()

        self._comp_bounds()
        size = field_resolution(float(self._bounds[2][0]), p.field_scaling, self._n_dims)
        self._field.comp(size, self._iteration, b[BufferType.EMBEDDING], b[BufferType.BOUNDS],
                         b[BufferType.DISABLED], b[BufferType.FIELD])
        self._tools.reduce(b[BufferType.FIELD], n, ReduceOp.SUM, selection=b[BufferType.DISABLED],
                           select_val=0, component=0, result=b[BufferType.Z], readback=False)

        _attractive_comp(b[BufferType.EMBEDDING], sb.layout, sb.neighbors, sb.similarities,
                         b[BufferType.WEIGHTS], b[BufferType.DISABLED], b[BufferType.ATTRACTIVE],
                         n, 1.0 / n, p.weight_falloff)
        self._tools.barrier()

        exaggeration = self.exaggeration()
        _gradients_comp(b[BufferType.ATTRACTIVE], b[BufferType.FIELD], b[BufferType.Z],
                        b[BufferType.GRADIENTS], n, exaggeration)
        self._tools.barrier()
        _update_embedding(b[BufferType.EMBEDDING], b[BufferType.GRADIENTS], b[BufferType.PREV_GRADIENTS],
                          b[BufferType.GAIN], b[BufferType.FIXED], b[BufferType.DISABLED],
                          b[BufferType.TRANSLATING], n, p.eta, p.minimum_gain, self.momentum())
        self._tools.barrier()

        # re-center with the bounds of this step
        scaling = 1.0
        range_y = float(self._bounds[2][1])
        if exaggeration > COLLAPSE_EXAGGERATION and 0.0 < range_y < COLLAPSE_RANGE:
            scaling = COLLAPSE_RANGE / range_y
        _center_embedding(b[BufferType.EMBEDDING], b[BufferType.BOUNDS], n, scaling)
        self._tools.barrier()

        if self._np_requested:
            self.comp_neighborhood_preservation()
            self._np_requested = False

        self._iteration += 1
        self.time_iteration = time.perf_counter() - t0
        if self._iteration % LOG_EVERY == 0:
            self._log(f"iter {self._iteration}/{p.iterations}, "
                      f"field {size}^{self._n_dims} ({self._field.mem_size() / 1048576:.2f} mb, "
                      f"{'dual' if self._field.dual else 'single'}), "
                      f"Z={b[BufferType.Z][None]:.4e}, exaggeration={exaggeration:.2f}, "
                      f"{self.time_iteration * 1000:.2f} ms")
        return False

    def _comp_bounds(self):
        b = self._buffers
        _bounds_comp(b[BufferType.EMBEDDING], b[BufferType.TRANSLATING], b[BufferType.DISABLED],
                     self._n, b[BufferType.BOUNDS])
        self._bounds = b[BufferType.BOUNDS].to_numpy()

    def request_neighborhood_preservation(self):
        """Compute neighborhood preservation at the end of the next iteration."""
        self._np_requested = True

    def comp_neighborhood_preservation(self) -> np.ndarray:
        """
        Per point, the fraction of its k-1 nearest embedding neighbors that
        are also its graph neighbors.
        """
        k = min(self._similarities.k, self._n)
        knn_indices, _ = knn_search(self.embedding(), k)
        temp = Arena()
        knn = temp.field(ti.i32, self._n * k)
        temp.finalize()
        knn.from_numpy(knn_indices.reshape(-1))
        sb = self._similarities.buffers()
        out = self._buffers[BufferType.NEIGHBORHOOD_PRESERVATION]
        _neighborhood_preservation(knn, k, sb.layout, sb.neighbors, out, self._n)
        self._tools.barrier()
        temp.destroy()
        return out.to_numpy()[:self._n]

    # ------------------------------------------------------------------
    # Restarts
    # ------------------------------------------------------------------

    def restart(self):
        """Random embedding, unit gains, zero momentum, exaggeration from the start."""
        p = self._params
        init = random_embedding(self._n, self._n_dims, p.seed, p.rng_range)
        self._buffers[BufferType.EMBEDDING].from_numpy(init)
        _reset_momentum(self._buffers[BufferType.GAIN], self._buffers[BufferType.PREV_GRADIENTS], self._n)
        self._iteration = 0
        self._remove_exaggeration_iter = p.n_exaggeration_iters
        self._tools.barrier()

    def restart_exaggeration(self, n_iters: int):
        """Exaggerate again for n_iters from the current iteration."""
        self._remove_exaggeration_iter = self._iteration + int(n_iters)

    def request_dimensionality(self, n_dims: int):
        if n_dims not in (2, 3):
            raise ValueError(f"embedding dimensionality must be 2 or 3, got {n_dims}")
        self._requested_dims = n_dims

    @property
    def requested_dimensionality(self):
        return self._requested_dims

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def select(self, center, radius: float, selection: int = 1, only_labeled: bool = False):
        """Brush select: mark points within radius of center. Returns selection_counts()."""
        center = np.asarray(center, dtype=np.float32)
        if center.shape != (self._n_dims,):
            raise ValueError(f"center must have {self._n_dims} components")
        self._vec.from_numpy(center)
        b = self._buffers
        _select(b[BufferType.EMBEDDING], b[BufferType.DISABLED], b[BufferType.LABELED],
                1 if only_labeled else 0, b[BufferType.SELECTION], self._n,
                self._vec, float(radius), int(selection))
        self._tools.barrier()
        return self.selection_counts()

    def deselect(self):
        self._tools.set(self._buffers[BufferType.SELECTION], self._n, 0)

    def select_all(self):
        self._tools.set(self._buffers[BufferType.SELECTION], self._n, 1)

    def select_inverse(self):
        sel = self._buffers[BufferType.SELECTION]
        _binarize(sel, self._n)
        self._tools.flip(sel, self._n)

    def selection_counts(self):
        """(primary, secondary) selected point counts."""
        sel = self._buffers[BufferType.SELECTION]
        return (self._tools.reduce(sel, self._n, ReduceOp.COUNT, count_val=1),
                self._tools.reduce(sel, self._n, ReduceOp.COUNT, count_val=2))

    # ------------------------------------------------------------------
    # Per-point edits
    # ------------------------------------------------------------------

    def fix_selected(self):
        b = self._buffers
        _set_where_selected(b[BufferType.FIXED], b[BufferType.SELECTION], self._n, 1.0)

    def unfix(self):
        self._tools.set(self._buffers[BufferType.FIXED], self._n, 0)

    def translate(self, delta):
        """Move selected points by a screen-space delta in [-1, 1] scaled by the bounds range."""
        delta = np.asarray(delta, dtype=np.float32)
        offset = np.zeros(self._n_dims, dtype=np.float32)
        m = min(len(delta), self._n_dims)
        offset[:m] = delta[:m] * self._bounds[2][:m] * 0.5
        self._vec.from_numpy(offset)
        b = self._buffers
        _translate(b[BufferType.EMBEDDING], b[BufferType.SELECTION], b[BufferType.TRANSLATING],
                   self._n, self._vec)
        self._tools.barrier()

    def end_translation(self):
        self._tools.set(self._buffers[BufferType.TRANSLATING], self._n, 0)

    def disable_selected(self):
        b = self._buffers
        _set_where_selected(b[BufferType.DISABLED], b[BufferType.SELECTION], self._n, 1.0)

    def enable_all(self):
        self._tools.set(self._buffers[BufferType.DISABLED], self._n, 0)

    def set_weights(self, weight: float, selection=None):
        """Set the force multiplier of selected points (all points if selection is None)."""
        w = self._buffers[BufferType.WEIGHTS]
        if selection is None:
            self._tools.set(w, self._n, weight)
        else:
            _set_where_selected(w, selection, self._n, float(weight))

    def set_selection(self, selection):
        """Upload a host selection array (n,) of 0/1/2."""
        selection = np.asarray(selection, dtype=np.int32)
        if selection.shape != (self._n,):
            raise ValueError(f"expected {self._n} selection values, got shape {selection.shape}")
        self._buffers[BufferType.SELECTION].from_numpy(selection)

    def remove_points(self) -> int:
        """
        Remove the selected points from the embedding and the graph, then restart.

        Returns:
            New number of points
        """
        tools = self._tools
        old = self._buffers
        sel = old[BufferType.SELECTION]
        n_old = self._n
        n_new = self._similarities.remove_points(sel)

        new = {BufferType.BOUNDS: old[BufferType.BOUNDS], BufferType.Z: old[BufferType.Z]}
        arena = self._alloc(n_new, new)
        for key in _STATE.values():
            if key != BufferType.SELECTION:
                tools.remove(old[key], new[key], n_old, 1, sel)
        tools.set(new[BufferType.SELECTION], n_new, 0)
        tools.set(new[BufferType.TRANSLATING], n_new, 0)
        _labeled_comp(new[BufferType.LABELS], new[BufferType.LABELED], n_new)
        tools.barrier()
        self._arena.destroy()
        self._arena = arena
        self._buffers = new
        self._n = n_new

        self._field.destroy()
        self._field = Field(self._params, n_new)
        self._log(f"removed {n_old - n_new} points ({n_new} remain)")
        self.restart()
        return n_new

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def state_export(self, path):
        arrays = {name: self._buffers[key].to_numpy()[:self._n] for name, key in _STATE.items()}
        np.savez(path, iteration=self._iteration,
                 remove_exaggeration_iter=self._remove_exaggeration_iter, **arrays)
        self._log(f"exported state to {path}")

    def state_import(self, path):
        with np.load(path) as state:
            for name, key in _STATE.items():
                arr = state[name]
                if arr.shape[0] != self._n:
                    raise ValueError(f"state holds {arr.shape[0]} points, embedding has {self._n}")
                self._buffers[key].from_numpy(arr)
            self._iteration = int(state["iteration"])
            self._remove_exaggeration_iter = int(state["remove_exaggeration_iter"])
        _labeled_comp(self._buffers[BufferType.LABELS], self._buffers[BufferType.LABELED], self._n)
        self.end_translation()
        self._tools.barrier()
        self._log(f"imported state from {path}")

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def n(self) -> int:
        return self._n

    @property
    def field(self) -> Field:
        return self._field

    def bounds(self) -> np.ndarray:
        """Last bounds read back: rows min, max, range, center."""
        return self._bounds.copy()

    def z(self) -> float:
        return float(self._buffers[BufferType.Z][None])

    def embedding(self) -> np.ndarray:
        return self._buffers[BufferType.EMBEDDING].to_numpy()[:self._n]

    def buffer(self, key: BufferType):
        return self._buffers[key]

    def buffers(self) -> MinimizationBuffers:
        b = self._buffers
        return MinimizationBuffers(
            embedding=b[BufferType.EMBEDDING],
            field=b[BufferType.FIELD],
            bounds=b[BufferType.BOUNDS],
            labels=b[BufferType.LABELS],
            labeled=b[BufferType.LABELED],
            selection=b[BufferType.SELECTION],
            fixed=b[BufferType.FIXED],
            disabled=b[BufferType.DISABLED],
            neighborhood_preservation=b[BufferType.NEIGHBORHOOD_PRESERVATION],
        )

    def destroy(self):
        self._field.destroy()
        if self._arena is not None:
            self._arena.destroy()
            self._arena = None
        self._state.destroy()

