"""
KL(P || Q) of the current embedding.

P_ij = sim_ij / n over the graph, Q_ij = t_ij / Z with Z summed exactly over
every ordered pair of enabled points. O(n^2): a query, never part of the
minimization loop.
"""

import time

import taichi as ti

from buffers import Arena
from buffers import MinimizationBufferType
from config import EPS
from primitives import ReduceOp


@ti.kernel
def _z_exact(embedding: ti.template(), disabled: ti.template(), n: ti.i32, out: ti.template()):
    for i in range(n):
        acc = 0.0
        if disabled[i] == 0:
            y = embedding[i]
            for j in range(n):
                if j != i and disabled[j] == 0:
                    diff = y - embedding[j]
                    acc += 1.0 / (1.0 + diff.dot(diff))
        out[i] = acc


@ti.kernel
def _kl_terms(embedding: ti.template(), disabled: ti.template(), layout: ti.template(),
              neighbors: ti.template(), similarities: ti.template(), n: ti.i32,
              z: ti.f32, out: ti.template()):
    inv_n = 1.0 / ti.cast(n, ti.f32)
    for i in range(n):
        acc = 0.0
        if disabled[i] == 0:
            y = embedding[i]
            offset = layout[i][0]
            for s in range(layout[i][1]):
                j = neighbors[offset + s]
                p = similarities[offset + s] * inv_n
                if disabled[j] == 0 and p > EPS:
                    diff = y - embedding[j]
                    q = 1.0 / (1.0 + diff.dot(diff)) / z
                    acc += p * ti.log(p / ti.max(q, EPS))
        out[i] = acc


class KLDivergence:
    """KL divergence query over a Similarities / Minimization pair."""

    def __init__(self, similarities, minimization, tools):
        self._similarities = similarities
        self._minimization = minimization
        self._tools = tools
        self.time = 0.0

    def comp(self) -> float:
        t0 = time.perf_counter()
        n = self._minimization.n
        embedding = self._minimization.buffer(MinimizationBufferType.EMBEDDING)
        disabled = self._minimization.buffer(MinimizationBufferType.DISABLED)
        sb = self._similarities.buffers()

        arena = Arena()
        per_point = arena.field(ti.f32, n)
        arena.finalize()
        _z_exact(embedding, disabled, n, per_point)
        z = self._tools.reduce(per_point, n, ReduceOp.SUM)
        _kl_terms(embedding, disabled, sb.layout, sb.neighbors, sb.similarities, n,
                  max(z, EPS), per_point)
        kl = self._tools.reduce(per_point, n, ReduceOp.SUM)
        arena.destroy()
        self.time = time.perf_counter() - t0
        return kl
