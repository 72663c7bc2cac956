"""
SNE: one t-SNE run from a dataset to an embedding.

Usage:
    ti.init(arch=ti.gpu)
    params = Params(n=len(X), n_high_dims=X.shape[1])
    sne = SNE(X, params)
    sne.comp()
    Y = sne.embedding()
"""

import time

import numpy as np
import taichi as ti

from config import Params
from kl_divergence import KLDivergence
from minimization import Minimization
from primitives import BufferTools
from similarities import Similarities


class SNE:
    def __init__(self, data, params: Params, labels=None, tools=None):
        data = np.asarray(data, dtype=np.float32)
        if data.ndim != 2 or data.shape != (params.n, params.n_high_dims):
            raise ValueError(f"data of shape {data.shape} does not match "
                             f"n={params.n}, n_high_dims={params.n_high_dims}")
        params.validate()
        self._params = params
        self._labels = labels
        self._owns_tools = tools is None
        self._tools = tools if tools is not None else BufferTools()
        self._similarities = Similarities(data, params, self._tools)
        self._minimization = None
        self._kl = None
        self.timings = {}

    def _log(self, msg):
        if self._params.verbose:
            print(f"[SNE] {msg}")

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def comp(self):
        """Similarities, then minimization to params.iterations."""
        self.comp_similarities()
        self.comp_minimization()

    def comp_similarities(self):
        t0 = time.perf_counter()
        self._similarities.comp()
        ti.sync()
        self.timings["similarities"] = time.perf_counter() - t0
        if self._minimization is not None:
            self._minimization.destroy()
        self._minimization = Minimization(self._similarities, self._params, self._tools, self._labels)
        self._kl = KLDivergence(self._similarities, self._minimization, self._tools)

    def comp_minimization(self):
        self._require_minimization()
        t0 = time.perf_counter()
        while self._minimization.iteration < self._params.iterations:
            self.comp_minimization_step()
        ti.sync()
        self.timings["minimization"] = time.perf_counter() - t0
        self._log(f"similarities {self.timings.get('similarities', 0.0):.2f} s, "
                  f"minimization {self.timings['minimization']:.2f} s")

    def comp_minimization_step(self):
        """One iteration; rebuilds the minimization when a new dimensionality was requested."""
        self._require_minimization()
        if self._minimization.comp_iteration():
            n_dims = self._minimization.requested_dimensionality
            self._log(f"switching embedding to {n_dims}D")
            self._minimization.destroy()
            self._params.n_low_dims = n_dims
            self._params.validate()
            self._minimization = Minimization(self._similarities, self._params, self._tools, self._labels)
            self._kl = KLDivergence(self._similarities, self._minimization, self._tools)

    def kl_divergence(self) -> float:
        self._require_minimization()
        return self._kl.comp()

    def remove_points(self) -> int:
        """Remove the points selected in the minimization from both components."""
        self._require_minimization()
        keep = self._minimization.buffers().selection.to_numpy()[:self._minimization.n] == 0
        n_new = self._minimization.remove_points()
        if self._labels is not None:
            self._labels = np.asarray(self._labels)[keep]
        return n_new

    def _require_minimization(self):
        if self._minimization is None:
            raise RuntimeError("comp_similarities() must run first")

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def params(self) -> Params:
        return self._params

    @property
    def similarities(self) -> Similarities:
        return self._similarities

    @property
    def minimization(self) -> Minimization:
        return self._minimization

    @property
    def tools(self) -> BufferTools:
        return self._tools

    def embedding(self) -> np.ndarray:
        self._require_minimization()
        return self._minimization.embedding()

    def similarities_buffers(self):
        return self._similarities.buffers()

    def minimization_buffers(self):
        self._require_minimization()
        return self._minimization.buffers()

    def field_hierarchy_buffers(self):
        self._require_minimization()
        return self._minimization.field.hierarchy.buffers()

    def destroy(self):
        if self._minimization is not None:
            self._minimization.destroy()
            self._minimization = None
        self._similarities.destroy()
        if self._owns_tools:
            self._tools.destroy()
