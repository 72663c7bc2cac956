import numpy as np
import pytest
import taichi as ti

from primitives import BufferTools


@pytest.fixture(scope="session", autouse=True)
def taichi_cpu():
    ti.init(arch=ti.cpu, random_seed=0)
    yield


@pytest.fixture(scope="session")
def tools(taichi_cpu):
    t = BufferTools()
    yield t
    t.destroy()


def gaussian_blobs(n, h, centers, seed=0, spread=1.0):
    """n points in h dims spread over len(centers) Gaussian blobs along axis 0."""
    rng = np.random.RandomState(seed)
    data = rng.normal(scale=spread, size=(n, h)).astype(np.float32)
    labels = np.arange(n) * len(centers) // n
    for c, offset in enumerate(centers):
        data[labels == c, 0] += offset
    return data, labels.astype(np.int32)
