import numpy as np
import pytest
import taichi as ti

from buffers import HierarchyBufferType
from config import NODE_EMPTY, NODE_LEAF, NODE_NODE
from hierarchy import FieldHierarchy, HierarchyLayout, field_resolution
from minimization import _bounds_comp


@pytest.mark.parametrize("size, n_dims, n_lvls, n_nodes", [
    (64, 2, 7, 5461),
    (32, 3, 6, 37449),
    (8, 2, 4, 85),
    (1, 2, 1, 1),
])
def test_layout_sizes(size, n_dims, n_lvls, n_nodes):
    layout = HierarchyLayout(size, n_dims)
    assert layout.n_lvls == n_lvls
    assert layout.n_nodes == n_nodes
    assert layout.leaf_offset + size ** n_dims == n_nodes


def test_field_resolution():
    assert field_resolution(10.0, 2.0, 2) == 32
    assert field_resolution(0.0, 2.0, 2) == 8
    assert field_resolution(1e5, 2.0, 2) == 1024
    assert field_resolution(1e5, 1.2, 3) == 128


def _embedding_fields(points, disabled_mask=None):
    n, d = points.shape
    embedding = ti.Vector.field(d, ti.f32, shape=n)
    embedding.from_numpy(points.astype(np.float32))
    disabled = ti.field(ti.i32, shape=n)
    if disabled_mask is not None:
        disabled.from_numpy(disabled_mask.astype(np.int32))
    translating = ti.field(ti.i32, shape=n)
    bounds = ti.Vector.field(d, ti.f32, shape=4)
    _bounds_comp(embedding, translating, disabled, n, bounds)
    return embedding, bounds, disabled


def _host(h):
    return {key: h.buffer(key).to_numpy() for key in
            (HierarchyBufferType.NODE, HierarchyBufferType.MASS, HierarchyBufferType.POSITION_SUM)}


@pytest.mark.parametrize("n_dims, size", [(2, 32), (3, 16)])
def test_mass_and_position_sums(n_dims, size):
    n = 1500
    rng = np.random.RandomState(5)
    points = rng.normal(scale=5.0, size=(n, n_dims)).astype(np.float32)
    disabled_mask = np.zeros(n, dtype=np.int32)
    disabled_mask[:100] = 1
    embedding, bounds, disabled = _embedding_fields(points, disabled_mask)

    h = FieldHierarchy(n_dims, n)
    layout = HierarchyLayout(size, n_dims)
    h.comp(True, layout, embedding, bounds, disabled)
    b = _host(h)
    mass = b[HierarchyBufferType.MASS]
    psum = b[HierarchyBufferType.POSITION_SUM]
    K = 2 ** n_dims

    assert mass[0] == n - 100
    np.testing.assert_allclose(psum[0], points[100:].sum(axis=0), rtol=1e-3, atol=1e-2)
    assert mass[layout.leaf_offset:].sum() == n - 100

    internal = np.arange(layout.leaf_offset)
    children = K * internal[:, None] + 1 + np.arange(K)[None, :]
    np.testing.assert_array_equal(mass[internal], mass[children].sum(axis=1))

    # every point, disabled or not, is binned into a leaf
    point_leaf = h.buffer(HierarchyBufferType.POINT_LEAF).to_numpy()
    assert ((point_leaf >= layout.leaf_offset) & (point_leaf < layout.n_nodes)).all()
    h.destroy()


def test_types_and_skips():
    n = 400
    rng = np.random.RandomState(6)
    # two tight clumps far apart force long single-child chains
    points = np.concatenate([rng.normal(scale=0.01, size=(n // 2, 2)),
                             rng.normal(scale=0.01, size=(n // 2, 2)) + 50.0]).astype(np.float32)
    embedding, bounds, disabled = _embedding_fields(points)
    h = FieldHierarchy(2, n)
    layout = HierarchyLayout(256, 2)
    h.comp(True, layout, embedding, bounds, disabled)
    b = _host(h)
    node = b[HierarchyBufferType.NODE]
    mass = b[HierarchyBufferType.MASS]
    types = node & 3
    skips = node >> 2

    assert (types[mass == 0] == NODE_EMPTY).all()
    assert (types[layout.leaf_offset:][mass[layout.leaf_offset:] > 0] == NODE_LEAF).all()
    assert (types[mass == 1] == NODE_LEAF).all()
    assert (types == NODE_NODE).sum() > 0
    assert (skips > 0).any()
    for i in np.nonzero(skips)[0]:
        s = int(skips[i])
        assert types[i] == NODE_NODE
        assert mass[s] == mass[i]
        x = s
        while x > i:
            x = (x - 1) // 4
        assert x == i
    h.destroy()


def test_refit_matches_rebuild():
    n = 800
    rng = np.random.RandomState(7)
    points = rng.normal(scale=4.0, size=(n, 2)).astype(np.float32)
    embedding, bounds, disabled = _embedding_fields(points)
    layout = HierarchyLayout(64, 2)

    refit = FieldHierarchy(2, n)
    refit.comp(True, layout, embedding, bounds, disabled)
    moved = points + rng.normal(scale=0.05, size=points.shape).astype(np.float32)
    embedding, bounds, disabled = _embedding_fields(moved)
    refit.comp(False, layout, embedding, bounds, disabled)
    assert refit.n_rebuilds == 1 and refit.n_refits == 1

    rebuild = FieldHierarchy(2, n)
    rebuild.comp(True, layout, embedding, bounds, disabled)

    a, b = _host(refit), _host(rebuild)
    np.testing.assert_array_equal(a[HierarchyBufferType.MASS], b[HierarchyBufferType.MASS])
    np.testing.assert_allclose(a[HierarchyBufferType.POSITION_SUM], b[HierarchyBufferType.POSITION_SUM],
                               rtol=1e-4, atol=1e-3)
    np.testing.assert_array_equal(a[HierarchyBufferType.NODE] & 3, b[HierarchyBufferType.NODE] & 3)
    refit.destroy()
    rebuild.destroy()


def test_resize_forces_rebuild():
    n = 100
    points = np.random.RandomState(8).normal(size=(n, 2)).astype(np.float32)
    embedding, bounds, disabled = _embedding_fields(points)
    h = FieldHierarchy(2, n)
    h.comp(True, HierarchyLayout(16, 2), embedding, bounds, disabled)
    h.comp(False, HierarchyLayout(32, 2), embedding, bounds, disabled)
    assert h.n_rebuilds == 2
    assert h.layout.n_nodes == HierarchyLayout(32, 2).n_nodes
    assert h.mem_size() > 0
    h.destroy()
