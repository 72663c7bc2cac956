import numpy as np
import pytest
import taichi as ti

from primitives import ReduceOp


def _field(values, dtype=ti.f32):
    f = ti.field(dtype, shape=len(values))
    f.from_numpy(values)
    return f


@pytest.mark.parametrize("n", [1, 255, 256, 257, 100000])
def test_reduce_sum_min_max(tools, n):
    values = ((np.arange(n) % 97) - 40).astype(np.float32) * 0.5
    buf = _field(values)
    assert tools.reduce(buf, n, ReduceOp.SUM) == pytest.approx(float(values.sum()), rel=1e-4, abs=1e-3)
    assert tools.reduce(buf, n, ReduceOp.MIN) == pytest.approx(float(values.min()))
    assert tools.reduce(buf, n, ReduceOp.MAX) == pytest.approx(float(values.max()))


@pytest.mark.parametrize("n", [1, 257, 100000])
def test_reduce_count(tools, n):
    values = (np.arange(n) % 3).astype(np.int32)
    buf = _field(values, ti.i32)
    assert tools.reduce(buf, n, ReduceOp.COUNT, count_val=2) == int((values == 2).sum())


def test_reduce_with_selection(tools):
    n = 1000
    values = np.arange(n, dtype=np.float32)
    selection = (np.arange(n) % 4 == 0).astype(np.int32)
    buf = _field(values)
    sel = _field(selection, ti.i32)
    expected = float(values[selection == 1].sum())
    assert tools.reduce(buf, n, ReduceOp.SUM, selection=sel) == pytest.approx(expected, rel=1e-5)
    expected = float(values[selection == 0].sum())
    assert tools.reduce(buf, n, ReduceOp.SUM, selection=sel, select_val=0) == pytest.approx(expected, rel=1e-5)


def test_reduce_vector_component(tools):
    n = 600
    values = np.random.RandomState(1).uniform(size=(n, 3)).astype(np.float32)
    buf = ti.Vector.field(3, ti.f32, shape=n)
    buf.from_numpy(values)
    assert tools.reduce(buf, n, ReduceOp.SUM, component=0) == pytest.approx(float(values[:, 0].sum()), rel=1e-4)
    assert tools.reduce(buf, n, ReduceOp.MAX, component=2) == pytest.approx(float(values[:, 2].max()))


def test_reduce_into_result_field(tools):
    values = np.ones(300, dtype=np.float32)
    result = ti.field(ti.f32, shape=())
    assert tools.reduce(_field(values), 300, result=result, readback=False) is None
    assert result[None] == pytest.approx(300.0)


def test_reduce_large_buffer(tools):
    sizes = np.array([3, 0, 5, 2], dtype=np.int32)
    offsets = np.concatenate([[0], np.cumsum(sizes)[:-1]]).astype(np.int32)
    layout = ti.Vector.field(2, ti.i32, shape=4)
    layout.from_numpy(np.stack([offsets, sizes], axis=1))
    arena_values = np.arange(sizes.sum(), dtype=np.float32)
    total = tools.reduce(_field(arena_values), 4, ReduceOp.SUM, large_buffer=True, layout=layout)
    assert total == pytest.approx(float(arena_values.sum()))

    out = ti.field(ti.f32, shape=4)
    tools.accumulate_per_datapoint(_field(arena_values), layout, out, 4)
    expected = [arena_values[o:o + s].sum() for o, s in zip(offsets, sizes)]
    np.testing.assert_allclose(out.to_numpy(), expected)


def test_reduce_large_buffer_needs_layout(tools):
    with pytest.raises(ValueError):
        tools.reduce(_field(np.ones(4, dtype=np.float32)), 4, large_buffer=True)


@pytest.mark.parametrize("n", [1, 256, 1000, 70000])
def test_scan(tools, n):
    values = (np.arange(n) % 5).astype(np.int32)
    buf = _field(values, ti.i32)
    out = ti.field(ti.i32, shape=n)

    total = tools.scan(buf, out, n)
    assert total == int(values.sum())
    np.testing.assert_array_equal(out.to_numpy(), np.cumsum(values) - values)

    total = tools.scan(buf, out, n, inclusive=True)
    assert total == int(values.sum())
    np.testing.assert_array_equal(out.to_numpy(), np.cumsum(values))


def test_scan_all_zeros(tools):
    n = 513
    out = ti.field(ti.i32, shape=n)
    assert tools.scan(_field(np.zeros(n, dtype=np.int32), ti.i32), out, n) == 0
    assert not out.to_numpy().any()


def test_remove_preserves_order(tools):
    n, d = 700, 3
    records = np.arange(n * d, dtype=np.float32)
    selection = (np.arange(n) % 3 == 1).astype(np.int32)
    out = ti.field(ti.f32, shape=n * d)
    n_new = tools.remove(_field(records), out, n, d, _field(selection, ti.i32))

    kept = records.reshape(n, d)[selection == 0]
    assert n_new == len(kept)
    np.testing.assert_array_equal(out.to_numpy()[:n_new * d], kept.reshape(-1))


def test_remove_keep_selected_vector_field(tools):
    n = 50
    values = np.random.RandomState(2).normal(size=(n, 2)).astype(np.float32)
    src = ti.Vector.field(2, ti.f32, shape=n)
    src.from_numpy(values)
    dst = ti.Vector.field(2, ti.f32, shape=n)
    selection = np.zeros(n, dtype=np.int32)
    selection[[3, 10, 49]] = 2
    n_new = tools.remove(src, dst, n, 2, _field(selection, ti.i32), keep_selected=True)
    assert n_new == 3
    np.testing.assert_array_equal(dst.to_numpy()[:3], values[[3, 10, 49]])


def test_set_flip_difference(tools):
    n = 100
    flags = ti.field(ti.i32, shape=n)
    tools.set(flags, n, 1)
    tools.flip(flags, n)
    assert not flags.to_numpy().any()

    a = _field(np.arange(n, dtype=np.float32))
    b = _field(np.full(n, 3.0, dtype=np.float32))
    out = ti.field(ti.f32, shape=n)
    tools.difference(a, b, out, n)
    np.testing.assert_allclose(out.to_numpy(), np.arange(n) - 3.0)


def test_average_per_datapoint(tools):
    n, d = 400, 4
    data = np.random.RandomState(3).normal(loc=2.0, size=(n, d)).astype(np.float32)
    selection = (np.arange(n) < 150).astype(np.int32)
    average = ti.field(ti.f32, shape=d)
    variance = ti.field(ti.f32, shape=d)

    count = tools.average_per_datapoint(_field(data.reshape(-1)), n, d, average,
                                        selection=_field(selection, ti.i32), variance=variance)
    assert count == 150
    np.testing.assert_allclose(average.to_numpy(), data[:150].mean(axis=0), rtol=1e-4, atol=1e-5)
    np.testing.assert_allclose(variance.to_numpy(), data[:150].var(axis=0), rtol=1e-3, atol=1e-4)

    assert tools.average_per_datapoint(_field(data.reshape(-1)), n, d, average) == n
    np.testing.assert_allclose(average.to_numpy(), data.mean(axis=0), rtol=1e-4, atol=1e-5)
