import math

import numpy as np
import pytest
import taichi as ti

from config import PERPLEXITY_EPS, PERPLEXITY_ITERS, Params
from debug import InvariantViolation, assert_similarities, check_similarities
from similarities import Similarities, _similarities_comp, knn_search
from conftest import gaussian_blobs

N, H, PERPLEXITY = 300, 10, 10.0


@pytest.fixture
def similarities(tools):
    data, _ = gaussian_blobs(N, H, centers=[0.0, 12.0])
    params = Params(n=N, n_high_dims=H, perplexity=PERPLEXITY, verbose=False).validate()
    sim = Similarities(data, params, tools)
    sim.comp()
    yield sim
    sim.destroy()


def test_knn_search_puts_self_first():
    data, _ = gaussian_blobs(50, 4, centers=[0.0])
    indices, distances = knn_search(data, 6)
    assert indices.shape == (50, 6)
    np.testing.assert_array_equal(indices[:, 0], np.arange(50))
    assert (distances[:, 0] == 0).all()
    assert (np.diff(distances[:, 1:], axis=1) >= -1e-5).all()
    # squared euclidean
    j = indices[7, 1]
    assert distances[7, 1] == pytest.approx(float(((data[7] - data[j]) ** 2).sum()), rel=1e-4)


def test_perplexity_calibration_hits_target_entropy():
    n, k = 20, 31
    rng = np.random.RandomState(4)
    dist = np.sort(rng.uniform(0.5, 30.0, size=(n, k)).astype(np.float32), axis=1)
    dist[:, 0] = 0.0
    distances = ti.field(ti.f32, shape=n * k)
    distances.from_numpy(dist.reshape(-1))
    cond = ti.field(ti.f32, shape=n * k)
    perplexities = ti.field(ti.f32, shape=n)
    perplexities.fill(PERPLEXITY)
    _similarities_comp(distances, cond, perplexities, n, k, 200, 1e-4)

    p = cond.to_numpy().reshape(n, k)
    assert (p[:, 0] == 0).all()
    np.testing.assert_allclose(p.sum(axis=1), 1.0, rtol=1e-4)
    q = p[:, 1:]
    entropy = -(q * np.log2(np.where(q > 0, q, 1.0))).sum(axis=1)
    np.testing.assert_allclose(entropy, math.log2(PERPLEXITY), atol=5e-3)


def test_graph_invariants(similarities):
    result = check_similarities(similarities)
    assert result["passed"], result
    assert_similarities(similarities)


def test_layout_and_mass(similarities):
    layout, neighbors, sims = similarities.graph()
    k = similarities.k
    assert similarities.symmetric_size == layout[:, 1].sum()
    assert (layout[:, 1] >= k - 1).all()
    assert len(neighbors) == similarities.symmetric_size
    assert (sims > 0).all()
    # each conditional row sums to one, so the symmetric weights sum to n
    assert sims.sum() == pytest.approx(N, rel=1e-3)


def test_graph_matches_host_symmetrization(similarities):
    layout, neighbors, sims = similarities.graph()
    data = similarities.buffers().dataset.to_numpy().reshape(N, H)
    knn, _ = knn_search(data, similarities.k)
    expected = set()
    for i in range(N):
        for j in knn[i, 1:]:
            expected.add((i, int(j)))
            expected.add((int(j), i))
    got = set()
    for i in range(N):
        off, size = layout[i]
        for j in neighbors[off:off + size]:
            got.add((i, int(j)))
    assert got == expected


def _weight_of(layout, neighbors, sims, i, j):
    off, size = layout[i]
    idx = np.searchsorted(neighbors[off:off + size], j)
    return sims[off + idx]


def test_weigh_similarities_and_reset(similarities, tools):
    _, _, before = similarities.graph()
    similarities.weigh_similarities(2.0)
    _, _, after = similarities.graph()
    np.testing.assert_allclose(after, before * 2.0, rtol=1e-5)

    # clamped to original * max_similarity_weight (3)
    similarities.weigh_similarities(10.0)
    _, _, clamped = similarities.graph()
    np.testing.assert_allclose(clamped, before * 3.0, rtol=1e-5)
    assert check_similarities(similarities)["passed"]

    similarities.reset()
    _, _, restored = similarities.graph()
    np.testing.assert_array_equal(restored, before)


def test_weigh_similarities_selected_only(similarities):
    layout, neighbors, before = similarities.graph()
    selection = np.zeros(N, dtype=np.int32)
    selection[:N // 2] = 1
    sel = ti.field(ti.i32, shape=N)
    sel.from_numpy(selection)
    similarities.weigh_similarities(0.5, selection=sel)
    _, _, after = similarities.graph()
    for i in (0, 10, N - 1):
        off, size = layout[i]
        for s in range(size):
            j = neighbors[off + s]
            factor = 0.5 if selection[i] and selection[j] else 1.0
            assert after[off + s] == pytest.approx(before[off + s] * factor, rel=1e-5)
    assert check_similarities(similarities)["passed"]


def test_weigh_similarities_between_groups(similarities):
    layout, neighbors, before = similarities.graph()
    selection = np.zeros(N, dtype=np.int32)
    selection[:100] = 1
    selection[100:200] = 2
    sel = ti.field(ti.i32, shape=N)
    sel.from_numpy(selection)
    similarities.weigh_similarities(2.0, selection=sel, inter_only=True)
    _, _, after = similarities.graph()

    i = np.repeat(np.arange(N), layout[:, 1])
    j = neighbors
    between = (selection[i] != 0) & (selection[j] != 0) & (selection[i] != selection[j])
    # points 100-149 share a blob with group 1, so both kinds of entry occur
    assert between.any() and (~between).any()
    np.testing.assert_allclose(after[between], before[between] * 2.0, rtol=1e-5)
    np.testing.assert_array_equal(after[~between], before[~between])
    assert check_similarities(similarities)["passed"]


def test_weigh_per_attribute_partial_selection(similarities):
    layout, neighbors, before = similarities.graph()
    selection = np.zeros(N, dtype=np.int32)
    selection[::4] = 1
    sel = ti.field(ti.i32, shape=N)
    sel.from_numpy(selection)
    weights = np.ones(H, dtype=np.float32)
    weights[0] = 3.0
    similarities.set_attribute_weights(weights)
    similarities.weigh_similarities_per_attribute([0], sel)
    _, _, after = similarities.graph()

    assert check_similarities(similarities, tolerance=1e-4)["passed"]
    assert not np.allclose(after, before)
    for p in range(N):
        off, size = layout[p]
        rows = slice(off, off + size)
        touched = selection[p] != 0 or selection[neighbors[rows]].any()
        if touched:
            continue
        # neither endpoint reweighed: entries keep their value
        np.testing.assert_allclose(after[rows], before[rows], rtol=1e-5)

    # rows keep their mass and symmetrization averages reciprocal pairs
    assert after.sum() == pytest.approx(before.sum(), rel=1e-3)


def test_weigh_per_attribute_keeps_symmetry_and_mass(similarities):
    layout, neighbors, before = similarities.graph()
    similarities.set_attribute_weights(np.full(H, 2.0, dtype=np.float32))
    sel = ti.field(ti.i32, shape=N)
    sel.fill(1)
    similarities.weigh_similarities_per_attribute([0, 1], sel)
    _, _, after = similarities.graph()

    assert check_similarities(similarities, tolerance=1e-4)["passed"]
    assert after.sum() == pytest.approx(before.sum(), rel=1e-3)
    assert not np.allclose(after, before)


def test_set_attribute_weights_shape(similarities):
    with pytest.raises(ValueError):
        similarities.set_attribute_weights(np.ones(H + 1))


def test_recomp_with_new_k_and_perplexity(similarities):
    similarities.recomp(perplexity=5.0, k=16)
    assert similarities.k == 16
    layout, _, sims = similarities.graph()
    assert (layout[:, 1] >= 15).all()
    assert sims.sum() == pytest.approx(N, rel=1e-3)
    assert check_similarities(similarities)["passed"]

    with pytest.raises(ValueError):
        similarities.recomp(perplexity=20.0)
    with pytest.raises(ValueError):
        similarities.recomp(k=N + 1)


def test_recomp_selected_perplexity(similarities):
    selection = np.zeros(N, dtype=np.int32)
    selection[:N // 2] = 1
    sel = ti.field(ti.i32, shape=N)
    sel.from_numpy(selection)
    similarities.recomp(selection=sel, perplexity=5.0)

    perplexities = similarities.perplexities()
    np.testing.assert_array_equal(perplexities[selection == 1], 5.0)
    np.testing.assert_array_equal(perplexities[selection == 0], PERPLEXITY)
    assert check_similarities(similarities)["passed"]

    # rebuild the conditional rows with the per-point perplexities and symmetrize on the host
    k = similarities.k
    data = similarities.buffers().dataset.to_numpy().reshape(N, H)
    knn, dist = knn_search(data, k)
    distances = ti.field(ti.f32, shape=N * k)
    distances.from_numpy(dist.reshape(-1))
    cond = ti.field(ti.f32, shape=N * k)
    per_point = ti.field(ti.f32, shape=N)
    per_point.from_numpy(perplexities)
    _similarities_comp(distances, cond, per_point, N, k, PERPLEXITY_ITERS, PERPLEXITY_EPS)
    p = cond.to_numpy().reshape(N, k)
    expected = {}
    for i in range(N):
        for s in range(1, k):
            j = int(knn[i, s])
            expected[(i, j)] = expected.get((i, j), 0.0) + 0.5 * p[i, s]
            expected[(j, i)] = expected.get((j, i), 0.0) + 0.5 * p[i, s]

    layout, neighbors, sims = similarities.graph()
    for i in (0, 1, N // 2 - 1, N // 2, N - 1):
        off, size = layout[i]
        for s in range(size):
            j = int(neighbors[off + s])
            assert sims[off + s] == pytest.approx(expected[(i, j)], rel=1e-4)


def test_remove_points(similarities):
    data = similarities.buffers().dataset.to_numpy().reshape(N, H)
    selection = np.zeros(N, dtype=np.int32)
    selection[::3] = 1
    sel = ti.field(ti.i32, shape=N)
    sel.from_numpy(selection)

    n_new = similarities.remove_points(sel)
    assert n_new == N - len(selection[::3])
    assert similarities.n == n_new
    kept = similarities.buffers().dataset.to_numpy()[:n_new * H].reshape(n_new, H)
    np.testing.assert_array_equal(kept, data[selection == 0])
    assert check_similarities(similarities)["passed"]


def test_remove_too_many_points(similarities):
    sel = ti.field(ti.i32, shape=N)
    sel.fill(1)
    with pytest.raises(ValueError):
        similarities.remove_points(sel)


def test_assert_similarities_detects_broken_graph(similarities):
    b = similarities.buffers()
    layout, neighbors, _ = similarities.graph()
    off, _ = layout[5]
    neighbors = neighbors.copy()
    neighbors[off] = 5
    b.neighbors.from_numpy(np.concatenate(
        [neighbors, b.neighbors.to_numpy()[len(neighbors):]]).astype(np.int32))
    assert check_similarities(similarities)["self_neighbors"] == 1
    with pytest.raises(InvariantViolation):
        assert_similarities(similarities)


def test_params_validation():
    with pytest.raises(ValueError):
        Params(n=100, n_high_dims=5, n_low_dims=4).validate()
    with pytest.raises(ValueError):
        Params(n=20, n_high_dims=5, perplexity=30.0).validate()
    with pytest.raises(ValueError):
        Params(n=1000, n_high_dims=5, perplexity=30.0, k=20).validate()
    assert Params(n=1000, n_high_dims=5, perplexity=30.0).k == 91
