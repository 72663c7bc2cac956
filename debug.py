"""
Graph diagnostics and raw buffer dumps.
"""

import numpy as np
import taichi as ti

from buffers import Arena
from similarities import find_neighbor


class InvariantViolation(RuntimeError):
    """A similarity graph invariant does not hold."""


# ============================================================================
# VALIDATION
# ============================================================================

@ti.kernel
def check_self_neighbors(layout: ti.template(), neighbors: ti.template(), n: ti.i32) -> ti.i32:
    """
    Returns:
        Number of entries where a point lists itself
    """
    count = 0
    for i in range(n):
        for s in range(layout[i][1]):
            if neighbors[layout[i][0] + s] == i:
                count += 1
    return count


@ti.kernel
def check_sorted(layout: ti.template(), neighbors: ti.template(), n: ti.i32) -> ti.i32:
    """
    Neighbor sets must be strictly increasing (sorted, no duplicates).

    Returns:
        Number of adjacent entries out of order or repeated
    """
    count = 0
    for i in range(n):
        offset = layout[i][0]
        for s in range(1, layout[i][1]):
            if neighbors[offset + s] <= neighbors[offset + s - 1]:
                count += 1
    return count


@ti.kernel
def check_symmetry(layout: ti.template(), neighbors: ti.template(), similarities: ti.template(),
                   n: ti.i32, tolerance: ti.f32, out: ti.template()):
    """
    out[0]: entries (i, j) with no reciprocal (j, i)
    out[1]: reciprocal entries whose weights differ by more than tolerance
    """
    out[0] = 0
    out[1] = 0
    for i in range(n):
        offset = layout[i][0]
        for s in range(layout[i][1]):
            j = neighbors[offset + s]
            if j >= 0 and j < n:
                r = find_neighbor(neighbors, layout[j][0], layout[j][1], i)
                if r < 0:
                    out[0] += 1
                else:
                    w = similarities[offset + s]
                    if ti.abs(w - similarities[r]) > tolerance * ti.max(ti.abs(w), 1e-12):
                        out[1] += 1


@ti.kernel
def check_layout(layout: ti.template(), neighbors: ti.template(), n: ti.i32,
                 symmetric_size: ti.i32) -> ti.i32:
    """
    Offsets must tile the arena in point order and every neighbor must be a
    valid point index.

    Returns:
        Number of layout or range errors
    """
    count = 0
    for i in range(n):
        offset = layout[i][0]
        size = layout[i][1]
        expected = 0
        if i > 0:
            expected = layout[i - 1][0] + layout[i - 1][1]
        if offset != expected or size < 0:
            count += 1
        if i == n - 1 and offset + size != symmetric_size:
            count += 1
        for s in range(size):
            j = neighbors[offset + s]
            if j < 0 or j >= n:
                count += 1
    return count


def check_similarities(similarities, tolerance: float = 1e-5):
    """
    Run all invariant checks on a similarity graph.

    Args:
        similarities: similarities.Similarities with a computed graph
        tolerance: relative tolerance for reciprocal weight agreement

    Returns:
        dict with validation results
    """
    b = similarities.buffers()
    n = similarities.n
    layout_errors = int(check_layout(b.layout, b.neighbors, n, similarities.symmetric_size))
    self_neighbors = int(check_self_neighbors(b.layout, b.neighbors, n))
    unsorted = int(check_sorted(b.layout, b.neighbors, n))

    arena = Arena()
    counts = arena.field(ti.i32, 2)
    arena.finalize()
    missing = 0
    mismatched = 0
    if layout_errors == 0:
        # reciprocal lookups need a valid layout
        check_symmetry(b.layout, b.neighbors, b.similarities, n, tolerance, counts)
        missing, mismatched = (int(v) for v in counts.to_numpy())
    arena.destroy()

    passed = (layout_errors == 0 and self_neighbors == 0 and unsorted == 0
              and missing == 0 and mismatched == 0)
    return {
        "passed": passed,
        "layout_errors": layout_errors,
        "self_neighbors": self_neighbors,
        "unsorted_or_duplicate": unsorted,
        "missing_reciprocals": missing,
        "weight_mismatches": mismatched,
    }


def assert_similarities(similarities, tolerance: float = 1e-5):
    """Raise InvariantViolation when any graph invariant fails."""
    result = check_similarities(similarities, tolerance)
    if not result["passed"]:
        failed = {k: v for k, v in result.items() if k != "passed" and v}
        raise InvariantViolation(f"similarity graph invariants violated: {failed}")
    return result


# ============================================================================
# DEBUG / INFO
# ============================================================================

def dump_buffers(path, **fields):
    """
    Write Taichi fields (or numpy arrays) to a .npz archive.

    Usage:
        dump_buffers("graph.npz", layout=b.layout, neighbors=b.neighbors)
    """
    arrays = {name: f if isinstance(f, np.ndarray) else f.to_numpy() for name, f in fields.items()}
    np.savez(path, **arrays)
    print(f"[Debug] Dumped {', '.join(arrays)} to {path}")
    return path
