"""
Parallel primitives shared by every solver component.

BufferTools is constructed once per run and passed by reference to the
components that need it. It owns the persistent scratch used by reductions
(block partials, per-point accumulators, a 0-D result) and grows that scratch
by destroying and recreating its arena.

Reduce pipeline:
1. _reduce_blocks: one thread per block of BLOCK_SIZE elements -> partials
2. repeat on the partials while more than one block remains
3. _reduce_final: serialized combine into a 0-D result field

Scan pipeline:
1. _scan_blocks: per-block scan, block totals written aside
2. _scan_block_sums: serialized exclusive scan of block totals
3. _scan_add_offsets: add block offsets back
"""

from enum import IntEnum

import taichi as ti

from buffers import Arena
from config import BLOCK_SIZE

FLT_MAX = 3.402823e38


class ReduceOp(IntEnum):
    SUM = 0
    MIN = 1
    MAX = 2
    COUNT = 3


def _n_blocks(n: int) -> int:
    return (n + BLOCK_SIZE - 1) // BLOCK_SIZE


def _next_pow2(n: int) -> int:
    p = 1
    while p < n:
        p *= 2
    return p


# ==============================================================================
# Reduction
# ==============================================================================

@ti.func
def _identity(op: ti.template()) -> ti.f32:
    v = 0.0
    if ti.static(op == ReduceOp.MIN):
        v = FLT_MAX
    if ti.static(op == ReduceOp.MAX):
        v = -FLT_MAX
    return v


@ti.func
def _combine(op: ti.template(), acc: ti.f32, v: ti.f32, count_val: ti.f32) -> ti.f32:
    r = acc
    if ti.static(op == ReduceOp.SUM):
        r = acc + v
    if ti.static(op == ReduceOp.MIN):
        r = ti.min(acc, v)
    if ti.static(op == ReduceOp.MAX):
        r = ti.max(acc, v)
    if ti.static(op == ReduceOp.COUNT):
        if v == count_val:
            r = acc + 1.0
    return r


@ti.kernel
def _reduce_blocks(src: ti.template(), n: ti.i32, dst: ti.template(), op: ti.template(),
                   selection: ti.template(), use_selection: ti.template(),
                   select_val: ti.i32, count_val: ti.f32, component: ti.template()):
    n_blocks = (n + BLOCK_SIZE - 1) // BLOCK_SIZE
    for b in range(n_blocks):
        acc = _identity(op)
        for t in range(BLOCK_SIZE):
            i = b * BLOCK_SIZE + t
            if i < n:
                keep = 1
                if ti.static(use_selection):
                    if selection[i] != select_val:
                        keep = 0
                if keep == 1:
                    v = 0.0
                    if ti.static(component >= 0):
                        v = ti.cast(src[i][component], ti.f32)
                    else:
                        v = ti.cast(src[i], ti.f32)
                    acc = _combine(op, acc, v, count_val)
        dst[b] = acc


@ti.kernel
def _reduce_final(src: ti.template(), n: ti.i32, result: ti.template(), op: ti.template()):
    acc = _identity(op)
    ti.loop_config(serialize=True)
    for i in range(n):
        acc = _combine(op, acc, src[i], 0.0)
    result[None] = acc


# ==============================================================================
# Prefix sum (int32)
# ==============================================================================

@ti.kernel
def _scan_blocks(src: ti.template(), dst: ti.template(), n: ti.i32,
                 block_sums: ti.template(), inclusive: ti.template()):
    n_blocks = (n + BLOCK_SIZE - 1) // BLOCK_SIZE
    for b in range(n_blocks):
        acc = 0
        for t in range(BLOCK_SIZE):
            i = b * BLOCK_SIZE + t
            if i < n:
                v = src[i]
                if ti.static(inclusive):
                    acc += v
                    dst[i] = acc
                else:
                    dst[i] = acc
                    acc += v
        block_sums[b] = acc


@ti.kernel
def _scan_block_sums(block_sums: ti.template(), n_blocks: ti.i32) -> ti.i32:
    total = 0
    ti.loop_config(serialize=True)
    for b in range(n_blocks):
        v = block_sums[b]
        block_sums[b] = total
        total += v
    return total


@ti.kernel
def _scan_add_offsets(dst: ti.template(), n: ti.i32, block_sums: ti.template()):
    for i in range(n):
        dst[i] += block_sums[i // BLOCK_SIZE]


# ==============================================================================
# Compaction and per-element utilities
# ==============================================================================

@ti.kernel
def _mark_kept(selection: ti.template(), flags: ti.template(), n: ti.i32, keep_selected: ti.i32):
    for i in range(n):
        selected = 0
        if selection[i] != 0:
            selected = 1
        flags[i] = 1 - selected
        if keep_selected == 1:
            flags[i] = selected


@ti.kernel
def _compact(src: ti.template(), dst: ti.template(), flags: ti.template(),
             pos: ti.template(), n: ti.i32, d: ti.i32):
    for i in range(n):
        if flags[i] != 0:
            p = pos[i]
            for c in range(d):
                dst[p * d + c] = src[i * d + c]


@ti.kernel
def _compact_rows(src: ti.template(), dst: ti.template(), flags: ti.template(),
                  pos: ti.template(), n: ti.i32):
    for i in range(n):
        if flags[i] != 0:
            dst[pos[i]] = src[i]


@ti.kernel
def _set(buf: ti.template(), n: ti.i32, value: ti.f32):
    for i in range(n):
        buf[i] = ti.cast(value, buf.dtype)


@ti.kernel
def _flip(buf: ti.template(), n: ti.i32):
    for i in range(n):
        buf[i] = 1 - buf[i]


@ti.kernel
def _difference(a: ti.template(), b: ti.template(), out: ti.template(), n: ti.i32):
    for i in range(n):
        out[i] = a[i] - b[i]


@ti.kernel
def _accumulate_per_datapoint(src: ti.template(), layout: ti.template(), out: ti.template(), n: ti.i32):
    for i in range(n):
        offset = layout[i][0]
        size = layout[i][1]
        acc = 0.0
        for s in range(size):
            acc += ti.cast(src[offset + s], ti.f32)
        out[i] = acc


@ti.kernel
def _average_per_datapoint(data: ti.template(), n: ti.i32, d: ti.i32,
                           selection: ti.template(), use_selection: ti.template(),
                           select_val: ti.i32, average: ti.template(),
                           variance: ti.template(), with_variance: ti.template()):
    for a in range(d):
        s = 0.0
        sq = 0.0
        c = 0
        for i in range(n):
            keep = 1
            if ti.static(use_selection):
                if selection[i] != select_val:
                    keep = 0
            if keep == 1:
                v = data[i * d + a]
                s += v
                sq += v * v
                c += 1
        mean = 0.0
        if c > 0:
            mean = s / c
        average[a] = mean
        if ti.static(with_variance):
            var = 0.0
            if c > 0:
                var = ti.max(sq / c - mean * mean, 0.0)
            variance[a] = var


class BufferTools:
    """Reduce / scan / compaction context for one run."""

    def __init__(self):
        self._state = Arena()
        self._result = self._state.field(ti.f32, None)
        self.dummy_i32 = self._state.field(ti.i32, 1)
        self.dummy_f32 = self._state.field(ti.f32, 1)
        self._state.finalize()
        self._arena = None
        self._capacity = 0
        self._partial_a = None
        self._partial_b = None
        self._block_sums = None
        self._per_point = None
        self._reserve(BLOCK_SIZE)

    # ------------------------------------------------------------------
    # Scratch management
    # ------------------------------------------------------------------

    def _reserve(self, n: int):
        """Make sure scratch covers n elements (destroy and recreate on growth)."""
        if n <= self._capacity:
            return
        capacity = _next_pow2(n)
        n_blocks = _n_blocks(capacity)
        arena = Arena()
        partial_a = arena.field(ti.f32, n_blocks)
        partial_b = arena.field(ti.f32, n_blocks)
        block_sums = arena.field(ti.i32, n_blocks)
        per_point = arena.field(ti.f32, capacity)
        arena.finalize()
        if self._arena is not None:
            self._arena.destroy()
        self._arena = arena
        self._capacity = capacity
        self._partial_a = partial_a
        self._partial_b = partial_b
        self._block_sums = block_sums
        self._per_point = per_point

    def barrier(self):
        ti.sync()

    def destroy(self):
        if self._arena is not None:
            self._arena.destroy()
            self._arena = None
            self._capacity = 0
        self._state.destroy()

    # ------------------------------------------------------------------
    # Primitives
    # ------------------------------------------------------------------

    def reduce(self, buf, n: int, op=ReduceOp.SUM, selection=None, select_val: int = 1,
               count_val: float = 0.0, large_buffer: bool = False, layout=None,
               component: int = -1, result=None, readback: bool = True):
        """
        Reduce the first n elements of buf with op (SUM, MIN, MAX or COUNT).

        Args:
            selection: optional i32 field; only elements with selection == select_val count
            count_val: value matched by COUNT
            component: reduce one component of a vector buffer
            large_buffer: buf is a neighbor-arena buffer; values are first summed per
                point through layout, then reduced over the n points
            result: optional 0-D f32 field to receive the value on device
            readback: return the value to the host (a synchronization point)

        Returns:
            float (int for COUNT) when readback, else None
        """
        op = int(op)
        target = result if result is not None else self._result
        self._reserve(max(n, 1))
        src = buf
        if large_buffer:
            if layout is None:
                raise ValueError("large_buffer reduction needs the graph layout")
            _accumulate_per_datapoint(buf, layout, self._per_point, n)
            src = self._per_point
        use_selection = selection is not None
        sel = selection if use_selection else self.dummy_i32
        n_blocks = _n_blocks(max(n, 1))
        a, b = self._partial_a, self._partial_b
        _reduce_blocks(src, n, a, op, sel, use_selection, select_val, float(count_val), component)
        op_next = int(ReduceOp.SUM) if op == ReduceOp.COUNT else op
        while n_blocks > BLOCK_SIZE:
            next_blocks = _n_blocks(n_blocks)
            _reduce_blocks(a, n_blocks, b, op_next, self.dummy_i32, False, 0, 0.0, -1)
            a, b = b, a
            n_blocks = next_blocks
        _reduce_final(a, n_blocks, target, op_next)
        if not readback:
            return None
        value = target[None]
        if op == ReduceOp.COUNT:
            return int(round(value))
        return float(value)

    def scan(self, buf, out, n: int, inclusive: bool = False) -> int:
        """Prefix sum of an i32 buffer into out (may alias buf). Returns the total."""
        if n <= 0:
            return 0
        self._reserve(n)
        n_blocks = _n_blocks(n)
        _scan_blocks(buf, out, n, self._block_sums, inclusive)
        total = _scan_block_sums(self._block_sums, n_blocks)
        _scan_add_offsets(out, n, self._block_sums)
        return int(total)

    def remove(self, buf, out, n: int, d: int, selection, keep_selected: bool = False) -> int:
        """
        Compact d-element records of buf into out, dropping (or keeping) the
        records whose selection is non-zero. Relative order is preserved.
        Vector fields are compacted row by row and d is ignored.

        Returns:
            Number of records written to out
        """
        arena = Arena()
        flags = arena.field(ti.i32, n)
        pos = arena.field(ti.i32, n)
        arena.finalize()
        _mark_kept(selection, flags, n, 1 if keep_selected else 0)
        n_new = self.scan(flags, pos, n)
        if isinstance(buf, ti.MatrixField):
            _compact_rows(buf, out, flags, pos, n)
        else:
            _compact(buf, out, flags, pos, n, d)
        self.barrier()
        arena.destroy()
        return n_new

    def set(self, buf, n: int, value):
        _set(buf, n, float(value))

    def flip(self, buf, n: int):
        _flip(buf, n)

    def difference(self, a, b, out, n: int):
        _difference(a, b, out, n)

    def accumulate_per_datapoint(self, buf, layout, out, n: int):
        """out[i] = sum of buf over point i's neighbor-arena range."""
        _accumulate_per_datapoint(buf, layout, out, n)

    def average_per_datapoint(self, data, n: int, d: int, average, selection=None,
                              select_val: int = 1, variance=None) -> int:
        """
        Per-attribute mean (and optionally variance) of the n x d flat dataset
        over the selected points. Returns the number of points averaged.
        """
        use_selection = selection is not None
        with_variance = variance is not None
        _average_per_datapoint(
            data, n, d,
            selection if use_selection else self.dummy_i32, use_selection, select_val,
            average, variance if with_variance else self.dummy_f32, with_variance)
        if not use_selection:
            return n
        return self.reduce(selection, n, ReduceOp.COUNT, count_val=select_val)
