"""
Concatenation, splitting and layout operations.

Copying ops (`concat_*`, `split_columns`, `repeat_rows`, `permute`,
`permute_batch`, `as_contiguous`) allocate a fresh contiguous output.
`transpose` and `view` return outputs whose value is a view of the input's
value storage; their gradients are still separate buffers, routed back to
the input by the backward closure.
"""

from __future__ import annotations

from typing import List, Sequence

import numpy as np

from ....domain._errors import ShapeError
from ...tensor._tensor import Tensor, resolve_shape
from ._base import GraphMixinBase


class GraphMixinShape(GraphMixinBase):
    # ------------------------------------------------------------------
    # Concatenation
    # ------------------------------------------------------------------
    def _concat(self, op: str, tensors: Sequence[Tensor], axis: int) -> Tensor:
        if not tensors:
            raise ShapeError(op, "at least one tensor is required")
        self._check_inputs(op, *tensors)
        other = 1 - axis
        for t in tensors:
            self._require_ndim(op, t, 2)
            if t.shape[other] != tensors[0].shape[other]:
                raise ShapeError(
                    op,
                    f"dim {other} mismatch: {tensors[0].shape} vs {t.shape}",
                )

        shape = list(tensors[0].shape)
        shape[axis] = sum(t.shape[axis] for t in tensors)
        out = self._new_output(shape)
        self._forward(
            [out],
            lambda: self._kernel("concat")(out.value, axis, [t.value for t in tensors]),
        )

        def backward() -> None:
            if not out.has_grad:
                out.dispose()
                return
            out.release_value()
            g = out.grad
            narrow = self._kernel("narrow")
            offset = 0
            for t in tensors:
                size = t.shape[axis]
                t.accumulate_grad(narrow(g, axis, offset, size))
                offset += size
            out.dispose()

        self._record(op, [out], backward, tuple(tensors))
        return out

    def concat_columns(self, *tensors: Tensor) -> Tensor:
        """
        Concatenate 2-D tensors with equal row counts side by side.
        """
        return self._concat("concat_columns", tensors, 1)

    def concat_rows(self, tensors: Sequence[Tensor]) -> Tensor:
        """
        Stack 2-D tensors with equal column counts vertically.
        """
        return self._concat("concat_rows", list(tensors), 0)

    def concat_row_column(self, left: Sequence[Tensor], right: Sequence[Tensor]) -> Tensor:
        """
        Pair up ``left[i]`` and ``right[i]`` column-wise and stack the pairs
        row-wise.

        Every ``left[i]`` is ``[r, c1]`` and every ``right[i]`` is ``[r, c2]``;
        the output is ``[r * len(left), c1 + c2]`` with block ``i`` holding
        rows ``i*r .. (i+1)*r``.
        """
        op = "concat_row_column"
        if not left or len(left) != len(right):
            raise ShapeError(
                op, f"need equally many left and right tensors, got {len(left)} and {len(right)}"
            )
        self._check_inputs(op, *left, *right)
        for t in (*left, *right):
            self._require_ndim(op, t, 2)
        r, c1 = left[0].shape
        c2 = right[0].shape[1]
        for t in left:
            if t.shape != (r, c1):
                raise ShapeError(op, f"left block shape {t.shape} != {(r, c1)}")
        for t in right:
            if t.shape != (r, c2):
                raise ShapeError(op, f"right block shape {t.shape} != {(r, c2)}")

        out = self._new_output((r * len(left), c1 + c2))
        narrow = self._kernel("narrow")
        copy = self._kernel("copy")

        def forward() -> None:
            for i, (a, b) in enumerate(zip(left, right)):
                block = narrow(out.value, 0, i * r, r)
                copy(narrow(block, 1, 0, c1), a.value)
                copy(narrow(block, 1, c1, c2), b.value)

        self._forward([out], forward)

        def backward() -> None:
            if not out.has_grad:
                out.dispose()
                return
            out.release_value()
            g = out.grad
            for i, (a, b) in enumerate(zip(left, right)):
                block = narrow(g, 0, i * r, r)
                a.accumulate_grad(narrow(block, 1, 0, c1))
                b.accumulate_grad(narrow(block, 1, c1, c2))
            out.dispose()

        self._record(op, [out], backward, (*left, *right))
        return out

    # ------------------------------------------------------------------
    # Splitting and repetition
    # ------------------------------------------------------------------
    def split_columns(self, x: Tensor, *sizes: int) -> List[Tensor]:
        """
        Split a 2-D tensor into contiguous column blocks of the given widths.

        One closure covers every block: each block's gradient is added into
        the matching column range of ``x``'s gradient.
        """
        op = "split_columns"
        self._check_inputs(op, x)
        self._require_ndim(op, x, 2)
        if not sizes or any(s <= 0 for s in sizes) or sum(sizes) != x.shape[1]:
            raise ShapeError(op, f"sizes {sizes} do not partition {x.shape[1]} columns")

        narrow = self._kernel("narrow")
        copy = self._kernel("copy")
        outs: List[Tensor] = []
        offset = 0
        try:
            for s in sizes:
                o = self._new_output((x.shape[0], s))
                outs.append(o)
                copy(o.value, narrow(x.value, 1, offset, s))
                offset += s
        except Exception:
            for o in outs:
                o.dispose()
            raise

        def backward() -> None:
            if any(o.has_grad for o in outs):
                xg = x.ensure_grad()
                acc = self._kernel("accumulate")
                offset = 0
                for o, s in zip(outs, sizes):
                    if o.has_grad:
                        acc(narrow(xg, 1, offset, s), 1.0, o.grad)
                    offset += s
            for o in outs:
                o.dispose()

        self._record(op, outs, backward, (x,))
        return outs

    def split_rows(self, x: Tensor, *sizes: int) -> List[Tensor]:
        """
        Split a 2-D tensor into row blocks. Each block is a `peek_row`-style
        view, so gradients flow into ``x`` through shared storage. All blocks
        are recorded under one closure, so either every block is on the tape
        or none is.
        """
        self._check_inputs("split_rows", x)
        self._require_ndim("split_rows", x, 2)
        if not sizes or any(s <= 0 for s in sizes) or sum(sizes) > x.shape[0]:
            raise ShapeError("split_rows", f"sizes {sizes} exceed {x.shape[0]} rows")
        ranges = []
        offset = 0
        for s in sizes:
            ranges.append((offset, s))
            offset += s
        return self._row_views("split_rows", x, ranges)

    def repeat_rows(self, x: Tensor, n: int) -> Tensor:
        """
        Tile a 2-D tensor ``n`` times vertically: ``[rows * n, cols]``.
        Backward sums the ``n`` gradient blocks into ``x``.
        """
        self._check_inputs("repeat_rows", x)
        self._require_ndim("repeat_rows", x, 2)
        if n <= 0:
            raise ShapeError("repeat_rows", f"repeat count must be positive, got {n}")
        rows, cols = x.shape

        out = self._new_output((rows * n, cols))
        self._forward([out], lambda: self._kernel("concat")(out.value, 0, [x.value] * n))

        def backward() -> None:
            if not out.has_grad:
                out.dispose()
                return
            out.release_value()
            g = self._kernel("view")(out.grad, (n, rows, cols))
            x.accumulate_grad(g.sum(axis=0))
            out.dispose()

        self._record("repeat_rows", [out], backward, (x,))
        return out

    # ------------------------------------------------------------------
    # Layout
    # ------------------------------------------------------------------
    def transpose(self, x: Tensor, dim1: int = 0, dim2: int = 1) -> Tensor:
        """
        Swap two dimensions. The output value is a strided view of ``x``.
        """
        self._check_inputs("transpose", x)
        nd = len(x.shape)
        if not (0 <= dim1 < nd and 0 <= dim2 < nd):
            raise ShapeError("transpose", f"dims ({dim1}, {dim2}) out of range for {x.shape}")
        t = self._kernel("transpose")
        out = self._wrap_output(x.value_view(t(x.value, dim1, dim2)))

        def backward() -> None:
            if not out.has_grad:
                out.dispose()
                return
            out.release_value()
            x.accumulate_grad(t(out.grad, dim1, dim2))
            out.dispose()

        self._record("transpose", [out], backward, (x,))
        return out

    def permute(self, x: Tensor, *dims: int) -> Tensor:
        """
        Reorder dimensions into a fresh contiguous tensor.
        """
        self._check_inputs("permute", x)
        if sorted(dims) != list(range(len(x.shape))):
            raise ShapeError("permute", f"dims {dims} are not a permutation of {len(x.shape)} axes")
        p = self._kernel("permute")
        out = self._new_output(tuple(x.shape[d] for d in dims))
        self._forward([out], lambda: self._kernel("copy")(out.value, p(x.value, dims)))
        inverse = tuple(int(i) for i in np.argsort(dims))

        def backward() -> None:
            if not out.has_grad:
                out.dispose()
                return
            out.release_value()
            x.accumulate_grad(p(out.grad, inverse))
            out.dispose()

        self._record("permute", [out], backward, (x,))
        return out

    def permute_batch(self, x: Tensor, batch_size: int) -> Tensor:
        """
        Regroup rows from step-major to batch-major order.

        ``x`` holds ``steps * batch_size`` rows where row ``s * batch_size + b``
        belongs to step ``s`` of batch item ``b``; the output holds the same
        row at ``b * steps + s``.
        """
        op = "permute_batch"
        self._check_inputs(op, x)
        self._require_ndim(op, x, 2)
        rows, cols = x.shape
        if batch_size <= 0 or rows % batch_size:
            raise ShapeError(op, f"{rows} rows are not divisible by batch size {batch_size}")
        steps = rows // batch_size

        view = self._kernel("view")
        p = self._kernel("permute")
        copy = self._kernel("copy")

        out = self._new_output(x.shape)
        self._forward(
            [out],
            lambda: copy(
                view(out.value, (batch_size, steps, cols)),
                p(view(x.value, (steps, batch_size, cols)), (1, 0, 2)),
            ),
        )

        def backward() -> None:
            if not out.has_grad:
                out.dispose()
                return
            out.release_value()
            local = self._scratch(x.shape)
            copy(
                view(local.array, (steps, batch_size, cols)),
                p(view(out.grad, (batch_size, steps, cols)), (1, 0, 2)),
            )
            out.dispose()
            x.accumulate_grad(local)

        self._record(op, [out], backward, (x,))
        return out

    def view(self, x: Tensor, *shape: int) -> Tensor:
        """
        Zero-copy reshape; one dimension may be -1.

        Raises
        ------
        ShapeError
            If the element count differs or ``x`` is laid out such that the
            reshape would need a copy (use `as_contiguous` first).
        """
        self._check_inputs("view", x)
        new_shape = resolve_shape("view", shape, x.numel())
        v = self._kernel("view")
        out = self._wrap_output(x.value_view(v(x.value, new_shape)))

        def backward() -> None:
            if not out.has_grad:
                out.dispose()
                return
            out.release_value()
            x.accumulate_grad(v(out.grad, x.shape))
            out.dispose()

        self._record("view", [out], backward, (x,))
        return out

    def as_contiguous(self, x: Tensor) -> Tensor:
        """
        Contiguous copy of ``x`` (typically of a strided view).
        """
        self._check_inputs("as_contiguous", x)
        out = self._new_output(x.shape)
        self._forward([out], lambda: self._kernel("copy")(out.value, x.value))

        def backward() -> None:
            if not out.has_grad:
                out.dispose()
                return
            out.release_value()
            x.accumulate_grad(out.take_grad())
            out.dispose()

        self._record("as_contiguous", [out], backward, (x,))
        return out
