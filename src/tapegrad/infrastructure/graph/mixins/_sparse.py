"""
Row-gather operations for embedding tables, and position tables.

`peek_row` and `unfold_row` return views that share both value and gradient
storage with their source, so gradients written into a view land directly in
the source rows. The only backward work left is disposing the views.
"""

from __future__ import annotations

from typing import List, Tuple

from ....domain._errors import ShapeError
from ...tensor._tensor import Tensor
from ._base import GraphMixinBase


class GraphMixinSparse(GraphMixinBase):
    def peek_row(self, x: Tensor, ix: int, num: int = 1) -> Tensor:
        """
        View of rows ``ix .. ix + num`` of a 2-D tensor.

        The rows are marked pending on ``x`` so an optimizer can restrict its
        update to the rows that were actually used.
        """
        op = "peek_row"
        self._check_inputs(op, x)
        self._require_ndim(op, x, 2)
        if num <= 0 or ix < 0 or ix + num > x.shape[0]:
            raise ShapeError(op, f"rows [{ix}, {ix + num}) out of range for {x.shape[0]} rows")

        return self._row_views(op, x, [(ix, num)])[0]

    def _row_views(self, op: str, x: Tensor, ranges: List[Tuple[int, int]]) -> List[Tensor]:
        """
        Row-range views of ``x`` recorded under one closure. Rows are marked
        pending only once the closure is on the tape.
        """
        if self._needs_backprop:
            self._ensure_grad(x)
        outs: List[Tensor] = []
        try:
            for start, num in ranges:
                outs.append(x.narrow(0, start, num))
        except Exception:
            for o in outs:
                o.dispose()
            raise

        def backward() -> None:
            for o in outs:
                o.dispose()

        self._record(op, outs, backward, (x,))
        x.mark_rows_pending(r for start, num in ranges for r in range(start, start + num))
        return outs

    def unfold_row(self, x: Tensor, n: int, gradient: bool = True) -> List[Tensor]:
        """
        Split the rows of ``x`` into ``n`` interleaved views.

        View ``i`` holds rows ``i, i + n, i + 2n, ...`` and has shape
        ``[rows / n, cols]``. With ``gradient=False`` the views carry no
        gradient and nothing is recorded.
        """
        op = "unfold_row"
        self._check_inputs(op, x)
        self._require_ndim(op, x, 2)
        rows, cols = x.shape
        if n <= 0 or rows % n:
            raise ShapeError(op, f"{rows} rows are not divisible by {n}")

        track = gradient and self._needs_backprop
        if track:
            self._ensure_grad(x)
            folded = x.reshape(rows // n, n, cols)
            try:
                outs = [folded.select(1, i) for i in range(n)]
            finally:
                folded.dispose()

            def backward() -> None:
                for o in outs:
                    o.dispose()

            self._record(op, outs, backward, (x,))
            return outs

        view = self._kernel("view")
        select = self._kernel("select")
        folded_value = view(x.value, (rows // n, n, cols))
        return [self._wrap_output(x.value_view(select(folded_value, 1, i))) for i in range(n)]

    def build_position_matrix(self, rows: int, cols: int) -> Tensor:
        """
        Sinusoidal position table ``[rows, cols]``: even columns hold sin,
        odd columns cos. A constant leaf; nothing is recorded.
        """
        self._check_usable()
        if rows <= 0 or cols <= 0:
            raise ShapeError("build_position_matrix", f"invalid size ({rows}, {cols})")
        out = self._new_output((rows, cols))
        self._forward([out], lambda: self._kernel("position_encoding")(out.value))
        return out
