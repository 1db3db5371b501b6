"""
Matrix products built on the backend's ``addmm`` kernels.

Backward rules for ``out = alpha * A @ B``:

- ``dA += alpha * g @ B^T``
- ``dB += alpha * A^T @ g``

Gradients are written straight into the input gradients with the kernel's
``beta`` blend, so no temporaries are allocated.
"""

from __future__ import annotations

from typing import Optional

from ....domain._errors import ShapeError
from ...tensor._tensor import Tensor
from ._base import GraphMixinBase


class GraphMixinMatmul(GraphMixinBase):
    def _matmul_backward(self, a: Tensor, b: Tensor, g, alpha: float, kernel: str) -> None:
        k = self._kernel(kernel)
        t = self._kernel("transpose")
        last, prev = b.value.ndim - 1, b.value.ndim - 2

        dst, beta = a.grad_target()
        k(dst, beta, dst, alpha, g, t(b.value, prev, last))
        dst, beta = b.grad_target()
        k(dst, beta, dst, alpha, t(a.value, prev, last), g)

    def _product(
        self,
        op: str,
        a: Tensor,
        b: Tensor,
        c: Optional[Tensor],
        alpha: float,
        kernel: str,
    ) -> Tensor:
        if a.shape[-1] != b.shape[-2]:
            raise ShapeError(
                op, f"inner dimensions differ: {a.shape} @ {b.shape} ({a.shape[-1]} != {b.shape[-2]})"
            )
        out_shape = a.shape[:-1] + (b.shape[-1],)
        if c is not None and c.shape not in (out_shape, (1, out_shape[-1])):
            raise ShapeError(op, f"addend shape {c.shape} incompatible with product {out_shape}")

        out = self._new_output(out_shape)
        beta, addend = (0.0, out) if c is None else (1.0, c)
        self._forward(
            [out],
            lambda: self._kernel(kernel)(out.value, beta, addend.value, alpha, a.value, b.value),
        )

        guards = (a, b) if c is None else (a, b, c)

        def backward() -> None:
            if not out.has_grad:
                out.dispose()
                return
            out.release_value()
            g = out.grad
            self._matmul_backward(a, b, g, alpha, kernel)
            if c is not None:
                if c.shape == out_shape:
                    c.accumulate_grad(out.take_grad())
                else:
                    c.accumulate_grad(g.sum(axis=0, keepdims=True))
            out.dispose()

        self._record(op, [out], backward, guards)
        return out

    def matmul(self, a: Tensor, b: Tensor) -> Tensor:
        """
        Matrix product of ``a[n, k]`` and ``b[k, m]``.
        """
        self._check_inputs("matmul", a, b)
        self._require_ndim("matmul", a, 2)
        self._require_ndim("matmul", b, 2)
        return self._product("matmul", a, b, None, 1.0, "addmm")

    def mul_add(self, a: Tensor, b: Tensor, c: Tensor) -> Tensor:
        """
        ``a @ b + c``. `c` is either ``[n, m]`` or a ``[1, m]`` row broadcast
        over every output row (its gradient is then summed over rows).
        """
        self._check_inputs("mul_add", a, b, c)
        self._require_ndim("mul_add", a, 2)
        self._require_ndim("mul_add", b, 2)
        return self._product("mul_add", a, b, c, 1.0, "addmm")

    def batched_matmul(self, a: Tensor, b: Tensor, alpha: float = 1.0) -> Tensor:
        """
        ``alpha * a[i] @ b[i]`` for each batch index of 3-D operands
        ``a[bs, n, k]`` and ``b[bs, k, m]``.
        """
        self._check_inputs("batched_matmul", a, b)
        self._require_ndim("batched_matmul", a, 3)
        self._require_ndim("batched_matmul", b, 3)
        if a.shape[0] != b.shape[0]:
            raise ShapeError(
                "batched_matmul", f"batch sizes differ: {a.shape[0]} vs {b.shape[0]}"
            )
        return self._product("batched_matmul", a, b, None, float(alpha), "addmm_batch")
