"""
Elementwise arithmetic operations.

All operands must share one shape; there is no broadcasting.

Backward rules
--------------
- ``add(a, b)``: ``da += g``, ``db += g``
- ``eltmul(a, b)``: ``da += g * b``, ``db += g * a``
- ``mul_scalar(x, v)``: ``dx += g * v``
- ``eltmul_mul_add(a, b, c, d) = a*b + c*d``: product rule for both pairs
- ``add_tanh(a, b) = tanh(a + b)``: ``da += g * (1 - out^2)``, same for ``b``
"""

from __future__ import annotations

from ...tensor._tensor import Tensor
from ._base import GraphMixinBase


class GraphMixinElementwise(GraphMixinBase):
    def add(self, a: Tensor, b: Tensor) -> Tensor:
        """
        Elementwise ``a + b``.

        The second operand receives the output gradient by ownership transfer,
        so the common case of a fresh input gradient costs no copy.
        """
        self._check_inputs("add", a, b)
        self._require_same_shape("add", a, b)

        out = self._new_output(a.shape)
        self._forward([out], lambda: self._kernel("add")(out.value, a.value, b.value))

        def backward() -> None:
            if not out.has_grad:
                out.dispose()
                return
            out.release_value()
            a.accumulate_grad(out.grad)
            b.accumulate_grad(out.take_grad())
            out.dispose()

        self._record("add", [out], backward, (a, b))
        return out

    def eltmul(self, a: Tensor, b: Tensor) -> Tensor:
        """
        Elementwise ``a * b``.
        """
        self._check_inputs("eltmul", a, b)
        self._require_same_shape("eltmul", a, b)

        out = self._new_output(a.shape)
        self._forward([out], lambda: self._kernel("mul")(out.value, a.value, b.value))

        def backward() -> None:
            if not out.has_grad:
                out.dispose()
                return
            out.release_value()
            g = out.grad
            k = self._kernel("add_mul")
            dst, beta = a.grad_target()
            k(dst, beta, g, b.value)
            dst, beta = b.grad_target()
            k(dst, beta, g, a.value)
            out.dispose()

        self._record("eltmul", [out], backward, (a, b))
        return out

    def mul_scalar(self, x: Tensor, v: float) -> Tensor:
        """
        ``x * v`` for a Python scalar `v`.
        """
        self._check_inputs("mul_scalar", x)
        v = float(v)

        out = self._new_output(x.shape)
        self._forward([out], lambda: self._kernel("mul_scalar")(out.value, x.value, v))

        def backward() -> None:
            if not out.has_grad:
                out.dispose()
                return
            out.release_value()
            dst, beta = x.grad_target()
            self._kernel("accumulate")(dst, beta, out.grad, v)
            out.dispose()

        self._record("mul_scalar", [out], backward, (x,))
        return out

    def eltmul_mul_add(self, a: Tensor, b: Tensor, c: Tensor, d: Tensor) -> Tensor:
        """
        Fused ``a * b + c * d``.
        """
        self._check_inputs("eltmul_mul_add", a, b, c, d)
        self._require_same_shape("eltmul_mul_add", a, b, c, d)

        out = self._new_output(a.shape)
        self._forward(
            [out],
            lambda: self._kernel("mul_mul_add")(out.value, a.value, b.value, c.value, d.value),
        )

        def backward() -> None:
            if not out.has_grad:
                out.dispose()
                return
            out.release_value()
            g = out.grad
            k = self._kernel("add_mul")
            for target, other in ((a, b), (b, a), (c, d), (d, c)):
                dst, beta = target.grad_target()
                k(dst, beta, g, other.value)
            out.dispose()

        self._record("eltmul_mul_add", [out], backward, (a, b, c, d))
        return out

    def add_tanh(self, a: Tensor, b: Tensor) -> Tensor:
        """
        Fused ``tanh(a + b)``.
        """
        self._check_inputs("add_tanh", a, b)
        self._require_same_shape("add_tanh", a, b)

        out = self._new_output(a.shape)
        self._forward([out], lambda: self._kernel("add_tanh")(out.value, a.value, b.value))

        def backward() -> None:
            if not out.has_grad:
                out.dispose()
                return
            local = self._scratch(out.shape)
            self._kernel("tanh_grad")(local.array, 0.0, out.value, out.grad)
            out.dispose()
            a.accumulate_grad(local.array)
            b.accumulate_grad(local)

        self._record("add_tanh", [out], backward, (a, b))
        return out
