"""
Activation functions.

`sigmoid` and `tanh` can overwrite their input (``in_place=True``); the output
then shares the input's value storage, and the input's previous values are
gone. Both derivative rules only need the output, so backward is unaffected.
"""

from __future__ import annotations

from ...tensor._tensor import Tensor
from ._base import GraphMixinBase


class GraphMixinActivation(GraphMixinBase):
    def _unary_from_output(self, op: str, x: Tensor, in_place: bool) -> Tensor:
        self._check_inputs(op, x)

        if in_place:
            out = self._wrap_output(x.value_view(x.value))
        else:
            out = self._new_output(x.shape)
        self._forward([out], lambda: self._kernel(op)(out.value, x.value))

        grad_kernel = f"{op}_grad"

        def backward() -> None:
            if not out.has_grad:
                out.dispose()
                return
            dst, beta = x.grad_target()
            self._kernel(grad_kernel)(dst, beta, out.value, out.grad)
            out.dispose()

        self._record(op, [out], backward, (x,))
        return out

    def sigmoid(self, x: Tensor, in_place: bool = False) -> Tensor:
        """
        Logistic sigmoid. Backward: ``dx += g * out * (1 - out)``.
        """
        return self._unary_from_output("sigmoid", x, in_place)

    def tanh(self, x: Tensor, in_place: bool = False) -> Tensor:
        """
        Hyperbolic tangent. Backward: ``dx += g * (1 - out^2)``.
        """
        return self._unary_from_output("tanh", x, in_place)

    def relu(self, x: Tensor) -> Tensor:
        """
        Rectified linear unit. Backward: ``dx += g`` where ``x > 0``.
        """
        self._check_inputs("relu", x)

        out = self._new_output(x.shape)
        self._forward([out], lambda: self._kernel("relu")(out.value, x.value))

        def backward() -> None:
            if not out.has_grad:
                out.dispose()
                return
            out.release_value()
            dst, beta = x.grad_target()
            self._kernel("relu_grad")(dst, beta, x.value, out.grad)
            out.dispose()

        self._record("relu", [out], backward, (x,))
        return out

    def softmax(self, x: Tensor, record: bool = True) -> Tensor:
        """
        Softmax over the last axis.

        With ``record=False`` the result is treated as a constant (e.g. a
        probability readout at decode time) and no closure is pushed.
        """
        self._check_inputs("softmax", x)

        out = self._new_output(x.shape)
        self._forward([out], lambda: self._kernel("softmax")(out.value, x.value))

        if not record:
            return out

        def backward() -> None:
            if not out.has_grad:
                out.dispose()
                return
            dst, beta = x.grad_target()
            self._kernel("softmax_grad")(dst, beta, out.value, out.grad)
            out.dispose()

        self._record("softmax", [out], backward, (x,))
        return out
