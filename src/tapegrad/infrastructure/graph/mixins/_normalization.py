"""
Layer normalization and dropout.
"""

from __future__ import annotations

from ....domain._errors import ShapeError
from ...tensor._tensor import Tensor
from ._base import GraphMixinBase


class GraphMixinNormalization(GraphMixinBase):
    def layer_norm(
        self, x: Tensor, alpha: Tensor, beta: Tensor, eps: float = 1e-9
    ) -> Tensor:
        """
        Normalize each row of ``x`` over its last axis, then scale by `alpha`
        and shift by `beta`.

        Parameters
        ----------
        x : Tensor
            Input of shape ``[..., cols]``.
        alpha, beta : Tensor
            Gain and bias of shape ``[cols]`` or ``[1, cols]``.
        eps : float, optional
            Variance floor.

        Notes
        -----
        Backward recomputes the row statistics from ``x`` and uses the
        closed-form gradient; nothing from the forward pass is cached.
        """
        op = "layer_norm"
        self._check_inputs(op, x, alpha, beta)
        cols = x.shape[-1]
        for name, p in (("alpha", alpha), ("beta", beta)):
            if p.shape not in ((cols,), (1, cols)):
                raise ShapeError(op, f"{name} shape {p.shape} incompatible with {cols} columns")
        eps = float(eps)

        out = self._new_output(x.shape)
        self._forward(
            [out],
            lambda: self._kernel(op)(
                out.value, x.value, alpha.value.reshape(-1), beta.value.reshape(-1), eps
            ),
        )

        def backward() -> None:
            if not out.has_grad:
                out.dispose()
                return
            out.release_value()
            dx, dalpha, dbeta = self._kernel("layer_norm_grad")(out.grad, x.value, alpha.value, eps)
            out.dispose()
            x.accumulate_grad(self._adopt(dx))
            alpha.accumulate_grad(self._adopt(dalpha))
            beta.accumulate_grad(self._adopt(dbeta.reshape(beta.shape)))

        self._record(op, [out], backward, (x, alpha, beta))
        return out

    def dropout(self, x: Tensor, drop_prob: float) -> Tensor:
        """
        Zero each element with probability `drop_prob`.

        The mask is Bernoulli(1 - drop_prob) and is not rescaled, so the
        expected activation shrinks by ``1 - drop_prob``. Masks come from the
        graph's generator, so a fixed seed reproduces them exactly. The same
        mask is reused in backward: ``dx += g * mask``.
        """
        self._check_inputs("dropout", x)
        if not 0.0 <= drop_prob < 1.0:
            raise ValueError(f"drop_prob must be in [0, 1), got {drop_prob}")

        mask = self._scratch(x.shape)
        self._kernel("bernoulli_mask")(mask.array, 1.0 - float(drop_prob), self._rng)
        try:
            out = self._new_output(x.shape)
            self._forward([out], lambda: self._kernel("mul")(out.value, x.value, mask.array))
        except Exception:
            mask.release()
            raise

        if not self._needs_backprop:
            mask.release()
            return out

        def backward() -> None:
            try:
                if not out.has_grad:
                    return
                out.release_value()
                dst, beta = x.grad_target()
                self._kernel("add_mul")(dst, beta, out.grad, mask.array)
            finally:
                mask.release()
                out.dispose()

        try:
            self._record("dropout", [out], backward, (x,))
        except Exception:
            mask.release()
            raise
        return out
