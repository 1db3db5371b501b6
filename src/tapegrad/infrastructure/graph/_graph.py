"""
Per-pass computation graph.

A `ComputeGraph` is created for one forward pass, used to build outputs with
its operation methods, and discarded after `backward()`. It owns the tape
that records backward closures, the tensor factory outputs are allocated
from, and the random generator dropout masks are drawn from.

Typical use
-----------
    with ComputeGraph(seed=0) as g:
        h = g.tanh(g.mul_add(x, w, b))
        loss = g.eltmul(h, target)
        g.backward(loss)

With ``needs_backprop=False`` nothing is recorded; outputs must then be
disposed by the caller (or are reclaimed when garbage collected).
"""

from __future__ import annotations

from typing import Any, List, Optional
import logging

import numpy as np

from ...domain._errors import DeviceAllocationError, ShapeError
from ...domain.device._device import Device
from .._config import GraphConfig
from ..tape._tape import Tape
from ..tensor._tensor import Tensor
from ..tensor._tensor_factory import ShapeLike, TensorFactory
from .mixins import (
    GraphMixinActivation,
    GraphMixinElementwise,
    GraphMixinMatmul,
    GraphMixinNormalization,
    GraphMixinShape,
    GraphMixinSparse,
)

logger = logging.getLogger(__name__)


class ComputeGraph(
    GraphMixinElementwise,
    GraphMixinActivation,
    GraphMixinMatmul,
    GraphMixinShape,
    GraphMixinNormalization,
    GraphMixinSparse,
):
    """
    Records differentiable operations of one forward pass.

    Parameters
    ----------
    factory : Optional[TensorFactory], optional
        Allocation factory. Defaults to the process-wide CPU factory.
    device : Device | str, optional
        Device every output is placed on. Inputs must live there too.
    needs_backprop : bool, optional
        Record backward closures. False for inference.
    config : Optional[GraphConfig], optional
        Tape cap, strict disposal and seed. Defaults to
        `GraphConfig.from_env()`.
    seed : Optional[int], optional
        Dropout seed; overrides ``config.seed``.
    """

    def __init__(
        self,
        factory: Optional[TensorFactory] = None,
        *,
        device: Device | str = "cpu",
        needs_backprop: bool = True,
        config: Optional[GraphConfig] = None,
        seed: Optional[int] = None,
    ) -> None:
        self._config = config if config is not None else GraphConfig.from_env()
        self._factory = factory if factory is not None else TensorFactory.default()
        self._device = Device.parse(device)
        self._needs_backprop = bool(needs_backprop)
        self._tape = Tape(self._config.max_tape_steps, strict=self._config.strict_disposal)
        self._rng = np.random.default_rng(seed if seed is not None else self._config.seed)
        self._invalid_cause = None

    def __repr__(self) -> str:
        return (
            f"ComputeGraph(device={self._device}, needs_backprop={self._needs_backprop}, "
            f"steps={len(self._tape)}, invalidated={self.is_invalidated})"
        )

    def __enter__(self) -> "ComputeGraph":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def device(self) -> Device:
        return self._device

    @property
    def config(self) -> GraphConfig:
        return self._config

    @property
    def factory(self) -> TensorFactory:
        return self._factory

    @property
    def tape(self) -> Tape:
        return self._tape

    # ------------------------------------------------------------------
    # Leaves
    # ------------------------------------------------------------------
    def create_tensor(self, shape: ShapeLike, *, name: Optional[str] = None) -> Tensor:
        """
        Zero-filled leaf tensor on the graph's device.
        """
        self._check_usable()
        try:
            return self._factory.create(shape, self._device, name=name)
        except DeviceAllocationError as e:
            self._invalidate(e)
            raise

    def tensor_from_numpy(self, array: Any, *, name: Optional[str] = None) -> Tensor:
        """
        Leaf tensor holding a float32 copy of `array`.
        """
        self._check_usable()
        try:
            return self._factory.from_numpy(array, self._device, name=name)
        except DeviceAllocationError as e:
            self._invalidate(e)
            raise

    # ------------------------------------------------------------------
    # Backward
    # ------------------------------------------------------------------
    def backward(self, output: Optional[Tensor] = None, grad_out: Any = None) -> int:
        """
        Replay every recorded closure newest-first, then clear the tape.

        Parameters
        ----------
        output : Optional[Tensor], optional
            Tensor to seed. When omitted the caller has already populated the
            gradients of the outputs it cares about.
        grad_out : array-like, optional
            Seed gradient for `output`; defaults to ones.

        Returns
        -------
        int
            Number of closures that ran.

        Raises
        ------
        GraphInvalidatedError
            If an allocation failed earlier in this pass.
        DeviceAllocationError
            If an allocation fails during replay; the graph is invalidated.
        """
        self._check_usable()
        if output is not None:
            if grad_out is None:
                seed = np.ones(output.shape, dtype=np.float32)
            else:
                seed = np.asarray(grad_out, dtype=np.float32)
                if seed.shape != output.shape:
                    raise ShapeError(
                        "backward", f"seed shape {seed.shape} != output shape {output.shape}"
                    )
        try:
            if output is not None:
                output.accumulate_grad(seed)
            return self._tape.replay_reverse()
        except DeviceAllocationError as e:
            self._invalidate(e)
            raise

    def run_top_backward(self) -> bool:
        """
        Run only the newest recorded closure. Returns False if none exist.
        """
        self._check_usable()
        try:
            return self._tape.run_last()
        except DeviceAllocationError as e:
            self._invalidate(e)
            raise

    def discard_last(self) -> bool:
        """
        Drop the newest recorded closure without running it.
        """
        return self._tape.pop_last() is not None

    def recorded_ops(self) -> List[str]:
        return self._tape.op_names()

    def close(self) -> None:
        """
        Discard any closures that were never replayed.
        """
        dropped = self._tape.clear()
        if dropped:
            logger.warning("discarding %d unreplayed backward steps", dropped)
