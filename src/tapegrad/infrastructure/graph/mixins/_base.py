"""
Shared plumbing for `ComputeGraph` operation mixins.

Every operation in the library follows the same four steps:

1. validate input shapes and devices (`ShapeError` / `DeviceMismatchError`),
2. allocate the output through the factory and run the forward kernel,
3. when recording, push exactly one backward closure onto the tape,
4. return the output.

`GraphMixinBase` supplies the helpers for those steps, plus the graph-wide
poisoning that follows a device allocation failure: once any allocation
fails, every later operation and `backward()` raise `GraphInvalidatedError`.

Backward closures follow a common shape: skip the gradient work when the
output's gradient was never populated, apply the derivative rule through
`accumulate_grad` / `grad_target`, release temporaries, then dispose the
output.
"""

from __future__ import annotations

from abc import ABC
from typing import Callable, Optional, Sequence
import logging

import numpy as np

from ....domain._errors import (
    DeviceAllocationError,
    DeviceMismatchError,
    GraphInvalidatedError,
    ShapeError,
    TapeError,
)
from ....domain.device._device import Device
from ...tape._tape import Tape
from ...tensor._storage import BufferHandle, OwnedBuffer
from ...tensor._tensor import Tensor
from ...tensor._tensor_factory import TensorFactory

logger = logging.getLogger(__name__)


class GraphMixinBase(ABC):
    """
    State and helpers common to all operation mixins.

    Concrete graphs set these attributes in ``__init__``.
    """

    _tape: Tape
    _factory: TensorFactory
    _device: Device
    _needs_backprop: bool
    _rng: np.random.Generator
    _invalid_cause: Optional[BaseException]

    @property
    def needs_backprop(self) -> bool:
        return self._needs_backprop

    @property
    def is_invalidated(self) -> bool:
        return self._invalid_cause is not None

    # ------------------------------------------------------------------
    # Poisoning
    # ------------------------------------------------------------------
    def _check_usable(self) -> None:
        if self._invalid_cause is not None:
            raise GraphInvalidatedError(self._invalid_cause)

    def _invalidate(self, cause: BaseException) -> None:
        if self._invalid_cause is None:
            self._invalid_cause = cause
            dropped = self._tape.clear()
            logger.error(
                "graph invalidated by allocation failure (%s); dropped %d tape steps",
                cause,
                dropped,
            )

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------
    def _check_inputs(self, op: str, *tensors: Tensor) -> None:
        self._check_usable()
        for t in tensors:
            if t.device != self._device:
                raise DeviceMismatchError(str(t.device), str(self._device))

    @staticmethod
    def _require_ndim(op: str, t: Tensor, ndim: int) -> None:
        if len(t.shape) != ndim:
            raise ShapeError(op, f"expected a {ndim}-D tensor, got shape {t.shape}")

    @staticmethod
    def _require_same_shape(op: str, *tensors: Tensor) -> None:
        first = tensors[0].shape
        for t in tensors[1:]:
            if t.shape != first:
                raise ShapeError(op, f"shape mismatch {first} vs {t.shape}")

    # ------------------------------------------------------------------
    # Allocation
    # ------------------------------------------------------------------
    def _new_output(self, shape: Sequence[int], *, zero: bool = False) -> Tensor:
        try:
            return self._factory.create(tuple(shape), self._device, zero=zero)
        except DeviceAllocationError as e:
            self._invalidate(e)
            raise

    def _wrap_output(self, value: BufferHandle) -> Tensor:
        return self._factory.wrap(value, self._device)

    def _scratch(self, shape: Sequence[int]) -> OwnedBuffer:
        """
        Uninitialised temporary buffer, released by the caller.
        """
        try:
            return OwnedBuffer.allocate(self._factory.backend, shape, zero=False)
        except DeviceAllocationError as e:
            self._invalidate(e)
            raise

    def _adopt(self, array: np.ndarray) -> OwnedBuffer:
        """
        Take ownership of a kernel-produced array.
        """
        try:
            return OwnedBuffer.adopt(self._factory.backend, array)
        except DeviceAllocationError as e:
            self._invalidate(e)
            raise

    def _ensure_grad(self, t: Tensor) -> np.ndarray:
        """
        Allocate ``t``'s gradient if missing, so views taken afterwards share it.
        """
        try:
            return t.ensure_grad()
        except DeviceAllocationError as e:
            self._invalidate(e)
            raise

    def _kernel(self, name: str) -> Callable[..., object]:
        return self._factory.backend.kernel(name)

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------
    def _record(
        self,
        op: str,
        outputs: Sequence[Tensor],
        backward: Callable[[], None],
        guards: Sequence[Tensor] = (),
    ) -> None:
        """
        Push `backward` when recording. On failure the outputs are disposed
        so no partial result escapes.
        """
        if not self._needs_backprop:
            return
        try:
            self._tape.push(backward, op=op, guards=guards)
        except TapeError:
            for o in outputs:
                o.dispose()
            raise

    def _forward(self, outputs: Sequence[Tensor], fn: Callable[[], None]) -> None:
        """
        Run a forward kernel; dispose the outputs if it fails.
        """
        try:
            fn()
        except Exception:
            for o in outputs:
                o.dispose()
            raise
