"""
Tensor allocation factory.

`TensorFactory` is the single place where graph operations and callers obtain
new tensors. It binds a compute backend, checks that the requested device is
served by that backend, and hides buffer-handle construction.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Any, Optional, Sequence, Union

import numpy as np

from ...domain._backend import IComputeBackend
from ...domain._errors import DeviceNotSupportedError, ShapeError
from ...domain.device._device import Device
from ..backend._numpy_backend import NumpyBackend
from ._storage import BufferHandle, OwnedBuffer
from ._tensor import Tensor

ShapeLike = Union[int, Sequence[int]]


def _as_shape(shape: ShapeLike) -> tuple[int, ...]:
    if isinstance(shape, (int, np.integer)):
        return (int(shape),)
    dims = tuple(int(d) for d in shape)
    if not dims or any(d <= 0 for d in dims):
        raise ShapeError("create", f"dimensions must be positive, got {dims}")
    return dims


class TensorFactory:
    """
    Creates tensors on the devices served by one backend.

    Parameters
    ----------
    backend : Optional[IComputeBackend], optional
        Backend owning the buffers. Defaults to a process-wide CPU
        `NumpyBackend`.
    """

    def __init__(self, backend: Optional[IComputeBackend] = None) -> None:
        self._backend = backend if backend is not None else _default_backend()

    def __repr__(self) -> str:
        return f"TensorFactory(backend={self._backend!r})"

    @staticmethod
    def default() -> "TensorFactory":
        return TensorFactory(_default_backend())

    @property
    def backend(self) -> IComputeBackend:
        return self._backend

    def _resolve_device(self, op: str, device: Optional[Device | str]) -> Device:
        dev = self._backend.device if device is None else Device.parse(device)
        if not self._backend.supports(dev):
            raise DeviceNotSupportedError(op=op, device=str(dev))
        return dev

    def create(
        self,
        shape: ShapeLike,
        device: Optional[Device | str] = None,
        *,
        name: Optional[str] = None,
        zero: bool = True,
    ) -> Tensor:
        """
        Allocate a tensor with a zero-filled value and no gradient.

        Raises
        ------
        ShapeError
            If any dimension is not positive.
        DeviceNotSupportedError
            If the backend does not serve `device`.
        DeviceAllocationError
            If the backend cannot allocate the buffer.
        """
        dims = _as_shape(shape)
        dev = self._resolve_device("create", device)
        return Tensor(dims, dev, self._backend, name=name, zero=zero)

    def from_numpy(
        self,
        array: Any,
        device: Optional[Device | str] = None,
        *,
        name: Optional[str] = None,
    ) -> Tensor:
        """
        Create a tensor holding a float32 copy of host data.
        """
        src = np.asarray(array, dtype=np.float32)
        if src.ndim == 0:
            src = src.reshape(1)
        t = self.create(src.shape, device, name=name, zero=False)
        self._backend.copy(t.value, src)
        return t

    def adopt(
        self,
        array: Any,
        device: Optional[Device | str] = None,
        *,
        name: Optional[str] = None,
    ) -> Tensor:
        """
        Wrap a freshly computed array as a tensor without copying it when the
        array is already float32 and contiguous.
        """
        dev = self._resolve_device("adopt", device)
        handle = OwnedBuffer.adopt(self._backend, array)
        return Tensor(handle.shape, dev, self._backend, value=handle, name=name)

    def wrap(
        self,
        value: BufferHandle,
        device: Optional[Device | str] = None,
        *,
        grad: Optional[BufferHandle] = None,
        name: Optional[str] = None,
    ) -> Tensor:
        """
        Build a tensor around existing handles (views, in-place outputs).
        Ownership of the handles moves to the new tensor.
        """
        dev = self._resolve_device("wrap", device)
        return Tensor(value.shape, dev, self._backend, value=value, grad=grad, name=name)


@lru_cache(maxsize=1)
def _default_backend() -> NumpyBackend:
    return NumpyBackend("cpu")
