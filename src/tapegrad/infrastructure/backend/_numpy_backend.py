"""
NumPy-backed compute backend for CPU tensors.

`NumpyBackend` implements `IComputeBackend` on top of host NumPy arrays. It is
the reference backend the tests run against, and it keeps the same
bookkeeping a device allocator would:

- every buffer handed out by `allocate` or registered through `adopt` is
  tracked until `free` is called for it,
- `free` on an unknown (or already freed) buffer raises, so double frees are
  caught instead of silently ignored,
- an optional `capacity_bytes` limit turns oversubscription into
  `DeviceAllocationError`, the same failure a real device reports when it
  runs out of memory.

Kernels are looked up by name from the registry in `_kernels_cpu`.
"""

from __future__ import annotations

from typing import Callable, Dict, Mapping, Optional, Sequence
import logging
import threading

import numpy as np

from ...domain._errors import (
    DeviceAllocationError,
    DeviceNotSupportedError,
    ShapeError,
)
from ...domain.device._device import Device
from ._kernels_cpu import CPU_KERNELS

logger = logging.getLogger(__name__)


def _normalize_shape(shape: Sequence[int]) -> tuple[int, ...]:
    dims = tuple(int(d) for d in shape)
    if not dims or any(d <= 0 for d in dims):
        raise ShapeError("allocate", f"dimensions must be positive, got {dims}")
    return dims


class NumpyBackend:
    """
    CPU compute backend storing buffers as float32 NumPy arrays.

    Parameters
    ----------
    device : Device | str, optional
        Device this backend serves. Only "cpu" is accepted.
    capacity_bytes : Optional[int], optional
        Upper bound on live allocated bytes. None means unbounded.
    kernels : Optional[Mapping[str, Callable]], optional
        Kernel table override. Defaults to the registered CPU kernels.

    Raises
    ------
    DeviceNotSupportedError
        If `device` is not a CPU device.
    """

    dtype = np.dtype(np.float32)

    def __init__(
        self,
        device: Device | str = "cpu",
        *,
        capacity_bytes: Optional[int] = None,
        kernels: Optional[Mapping[str, Callable[..., object]]] = None,
    ) -> None:
        dev = Device.parse(device)
        if not dev.is_cpu():
            raise DeviceNotSupportedError(op="NumpyBackend", device=str(dev))
        if capacity_bytes is not None and capacity_bytes <= 0:
            raise ValueError(f"capacity_bytes must be positive, got {capacity_bytes}")

        self._device = dev
        self._capacity = capacity_bytes
        self._kernels: Dict[str, Callable[..., object]] = dict(
            CPU_KERNELS if kernels is None else kernels
        )

        self._lock = threading.Lock()
        # id(buffer) -> buffer; holding the array pins its id until freed
        self._live: Dict[int, np.ndarray] = {}
        self._live_bytes = 0
        self._peak_bytes = 0

    def __repr__(self) -> str:
        return (
            f"NumpyBackend(device={self._device}, live_buffers={self.live_buffers}, "
            f"live_bytes={self.live_bytes})"
        )

    @property
    def device(self) -> Device:
        return self._device

    @property
    def live_buffers(self) -> int:
        with self._lock:
            return len(self._live)

    @property
    def live_bytes(self) -> int:
        with self._lock:
            return self._live_bytes

    @property
    def peak_bytes(self) -> int:
        with self._lock:
            return self._peak_bytes

    def supports(self, device: Device) -> bool:
        return Device.parse(device) == self._device

    def _reserve(self, shape: tuple[int, ...], nbytes: int) -> None:
        if self._capacity is not None and self._live_bytes + nbytes > self._capacity:
            logger.error(
                "allocation of %d bytes for %s exceeds capacity (%d/%d live)",
                nbytes,
                shape,
                self._live_bytes,
                self._capacity,
            )
            raise DeviceAllocationError(shape, nbytes, str(self._device))

    def _register(self, buffer: np.ndarray) -> None:
        self._live[id(buffer)] = buffer
        self._live_bytes += buffer.nbytes
        self._peak_bytes = max(self._peak_bytes, self._live_bytes)

    def allocate(self, shape: Sequence[int], *, zero: bool = True) -> np.ndarray:
        """
        Allocate a float32 buffer.

        Parameters
        ----------
        shape : Sequence[int]
            Positive dimensions.
        zero : bool, optional
            Zero-fill the buffer. When False the contents are undefined.

        Returns
        -------
        np.ndarray
            Newly tracked buffer.

        Raises
        ------
        ShapeError
            If any dimension is not positive.
        DeviceAllocationError
            If the capacity limit is exceeded or the host is out of memory.
        """
        dims = _normalize_shape(shape)
        nbytes = int(np.prod(dims)) * self.dtype.itemsize
        with self._lock:
            self._reserve(dims, nbytes)
            try:
                buf = np.zeros(dims, dtype=self.dtype) if zero else np.empty(dims, dtype=self.dtype)
            except MemoryError as e:
                logger.error("host allocation of %d bytes failed: %s", nbytes, e)
                raise DeviceAllocationError(dims, nbytes, str(self._device)) from e
            self._register(buf)
        return buf

    def adopt(self, buffer: np.ndarray) -> np.ndarray:
        """
        Start tracking an array produced outside `allocate`.

        Non-float32 or non-contiguous input is copied into a fresh float32
        array first; the returned array is the tracked one. Adopting a buffer
        that is already tracked is a no-op.
        """
        arr = np.ascontiguousarray(buffer, dtype=self.dtype)
        if arr.ndim == 0:
            raise ShapeError("adopt", "cannot adopt a 0-d array")
        with self._lock:
            if id(arr) in self._live and self._live[id(arr)] is arr:
                return arr
            self._reserve(arr.shape, arr.nbytes)
            self._register(arr)
        return arr

    def free(self, buffer: np.ndarray) -> None:
        """
        Stop tracking `buffer`.

        Raises
        ------
        RuntimeError
            If `buffer` is not a live allocation of this backend.
        """
        with self._lock:
            live = self._live.get(id(buffer))
            if live is None or live is not buffer:
                raise RuntimeError(
                    "free() of a buffer that is not live on this backend "
                    "(double free or foreign buffer)"
                )
            del self._live[id(buffer)]
            self._live_bytes -= buffer.nbytes

    def copy(self, dst: np.ndarray, src: np.ndarray) -> None:
        if tuple(dst.shape) != tuple(np.shape(src)):
            raise ShapeError("copy", f"destination {dst.shape} vs source {np.shape(src)}")
        np.copyto(dst, src)

    def kernel(self, name: str) -> Callable[..., object]:
        """
        Resolve a numeric kernel by name.

        Raises
        ------
        DeviceNotSupportedError
            If no kernel with that name exists on this backend.
        """
        try:
            return self._kernels[name]
        except KeyError:
            raise DeviceNotSupportedError(op=name, device=str(self._device)) from None
