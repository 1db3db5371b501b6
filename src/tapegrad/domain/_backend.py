"""
Compute backend contract.

The autodiff core never touches device memory or numeric kernels directly.
It consumes a backend through this structural protocol:

- `allocate` / `adopt` / `free` manage raw buffers,
- `copy` moves data between buffers of the same device,
- `kernel(name)` resolves a numeric kernel from a fixed, name-keyed library.

Buffers are array-like objects owned by the backend. The bundled CPU backend
(`tapegrad.infrastructure.backend.NumpyBackend`) hands out NumPy arrays.
"""

from __future__ import annotations

from typing import Any, Callable, Protocol, Sequence, runtime_checkable

from .device._device import Device


@runtime_checkable
class IComputeBackend(Protocol):
    """
    Structural interface of a device compute backend.

    Notes
    -----
    Implementations must make `allocate`, `adopt` and `free` safe to call from
    several threads; forward graphs may be built concurrently.
    """

    @property
    def device(self) -> Device: ...

    @property
    def live_buffers(self) -> int: ...

    @property
    def live_bytes(self) -> int: ...

    def supports(self, device: Device) -> bool: ...

    def allocate(self, shape: Sequence[int], *, zero: bool = True) -> Any: ...

    def adopt(self, buffer: Any) -> Any: ...

    def free(self, buffer: Any) -> None: ...

    def copy(self, dst: Any, src: Any) -> None: ...

    def kernel(self, name: str) -> Callable[..., Any]: ...
