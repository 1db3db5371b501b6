"""
Tensor interface definitions.

`ITensor` is the structural contract shared by the tape, the graph and
callers outside the core (model builders, optimizers). It covers exactly
what those collaborators touch: placement, the value and gradient buffers,
gradient accumulation, sparse row bookkeeping, and disposal.
"""

from __future__ import annotations

from typing import Any, Iterable, Mapping, Optional, Protocol, runtime_checkable

from .device._device import Device


@runtime_checkable
class ITensor(Protocol):
    """
    Differentiable tensor interface.

    Notes
    -----
    - `value` and `grad` expose backend buffers; for the NumPy backend these
      are `numpy.ndarray` objects.
    - `grad` is None until the first gradient write.
    """

    @property
    def shape(self) -> tuple[int, ...]: ...

    @property
    def device(self) -> Device: ...

    @property
    def name(self) -> Optional[str]: ...

    @property
    def value(self) -> Any: ...

    @property
    def grad(self) -> Optional[Any]: ...

    @property
    def rows_pending(self) -> Mapping[int, int]: ...

    @property
    def is_disposed(self) -> bool: ...

    def accumulate_grad(self, incoming: Any) -> None: ...

    def mark_rows_pending(self, rows: Iterable[int]) -> None: ...

    def dispose(self) -> None: ...
