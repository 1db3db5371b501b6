"""
Concrete differentiable tensor.

A `Tensor` pairs a value buffer with an optional, lazily allocated gradient
buffer, both held through `BufferHandle`s so that ownership (exclusive vs.
shared view vs. borrowed view) is explicit. It also carries the per-row
pending-update counters used by embedding tables.

Gradient accumulation
---------------------
`accumulate_grad` is the single entry point backward closures use to hand a
gradient contribution to an input:

- if the tensor has no gradient yet and the contribution arrives as an
  `OwnedBuffer`, the buffer is adopted as-is (no zero-fill, no add);
- if the tensor has no gradient yet and the contribution is borrowed data
  (a plain array, or a view), it is copied into a fresh buffer;
- otherwise the contribution is added in place and its handle released.

Kernels that can write their contribution straight into the gradient use
`grad_target()`, which returns the destination plus the `beta` blend factor
(0.0 for a fresh buffer, 1.0 to accumulate).

Views
-----
`narrow`, `select`, `permute` and `reshape` always share the value storage.
They share the gradient only if the source already has one when the view is
taken; otherwise the view gets its own gradient later and nothing written
into it reaches the source. Call `ensure_grad()` on the source first when
gradients must flow back through the view.

Lifetime
--------
`dispose()` releases both handles and is idempotent. Reading `value` or
`grad` afterwards raises `DisposedTensorAccessError`. When the owning tape
runs in strict mode, disposing a tensor that an unreplayed step still reads
raises `OutOfOrderDisposalError` instead.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, Iterable, Optional, Sequence, Tuple, Union
import threading

import numpy as np

from ...domain._backend import IComputeBackend
from ...domain._errors import (
    DisposedTensorAccessError,
    OutOfOrderDisposalError,
    ShapeError,
)
from ...domain._tensor import ITensor
from ...domain.device._device import Device
from ._storage import BorrowedView, BufferHandle, OwnedBuffer, SharedView

GradientLike = Union[np.ndarray, BufferHandle]


def resolve_shape(op: str, shape: Sequence[int], numel: int) -> tuple[int, ...]:
    """
    Resolve a target shape for `numel` elements; one entry may be -1.

    Raises
    ------
    ShapeError
        If more than one -1 is given, the -1 cannot be inferred, a dimension
        is not positive, or the element count differs.
    """
    dims = [int(s) for s in shape]
    if dims.count(-1) > 1:
        raise ShapeError(op, f"at most one -1 allowed, got {tuple(dims)}")
    if -1 in dims:
        known = 1
        for s in dims:
            if s != -1:
                known *= s
        if known <= 0 or numel % known:
            raise ShapeError(op, f"cannot infer -1 in {tuple(dims)} for {numel} elements")
        dims[dims.index(-1)] = numel // known
    if not dims or any(s <= 0 for s in dims):
        raise ShapeError(op, f"dimensions must be positive, got {tuple(dims)}")
    total = 1
    for s in dims:
        total *= s
    if total != numel:
        raise ShapeError(op, f"cannot view {numel} elements as {tuple(dims)}")
    return tuple(dims)


class Tensor(ITensor):
    """
    Differentiable tensor with reference-counted value and gradient buffers.

    Parameters
    ----------
    shape : tuple[int, ...]
        Tensor shape; every dimension must be positive.
    device : Device | str
        Device placement.
    backend : IComputeBackend
        Backend that owns the buffers and provides kernels.
    value : Optional[BufferHandle], optional
        Existing value handle (views, in-place outputs). When omitted a new
        buffer is allocated.
    grad : Optional[BufferHandle], optional
        Existing gradient handle (views sharing a gradient).
    name : Optional[str], optional
        Label used in error messages.
    zero : bool, optional
        Zero-fill a newly allocated value buffer. Ops that overwrite every
        element pass False.

    Notes
    -----
    Tensors are normally created by `TensorFactory` or by graph operations,
    not constructed directly.
    """

    def __init__(
        self,
        shape: Sequence[int],
        device: Device | str,
        backend: IComputeBackend,
        *,
        value: Optional[BufferHandle] = None,
        grad: Optional[BufferHandle] = None,
        name: Optional[str] = None,
        zero: bool = True,
    ) -> None:
        self._shape = tuple(int(d) for d in shape)
        self._device = Device.parse(device)
        self._backend = backend
        self._name = name

        if value is None:
            value = OwnedBuffer.allocate(backend, self._shape, zero=zero)
        if value.shape != self._shape:
            raise ShapeError(
                "Tensor", f"value buffer shape {value.shape} != tensor shape {self._shape}"
            )
        if grad is not None and grad.shape != self._shape:
            raise ShapeError(
                "Tensor", f"grad buffer shape {grad.shape} != tensor shape {self._shape}"
            )

        self._value: Optional[BufferHandle] = value
        self._grad: Optional[BufferHandle] = grad

        self._lock = threading.Lock()
        self._rows_lock = threading.Lock()
        self._rows_pending: Dict[int, int] = {}

        self._disposed = False
        self._tape_refs = 0

    def __repr__(self) -> str:
        if self._disposed:
            state = "disposed"
        else:
            state = f"view={self.is_view}, grad={'yes' if self._grad is not None else 'no'}"
        label = f"name='{self._name}', " if self._name else ""
        return f"Tensor({label}shape={self._shape}, device={self._device}, {state})"

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------
    @property
    def shape(self) -> tuple[int, ...]:
        return self._shape

    @property
    def device(self) -> Device:
        return self._device

    @property
    def backend(self) -> IComputeBackend:
        return self._backend

    @property
    def name(self) -> Optional[str]:
        return self._name

    @property
    def ndim(self) -> int:
        return len(self._shape)

    @property
    def rows(self) -> int:
        return self._shape[0]

    @property
    def columns(self) -> int:
        return self._shape[-1]

    def numel(self) -> int:
        n = 1
        for d in self._shape:
            n *= d
        return n

    @property
    def is_view(self) -> bool:
        return isinstance(self._value, (SharedView, BorrowedView))

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    @property
    def tape_refs(self) -> int:
        """
        Number of unreplayed strict-mode tape steps that read this tensor.
        """
        return self._tape_refs

    # ------------------------------------------------------------------
    # Buffers
    # ------------------------------------------------------------------
    def _value_handle(self) -> BufferHandle:
        if self._disposed or self._value is None:
            raise DisposedTensorAccessError("value", self._name)
        return self._value

    @property
    def value(self) -> np.ndarray:
        """
        Value buffer.

        Raises
        ------
        DisposedTensorAccessError
            If the tensor was disposed, its value was released, or it is a
            borrowed view whose storage was freed.
        """
        try:
            return self._value_handle().array
        except DisposedTensorAccessError:
            raise DisposedTensorAccessError("value", self._name) from None

    @property
    def grad(self) -> Optional[np.ndarray]:
        """
        Gradient buffer, or None if nothing has been accumulated yet.
        """
        if self._disposed:
            raise DisposedTensorAccessError("grad", self._name)
        if self._grad is None:
            return None
        try:
            return self._grad.array
        except DisposedTensorAccessError:
            raise DisposedTensorAccessError("grad", self._name) from None

    @property
    def has_grad(self) -> bool:
        return not self._disposed and self._grad is not None

    def to_numpy(self) -> np.ndarray:
        return np.array(self.value, dtype=np.float32, copy=True)

    def grad_to_numpy(self) -> Optional[np.ndarray]:
        g = self.grad
        return None if g is None else np.array(g, dtype=np.float32, copy=True)

    def copy_from_numpy(self, arr: Any) -> None:
        """
        Overwrite the value buffer with host data (cast to float32).

        Raises
        ------
        ShapeError
            If `arr` does not have this tensor's shape.
        """
        src = np.asarray(arr, dtype=np.float32)
        if tuple(src.shape) != self._shape:
            raise ShapeError(
                "copy_from_numpy", f"expected shape {self._shape}, got {tuple(src.shape)}"
            )
        self._backend.copy(self.value, src)

    def release_value(self) -> None:
        """
        Release the value buffer early while keeping the gradient.

        Backward closures call this once the forward value is no longer
        needed, so its memory can be reused before the closure finishes.
        """
        with self._lock:
            handle, self._value = self._value, None
        if handle is not None:
            handle.release()

    # ------------------------------------------------------------------
    # Gradients
    # ------------------------------------------------------------------
    def ensure_grad(self) -> np.ndarray:
        """
        Return the gradient buffer, allocating a zero-filled one if needed.

        Safe to call from several threads; only one buffer is allocated.
        """
        if self._disposed:
            raise DisposedTensorAccessError("grad", self._name)
        with self._lock:
            if self._grad is None:
                self._grad = OwnedBuffer.allocate(self._backend, self._shape, zero=True)
            return self._grad.array

    def grad_target(self) -> Tuple[np.ndarray, float]:
        """
        Destination for a kernel that writes ``dst = beta * dst + contribution``.

        Returns
        -------
        (np.ndarray, float)
            A fresh uninitialised buffer with beta 0.0 if no gradient exists
            yet (it becomes this tensor's gradient), or the existing gradient
            with beta 1.0.
        """
        if self._disposed:
            raise DisposedTensorAccessError("grad", self._name)
        with self._lock:
            if self._grad is None:
                self._grad = OwnedBuffer.allocate(self._backend, self._shape, zero=False)
                return self._grad.array, 0.0
            return self._grad.array, 1.0

    def take_grad(self) -> Optional[BufferHandle]:
        """
        Detach and return the gradient handle, leaving this tensor without one.

        Used to transfer an output's gradient to an input without copying.
        """
        with self._lock:
            handle, self._grad = self._grad, None
        return handle

    def accumulate_grad(self, incoming: GradientLike) -> None:
        """
        Add a gradient contribution.

        Parameters
        ----------
        incoming : np.ndarray | BufferHandle
            Borrowed data (arrays, views) or a handle whose ownership moves to
            this call. Handles are adopted when possible, otherwise released
            after the add.

        Raises
        ------
        ShapeError
            If the contribution's shape differs from this tensor's shape.
        DisposedTensorAccessError
            If this tensor was disposed.
        """
        if self._disposed:
            if isinstance(incoming, BufferHandle):
                incoming.release()
            raise DisposedTensorAccessError("grad", self._name)

        if isinstance(incoming, BufferHandle):
            if incoming.shape != self._shape:
                incoming.release()
                raise ShapeError(
                    "accumulate_grad",
                    f"gradient shape {incoming.shape} != tensor shape {self._shape}",
                )
            with self._lock:
                if self._grad is None and isinstance(incoming, OwnedBuffer):
                    self._grad = incoming
                    return
            try:
                dst, beta = self.grad_target()
                self._backend.kernel("accumulate")(dst, beta, incoming.array)
            finally:
                incoming.release()
            return

        src_shape = tuple(np.shape(incoming))
        if src_shape != self._shape:
            raise ShapeError(
                "accumulate_grad",
                f"gradient shape {src_shape} != tensor shape {self._shape}",
            )
        dst, beta = self.grad_target()
        self._backend.kernel("accumulate")(dst, beta, incoming)

    def zero_grad(self) -> None:
        """
        Reset an allocated gradient to zeros in place (shared views included).
        """
        g = self.grad
        if g is not None:
            self._backend.kernel("fill")(g, 0.0)

    # ------------------------------------------------------------------
    # Sparse row bookkeeping
    # ------------------------------------------------------------------
    @property
    def rows_pending(self) -> Dict[int, int]:
        """
        Snapshot of row index -> number of pending updates.
        """
        with self._rows_lock:
            return dict(self._rows_pending)

    def mark_rows_pending(self, rows: Iterable[int]) -> None:
        """
        Increment the pending-update counter of each row in `rows`.

        Raises
        ------
        ShapeError
            If a row index is outside ``[0, self.rows)``.
        """
        idx = [int(r) for r in rows]
        for r in idx:
            if not 0 <= r < self._shape[0]:
                raise ShapeError(
                    "mark_rows_pending", f"row {r} out of range for {self._shape[0]} rows"
                )
        with self._rows_lock:
            for r in idx:
                self._rows_pending[r] = self._rows_pending.get(r, 0) + 1

    def clear_rows_pending(self) -> None:
        with self._rows_lock:
            self._rows_pending.clear()

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------
    def _make_view(
        self,
        op: str,
        shape: Sequence[int],
        window: Callable[[np.ndarray], np.ndarray],
        owning: bool,
    ) -> "Tensor":
        value_handle = self._value_handle()
        value_view = value_handle.view(window(value_handle.array), owning=owning)
        grad_view = None
        if self._grad is not None:
            grad_view = self._grad.view(window(self._grad.array), owning=owning)
        return Tensor(
            shape,
            self._device,
            self._backend,
            value=value_view,
            grad=grad_view,
            name=f"{self._name}.{op}" if self._name else None,
        )

    def value_view(self, array: np.ndarray, *, owning: bool = True) -> BufferHandle:
        """
        Handle for `array`, a window computed from `self.value`, sharing this
        tensor's value storage. The gradient is not shared.
        """
        return self._value_handle().view(array, owning=owning)

    def _check_dim(self, op: str, dim: int) -> int:
        nd = len(self._shape)
        d = dim + nd if dim < 0 else dim
        if not 0 <= d < nd:
            raise ShapeError(op, f"dim {dim} out of range for shape {self._shape}")
        return d

    def narrow(self, dim: int, start: int, length: int, *, owning: bool = True) -> "Tensor":
        """
        View of ``length`` slices starting at ``start`` along ``dim``.

        The gradient is shared only if this tensor already has one; call
        `ensure_grad()` first when gradients must flow back through the view.

        Raises
        ------
        ShapeError
            If the requested range is empty or falls outside the dimension.
        """
        d = self._check_dim("narrow", dim)
        if length <= 0 or start < 0 or start + length > self._shape[d]:
            raise ShapeError(
                "narrow",
                f"range [{start}, {start + length}) invalid for dim {d} of size {self._shape[d]}",
            )
        shape = self._shape[:d] + (length,) + self._shape[d + 1 :]
        k = self._backend.kernel("narrow")
        return self._make_view("narrow", shape, lambda a: k(a, d, start, length), owning)

    def select(self, dim: int, index: int, *, owning: bool = True) -> "Tensor":
        """
        View with dimension ``dim`` removed at position ``index``.
        """
        d = self._check_dim("select", dim)
        if len(self._shape) < 2:
            raise ShapeError("select", f"cannot select from 1-D shape {self._shape}")
        if not 0 <= index < self._shape[d]:
            raise ShapeError(
                "select", f"index {index} out of range for dim {d} of size {self._shape[d]}"
            )
        shape = self._shape[:d] + self._shape[d + 1 :]
        k = self._backend.kernel("select")
        return self._make_view("select", shape, lambda a: k(a, d, index), owning)

    def permute(self, *dims: int, owning: bool = True) -> "Tensor":
        """
        Strided view with dimensions reordered as ``dims``.
        """
        if sorted(dims) != list(range(len(self._shape))):
            raise ShapeError(
                "permute", f"dims {dims} are not a permutation of {len(self._shape)} axes"
            )
        shape = tuple(self._shape[i] for i in dims)
        k = self._backend.kernel("permute")
        return self._make_view("permute", shape, lambda a: k(a, dims), owning)

    def reshape(self, *shape: int, owning: bool = True) -> "Tensor":
        """
        Zero-copy reshape. One dimension may be -1 and is inferred.

        Raises
        ------
        ShapeError
            If the element count differs or the current layout cannot be
            reshaped without a copy.
        """
        new_shape = resolve_shape("reshape", shape, self.numel())
        k = self._backend.kernel("view")
        return self._make_view("reshape", new_shape, lambda a: k(a, new_shape), owning)

    # ------------------------------------------------------------------
    # Tape bookkeeping and disposal
    # ------------------------------------------------------------------
    def _tape_acquire(self) -> None:
        with self._lock:
            self._tape_refs += 1

    def _tape_release(self) -> None:
        with self._lock:
            if self._tape_refs > 0:
                self._tape_refs -= 1

    def dispose(self) -> None:
        """
        Release value and gradient handles. Calling it again is a no-op.

        Raises
        ------
        OutOfOrderDisposalError
            If a strict-mode tape still holds unreplayed steps reading this
            tensor.
        """
        with self._lock:
            if self._disposed:
                return
            if self._tape_refs > 0:
                raise OutOfOrderDisposalError(self._name, self._tape_refs)
            self._disposed = True
            handles = (self._value, self._grad)
            self._value = None
            self._grad = None
        for h in handles:
            if h is not None:
                h.release()
