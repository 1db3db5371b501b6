"""
Reference-counted buffer storage and ownership-tracked handles.

A `_Storage` wraps one backend allocation. Tensors never hold a `_Storage`
directly; they hold a `BufferHandle`, and the handle's concrete type states
its ownership:

- `OwnedBuffer`: the handle created together with the allocation (or for an
  adopted array). It holds the first reference.
- `SharedView`: a narrowed/permuted/reshaped window onto another handle's
  storage that holds its own reference. Storage stays alive as long as any
  owned handle or shared view is unreleased.
- `BorrowedView`: a window that holds no reference. It becomes unreadable
  the moment the storage is freed by its owners.

Releasing a handle is idempotent. When the last reference goes away the
backend's `free` runs exactly once. A `weakref.finalize` safety net frees
storage that was dropped without being released (e.g., inference outputs the
caller never disposed).

Thread safety
-------------
Reference count updates are guarded by a per-storage lock; views may be
created from several forward threads at once.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional, Sequence
import threading
import weakref

from typing_extensions import Self

from ...domain._backend import IComputeBackend
from ...domain._errors import DisposedTensorAccessError


def _free_buffer(backend: IComputeBackend, buffer: Any) -> None:
    backend.free(buffer)


@dataclass(eq=False)
class _Storage:
    """
    One backend allocation shared by every handle that views it.

    Notes
    -----
    - `_refcnt` starts at 1, owned by the `OwnedBuffer` that created it.
    - When `_refcnt` reaches zero the finalizer runs immediately, `buffer`
      is cleared, and the storage is dead for good.
    """

    backend: IComputeBackend
    buffer: Any

    _refcnt: int = 1
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    _finalizer: Optional[weakref.finalize] = field(default=None, repr=False)

    def __post_init__(self) -> None:
        # The finalizer must not capture `self`, or the storage never dies.
        self._finalizer = weakref.finalize(self, _free_buffer, self.backend, self.buffer)
        self._finalizer.atexit = False

    @property
    def alive(self) -> bool:
        return self._refcnt > 0

    @property
    def refcount(self) -> int:
        return self._refcnt

    def incref(self) -> None:
        with self._lock:
            if self._refcnt <= 0:
                raise DisposedTensorAccessError("storage")
            self._refcnt += 1

    def decref(self) -> bool:
        """
        Drop one reference.

        Returns
        -------
        bool
            True if this call freed the underlying buffer.
        """
        with self._lock:
            if self._refcnt <= 0:
                return False
            self._refcnt -= 1
            if self._refcnt > 0:
                return False
            if self._finalizer is not None and self._finalizer.alive:
                self._finalizer()
            self.buffer = None
            return True


class BufferHandle:
    """
    A tensor's reference to (part of) a storage buffer.

    Subclasses fix the ownership semantics; this base provides access and
    release. `array` is the exact window the tensor sees, which may be a
    strided view of the storage buffer.
    """

    owns_reference = True

    __slots__ = ("_storage", "_array", "_released")

    def __init__(self, storage: _Storage, array: Any) -> None:
        self._storage = storage
        self._array = array
        self._released = False

    def __repr__(self) -> str:
        state = "released" if self._released else f"refcnt={self._storage.refcount}"
        return f"{type(self).__name__}(shape={tuple(self._array.shape)}, {state})"

    @property
    def storage(self) -> _Storage:
        return self._storage

    @property
    def shape(self) -> tuple[int, ...]:
        return tuple(self._array.shape)

    @property
    def released(self) -> bool:
        return self._released or not self._storage.alive

    @property
    def array(self) -> Any:
        if self._released or not self._storage.alive:
            raise DisposedTensorAccessError("buffer")
        return self._array

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        if self.owns_reference:
            self._storage.decref()

    def view(self, array: Any, *, owning: bool = True) -> "BufferHandle":
        """
        Create a handle for `array`, a view computed from `self.array`.

        Parameters
        ----------
        array : Any
            Window onto this handle's storage.
        owning : bool, optional
            If True, the new handle keeps the storage alive (`SharedView`);
            otherwise it is a `BorrowedView`.
        """
        if self.released:
            raise DisposedTensorAccessError("buffer")
        if owning:
            return SharedView(self._storage, array)
        return BorrowedView(self._storage, array)


class OwnedBuffer(BufferHandle):
    """
    Handle created together with its storage.
    """

    __slots__ = ()

    @classmethod
    def allocate(
        cls, backend: IComputeBackend, shape: Sequence[int], *, zero: bool = True
    ) -> Self:
        buf = backend.allocate(shape, zero=zero)
        return cls(_Storage(backend, buf), buf)

    @classmethod
    def adopt(cls, backend: IComputeBackend, array: Any) -> Self:
        """
        Take ownership of an array produced outside the allocator (e.g., a
        kernel's freshly computed result) without copying it when possible.
        """
        buf = backend.adopt(array)
        return cls(_Storage(backend, buf), buf)


class SharedView(BufferHandle):
    """
    Owning view: adds a reference to the parent storage.
    """

    __slots__ = ()

    def __init__(self, storage: _Storage, array: Any) -> None:
        storage.incref()
        super().__init__(storage, array)


class BorrowedView(BufferHandle):
    """
    Non-owning view: readable only while the storage's owners keep it alive.
    """

    owns_reference = False

    __slots__ = ()
