"""
Exceptions raised by the tapegrad runtime.

Every error here is fatal for the operation (or the whole pass) that raised
it; nothing is retried internally. Each class derives from the builtin
exception a caller would naturally catch (`ValueError` for bad shapes,
`MemoryError` for allocation failures, `RuntimeError` for lifecycle misuse)
and keeps the offending values as attributes for error reporting.
"""

from __future__ import annotations

from typing import Optional, Sequence


class ShapeError(ValueError):
    """
    Raised when operand shapes are incompatible for an operation.

    Attributes
    ----------
    op : str
        Operation that rejected its inputs (e.g., "matmul", "narrow").
    detail : str
        Human-readable description naming the offending dimensions.
    """

    def __init__(self, op: str, detail: str) -> None:
        super().__init__(f"{op}: {detail}")
        self.op = op
        self.detail = detail


class DeviceAllocationError(MemoryError):
    """
    Raised when the compute backend cannot allocate a buffer.

    An allocation failure invalidates the graph that requested the buffer.
    The usual remedy is to retry the whole forward pass with a smaller batch.

    Attributes
    ----------
    shape : tuple[int, ...]
        Requested buffer shape.
    nbytes : int
        Requested size in bytes.
    device : str
        Device on which allocation was attempted.
    """

    def __init__(self, shape: Sequence[int], nbytes: int, device: str) -> None:
        super().__init__(
            f"Failed to allocate {nbytes} bytes for shape {tuple(shape)} on "
            f"'{device}'. Reduce the batch size and retry the forward pass."
        )
        self.shape = tuple(shape)
        self.nbytes = int(nbytes)
        self.device = device


class GraphInvalidatedError(RuntimeError):
    """
    Raised when a graph is used after a fatal allocation failure.
    """

    def __init__(self, cause: BaseException) -> None:
        super().__init__(
            "Compute graph is no longer usable after a device allocation "
            f"failure ({cause}). Build a new graph for the next pass."
        )
        self.cause = cause


class TapeError(RuntimeError):
    """Base class for tape recording and replay errors."""


class TapeOverflowError(TapeError):
    """
    Raised when recording would exceed the configured maximum tape length.

    Attributes
    ----------
    max_steps : int
        Configured limit that was reached.
    """

    def __init__(self, max_steps: int) -> None:
        super().__init__(
            f"Tape exceeded {max_steps} recorded steps; the model is too deep "
            "for one pass. Raise max_tape_steps or split the pass."
        )
        self.max_steps = int(max_steps)


class TapeReentrancyError(TapeError):
    """
    Raised when a backward closure tries to record onto the tape it is
    being replayed from.
    """

    def __init__(self, op: str) -> None:
        super().__init__(
            f"Cannot record '{op or '<anonymous>'}' while the tape is replaying."
        )
        self.op = op


class DisposedTensorAccessError(RuntimeError):
    """
    Raised when a tensor buffer is read after it was released.

    Attributes
    ----------
    what : str
        Which buffer was accessed ("value", "grad", "storage").
    name : Optional[str]
        Tensor name, when one was given.
    """

    def __init__(self, what: str, name: Optional[str] = None) -> None:
        label = f" of tensor '{name}'" if name else ""
        super().__init__(f"Access to released {what}{label}.")
        self.what = what
        self.name = name


class OutOfOrderDisposalError(DisposedTensorAccessError):
    """
    Raised in strict mode when a tensor is disposed while an unreplayed tape
    step still reads it.

    Attributes
    ----------
    pending : int
        Number of tape steps that still hold the tensor.
    """

    def __init__(self, name: Optional[str], pending: int) -> None:
        RuntimeError.__init__(
            self,
            f"Tensor '{name or '<unnamed>'}' disposed while {pending} tape "
            "step(s) still read it.",
        )
        self.what = "tensor"
        self.name = name
        self.pending = int(pending)


class DeviceNotSupportedError(RuntimeError):
    """
    Raised when an operation or kernel is not available on a device backend.

    Attributes
    ----------
    op : str
        The operation or kernel name that was requested.
    device : str
        String representation of the device.
    """

    def __init__(self, op: str, device: str) -> None:
        super().__init__(f"{op} is not implemented for device '{device}'.")
        self.op = op
        self.device = device


class DeviceMismatchError(RuntimeError):
    """
    Raised when an operation combines tensors that live on different devices.
    """

    def __init__(self, device_a: str, device_b: str) -> None:
        super().__init__(f"Device mismatch: '{device_a}' vs '{device_b}'.")
        self.device_a = device_a
        self.device_b = device_b
