"""
tapegrad: tape-based reverse-mode automatic differentiation for
sequence-to-sequence training.
"""

from .domain import (
    Device,
    DeviceType,
    IComputeBackend,
    ITensor,
    ShapeError,
    DeviceAllocationError,
    GraphInvalidatedError,
    TapeError,
    TapeOverflowError,
    TapeReentrancyError,
    DisposedTensorAccessError,
    OutOfOrderDisposalError,
    DeviceNotSupportedError,
    DeviceMismatchError,
)
from .infrastructure import (
    GraphConfig,
    NumpyBackend,
    Tensor,
    TensorFactory,
    Tape,
    BackwardStep,
    ComputeGraph,
)

__version__ = "0.1.0"

__all__ = [
    "Device",
    "DeviceType",
    "IComputeBackend",
    "ITensor",
    "ShapeError",
    "DeviceAllocationError",
    "GraphInvalidatedError",
    "TapeError",
    "TapeOverflowError",
    "TapeReentrancyError",
    "DisposedTensorAccessError",
    "OutOfOrderDisposalError",
    "DeviceNotSupportedError",
    "DeviceMismatchError",
    "GraphConfig",
    "NumpyBackend",
    "Tensor",
    "TensorFactory",
    "Tape",
    "BackwardStep",
    "ComputeGraph",
]
