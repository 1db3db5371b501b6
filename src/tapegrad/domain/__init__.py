"""
Backend-agnostic contracts: devices, errors and structural protocols.
"""

from .device import Device, DeviceType
from ._backend import IComputeBackend
from ._tensor import ITensor
from ._errors import (
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
]
