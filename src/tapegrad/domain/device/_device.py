"""
Device descriptors for tapegrad.

A `Device` names where a tensor's buffers live ("cpu" or "cuda:<index>").
It carries no backend state: allocation and kernels belong to the compute
backend that a `TensorFactory` is bound to. Tensors, factories and graphs
compare devices by value, so two independently parsed `Device("cpu")`
objects are interchangeable.
"""

from __future__ import annotations

from enum import Enum
from typing import Union
import re


class DeviceType(Enum):
    """
    Category of a computation device, independent of its index.
    """

    CPU = "cpu"
    CUDA = "cuda"


class Device:
    """
    Normalized computation device descriptor.

    Parameters
    ----------
    device : str
        Either "cpu" or "cuda:<index>" with a non-negative integer index.

    Raises
    ------
    ValueError
        If the device string is not one of the supported forms.

    Notes
    -----
    `__slots__` keeps descriptors small; graphs copy the device onto every
    tensor they allocate.
    """

    __slots__ = ("type", "index")

    _CUDA_PATTERN = re.compile(r"^cuda:(\d+)$")

    def __init__(self, device: str):
        if device == "cpu":
            self.type = DeviceType.CPU
            self.index = None
        else:
            m = self._CUDA_PATTERN.match(device)
            if not m:
                raise ValueError(
                    f"Invalid device '{device}'. Expected 'cpu' or 'cuda:<index>'"
                )
            self.type = DeviceType.CUDA
            self.index = int(m.group(1))

    @classmethod
    def parse(cls, device: Union["Device", str]) -> "Device":
        """
        Return `device` unchanged if it is already a `Device`, otherwise parse it.

        Parameters
        ----------
        device : Device | str
            Descriptor or device string.

        Returns
        -------
        Device
            Normalized descriptor.
        """
        if isinstance(device, Device):
            return device
        if not isinstance(device, str):
            raise TypeError(f"Expected Device or str, got {type(device)!r}")
        return cls(device)

    def __str__(self) -> str:
        return "cpu" if self.type is DeviceType.CPU else f"cuda:{self.index}"

    def __repr__(self) -> str:
        return f"Device('{self}')"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Device):
            return NotImplemented
        return (self.type, self.index) == (other.type, other.index)

    def __hash__(self) -> int:
        return hash((self.type, self.index))

    def is_cpu(self) -> bool:
        return self.type is DeviceType.CPU

    def is_cuda(self) -> bool:
        return self.type is DeviceType.CUDA
