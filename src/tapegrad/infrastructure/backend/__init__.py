"""
Compute backends.

Importing this package registers the CPU kernels (as a side effect of
importing `_kernels_cpu`) and exposes `NumpyBackend`.
"""

from ._kernels_cpu import CPU_KERNELS, register_kernel
from ._numpy_backend import NumpyBackend

__all__ = [NumpyBackend.__name__, "CPU_KERNELS", register_kernel.__name__]
