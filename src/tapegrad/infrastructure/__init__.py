from ._config import GraphConfig
from .backend import NumpyBackend
from .tensor import Tensor, TensorFactory
from .tape import Tape, BackwardStep
from .graph import ComputeGraph

__all__ = [
    GraphConfig.__name__,
    NumpyBackend.__name__,
    Tensor.__name__,
    TensorFactory.__name__,
    Tape.__name__,
    BackwardStep.__name__,
    ComputeGraph.__name__,
]
