from ._storage import BufferHandle, OwnedBuffer, SharedView, BorrowedView
from ._tensor import Tensor
from ._tensor_factory import TensorFactory

__all__ = [
    Tensor.__name__,
    TensorFactory.__name__,
    BufferHandle.__name__,
    OwnedBuffer.__name__,
    SharedView.__name__,
    BorrowedView.__name__,
]
