from ._base import GraphMixinBase
from ._elementwise import GraphMixinElementwise
from ._activation import GraphMixinActivation
from ._matmul import GraphMixinMatmul
from ._shape import GraphMixinShape
from ._normalization import GraphMixinNormalization
from ._sparse import GraphMixinSparse

__all__ = [
    GraphMixinBase.__name__,
    GraphMixinElementwise.__name__,
    GraphMixinActivation.__name__,
    GraphMixinMatmul.__name__,
    GraphMixinShape.__name__,
    GraphMixinNormalization.__name__,
    GraphMixinSparse.__name__,
]
