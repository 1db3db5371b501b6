from ._graph import ComputeGraph

__all__ = [ComputeGraph.__name__]
