from ._tape import BackwardStep, Tape

__all__ = [Tape.__name__, BackwardStep.__name__]
