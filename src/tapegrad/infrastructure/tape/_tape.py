"""
Backprop tape: an ordered log of backward closures.

Each differentiable operation pushes exactly one closure during the forward
pass. `replay_reverse` then runs them newest-first, which is dependency order
for a single sequentially recorded pass. There is no explicit graph; the
order of recording is the graph.

Strict mode
-----------
When constructed with ``strict=True`` the tape counts, per tensor, how many
unreplayed steps list it as a guard (an input the closure will read). A
tensor's `dispose()` refuses to run while that count is positive, which turns
out-of-order disposal from silent corruption into `OutOfOrderDisposalError`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Tuple
import logging
import threading

from ...domain._errors import TapeOverflowError, TapeReentrancyError
from .._config import DEFAULT_MAX_TAPE_STEPS

logger = logging.getLogger(__name__)

BackwardFn = Callable[[], None]


@dataclass(frozen=True)
class BackwardStep:
    """
    One recorded backward closure.

    Attributes
    ----------
    fn : Callable[[], None]
        Closure applying the op's derivative rule.
    op : str
        Name of the operation that recorded it.
    guards : tuple
        Tensors the closure reads (tracked only in strict mode).
    """

    fn: BackwardFn
    op: str = ""
    guards: Tuple[object, ...] = field(default=(), repr=False)


class Tape:
    """
    Thread-safe, append-only list of `BackwardStep`s.

    Parameters
    ----------
    max_steps : int, optional
        Soft cap on the number of recorded steps.
    strict : bool, optional
        Enable guard reference counting for out-of-order disposal detection.
    """

    def __init__(self, max_steps: int = DEFAULT_MAX_TAPE_STEPS, *, strict: bool = False) -> None:
        if max_steps <= 0:
            raise ValueError(f"max_steps must be positive, got {max_steps}")
        self._max_steps = int(max_steps)
        self._strict = bool(strict)
        self._steps: List[BackwardStep] = []
        self._lock = threading.Lock()
        self._replaying = False

    def __len__(self) -> int:
        with self._lock:
            return len(self._steps)

    def __repr__(self) -> str:
        return f"Tape(steps={len(self)}, max_steps={self._max_steps}, strict={self._strict})"

    @property
    def max_steps(self) -> int:
        return self._max_steps

    @property
    def strict(self) -> bool:
        return self._strict

    @property
    def is_replaying(self) -> bool:
        return self._replaying

    def op_names(self) -> List[str]:
        """
        Names of recorded steps, oldest first.
        """
        with self._lock:
            return [s.op for s in self._steps]

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------
    def _acquire(self, guards: Sequence[object]) -> None:
        for t in guards:
            t._tape_acquire()

    @staticmethod
    def _release(step: BackwardStep) -> None:
        for t in step.guards:
            t._tape_release()

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------
    def push(self, fn: BackwardFn, *, op: str = "", guards: Sequence[object] = ()) -> None:
        """
        Append a backward closure.

        Raises
        ------
        TapeReentrancyError
            If called while the tape is being replayed.
        TapeOverflowError
            If the tape already holds `max_steps` steps.
        """
        step = BackwardStep(fn, op, tuple(guards) if self._strict else ())
        with self._lock:
            if self._replaying:
                raise TapeReentrancyError(op)
            if len(self._steps) >= self._max_steps:
                logger.error("tape overflow at %d steps while recording '%s'", self._max_steps, op)
                raise TapeOverflowError(self._max_steps)
            self._acquire(step.guards)
            self._steps.append(step)

    def pop_last(self) -> Optional[BackwardStep]:
        """
        Remove the newest step without running it. Returns None if empty.
        """
        with self._lock:
            if not self._steps:
                return None
            step = self._steps.pop()
        self._release(step)
        return step

    def clear(self) -> int:
        """
        Drop every step without running it. Returns how many were dropped.
        """
        with self._lock:
            steps, self._steps = self._steps, []
        for s in steps:
            self._release(s)
        return len(steps)

    # ------------------------------------------------------------------
    # Replay
    # ------------------------------------------------------------------
    def _begin_replay(self, op: str) -> None:
        # caller holds the lock
        if self._replaying:
            raise TapeReentrancyError(op)
        self._replaying = True

    def run_last(self) -> bool:
        """
        Run and remove only the newest step.

        Returns
        -------
        bool
            False if the tape was empty.
        """
        with self._lock:
            self._begin_replay("run_last")
            step = self._steps.pop() if self._steps else None
        try:
            if step is None:
                return False
            self._release(step)
            logger.debug("running top backward step '%s'", step.op)
            step.fn()
            return True
        finally:
            self._replaying = False

    def replay_reverse(self) -> int:
        """
        Run every step newest-first, then leave the tape empty.

        If a step raises, the remaining steps are discarded and the error
        propagates; the pass is failed.

        Returns
        -------
        int
            Number of steps that ran.
        """
        with self._lock:
            self._begin_replay("replay_reverse")
            steps, self._steps = self._steps, []

        logger.debug("replaying %d backward steps", len(steps))
        ran = 0
        try:
            while steps:
                step = steps.pop()
                self._release(step)
                step.fn()
                ran += 1
        except Exception:
            logger.error(
                "backward step %d from the end failed; discarding %d remaining steps",
                ran,
                len(steps),
            )
            raise
        finally:
            for s in steps:
                self._release(s)
            self._replaying = False
        return ran
