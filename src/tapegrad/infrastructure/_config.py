"""
Graph configuration.

`GraphConfig` carries the knobs that govern one forward/backward pass. Values
can be overridden from the environment, which is how deployments switch on
strict disposal checking or pin the dropout seed without code changes:

- ``TAPEGRAD_MAX_TAPE_STEPS``: positive integer tape cap.
- ``TAPEGRAD_STRICT_DISPOSAL``: enable out-of-order disposal detection.
  ``"0"``, ``""``, ``"false"`` and ``"no"`` (any case) mean off.
- ``TAPEGRAD_SEED``: integer seed for dropout masks.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional
import os

DEFAULT_MAX_TAPE_STEPS = 1_024_000

ENV_MAX_TAPE_STEPS = "TAPEGRAD_MAX_TAPE_STEPS"
ENV_STRICT_DISPOSAL = "TAPEGRAD_STRICT_DISPOSAL"
ENV_SEED = "TAPEGRAD_SEED"

_FALSY = {"0", "", "false", "no"}


def _parse_int(name: str, raw: str) -> int:
    try:
        return int(raw.strip())
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


@dataclass(frozen=True)
class GraphConfig:
    """
    Immutable settings for a `ComputeGraph`.

    Attributes
    ----------
    max_tape_steps : int
        Soft cap on recorded backward steps per pass.
    strict_disposal : bool
        Track which tensors unreplayed steps read, and reject disposing them.
    seed : Optional[int]
        Seed for the graph's dropout generator. None draws fresh entropy.
    """

    max_tape_steps: int = DEFAULT_MAX_TAPE_STEPS
    strict_disposal: bool = False
    seed: Optional[int] = None

    def __post_init__(self) -> None:
        if self.max_tape_steps <= 0:
            raise ValueError(f"max_tape_steps must be positive, got {self.max_tape_steps}")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "GraphConfig":
        """
        Build a config from environment variables, falling back to defaults.

        Raises
        ------
        ValueError
            If a variable is set to a value that cannot be parsed.
        """
        env = os.environ if environ is None else environ

        max_steps = DEFAULT_MAX_TAPE_STEPS
        raw = env.get(ENV_MAX_TAPE_STEPS)
        if raw is not None:
            max_steps = _parse_int(ENV_MAX_TAPE_STEPS, raw)

        strict = env.get(ENV_STRICT_DISPOSAL, "0").strip().lower() not in _FALSY

        seed = None
        raw = env.get(ENV_SEED)
        if raw is not None and raw.strip():
            seed = _parse_int(ENV_SEED, raw)

        return cls(max_tape_steps=max_steps, strict_disposal=strict, seed=seed)
