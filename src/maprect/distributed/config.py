"""Configuration for the map-reduce executor.

This module provides the ``MapRectConfig`` dataclass for specifying the
worker count, dispatch backend, and shard-level checks.
"""

from __future__ import annotations

import dataclasses
import os
from typing import Literal


@dataclasses.dataclass(frozen=True, slots=True, kw_only=True)
class MapRectConfig:
    """Immutable configuration for a ``MapReduceExecutor``.

    Attributes:
        num_workers: Number of workers shards are partitioned across. ``-1``
            means one worker per available JAX device.
        backend: Dispatch backend. ``"thread"`` runs one thread per worker,
            ``"sequential"`` evaluates every shard in the calling thread.
        check_nan: Treat a NaN in a shard's output as a domain error.
        pin_data: Keep each shard's constant data on its worker's device
            across repeated ``run`` calls.
    """

    num_workers: int = -1
    backend: Literal["thread", "sequential"] = "thread"
    check_nan: bool = True
    pin_data: bool = True

    def __post_init__(self) -> None:
        """Validate configuration on creation (fail-fast)."""
        if self.num_workers == 0 or self.num_workers < -1:
            raise ValueError(
                f"num_workers must be positive or -1, got {self.num_workers}"
            )
        valid_backends = {"thread", "sequential"}
        if self.backend not in valid_backends:
            raise ValueError(
                f"Invalid backend '{self.backend}'. Must be one of {valid_backends}"
            )

    @classmethod
    def from_env(cls, **overrides) -> MapRectConfig:
        """Build a config from ``MAPRECT_NUM_WORKERS`` and ``MAPRECT_BACKEND``.

        Keyword arguments take precedence over the environment.
        """
        values: dict = {}
        if "MAPRECT_NUM_WORKERS" in os.environ:
            values["num_workers"] = int(os.environ["MAPRECT_NUM_WORKERS"])
        if "MAPRECT_BACKEND" in os.environ:
            values["backend"] = os.environ["MAPRECT_BACKEND"]
        values.update(overrides)
        return cls(**values)
