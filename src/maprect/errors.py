"""Exception hierarchy for maprect.

Every failure of a map-reduce or ODE evaluation is raised to the caller as one
of these. Structural errors also subclass the matching builtin so callers that
only catch ``ValueError``/``TypeError`` still see them.
"""

from __future__ import annotations


class MapRectError(Exception):
    """Base class for all maprect errors."""


class ShapeMismatchError(MapRectError, ValueError):
    """Parallel input arrays have differing outer lengths."""


class RaggedRowError(MapRectError, ValueError):
    """Rows of a 2-D data array differ in length."""


class ConstantDataViolationError(MapRectError, TypeError):
    """A differentiable value was supplied where only constant data is allowed."""


class ShardDomainError(MapRectError, ArithmeticError):
    """A shard function produced NaN, i.e. left the domain of a density."""


class ShardEvaluationError(MapRectError, RuntimeError):
    """A shard function failed; the whole evaluation is aborted.

    Attributes:
        shard_index: Position of the failing shard in the job set.
    """

    def __init__(self, shard_index: int, message: str) -> None:
        super().__init__(f"Shard {shard_index} failed: {message}")
        self.shard_index = shard_index


class EvaluationCancelledError(MapRectError, RuntimeError):
    """The evaluation was cancelled before all shards completed."""


class SolverDivergenceError(MapRectError, RuntimeError):
    """The ODE integrator could not meet its tolerances within ``max_steps``."""

    def __init__(self, solver: str, reason: str) -> None:
        super().__init__(f"{solver} failed to integrate: {reason}")
        self.solver = solver
        self.reason = reason
