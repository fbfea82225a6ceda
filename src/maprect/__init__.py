"""
maprect: Sharded map-reduce evaluation of log-density contributions

A JAX-native library for splitting a log-density over rectangular data shards,
evaluating the shards in parallel, and reassembling values and gradients, with
adaptive ODE integrators for differential-equation based models.
"""

from maprect.distributed import (
    AggregatedGradient,
    build_job_set,
    GradientAggregator,
    map_rect,
    map_rect_log_density,
    map_rect_value_and_grad,
    MapRectConfig,
    MapRectResult,
    MapReduceExecutor,
    RectangularJobSet,
    ShardEvaluator,
)
from maprect.errors import (
    ConstantDataViolationError,
    EvaluationCancelledError,
    MapRectError,
    RaggedRowError,
    ShapeMismatchError,
    ShardDomainError,
    ShardEvaluationError,
    SolverDivergenceError,
)
from maprect.ode import ode_bdf, ode_rk45, ODEConfig


__version__ = "0.1.0"

__all__ = [
    "AggregatedGradient",
    "ConstantDataViolationError",
    "EvaluationCancelledError",
    "GradientAggregator",
    "MapRectConfig",
    "MapRectError",
    "MapRectResult",
    "MapReduceExecutor",
    "ODEConfig",
    "RaggedRowError",
    "RectangularJobSet",
    "ShapeMismatchError",
    "ShardDomainError",
    "ShardEvaluationError",
    "ShardEvaluator",
    "SolverDivergenceError",
    "build_job_set",
    "map_rect",
    "map_rect_log_density",
    "map_rect_value_and_grad",
    "ode_bdf",
    "ode_rk45",
]
