"""Sharded map-reduce evaluation for maprect.

Components:
    - :class:`MapRectConfig`: Immutable executor configuration.
    - :func:`build_job_set`: Validate parallel arrays into a job set.
    - :class:`ShardEvaluator`: Fixed-signature shard function wrapper.
    - :class:`MapReduceExecutor`: Parallel dispatch and ordered assembly.
    - :class:`GradientAggregator`: Shared/local gradient combination.
    - :class:`WorkerDataCache`: Constant data pinned per worker.
    - :func:`map_rect`: Five-argument entry point.
"""

from maprect.distributed.api import (
    map_rect,
    map_rect_log_density,
    map_rect_value_and_grad,
    MapRectLogDensity,
)
from maprect.distributed.config import MapRectConfig
from maprect.distributed.evaluator import ShardEvaluator, ShardResult
from maprect.distributed.executor import MapRectResult, MapReduceExecutor
from maprect.distributed.gradient import AggregatedGradient, GradientAggregator
from maprect.distributed.jobset import (
    build_job_set,
    build_shard_data,
    RectangularJobSet,
    ShardData,
    ShardDescriptor,
)
from maprect.distributed.placement import WorkerDataCache


__all__ = [
    "AggregatedGradient",
    "GradientAggregator",
    "MapRectConfig",
    "MapRectLogDensity",
    "MapRectResult",
    "MapReduceExecutor",
    "RectangularJobSet",
    "ShardData",
    "ShardDescriptor",
    "ShardEvaluator",
    "ShardResult",
    "WorkerDataCache",
    "build_job_set",
    "build_shard_data",
    "map_rect",
    "map_rect_log_density",
    "map_rect_value_and_grad",
]
