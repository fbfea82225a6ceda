"""Function-style entry points for map-reduce evaluation.

``map_rect`` mirrors the familiar five-argument call: a shard function, the
shared parameters, one local parameter vector per shard, and the 2-D real and
integer data arrays. It returns the concatenated shard outputs.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

import jax
import jax.numpy as jnp

from maprect.distributed.config import MapRectConfig
from maprect.distributed.executor import MapReduceExecutor
from maprect.distributed.gradient import AggregatedGradient
from maprect.distributed.jobset import (
    build_job_set,
    build_shard_data,
    RectangularJobSet,
)
from maprect.typing import ArrayLike, ShardFunction


logger = logging.getLogger(__name__)


def map_rect(
    fn: ShardFunction,
    shared_params: ArrayLike,
    local_params_array: Sequence[ArrayLike],
    real_data_array: ArrayLike,
    int_data_array: ArrayLike,
    *,
    executor: MapReduceExecutor | None = None,
    config: MapRectConfig | None = None,
) -> jax.Array:
    """Apply ``fn`` to every shard and concatenate the outputs.

    Inside ``jax.grad``/``jax.jit`` the shards are evaluated inline in the
    calling thread and JAX differentiates through them directly.

    Args:
        fn: Shard function ``(shared, local, x_r, x_i) -> vector``.
        shared_params: Parameter vector common to all shards.
        local_params_array: One parameter vector per shard.
        real_data_array: One row of constant reals per shard.
        int_data_array: One row of constant integers per shard.
        executor: Executor to reuse. ``fn`` is ignored when given.
        config: Config for a one-off executor.

    Returns:
        The shard outputs concatenated in shard order.
    """
    job_set = build_job_set(
        shared_params, local_params_array, real_data_array, int_data_array
    )
    if executor is not None:
        return executor.run(job_set).output
    with MapReduceExecutor(fn, config) as one_off:
        return one_off.run(job_set).output


def map_rect_value_and_grad(
    fn: ShardFunction,
    shared_params: ArrayLike,
    local_params_array: Sequence[ArrayLike],
    real_data_array: ArrayLike,
    int_data_array: ArrayLike,
    *,
    executor: MapReduceExecutor | None = None,
    config: MapRectConfig | None = None,
) -> tuple[jax.Array, AggregatedGradient]:
    """Like :func:`map_rect`, also returning the gradient of the summed output.

    Returns:
        ``(output, gradient)`` where ``gradient.shared`` is the gradient of
        ``output.sum()`` with respect to ``shared_params`` and
        ``gradient.local[k]`` the one with respect to ``local_params_array[k]``.
    """
    job_set = build_job_set(
        shared_params, local_params_array, real_data_array, int_data_array
    )
    if executor is not None:
        result = executor.run(job_set, differentiate=True)
    else:
        with MapReduceExecutor(fn, config) as one_off:
            result = one_off.run(job_set, differentiate=True)
    return result.output, result.gradient


class MapRectLogDensity:
    """A log density that sums shard outputs over fixed data.

    The data is validated once and one executor is kept for the lifetime of
    the object, so every evaluation reuses the data pinned on the workers.

    Args:
        fn: Shard function ``(shared, local, x_r, x_i) -> vector``.
        real_data_array: One row of constant reals per shard.
        int_data_array: One row of constant integers per shard.
        executor: Executor to use. Created from ``fn`` and ``config`` if
            ``None``.
        config: Config for the created executor.
    """

    def __init__(
        self,
        fn: ShardFunction,
        real_data_array: ArrayLike,
        int_data_array: ArrayLike,
        *,
        executor: MapReduceExecutor | None = None,
        config: MapRectConfig | None = None,
    ) -> None:
        self.data = build_shard_data(real_data_array, int_data_array)
        self.executor = executor or MapReduceExecutor(fn, config)
        self.num_evaluations = 0

    @property
    def num_shards(self) -> int:
        return self.data.num_shards

    def job_set(
        self,
        shared_params: ArrayLike,
        local_params_array: Sequence[ArrayLike],
    ) -> RectangularJobSet:
        return RectangularJobSet.from_data(
            self.data, shared_params, local_params_array
        )

    def __call__(
        self,
        shared_params: ArrayLike,
        local_params_array: Sequence[ArrayLike],
    ) -> tuple[jax.Array, AggregatedGradient]:
        """Return ``(log_density, gradient)`` at the given parameters."""
        result = self.executor.run(
            self.job_set(shared_params, local_params_array), differentiate=True
        )
        self.num_evaluations += 1
        return jnp.sum(result.output), result.gradient

    def value(
        self,
        shared_params: ArrayLike,
        local_params_array: Sequence[ArrayLike],
    ) -> jax.Array:
        """Return the log density without derivatives."""
        result = self.executor.run(self.job_set(shared_params, local_params_array))
        self.num_evaluations += 1
        return jnp.sum(result.output)

    def close(self) -> None:
        self.executor.close()


def map_rect_log_density(
    fn: ShardFunction,
    real_data_array: ArrayLike,
    int_data_array: ArrayLike,
    *,
    executor: MapReduceExecutor | None = None,
    config: MapRectConfig | None = None,
) -> MapRectLogDensity:
    """Create a reusable summed log density over fixed shard data."""
    log_density = MapRectLogDensity(
        fn, real_data_array, int_data_array, executor=executor, config=config
    )
    logger.info(
        "Created map_rect log density over %d shards", log_density.num_shards
    )
    return log_density
