"""Map-reduce execution over rectangular job sets.

``MapReduceExecutor`` partitions shards across workers, evaluates them in
parallel, and assembles the outputs in shard order. When differentiation is
requested it also pulls the output cotangent back through every shard and
hands the per-shard blocks to the ``GradientAggregator``.

The call is all-or-nothing: the first failing shard aborts it and no partial
output is returned.
"""

from __future__ import annotations

import concurrent.futures
import dataclasses
import logging
import threading
from collections.abc import Callable
from typing import Any

import jax
import jax.numpy as jnp
import numpy as np

from maprect.distributed.config import MapRectConfig
from maprect.distributed.evaluator import ShardEvaluator, ShardResult
from maprect.distributed.gradient import AggregatedGradient, GradientAggregator
from maprect.distributed.jobset import RectangularJobSet
from maprect.distributed.placement import (
    partition_shards,
    resolve_workers,
    Worker,
    WorkerDataCache,
)
from maprect.errors import EvaluationCancelledError, ShardEvaluationError
from maprect.typing import any_traced, ShardFunction


logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class MapRectResult:
    """Result of one ``MapReduceExecutor.run`` call.

    Attributes:
        output: Shard outputs concatenated in shard order.
        output_sizes: Length of each shard's output, in shard order.
        gradient: Aggregated gradient, or ``None`` when not differentiated.
    """

    output: jax.Array
    output_sizes: tuple[int, ...]
    gradient: AggregatedGradient | None = None

    def split(self) -> list[jax.Array]:
        """Split ``output`` back into per-shard vectors."""
        if not self.output_sizes:
            return []
        offsets = np.cumsum(self.output_sizes)[:-1].tolist()
        return list(jnp.split(self.output, offsets))


class MapReduceExecutor:
    """Evaluate a shard function over every shard of a job set.

    Args:
        fn: Shard function ``(shared, local, real_data, int_data) -> vector``,
            or an existing ``ShardEvaluator``.
        config: Executor configuration.
        devices: Devices to bind workers to. Defaults to ``jax.devices()``.
        aggregator: Gradient aggregator (injectable for testing).

    Example::

        executor = MapReduceExecutor(log_lik, MapRectConfig(num_workers=4))
        job_set = build_job_set(beta, [[]] * 3, x_r, x_i)
        with executor:
            result = executor.run(job_set, differentiate=True)
        log_density = result.output.sum()
        grad_beta = result.gradient.shared
    """

    def __init__(
        self,
        fn: ShardFunction | ShardEvaluator,
        config: MapRectConfig | None = None,
        *,
        devices: list[Any] | None = None,
        aggregator: GradientAggregator | None = None,
    ) -> None:
        self._config = config or MapRectConfig()
        if isinstance(fn, ShardEvaluator):
            self._evaluator = fn
        else:
            self._evaluator = ShardEvaluator(fn, check_nan=self._config.check_nan)
        self._aggregator = aggregator or GradientAggregator()
        num_workers = self._config.num_workers
        if self._config.backend == "sequential":
            num_workers = 1
        self._workers = resolve_workers(num_workers, devices)
        self._cache = WorkerDataCache()
        self._pool: concurrent.futures.ThreadPoolExecutor | None = None
        self._pool_lock = threading.Lock()

        logger.info(
            "Created map-reduce executor: backend=%s, workers=%d, devices=%s",
            self._config.backend,
            len(self._workers),
            sorted({str(w.device) for w in self._workers}),
        )

    @property
    def config(self) -> MapRectConfig:
        """Return the executor config."""
        return self._config

    @property
    def evaluator(self) -> ShardEvaluator:
        return self._evaluator

    @property
    def workers(self) -> list[Worker]:
        return list(self._workers)

    @property
    def cache(self) -> WorkerDataCache:
        """Return the pinned-data cache."""
        return self._cache

    def clear_cache(self) -> None:
        """Forget pinned data, e.g. before an outer run on new data."""
        self._cache.clear()

    def close(self) -> None:
        """Shut down the worker threads."""
        with self._pool_lock:
            if self._pool is not None:
                self._pool.shutdown(wait=True)
                self._pool = None

    def __enter__(self) -> MapReduceExecutor:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def run(
        self,
        job_set: RectangularJobSet,
        *,
        differentiate: bool = False,
        cotangent: jax.Array | None = None,
        cancel_event: threading.Event | None = None,
    ) -> MapRectResult:
        """Evaluate every shard and concatenate the outputs in shard order.

        Args:
            job_set: The validated job set.
            differentiate: Also compute the aggregated gradient.
            cotangent: Weights on the concatenated output for the gradient.
                Defaults to ones, i.e. the gradient of ``sum(output)``.
            cancel_event: When set, outstanding shards are abandoned and
                ``EvaluationCancelledError`` is raised.

        Returns:
            A ``MapRectResult``.

        Raises:
            ShardEvaluationError: If any shard fails; carries the shard index.
            EvaluationCancelledError: If ``cancel_event`` was set.
        """
        if cotangent is not None and not differentiate:
            raise ValueError("cotangent is only used when differentiate=True")

        if any_traced(job_set.shared_params, job_set.local_params):
            if differentiate:
                raise ValueError(
                    "differentiate=True requires concrete parameters; "
                    "differentiate the traced computation with JAX instead"
                )
            return self._run_traced(job_set)

        cancel_event = cancel_event or threading.Event()
        assignment = partition_shards(job_set.num_shards, len(self._workers))
        logger.debug(
            "Dispatching %d shards over %d workers (differentiate=%s)",
            job_set.num_shards,
            len(self._workers),
            differentiate,
        )

        def forward(worker: Worker, k: int) -> Any:
            shared, local, real_row, int_row = self._shard_inputs(worker, job_set, k)
            if differentiate:
                return self._evaluator.linearize(shared, local, real_row, int_row)
            return self._evaluator.evaluate(shared, local, real_row, int_row)

        forward_values = self._dispatch(assignment, forward, cancel_event)

        outputs = []
        for k in range(job_set.num_shards):
            value = forward_values[k][0] if differentiate else forward_values[k]
            outputs.append(jax.device_get(value))
        sizes = tuple(int(o.shape[0]) for o in outputs)
        output = _concatenate(outputs, job_set.shared_params.dtype)

        if not differentiate:
            return MapRectResult(output=output, output_sizes=sizes)

        cotangents = self._split_cotangent(cotangent, output, sizes)

        def backward(worker: Worker, k: int) -> ShardResult:
            shared_grad, local_grad = forward_values[k][1](cotangents[k])
            return ShardResult(
                index=k,
                output=outputs[k],
                shared_grad=jax.device_get(shared_grad),
                local_grad=jax.device_get(local_grad),
            )

        shard_results = self._dispatch(assignment, backward, cancel_event)
        gradient = self._aggregator.aggregate(
            shard_results.values(), job_set.shared_params
        )
        return MapRectResult(output=output, output_sizes=sizes, gradient=gradient)

    def _shard_inputs(
        self, worker: Worker, job_set: RectangularJobSet, k: int
    ) -> tuple[jax.Array, jax.Array, jax.Array, jax.Array]:
        if self._config.pin_data:
            real_row, int_row = self._cache.get(worker, k, job_set.data)
        else:
            real_row = jax.device_put(job_set.data.real_data[k], worker.device)
            int_row = jax.device_put(job_set.data.int_data[k], worker.device)
        shared = jax.device_put(job_set.shared_params, worker.device)
        local = jax.device_put(job_set.local_params[k], worker.device)
        return shared, local, real_row, int_row

    def _dispatch(
        self,
        assignment: dict[int, list[int]],
        task: Callable[[Worker, int], Any],
        cancel_event: threading.Event,
    ) -> dict[int, Any]:
        """Run ``task`` on every assigned shard; all succeed or the call fails."""
        stop = threading.Event()
        failures: dict[int, BaseException] = {}
        values: dict[int, Any] = {}
        lock = threading.Lock()

        def work(worker: Worker, shard_ids: list[int]) -> None:
            for k in shard_ids:
                if stop.is_set() or cancel_event.is_set():
                    return
                try:
                    value = task(worker, k)
                except Exception as e:
                    with lock:
                        failures[k] = e
                    stop.set()
                    return
                with lock:
                    values[k] = value

        busy = [(self._workers[w], ids) for w, ids in assignment.items() if ids]
        if self._config.backend == "sequential" or len(busy) <= 1:
            for worker, shard_ids in busy:
                work(worker, shard_ids)
        else:
            pool = self._get_pool()
            futures = [pool.submit(work, worker, ids) for worker, ids in busy]
            done, _ = concurrent.futures.wait(futures)
            for future in done:
                # work() never raises; surface anything unexpected
                future.result()

        if failures:
            k = min(failures)
            error = failures[k]
            logger.debug("Shard %d failed: %s", k, error)
            raise ShardEvaluationError(k, f"{type(error).__name__}: {error}") from error
        if cancel_event.is_set():
            raise EvaluationCancelledError(
                f"Evaluation cancelled with {len(values)} of "
                f"{sum(len(ids) for ids in assignment.values())} shards complete"
            )
        return values

    def _get_pool(self) -> concurrent.futures.ThreadPoolExecutor:
        with self._pool_lock:
            if self._pool is None:
                self._pool = concurrent.futures.ThreadPoolExecutor(
                    max_workers=len(self._workers),
                    thread_name_prefix="maprect-worker",
                )
            return self._pool

    @staticmethod
    def _split_cotangent(
        cotangent: jax.Array | None,
        output: jax.Array,
        sizes: tuple[int, ...],
    ) -> list[np.ndarray]:
        if cotangent is None:
            return [np.ones(size, dtype=output.dtype) for size in sizes]
        cotangent = np.asarray(cotangent)
        if cotangent.shape != output.shape:
            raise ValueError(
                f"cotangent shape {cotangent.shape} does not match output "
                f"shape {output.shape}"
            )
        if not sizes:
            return []
        return np.split(cotangent, np.cumsum(sizes)[:-1])

    def _run_traced(self, job_set: RectangularJobSet) -> MapRectResult:
        # Tracers are bound to the calling thread, so evaluate inline and
        # leave differentiation to the enclosing JAX transformation.
        outputs = []
        for k in range(job_set.num_shards):
            try:
                outputs.append(
                    self._evaluator.evaluate(
                        job_set.shared_params,
                        job_set.local_params[k],
                        jnp.asarray(job_set.data.real_data[k]),
                        jnp.asarray(job_set.data.int_data[k]),
                    )
                )
            except Exception as e:
                raise ShardEvaluationError(k, f"{type(e).__name__}: {e}") from e
        sizes = tuple(int(o.shape[0]) for o in outputs)
        output = (
            jnp.concatenate(outputs)
            if outputs
            else jnp.zeros((0,), dtype=job_set.shared_params.dtype)
        )
        return MapRectResult(output=output, output_sizes=sizes)


def _concatenate(outputs: list[np.ndarray], dtype: Any) -> jax.Array:
    if not outputs:
        return jnp.zeros((0,), dtype=dtype)
    return jnp.asarray(np.concatenate(outputs))
