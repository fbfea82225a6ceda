"""Aggregation of per-shard derivatives.

The log density is a sum of per-shard contributions, so the gradient with
respect to the shared parameters is the sum of the per-shard partials, while
each shard's local parameters only ever receive that shard's partial.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Iterable

import jax
import jax.numpy as jnp

from maprect.distributed.evaluator import ShardResult


@dataclasses.dataclass(frozen=True)
class AggregatedGradient:
    """Block-structured gradient of a map-reduce evaluation.

    Attributes:
        shared: Gradient with respect to the shared parameters, summed over
            shards.
        local: One gradient block per shard, in shard order.
    """

    shared: jax.Array
    local: tuple[jax.Array, ...]

    @property
    def flat(self) -> jax.Array:
        """Return ``[shared, local_0, ..., local_{N-1}]`` as one vector."""
        return jnp.concatenate([self.shared, *self.local])

    @property
    def num_shards(self) -> int:
        return len(self.local)


class GradientAggregator:
    """Combine ``ShardResult`` derivative blocks into one gradient."""

    def aggregate(
        self,
        shard_results: Iterable[ShardResult],
        shared_params: jax.Array,
    ) -> AggregatedGradient:
        """Sum shared-parameter partials and collect local blocks.

        Args:
            shard_results: Differentiated results, in any order.
            shared_params: The shared parameter vector, used for the shape of
                the shared block when there are no shards.

        Returns:
            The aggregated gradient, local blocks ordered by shard index.

        Raises:
            ValueError: If a result has no gradient, or the indices are not
                exactly ``0..N-1``.
        """
        results = sorted(shard_results, key=lambda r: r.index)
        indices = [r.index for r in results]
        if indices != list(range(len(results))):
            raise ValueError(
                f"Shard results must cover indices 0..{len(results) - 1} "
                f"exactly once, got {indices}"
            )

        shared = jnp.zeros_like(shared_params)
        local = []
        for result in results:
            if not result.has_gradient:
                raise ValueError(f"Shard {result.index} carries no gradient")
            # Fixed ascending order keeps the reduction reproducible.
            shared = shared + jnp.asarray(result.shared_grad)
            local.append(jnp.asarray(result.local_grad))

        return AggregatedGradient(shared=shared, local=tuple(local))
