"""Type definitions for maprect.

Shape-annotated aliases shared by the map-reduce executor and the ODE
integrators.
"""  # noqa: A005

# ruff: noqa: F821  # jaxtyping dimension names

from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import Any, TypeAlias

import jax
import numpy as np
from jaxtyping import Array, Float, Int


# Parameter vectors
ParamVector: TypeAlias = Float[Array, "params"]
SharedParams: TypeAlias = Float[Array, "shared"]
LocalParams: TypeAlias = Float[Array, "local"]

# Constant shard data
RealRow: TypeAlias = Float[Array, "real_width"]
IntRow: TypeAlias = Int[Array, "int_width"]
RealMatrix: TypeAlias = Float[np.ndarray, "shards real_width"]
IntMatrix: TypeAlias = Int[np.ndarray, "shards int_width"]

# Outputs
OutputVector: TypeAlias = Float[Array, "out"]
Trajectory: TypeAlias = Float[Array, "n_times state"]

# Caller-supplied arrays before validation
ArrayLike: TypeAlias = jax.Array | np.ndarray | Sequence[Any]

# f(shared, local, x_r, x_i) -> vector
ShardFunction: TypeAlias = Callable[
    [SharedParams, LocalParams, RealRow, IntRow], OutputVector
]

# system(t, y, theta, x_r, x_i) -> dy/dt
ODESystem: TypeAlias = Callable[
    [Float[Array, ""], Float[Array, "state"], ParamVector, Any, Any],
    Float[Array, "state"],
]


def is_traced(value: Any) -> bool:
    """Return True if ``value`` is a JAX tracer (under jit/grad/vmap)."""
    return isinstance(value, jax.core.Tracer)


def any_traced(*values: Any) -> bool:
    """Return True if any leaf of ``values`` is a JAX tracer."""
    return any(is_traced(leaf) for leaf in jax.tree_util.tree_leaves(values))


def concrete_bool(value: Any) -> bool | None:
    """Return ``bool(value)``, or ``None`` when it is only known at run time.

    Values under ``jax.grad`` still carry concrete primals and convert; values
    under ``jax.jit`` do not.
    """
    try:
        return bool(value)
    except jax.errors.ConcretizationTypeError:
        return None
