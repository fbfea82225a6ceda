"""Rectangular job sets for map-reduce evaluation.

A job set pairs one shared parameter vector with N shards, each holding its
own local parameter vector and one row of constant real and integer data.
All validation happens here, before any shard is evaluated.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Iterator, Sequence
from typing import Any

import jax
import jax.numpy as jnp
import numpy as np

from maprect.errors import (
    ConstantDataViolationError,
    RaggedRowError,
    ShapeMismatchError,
)
from maprect.typing import any_traced, ArrayLike, IntMatrix, RealMatrix


logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True, slots=True)
class ShardDescriptor:
    """A single unit of work.

    Attributes:
        index: Position of the shard in its job set.
        shared_params: Parameter vector common to every shard.
        local_params: Parameter vector owned by this shard.
        real_data: Constant real-valued row for this shard.
        int_data: Constant integer row for this shard.
    """

    index: int
    shared_params: jax.Array
    local_params: jax.Array
    real_data: np.ndarray
    int_data: np.ndarray


@dataclasses.dataclass(frozen=True, eq=False)
class ShardData:
    """Constant data of a job set, one row per shard.

    Both matrices are read-only. Job sets rebound with
    :meth:`RectangularJobSet.with_params` share the same ``ShardData``
    instance, which is what lets executors reuse pinned copies.
    """

    real_data: RealMatrix
    int_data: IntMatrix

    @property
    def num_shards(self) -> int:
        return self.real_data.shape[0]


@dataclasses.dataclass(frozen=True, eq=False)
class RectangularJobSet:
    """Validated, immutable collection of shards.

    Use :func:`build_job_set` to create one.
    """

    shared_params: jax.Array
    local_params: tuple[jax.Array, ...]
    data: ShardData

    @property
    def num_shards(self) -> int:
        return len(self.local_params)

    @property
    def real_width(self) -> int:
        return self.data.real_data.shape[1]

    @property
    def int_width(self) -> int:
        return self.data.int_data.shape[1]

    def __len__(self) -> int:
        return self.num_shards

    def __getitem__(self, index: int) -> ShardDescriptor:
        if not -self.num_shards <= index < self.num_shards:
            raise IndexError(f"shard index {index} out of range")
        index %= self.num_shards
        return ShardDescriptor(
            index=index,
            shared_params=self.shared_params,
            local_params=self.local_params[index],
            real_data=self.data.real_data[index],
            int_data=self.data.int_data[index],
        )

    def __iter__(self) -> Iterator[ShardDescriptor]:
        for index in range(self.num_shards):
            yield self[index]

    @classmethod
    def from_data(
        cls,
        data: ShardData,
        shared_params: ArrayLike,
        local_params_array: Sequence[ArrayLike],
    ) -> RectangularJobSet:
        """Bind parameters to already validated constant data."""
        if len(local_params_array) != data.num_shards:
            raise ShapeMismatchError(
                f"local_params_array has {len(local_params_array)} entries, "
                f"data has {data.num_shards} shards"
            )
        return cls(
            shared_params=_as_param_vector(shared_params, "shared_params"),
            local_params=tuple(
                _as_param_vector(p, f"local_params[{k}]")
                for k, p in enumerate(local_params_array)
            ),
            data=data,
        )

    def with_params(
        self,
        shared_params: ArrayLike,
        local_params_array: Sequence[ArrayLike],
    ) -> RectangularJobSet:
        """Return a job set with new parameters and the same constant data."""
        return self.from_data(self.data, shared_params, local_params_array)


def build_job_set(
    shared_params: ArrayLike,
    local_params_array: Sequence[ArrayLike],
    real_data_array: ArrayLike,
    int_data_array: ArrayLike,
) -> RectangularJobSet:
    """Validate parallel input arrays and build a job set.

    Args:
        shared_params: Parameter vector common to all shards.
        local_params_array: N parameter vectors, one per shard. Vectors may be
            empty.
        real_data_array: N rows of constant reals, all of equal length.
        int_data_array: N rows of constant integers, all of equal length.

    Returns:
        An immutable ``RectangularJobSet`` with N shards.

    Raises:
        ShapeMismatchError: If the outer lengths differ or a parameter
            argument is not a vector.
        RaggedRowError: If rows of a data array differ in length.
        ConstantDataViolationError: If data is under differentiation or the
            integer data holds non-integers.
    """
    num_local = len(local_params_array)
    num_real = len(real_data_array)
    num_int = len(int_data_array)
    if not num_local == num_real == num_int:
        raise ShapeMismatchError(
            "Parallel arrays must have the same number of shards: "
            f"local_params_array={num_local}, real_data_array={num_real}, "
            f"int_data_array={num_int}"
        )

    data = build_shard_data(real_data_array, int_data_array)
    job_set = RectangularJobSet.from_data(data, shared_params, local_params_array)
    logger.debug(
        "Built job set: shards=%d, real_width=%d, int_width=%d",
        job_set.num_shards,
        job_set.real_width,
        job_set.int_width,
    )
    return job_set


def build_shard_data(
    real_data_array: ArrayLike,
    int_data_array: ArrayLike,
) -> ShardData:
    """Validate and freeze the constant data of a job set.

    Build this once per outer run and bind parameters to it with
    :meth:`RectangularJobSet.from_data`, so executors can keep the data
    pinned between evaluations.

    Raises:
        ShapeMismatchError: If the two arrays have different outer lengths.
        RaggedRowError: If rows of either array differ in length.
        ConstantDataViolationError: If data is under differentiation or the
            integer data holds non-integers.
    """
    if len(real_data_array) != len(int_data_array):
        raise ShapeMismatchError(
            "Parallel arrays must have the same number of shards: "
            f"real_data_array={len(real_data_array)}, "
            f"int_data_array={len(int_data_array)}"
        )
    return ShardData(
        real_data=_as_data_matrix(real_data_array, "real_data_array", integer=False),
        int_data=_as_data_matrix(int_data_array, "int_data_array", integer=True),
    )


def _as_param_vector(value: Any, name: str) -> jax.Array:
    array = jnp.asarray(value)
    if array.ndim != 1:
        raise ShapeMismatchError(
            f"{name} must be a vector, got shape {tuple(array.shape)}"
        )
    if not jnp.issubdtype(array.dtype, jnp.floating):
        array = array.astype(jnp.result_type(float))
    return array


def _as_data_matrix(value: Any, name: str, *, integer: bool) -> np.ndarray:
    if any_traced(value):
        raise ConstantDataViolationError(
            f"{name} is being differentiated or traced; only constant data "
            "may be passed in data slots"
        )

    if isinstance(value, (np.ndarray, jax.Array)):
        matrix = np.asarray(value)
        if matrix.ndim == 1 and matrix.shape[0] == 0:
            matrix = matrix.reshape(0, 0)
        if matrix.ndim != 2:
            raise RaggedRowError(
                f"{name} must be two-dimensional, got shape {matrix.shape}"
            )
    else:
        rows = [np.asarray(row) for row in value]
        for k, row in enumerate(rows):
            if row.ndim != 1:
                raise RaggedRowError(
                    f"{name}[{k}] must be a flat row, got shape {row.shape}"
                )
        widths = {row.shape[0] for row in rows}
        if len(widths) > 1:
            raise RaggedRowError(
                f"Rows of {name} differ in length: {sorted(widths)}; "
                "pad shards to a common width"
            )
        width = widths.pop() if widths else 0
        matrix = (
            np.stack(rows) if rows else np.zeros((0, width))
        ).reshape(len(rows), width)

    if integer:
        if matrix.size and matrix.dtype.kind not in "iub":
            raise ConstantDataViolationError(
                f"{name} must hold integers, got dtype {matrix.dtype}"
            )
        target = jax.dtypes.canonicalize_dtype(np.int64)
        info = np.iinfo(target)
        low, high = (int(matrix.min()), int(matrix.max())) if matrix.size else (0, 0)
        if low < info.min or high > info.max:
            raise ConstantDataViolationError(
                f"{name} holds values outside the range of {target} "
                f"[{info.min}, {info.max}]"
            )
        matrix = matrix.astype(target)
    else:
        matrix = matrix.astype(jax.dtypes.canonicalize_dtype(np.float64))

    matrix.setflags(write=False)
    return matrix
