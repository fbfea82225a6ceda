"""Per-shard function evaluation.

``ShardEvaluator`` wraps the user-supplied shard function
``f(shared, local, x_r, x_i) -> vector`` and evaluates it either plainly or
together with its vector-Jacobian product with respect to the two parameter
arguments. The data arguments are closed over as constants, so no derivative
ever flows through them.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Callable
from typing import Any

import jax
import jax.numpy as jnp

from maprect.errors import ConstantDataViolationError, ShardDomainError
from maprect.typing import (
    any_traced,
    concrete_bool,
    IntRow,
    LocalParams,
    OutputVector,
    RealRow,
    ShardFunction,
    SharedParams,
)


@dataclasses.dataclass(frozen=True)
class ShardResult:
    """Output of one shard, with derivative blocks when differentiated.

    Attributes:
        index: Position of the shard in its job set.
        output: The shard's output vector.
        shared_grad: Cotangent-weighted partial derivative with respect to the
            shared parameters (``None`` when not differentiated).
        local_grad: Cotangent-weighted partial derivative with respect to the
            shard's local parameters (``None`` when not differentiated).
    """

    index: int
    output: jax.Array
    shared_grad: jax.Array | None = None
    local_grad: jax.Array | None = None

    @property
    def has_gradient(self) -> bool:
        return self.shared_grad is not None and self.local_grad is not None


class ShardEvaluator:
    """Evaluate a fixed-signature shard function.

    Args:
        fn: Shard function ``(shared, local, real_data, int_data) -> vector``.
            Must be pure: no side effects and no state shared across shards.
        check_nan: Raise ``ShardDomainError`` when the output contains NaN.
            Skipped under ``jax.jit``, where NaN outputs propagate instead.
    """

    def __init__(self, fn: ShardFunction, *, check_nan: bool = True) -> None:
        if not callable(fn):
            raise TypeError(f"Shard function must be callable, got {type(fn)!r}")
        self._fn = fn
        self.check_nan = check_nan

    @property
    def fn(self) -> ShardFunction:
        """Return the wrapped shard function."""
        return self._fn

    def __call__(
        self,
        shared_params: SharedParams,
        local_params: LocalParams,
        real_data: RealRow,
        int_data: IntRow,
    ) -> OutputVector:
        return self.evaluate(shared_params, local_params, real_data, int_data)

    def evaluate(
        self,
        shared_params: SharedParams,
        local_params: LocalParams,
        real_data: RealRow,
        int_data: IntRow,
    ) -> OutputVector:
        """Evaluate the shard function without derivatives.

        Returns:
            The output vector. Scalar outputs are promoted to length one.
        """
        _check_constant(real_data, int_data)
        output = _as_output(self._fn(shared_params, local_params, real_data, int_data))
        self._check_output(output)
        return output

    def linearize(
        self,
        shared_params: SharedParams,
        local_params: LocalParams,
        real_data: RealRow,
        int_data: IntRow,
    ) -> tuple[OutputVector, Callable[[jax.Array], tuple[jax.Array, jax.Array]]]:
        """Evaluate the shard function and return its VJP closure.

        The closure maps an output cotangent to
        ``(shared_grad, local_grad)``.
        """
        _check_constant(real_data, int_data)

        def bound(shared: jax.Array, local: jax.Array) -> jax.Array:
            return _as_output(self._fn(shared, local, real_data, int_data))

        output, vjp_fn = jax.vjp(bound, shared_params, local_params)
        self._check_output(output)

        def pullback(cotangent: jax.Array) -> tuple[jax.Array, jax.Array]:
            cotangent = jnp.asarray(cotangent, dtype=output.dtype)
            if cotangent.shape != output.shape:
                raise ValueError(
                    f"Cotangent shape {cotangent.shape} does not match "
                    f"output shape {output.shape}"
                )
            return vjp_fn(cotangent)

        return output, pullback

    def value_and_vjp(
        self,
        shared_params: SharedParams,
        local_params: LocalParams,
        real_data: RealRow,
        int_data: IntRow,
        cotangent: jax.Array | None = None,
        *,
        index: int = 0,
    ) -> ShardResult:
        """Evaluate the shard and its parameter derivatives.

        Args:
            shared_params: Shared parameter vector.
            local_params: This shard's parameter vector.
            real_data: Constant real row.
            int_data: Constant integer row.
            cotangent: Weights on the output entries. Defaults to ones, i.e.
                the gradient of ``sum(output)``.
            index: Shard index recorded on the result.

        Returns:
            A ``ShardResult`` with both gradient blocks filled.
        """
        output, pullback = self.linearize(
            shared_params, local_params, real_data, int_data
        )
        if cotangent is None:
            cotangent = jnp.ones_like(output)
        shared_grad, local_grad = pullback(cotangent)
        return ShardResult(
            index=index,
            output=output,
            shared_grad=shared_grad,
            local_grad=local_grad,
        )

    def _check_output(self, output: jax.Array) -> None:
        if not self.check_nan:
            return
        # unknown under jit; the NaN then propagates to the caller
        if concrete_bool(jnp.any(jnp.isnan(output))):
            raise ShardDomainError(
                "Shard function returned NaN; an argument is outside the "
                "domain of a density or math function"
            )


def _check_constant(real_data: Any, int_data: Any) -> None:
    if any_traced(real_data) or any_traced(int_data):
        raise ConstantDataViolationError(
            "Shard data must be constant; a differentiated or traced value was "
            "passed as real_data or int_data"
        )


def _as_output(value: Any) -> jax.Array:
    output = jnp.asarray(value)
    if output.ndim == 0:
        return output.reshape(1)
    if output.ndim != 1:
        raise ValueError(
            f"Shard function must return a vector, got shape {output.shape}"
        )
    return output
