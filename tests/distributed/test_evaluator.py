"""Tests for maprect.distributed.evaluator."""

from __future__ import annotations

import jax
import jax.numpy as jnp
import numpy as np
import pytest


pytestmark = pytest.mark.distributed

from maprect.distributed.evaluator import ShardEvaluator, ShardResult
from maprect.errors import ConstantDataViolationError, ShardDomainError


def quadratic_shard(shared, local, x_r, x_i):
    """out = [a * x + b * c**2, a * b]."""
    a, b = shared[0], shared[1]
    c = local[0]
    return jnp.stack([a * x_r[0] + b * c**2, a * b * x_i[0]])


@pytest.fixture
def evaluator() -> ShardEvaluator:
    return ShardEvaluator(quadratic_shard)


@pytest.fixture
def inputs():
    return (
        jnp.array([2.0, -1.0]),
        jnp.array([0.5]),
        jnp.array([1.5]),
        jnp.array([3]),
    )


class TestEvaluate:
    """Test plain evaluation."""

    def test_output_vector(self, evaluator: ShardEvaluator, inputs) -> None:
        out = evaluator.evaluate(*inputs)
        np.testing.assert_allclose(out, [2.0 * 1.5 - 0.25, -6.0])

    def test_callable(self, evaluator: ShardEvaluator, inputs) -> None:
        np.testing.assert_allclose(evaluator(*inputs), evaluator.evaluate(*inputs))

    def test_scalar_output_promoted(self, inputs) -> None:
        evaluator = ShardEvaluator(lambda s, l, r, i: jnp.sum(s))
        out = evaluator.evaluate(*inputs)
        assert out.shape == (1,)
        np.testing.assert_allclose(out, [1.0])

    def test_matrix_output_rejected(self, inputs) -> None:
        evaluator = ShardEvaluator(lambda s, l, r, i: jnp.ones((2, 2)))
        with pytest.raises(ValueError, match="must return a vector"):
            evaluator.evaluate(*inputs)

    def test_non_callable_rejected(self) -> None:
        with pytest.raises(TypeError, match="callable"):
            ShardEvaluator(3.0)  # type: ignore[arg-type]

    def test_nan_is_domain_error(self, inputs) -> None:
        evaluator = ShardEvaluator(lambda s, l, r, i: jnp.log(-s))
        with pytest.raises(ShardDomainError, match="NaN"):
            evaluator.evaluate(*inputs)

    def test_nan_check_can_be_disabled(self, inputs) -> None:
        evaluator = ShardEvaluator(lambda s, l, r, i: jnp.log(-s), check_nan=False)
        out = evaluator.evaluate(*inputs)
        assert bool(jnp.isnan(out[0]))

    def test_infinite_output_allowed(self, inputs) -> None:
        evaluator = ShardEvaluator(lambda s, l, r, i: jnp.log(s * 0.0))
        out = evaluator.evaluate(*inputs)
        assert bool(jnp.all(jnp.isneginf(out)))


class TestDifferentiation:
    """Test value_and_vjp and linearize."""

    def test_value_and_vjp_default_cotangent(
        self, evaluator: ShardEvaluator, inputs
    ) -> None:
        result = evaluator.value_and_vjp(*inputs, index=4)
        assert isinstance(result, ShardResult)
        assert result.index == 4
        assert result.has_gradient
        # d/da = x + b * i, d/db = c**2 + a * i, d/dc = 2 b c
        np.testing.assert_allclose(result.shared_grad, [1.5 - 3.0, 0.25 + 6.0])
        np.testing.assert_allclose(result.local_grad, [-1.0])

    def test_value_and_vjp_matches_jax_grad(
        self, evaluator: ShardEvaluator, inputs
    ) -> None:
        shared, local, x_r, x_i = inputs
        result = evaluator.value_and_vjp(*inputs)
        expected = jax.grad(
            lambda s, l: jnp.sum(quadratic_shard(s, l, x_r, x_i)), argnums=(0, 1)
        )(shared, local)
        np.testing.assert_allclose(result.shared_grad, expected[0])
        np.testing.assert_allclose(result.local_grad, expected[1])

    def test_custom_cotangent(self, evaluator: ShardEvaluator, inputs) -> None:
        result = evaluator.value_and_vjp(*inputs, cotangent=jnp.array([1.0, 0.0]))
        np.testing.assert_allclose(result.shared_grad, [1.5, 0.25])
        np.testing.assert_allclose(result.local_grad, [-1.0])

    def test_cotangent_shape_checked(self, evaluator: ShardEvaluator, inputs) -> None:
        _, pullback = evaluator.linearize(*inputs)
        with pytest.raises(ValueError, match="Cotangent shape"):
            pullback(jnp.ones(3))

    def test_empty_local_params(self, inputs) -> None:
        evaluator = ShardEvaluator(lambda s, l, r, i: s * r[0])
        shared, _, x_r, x_i = inputs
        result = evaluator.value_and_vjp(shared, jnp.zeros(0), x_r, x_i)
        assert result.local_grad.shape == (0,)
        np.testing.assert_allclose(result.shared_grad, [1.5, 1.5])

    def test_nan_detected_when_differentiating(self, inputs) -> None:
        evaluator = ShardEvaluator(lambda s, l, r, i: jnp.sqrt(s - 10.0))
        with pytest.raises(ShardDomainError):
            evaluator.value_and_vjp(*inputs)

    def test_result_without_gradient(self) -> None:
        result = ShardResult(index=0, output=jnp.ones(1))
        assert not result.has_gradient


class TestConstantData:
    """Test that data arguments cannot carry derivatives."""

    def test_traced_real_data_rejected(self, evaluator: ShardEvaluator, inputs) -> None:
        shared, local, x_r, x_i = inputs

        def through_data(r):
            return jnp.sum(evaluator.evaluate(shared, local, r, x_i))

        with pytest.raises(ConstantDataViolationError):
            jax.grad(through_data)(x_r)

    def test_traced_int_data_rejected(self, evaluator: ShardEvaluator, inputs) -> None:
        shared, local, x_r, x_i = inputs
        with pytest.raises(ConstantDataViolationError):
            jax.jit(lambda i: evaluator.linearize(shared, local, x_r, i)[0])(x_i)

    def test_traced_parameters_allowed(self, evaluator: ShardEvaluator, inputs) -> None:
        shared, local, x_r, x_i = inputs
        grad = jax.grad(lambda s: jnp.sum(evaluator.evaluate(s, local, x_r, x_i)))(
            shared
        )
        np.testing.assert_allclose(grad, [-1.5, 6.25])
