"""Tests for the adaptive ODE integrators.

Each integrator is checked against closed-form solutions, and gradients with
respect to the parameters against their analytic values.
"""

import jax
import jax.numpy as jnp
import numpy as np
import pytest


pytestmark = pytest.mark.ode

from maprect.distributed import map_rect_value_and_grad, MapRectConfig
from maprect.errors import ConstantDataViolationError, SolverDivergenceError
from maprect.ode import ode_bdf, ode_rk45, ODEConfig, solve_ode


NO_INTS = np.zeros(0, dtype=np.int64)
TIGHT = {"rel_tol": 1e-9, "abs_tol": 1e-9, "max_steps": 100_000}


def decay(t, y, theta, x_r, x_i):
    return -theta[0] * y


def oscillator(t, y, theta, x_r, x_i):
    return jnp.array([y[1], -(theta[0] ** 2) * y[0]])


def stiff_cosine(t, y, theta, x_r, x_i):
    lam = x_r[0]
    return -lam * (y - jnp.cos(t)) - jnp.sin(t)


@pytest.fixture
def ts():
    return jnp.array([0.5, 1.0, 2.0, 4.0])


class TestRK45:
    """Test the explicit integrator."""

    def test_exponential_decay(self, ts):
        ys = ode_rk45(decay, jnp.array([2.0]), 0.0, ts, jnp.array([0.7]), [], NO_INTS)
        assert ys.shape == (4, 1)
        np.testing.assert_allclose(ys[:, 0], 2.0 * jnp.exp(-0.7 * ts), atol=1e-5)

    def test_harmonic_oscillator(self, ts):
        omega = 1.3
        ys = ode_rk45(
            oscillator,
            jnp.array([1.0, 0.0]),
            0.0,
            ts,
            jnp.array([omega]),
            [],
            NO_INTS,
            **TIGHT,
        )
        np.testing.assert_allclose(ys[:, 0], jnp.cos(omega * ts), atol=1e-6)
        np.testing.assert_allclose(ys[:, 1], -omega * jnp.sin(omega * ts), atol=1e-6)

    def test_nonzero_start_time(self):
        ts = jnp.array([1.5, 2.0])
        ys = ode_rk45(
            decay, jnp.array([1.0]), 1.0, ts, jnp.array([1.0]), [], NO_INTS, **TIGHT
        )
        np.testing.assert_allclose(ys[:, 0], jnp.exp(-(ts - 1.0)), atol=1e-7)

    def test_integer_initial_state_promoted(self, ts):
        ys = ode_rk45(decay, jnp.array([1]), 0.0, ts, jnp.array([0.5]), [], NO_INTS)
        assert jnp.issubdtype(ys.dtype, jnp.floating)

    def test_gradient_wrt_theta(self, ts):
        def final_state(theta):
            ys = ode_rk45(decay, jnp.array([1.0]), 0.0, ts, theta, [], NO_INTS, **TIGHT)
            return ys[-1, 0]

        grad = jax.grad(final_state)(jnp.array([0.7]))
        expected = -4.0 * jnp.exp(-0.7 * 4.0)
        np.testing.assert_allclose(grad[0], expected, atol=1e-6)

    def test_gradient_wrt_initial_state(self, ts):
        def final_state(y0):
            return ode_rk45(decay, y0, 0.0, ts, jnp.array([0.7]), [], NO_INTS)[-1, 0]

        grad = jax.grad(final_state)(jnp.array([3.0]))
        np.testing.assert_allclose(grad[0], jnp.exp(-0.7 * 4.0), atol=1e-5)


@pytest.mark.slow
class TestBDF:
    """Test the implicit integrator."""

    def test_stiff_system(self):
        ts = jnp.array([0.5, 1.0, 2.0])
        ys = ode_bdf(
            stiff_cosine, jnp.array([1.0]), 0.0, ts, jnp.zeros(0), [1.0e4], NO_INTS
        )
        np.testing.assert_allclose(ys[:, 0], jnp.cos(ts), atol=1e-4)

    def test_exponential_decay(self, ts):
        ys = ode_bdf(
            decay, jnp.array([2.0]), 0.0, ts, jnp.array([0.7]), [], NO_INTS, **TIGHT
        )
        np.testing.assert_allclose(ys[:, 0], 2.0 * jnp.exp(-0.7 * ts), atol=1e-6)


class TestFailures:
    """Test argument validation and divergence reporting."""

    def test_step_limit_raises_divergence(self):
        with pytest.raises(SolverDivergenceError, match="maximum number of steps"):
            ode_rk45(
                decay,
                jnp.array([1.0]),
                0.0,
                jnp.array([100.0]),
                jnp.array([1.0]),
                [],
                NO_INTS,
                rel_tol=1e-12,
                abs_tol=1e-12,
                max_steps=3,
            )

    def test_divergence_is_nan_under_jit(self):
        @jax.jit
        def solve(theta):
            return solve_ode(
                decay,
                jnp.array([1.0]),
                0.0,
                jnp.array([100.0]),
                theta,
                [],
                NO_INTS,
                config=ODEConfig(rel_tol=1e-12, abs_tol=1e-12, max_steps=3),
            )

        assert bool(jnp.all(jnp.isnan(solve(jnp.array([1.0])))))

    def test_partial_controls(self, ts):
        with pytest.raises(ValueError, match="supplied together"):
            ode_rk45(
                decay, jnp.array([1.0]), 0.0, ts, jnp.array([1.0]), [], NO_INTS,
                rel_tol=1e-8,
            )

    @pytest.mark.parametrize(
        "grid",
        [[1.0, 0.5], [0.0, 1.0], [1.0, 1.0]],
        ids=["decreasing", "starts-at-t0", "repeated"],
    )
    def test_bad_time_grid(self, grid):
        with pytest.raises(ValueError, match="strictly"):
            ode_rk45(
                decay, jnp.array([1.0]), 0.0, jnp.array(grid), jnp.array([1.0]),
                [], NO_INTS,
            )

    def test_empty_time_grid(self):
        with pytest.raises(ValueError, match="non-empty"):
            ode_rk45(
                decay, jnp.array([1.0]), 0.0, jnp.zeros(0), jnp.array([1.0]),
                [], NO_INTS,
            )

    def test_state_must_be_vector(self, ts):
        with pytest.raises(ValueError, match="vector"):
            ode_rk45(decay, jnp.ones((2, 2)), 0.0, ts, jnp.array([1.0]), [], NO_INTS)

    def test_unknown_method(self, ts):
        with pytest.raises(ValueError, match="Unknown method"):
            solve_ode(
                decay, jnp.array([1.0]), 0.0, ts, jnp.array([1.0]), [], NO_INTS,
                method="euler",  # type: ignore[arg-type]
            )

    def test_differentiated_data_rejected(self, ts):
        def solve(x):
            theta = jnp.array([1.0])
            return ode_rk45(decay, jnp.array([1.0]), 0.0, ts, theta, x, NO_INTS).sum()

        with pytest.raises(ConstantDataViolationError):
            jax.grad(solve)(jnp.array([0.5]))


class TestODEShards:
    """Test integrators called from inside shard functions."""

    def test_gradient_through_executor(self):
        def shard(shared, local, x_r, x_i):
            ys = ode_rk45(decay, jnp.exp(local), 0.0, x_r, shared, x_r, x_i, **TIGHT)
            return ys[:, 0]

        shared = jnp.array([0.4])
        local = [jnp.array([0.0]), jnp.array([0.5]), jnp.array([-0.3])]
        x_r = np.array([[0.5, 1.0], [1.0, 3.0], [0.2, 0.4]])
        x_i = np.zeros((3, 0), dtype=np.int64)

        output, grad = map_rect_value_and_grad(
            shard,
            shared,
            local,
            x_r,
            x_i,
            config=MapRectConfig(backend="sequential"),
        )
        assert output.shape == (6,)

        def direct(shared, local):
            return sum(
                shard(shared, local[k], x_r[k], x_i[k]).sum() for k in range(3)
            )

        expected_shared, expected_local = jax.grad(direct, argnums=(0, 1))(
            shared, local
        )
        np.testing.assert_allclose(grad.shared, expected_shared, rtol=1e-6)
        for actual, expected in zip(grad.local, expected_local, strict=True):
            np.testing.assert_allclose(actual, expected, rtol=1e-6)
