"""Adaptive ODE integration for model code.

Both integrators solve ``dy/dt = system(t, y, theta, x_r, x_i)`` from
``(t0, y0)`` and return the state at every requested time. Stepping is
delegated to diffrax:

    - ``ode_rk45``: Dormand-Prince 5(4), explicit, for non-stiff systems.
    - ``ode_bdf``: Kvaerno 5(4), implicit, Newton iterations on the system
      Jacobian, for stiff systems.

The trajectory is differentiable with respect to ``y0`` and ``theta``. The
data arguments ``x_r``/``x_i`` and the integration controls are constants.
"""

# ruff: noqa: F821  # jaxtyping dimension names

from __future__ import annotations

import logging
from typing import Any, Literal

import diffrax
import jax.numpy as jnp
from jaxtyping import Array, Float

from maprect.errors import ConstantDataViolationError, SolverDivergenceError
from maprect.ode.config import ODEConfig
from maprect.typing import any_traced, concrete_bool, ODESystem, Trajectory


logger = logging.getLogger(__name__)

_SOLVERS = {
    "rk45": diffrax.Dopri5,
    "bdf": diffrax.Kvaerno5,
}


def ode_rk45(
    system: ODESystem,
    y0: Float[Array, "state"],
    t0: float,
    ts: Float[Array, "n_times"],
    theta: Any,
    x_r: Any,
    x_i: Any,
    rel_tol: float | None = None,
    abs_tol: float | None = None,
    max_steps: int | None = None,
) -> Trajectory:
    """Integrate a non-stiff system with an adaptive Runge-Kutta 4/5 method.

    Args:
        system: ``(t, y, theta, x_r, x_i) -> dy/dt``.
        y0: Initial state.
        t0: Initial time.
        ts: Output times, strictly increasing and after ``t0``.
        theta: Parameters passed to ``system``.
        x_r: Constant real data passed to ``system``.
        x_i: Constant integer data passed to ``system``.
        rel_tol: Relative tolerance (default 1e-6).
        abs_tol: Absolute tolerance (default 1e-6).
        max_steps: Step limit (default 1e6).

    Returns:
        States at ``ts``, shape ``(len(ts), len(y0))``.

    Raises:
        ValueError: For a bad time grid or partially supplied controls.
        ConstantDataViolationError: If data or controls are differentiated.
        SolverDivergenceError: If the tolerances cannot be met within
            ``max_steps``.
    """
    config = ODEConfig.from_controls(rel_tol, abs_tol, max_steps)
    return solve_ode(system, y0, t0, ts, theta, x_r, x_i, method="rk45", config=config)


def ode_bdf(
    system: ODESystem,
    y0: Float[Array, "state"],
    t0: float,
    ts: Float[Array, "n_times"],
    theta: Any,
    x_r: Any,
    x_i: Any,
    rel_tol: float | None = None,
    abs_tol: float | None = None,
    max_steps: int | None = None,
) -> Trajectory:
    """Integrate a stiff system with an implicit adaptive method.

    Same arguments, return value and errors as :func:`ode_rk45`.
    """
    config = ODEConfig.from_controls(rel_tol, abs_tol, max_steps)
    return solve_ode(system, y0, t0, ts, theta, x_r, x_i, method="bdf", config=config)


def solve_ode(
    system: ODESystem,
    y0: Float[Array, "state"],
    t0: float,
    ts: Float[Array, "n_times"],
    theta: Any,
    x_r: Any,
    x_i: Any,
    *,
    method: Literal["rk45", "bdf"] = "rk45",
    config: ODEConfig | None = None,
) -> Trajectory:
    """Integrate ``system`` with the named method and an ``ODEConfig``.

    Under ``jax.jit`` divergence cannot be raised; the trajectory is returned
    as NaN instead, which map-reduce shards report as a domain error.
    """
    if method not in _SOLVERS:
        raise ValueError(f"Unknown method '{method}'. Must be one of {set(_SOLVERS)}")
    cfg = config or ODEConfig()
    if any_traced(x_r, x_i):
        raise ConstantDataViolationError(
            "x_r and x_i must be constant data, not values under differentiation"
        )

    y0 = jnp.asarray(y0)
    if not jnp.issubdtype(y0.dtype, jnp.floating):
        y0 = y0.astype(jnp.result_type(float))
    ts = jnp.asarray(ts, dtype=y0.dtype)
    t0 = jnp.asarray(t0, dtype=y0.dtype)
    if y0.ndim != 1:
        raise ValueError(f"y0 must be a vector, got shape {y0.shape}")
    if ts.ndim != 1 or ts.shape[0] == 0:
        raise ValueError(f"ts must be a non-empty vector, got shape {ts.shape}")
    grid_ok = concrete_bool(jnp.all(jnp.diff(ts) > 0) & (ts[0] > t0))
    if grid_ok is False:
        raise ValueError("ts must be strictly increasing and strictly after t0")

    def vector_field(t, y, args):
        theta, x_r, x_i = args
        return system(t, y, theta, x_r, x_i)

    sol = diffrax.diffeqsolve(
        diffrax.ODETerm(vector_field),
        _SOLVERS[method](),
        t0=t0,
        t1=ts[-1],
        dt0=None,
        y0=y0,
        args=(theta, x_r, x_i),
        saveat=diffrax.SaveAt(ts=ts),
        stepsize_controller=diffrax.PIDController(
            rtol=cfg.rel_tol, atol=cfg.abs_tol
        ),
        max_steps=int(cfg.max_steps),
        throw=False,
    )

    succeeded = sol.result == diffrax.RESULTS.successful
    ok = concrete_bool(succeeded)
    if ok is None:
        return jnp.where(succeeded, sol.ys, jnp.nan)
    if not ok:
        raise SolverDivergenceError(method, _failure_reason(sol, cfg))
    logger.debug(
        "Integrated %s over %d output times in %s steps",
        method,
        ts.shape[0],
        sol.stats.get("num_steps"),
    )
    return sol.ys


def _failure_reason(sol: diffrax.Solution, config: ODEConfig) -> str:
    if concrete_bool(sol.result == diffrax.RESULTS.max_steps_reached):
        return (
            f"maximum number of steps ({config.max_steps}) reached before "
            "meeting the tolerances; the system may be stiff"
        )
    return (
        "the step size controller could not satisfy "
        f"rel_tol={config.rel_tol}, abs_tol={config.abs_tol}"
    )
