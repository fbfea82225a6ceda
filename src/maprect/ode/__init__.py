"""ODE integrators for differential-equation based models.

Components:
    - :func:`ode_rk45`: Explicit adaptive Runge-Kutta 4/5 for non-stiff
      systems.
    - :func:`ode_bdf`: Implicit adaptive solver for stiff systems.
    - :class:`ODEConfig`: Tolerances and step limit.
"""

from maprect.ode.config import ODEConfig
from maprect.ode.solvers import ode_bdf, ode_rk45, solve_ode


__all__ = [
    "ODEConfig",
    "ode_bdf",
    "ode_rk45",
    "solve_ode",
]
