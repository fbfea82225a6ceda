"""Configuration for the ODE integrators."""

from __future__ import annotations

import dataclasses

from maprect.errors import ConstantDataViolationError
from maprect.typing import any_traced


@dataclasses.dataclass(frozen=True, slots=True, kw_only=True)
class ODEConfig:
    """Integration controls shared by ``ode_rk45`` and ``ode_bdf``.

    Attributes:
        rel_tol: Relative tolerance for adaptive step control.
        abs_tol: Absolute tolerance for adaptive step control.
        max_steps: Maximum number of integration steps.
    """

    rel_tol: float = 1e-6
    abs_tol: float = 1e-6
    max_steps: int = 1_000_000

    def __post_init__(self) -> None:
        """Validate configuration on creation (fail-fast)."""
        if any_traced(self.rel_tol, self.abs_tol, self.max_steps):
            raise ConstantDataViolationError(
                "ODE tolerances and max_steps must be constants, not values "
                "under differentiation"
            )
        if not self.rel_tol > 0:
            raise ValueError(f"rel_tol must be positive, got {self.rel_tol}")
        if not self.abs_tol > 0:
            raise ValueError(f"abs_tol must be positive, got {self.abs_tol}")
        if int(self.max_steps) != self.max_steps or self.max_steps < 1:
            raise ValueError(
                f"max_steps must be a positive integer, got {self.max_steps}"
            )

    @classmethod
    def from_controls(
        cls,
        rel_tol: float | None = None,
        abs_tol: float | None = None,
        max_steps: int | None = None,
    ) -> ODEConfig:
        """Build a config from optional controls, which come all or none.

        Raises:
            ValueError: If only some of the three controls are given.
        """
        given = [value is not None for value in (rel_tol, abs_tol, max_steps)]
        if not any(given):
            return cls()
        if not all(given):
            raise ValueError(
                "rel_tol, abs_tol and max_steps must be supplied together"
            )
        return cls(rel_tol=rel_tol, abs_tol=abs_tol, max_steps=int(max_steps))
