"""Summed log densities for use inside shard functions.

Each function returns the log density summed over its (broadcast) arguments.
Arguments outside the domain of the distribution yield NaN rather than
raising, so the value stays traceable; the map-reduce executor reports a NaN
shard output as a domain error for that shard.
"""

# ruff: noqa: F821  # jaxtyping dimension names

from __future__ import annotations

import jax.numpy as jnp
from jax.scipy import stats
from jax.scipy.special import gammaln
from jaxtyping import Array, ArrayLike, Float


def normal_lpdf(
    y: ArrayLike,
    mu: ArrayLike,
    sigma: ArrayLike,
) -> Float[Array, ""]:
    """Normal log density, summed. NaN if any ``sigma <= 0``."""
    sigma = jnp.asarray(sigma)
    # logpdf is not NaN at sigma == 0
    safe_sigma = jnp.where(sigma > 0, sigma, 1.0)
    lp = jnp.sum(stats.norm.logpdf(y, mu, safe_sigma))
    return jnp.where(jnp.all(sigma > 0), lp, jnp.nan)


def bernoulli_logit_lpmf(
    y: ArrayLike,
    alpha: ArrayLike,
) -> Float[Array, ""]:
    """Bernoulli log mass with log-odds ``alpha``, summed.

    NaN if any outcome is not 0 or 1.
    """
    y = jnp.asarray(y)
    alpha = jnp.asarray(alpha)
    # log p = -log(1 + e^-alpha), log(1 - p) = -log(1 + e^alpha)
    lp = -jnp.sum(y * jnp.logaddexp(0.0, -alpha) + (1 - y) * jnp.logaddexp(0.0, alpha))
    valid = jnp.all((y == 0) | (y == 1))
    return jnp.where(valid, lp, jnp.nan)


def poisson_log_lpmf(
    y: ArrayLike,
    log_rate: ArrayLike,
) -> Float[Array, ""]:
    """Poisson log mass with log rate ``log_rate``, summed.

    NaN if any count is negative.
    """
    y = jnp.asarray(y)
    log_rate = jnp.asarray(log_rate)
    safe_y = jnp.where(y >= 0, y, 0)
    lp = jnp.sum(safe_y * log_rate - jnp.exp(log_rate) - gammaln(safe_y + 1.0))
    return jnp.where(jnp.all(y >= 0), lp, jnp.nan)
