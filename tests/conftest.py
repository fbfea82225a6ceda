"""
maprect testing configuration

Enables 64-bit JAX before any test module builds arrays, so sharded and
unsharded evaluations can be compared at tight tolerances, and provides the
data sets shared across the suite.
"""

import warnings

import jax


jax.config.update("jax_enable_x64", True)

import jax.numpy as jnp
import numpy as np
import pytest


warnings.filterwarnings("ignore", category=FutureWarning)
warnings.filterwarnings("ignore", category=UserWarning, module="jax")


@pytest.fixture
def logistic_data():
    """12 binary outcomes with one real predictor, split into 3 shards of 4."""
    x = np.array(
        [-1.2, 0.3, 0.8, -0.5, 1.7, -2.1, 0.05, 0.9, -0.7, 1.1, 0.4, -1.6]
    )
    y = np.array([0, 1, 1, 0, 1, 0, 1, 1, 0, 1, 0, 0])
    return x, y


@pytest.fixture
def normal_data():
    """16 draws from a normal distribution."""
    rng = np.random.default_rng(7)
    return rng.normal(loc=1.5, scale=2.0, size=16)


@pytest.fixture
def shared_logistic():
    return jnp.array([0.25, -0.8])
