"""
Shared test fixtures and configuration for brmstan tests.
"""

import numpy as np
import pandas as pd
import pytest


@pytest.fixture
def data():
    """Thirty observations with responses for every family type used in the
    tests, two covariates, a three-level grouping factor and a time index."""
    rng = np.random.default_rng(1)
    n = 30
    return pd.DataFrame(
        {
            "y": rng.normal(size=n),
            "x": rng.normal(size=n),
            "x2": rng.normal(size=n),
            "z": np.arange(n) % 4,
            "g": np.repeat(["a", "b", "c"], 10),
            "w": rng.uniform(0.5, 1.5, size=n),
            "count": rng.poisson(3, size=n),
            "yo": np.arange(n) % 4 + 1,
            "yc": np.tile(["red", "green", "blue"], 10),
            "yb": np.arange(n) % 2,
            "ypos": rng.gamma(2.0, 1.0, size=n),
            "time": np.tile(np.arange(10), 3),
            "censored": np.tile(["none", "right", "left"], 10),
        }
    )
