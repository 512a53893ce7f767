from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from multiwayvcov import OLS

# ---------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------


@pytest.fixture
def rng():
    return np.random.default_rng(42)


def _panel(n_firms: int, n_years: int, seed: int) -> pd.DataFrame:
    """Balanced firm-year panel with firm and year components in x and the error."""
    r = np.random.default_rng(seed)
    firm = np.repeat(np.arange(1, n_firms + 1), n_years)
    year = np.tile(np.arange(2001, 2001 + n_years), n_firms)
    fx = r.standard_normal(n_firms)[firm - 1]
    yx = r.standard_normal(n_years)[year - 2001]
    fe = r.standard_normal(n_firms)[firm - 1]
    ye = r.standard_normal(n_years)[year - 2001]
    x = fx + 0.5 * yx + r.standard_normal(firm.shape[0])
    y = 1.0 + 1.0 * x + fe + 0.5 * ye + r.standard_normal(firm.shape[0])
    return pd.DataFrame({"firmid": firm, "year": year, "x": x, "y": y})


@pytest.fixture
def petersen():
    """Petersen-style panel: 50 firms observed over 10 years."""
    return _panel(50, 10, seed=2009)


@pytest.fixture
def small_panel():
    """10 firms x 10 years, one observation per firm-year."""
    return _panel(10, 10, seed=7)


@pytest.fixture
def petersen_fit(petersen):
    return OLS.from_formula("y ~ x", petersen).fit()


@pytest.fixture
def hetero_data(rng):
    """Cross section with heteroskedastic errors and a couple of regressors."""
    n = 120
    X = rng.standard_normal((n, 2))
    e = rng.standard_normal(n) * (0.5 + np.abs(X[:, 0]))
    y = 0.5 + X @ np.array([1.0, -0.5]) + e
    return y, X
