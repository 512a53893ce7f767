"""Ordinary Least Squares (OLS) estimator.

Coefficients come from a QR factorization of the design (no explicit
inversion). The fitted result feeds the cluster-robust and bootstrap
covariance routines in :mod:`multiwayvcov.core`.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import numpy as np
import pandas as pd
import scipy.linalg as sla

from multiwayvcov.core import linalg as la
from multiwayvcov.core.exceptions import EstimationFailure

from .base import BaseEstimator, EstimationResult

if TYPE_CHECKING:
    from numpy.typing import NDArray


class OLS(BaseEstimator):
    """Ordinary Least Squares regression.

    Estimates y = Xb + u.

    Parameters
    ----------
    y : array-like, shape (n,)
        Dependent variable.
    X : array-like, shape (n, p)
        Regressors. Can be a numpy array or pandas DataFrame.
    add_const : bool, default=True
        Prepend an ``Intercept`` column.
    var_names : Sequence[str], optional
        Names for the columns of X. Defaults to DataFrame columns or
        ``x0, x1, ...``.
    na_action : {"omit", "exclude", "fail"}
        Treatment of rows with missing values.

    Examples
    --------
    >>> import numpy as np
    >>> from multiwayvcov import OLS, cluster_vcov
    >>> rng = np.random.default_rng(0)
    >>> x = rng.standard_normal(200)
    >>> firm = np.repeat(np.arange(20), 10)
    >>> y = 1.0 + 0.5 * x + rng.standard_normal(200)
    >>> res = OLS(y, x, var_names=["x"]).fit()
    >>> V = cluster_vcov(res, firm)

    Notes
    -----
    - A rank-deficient design raises :class:`EstimationFailure`; the
      covariance routines assume K equals the number of columns.
    - ``fit_arrays`` is also the refit hook used by the pairs, residual and
      wild cluster bootstraps.

    """

    estimator_name = "OLS"

    def fit_arrays(
        self, y: NDArray[np.float64], X: NDArray[np.float64], **kwargs: Any,
    ) -> EstimationResult:
        """Fit OLS on complete arrays."""
        if kwargs:
            raise TypeError(f"OLS.fit got unexpected options {sorted(kwargs)}")
        b, rank = self._solve_ols(y, X)
        fitted = X @ b
        return EstimationResult(
            params=pd.Series(b, index=self.var_names, name="coef"),
            X=X,
            y=y,
            fitted=fitted,
            rank=rank,
            family="gaussian",
            model=self,
            model_info={"Estimator": self.estimator_name},
        )

    @staticmethod
    def _solve_ols(
        y: NDArray[np.float64], X: NDArray[np.float64],
    ) -> tuple[NDArray[np.float64], int]:
        Xd = np.asarray(X, dtype=np.float64)
        yd = np.asarray(y, dtype=np.float64).reshape(-1)
        if not (np.all(np.isfinite(Xd)) and np.all(np.isfinite(yd))):
            raise EstimationFailure("OLS: non-finite values in y or X")
        n, k = Xd.shape
        rank = la.qr_rank(Xd)
        if rank < k:
            msg = f"OLS: design matrix is rank deficient (rank {rank} < {k} columns, n={n})"
            raise EstimationFailure(msg)
        Q, R = sla.qr(Xd, mode="economic")
        b = sla.solve_triangular(R, Q.T @ yd, lower=False, check_finite=False)
        return np.asarray(b, dtype=np.float64), int(rank)
