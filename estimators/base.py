"""Base estimator and fitted-model container.

The covariance routines only need a narrow view of a fitted regression:
coefficients, rank, design matrix, response and working residuals/weights,
the mask of rows retained from the caller's data, and a way to refit on
perturbed data. ``EstimationResult`` carries exactly that, and
``BaseEstimator`` supplies the shared array/formula plumbing for concrete
fitters.
"""

# multiwayvcov/estimators/base.py
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import numpy as np
import pandas as pd

from multiwayvcov.core.exceptions import EstimationFailure, InvalidInput
from multiwayvcov.utils.auto_constant import add_constant
from multiwayvcov.utils.formula import NA_ACTIONS, parse_formula

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

__all__ = ["BaseEstimator", "EstimationResult"]


# ---------------------------------------------------------------------
# Results container
# ---------------------------------------------------------------------
@dataclass
class EstimationResult:
    """Fitted regression model.

    Arrays cover the ``n_obs`` rows used in estimation. ``row_mask`` maps
    them back to the ``n_total`` rows originally handed to the estimator.
    """

    params: pd.Series
    X: NDArray[np.float64]
    y: NDArray[np.float64]
    fitted: NDArray[np.float64]
    rank: int
    family: str = "gaussian"
    working_weights: NDArray[np.float64] | None = None
    working_resid: NDArray[np.float64] | None = None
    dispersion: float = 1.0
    row_mask: NDArray[np.bool_] | None = None
    data: pd.DataFrame | None = None
    model: BaseEstimator | None = None
    model_info: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.X = np.asarray(self.X, dtype=np.float64)
        self.y = np.asarray(self.y, dtype=np.float64).reshape(-1)
        self.fitted = np.asarray(self.fitted, dtype=np.float64).reshape(-1)
        n, k = self.X.shape
        if self.y.shape[0] != n or self.fitted.shape[0] != n:
            raise InvalidInput("y, fitted and X must have the same number of rows")
        if len(self.params) != k:
            raise InvalidInput("params must have one entry per column of X")
        if self.row_mask is None:
            self.row_mask = np.ones(n, dtype=bool)
        else:
            self.row_mask = np.asarray(self.row_mask, dtype=bool).reshape(-1)
            if int(self.row_mask.sum()) != n:
                raise InvalidInput("row_mask must flag exactly n_obs retained rows")

    def __repr__(self) -> str:  # pragma: no cover - convenience only
        head = ", ".join(f"{k}={v}" for k, v in self.model_info.items())
        return f"EstimationResult(k={len(self.params)}, n={self.n_obs}, {head})"

    @property
    def coef(self) -> NDArray[np.float64]:
        return self.params.to_numpy(dtype=np.float64)

    @property
    def var_names(self) -> list[str]:
        return [str(v) for v in self.params.index]

    @property
    def n_obs(self) -> int:
        return int(self.X.shape[0])

    @property
    def n_total(self) -> int:
        return int(self.row_mask.shape[0])

    @property
    def df_resid(self) -> int:
        return self.n_obs - int(self.rank)

    @property
    def resid(self) -> NDArray[np.float64]:
        """Response residuals y - fitted."""
        return self.y - self.fitted

    def refit(
        self,
        y: NDArray[np.float64] | None = None,
        rows: NDArray[np.int64] | None = None,
    ) -> EstimationResult:
        """Refit the same specification on a perturbed sample.

        Parameters
        ----------
        y : ndarray, optional
            Replacement response for the ``n_obs`` estimation rows.
        rows : ndarray of int, optional
            Row indices (repeats allowed) into the estimation sample.

        """
        if self.model is None:
            raise EstimationFailure("result has no estimator attached; cannot refit")
        y_new = self.y if y is None else np.asarray(y, dtype=np.float64).reshape(-1)
        if y_new.shape[0] != self.n_obs:
            msg = f"refit: y has length {y_new.shape[0]} != n_obs={self.n_obs}"
            raise InvalidInput(msg)
        X_new = self.X
        if rows is not None:
            idx = np.asarray(rows, dtype=np.int64).reshape(-1)
            X_new = X_new[idx]
            y_new = y_new[idx]
        return self.model.fit_arrays(y_new, X_new)


# ---------------------------------------------------------------------
# Base estimator
# ---------------------------------------------------------------------
class BaseEstimator(ABC):
    """Shared construction logic for regression estimators.

    Rows with a non-finite response or regressor are dropped (``na_action``
    "omit"/"exclude") or rejected ("fail"); the retained rows are recorded
    in ``row_mask``.
    """

    estimator_name: str = "Base"

    def __init__(
        self,
        y: Any,
        X: Any,
        *,
        add_const: bool = True,
        var_names: Sequence[str] | None = None,
        na_action: str = "omit",
    ) -> None:
        act = str(na_action).strip().lower()
        if act not in NA_ACTIONS:
            msg = f"na_action must be one of {sorted(NA_ACTIONS)}; got {na_action!r}"
            raise InvalidInput(msg)
        if var_names is None and isinstance(X, pd.DataFrame):
            var_names = [str(c) for c in X.columns]
        y_arr = np.asarray(y, dtype=np.float64).reshape(-1)
        X_arr = np.asarray(X, dtype=np.float64, order="C")
        if X_arr.ndim == 1:
            X_arr = X_arr.reshape(-1, 1)
        if X_arr.shape[0] != y_arr.shape[0]:
            msg = f"X has {X_arr.shape[0]} rows but y has {y_arr.shape[0]}."
            raise InvalidInput(msg)

        if add_const:
            X_arr, names, const_name = add_constant(X_arr, var_names)
            self._const_name: str | None = const_name
        else:
            names = (
                [str(v) for v in var_names]
                if var_names is not None
                else [f"x{i}" for i in range(X_arr.shape[1])]
            )
            if len(names) != X_arr.shape[1]:
                raise InvalidInput("var_names must have one entry per column of X")
            self._const_name = None

        complete = np.isfinite(y_arr) & np.all(np.isfinite(X_arr), axis=1)
        if not complete.all() and act == "fail":
            raise InvalidInput(f"{int((~complete).sum())} row(s) contain missing values (na_action='fail')")

        self._var_names = names
        self._na_action = act
        self.row_mask: NDArray[np.bool_] = complete
        self.y: NDArray[np.float64] = y_arr[complete]
        self.X: NDArray[np.float64] = X_arr[complete]
        self.data: pd.DataFrame | None = None
        self._results: EstimationResult | None = None

    @classmethod
    def from_formula(
        cls,
        formula: str,
        data: pd.DataFrame,
        *,
        na_action: str = "omit",
        **kwargs: Any,
    ) -> BaseEstimator:
        """Build the estimator from a formula; keeps ``data`` for cluster_varnames."""
        parsed = parse_formula(formula, data, na_action=na_action)
        model = cls(
            parsed["y"],
            parsed["X"],
            add_const=False,
            var_names=parsed["var_names"],
            na_action=parsed["na_action"],
            **kwargs,
        )
        if parsed["include_intercept"]:
            model._const_name = "Intercept"
        # patsy keeps +-inf rows, which the constructor drops; compose both
        # masks so row_mask stays relative to the caller's data
        full_mask = np.asarray(parsed["row_mask"], dtype=bool).copy()
        full_mask[full_mask] = model.row_mask
        model.row_mask = full_mask
        model.data = data.reset_index(drop=True)
        model._formula = formula
        return model

    @property
    def var_names(self) -> list[str]:
        return list(self._var_names)

    @property
    def results(self) -> EstimationResult:
        if self._results is None:
            raise RuntimeError("Model has not been fit yet.")
        return self._results

    def fit(self, **kwargs: Any) -> EstimationResult:
        """Fit on the retained rows and attach data/mask metadata."""
        res = self.fit_arrays(self.y, self.X, **kwargs)
        res.row_mask = np.asarray(self.row_mask, dtype=bool)
        res.data = self.data
        res.model_info.setdefault("na_action", self._na_action)
        if getattr(self, "_formula", None) is not None:
            res.model_info.setdefault("formula", self._formula)
        self._results = res
        return res

    @abstractmethod
    def fit_arrays(
        self, y: NDArray[np.float64], X: NDArray[np.float64], **kwargs: Any,
    ) -> EstimationResult:
        """Fit on complete arrays and return an unattached result."""
