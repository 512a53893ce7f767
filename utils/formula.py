"""Formula front end built on Patsy.

Rows with missing values in any model variable are dropped the way R's
``na.omit`` / ``na.exclude`` drop them. Whichever action is requested, the
result is summarized once as a boolean mask of retained rows over the
original data, which is all the covariance code needs to line cluster labels
up with the estimation sample.
"""

from __future__ import annotations

import logging
from typing import Any

import numpy as np
import pandas as pd
import patsy

from multiwayvcov.core.exceptions import InvalidInput

__all__ = ["NA_ACTIONS", "parse_formula"]

_LOGGER = logging.getLogger(__name__)

NA_ACTIONS = frozenset({"omit", "exclude", "fail"})


def parse_formula(
    formula: str,
    data: pd.DataFrame,
    *,
    na_action: str = "omit",
) -> dict[str, Any]:
    """Build response, design matrix and retained-row mask from a formula.

    Parameters
    ----------
    formula : str
        Patsy/R-style formula such as ``"y ~ x1 + x2"``.
    data : pandas.DataFrame
        Data holding every variable named in the formula.
    na_action : {"omit", "exclude", "fail"}
        "omit" and "exclude" drop incomplete rows; "fail" rejects them.

    Returns
    -------
    dict
        ``y`` (n_obs,), ``X`` (n_obs, k), ``var_names``, ``row_mask``
        (len(data),), ``n_total``, ``include_intercept``, ``na_action``.

    """
    if not isinstance(data, pd.DataFrame):
        raise InvalidInput("data must be a pandas DataFrame")
    if "~" not in formula:
        raise InvalidInput(f"formula must have the form 'y ~ x'; got {formula!r}")
    act = str(na_action).strip().lower()
    if act not in NA_ACTIONS:
        msg = f"na_action must be one of {sorted(NA_ACTIONS)}; got {na_action!r}"
        raise InvalidInput(msg)

    df = data.reset_index(drop=True)
    na = patsy.NAAction(on_NA="raise" if act == "fail" else "drop")
    try:
        y_df, X_df = patsy.dmatrices(formula, df, NA_action=na, return_type="dataframe")
    except patsy.PatsyError as exc:
        raise InvalidInput(f"could not build model matrices for {formula!r}: {exc}") from exc
    if y_df.shape[1] != 1:
        msg = f"formula must have a single response column; got {list(y_df.columns)}"
        raise InvalidInput(msg)

    row_mask = np.zeros(df.shape[0], dtype=bool)
    row_mask[y_df.index.to_numpy()] = True
    n_dropped = int(df.shape[0] - row_mask.sum())
    if n_dropped:
        _LOGGER.debug("%d observation(s) deleted due to missingness (na_action=%s)", n_dropped, act)

    var_names = list(X_df.design_info.column_names)
    return {
        "y": y_df.iloc[:, 0].to_numpy(dtype=np.float64),
        "X": np.asarray(X_df.to_numpy(dtype=np.float64), order="C"),
        "y_name": str(y_df.columns[0]),
        "var_names": var_names,
        "row_mask": row_mask,
        "n_total": int(df.shape[0]),
        "include_intercept": "Intercept" in var_names,
        "na_action": act,
    }
