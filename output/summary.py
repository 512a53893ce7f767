"""Coefficient tables for cluster-robust covariance matrices.

``coeftest`` mirrors the way ``lmtest::coeftest`` is paired with these
estimators in R: estimates, standard errors from the supplied covariance,
test statistics and two-sided p-values.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, cast

import numpy as np
import pandas as pd
from scipy import stats
from tabulate import tabulate

from multiwayvcov.core.exceptions import InvalidInput
from multiwayvcov.core.sandwich import vcov_hc
from multiwayvcov.utils.helpers import square_frame

if TYPE_CHECKING:
    from multiwayvcov.estimators.base import EstimationResult

__all__ = ["coeftest", "coeftest_table", "vcov_frame"]


def vcov_frame(model: EstimationResult, vcov: Any) -> pd.DataFrame:
    """Label a covariance matrix with the model's coefficient names."""
    return square_frame(vcov, model.var_names)


def coeftest(model: EstimationResult, vcov: Any = None) -> pd.DataFrame:
    """Coefficient table with Wald tests based on ``vcov``.

    Parameters
    ----------
    model : EstimationResult
        Fitted model.
    vcov : array-like, optional
        Coefficient covariance, e.g. from ``cluster_vcov`` or
        ``cluster_boot``. Defaults to ``vcov_hc(model, "HC0")``.

    Returns
    -------
    DataFrame indexed by coefficient name with columns ``Estimate``,
    ``Std. Error``, ``t value`` (``z value`` for non-gaussian families) and
    ``Pr(>|t|)`` (``Pr(>|z|)``). Gaussian models use the t distribution with
    ``n_obs - rank`` degrees of freedom, other families the normal.
    """
    V = vcov_hc(model, "HC0") if vcov is None else vcov_frame(model, vcov).to_numpy()
    d = np.diag(V)
    if np.any(d < 0.0):
        bad = [n for n, v in zip(model.var_names, d) if v < 0.0]
        raise InvalidInput(f"covariance has negative variances for {bad}")
    se = np.sqrt(d)
    est = model.coef
    with np.errstate(divide="ignore", invalid="ignore"):
        tstat = est / se
    if model.family == "gaussian":
        df = model.df_resid
        if df <= 0:
            raise InvalidInput("coeftest needs n_obs > rank for the t distribution")
        pval = 2.0 * stats.t.sf(np.abs(tstat), df)
        stat_col, p_col = "t value", "Pr(>|t|)"
    else:
        pval = 2.0 * stats.norm.sf(np.abs(tstat))
        stat_col, p_col = "z value", "Pr(>|z|)"
    return pd.DataFrame(
        {"Estimate": est, "Std. Error": se, stat_col: tstat, p_col: pval},
        index=pd.Index(model.var_names, name="term"),
    )


def coeftest_table(
    model: EstimationResult,
    vcov: Any = None,
    *,
    output: str = "text",  # {"text","latex"}
    latex_booktabs: bool = True,
    floatfmt: str = ".6g",
) -> str:
    """Render :func:`coeftest` as a text or LaTeX table."""
    if output not in {"text", "latex"}:
        raise InvalidInput("output must be either 'text' or 'latex'.")
    table = coeftest(model, vcov)
    headers = ["", *table.columns]
    rows = [[name, *row] for name, row in zip(table.index, table.to_numpy())]
    if output == "latex":
        tablefmt = "latex_booktabs" if latex_booktabs else "latex"
        return cast("str", tabulate(rows, headers=headers, floatfmt=floatfmt, tablefmt=tablefmt))
    return cast("str", tabulate(rows, headers=headers, floatfmt=floatfmt))
