"""Analytic multi-way cluster-robust covariance (Cameron, Gelbach & Miller).

For D clustering dimensions the estimator sums one sandwich meat per
non-empty subset of the dimensions, with sign ``(-1)^(|S|+1)``:

    V = B ( sum_S sign_S * dfc_S * G_S'G_S / N ) B / N

where ``G_S`` stacks the within-cluster score sums of subset S. The top
interaction may be replaced by a White HC0 meat when it identifies
individual observations (Ma 2014).
"""

from __future__ import annotations

import logging
import warnings
from typing import TYPE_CHECKING, Any

import numpy as np

from . import clusters as cl
from . import linalg as la
from .exceptions import InvalidInput, NumericalWarning
from .sandwich import estfun, leverage_adjust, meat_hc, sandwich

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

    from multiwayvcov.estimators.base import EstimationResult

__all__ = ["check_posdef", "cluster_vcov", "normalize_leverage", "subset_plan"]

_LOGGER = logging.getLogger(__name__)

_LEVERAGE_CODES = {"HC2": 2, "HC3": 3}


def normalize_leverage(leverage: Any) -> int:
    """Map a leverage option to 0 (none), 2 or 3."""
    if leverage is False or leverage is None:
        return 0
    if isinstance(leverage, str):
        key = leverage.strip().upper()
        if key in _LEVERAGE_CODES:
            return _LEVERAGE_CODES[key]
    elif isinstance(leverage, (int, np.integer)) and not isinstance(leverage, bool):
        if int(leverage) in (0, 2, 3):
            return int(leverage)
    msg = f"leverage must be False, 0, 2, 3, 'HC2' or 'HC3'; got {leverage!r}"
    raise InvalidInput(msg)


def subset_plan(
    subsets: Sequence[cl.ClusterSubset],
    use_white: bool | None,
    *,
    explicit_vector: bool = False,
) -> tuple[bool, int]:
    """Resolve the White substitution; returns ``(use_white, n_retained)``."""
    resolved = cl.resolve_use_white(subsets, use_white)
    if explicit_vector and use_white is None and resolved:
        msg = (
            "the top cluster interaction identifies single observations, so it would be "
            "replaced by a White term; with an explicit df_correction vector pass "
            "use_white=True or use_white=False explicitly"
        )
        raise InvalidInput(msg)
    _LOGGER.debug("Use White HC0 in place of the top interaction: %s", resolved)
    n_keep = len(subsets) - 1 if resolved else len(subsets)
    return resolved, n_keep


def check_posdef(V: NDArray[np.float64], force_posdef: bool) -> NDArray[np.float64]:
    """Apply the eigenvalue fix, or warn about negative eigenvalues."""
    if force_posdef:
        return la.force_psd(V)
    vals, _ = la.eigh(V)
    scale = float(np.max(np.abs(vals))) if vals.size else 0.0
    if vals.size and vals[0] < -max(la.eig_tol(V), 1e-10 * scale):
        msg = (
            f"covariance matrix has a negative eigenvalue ({vals[0]:.3g}); "
            "pass force_posdef=True to clip it"
        )
        warnings.warn(msg, NumericalWarning, stacklevel=3)
    return V


def cluster_vcov(
    model: EstimationResult,
    cluster: Any = None,
    *,
    cluster_varnames: Sequence[str] | str | None = None,
    parallel: Any = None,
    use_white: bool | None = None,
    df_correction: bool | Sequence[float] = True,
    leverage: bool | int | str = False,
    force_posdef: bool = False,
) -> NDArray[np.float64]:
    """Multi-way cluster-robust coefficient covariance.

    Parameters
    ----------
    model : EstimationResult
        Fitted OLS or GLM.
    cluster : array-like or DataFrame, optional
        One column per clustering dimension and one row per row of the data
        handed to the fitter; rows dropped for missing values are removed
        using the model's retained-row mask.
    cluster_varnames : str or sequence of str, optional
        Columns of the formula data to cluster on instead of ``cluster``.
    parallel : None, bool, int or Executor
        Run the per-subset aggregation concurrently.
    use_white : bool, optional
        Replace the top interaction by an HC0 term. ``None`` decides
        automatically.
    df_correction : bool or sequence of float
        Small-sample correction per subset; a vector needs ``2^D - 1`` entries.
    leverage : {False, 2, 3, "HC2", "HC3"}
        Scale scores by ``sqrt(1 - h_i)`` (2) or ``1 - h_i`` (3). With more
        than one dimension the single-observation leverage is still used.
    force_posdef : bool
        Clip negative eigenvalues of the result at zero.

    Returns
    -------
    ndarray, shape (k, k)
        Ordered like ``model.params``.
    """
    from multiwayvcov.utils.helpers import map_ordered, resolve_parallel

    lev = normalize_leverage(leverage)
    resolve_parallel(parallel)
    subsets = cl.prepare_subsets(model, cluster, cluster_varnames)
    stats = cl.group_stats(subsets, model.n_obs, model.rank)
    for s, st in zip(subsets, stats):
        _LOGGER.debug("Subset %s: sign=%+d M=%d N=%d K=%d", s.label, s.sign, st.M, st.N, st.K)
    explicit = not isinstance(df_correction, (bool, np.bool_))
    dfc = cl.df_corrections(stats, df_correction)
    white, n_keep = subset_plan(subsets, use_white, explicit_vector=explicit)
    top = subsets[-1]
    kept = list(zip(subsets[:n_keep], dfc[:n_keep]))

    U = estfun(model)
    if lev:
        U = leverage_adjust(model, U, lev)
    N = float(model.n_obs)

    def _term(task: tuple[cl.ClusterSubset, float]) -> NDArray[np.float64]:
        sub, corr = task
        G = la.group_sum(U, sub.codes, sub.n_groups)
        return sub.sign * corr * la.tdot(G) / N

    terms = map_ordered(_term, kept, parallel)
    k = U.shape[1]
    meat = np.zeros((k, k), dtype=np.float64)
    for t in terms:
        meat += t
    if white:
        meat += top.sign * meat_hc(model, "HC0")

    V = la.symmetrize(sandwich(model, meat))
    return check_posdef(V, force_posdef)
