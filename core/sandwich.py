"""Sandwich-estimator building blocks.

Conventions follow R's ``sandwich`` package so results line up with
``vcovHC`` / ``meatHC`` / ``sandwich`` there:

* ``estfun``: per-observation score contributions
  ``working_resid * working_weights * x_i / dispersion`` (for OLS simply
  ``resid * x_i``), an (n x k) matrix.
* ``bread``: ``(X'WX)^{-1} * n * dispersion``, i.e. ``(X'X/n)^{-1}`` for OLS.
* ``sandwich``: ``bread @ meat @ bread / n``.
* ``meat_hc``: ``sum_i omega_i u_i u_i' / n`` with the HC0-HC3 weights.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np

from . import linalg as la
from .exceptions import EstimationFailure, InvalidInput

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from multiwayvcov.estimators.base import EstimationResult

__all__ = [
    "HC_TYPES",
    "bread",
    "estfun",
    "leverage_adjust",
    "meat_hc",
    "sandwich",
    "vcov_hc",
]

HC_TYPES = ("HC0", "HC1", "HC2", "HC3")


def _working(model: EstimationResult) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    n = model.n_obs
    w = model.working_weights
    w = np.ones(n, dtype=np.float64) if w is None else np.asarray(w, dtype=np.float64)
    r = model.working_resid
    r = model.resid if r is None else np.asarray(r, dtype=np.float64)
    return r, w


def estfun(model: EstimationResult) -> NDArray[np.float64]:
    """Score (estimating function) contributions, shape (n_obs, k)."""
    r, w = _working(model)
    disp = float(model.dispersion)
    if not np.isfinite(disp) or disp <= 0.0:
        raise EstimationFailure(f"estfun: invalid dispersion {disp!r}")
    return (model.X * (r * w / disp)[:, None]).astype(np.float64)


def bread(model: EstimationResult) -> NDArray[np.float64]:
    """Bread matrix (inverse information scaled by n), shape (k, k)."""
    _r, w = _working(model)
    inv = la.xtwx_inv(model.X, weights=None if model.working_weights is None else w)
    return inv * float(model.n_obs) * float(model.dispersion)


def sandwich(
    model: EstimationResult,
    meat: NDArray[np.float64],
    *,
    bread_: NDArray[np.float64] | None = None,
) -> NDArray[np.float64]:
    """Combine bread and meat: ``B M B / n``."""
    B = bread(model) if bread_ is None else np.asarray(bread_, dtype=np.float64)
    M = np.asarray(meat, dtype=np.float64)
    k = B.shape[0]
    if M.shape != (k, k):
        msg = f"meat must be {k}x{k} to match the bread; got {M.shape}"
        raise InvalidInput(msg)
    return (B @ M @ B) / float(model.n_obs)


def leverage_adjust(
    model: EstimationResult, scores: NDArray[np.float64], leverage: int,
) -> NDArray[np.float64]:
    """MacKinnon-White leverage scaling of score rows.

    With ``h_i = 1 - x_i'(X'X)^{-1}x_i`` (one minus the hat value), HC3-style
    divides each score row by ``h_i`` and HC2-style by ``sqrt(h_i)``.
    """
    if leverage not in (2, 3):
        raise InvalidInput(f"leverage must be 2 or 3; got {leverage!r}")
    h = 1.0 - la.hat_diag(model.X)
    tol = np.sqrt(np.finfo(float).eps)
    if np.any(h <= tol):
        bad = int(np.sum(h <= tol))
        msg = f"{bad} observation(s) have leverage one; HC{leverage} weights are undefined"
        raise EstimationFailure(msg)
    denom = h if leverage == 3 else np.sqrt(h)
    return scores / denom[:, None]


def meat_hc(model: EstimationResult, type: str = "HC0") -> NDArray[np.float64]:  # noqa: A002
    """Heteroskedasticity-consistent meat ``U'U/n`` with HC weights."""
    t = str(type).upper()
    if t not in HC_TYPES:
        msg = f"type must be one of {HC_TYPES}; got {type!r}"
        raise InvalidInput(msg)
    U = estfun(model)
    n = float(model.n_obs)
    if t == "HC2":
        U = leverage_adjust(model, U, 2)
    elif t == "HC3":
        U = leverage_adjust(model, U, 3)
    meat = la.tdot(U) / n
    if t == "HC1":
        df = model.n_obs - int(model.rank)
        if df <= 0:
            raise InvalidInput("HC1 requires n_obs > rank")
        meat = meat * (n / df)
    return meat


def vcov_hc(model: EstimationResult, type: str = "HC0") -> NDArray[np.float64]:  # noqa: A002
    """Heteroskedasticity-consistent coefficient covariance."""
    return sandwich(model, meat_hc(model, type))
