"""Generalized linear models fitted by iteratively reweighted least squares.

Canonical links only: gaussian/identity, binomial/logit and poisson/log.
The working residuals, working weights and dispersion stored on the result
are the quantities R's ``sandwich`` package uses for ``estfun`` and
``bread`` of a ``glm`` object.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import numpy as np
import pandas as pd
import scipy.linalg as sla
from scipy.special import expit

from multiwayvcov.core import linalg as la
from multiwayvcov.core.exceptions import EstimationFailure, InvalidInput

from .base import BaseEstimator, EstimationResult

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

__all__ = ["FAMILIES", "GLM"]

_LOGGER = logging.getLogger(__name__)

_MU_EPS = 1e-10


class _Family:
    name = "gaussian"
    fixed_dispersion = False

    def validate(self, y: NDArray[np.float64]) -> None:
        return None

    def start(self, y: NDArray[np.float64]) -> NDArray[np.float64]:
        return y.copy()

    def link(self, mu: NDArray[np.float64]) -> NDArray[np.float64]:
        return mu

    def linkinv(self, eta: NDArray[np.float64]) -> NDArray[np.float64]:
        return eta

    def mu_eta(self, eta: NDArray[np.float64]) -> NDArray[np.float64]:
        return np.ones_like(eta)

    def variance(self, mu: NDArray[np.float64]) -> NDArray[np.float64]:
        return np.ones_like(mu)

    def deviance(self, y: NDArray[np.float64], mu: NDArray[np.float64]) -> float:
        return float(np.sum((y - mu) ** 2))


class _Binomial(_Family):
    name = "binomial"
    fixed_dispersion = True

    def validate(self, y: NDArray[np.float64]) -> None:
        if np.any((y < 0.0) | (y > 1.0)):
            raise InvalidInput("binomial response must lie in [0, 1]")

    def start(self, y: NDArray[np.float64]) -> NDArray[np.float64]:
        return (y + 0.5) / 2.0

    def link(self, mu: NDArray[np.float64]) -> NDArray[np.float64]:
        return np.log(mu / (1.0 - mu))

    def linkinv(self, eta: NDArray[np.float64]) -> NDArray[np.float64]:
        return np.clip(expit(eta), _MU_EPS, 1.0 - _MU_EPS)

    def mu_eta(self, eta: NDArray[np.float64]) -> NDArray[np.float64]:
        p = self.linkinv(eta)
        return p * (1.0 - p)

    def variance(self, mu: NDArray[np.float64]) -> NDArray[np.float64]:
        return mu * (1.0 - mu)

    def deviance(self, y: NDArray[np.float64], mu: NDArray[np.float64]) -> float:
        with np.errstate(divide="ignore", invalid="ignore"):
            t1 = np.where(y > 0, y * np.log(y / mu), 0.0)
            t2 = np.where(y < 1, (1.0 - y) * np.log((1.0 - y) / (1.0 - mu)), 0.0)
        return float(2.0 * np.sum(t1 + t2))


class _Poisson(_Family):
    name = "poisson"
    fixed_dispersion = True

    def validate(self, y: NDArray[np.float64]) -> None:
        if np.any(y < 0.0):
            raise InvalidInput("poisson response must be non-negative")

    def start(self, y: NDArray[np.float64]) -> NDArray[np.float64]:
        return y + 0.1

    def link(self, mu: NDArray[np.float64]) -> NDArray[np.float64]:
        return np.log(mu)

    def linkinv(self, eta: NDArray[np.float64]) -> NDArray[np.float64]:
        return np.maximum(np.exp(eta), _MU_EPS)

    def mu_eta(self, eta: NDArray[np.float64]) -> NDArray[np.float64]:
        return self.linkinv(eta)

    def variance(self, mu: NDArray[np.float64]) -> NDArray[np.float64]:
        return mu

    def deviance(self, y: NDArray[np.float64], mu: NDArray[np.float64]) -> float:
        with np.errstate(divide="ignore", invalid="ignore"):
            t = np.where(y > 0, y * np.log(y / mu), 0.0)
        return float(2.0 * np.sum(t - (y - mu)))


FAMILIES: dict[str, type[_Family]] = {
    "gaussian": _Family,
    "binomial": _Binomial,
    "logit": _Binomial,
    "poisson": _Poisson,
}


class GLM(BaseEstimator):
    """Generalized linear model (IRLS, canonical link).

    Parameters
    ----------
    y, X, add_const, var_names, na_action
        As for :class:`~multiwayvcov.estimators.ols.OLS`.
    family : {"gaussian", "binomial", "poisson"}
        Response distribution; the link is the canonical one.

    Notes
    -----
    Convergence follows R's ``glm.fit``: stop when
    ``|dev - dev_old| / (|dev| + 0.1) < tol``. Failing to converge within
    ``max_iter`` iterations raises :class:`EstimationFailure`, which the
    cluster bootstrap treats as a failed replicate.
    """

    estimator_name = "GLM"

    def __init__(
        self,
        y: Any,
        X: Any,
        *,
        family: str = "gaussian",
        add_const: bool = True,
        var_names: Sequence[str] | None = None,
        na_action: str = "omit",
    ) -> None:
        fam = str(family).strip().lower()
        if fam not in FAMILIES:
            msg = f"family must be one of {sorted(FAMILIES)}; got {family!r}"
            raise InvalidInput(msg)
        self.family = FAMILIES[fam]()
        super().__init__(y, X, add_const=add_const, var_names=var_names, na_action=na_action)

    def fit_arrays(
        self,
        y: NDArray[np.float64],
        X: NDArray[np.float64],
        *,
        max_iter: int = 25,
        tol: float = 1e-8,
    ) -> EstimationResult:
        """Fit by IRLS on complete arrays."""
        fam = self.family
        Xd = np.asarray(X, dtype=np.float64)
        yd = np.asarray(y, dtype=np.float64).reshape(-1)
        if not (np.all(np.isfinite(Xd)) and np.all(np.isfinite(yd))):
            raise EstimationFailure("GLM: non-finite values in y or X")
        fam.validate(yd)
        n, k = Xd.shape
        rank = la.qr_rank(Xd)
        if rank < k:
            msg = f"GLM: design matrix is rank deficient (rank {rank} < {k} columns, n={n})"
            raise EstimationFailure(msg)

        mu = fam.start(yd)
        eta = fam.link(mu)
        dev_old = fam.deviance(yd, mu)
        b = np.zeros(k, dtype=np.float64)
        converged = False
        it = 0
        for it in range(1, int(max_iter) + 1):
            d = fam.mu_eta(eta)
            z = eta + (yd - mu) / d
            w = d * d / fam.variance(mu)
            b = self._wls(z, Xd, w)
            eta = Xd @ b
            mu = fam.linkinv(eta)
            dev = fam.deviance(yd, mu)
            if not np.isfinite(dev):
                raise EstimationFailure(f"GLM ({fam.name}): deviance became non-finite at iteration {it}")
            if abs(dev - dev_old) / (abs(dev) + 0.1) < tol:
                converged = True
                break
            dev_old = dev
        if not converged:
            msg = f"GLM ({fam.name}): IRLS did not converge in {max_iter} iterations"
            raise EstimationFailure(msg)
        _LOGGER.debug("GLM (%s) converged in %d iterations", fam.name, it)

        d = fam.mu_eta(eta)
        w = d * d / fam.variance(mu)
        wres = (yd - mu) / d
        if fam.fixed_dispersion:
            dispersion = 1.0
        else:
            dispersion = float(np.sum((wres * w) ** 2) / np.sum(w))
        return EstimationResult(
            params=pd.Series(b, index=self.var_names, name="coef"),
            X=Xd,
            y=yd,
            fitted=mu,
            rank=rank,
            family=fam.name,
            working_weights=w,
            working_resid=wres,
            dispersion=dispersion,
            model=self,
            model_info={"Estimator": self.estimator_name, "family": fam.name, "iterations": it},
        )

    @staticmethod
    def _wls(
        z: NDArray[np.float64], X: NDArray[np.float64], w: NDArray[np.float64],
    ) -> NDArray[np.float64]:
        if not np.all(np.isfinite(w)) or np.any(w <= 0.0):
            raise EstimationFailure("GLM: non-positive or non-finite working weights")
        sw = np.sqrt(w)
        try:
            Q, R = sla.qr(X * sw[:, None], mode="economic")
            return sla.solve_triangular(R, Q.T @ (z * sw), lower=False)
        except (np.linalg.LinAlgError, ValueError) as exc:
            raise EstimationFailure(f"GLM: weighted least squares step failed: {exc}") from exc
