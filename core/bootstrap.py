"""Cluster bootstrap covariance (pairs, residual and wild).

Each subset of the clustering dimensions is bootstrapped on its own:
replicates of the coefficient vector are drawn by resampling (or
reweighting) whole clusters of that subset, and their sample covariance is
added with the subset's inclusion-exclusion sign. No sandwich wrapping is
needed since the replicate covariances are already coefficient covariances.
"""

from __future__ import annotations

import logging
import math
import warnings
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable

import numpy as np

from . import clusters as cl
from . import linalg as la
from .exceptions import EstimationFailure, InvalidInput, NumericalWarning
from .sandwich import vcov_hc
from .vcov import check_posdef, subset_plan

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

    from multiwayvcov.estimators.base import EstimationResult

__all__ = [
    "BOOT_TYPES",
    "DEFAULT_BOOT_ITERATIONS",
    "BootConfig",
    "PairsResampler",
    "ResidualResampler",
    "WildDist",
    "WildResampler",
    "bootstrap_cov",
    "cluster_boot",
    "make_resampler",
]

_LOGGER = logging.getLogger(__name__)

# Default bootstrap replications
DEFAULT_BOOT_ITERATIONS: int = 300

BOOT_TYPES = frozenset({"xy", "pairs", "residual", "wild"})
FAILURE_POLICIES = frozenset({"propagate", "drop"})

# Refit errors that count as a failed replicate
_REFIT_ERRORS = (EstimationFailure, ValueError, np.linalg.LinAlgError, FloatingPointError)


# ---------------------------------------------------------------------
# Wild multipliers
# ---------------------------------------------------------------------


class WildDist:
    """Wild multiplier distribution (mean 0, variance 1).

    Supported distributions
    -----------------------
    rademacher
        Two-point {-1,+1} with equal probability.
    mammen
        Two-point {-(sqrt5-1)/2, (sqrt5+1)/2} with probabilities
        {(sqrt5+1)/(2 sqrt5), (sqrt5-1)/(2 sqrt5)} (Mammen 1993).
    normal / norm
        Standard normal draws.

    A zero-argument callable returning one real number may be passed
    instead of a name; it is called once per cluster. Callables draw from
    their own random source, so seeding does not make them reproducible.
    """

    _ALLOWED_DISTS = frozenset({"rademacher", "mammen", "normal", "norm"})

    def __init__(self, dist: str | Callable[[], float] = "rademacher") -> None:
        if callable(dist):
            self.name = getattr(dist, "__name__", "custom")
            self.func: Callable[[], float] | None = dist
            return
        name = str(dist).lower().strip()
        if name not in self._ALLOWED_DISTS:
            msg = f"Unknown wild distribution: {dist!r}. Allowed: {sorted(self._ALLOWED_DISTS)} or a callable"
            raise InvalidInput(msg)
        self.name = "normal" if name == "norm" else name
        self.func = None

    def __repr__(self) -> str:  # pragma: no cover - trivial
        return f"WildDist({self.name!r})"

    def draw(self, size: int, rng: np.random.Generator) -> NDArray[np.float64]:
        """Draw ``size`` multipliers, one per cluster."""
        if self.func is not None:
            out = np.empty(size, dtype=np.float64)
            for g in range(size):
                out[g] = float(self.func())
            return out
        if self.name == "rademacher":
            return rng.choice(np.array([-1.0, 1.0]), size=size).astype(np.float64, copy=False)
        if self.name == "normal":
            return rng.standard_normal(size).astype(np.float64, copy=False)
        s5 = math.sqrt(5.0)
        a = -(s5 - 1.0) / 2.0
        b = (s5 + 1.0) / 2.0
        pa = (s5 + 1.0) / (2.0 * s5)
        return rng.choice(
            np.array([a, b], dtype=np.float64),
            size=size,
            p=np.array([pa, 1.0 - pa], dtype=np.float64),
        ).astype(np.float64, copy=False)


# ---------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------


@dataclass(frozen=True)
class BootConfig:
    """Bootstrap settings for :func:`cluster_boot`.

    Attributes
    ----------
    n_boot : int
        Replicates per cluster subset (at least 2).
    boot_type : {"xy", "pairs", "residual", "wild"}
        Resampling scheme; "pairs" is an alias of "xy".
    wild_dist : str or callable
        Multiplier distribution for the wild bootstrap, see :class:`WildDist`.
    seed : int, optional
        Seed of the parent random generator.
    on_failure : {"propagate", "drop"}
        What to do when a replicate refit fails.
    """

    n_boot: int = DEFAULT_BOOT_ITERATIONS
    boot_type: str = "xy"
    wild_dist: str | Callable[[], float] = "rademacher"
    seed: int | None = None
    on_failure: str = "propagate"

    def __post_init__(self) -> None:
        if isinstance(self.n_boot, bool) or not isinstance(self.n_boot, (int, np.integer)):
            raise InvalidInput(f"n_boot must be an integer; got {self.n_boot!r}")
        if int(self.n_boot) < 2:
            raise InvalidInput(f"n_boot must be at least 2; got {self.n_boot}")
        bt = str(self.boot_type).lower().strip()
        if bt not in BOOT_TYPES:
            msg = f"boot_type must be one of {sorted(BOOT_TYPES)}; got {self.boot_type!r}"
            raise InvalidInput(msg)
        object.__setattr__(self, "boot_type", "xy" if bt == "pairs" else bt)
        # validates the distribution name early
        WildDist(self.wild_dist)
        pol = str(self.on_failure).lower().strip()
        if pol not in FAILURE_POLICIES:
            msg = f"on_failure must be one of {sorted(FAILURE_POLICIES)}; got {self.on_failure!r}"
            raise InvalidInput(msg)
        object.__setattr__(self, "on_failure", pol)
        if self.seed is not None and (
            isinstance(self.seed, bool) or not isinstance(self.seed, (int, np.integer))
        ):
            raise InvalidInput(f"seed must be an integer or None; got {self.seed!r}")


# ---------------------------------------------------------------------
# Resamplers
# ---------------------------------------------------------------------


def _cluster_members(codes: NDArray[np.int64], n_groups: int) -> list[NDArray[np.int64]]:
    order = np.argsort(codes, kind="stable")
    bounds = np.cumsum(np.bincount(codes, minlength=n_groups))[:-1]
    return np.split(order, bounds)


class _Resampler:
    """Shared state: the fitted model and the subset's cluster membership."""

    kind = "base"

    def __init__(self, model: EstimationResult, subset: cl.ClusterSubset) -> None:
        self.model = model
        self.subset = subset
        self.n_groups = int(subset.n_groups)
        self.members = _cluster_members(subset.codes, self.n_groups)

    def replicate(self, rng: np.random.Generator) -> NDArray[np.float64]:
        raise NotImplementedError


class PairsResampler(_Resampler):
    """Resample whole clusters of (y, X) rows with replacement and refit."""

    kind = "xy"

    def replicate(self, rng: np.random.Generator) -> NDArray[np.float64]:
        drawn = rng.integers(0, self.n_groups, size=self.n_groups)
        rows = np.concatenate([self.members[g] for g in drawn])
        return self.model.refit(rows=rows).coef


class ResidualResampler(_Resampler):
    """Keep X fixed; move residual blocks of drawn clusters into each cluster slot.

    A drawn block longer than its slot is truncated, a shorter one is
    recycled.
    """

    kind = "residual"

    def __init__(self, model: EstimationResult, subset: cl.ClusterSubset) -> None:
        super().__init__(model, subset)
        self.fitted = np.asarray(model.fitted, dtype=np.float64)
        self.resid = np.asarray(model.resid, dtype=np.float64)

    def replicate(self, rng: np.random.Generator) -> NDArray[np.float64]:
        drawn = rng.integers(0, self.n_groups, size=self.n_groups)
        y_star = self.fitted.copy()
        for slot, g in zip(self.members, drawn):
            y_star[slot] += np.resize(self.resid[self.members[g]], slot.shape[0])
        return self.model.refit(y=y_star).coef


class WildResampler(_Resampler):
    """Keep the data fixed; flip residuals with one multiplier per cluster."""

    kind = "wild"

    def __init__(
        self, model: EstimationResult, subset: cl.ClusterSubset, dist: WildDist,
    ) -> None:
        super().__init__(model, subset)
        self.dist = dist
        self.fitted = np.asarray(model.fitted, dtype=np.float64)
        self.resid = np.asarray(model.resid, dtype=np.float64)

    def replicate(self, rng: np.random.Generator) -> NDArray[np.float64]:
        v = self.dist.draw(self.n_groups, rng)
        return self.model.refit(y=self.fitted + v[self.subset.codes] * self.resid).coef


def make_resampler(
    model: EstimationResult, subset: cl.ClusterSubset, config: BootConfig,
) -> _Resampler:
    """Resampler for ``config.boot_type``."""
    if config.boot_type == "xy":
        return PairsResampler(model, subset)
    if config.boot_type == "residual":
        return ResidualResampler(model, subset)
    return WildResampler(model, subset, WildDist(config.wild_dist))


# ---------------------------------------------------------------------
# Replicates and covariance
# ---------------------------------------------------------------------


def bootstrap_cov(coefs: NDArray[np.float64]) -> NDArray[np.float64]:
    """Sample covariance (ddof=1) of replicate coefficients, shape (R, k)."""
    C = np.asarray(coefs, dtype=np.float64)
    if C.ndim != 2 or C.shape[0] < 2:
        raise EstimationFailure(f"need at least 2 bootstrap replicates; got shape {C.shape}")
    return np.atleast_2d(np.cov(C, rowvar=False, ddof=1))


@dataclass(frozen=True)
class _SubsetTask:
    subset: cl.ClusterSubset
    resampler: _Resampler
    seed: np.random.SeedSequence
    n_boot: int
    on_failure: str


def _bootstrap_subset(task: _SubsetTask) -> tuple[NDArray[np.float64], int]:
    """Run the replicates of one subset; returns (sign * cov, n_failed)."""
    rng = np.random.default_rng(task.seed)
    label = task.subset.label
    coefs: list[NDArray[np.float64]] = []
    failed = 0
    for r in range(task.n_boot):
        try:
            b = task.resampler.replicate(rng)
            if not np.all(np.isfinite(b)):
                raise EstimationFailure("non-finite coefficients")
        except _REFIT_ERRORS as exc:
            if task.on_failure == "propagate":
                msg = f"bootstrap replicate {r + 1} for cluster subset {label!r} failed: {exc}"
                raise EstimationFailure(msg) from exc
            _LOGGER.debug("Dropping replicate %d of subset %s: %s", r + 1, label, exc)
            failed += 1
            continue
        coefs.append(b)
    if len(coefs) < 2:
        msg = (
            f"only {len(coefs)} of {task.n_boot} bootstrap replicates for cluster subset "
            f"{label!r} succeeded; at least 2 are required"
        )
        raise EstimationFailure(msg)
    return task.subset.sign * bootstrap_cov(np.vstack(coefs)), failed


def cluster_boot(
    model: EstimationResult,
    cluster: Any = None,
    *,
    cluster_varnames: Sequence[str] | str | None = None,
    boot: BootConfig | None = None,
    parallel: Any = None,
    use_white: bool | None = None,
    force_posdef: bool = False,
) -> NDArray[np.float64]:
    """Multi-way cluster bootstrap coefficient covariance.

    Parameters
    ----------
    model : EstimationResult
        Fitted OLS or GLM; its estimator is used for the refits.
    cluster, cluster_varnames
        Clustering dimensions, as for :func:`~multiwayvcov.core.vcov.cluster_vcov`.
    boot : BootConfig, optional
        Replicates, scheme, wild distribution, seed and failure policy.
    parallel : None, bool, int or Executor
        Bootstrap the cluster subsets concurrently. Every subset draws from
        its own child generator, so results do not depend on this option.
    use_white : bool, optional
        Replace the top interaction by ``vcov_hc(model, "HC0")``.
    force_posdef : bool
        Clip negative eigenvalues of the result at zero.

    Notes
    -----
    The residual and wild schemes build responses ``fitted + residual``;
    they suit gaussian models. For a binomial or poisson GLM the perturbed
    responses usually leave the family's support and the refits fail.
    """
    from multiwayvcov.utils.helpers import map_ordered, resolve_parallel

    config = BootConfig() if boot is None else boot
    if not isinstance(config, BootConfig):
        raise InvalidInput(f"boot must be a BootConfig; got {type(config).__name__}")
    resolve_parallel(parallel)
    if model.model is None:
        raise InvalidInput("cluster_boot needs a result with its estimator attached for refits")
    subsets = cl.prepare_subsets(model, cluster, cluster_varnames)
    white, n_keep = subset_plan(subsets, use_white)
    top = subsets[-1]

    seeds = np.random.SeedSequence(config.seed).spawn(n_keep)
    tasks = [
        _SubsetTask(
            subset=s,
            resampler=make_resampler(model, s, config),
            seed=ss,
            n_boot=int(config.n_boot),
            on_failure=config.on_failure,
        )
        for s, ss in zip(subsets[:n_keep], seeds)
    ]
    _LOGGER.debug(
        "Bootstrapping %d subset(s): type=%s R=%d", len(tasks), config.boot_type, config.n_boot,
    )
    results = map_ordered(_bootstrap_subset, tasks, parallel)

    k = len(model.params)
    V = np.zeros((k, k), dtype=np.float64)
    dropped = 0
    for term, failed in results:
        V += term
        dropped += failed
    if white:
        V += top.sign * vcov_hc(model, "HC0")
    if dropped:
        msg = f"{dropped} bootstrap replicate(s) failed and were dropped"
        warnings.warn(msg, NumericalWarning, stacklevel=2)

    return check_posdef(la.symmetrize(V), force_posdef)
