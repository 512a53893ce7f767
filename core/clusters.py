"""Cluster tables and the CGM (2011) inclusion-exclusion bookkeeping.

Multi-way clustering on D dimensions combines ``2^D - 1`` one-way clustered
terms: one per non-empty subset of the dimensions, with subsets of odd size
added and subsets of even size subtracted. For firm and year this gives
firm + year - firm*year. The helpers here build the ordered subset list,
their interaction labels and group counts, the per-subset degrees-of-freedom
corrections, and the Ma (2014) rule for replacing the top-order interaction
with a White (1980) HC0 term.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from itertools import combinations
from typing import TYPE_CHECKING, Any

import numpy as np
import pandas as pd

from .exceptions import InvalidInput

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

    from multiwayvcov.estimators.base import EstimationResult

__all__ = [
    "ClusterSubset",
    "GroupStats",
    "align_cluster_table",
    "build_subsets",
    "check_cluster_labels",
    "coerce_cluster_table",
    "df_corrections",
    "encode_labels",
    "group_stats",
    "prepare_subsets",
    "resolve_cluster_table",
    "resolve_use_white",
]

_LOGGER = logging.getLogger(__name__)


# ---------------------------------------------------------------------
# Data containers
# ---------------------------------------------------------------------


@dataclass(frozen=True, eq=False)
class ClusterSubset:
    """One non-empty subset of the clustering dimensions.

    Attributes
    ----------
    dims : tuple[int, ...]
        Increasing 0-based indices of the original cluster columns.
    names : tuple[str, ...]
        Column names of those dimensions.
    sign : int
        +1 for subsets of odd size, -1 for even size.
    labels : ndarray, shape (n,)
        Cluster label of every observation (the original column for size-1
        subsets, a row-wise concatenation for interactions).
    codes : ndarray of int64, shape (n,)
        Dense group codes 0..M-1 of ``labels``.
    n_groups : int
        Number of distinct labels M.
    is_top : bool
        True for the last generated subset (the full D-way interaction).
    """

    dims: tuple[int, ...]
    names: tuple[str, ...]
    sign: int
    labels: NDArray[Any]
    codes: NDArray[np.int64]
    n_groups: int
    is_top: bool = False

    @property
    def size(self) -> int:
        return len(self.dims)

    @property
    def label(self) -> str:
        return "*".join(self.names)

    def __repr__(self) -> str:  # pragma: no cover - convenience only
        return (
            f"ClusterSubset({self.label!r}, dims={self.dims}, sign={self.sign:+d}, "
            f"M={self.n_groups}, top={self.is_top})"
        )


@dataclass(frozen=True)
class GroupStats:
    """Group count M, observation count N and model rank K of one subset."""

    M: int
    N: int
    K: int

    def dfc(self, enabled: bool = True) -> float:
        """Petersen (2009) / Stata correction (M/(M-1)) * ((N-1)/(N-K))."""
        if not enabled:
            return 1.0
        if self.M < 2:
            msg = (
                f"degrees-of-freedom correction needs at least 2 clusters; got M={self.M}. "
                "Pass df_correction=False to skip it."
            )
            raise InvalidInput(msg)
        if self.N <= self.K:
            msg = f"degrees-of-freedom correction needs N > K; got N={self.N}, K={self.K}."
            raise InvalidInput(msg)
        return (self.M / (self.M - 1.0)) * ((self.N - 1.0) / (self.N - self.K))


# ---------------------------------------------------------------------
# Cluster table handling
# ---------------------------------------------------------------------


def _is_column_like(obj: Any) -> bool:
    # tuples are labels, not columns
    return isinstance(obj, (list, np.ndarray, pd.Series, pd.Index))


def check_cluster_labels(table: pd.DataFrame) -> pd.DataFrame:
    """Reject missing cluster labels."""
    if bool(table.isna().to_numpy().any()):
        bad = [str(c) for c in table.columns[table.isna().any(axis=0)]]
        raise InvalidInput(f"cluster contains missing labels in column(s) {bad}")
    return table


def coerce_cluster_table(cluster: Any, *, allow_missing: bool = False) -> pd.DataFrame:
    """Coerce a cluster specification into an (n x D) DataFrame.

    Accepts a DataFrame, a Series, a 1-D or 2-D array, or a list/tuple of
    equally long label columns given as lists, arrays or Series. A list
    whose items are tuples (or scalars) is a single column of labels. Labels
    may be any hashable values; missing labels are rejected unless
    ``allow_missing`` is set, in which case the caller checks them after
    aligning the table with the estimation sample.
    """
    if cluster is None:
        raise InvalidInput("cluster must not be None")
    if isinstance(cluster, pd.DataFrame):
        table = cluster.reset_index(drop=True)
    elif isinstance(cluster, pd.Series):
        name = cluster.name if cluster.name is not None else "cluster"
        table = cluster.reset_index(drop=True).to_frame(name=name)
    elif isinstance(cluster, np.ndarray):
        if cluster.ndim == 1:
            table = pd.DataFrame({"cluster": cluster})
        elif cluster.ndim == 2:
            table = pd.DataFrame(cluster)
        else:
            raise InvalidInput(f"cluster array must be 1-D or 2-D; got ndim={cluster.ndim}")
    elif isinstance(cluster, (list, tuple)):
        if len(cluster) > 0 and all(_is_column_like(c) for c in cluster):
            lengths = {len(c) for c in cluster}
            if len(lengths) != 1:
                msg = f"cluster columns have different lengths: {sorted(lengths)}"
                raise InvalidInput(msg)
            table = pd.DataFrame({j: list(c) for j, c in enumerate(cluster)})
        else:
            table = pd.DataFrame({"cluster": list(cluster)})
    else:
        raise InvalidInput(f"Unsupported cluster type: {type(cluster).__name__}")

    if table.shape[1] < 1:
        raise InvalidInput("cluster must have at least one dimension (D >= 1)")
    if table.shape[0] == 0:
        raise InvalidInput("cluster must have at least one row")
    if not allow_missing:
        check_cluster_labels(table)
    table.columns = [str(c) for c in table.columns]
    return table


def resolve_cluster_table(
    model: EstimationResult,
    cluster: Any = None,
    cluster_varnames: Sequence[str] | str | None = None,
) -> pd.DataFrame:
    """Return the cluster table from explicit labels or from model data columns.

    The table still covers all ``model.n_total`` rows; missing labels are
    left for the check after alignment.
    """
    if cluster is None and cluster_varnames is None:
        raise InvalidInput("Either cluster or cluster_varnames must be specified.")
    if cluster is not None and cluster_varnames is not None:
        raise InvalidInput("Specify only one of cluster or cluster_varnames.")
    if cluster is not None:
        return coerce_cluster_table(cluster, allow_missing=True)

    names = [cluster_varnames] if isinstance(cluster_varnames, str) else list(cluster_varnames)
    data = getattr(model, "data", None)
    if not isinstance(data, pd.DataFrame):
        raise InvalidInput(
            "cluster_varnames requires a model built from a DataFrame (e.g. OLS.from_formula).",
        )
    missing = [nm for nm in names if nm not in data.columns]
    if missing:
        msg = f"All values of cluster_varnames must be columns of the model data; missing {missing}."
        raise InvalidInput(msg)
    return coerce_cluster_table(data.loc[:, names], allow_missing=True)


def align_cluster_table(table: pd.DataFrame, model: EstimationResult) -> pd.DataFrame:
    """Restrict the cluster table to the rows retained by the model fit.

    The table must have one row per observation handed to the fitter
    (``model.n_total``); rows the fitter dropped for missing data are removed
    using ``model.row_mask``. Any other row count is rejected.
    """
    n_rows = int(table.shape[0])
    n_total = int(model.n_total)
    n_obs = int(model.n_obs)
    if n_rows != n_total:
        msg = (
            f"cluster has {n_rows} rows but the model was given {n_total} rows "
            f"({n_obs} used in estimation); supply one cluster row per original data row."
        )
        raise InvalidInput(msg)
    if n_obs == n_total:
        return table
    mask = np.asarray(model.row_mask, dtype=bool).reshape(-1)
    if mask.shape[0] != n_total or int(mask.sum()) != n_obs:
        raise InvalidInput("model.row_mask is inconsistent with n_total/n_obs")
    _LOGGER.debug("Dropping %d cluster rows omitted from estimation", n_total - n_obs)
    return table.loc[mask].reset_index(drop=True)


# ---------------------------------------------------------------------
# Subset enumeration
# ---------------------------------------------------------------------


def encode_labels(labels: Any) -> tuple[NDArray[np.int64], int]:
    """Factorize labels into dense codes (sorted label order when sortable)."""
    arr = np.asarray(labels).reshape(-1)
    try:
        codes, uniques = pd.factorize(arr, sort=True)
    except TypeError:
        # Mixed, non-comparable label types: keep first-appearance order.
        codes, uniques = pd.factorize(arr, sort=False)
    if np.any(codes < 0):
        raise InvalidInput("cluster labels contain missing values")
    return codes.astype(np.int64, copy=False), int(len(uniques))


def _interaction_labels(table: pd.DataFrame, dims: tuple[int, ...]) -> NDArray[Any]:
    """Row-wise concatenation of the string forms of the chosen columns.

    Separator-free concatenation may merge distinct tuples (``"1"+"11"`` and
    ``"11"+"1"``); in that case integer tuple-group ids are used so the
    grouping always matches grouping on the raw value tuples.
    """
    cols = table.iloc[:, list(dims)]
    joined = cols.iloc[:, 0].astype(str)
    for j in range(1, cols.shape[1]):
        joined = joined + cols.iloc[:, j].astype(str)
    n_tuples = int(cols.drop_duplicates().shape[0])
    if int(joined.nunique()) == n_tuples:
        return joined.to_numpy(dtype=object)
    _LOGGER.debug("Concatenated labels collide for dims %s; using tuple group ids", dims)
    keys = [cols.iloc[:, j] for j in range(cols.shape[1])]
    return cols.groupby(keys, sort=True).ngroup().to_numpy(dtype=np.int64)


def build_subsets(table: Any) -> list[ClusterSubset]:
    """Enumerate the ``2^D - 1`` cluster subsets in size-grouped order.

    All single dimensions come first (column order), then all pairs in
    lexicographic order, and so on up to the full D-way interaction, which is
    last and flagged ``is_top``.
    """
    tbl = table if isinstance(table, pd.DataFrame) else coerce_cluster_table(table)
    D = int(tbl.shape[1])
    if D < 1:
        raise InvalidInput("cluster must have at least one dimension (D >= 1)")
    names = [str(c) for c in tbl.columns]
    out: list[ClusterSubset] = []
    for size in range(1, D + 1):
        for dims in combinations(range(D), size):
            if size == 1:
                labels = tbl.iloc[:, dims[0]].to_numpy()
            else:
                labels = _interaction_labels(tbl, dims)
            codes, M = encode_labels(labels)
            out.append(
                ClusterSubset(
                    dims=tuple(dims),
                    names=tuple(names[d] for d in dims),
                    sign=1 if size % 2 == 1 else -1,
                    labels=labels,
                    codes=codes,
                    n_groups=M,
                    is_top=(size == D),
                ),
            )
    return out


def group_stats(subsets: Sequence[ClusterSubset], n_obs: int, rank: int) -> list[GroupStats]:
    """GroupStats (M, N, K) for every subset."""
    return [GroupStats(M=int(s.n_groups), N=int(n_obs), K=int(rank)) for s in subsets]


def df_corrections(
    stats: Sequence[GroupStats], df_correction: bool | Sequence[float] | NDArray[np.float64],
) -> NDArray[np.float64]:
    """Per-subset degrees-of-freedom corrections.

    ``True`` computes ``(M/(M-1)) * ((N-1)/(N-K))`` per subset, ``False``
    uses 1, and a vector is taken verbatim; it needs one entry per subset
    (``2^D - 1``, counted before any White substitution).
    """
    n_sub = len(stats)
    if isinstance(df_correction, (bool, np.bool_)):
        return np.array([s.dfc(bool(df_correction)) for s in stats], dtype=np.float64)
    try:
        vec = np.asarray(df_correction, dtype=np.float64).reshape(-1)
    except (TypeError, ValueError) as exc:
        raise InvalidInput(f"df_correction must be a bool or a numeric vector; got {df_correction!r}") from exc
    if vec.shape[0] != n_sub:
        msg = (
            f"df_correction vector has length {vec.shape[0]} but {n_sub} cluster "
            f"combinations (2^D - 1) require one entry each."
        )
        raise InvalidInput(msg)
    if not np.all(np.isfinite(vec)):
        raise InvalidInput("df_correction vector contains non-finite values")
    return vec


def resolve_use_white(subsets: Sequence[ClusterSubset], use_white: bool | None) -> bool:
    """Decide whether the top interaction is replaced by a White HC0 term.

    With ``use_white=None`` this is automatic: true iff D > 1 and the top
    interaction has as many groups as the product of the group counts of all
    other subsets (Ma 2014).
    """
    if use_white is not None:
        return bool(use_white)
    top = subsets[-1]
    if top.size < 2:
        return False
    others = math.prod(int(s.n_groups) for s in subsets[:-1])
    return int(top.n_groups) == others


def prepare_subsets(
    model: EstimationResult,
    cluster: Any = None,
    cluster_varnames: Sequence[str] | str | None = None,
) -> list[ClusterSubset]:
    """Resolve, align and expand the cluster specification for ``model``."""
    table = resolve_cluster_table(model, cluster, cluster_varnames)
    table = check_cluster_labels(align_cluster_table(table, model))
    subsets = build_subsets(table)
    D = int(table.shape[1])
    _LOGGER.debug("Original cluster dimensions: %d", D)
    _LOGGER.debug("Theoretical cluster combinations: %d", len(subsets))
    _LOGGER.debug(
        "Cluster combinations: %s",
        [(s.dims, s.sign, s.n_groups) for s in subsets],
    )
    return subsets
