"""Intercept column handling.

Follows R's ``model.matrix`` convention: the intercept is the first column
and is named ``Intercept`` (the name patsy gives it), so array-built and
formula-built models share one coefficient layout.
"""

from __future__ import annotations

import warnings
from typing import TYPE_CHECKING

import numpy as np

from multiwayvcov.core.exceptions import InvalidInput

if TYPE_CHECKING:
    from collections.abc import Sequence

__all__ = ["CONST_NAME", "add_constant"]

CONST_NAME = "Intercept"
_CONST_TOL = 1e-12


def _normalize_variable_names(var_names: Sequence[str] | None, k: int) -> list[str]:
    if var_names is None:
        return [f"x{i}" for i in range(k)]
    names = [str(v) for v in var_names]
    if len(names) != k:
        msg = f"var_names has {len(names)} entries but X has {k} columns."
        raise InvalidInput(msg)
    if len(set(names)) != len(names):
        raise InvalidInput("var_names must be unique.")
    return names


def add_constant(
    X: np.ndarray,
    var_names: Sequence[str] | None = None,
    *,
    const_name: str = CONST_NAME,
) -> tuple[np.ndarray, list[str], str]:
    """Prepend an intercept column unless X already has an all-ones column.

    Returns
    -------
    X_out : np.ndarray
        Design matrix with the intercept first.
    names_out : list[str]
        Column names, intercept included.
    const_name_out : str
        Name of the intercept column (an existing all-ones column keeps its
        own name).

    """
    X = np.asarray(X, dtype=np.float64, order="C")
    if X.ndim == 1:
        X = X.reshape(-1, 1)
    if X.ndim != 2:  # noqa: PLR2004
        raise InvalidInput("X must be 2D.")
    n, k = X.shape
    names = _normalize_variable_names(var_names, k)
    if const_name in names:
        msg = f"Column name {const_name!r} is reserved for the intercept."
        raise InvalidInput(msg)

    finite = np.isfinite(X)
    ones = [
        j for j in range(k)
        if np.all(np.abs(X[finite[:, j], j] - 1.0) <= _CONST_TOL) and finite[:, j].any()
    ]
    if ones:
        j = ones[0]
        warnings.warn(
            f"X already contains an all-ones column {names[j]!r}; no intercept added.",
            UserWarning,
            stacklevel=2,
        )
        return X, names, names[j]

    X_out = np.column_stack([np.ones(n, dtype=np.float64), X]) if k else np.ones((n, 1))
    return X_out, [const_name, *names], const_name
