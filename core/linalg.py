"""Dense linear algebra routines for cluster-robust covariance estimation.

This module provides the small set of numerically careful helpers used by the
estimators: cross products, rank-revealing QR, inversion of symmetric
positive definite Gram matrices, leverage values, within-cluster row sums and
the eigenvalue-clipping positive semi-definite correction.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import numpy as np
import scipy.linalg as sla
import scipy.sparse as sp

from .exceptions import EstimationFailure, InvalidInput

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

__all__ = [
    "crossprod",
    "diag_xmx",
    "eig_tol",
    "eigh",
    "force_psd",
    "group_sum",
    "hat_diag",
    "inv_spd",
    "is_psd",
    "is_symmetric",
    "min_eigenvalue",
    "qr_rank",
    "symmetrize",
    "tdot",
    "to_dense",
    "xtwx_inv",
]

# Matrix type alias
Matrix = Any

# R's lm() rank tolerance on |diag(R)| relative to its maximum
_QR_RANK_TOL = 1e-7


def _assert_all_finite(*arrays: NDArray[np.float64]) -> None:
    """Raise if any array contains NaN or Inf."""
    for a in arrays:
        if a is None:
            continue
        if not np.all(np.isfinite(np.asarray(a, dtype=np.float64))):
            raise InvalidInput("Input contains NA/NaN/Inf.")


def _is_sparse(A: Matrix) -> bool:
    return sp.issparse(A)


def to_dense(A: Matrix) -> NDArray[np.float64]:
    """Return a float64 ndarray view of A (densifying sparse input)."""
    if _is_sparse(A):
        return np.asarray(A.toarray(), dtype=np.float64)
    if hasattr(A, "to_numpy"):
        return np.asarray(A.to_numpy(), dtype=np.float64)
    return np.asarray(A, dtype=np.float64)


def tdot(X: Matrix) -> NDArray[np.float64]:
    """Compute X'X."""
    Xd = to_dense(X)
    return (Xd.T @ Xd).astype(np.float64)


def crossprod(X: Matrix, y: Matrix) -> NDArray[np.float64]:
    """Compute X'y, keeping a column shape for vector y."""
    Xd = to_dense(X)
    yd = to_dense(y)
    if yd.ndim == 1:
        yd = yd.reshape(-1, 1)
    if Xd.shape[0] != yd.shape[0]:
        msg = f"crossprod: row mismatch ({Xd.shape[0]} vs {yd.shape[0]})."
        raise InvalidInput(msg)
    return (Xd.T @ yd).astype(np.float64)


def qr_rank(X: Matrix, *, tol: float = _QR_RANK_TOL) -> int:
    """Numerical column rank from a pivoted QR (R-style relative tolerance)."""
    Xd = to_dense(X)
    if Xd.size == 0:
        return 0
    _assert_all_finite(Xd)
    _Q, R, _P = sla.qr(Xd, mode="economic", pivoting=True)
    d = np.abs(np.diag(R))
    if d.size == 0 or d.max() == 0.0:
        return 0
    return int(np.sum(d > tol * d.max()))


def inv_spd(A: Matrix, *, what: str = "matrix") -> NDArray[np.float64]:
    """Invert a symmetric positive definite matrix via Cholesky.

    Raises EstimationFailure when A is singular or not positive definite.
    """
    Ad = to_dense(A)
    if Ad.ndim != 2 or Ad.shape[0] != Ad.shape[1]:
        raise InvalidInput(f"{what} must be square; got shape {Ad.shape}.")
    Ad = (Ad + Ad.T) * 0.5
    try:
        c, low = sla.cho_factor(Ad, lower=True, check_finite=True)
        out = sla.cho_solve((c, low), np.eye(Ad.shape[0]), check_finite=False)
    except (np.linalg.LinAlgError, ValueError) as exc:
        raise EstimationFailure(f"{what} is singular or not positive definite: {exc}") from exc
    return np.asarray((out + out.T) * 0.5, dtype=np.float64)


def xtwx_inv(
    X: Matrix, weights: Sequence[float] | None = None,
) -> NDArray[np.float64]:
    """Return (X'WX)^{-1}; W = I when weights is None."""
    Xd = to_dense(X)
    if weights is None:
        return inv_spd(tdot(Xd), what="X'X")
    w = np.asarray(weights, dtype=np.float64).reshape(-1)
    if w.shape[0] != Xd.shape[0]:
        msg = f"weights length {w.shape[0]} != n={Xd.shape[0]}."
        raise InvalidInput(msg)
    return inv_spd(Xd.T @ (Xd * w[:, None]), what="X'WX")


def diag_xmx(X: Matrix, M: Matrix) -> NDArray[np.float64]:
    """Compute row-wise diagonal of X M X' as vector of length n.

    Returns an (n,) float64 ndarray where element i equals x_i' M x_i.
    """
    Xd = to_dense(X)
    Md = to_dense(M)
    XM = Xd @ Md
    return np.sum(XM * Xd, axis=1).astype(np.float64)


def hat_diag(X: Matrix) -> NDArray[np.float64]:
    """Leverage values h_i = x_i'(X'X)^{-1}x_i of the unweighted design.

    Raises EstimationFailure if X'X is singular.
    """
    Xd = to_dense(X)
    return diag_xmx(Xd, xtwx_inv(Xd))


def group_sum(
    X: Matrix, codes: Matrix, n_groups: int | None = None,
) -> NDArray[np.float64]:
    """Sum rows of X within groups given by dense integer codes 0..G-1.

    Parameters
    ----------
    X : (n x p) matrix
    codes : (n,) integer codes
    n_groups : int, optional
        Number of groups G. Defaults to ``codes.max() + 1``. Every group in
        ``0..G-1`` must have at least one member.

    Returns
    -------
    (G x p) dense float64 array, row g holding the column sums of group g.

    """
    Xd = to_dense(X)
    if Xd.ndim == 1:
        Xd = Xd.reshape(-1, 1)
    codes_arr = np.asarray(codes).reshape(-1)
    if codes_arr.shape[0] != Xd.shape[0]:
        msg = "codes length must match number of rows in X"
        raise InvalidInput(msg)
    if codes_arr.size == 0:
        raise InvalidInput("group_sum requires at least one row")
    if codes_arr.dtype.kind not in {"i", "u"} or codes_arr.min() < 0:
        raise InvalidInput("codes must be non-negative integers")
    G = int(codes_arr.max()) + 1 if n_groups is None else int(n_groups)
    counts = np.bincount(codes_arr, minlength=G)
    if counts.shape[0] != G or np.any(counts == 0):
        msg = f"codes do not define {G} non-empty groups"
        raise InvalidInput(msg)
    out = np.zeros((G, Xd.shape[1]), dtype=np.float64)
    np.add.at(out, codes_arr, Xd)
    return out


def is_symmetric(A: Matrix, *, tol: float | None = None) -> bool:
    """Check |A - A'| <= tol elementwise (scale-aware default tolerance)."""
    Ad = to_dense(A)
    if Ad.ndim != 2 or Ad.shape[0] != Ad.shape[1]:
        return False
    if tol is None:
        scale = float(np.max(np.abs(Ad))) if Ad.size else 0.0
        tol = 1e-10 * max(scale, 1.0)
    return bool(np.max(np.abs(Ad - Ad.T)) <= tol) if Ad.size else True


def symmetrize(A: Matrix) -> NDArray[np.float64]:
    """Return (A + A') / 2."""
    Ad = to_dense(A)
    return 0.5 * (Ad + Ad.T)


def eigh(A: Matrix) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    """Eigenvalues (ascending) and eigenvectors of a symmetric matrix."""
    Ad = to_dense(A)
    _assert_all_finite(Ad)
    return np.linalg.eigh(Ad)


def eig_tol(A: Matrix) -> float:
    """Compute a scale-aware tolerance for eigenvalue filtering.

    Returns eps * max|eigenvalue| * max(A.shape), the MATLAB-style numerical
    rank convention.
    """
    Ad = to_dense(A)
    if Ad.size == 0:
        return float(np.finfo(float).eps)
    max_eval = float(np.max(np.abs(np.linalg.eigvalsh(Ad))))
    if max_eval == 0.0:
        return float(np.finfo(float).eps)
    return float(np.finfo(float).eps * max_eval * max(Ad.shape))


def min_eigenvalue(A: Matrix) -> float:
    """Smallest eigenvalue of a symmetric matrix."""
    vals, _ = eigh(A)
    return float(vals[0]) if vals.size else 0.0


def is_psd(A: Matrix, *, tol: float | None = None) -> bool:
    """True when no eigenvalue falls below ``-tol``."""
    thr = eig_tol(A) if tol is None else float(tol)
    return min_eigenvalue(A) >= -thr


def force_psd(A: Matrix) -> NDArray[np.float64]:
    """Clip negative eigenvalues to zero and rebuild the matrix.

    Implements the Cameron-Gelbach-Miller (2011) eigenvalue correction:
    A = V diag(l) V'  ->  V diag(max(l, 0)) V'.

    The decomposition is always recomputed, so a matrix that is already
    positive semi-definite may still pick up floating-point perturbations.
    Call only when the correction is explicitly requested.
    """
    Ad = to_dense(A)
    if Ad.ndim != 2 or Ad.shape[0] != Ad.shape[1]:
        raise InvalidInput(f"force_psd expects a square matrix; got shape {Ad.shape}.")
    vals, vecs = eigh(Ad)
    vals = np.maximum(vals, 0.0)
    return ((vecs * vals) @ vecs.T).astype(np.float64)
