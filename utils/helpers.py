"""Shared helper utilities: task execution and labelled output."""

from __future__ import annotations

import logging
import multiprocessing
import os
from concurrent.futures import Executor, ThreadPoolExecutor
from typing import TYPE_CHECKING, Any, Callable, TypeVar

import numpy as np
import pandas as pd

from multiwayvcov.core.exceptions import InvalidInput

if TYPE_CHECKING:
    from collections.abc import Sequence

__all__ = [
    "N_JOBS_ENV",
    "default_n_jobs",
    "map_ordered",
    "resolve_parallel",
    "square_frame",
]

_LOGGER = logging.getLogger(__name__)

N_JOBS_ENV = "MULTIWAYVCOV_N_JOBS"

T = TypeVar("T")
R = TypeVar("R")


def default_n_jobs() -> int:
    """Worker count from ``MULTIWAYVCOV_N_JOBS``, else min(cpu_count, 4)."""
    raw = str(os.environ.get(N_JOBS_ENV, "")).strip()
    if raw:
        try:
            n = int(raw)
        except ValueError:
            _LOGGER.debug("Ignoring non-integer %s=%r", N_JOBS_ENV, raw)
        else:
            if n >= 1:
                return n
            _LOGGER.debug("Ignoring non-positive %s=%r", N_JOBS_ENV, raw)
    return min(multiprocessing.cpu_count(), 4)


def resolve_parallel(parallel: Any) -> tuple[Executor | None, int]:
    """Interpret a ``parallel`` option.

    Returns ``(executor, n_workers)``; ``executor`` is a caller-owned
    Executor or None, ``n_workers`` the size of a pool to create (1 means
    run serially).

    Accepted values: None/False/1 (serial), True (default worker count), a
    positive int, or a ``concurrent.futures.Executor``.
    """
    if parallel is None or parallel is False:
        return None, 1
    if isinstance(parallel, Executor):
        return parallel, 0
    if parallel is True:
        return None, default_n_jobs()
    if isinstance(parallel, (int, np.integer)) and not isinstance(parallel, bool):
        if int(parallel) < 1:
            raise InvalidInput(f"parallel worker count must be >= 1; got {parallel}")
        return None, int(parallel)
    msg = (
        "parallel must be None, a bool, a positive int, or a concurrent.futures.Executor; "
        f"got {type(parallel).__name__}"
    )
    raise InvalidInput(msg)


def map_ordered(
    fn: Callable[[T], R],
    tasks: Sequence[T],
    parallel: Any = None,
) -> list[R]:
    """Apply ``fn`` to every task; results are returned in task order.

    Tasks must be independent. Exceptions raised by any task propagate to
    the caller once it is collected.
    """
    executor, n_workers = resolve_parallel(parallel)
    items = list(tasks)
    if executor is None and (n_workers <= 1 or len(items) <= 1):
        return [fn(t) for t in items]
    if executor is not None:
        futures = [executor.submit(fn, t) for t in items]
        return [f.result() for f in futures]
    with ThreadPoolExecutor(max_workers=min(n_workers, len(items))) as pool:
        futures = [pool.submit(fn, t) for t in items]
        return [f.result() for f in futures]


def square_frame(matrix: Any, names: Sequence[str]) -> pd.DataFrame:
    """Label a (k x k) matrix with coefficient names on both axes."""
    M = np.asarray(matrix, dtype=np.float64)
    labels = [str(v) for v in names]
    if M.shape != (len(labels), len(labels)):
        msg = f"matrix shape {M.shape} does not match {len(labels)} names"
        raise InvalidInput(msg)
    return pd.DataFrame(M, index=labels, columns=labels)
