"""Exception and warning types raised by multiwayvcov."""

from __future__ import annotations

__all__ = ["EstimationFailure", "InvalidInput", "NumericalWarning"]


class InvalidInput(ValueError):
    """Arguments are missing, malformed, or dimensionally inconsistent.

    Raised before any aggregation or resampling work begins.
    """


class EstimationFailure(RuntimeError):
    """A model fit, refit, or matrix inversion failed.

    Aborts the whole variance computation; no partial matrix is returned.
    """


class NumericalWarning(RuntimeWarning):
    """Non-fatal numerical condition (e.g. a VCOV with negative eigenvalues)."""
