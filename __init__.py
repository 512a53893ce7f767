"""multiwayvcov: multi-way cluster-robust covariance matrices.

Analytic (Cameron, Gelbach & Miller 2011) and bootstrap estimators of the
coefficient covariance of linear and generalized linear models clustered
along any number of dimensions.
"""
from __future__ import annotations

from importlib import import_module
from typing import Any

__version__ = "0.1.0"

__all__ = [
    "GLM",
    "OLS",
    "BootConfig",
    "EstimationFailure",
    "EstimationResult",
    "InvalidInput",
    "NumericalWarning",
    "WildDist",
    "build_subsets",
    "cluster_boot",
    "cluster_vcov",
    "coeftest",
    "coeftest_table",
    "force_psd",
    "vcov_frame",
    "vcov_hc",
]

_LAZY_IMPORTS: dict[str, tuple[str, str]] = {
    "EstimationResult": ("multiwayvcov.estimators.base", "EstimationResult"),
    "OLS": ("multiwayvcov.estimators.ols", "OLS"),
    "GLM": ("multiwayvcov.estimators.glm", "GLM"),
    "cluster_vcov": ("multiwayvcov.core.vcov", "cluster_vcov"),
    "cluster_boot": ("multiwayvcov.core.bootstrap", "cluster_boot"),
    "BootConfig": ("multiwayvcov.core.bootstrap", "BootConfig"),
    "WildDist": ("multiwayvcov.core.bootstrap", "WildDist"),
    "build_subsets": ("multiwayvcov.core.clusters", "build_subsets"),
    "force_psd": ("multiwayvcov.core.linalg", "force_psd"),
    "vcov_hc": ("multiwayvcov.core.sandwich", "vcov_hc"),
    "InvalidInput": ("multiwayvcov.core.exceptions", "InvalidInput"),
    "EstimationFailure": ("multiwayvcov.core.exceptions", "EstimationFailure"),
    "NumericalWarning": ("multiwayvcov.core.exceptions", "NumericalWarning"),
    "coeftest": ("multiwayvcov.output.summary", "coeftest"),
    "coeftest_table": ("multiwayvcov.output.summary", "coeftest_table"),
    "vcov_frame": ("multiwayvcov.output.summary", "vcov_frame"),
}


def __getattr__(name: str) -> Any:
    """Lazily import public estimators and utilities on first access."""
    if name in _LAZY_IMPORTS:
        module_name, attr_name = _LAZY_IMPORTS[name]
        module = import_module(module_name)
        attr = getattr(module, attr_name)
        globals()[name] = attr
        return attr
    raise AttributeError(f"module 'multiwayvcov' has no attribute '{name}'")


def __dir__() -> list[str]:
    """Ensure dir() exposes lazily imported names."""
    return sorted(set(globals()) | set(__all__))
