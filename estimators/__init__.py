"""Estimator exports with lazy loading.

Public estimator classes and result containers. Uses lazy imports to avoid
circular dependencies.
"""
from __future__ import annotations

from importlib import import_module
from typing import Any

__all__ = [
    "GLM",
    "OLS",
    "BaseEstimator",
    "EstimationResult",
]

_LAZY_IMPORTS: dict[str, tuple[str, str]] = {
    "BaseEstimator": ("multiwayvcov.estimators.base", "BaseEstimator"),
    "EstimationResult": ("multiwayvcov.estimators.base", "EstimationResult"),
    "OLS": ("multiwayvcov.estimators.ols", "OLS"),
    "GLM": ("multiwayvcov.estimators.glm", "GLM"),
}


def __getattr__(name: str) -> Any:
    """Lazily import estimator classes and shared containers."""
    if name in _LAZY_IMPORTS:
        module_name, attr_name = _LAZY_IMPORTS[name]
        attr = getattr(import_module(module_name), attr_name)
        globals()[name] = attr
        return attr
    raise AttributeError(f"module 'multiwayvcov.estimators' has no attribute '{name}'")


def __dir__() -> list[str]:
    """Expose lazily loaded attributes to ``dir()``."""
    return sorted(set(globals()) | set(__all__))
