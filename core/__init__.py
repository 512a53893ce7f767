# multiwayvcov/core/__init__.py
"""Core computational modules for multiwayvcov."""
from . import bootstrap, clusters, exceptions, linalg, sandwich, vcov

__all__ = ["bootstrap", "clusters", "exceptions", "linalg", "sandwich", "vcov"]
