# multiwayvcov/utils/__init__.py
"""Utility functions module."""
from .auto_constant import add_constant
from .formula import parse_formula
from .helpers import map_ordered, resolve_parallel, square_frame

__all__ = [
    "add_constant",
    "map_ordered",
    "parse_formula",
    "resolve_parallel",
    "square_frame",
]
