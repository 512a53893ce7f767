# multiwayvcov/output/__init__.py
"""Output module for coefficient tables."""
from .summary import coeftest, coeftest_table, vcov_frame

__all__ = ["coeftest", "coeftest_table", "vcov_frame"]
