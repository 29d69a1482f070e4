"""Reporting utilities for generating figures and tables."""

from commreg.reporting.figures import FigureGenerator
from commreg.reporting.tables import TableGenerator

__all__ = [
    "FigureGenerator",
    "TableGenerator",
]
