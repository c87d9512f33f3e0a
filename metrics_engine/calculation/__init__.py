"""
Metrics Engine — Calculation Module

Formula interpreter, query-template data source and the calculation engine.
"""

from .data_source import DataSource, SqlDataSource, render_query
from .engine import CalculationEngine, rate_of_change
from .formula import Formula, FormulaError, parse_formula, validate_formula

__all__ = [
    "CalculationEngine",
    "rate_of_change",
    "DataSource",
    "SqlDataSource",
    "render_query",
    "Formula",
    "FormulaError",
    "parse_formula",
    "validate_formula",
]
