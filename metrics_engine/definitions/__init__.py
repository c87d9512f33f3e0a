"""
Metrics Engine — Definitions Module

Lifecycle of metric definitions and their operational configurations.
"""

from .manager import DefinitionManager, parse_model

__all__ = ["DefinitionManager", "parse_model"]
