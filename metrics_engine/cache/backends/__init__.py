"""
Metrics Engine — Cache Backends

The Redis backend is imported by the factory only when selected.
"""

from .memory import MemoryCacheBackend

__all__ = [
    "MemoryCacheBackend",
]
