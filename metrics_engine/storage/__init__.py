"""
Metrics Engine — Storage Module

Durable storage of metric definitions, configurations and snapshots.
"""

from .database import EngineDatabase
from .db_models import Base, MetricConfigurationRecord, MetricDefinitionRecord, MetricSnapshotRecord
from .store import MetricStore

__all__ = [
    "EngineDatabase",
    "MetricStore",
    "Base",
    "MetricDefinitionRecord",
    "MetricConfigurationRecord",
    "MetricSnapshotRecord",
]
