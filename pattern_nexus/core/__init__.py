"""
Pattern Nexus - Storage Layer

- Pattern Store: one SQLite database per project (patterns, evidence,
  concepts, delta log, exceptions, violation history)
- Global Store: one SQLite database for the registry and aggregations
"""

from .models import (
    ChangeEvent,
    ChangeKind,
    ComplianceOptions,
    ComplianceReport,
    Concept,
    LearningDelta,
    OriginContext,
    PatternAggregation,
    PatternException,
    PatternViolation,
    Project,
    Severity,
    SyncResult,
    Trigger,
)
from .store import PatternStore, SQLitePatternStore, create_pattern_store
from .global_store import GlobalStore, SQLiteGlobalStore, create_global_store

__all__ = [
    "PatternStore",
    "SQLitePatternStore",
    "create_pattern_store",
    "GlobalStore",
    "SQLiteGlobalStore",
    "create_global_store",
    "ChangeEvent",
    "ChangeKind",
    "ComplianceOptions",
    "ComplianceReport",
    "Concept",
    "LearningDelta",
    "OriginContext",
    "PatternAggregation",
    "PatternException",
    "PatternViolation",
    "Project",
    "Severity",
    "SyncResult",
    "Trigger",
]
