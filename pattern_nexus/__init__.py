"""
Pattern Nexus - pattern intelligence for codebases.

Learns the conventions a project actually follows from its change stream,
flags code that breaks them, and aggregates conventions across a portfolio
of projects.

Components:
- Pattern Store: versioned per-project patterns with a delta log (SQLite)
- Incremental Learner: applies change batches as single atomic merges
- Conflict Detector: compliance reports, exceptions and quick fixes
- Global Aggregator: signature-keyed cross-project aggregations
- Project Registry: which projects take part, and how far each is synced
"""

from .config import PatternNexusConfig
from .errors import (
    ConfigError,
    ConsistencyError,
    InputError,
    MergeError,
    NotFoundError,
    PatternNexusError,
    SyncError,
    SyncInProgressError,
)
from .integration import PatternNexus

__version__ = "0.1.0"

__all__ = [
    "PatternNexus",
    "PatternNexusConfig",
    # Errors
    "PatternNexusError",
    "InputError",
    "NotFoundError",
    "MergeError",
    "ConsistencyError",
    "SyncError",
    "SyncInProgressError",
    "ConfigError",
]
