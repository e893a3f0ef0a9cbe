"""
Error taxonomy for Pattern Nexus.

Every error carries a ``kind`` and a ``retryable`` flag so callers (and the
HTTP layer) can tell "bad request" from "try again later" without parsing
messages.
"""

from typing import Any, Dict, Optional


class PatternNexusError(Exception):
    """Base class for all Pattern Nexus errors."""

    kind = "internal"
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.kind,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }


class InputError(PatternNexusError, ValueError):
    """Malformed input: bad change batch, unknown project, invalid glob."""

    kind = "input"


class NotFoundError(InputError):
    """A referenced project, pattern or record does not exist."""

    kind = "not_found"


class MergeError(PatternNexusError):
    """A store write failed mid-merge. The store was rolled back."""

    kind = "merge"


class ConsistencyError(PatternNexusError):
    """A write targeted a stale or out-of-order store version."""

    kind = "consistency"


class SyncError(PatternNexusError):
    """The global store failed during a sync."""

    kind = "sync"
    retryable = True


class SyncInProgressError(SyncError):
    """Another sync of the same project is running."""

    kind = "sync_in_progress"


class ConfigError(PatternNexusError):
    """Invalid configuration."""

    kind = "config"
