"""
Data models for Pattern Nexus.

Plain dataclasses with to_dict/from_dict - no over-abstraction.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
import uuid


# =============================================================================
# Concepts and change events
# =============================================================================

@dataclass
class Concept:
    """A typed code entity produced by concept extraction."""

    name: str
    concept_type: str  # function, class, variable, constant, import, ...
    confidence_score: float = 1.0
    line: int = 0
    column: int = 0
    file_path: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> str:
        return f"{self.concept_type}:{self.name}"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Concept":
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


class ChangeKind(Enum):
    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"
    RENAMED = "renamed"


class Trigger(Enum):
    """What caused a learning task. Lower priority value runs first."""

    MANUAL = "manual"
    GIT_COMMIT = "git-commit"
    WATCH = "watch"

    @property
    def priority(self) -> int:
        return {Trigger.MANUAL: 0, Trigger.GIT_COMMIT: 1, Trigger.WATCH: 2}[self]


@dataclass
class ChangeEvent:
    """
    One changed path.

    ``content`` may carry the new file text inline; otherwise the learner
    reads it from the project root. ``old_path`` is required for renames.
    """

    path: str
    kind: ChangeKind
    revision: Optional[str] = None
    old_path: Optional[str] = None
    content: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "kind": self.kind.value,
            "revision": self.revision,
            "old_path": self.old_path,
        }


@dataclass
class OriginContext:
    """Where a change batch came from."""

    trigger: Trigger = Trigger.MANUAL
    commit_id: Optional[str] = None
    author: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trigger": self.trigger.value,
            "commit_id": self.commit_id,
            "author": self.author,
            "metadata": self.metadata,
        }


# =============================================================================
# Learning deltas
# =============================================================================

@dataclass
class LearningDelta:
    """
    Immutable record of one incremental update.

    ``applied`` is False when the batch changed nothing; such deltas are
    returned to the caller but never written to the delta log, and
    ``resulting_version == preceding_version``.
    """

    id: str = field(default_factory=lambda: f"delta_{uuid.uuid4().hex[:12]}")
    trigger: Trigger = Trigger.MANUAL
    commit_id: Optional[str] = None
    files_touched: List[str] = field(default_factory=list)
    concepts_added: int = 0
    concepts_modified: int = 0
    concepts_removed: int = 0
    patterns_added: int = 0
    patterns_modified: int = 0
    patterns_removed: int = 0
    duration_ms: int = 0
    applied_at: datetime = field(default_factory=datetime.now)
    preceding_version: int = 0
    resulting_version: int = 0
    applied: bool = True
    partial_degradation: bool = False
    degraded_files: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "trigger": self.trigger.value,
            "commit_id": self.commit_id,
            "files_touched": list(self.files_touched),
            "concepts_added": self.concepts_added,
            "concepts_modified": self.concepts_modified,
            "concepts_removed": self.concepts_removed,
            "patterns_added": self.patterns_added,
            "patterns_modified": self.patterns_modified,
            "patterns_removed": self.patterns_removed,
            "duration_ms": self.duration_ms,
            "applied_at": self.applied_at.isoformat(),
            "preceding_version": self.preceding_version,
            "resulting_version": self.resulting_version,
            "applied": self.applied,
            "partial_degradation": self.partial_degradation,
            "degraded_files": list(self.degraded_files),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LearningDelta":
        data = data.copy()
        data["trigger"] = Trigger(data.get("trigger", Trigger.MANUAL.value))
        if isinstance(data.get("applied_at"), str):
            data["applied_at"] = datetime.fromisoformat(data["applied_at"])
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


# =============================================================================
# Compliance
# =============================================================================

class Severity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return {Severity.LOW: 0, Severity.MEDIUM: 1, Severity.HIGH: 2}[self]

    @property
    def penalty(self) -> int:
        return {Severity.LOW: 2, Severity.MEDIUM: 7, Severity.HIGH: 15}[self]


@dataclass
class SuggestedFix:
    """An advisory rewrite. Never applied automatically."""

    kind: str  # rename, move_file, replace_call, rewrite_import, rename_file
    description: str
    original: str
    replacement: str
    confidence: float = 0.8
    alternatives: List["SuggestedFix"] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "description": self.description,
            "original": self.original,
            "replacement": self.replacement,
            "confidence": self.confidence,
            "alternatives": [a.to_dict() for a in self.alternatives],
        }


@dataclass
class PatternViolation:
    """A conflict between a code unit and a learned pattern."""

    pattern_id: str
    file_path: str
    severity: Severity
    message: str
    start_line: int = 0
    end_line: int = 0
    column: int = 0
    category: str = ""
    expected: str = ""
    actual: str = ""
    code_snippet: str = ""
    suggested_fix: Optional[SuggestedFix] = None
    id: str = field(default_factory=lambda: f"vio_{uuid.uuid4().hex[:12]}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "pattern_id": self.pattern_id,
            "file_path": self.file_path,
            "severity": self.severity.value,
            "message": self.message,
            "location": {
                "start_line": self.start_line,
                "end_line": self.end_line,
                "column": self.column,
            },
            "category": self.category,
            "expected": self.expected,
            "actual": self.actual,
            "code_snippet": self.code_snippet,
            "suggested_fix": self.suggested_fix.to_dict() if self.suggested_fix else None,
        }


@dataclass
class ComplianceOptions:
    severity_threshold: Severity = Severity.MEDIUM
    auto_fix: bool = False
    track_history: bool = False


@dataclass
class ComplianceReport:
    file_path: str
    violations: List[PatternViolation] = field(default_factory=list)
    overall_score: int = 100
    observations_checked: int = 0
    suppressed: int = 0
    degraded: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "file_path": self.file_path,
            "violations": [v.to_dict() for v in self.violations],
            "overall_score": self.overall_score,
            "observations_checked": self.observations_checked,
            "suppressed": self.suppressed,
            "degraded": self.degraded,
        }


@dataclass
class PatternException:
    """Caller-declared suppression of a pattern for a path scope."""

    pattern_id: str
    scope_glob: str
    reason: str = ""
    created_at: datetime = field(default_factory=datetime.now)
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "pattern_id": self.pattern_id,
            "scope_glob": self.scope_glob,
            "reason": self.reason,
            "created_at": self.created_at.isoformat(),
        }


# =============================================================================
# Portfolio
# =============================================================================

@dataclass
class ProjectMetadata:
    name: Optional[str] = None
    primary_language: Optional[str] = None
    frameworks: List[str] = field(default_factory=list)


@dataclass
class Project:
    """A registry entry for a project participating in aggregation."""

    id: str
    path: str
    name: str
    primary_language: Optional[str] = None
    frameworks: List[str] = field(default_factory=list)
    linked_at: datetime = field(default_factory=datetime.now)
    last_synced_version: int = 0
    last_synced_at: Optional[datetime] = None
    pattern_count: int = 0
    concept_count: int = 0
    is_active: bool = True

    @property
    def size(self) -> str:
        if self.concept_count < 100:
            return "small"
        if self.concept_count < 1000:
            return "medium"
        return "large"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "path": self.path,
            "name": self.name,
            "primary_language": self.primary_language,
            "frameworks": list(self.frameworks),
            "linked_at": self.linked_at.isoformat(),
            "last_synced_version": self.last_synced_version,
            "last_synced_at": self.last_synced_at.isoformat() if self.last_synced_at else None,
            "pattern_count": self.pattern_count,
            "concept_count": self.concept_count,
            "is_active": self.is_active,
            "size": self.size,
        }


@dataclass
class Occurrence:
    """
    One project's contribution to an aggregation.

    A project may hold several local patterns with the same signature (one
    per language); ``contributions`` keeps them apart so each can be
    replaced independently, and the occurrence totals are derived from them.
    """

    project_id: str
    contributions: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    @property
    def frequency(self) -> int:
        return sum(int(c["frequency"]) for c in self.contributions.values())

    @property
    def confidence(self) -> float:
        total = self.frequency
        if total == 0:
            return 0.0
        return sum(c["confidence"] * c["frequency"] for c in self.contributions.values()) / total

    @property
    def languages(self) -> List[str]:
        return sorted({c["language"] for c in self.contributions.values() if c.get("language")})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "project_id": self.project_id,
            "frequency": self.frequency,
            "confidence": round(self.confidence, 6),
            "languages": self.languages,
            "contributions": self.contributions,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Occurrence":
        return cls(project_id=data["project_id"], contributions=dict(data.get("contributions", {})))


@dataclass
class PatternAggregation:
    """Cross-project consensus record for one normalized signature."""

    signature: str
    pattern_type: str
    category: str
    content: Dict[str, Any] = field(default_factory=dict)
    occurrences: List[Occurrence] = field(default_factory=list)
    aggregated_confidence: float = 0.0
    consensus_score: float = 0.0
    revision: int = 0
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    @property
    def project_ids(self) -> List[str]:
        return [o.project_id for o in self.occurrences]

    @property
    def languages(self) -> List[str]:
        return sorted({lang for o in self.occurrences for lang in o.languages})

    @property
    def total_frequency(self) -> int:
        return sum(o.frequency for o in self.occurrences)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "signature": self.signature,
            "pattern_type": self.pattern_type,
            "category": self.category,
            "content": self.content,
            "occurrences": [o.to_dict() for o in self.occurrences],
            "project_count": len(self.occurrences),
            "languages": self.languages,
            "aggregated_confidence": round(self.aggregated_confidence, 6),
            "consensus_score": round(self.consensus_score, 6),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class AggregationFilter:
    category: Optional[str] = None
    pattern_type: Optional[str] = None
    min_project_count: int = 0
    min_consensus: float = 0.0
    language: Optional[str] = None
    limit: Optional[int] = None


@dataclass
class SyncResult:
    """
    Outcome of one sync.

    ``status`` is "success" or "partial". A partial sync advanced the
    checkpoint only up to the last merged store version, so a retry resumes.
    """

    project_id: str
    status: str = "success"
    patterns_added: int = 0
    patterns_updated: int = 0
    patterns_removed: int = 0
    concepts_added: int = 0
    previous_version: int = 0
    synced_version: int = 0
    duration_ms: int = 0
    retryable: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PortfolioView:
    total_projects: int = 0
    total_patterns: int = 0
    total_concepts: int = 0
    top_languages: List[Dict[str, Any]] = field(default_factory=list)
    top_frameworks: List[Dict[str, Any]] = field(default_factory=list)
    projects: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
