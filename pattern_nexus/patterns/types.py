"""
Pattern Type Definitions.

A pattern is a learned convention ("variables are camelCase", "services live
in services/"). Its content is a tagged union keyed by PatternType: each type
has its own payload dataclass, and every payload reduces to a *slot* (what the
convention is about) and a *choice* (what the codebase does). Two patterns in
the same slot with different choices conflict.
"""

import hashlib
import json
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Type


class PatternType(Enum):
    """Categories of code conventions."""
    NAMING = "naming"                  # Identifier casing per concept kind
    STRUCTURAL = "structural"          # Where things live in the tree
    IMPLEMENTATION = "implementation"  # How recurring concerns are handled
    STYLE = "style"                    # Import and formatting choices
    TESTING = "testing"                # Test layout and naming


# =============================================================================
# Content variants
# =============================================================================

@dataclass(frozen=True)
class PatternContent(ABC):
    """Base for typed pattern payloads. Only the variants below are built."""

    language: Optional[str] = None

    @property
    @abstractmethod
    def category(self) -> str:
        """What the convention is about (variable_naming, file_location, ...)."""
        pass

    @property
    @abstractmethod
    def choice(self) -> str:
        """What the codebase does about it."""
        pass

    def describe(self) -> str:
        return f"{self.category}: {self.choice}"

    def to_dict(self) -> Dict[str, Any]:
        data = {k: v for k, v in self.__dict__.items()}
        data["category"] = self.category
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PatternContent":
        names = cls.__dataclass_fields__.keys()
        kwargs = {k: v for k, v in data.items() if k in names}
        if "tags" in kwargs and kwargs["tags"] is not None:
            kwargs["tags"] = tuple(kwargs["tags"])
        return cls(**kwargs)


@dataclass(frozen=True)
class NamingContent(PatternContent):
    """Casing convention for one kind of identifier."""
    subject: str = "variable"          # function, class, variable, constant, ...
    convention: str = "camelCase"

    @property
    def category(self) -> str:
        return f"{self.subject}_naming"

    @property
    def choice(self) -> str:
        return self.convention

    def describe(self) -> str:
        return f"{self.subject.capitalize()} names use {self.convention}"


@dataclass(frozen=True)
class StructuralContent(PatternContent):
    """Directory where a role of module is placed."""
    role: str = "service"              # service, controller, model, ...
    location: str = "services"

    @property
    def category(self) -> str:
        return "file_location"

    @property
    def choice(self) -> str:
        return self.location

    def describe(self) -> str:
        return f"{self.role.capitalize()} modules live in {self.location}/"


@dataclass(frozen=True)
class ImplementationContent(PatternContent):
    """Approach used for a recurring concern, e.g. error handling."""
    concern: str = "error_handling"
    approach: str = "logger.error"

    @property
    def category(self) -> str:
        return self.concern

    @property
    def choice(self) -> str:
        return self.approach

    def describe(self) -> str:
        return f"{self.concern.replace('_', ' ').capitalize()} uses {self.approach}"


@dataclass(frozen=True)
class StyleContent(PatternContent):
    """A stylistic choice, e.g. relative vs absolute imports."""
    aspect: str = "import_style"
    option: str = "absolute"
    tags: Tuple[str, ...] = ()

    @property
    def category(self) -> str:
        return self.aspect

    @property
    def choice(self) -> str:
        return self.option

    def describe(self) -> str:
        return f"{self.aspect.replace('_', ' ').capitalize()} is {self.option}"


@dataclass(frozen=True)
class TestingContent(PatternContent):
    """How tests are laid out, e.g. test file naming."""
    aspect: str = "test_file_naming"
    convention: str = ".test"

    @property
    def category(self) -> str:
        return self.aspect

    @property
    def choice(self) -> str:
        return self.convention

    def describe(self) -> str:
        return f"{self.aspect.replace('_', ' ').capitalize()} follows {self.convention}"


CONTENT_TYPES: Dict[PatternType, Type[PatternContent]] = {
    PatternType.NAMING: NamingContent,
    PatternType.STRUCTURAL: StructuralContent,
    PatternType.IMPLEMENTATION: ImplementationContent,
    PatternType.STYLE: StyleContent,
    PatternType.TESTING: TestingContent,
}


def content_from_dict(pattern_type: PatternType, data: Dict[str, Any]) -> PatternContent:
    """Rebuild the typed payload for a pattern type."""
    return CONTENT_TYPES[pattern_type].from_dict(data)


def canonical_content(content: PatternContent) -> str:
    """Stable JSON form of a payload (sorted keys, lowercased tags)."""
    data = content.to_dict()
    if "tags" in data:
        data["tags"] = sorted(t.lower() for t in data["tags"])
    return json.dumps(data, sort_keys=True, separators=(",", ":"))


def make_pattern_id(pattern_type: PatternType, content: PatternContent) -> str:
    """Stable id from type and canonical content."""
    raw = f"{pattern_type.value}|{canonical_content(content)}"
    return f"pat_{hashlib.sha256(raw.encode()).hexdigest()[:16]}"


# =============================================================================
# Confidence
# =============================================================================

def compute_confidence(
    frequency: int,
    last_seen: Optional[datetime] = None,
    now: Optional[datetime] = None,
    recency_window_days: int = 7,
    recency_bonus: float = 0.05,
) -> float:
    """
    Frequency-weighted confidence with a small recency nudge.

    confidence = min(1.0, 0.5 + 0.05 * log2(frequency + 1)), then moved
    ``recency_bonus`` of the remaining distance toward 1.0 when the pattern
    was seen within the recency window.
    """
    if frequency <= 0:
        return 0.0
    confidence = min(1.0, 0.5 + 0.05 * math.log2(frequency + 1))
    if last_seen is not None:
        now = now or datetime.now()
        if now - last_seen <= timedelta(days=recency_window_days):
            confidence += recency_bonus * (1.0 - confidence)
    return round(max(0.0, min(1.0, confidence)), 6)


# =============================================================================
# Pattern
# =============================================================================

@dataclass
class PatternExample:
    """One occurrence of a pattern in the codebase."""
    file_path: str
    line: int
    snippet: str

    def to_dict(self) -> Dict[str, Any]:
        return {"file_path": self.file_path, "line": self.line, "snippet": self.snippet}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PatternExample":
        return cls(
            file_path=data["file_path"],
            line=int(data.get("line", 0)),
            snippet=data.get("snippet", ""),
        )


@dataclass
class Pattern:
    """
    A learned convention for one project.

    ``version`` is the store version at which the pattern last changed, so a
    sync can ask for everything newer than its checkpoint.
    """
    id: str
    pattern_type: PatternType
    content: PatternContent
    frequency: int = 1
    confidence: float = 0.5
    contexts: List[str] = field(default_factory=list)
    examples: List[PatternExample] = field(default_factory=list)
    version: int = 0
    created_at: datetime = field(default_factory=datetime.now)
    last_seen: datetime = field(default_factory=datetime.now)

    @property
    def category(self) -> str:
        return self.content.category

    @property
    def language(self) -> Optional[str]:
        return self.content.language

    @property
    def slot(self) -> Tuple[str, str]:
        return (self.pattern_type.value, self.content.category)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "pattern_type": self.pattern_type.value,
            "category": self.category,
            "content": self.content.to_dict(),
            "frequency": self.frequency,
            "confidence": self.confidence,
            "contexts": list(self.contexts),
            "examples": [e.to_dict() for e in self.examples],
            "version": self.version,
            "created_at": self.created_at.isoformat(),
            "last_seen": self.last_seen.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Pattern":
        pattern_type = PatternType(data["pattern_type"])
        return cls(
            id=data["id"],
            pattern_type=pattern_type,
            content=content_from_dict(pattern_type, data["content"]),
            frequency=int(data.get("frequency", 1)),
            confidence=float(data.get("confidence", 0.5)),
            contexts=list(data.get("contexts", [])),
            examples=[PatternExample.from_dict(e) for e in data.get("examples", [])],
            version=int(data.get("version", 0)),
            created_at=datetime.fromisoformat(data["created_at"]) if data.get("created_at") else datetime.now(),
            last_seen=datetime.fromisoformat(data["last_seen"]) if data.get("last_seen") else datetime.now(),
        )


@dataclass
class PatternObservation:
    """
    One piece of evidence derived from a concept.

    ``compatible`` lists every choice the observation is consistent with; an
    identifier like ``count`` is both camelCase and snake_case. Only
    unambiguous observations (one compatible choice) corroborate patterns.
    """
    pattern_type: PatternType
    content: PatternContent
    file_path: str
    line: int = 0
    column: int = 0
    snippet: str = ""
    subject_name: str = ""
    compatible: Tuple[str, ...] = ()

    @property
    def pattern_id(self) -> str:
        return make_pattern_id(self.pattern_type, self.content)

    @property
    def slot(self) -> Tuple[str, str]:
        return (self.pattern_type.value, self.content.category)

    @property
    def is_ambiguous(self) -> bool:
        return len(self.compatible) > 1

    def accepts(self, choice: str) -> bool:
        if self.compatible:
            return choice in self.compatible
        return choice == self.content.choice
