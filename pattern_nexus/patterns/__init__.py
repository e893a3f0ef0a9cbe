"""
Pattern learning and detection for a single project.

Concepts (functions, classes, imports, error handlers) come from the
extraction collaborator; the analyzer folds them into observations such as
"this variable is snake_case" or "this service lives in services/". The
learner turns observations into patterns, the detector checks new code
against them.

The learner, queue and detector live in their own modules
(``patterns.learner``, ``patterns.queue``, ``patterns.detector``) and are
imported from there.
"""

from .types import (
    Pattern,
    PatternContent,
    PatternExample,
    PatternObservation,
    PatternType,
    compute_confidence,
)
from .extractor import ConceptExtractor, ExtractionResult, RegexConceptExtractor, create_extractor
from .analyzer import ObservationAnalyzer
from .changes import normalize_path, parse_name_status, validate_batch

__all__ = [
    # Types
    "Pattern",
    "PatternContent",
    "PatternExample",
    "PatternObservation",
    "PatternType",
    "compute_confidence",
    # Collaborators
    "ConceptExtractor",
    "ExtractionResult",
    "RegexConceptExtractor",
    "create_extractor",
    "ObservationAnalyzer",
    # Change batches
    "normalize_path",
    "parse_name_status",
    "validate_batch",
]
