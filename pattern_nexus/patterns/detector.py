"""
Conflict Detector.

Checks a code unit against the project's learned patterns:

1. extract observations (same path as the learner, read-only)
2. for each observation, find the dominant pattern in the same slot
   (type + category, matching language) and flag a conflicting choice
3. drop violations covered by a pattern exception
4. grade severity from the pattern's confidence and apply the threshold
5. optionally attach advisory fixes

The detector reads a snapshot of the store and never writes patterns, so it
is safe to call concurrently with a running merge.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple, Union

from ..config import PatternNexusConfig
from ..core.models import ComplianceOptions, ComplianceReport, PatternViolation, Severity
from ..core.store import PatternStore, StoreSnapshot
from ..errors import InputError
from .analyzer import ObservationAnalyzer
from .changes import normalize_path
from .exceptions import find_matching_exception, normalize_scope_glob, scope_matches
from .extractor import ConceptExtractor, RegexConceptExtractor
from .fixes import QuickFixGenerator
from .types import Pattern, PatternObservation, PatternType

logger = logging.getLogger(__name__)


@dataclass
class SeverityPolicy:
    """Maps pattern confidence to violation severity and score penalties."""
    high: float = 0.85
    medium: float = 0.6

    @classmethod
    def from_config(cls, config: PatternNexusConfig) -> "SeverityPolicy":
        return cls(high=config.high_severity_confidence, medium=config.medium_severity_confidence)

    def severity_for(self, confidence: float) -> Severity:
        if confidence >= self.high:
            return Severity.HIGH
        if confidence >= self.medium:
            return Severity.MEDIUM
        return Severity.LOW

    @staticmethod
    def score(violations: List[PatternViolation]) -> int:
        return max(0, 100 - sum(v.severity.penalty for v in violations))


def parse_severity(value: Union[str, Severity, None], default: Severity = Severity.MEDIUM) -> Severity:
    if value is None:
        return default
    if isinstance(value, Severity):
        return value
    try:
        return Severity(str(value).lower())
    except ValueError:
        raise InputError(f"Unknown severity {value!r}; expected low, medium or high")


class ConflictDetector:
    """
    Compliance checks against one project's pattern store.

    Example:
        detector = ConflictDetector(store)
        report = detector.check_compliance(
            "const user_id = 1;",
            "src/user.ts",
            ComplianceOptions(severity_threshold=Severity.LOW, auto_fix=True),
        )
        for violation in report.violations:
            print(violation.severity.value, violation.message)
    """

    def __init__(
        self,
        store: PatternStore,
        extractor: Optional[ConceptExtractor] = None,
        analyzer: Optional[ObservationAnalyzer] = None,
        fix_generator: Optional[QuickFixGenerator] = None,
        policy: Optional[SeverityPolicy] = None,
        min_pattern_frequency: int = 1,
    ):
        self.store = store
        self.extractor = extractor or RegexConceptExtractor()
        self.analyzer = analyzer or ObservationAnalyzer()
        self.fix_generator = fix_generator or QuickFixGenerator()
        self.policy = policy or SeverityPolicy()
        self.min_pattern_frequency = min_pattern_frequency

    # =========================================================================
    # Compliance
    # =========================================================================

    def check_compliance(
        self,
        code_unit: str,
        file_path: str,
        options: Optional[ComplianceOptions] = None,
    ) -> ComplianceReport:
        """
        Check a code unit against learned patterns.

        Args:
            code_unit: Source text to check
            file_path: Project-relative path the code lives (or will live) at
            options: Severity threshold, auto-fix and history tracking

        Returns:
            ComplianceReport with violations sorted by severity then line
        """
        options = options or ComplianceOptions()
        if not isinstance(code_unit, str):
            raise InputError("code_unit must be a string")
        file_path = normalize_path(file_path)
        threshold = parse_severity(options.severity_threshold)

        report = ComplianceReport(file_path=file_path)
        try:
            result = self.extractor.extract(file_path, code_unit)
        except Exception as e:
            logger.warning(f"Concept extraction failed for {file_path}: {e}")
            report.degraded = True
            return report
        if result.degraded:
            report.degraded = True
            return report

        observations = self.analyzer.observe(result, file_path, code_unit)
        report.observations_checked = len(observations)
        if not observations:
            return report

        snapshot = self.store.snapshot()
        dominant = self._dominant_patterns(snapshot)

        violations: List[PatternViolation] = []
        seen = set()
        for obs in observations:
            pattern = self._match(dominant, obs)
            if pattern is None or obs.accepts(pattern.content.choice):
                continue
            key = (pattern.id, obs.line, obs.subject_name)
            if key in seen:
                continue
            seen.add(key)

            if find_matching_exception(snapshot.exceptions, pattern.id, file_path):
                report.suppressed += 1
                continue

            severity = self.policy.severity_for(pattern.confidence)
            if severity.rank < threshold.rank:
                continue

            violation = self._violation(pattern, obs, severity, file_path)
            if options.auto_fix:
                violation.suggested_fix = self.fix_generator.generate(pattern, obs, code_unit)
            violations.append(violation)

        violations.sort(key=lambda v: (-v.severity.rank, v.start_line, v.column))
        report.violations = violations
        report.overall_score = self.policy.score(violations)

        if options.track_history and violations:
            self.store.record_violations(violations)

        logger.debug(
            f"Compliance {file_path}: {len(violations)} violations, "
            f"{report.suppressed} suppressed, score {report.overall_score}"
        )
        return report

    def _dominant_patterns(
        self, snapshot: StoreSnapshot
    ) -> Dict[Tuple[str, str, Optional[str]], Pattern]:
        """Strongest pattern per (type, category, language) slot."""
        dominant: Dict[Tuple[str, str, Optional[str]], Pattern] = {}
        for pattern in snapshot.patterns:
            if pattern.frequency < self.min_pattern_frequency:
                continue
            key = (pattern.pattern_type.value, pattern.category, pattern.language)
            current = dominant.get(key)
            if current is None or (pattern.frequency, pattern.confidence) > (current.frequency, current.confidence):
                dominant[key] = pattern
        return dominant

    @staticmethod
    def _match(
        dominant: Dict[Tuple[str, str, Optional[str]], Pattern],
        obs: PatternObservation,
    ) -> Optional[Pattern]:
        """
        Pattern the observation is judged against.

        Same-language patterns win, then language-agnostic ones. Code of
        unknown language is judged against the strongest pattern of any
        language.
        """
        type_value, category = obs.slot
        language = obs.content.language
        if language is not None:
            return dominant.get((type_value, category, language)) or dominant.get((type_value, category, None))
        candidates = [p for (t, c, _), p in dominant.items() if t == type_value and c == category]
        if not candidates:
            return None
        return max(candidates, key=lambda p: (p.frequency, p.confidence))

    def _violation(
        self,
        pattern: Pattern,
        obs: PatternObservation,
        severity: Severity,
        file_path: str,
    ) -> PatternViolation:
        return PatternViolation(
            pattern_id=pattern.id,
            file_path=file_path,
            severity=severity,
            message=self._message(pattern, obs),
            start_line=obs.line,
            end_line=obs.line,
            column=obs.column,
            category=pattern.category,
            expected=pattern.content.choice,
            actual=obs.content.choice,
            code_snippet=obs.snippet,
        )

    @staticmethod
    def _message(pattern: Pattern, obs: PatternObservation) -> str:
        confidence = f"{round(pattern.confidence * 100)}% confidence"
        expected = pattern.content.choice
        actual = obs.content.choice
        if pattern.pattern_type == PatternType.NAMING:
            subject = pattern.content.subject.capitalize()
            return (
                f"{subject} '{obs.subject_name}' uses {actual}, "
                f"but you typically use {expected} ({confidence})"
            )
        if pattern.pattern_type == PatternType.STRUCTURAL:
            return (
                f"{obs.subject_name} is in {actual}/, but {pattern.content.role} modules "
                f"usually live in {expected}/ ({confidence})"
            )
        if pattern.pattern_type == PatternType.IMPLEMENTATION:
            return (
                f"Error handling uses {actual}, but you typically use {expected} ({confidence})"
            )
        if pattern.pattern_type == PatternType.STYLE:
            return (
                f"Import '{obs.subject_name}' is {actual}, but you typically use {expected} imports "
                f"({confidence})"
            )
        return (
            f"Test file '{obs.subject_name}' follows {actual}, but you typically use {expected} "
            f"({confidence})"
        )

    # =========================================================================
    # Exceptions
    # =========================================================================

    def add_exception(self, pattern_id: str, reason: str, scope_glob: str):
        """Append an exception record. Exceptions never expire."""
        if not isinstance(pattern_id, str) or not pattern_id.strip():
            raise InputError("pattern_id is required")
        glob = normalize_scope_glob(scope_glob)
        return self.store.add_exception(pattern_id.strip(), glob, reason or "")

    def is_excepted(self, pattern_id: str, file_path: str) -> bool:
        """True when any exception for ``pattern_id`` covers ``file_path``."""
        file_path = normalize_path(file_path)
        for exception in self.store.list_exceptions(pattern_id):
            if scope_matches(exception.scope_glob, file_path):
                return True
        return False

    def list_exceptions(self, pattern_id: Optional[str] = None):
        return self.store.list_exceptions(pattern_id)

    # =========================================================================
    # History
    # =========================================================================

    def get_violation_history(self, **filters) -> List[Dict]:
        return self.store.get_violation_history(**filters)

    def resolve_violation(self, violation_id: str, resolution: str) -> bool:
        return self.store.resolve_violation(violation_id, resolution)
