"""
Observation Analyzer.

Folds extracted concepts into candidate pattern observations:
- naming: one observation per identifier (casing per concept kind)
- structural: where role-suffixed classes (UserService, ...) live
- implementation: the call used inside catch/except blocks
- style: relative vs alias imports
- testing: how test files are named

The analyzer is pure. The learner uses it to build evidence and the
conflict detector uses it, read-only, to check new code.
"""

import re
from pathlib import PurePosixPath
from typing import Dict, List, Optional, Tuple

from ..core.models import Concept
from .extractor import ExtractionResult, detect_language
from .naming import compatible_conventions
from .types import (
    ImplementationContent,
    NamingContent,
    PatternObservation,
    PatternType,
    StructuralContent,
    StyleContent,
    TestingContent,
)

NAMING_SUBJECTS = {"function", "method", "class", "variable", "constant", "interface", "type"}

ROLE_SUFFIXES: Dict[str, str] = {
    "Service": "service",
    "Controller": "controller",
    "Repository": "repository",
    "Handler": "handler",
    "Middleware": "middleware",
    "Model": "model",
    "Store": "store",
    "Provider": "provider",
}

TEST_FILE_CONVENTIONS: List[Tuple[str, re.Pattern]] = [
    (".test", re.compile(r"^[^/]+\.test\.[A-Za-z0-9]+$")),
    (".spec", re.compile(r"^[^/]+\.spec\.[A-Za-z0-9]+$")),
    ("test_prefix", re.compile(r"^test_[^/]+\.[A-Za-z0-9]+$")),
    ("_test_suffix", re.compile(r"^[^/]+_test\.[A-Za-z0-9]+$")),
]

MAX_SNIPPET = 120


def detect_test_convention(file_path: str) -> Optional[str]:
    """Naming convention of a test file, or None when it is not a test file."""
    name = PurePosixPath(file_path).name
    for convention, pattern in TEST_FILE_CONVENTIONS:
        if pattern.match(name):
            return convention
    return None


def class_role(name: str) -> Optional[str]:
    for suffix, role in ROLE_SUFFIXES.items():
        if name.endswith(suffix) and name != suffix:
            return role
    return None


def directory_of(file_path: str) -> str:
    parent = PurePosixPath(file_path).parent
    return "." if str(parent) in ("", ".") else parent.name


class ObservationAnalyzer:
    """
    Turns an ExtractionResult into PatternObservations.

    Example:
        analyzer = ObservationAnalyzer()
        result = extractor.extract("src/user.ts", text)
        observations = analyzer.observe(result, "src/user.ts", text)
    """

    def observe(
        self,
        result: ExtractionResult,
        file_path: str,
        content: str = "",
    ) -> List[PatternObservation]:
        language = result.language or detect_language(file_path)
        lines = content.splitlines() if content else []
        observations: List[PatternObservation] = []
        seen_roles = set()

        for concept in result.concepts:
            snippet = self._snippet(lines, concept.line)
            if concept.concept_type in NAMING_SUBJECTS:
                observation = self._naming(concept, file_path, language, snippet)
                if observation:
                    observations.append(observation)
            if concept.concept_type == "class":
                role = class_role(concept.name)
                if role and role not in seen_roles:
                    seen_roles.add(role)
                    observations.append(PatternObservation(
                        pattern_type=PatternType.STRUCTURAL,
                        content=StructuralContent(
                            language=language, role=role, location=directory_of(file_path)
                        ),
                        file_path=file_path,
                        line=concept.line,
                        column=concept.column,
                        snippet=snippet,
                        subject_name=concept.name,
                    ))
            elif concept.concept_type == "error_handler":
                observations.append(PatternObservation(
                    pattern_type=PatternType.IMPLEMENTATION,
                    content=ImplementationContent(
                        language=language, concern="error_handling", approach=concept.name
                    ),
                    file_path=file_path,
                    line=concept.line,
                    column=concept.column,
                    snippet=snippet,
                    subject_name=concept.name,
                ))
            elif concept.concept_type == "import":
                style = concept.metadata.get("style")
                if style in ("relative", "alias"):
                    observations.append(PatternObservation(
                        pattern_type=PatternType.STYLE,
                        content=StyleContent(language=language, aspect="import_style", option=style),
                        file_path=file_path,
                        line=concept.line,
                        column=concept.column,
                        snippet=snippet,
                        subject_name=concept.metadata.get("source", concept.name),
                    ))

        convention = detect_test_convention(file_path)
        if convention:
            observations.append(PatternObservation(
                pattern_type=PatternType.TESTING,
                content=TestingContent(language=language, aspect="test_file_naming", convention=convention),
                file_path=file_path,
                line=1,
                snippet=PurePosixPath(file_path).name,
                subject_name=PurePosixPath(file_path).name,
            ))
        return observations

    @staticmethod
    def _naming(
        concept: Concept,
        file_path: str,
        language: Optional[str],
        snippet: str,
    ) -> Optional[PatternObservation]:
        compatible = compatible_conventions(concept.name)
        if not compatible:
            return None
        return PatternObservation(
            pattern_type=PatternType.NAMING,
            content=NamingContent(
                language=language, subject=concept.concept_type, convention=compatible[0]
            ),
            file_path=file_path,
            line=concept.line,
            column=concept.column,
            snippet=snippet,
            subject_name=concept.name,
            compatible=compatible,
        )

    @staticmethod
    def _snippet(lines: List[str], line: int) -> str:
        if 0 < line <= len(lines):
            return lines[line - 1].strip()[:MAX_SNIPPET]
        return ""
