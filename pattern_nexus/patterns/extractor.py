"""
Concept Extraction.

Turns raw file text into typed concepts (functions, classes, identifiers,
imports, error handlers). The learner and the conflict detector only depend
on the ConceptExtractor contract; RegexConceptExtractor is the built-in,
dependency-free implementation, and a tree-sitter or LSP backed extractor
can be dropped in by subclassing.

Contract: extract() never raises for unsupported input. It returns an empty
concept list with ``degraded=True`` instead.
"""

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Callable, Dict, List, Optional

from ..core.models import Concept

logger = logging.getLogger(__name__)


LANGUAGE_BY_EXTENSION: Dict[str, str] = {
    ".py": "python",
    ".pyi": "python",
    ".js": "javascript",
    ".jsx": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".go": "go",
    ".java": "java",
    ".rs": "rust",
    ".rb": "ruby",
    ".php": "php",
    ".cs": "csharp",
    ".swift": "swift",
    ".kt": "kotlin",
}

# Files that never contain code concepts
NON_CODE_EXTENSIONS = {
    ".png", ".jpg", ".jpeg", ".gif", ".ico", ".svg", ".webp", ".pdf",
    ".zip", ".gz", ".tar", ".tgz", ".jar", ".exe", ".dll", ".so", ".dylib",
    ".bin", ".woff", ".woff2", ".ttf", ".eot", ".mp3", ".mp4", ".lock",
}

MAX_FILE_CHARS = 1_000_000


def detect_language(file_path: str) -> Optional[str]:
    """Language tag for a path, or None when the extension is unknown."""
    return LANGUAGE_BY_EXTENSION.get(PurePosixPath(file_path).suffix.lower())


@dataclass
class ExtractionResult:
    """Concepts extracted from one file."""
    concepts: List[Concept] = field(default_factory=list)
    language: Optional[str] = None
    degraded: bool = False
    reason: Optional[str] = None


class ConceptExtractor(ABC):
    """Abstract base for concept extraction backends."""

    @abstractmethod
    def extract(self, file_path: str, content: str) -> ExtractionResult:
        """Extract typed concepts from file content."""
        pass


# =============================================================================
# Regex-based extraction
# =============================================================================

_PY_DEF = re.compile(r"^(\s*)(?:async\s+)?def\s+([A-Za-z_]\w*)")
_PY_CLASS = re.compile(r"^(\s*)class\s+([A-Za-z_]\w*)")
_PY_ASSIGN = re.compile(r"^([A-Za-z_]\w*)\s*(?::\s*[^=]+)?=(?!=)")
_PY_FROM_IMPORT = re.compile(r"^\s*from\s+(\.+[\w.]*|[\w.]+)\s+import\b")
_PY_IMPORT = re.compile(r"^\s*import\s+([\w.]+)")
_PY_EXCEPT = re.compile(r"^(\s*)except\b.*:\s*(#.*)?$")

_JS_FUNCTION = re.compile(r"\bfunction\s*\*?\s*([A-Za-z_$][\w$]*)\s*\(")
_JS_CLASS = re.compile(r"\bclass\s+([A-Za-z_$][\w$]*)")
_JS_INTERFACE = re.compile(r"\binterface\s+([A-Za-z_$][\w$]*)")
_JS_TYPE = re.compile(r"^\s*(?:export\s+)?type\s+([A-Za-z_$][\w$]*)\s*(?:<[^>]*>)?\s*=")
_JS_BINDING = re.compile(r"\b(const|let|var)\s+([A-Za-z_$][\w$]*)\s*(?::\s*[^=]+)?=\s*(.*)")
_JS_ARROW = re.compile(r"^(?:async\s+)?(?:\([^)]*\)|[A-Za-z_$][\w$]*)\s*(?::\s*[^=]+)?=>|^(?:async\s+)?function\b")
_JS_IMPORT = re.compile(r"^\s*import\s+(?:[\s\S]*?\s+from\s+)?['\"]([^'\"]+)['\"]")
_JS_REQUIRE = re.compile(r"\brequire\(\s*['\"]([^'\"]+)['\"]\s*\)")
_JS_CATCH = re.compile(r"\bcatch\s*(?:\([^)]*\))?\s*\{")
_PY_DEF_GENERIC = re.compile(r"^\s*(?:async\s+)?def\s+([A-Za-z_]\w*)")

_HANDLER_CALL = re.compile(r"\b(console|logger|logging|log|self\.logger|this\.logger)\.(\w+)\s*\(")
_SCREAMING = re.compile(r"^[A-Z][A-Z0-9_]*$")


def import_style(source: str) -> str:
    """Classify an import specifier: relative, alias or absolute."""
    if source.startswith("."):
        return "relative"
    if source.startswith("@/") or source.startswith("~/"):
        return "alias"
    return "absolute"


def _handler_approach(line: str) -> Optional[str]:
    stripped = line.strip()
    match = _HANDLER_CALL.search(stripped)
    if match:
        target = match.group(1).split(".")[-1]
        return f"{target}.{match.group(2)}"
    if stripped.startswith("raise") or stripped.startswith("throw"):
        return stripped.split()[0]
    if re.match(r"^print\s*\(", stripped):
        return "print"
    if stripped in ("pass", "continue"):
        return "swallow"
    return None


class RegexConceptExtractor(ConceptExtractor):
    """
    Line-oriented regex extractor.

    Handles Python and JavaScript/TypeScript natively; any other text file is
    scanned with the C-family rules, which cover most brace languages well
    enough for naming conventions.
    """

    def __init__(self, max_file_chars: int = MAX_FILE_CHARS):
        self.max_file_chars = max_file_chars
        self._handlers: Dict[str, Callable[[str, List[str]], List[Concept]]] = {
            "python": self._extract_python,
            "javascript": self._extract_javascript,
            "typescript": self._extract_javascript,
        }

    def extract(self, file_path: str, content: str) -> ExtractionResult:
        suffix = PurePosixPath(file_path).suffix.lower()
        language = detect_language(file_path)

        if suffix in NON_CODE_EXTENSIONS:
            return ExtractionResult(language=language, degraded=True, reason="non-code file")
        if content is None or "\x00" in content:
            return ExtractionResult(language=language, degraded=True, reason="binary content")
        if len(content) > self.max_file_chars:
            return ExtractionResult(language=language, degraded=True, reason="file too large")

        lines = content.splitlines()
        handler = self._handlers.get(language, self._extract_generic)
        concepts = handler(file_path, lines)
        logger.debug(f"Extracted {len(concepts)} concepts from {file_path}")
        return ExtractionResult(concepts=concepts, language=language)

    def _extract_python(self, file_path: str, lines: List[str]) -> List[Concept]:
        concepts = []
        for idx, line in enumerate(lines, start=1):
            match = _PY_CLASS.match(line)
            if match:
                concepts.append(self._concept(match.group(2), "class", idx, match.start(2), file_path))
                continue
            match = _PY_DEF.match(line)
            if match:
                kind = "method" if match.group(1) else "function"
                name = match.group(2)
                if name.startswith("__") and name.endswith("__"):
                    continue
                concepts.append(self._concept(name, kind, idx, match.start(2), file_path))
                continue
            match = _PY_FROM_IMPORT.match(line) or _PY_IMPORT.match(line)
            if match:
                source = match.group(1)
                concepts.append(self._concept(
                    source, "import", idx, match.start(1), file_path,
                    metadata={"source": source, "style": import_style(source)},
                ))
                continue
            match = _PY_ASSIGN.match(line)
            if match:
                name = match.group(1)
                kind = "constant" if _SCREAMING.match(name.strip("_")) and len(name.strip("_")) > 1 else "variable"
                concepts.append(self._concept(name, kind, idx, 0, file_path))
                continue
            match = _PY_EXCEPT.match(line)
            if match:
                concepts.extend(self._python_handler(lines, idx, len(match.group(1)), file_path))
        return concepts

    def _python_handler(self, lines: List[str], except_line: int, indent: int, file_path: str) -> List[Concept]:
        for offset, line in enumerate(lines[except_line:], start=except_line + 1):
            if not line.strip():
                continue
            if len(line) - len(line.lstrip()) <= indent:
                break
            approach = _handler_approach(line)
            if approach:
                return [self._concept(
                    approach, "error_handler", offset, len(line) - len(line.lstrip()), file_path,
                    metadata={"block_line": except_line},
                )]
        return []

    def _extract_javascript(self, file_path: str, lines: List[str]) -> List[Concept]:
        concepts = []
        for idx, line in enumerate(lines, start=1):
            stripped = line.strip()
            if stripped.startswith("//") or stripped.startswith("*"):
                continue

            match = _JS_IMPORT.match(line) or _JS_REQUIRE.search(line)
            if match:
                source = match.group(1)
                concepts.append(self._concept(
                    source, "import", idx, match.start(1), file_path,
                    metadata={"source": source, "style": import_style(source)},
                ))

            concepts.extend(self._c_family_declarations(line, idx, file_path))

            if _JS_CATCH.search(line):
                concepts.extend(self._brace_handler(lines, idx, file_path))
        return concepts

    def _extract_generic(self, file_path: str, lines: List[str]) -> List[Concept]:
        concepts = []
        for idx, line in enumerate(lines, start=1):
            stripped = line.strip()
            if stripped.startswith("//") or stripped.startswith("#"):
                continue
            match = _PY_DEF_GENERIC.match(line)
            if match:
                concepts.append(self._concept(match.group(1), "function", idx, match.start(1), file_path))
                continue
            concepts.extend(self._c_family_declarations(line, idx, file_path))
        return concepts

    def _c_family_declarations(self, line: str, idx: int, file_path: str) -> List[Concept]:
        concepts = []
        for regex, kind in ((_JS_CLASS, "class"), (_JS_INTERFACE, "interface"), (_JS_FUNCTION, "function")):
            for match in regex.finditer(line):
                concepts.append(self._concept(match.group(1), kind, idx, match.start(1), file_path))
        match = _JS_TYPE.match(line)
        if match:
            concepts.append(self._concept(match.group(1), "type", idx, match.start(1), file_path))
        match = _JS_BINDING.search(line)
        if match:
            keyword, name, rest = match.groups()
            if _JS_ARROW.match(rest.strip()):
                kind = "function"
            elif keyword == "const" and _SCREAMING.match(name) and len(name) > 1:
                kind = "constant"
            else:
                kind = "variable"
            concepts.append(self._concept(name, kind, idx, match.start(2), file_path))
        return concepts

    def _brace_handler(self, lines: List[str], catch_line: int, file_path: str) -> List[Concept]:
        depth = 0
        for offset, line in enumerate(lines[catch_line - 1:], start=catch_line):
            text = line
            if offset == catch_line:
                text = line[_JS_CATCH.search(line).end():]
                depth = 1
            approach = _handler_approach(text.split("}")[0] if offset == catch_line else text)
            if approach:
                return [self._concept(
                    approach, "error_handler", offset, len(line) - len(line.lstrip()), file_path,
                    metadata={"block_line": catch_line},
                )]
            depth += text.count("{") - text.count("}")
            if depth <= 0:
                break
        return []

    @staticmethod
    def _concept(
        name: str,
        concept_type: str,
        line: int,
        column: int,
        file_path: str,
        metadata: Optional[Dict] = None,
    ) -> Concept:
        return Concept(
            name=name,
            concept_type=concept_type,
            confidence_score=0.8,
            line=line,
            column=column + 1,
            file_path=file_path,
            metadata=metadata or {},
        )


def create_extractor(backend: str = "regex", **kwargs) -> ConceptExtractor:
    """Factory function to create a concept extractor."""
    if backend == "regex":
        return RegexConceptExtractor(**kwargs)
    raise ValueError(f"Unknown extractor backend: {backend}")
