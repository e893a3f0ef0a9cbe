"""
Quick fixes for pattern violations.

Fixes are advisory text. Nothing here edits files; preview_fix() only
renders what a fix would change as a unified diff.
"""

import difflib
import re
from pathlib import PurePosixPath
from typing import List, Optional

from ..core.models import SuggestedFix
from .naming import CONVENTIONS, convert
from .types import Pattern, PatternObservation, PatternType

ALTERNATIVE_PENALTY = 0.7


class QuickFixGenerator:
    """Builds SuggestedFix objects for simple violation categories."""

    def generate(
        self,
        pattern: Pattern,
        obs: PatternObservation,
        code_unit: str = "",
    ) -> Optional[SuggestedFix]:
        if pattern.pattern_type == PatternType.NAMING:
            return self._naming_fix(pattern, obs)
        if pattern.pattern_type == PatternType.STRUCTURAL:
            return self._location_fix(pattern, obs)
        if pattern.pattern_type == PatternType.IMPLEMENTATION:
            return self._error_handling_fix(pattern, obs)
        if pattern.pattern_type == PatternType.STYLE:
            return self._import_fix(pattern, obs)
        if pattern.pattern_type == PatternType.TESTING:
            return self._test_file_fix(pattern, obs)
        return None

    def _naming_fix(self, pattern: Pattern, obs: PatternObservation) -> Optional[SuggestedFix]:
        expected = pattern.content.choice
        try:
            renamed = convert(obs.subject_name, expected)
        except ValueError:
            return None
        if renamed == obs.subject_name:
            return None

        alternatives = []
        for convention in CONVENTIONS:
            if convention in (expected, obs.content.choice):
                continue
            candidate = convert(obs.subject_name, convention)
            if candidate in (renamed, obs.subject_name):
                continue
            alternatives.append(SuggestedFix(
                kind="rename",
                description=f"Rename '{obs.subject_name}' to '{candidate}' ({convention})",
                original=obs.subject_name,
                replacement=candidate,
                confidence=round(pattern.confidence * ALTERNATIVE_PENALTY, 4),
            ))

        return SuggestedFix(
            kind="rename",
            description=f"Rename '{obs.subject_name}' to '{renamed}' to match {expected}",
            original=obs.subject_name,
            replacement=renamed,
            confidence=pattern.confidence,
            alternatives=alternatives,
        )

    def _location_fix(self, pattern: Pattern, obs: PatternObservation) -> SuggestedFix:
        current = PurePosixPath(obs.file_path)
        parent = current.parent.parent if current.parent.name else current.parent
        target = parent / pattern.content.choice / current.name
        return SuggestedFix(
            kind="move_file",
            description=f"Move {current.name} into {pattern.content.choice}/",
            original=str(current),
            replacement=str(target),
            confidence=round(pattern.confidence * 0.8, 4),
        )

    def _error_handling_fix(self, pattern: Pattern, obs: PatternObservation) -> SuggestedFix:
        expected = pattern.content.choice
        actual = obs.content.choice
        if "." in actual and actual in obs.snippet:
            replacement = obs.snippet.replace(actual, expected, 1)
        else:
            replacement = f"{expected}(...)" if "." in expected else expected
        return SuggestedFix(
            kind="replace_call",
            description=f"Handle errors with {expected} instead of {actual}",
            original=obs.snippet,
            replacement=replacement,
            confidence=round(pattern.confidence * 0.8, 4),
        )

    def _import_fix(self, pattern: Pattern, obs: PatternObservation) -> SuggestedFix:
        expected = pattern.content.choice
        source = obs.subject_name
        if expected == "alias" and source.startswith("."):
            target = "@/" + re.sub(r"^(\.\./|\./)+", "", source)
        else:
            target = source
        return SuggestedFix(
            kind="rewrite_import",
            description=f"Use a{'n' if expected[0] in 'aeiou' else ''} {expected} import for '{source}'",
            original=source,
            replacement=target,
            confidence=round(pattern.confidence * 0.6, 4),
        )

    def _test_file_fix(self, pattern: Pattern, obs: PatternObservation) -> SuggestedFix:
        current = PurePosixPath(obs.file_path)
        name = current.name
        stem, _, suffix = name.rpartition(".")
        base = re.sub(r"(\.test|\.spec|_test)$", "", stem)
        base = re.sub(r"^test_", "", base)
        expected = pattern.content.choice
        if expected == ".test":
            new_name = f"{base}.test.{suffix}"
        elif expected == ".spec":
            new_name = f"{base}.spec.{suffix}"
        elif expected == "test_prefix":
            new_name = f"test_{base}.{suffix}"
        else:
            new_name = f"{base}_test.{suffix}"
        return SuggestedFix(
            kind="rename_file",
            description=f"Rename {name} to {new_name}",
            original=str(current),
            replacement=str(current.with_name(new_name)),
            confidence=round(pattern.confidence * 0.8, 4),
        )


def apply_fix(code_unit: str, fix: SuggestedFix) -> str:
    """Return the code unit with a rename/replace fix applied (file moves are left alone)."""
    if fix.kind == "rename":
        return re.sub(rf"(?<![\w$]){re.escape(fix.original)}(?![\w$])", fix.replacement, code_unit)
    if fix.kind in ("replace_call", "rewrite_import") and fix.original:
        return code_unit.replace(fix.original, fix.replacement, 1)
    return code_unit


def preview_fix(code_unit: str, fix: SuggestedFix, file_path: str = "code") -> str:
    """Unified diff of what a fix would change."""
    updated = apply_fix(code_unit, fix)
    diff: List[str] = list(difflib.unified_diff(
        code_unit.splitlines(keepends=True),
        updated.splitlines(keepends=True),
        fromfile=f"a/{file_path}",
        tofile=f"b/{file_path}",
    ))
    return "".join(diff)
