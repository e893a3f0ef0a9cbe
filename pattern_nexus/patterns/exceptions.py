"""
Pattern exception scopes.

A scope is either a plain path prefix ("legacy", "src/old.ts") or a glob
("legacy/**", "**/*.spec.ts", "src/*/generated/*"). Globs are matched with
fnmatch, where ``*`` also crosses directory separators, and a ``**`` path
segment may also stand for no directory at all ("legacy/**/*.ts" covers
"legacy/a.ts").
"""

import fnmatch
from typing import Iterable, Optional, Set

from ..core.models import PatternException
from ..errors import InputError

GLOB_CHARS = set("*?[")


def normalize_scope_glob(scope_glob: str) -> str:
    """Validate and normalize a scope. Raises InputError for unusable globs."""
    if not isinstance(scope_glob, str) or not scope_glob.strip():
        raise InputError("scope_glob must be a non-empty string")
    glob = scope_glob.strip().replace("\\", "/")
    if "\x00" in glob:
        raise InputError("scope_glob must not contain NUL characters")
    while glob.startswith("./"):
        glob = glob[2:]
    glob = glob.lstrip("/")
    if not glob:
        raise InputError(f"scope_glob {scope_glob!r} does not name any path")

    depth = 0
    for char in glob:
        if char == "[":
            depth += 1
        elif char == "]" and depth:
            depth -= 1
    if depth:
        raise InputError(f"scope_glob {scope_glob!r} has an unclosed '['")
    return glob


def _zero_directory_variants(scope_glob: str) -> Set[str]:
    """The glob plus every way of letting its ``**`` segments match no directory."""
    variants = {scope_glob}
    pending = [scope_glob]
    while pending:
        glob = pending.pop()
        candidates = []
        if glob.startswith("**/"):
            candidates.append(glob[3:])
        if glob.endswith("/**"):
            candidates.append(glob[:-3])
        index = glob.find("/**/")
        while index != -1:
            candidates.append(glob[:index] + glob[index + 3:])
            index = glob.find("/**/", index + 1)
        for candidate in candidates:
            if candidate and candidate not in variants:
                variants.add(candidate)
                pending.append(candidate)
    return variants


def scope_matches(scope_glob: str, file_path: str) -> bool:
    """True when ``file_path`` (relative, POSIX) falls inside the scope."""
    path = file_path.replace("\\", "/").lstrip("/")
    while path.startswith("./"):
        path = path[2:]

    if not GLOB_CHARS.intersection(scope_glob):
        prefix = scope_glob.rstrip("/")
        return path == prefix or path.startswith(prefix + "/")

    return any(fnmatch.fnmatchcase(path, glob) for glob in _zero_directory_variants(scope_glob))


def find_matching_exception(
    exceptions: Iterable[PatternException],
    pattern_id: str,
    file_path: str,
) -> Optional[PatternException]:
    """First exception for ``pattern_id`` whose scope covers ``file_path``."""
    for exception in exceptions:
        if exception.pattern_id == pattern_id and scope_matches(exception.scope_glob, file_path):
            return exception
    return None
