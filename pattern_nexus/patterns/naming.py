"""
Naming convention detection and conversion.
"""

import re
from typing import List, Tuple

CAMEL_CASE = "camelCase"
PASCAL_CASE = "PascalCase"
SNAKE_CASE = "snake_case"
SCREAMING_SNAKE_CASE = "SCREAMING_SNAKE_CASE"
KEBAB_CASE = "kebab-case"
MIXED = "mixed"

CONVENTIONS = (CAMEL_CASE, PASCAL_CASE, SNAKE_CASE, SCREAMING_SNAKE_CASE, KEBAB_CASE)

# Checked in order; the first match wins.
_DETECTORS = [
    (CAMEL_CASE, re.compile(r"^[a-z][a-zA-Z0-9]*$")),
    (PASCAL_CASE, re.compile(r"^[A-Z][a-zA-Z0-9]*$")),
    (SNAKE_CASE, re.compile(r"^[a-z][a-z0-9_]*$")),
    (SCREAMING_SNAKE_CASE, re.compile(r"^[A-Z][A-Z0-9_]*$")),
    (KEBAB_CASE, re.compile(r"^[a-z][a-z0-9-]*$")),
]

_LOWER_WORD = re.compile(r"^[a-z][a-z0-9]*$")
_UPPER_WORD = re.compile(r"^[A-Z][A-Z0-9]*$")
_WORD_BOUNDARY = re.compile(r"[A-Z]?[a-z0-9]+|[A-Z]+(?![a-z])")


def strip_affixes(name: str) -> str:
    """Drop leading/trailing underscores and sigils (``_private``, ``$el``, ``__init__``)."""
    return name.strip("_$")


def detect_convention(name: str) -> str:
    """Return the naming convention of an identifier, or ``mixed``."""
    core = strip_affixes(name)
    if not core:
        return MIXED
    for convention, pattern in _DETECTORS:
        if pattern.match(core):
            return convention
    return MIXED


def compatible_conventions(name: str) -> Tuple[str, ...]:
    """
    Every convention an identifier is consistent with.

    Single words are ambiguous: ``count`` fits camelCase and snake_case,
    ``ID`` fits PascalCase and SCREAMING_SNAKE_CASE.
    """
    core = strip_affixes(name)
    if not core:
        return ()
    if _LOWER_WORD.match(core):
        return (CAMEL_CASE, SNAKE_CASE, KEBAB_CASE)
    if _UPPER_WORD.match(core):
        return (PASCAL_CASE, SCREAMING_SNAKE_CASE)
    convention = detect_convention(core)
    if convention == MIXED:
        return ()
    return (convention,)


def split_words(name: str) -> List[str]:
    """Split an identifier into lowercase words on case changes, ``_`` and ``-``."""
    words = []
    for part in re.split(r"[_\-\s]+", strip_affixes(name)):
        if not part:
            continue
        words.extend(w.lower() for w in _WORD_BOUNDARY.findall(part))
    return words


def convert(name: str, convention: str) -> str:
    """
    Convert an identifier to another convention.

    Example:
        convert("user_id", "camelCase")   # -> "userId"
        convert("userId", "SCREAMING_SNAKE_CASE")  # -> "USER_ID"
    """
    words = split_words(name)
    if not words:
        return name
    if convention == CAMEL_CASE:
        return words[0] + "".join(w.capitalize() for w in words[1:])
    if convention == PASCAL_CASE:
        return "".join(w.capitalize() for w in words)
    if convention == SNAKE_CASE:
        return "_".join(words)
    if convention == SCREAMING_SNAKE_CASE:
        return "_".join(w.upper() for w in words)
    if convention == KEBAB_CASE:
        return "-".join(words)
    raise ValueError(f"Unknown naming convention: {convention}")
