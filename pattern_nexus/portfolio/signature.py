"""
Pattern signatures.

A signature identifies "the same convention" across projects: the pattern
type plus its content with project- and language-specific parts stripped,
category tags lowercased and lists sorted.
"""

import hashlib
import json
from typing import Any, Dict

# Content keys that differ between projects for the same convention
PROJECT_SPECIFIC_KEYS = {"language", "project_id", "project_path", "examples"}

# Keys whose values are tags and compare case-insensitively
TAG_KEYS = {"category", "tags", "role", "location", "aspect", "concern"}


def _normalize_value(key: str, value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        items = [_normalize_value(key, v) for v in value]
        return sorted(items, key=lambda v: json.dumps(v, sort_keys=True))
    if isinstance(value, dict):
        return normalize_content(value)
    if isinstance(value, str) and key in TAG_KEYS:
        return value.strip().lower()
    return value


def normalize_content(content: Dict[str, Any]) -> Dict[str, Any]:
    """Language-stripped, canonical form of a pattern content payload."""
    return {
        key: _normalize_value(key, value)
        for key, value in sorted(content.items())
        if key not in PROJECT_SPECIFIC_KEYS and value is not None
    }


def compute_signature(pattern_type: str, content: Dict[str, Any]) -> str:
    """
    Stable cross-project key for a pattern.

    Example:
        compute_signature("naming", {"subject": "variable", "convention": "camelCase",
                                     "language": "typescript"})
        # same result for language="javascript"
    """
    canonical = json.dumps(
        {"pattern_type": pattern_type, "content": normalize_content(content)},
        sort_keys=True,
        separators=(",", ":"),
    )
    return f"sig_{hashlib.sha256(canonical.encode()).hexdigest()[:20]}"
