"""
Change batches.

Validation, path normalization and coalescing for (path, change-kind)
events, plus an adapter for ``git diff --name-status`` output.
"""

from pathlib import PurePosixPath
from typing import Any, Dict, Iterable, List, Optional, Union

from ..core.models import ChangeEvent, ChangeKind
from ..errors import InputError

ChangeLike = Union[ChangeEvent, Dict[str, Any]]


def normalize_path(path: str, root: Optional[str] = None) -> str:
    """
    Normalize a changed path to a POSIX path relative to the project root.

    Absolute paths are accepted only when they sit under ``root``.
    """
    if not isinstance(path, str) or not path.strip():
        raise InputError("Change path must be a non-empty string")
    path = path.strip().replace("\\", "/")

    if path.startswith("/"):
        if not root:
            raise InputError(f"Absolute path without a project root: {path}")
        root_posix = str(PurePosixPath(root.replace("\\", "/")))
        pure = PurePosixPath(path)
        try:
            path = str(pure.relative_to(root_posix))
        except ValueError:
            raise InputError(f"Path {path} is outside the project root {root_posix}")

    parts = []
    for part in PurePosixPath(path).parts:
        if part in ("", "."):
            continue
        if part == "..":
            if not parts:
                raise InputError(f"Path escapes the project root: {path}")
            parts.pop()
            continue
        parts.append(part)
    if not parts:
        raise InputError(f"Path does not name a file: {path}")
    return "/".join(parts)


def to_change_event(raw: ChangeLike, root: Optional[str] = None) -> ChangeEvent:
    """Validate one change (a ChangeEvent or a plain dict) and normalize its paths."""
    if isinstance(raw, ChangeEvent):
        event = raw
    elif isinstance(raw, dict):
        kind_value = raw.get("kind", raw.get("change_kind", raw.get("changeKind")))
        try:
            kind = ChangeKind(kind_value)
        except ValueError:
            raise InputError(f"Unknown change kind: {kind_value!r}")
        event = ChangeEvent(
            path=raw.get("path"),
            kind=kind,
            revision=raw.get("revision"),
            old_path=raw.get("old_path", raw.get("oldPath")),
            content=raw.get("content"),
        )
    else:
        raise InputError(f"Change must be a mapping or ChangeEvent, got {type(raw).__name__}")

    if not isinstance(event.kind, ChangeKind):
        raise InputError(f"Unknown change kind: {event.kind!r}")
    if event.content is not None and not isinstance(event.content, str):
        raise InputError(f"Inline content for {event.path} must be text")

    old_path = None
    if event.kind == ChangeKind.RENAMED:
        if not event.old_path:
            raise InputError(f"Renamed change for {event.path} is missing old_path")
        old_path = normalize_path(event.old_path, root)
    path = normalize_path(event.path, root)
    if old_path == path:
        raise InputError(f"Rename of {path} onto itself")

    return ChangeEvent(
        path=path,
        kind=event.kind,
        revision=event.revision,
        old_path=old_path,
        content=event.content,
    )


def merge_changes(older: ChangeEvent, newer: ChangeEvent) -> ChangeEvent:
    """
    Combine two pending changes to the same path.

    deleted then added/modified -> modified, added then modified -> added,
    anything then deleted -> deleted. The newest content wins.
    """
    if newer.kind == ChangeKind.DELETED:
        kind = ChangeKind.DELETED
    elif older.kind == ChangeKind.DELETED:
        kind = ChangeKind.MODIFIED
    elif older.kind == ChangeKind.ADDED:
        kind = ChangeKind.ADDED
    else:
        kind = ChangeKind.MODIFIED
    return ChangeEvent(
        path=newer.path,
        kind=kind,
        revision=newer.revision or older.revision,
        content=newer.content if newer.kind != ChangeKind.DELETED else None,
    )


def coalesce_changes(events: Iterable[ChangeEvent]) -> List[ChangeEvent]:
    """
    Collapse repeated changes to the same path, keeping first-seen order.

    Renames are never merged; they re-key records and must run in order.
    """
    result: List[ChangeEvent] = []
    index: Dict[str, int] = {}
    for event in events:
        if event.kind == ChangeKind.RENAMED:
            result.append(event)
            index.pop(event.path, None)
            index.pop(event.old_path, None)
            continue
        if event.path in index:
            position = index[event.path]
            result[position] = merge_changes(result[position], event)
        else:
            index[event.path] = len(result)
            result.append(event)
    return result


def validate_batch(changes: Iterable[ChangeLike], root: Optional[str] = None) -> List[ChangeEvent]:
    """Validate, normalize and coalesce a change batch. Rejects the whole batch on any bad entry."""
    if changes is None:
        raise InputError("Change batch is required")
    if isinstance(changes, (str, bytes, dict)):
        raise InputError("Change batch must be a list of changes")
    events = [to_change_event(raw, root) for raw in changes]
    return coalesce_changes(events)


_STATUS_KINDS = {
    "A": ChangeKind.ADDED,
    "M": ChangeKind.MODIFIED,
    "D": ChangeKind.DELETED,
    "T": ChangeKind.MODIFIED,
    "C": ChangeKind.ADDED,
}


def parse_name_status(output: str, revision: Optional[str] = None) -> List[ChangeEvent]:
    """
    Parse ``git diff --name-status`` output into change events.

    Example:
        parse_name_status("M\\tsrc/app.ts\\nR087\\told.ts\\tnew.ts", revision="abc123")
    """
    events = []
    for line in output.splitlines():
        if not line.strip():
            continue
        fields = line.split("\t")
        status = fields[0].strip()
        code = status[:1]
        if code == "R":
            if len(fields) < 3:
                raise InputError(f"Malformed rename line: {line!r}")
            events.append(ChangeEvent(
                path=fields[2], kind=ChangeKind.RENAMED, revision=revision, old_path=fields[1]
            ))
        elif code == "C":
            if len(fields) < 3:
                raise InputError(f"Malformed copy line: {line!r}")
            events.append(ChangeEvent(path=fields[2], kind=ChangeKind.ADDED, revision=revision))
        elif code in _STATUS_KINDS:
            if len(fields) < 2:
                raise InputError(f"Malformed status line: {line!r}")
            events.append(ChangeEvent(path=fields[1], kind=_STATUS_KINDS[code], revision=revision))
        else:
            raise InputError(f"Unknown git status {status!r}")
    return events
