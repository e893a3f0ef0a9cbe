"""Tests for change batch validation, coalescing and git parsing."""

import pytest

from pattern_nexus.core.models import ChangeEvent, ChangeKind
from pattern_nexus.errors import InputError
from pattern_nexus.patterns.changes import (
    coalesce_changes,
    merge_changes,
    normalize_path,
    parse_name_status,
    validate_batch,
)


def test_normalize_path():
    assert normalize_path("./src//user.ts") == "src/user.ts"
    assert normalize_path("src\\lib\\a.ts") == "src/lib/a.ts"
    assert normalize_path("src/old/../user.ts") == "src/user.ts"
    assert normalize_path("/repo/app/src/a.ts", root="/repo/app") == "src/a.ts"


@pytest.mark.parametrize("bad", ["", "   ", "../outside.ts", ".", None])
def test_normalize_path_rejects(bad):
    with pytest.raises(InputError):
        normalize_path(bad)


def test_absolute_path_outside_root():
    with pytest.raises(InputError):
        normalize_path("/etc/passwd", root="/repo/app")


def test_validate_batch_accepts_dicts_and_events():
    events = validate_batch([
        {"path": "a.ts", "kind": "added"},
        {"path": "b.ts", "changeKind": "renamed", "oldPath": "c.ts"},
        ChangeEvent(path="d.ts", kind=ChangeKind.DELETED),
    ])

    assert [(e.path, e.kind) for e in events] == [
        ("a.ts", ChangeKind.ADDED),
        ("b.ts", ChangeKind.RENAMED),
        ("d.ts", ChangeKind.DELETED),
    ]
    assert events[1].old_path == "c.ts"


@pytest.mark.parametrize("batch", [
    "a.ts",
    {"path": "a.ts", "kind": "added"},
    [{"path": "a.ts", "kind": "touched"}],
    [{"path": "a.ts", "kind": "renamed"}],
    [{"path": "a.ts", "kind": "renamed", "old_path": "a.ts"}],
    [{"path": "a.ts", "kind": "added"}, {"path": "../x.ts", "kind": "added"}],
    [42],
])
def test_validate_batch_rejects_whole_batch(batch):
    with pytest.raises(InputError):
        validate_batch(batch)


def test_merge_changes():
    added = ChangeEvent(path="a.ts", kind=ChangeKind.ADDED, content="v1")
    modified = ChangeEvent(path="a.ts", kind=ChangeKind.MODIFIED, content="v2")
    deleted = ChangeEvent(path="a.ts", kind=ChangeKind.DELETED)

    assert merge_changes(added, modified).kind == ChangeKind.ADDED
    assert merge_changes(added, modified).content == "v2"
    assert merge_changes(modified, deleted).kind == ChangeKind.DELETED
    assert merge_changes(deleted, added).kind == ChangeKind.MODIFIED


def test_coalesce_keeps_renames_in_order():
    events = coalesce_changes([
        ChangeEvent(path="a.ts", kind=ChangeKind.MODIFIED),
        ChangeEvent(path="b.ts", kind=ChangeKind.RENAMED, old_path="a.ts"),
        ChangeEvent(path="b.ts", kind=ChangeKind.MODIFIED),
        ChangeEvent(path="c.ts", kind=ChangeKind.ADDED),
        ChangeEvent(path="c.ts", kind=ChangeKind.MODIFIED),
    ])

    assert [(e.path, e.kind) for e in events] == [
        ("a.ts", ChangeKind.MODIFIED),
        ("b.ts", ChangeKind.RENAMED),
        ("b.ts", ChangeKind.MODIFIED),
        ("c.ts", ChangeKind.ADDED),
    ]


def test_parse_name_status():
    output = "M\tsrc/app.ts\nA\tsrc/new.ts\nD\tsrc/gone.ts\nR087\tsrc/old.ts\tsrc/renamed.ts\n\n"
    events = parse_name_status(output, revision="abc123")

    assert [(e.kind, e.path, e.old_path) for e in events] == [
        (ChangeKind.MODIFIED, "src/app.ts", None),
        (ChangeKind.ADDED, "src/new.ts", None),
        (ChangeKind.DELETED, "src/gone.ts", None),
        (ChangeKind.RENAMED, "src/renamed.ts", "src/old.ts"),
    ]
    assert all(e.revision == "abc123" for e in events)


def test_parse_name_status_rejects_unknown_status():
    with pytest.raises(InputError):
        parse_name_status("X\tsrc/app.ts")
