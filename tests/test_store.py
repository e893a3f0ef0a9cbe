"""Tests for the SQLite pattern store."""

import json
from datetime import datetime

import pytest

from pattern_nexus.core.models import Concept, LearningDelta, PatternViolation, Severity
from pattern_nexus.core.store import MergePlan, SQLitePatternStore
from pattern_nexus.errors import ConsistencyError, InputError, MergeError
from pattern_nexus.patterns.types import NamingContent, Pattern, PatternType, make_pattern_id


def naming_pattern(convention="camelCase", frequency=1, version=1, confidence=0.55):
    content = NamingContent(language="typescript", subject="variable", convention=convention)
    return Pattern(
        id=make_pattern_id(PatternType.NAMING, content),
        pattern_type=PatternType.NAMING,
        content=content,
        frequency=frequency,
        confidence=confidence,
        version=version,
    )


def plan_for(store, upserts=(), removals=(), evidence=None, concepts=None):
    version = store.version
    return MergePlan(
        delta=LearningDelta(preceding_version=version, resulting_version=version + 1),
        upserts=list(upserts),
        removals=list(removals),
        evidence=evidence or {},
        concepts=concepts or {},
    )


def test_new_store_is_empty(store):
    assert store.version == 0
    assert store.list_patterns() == []
    assert store.pattern_count() == 0


def test_commit_merge_writes_everything(store):
    pattern = naming_pattern()
    concept = Concept(name="userName", concept_type="variable", line=1, column=7, file_path="src/a.ts")
    version = store.commit_merge(plan_for(
        store,
        upserts=[pattern],
        evidence={"src/a.ts": {pattern.id: 1}},
        concepts={"src/a.ts": [concept]},
    ))

    assert version == 1
    assert store.version == 1
    assert store.get_pattern(pattern.id).frequency == 1
    assert store.evidence_for_files(["src/a.ts"]) == {"src/a.ts": {pattern.id: 1}}
    assert store.evidence_for_patterns([pattern.id]) == {pattern.id: {"src/a.ts": 1}}
    assert store.concepts_for_files(["src/a.ts"])["src/a.ts"][0].column == 7
    assert [p.id for p in store.patterns_since(0)] == [pattern.id]
    assert store.patterns_since(1) == []


def test_stale_preceding_version_is_rejected(store):
    store.commit_merge(plan_for(store, upserts=[naming_pattern()]))
    stale = MergePlan(
        delta=LearningDelta(preceding_version=0, resulting_version=1),
        upserts=[naming_pattern("snake_case")],
    )

    with pytest.raises(ConsistencyError):
        store.commit_merge(stale)
    assert store.version == 1


def test_version_gap_and_pattern_version_mismatch_are_rejected(store):
    with pytest.raises(ConsistencyError):
        store.commit_merge(MergePlan(delta=LearningDelta(preceding_version=0, resulting_version=2)))
    with pytest.raises(ConsistencyError):
        store.commit_merge(plan_for(store, upserts=[naming_pattern(version=5)]))
    assert store.version == 0


def test_failed_write_rolls_back(tmp_path):
    class FailingStore(SQLitePatternStore):
        def _insert_delta(self, conn, plan):
            raise RuntimeError("disk full")

    failing = FailingStore(str(tmp_path / "failing.db"))
    pattern = naming_pattern()

    with pytest.raises(MergeError):
        failing.commit_merge(plan_for(failing, upserts=[pattern], evidence={"a.ts": {pattern.id: 1}}))

    assert failing.version == 0
    assert failing.get_pattern(pattern.id) is None
    assert failing.evidence_for_files(["a.ts"]) == {"a.ts": {}}
    failing.close()


def test_removal_leaves_tombstone(store):
    pattern = naming_pattern()
    store.commit_merge(plan_for(store, upserts=[pattern], evidence={"a.ts": {pattern.id: 1}}))
    store.commit_merge(plan_for(store, removals=[pattern], evidence={"a.ts": {}}))

    assert store.get_pattern(pattern.id) is None
    tombstones = store.removed_since(1)
    assert [(t.pattern_id, t.version) for t in tombstones] == [(pattern.id, 2)]
    assert tombstones[0].content["convention"] == "camelCase"
    assert store.removed_since(2) == []


def test_changes_since_reads_patterns_and_tombstones_together(store):
    camel = naming_pattern()
    store.commit_merge(plan_for(store, upserts=[camel], evidence={"a.ts": {camel.id: 1}}))
    snake = naming_pattern("snake_case", version=2)
    store.commit_merge(plan_for(
        store, upserts=[snake], removals=[camel], evidence={"a.ts": {snake.id: 1}}
    ))

    changes = store.changes_since(1)

    assert changes.version == 2
    assert [p.id for p in changes.patterns] == [snake.id]
    assert [t.pattern_id for t in changes.removed] == [camel.id]
    assert store.changes_since(2).patterns == []
    assert store.changes_since(2).removed == []


def test_replay_deltas_rebuilds_state(store):
    camel = naming_pattern()
    snake = naming_pattern("snake_case")
    store.commit_merge(plan_for(store, upserts=[camel, snake]))
    store.commit_merge(plan_for(store, upserts=[naming_pattern(frequency=3, version=2)], removals=[snake]))

    replayed = store.replay_deltas()
    assert set(replayed) == {camel.id}
    assert replayed[camel.id].frequency == 3
    assert replayed[camel.id].to_dict() == store.get_pattern(camel.id).to_dict()


def test_delta_log_and_statistics(store):
    store.commit_merge(plan_for(store, upserts=[naming_pattern()]))
    store.commit_merge(plan_for(store, upserts=[naming_pattern(frequency=2, version=2)]))

    deltas = store.get_recent_deltas(limit=5)
    assert [d.resulting_version for d in deltas] == [2, 1]
    stats = store.get_statistics()
    assert stats["version"] == 2
    assert stats["deltas"] == 2
    assert stats["patterns_by_type"] == {"naming": 1}


def test_snapshot(store):
    pattern = naming_pattern()
    store.commit_merge(plan_for(store, upserts=[pattern]))
    store.add_exception(pattern.id, "legacy/**", "old code")

    snapshot = store.snapshot()
    assert snapshot.version == 1
    assert [p.id for p in snapshot.patterns] == [pattern.id]
    assert [e.scope_glob for e in snapshot.exceptions] == ["legacy/**"]


def test_exceptions_are_append_only(store):
    store.add_exception("pat_1", "legacy/**", "first")
    store.add_exception("pat_1", "legacy/**", "second")
    store.add_exception("pat_2", "vendor", "")

    assert [e.reason for e in store.list_exceptions("pat_1")] == ["first", "second"]
    assert len(store.list_exceptions()) == 3


def test_violation_history(store):
    violation = PatternViolation(
        pattern_id="pat_1",
        file_path="src/a.ts",
        severity=Severity.HIGH,
        message="Variable 'user_id' uses snake_case",
        start_line=1,
        end_line=1,
    )
    assert store.record_violations([violation]) == 1

    history = store.get_violation_history(file_path="src/a.ts")
    assert [h["id"] for h in history] == [violation.id]
    assert history[0]["resolved"] is False

    assert store.resolve_violation(violation.id, "fixed")
    assert store.get_violation_history(file_path="src/a.ts") == []
    resolved = store.get_violation_history(file_path="src/a.ts", include_resolved=True)
    assert resolved[0]["resolution"] == "fixed"
    assert not store.resolve_violation("vio_missing", "ignored")

    with pytest.raises(InputError):
        store.resolve_violation(violation.id, "forgotten")


def test_export_patterns(store, tmp_path):
    store.commit_merge(plan_for(store, upserts=[naming_pattern(confidence=0.9), naming_pattern("snake_case")]))
    output = tmp_path / "export.json"

    assert store.export_patterns(str(output), min_confidence=0.8) == 1
    data = json.loads(output.read_text())
    assert data["count"] == 1
    assert data["patterns"][0]["content"]["convention"] == "camelCase"
    assert datetime.fromisoformat(data["exported_at"])
