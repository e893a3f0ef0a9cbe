"""Tests for the incremental learner."""

import json

import pytest

from pattern_nexus.core.models import ChangeEvent, ChangeKind, OriginContext, Trigger
from pattern_nexus.core.store import SQLitePatternStore
from pattern_nexus.errors import InputError, MergeError
from pattern_nexus.patterns.extractor import ConceptExtractor, ExtractionResult, RegexConceptExtractor
from pattern_nexus.patterns.learner import IMPORT_SOURCE, IncrementalLearner
from pattern_nexus.patterns.types import NamingContent, PatternType, make_pattern_id

from conftest import CAMEL_TS, SNAKE_PY

CAMEL_VARIABLE = make_pattern_id(
    PatternType.NAMING, NamingContent(language="typescript", subject="variable", convention="camelCase")
)


def by_category(store):
    return {(p.category, p.content.choice): p for p in store.list_patterns()}


def test_learns_from_added_file(learner, store, write_file):
    path = write_file("src/user.ts", CAMEL_TS)
    delta = learner.process_changes(
        [{"path": path, "kind": "added"}],
        OriginContext(trigger=Trigger.GIT_COMMIT, commit_id="abc123"),
    )

    assert delta.applied
    assert (delta.preceding_version, delta.resulting_version) == (0, 1)
    assert delta.files_touched == ["src/user.ts"]
    assert delta.commit_id == "abc123"
    assert delta.patterns_added == 3
    assert delta.concepts_added == 4

    patterns = by_category(store)
    assert patterns[("variable_naming", "camelCase")].frequency == 2
    assert patterns[("function_naming", "camelCase")].frequency == 1
    assert patterns[("import_style", "relative")].frequency == 1
    variable = patterns[("variable_naming", "camelCase")]
    assert variable.id == CAMEL_VARIABLE
    assert variable.version == 1
    assert "src" in variable.contexts
    assert "lang:typescript" in variable.contexts
    assert [e.line for e in variable.examples] == [2, 3]


def test_replaying_a_batch_is_a_no_op(learner, store, write_file):
    path = write_file("src/user.ts", CAMEL_TS)
    learner.process_changes([{"path": path, "kind": "added"}])
    before = {p.id: p.to_dict() for p in store.list_patterns()}

    delta = learner.process_changes([{"path": path, "kind": "modified"}])

    assert not delta.applied
    assert delta.resulting_version == delta.preceding_version == 1
    assert store.version == 1
    assert {p.id: p.to_dict() for p in store.list_patterns()} == before
    assert len(store.list_deltas()) == 1


def test_versions_increase_by_one_per_applied_batch(learner, store, write_file):
    first = write_file("src/user.ts", CAMEL_TS)
    second = write_file("src/order.ts", "const orderId = 1;\n")

    deltas = [
        learner.process_changes([{"path": first, "kind": "added"}]),
        learner.process_changes([{"path": second, "kind": "added"}]),
    ]

    assert [(d.preceding_version, d.resulting_version) for d in deltas] == [(0, 1), (1, 2)]
    assert store.get_pattern(CAMEL_VARIABLE).frequency == 3
    assert store.get_pattern(CAMEL_VARIABLE).version == 2


def test_modification_replaces_file_evidence(learner, store, write_file):
    path = write_file("src/user.ts", CAMEL_TS)
    learner.process_changes([{"path": path, "kind": "added"}])
    first_confidence = store.get_pattern(CAMEL_VARIABLE).confidence

    write_file("src/user.ts", CAMEL_TS + "const cartSize = 3;\nconst itemCount = 4;\n")
    delta = learner.process_changes([{"path": path, "kind": "modified"}])

    pattern = store.get_pattern(CAMEL_VARIABLE)
    assert delta.applied
    assert delta.patterns_modified >= 1
    assert pattern.frequency == 4
    assert pattern.confidence >= first_confidence


def test_deleting_only_file_removes_its_patterns(learner, store, write_file):
    path = write_file("src/user.ts", CAMEL_TS)
    learner.process_changes([{"path": path, "kind": "added"}])

    delta = learner.process_changes([{"path": path, "kind": "deleted"}])

    assert delta.applied
    assert delta.patterns_removed == 3
    assert delta.concepts_removed == 4
    assert store.get_pattern(CAMEL_VARIABLE) is None
    assert store.list_patterns() == []
    assert CAMEL_VARIABLE in {t.pattern_id for t in store.removed_since(1)}


def test_missing_file_counts_as_deleted(learner, store, write_file, project_dir):
    path = write_file("src/user.ts", CAMEL_TS)
    learner.process_changes([{"path": path, "kind": "added"}])
    (project_dir / "src" / "user.ts").unlink()

    delta = learner.process_changes([{"path": path, "kind": "modified"}])

    assert delta.patterns_removed == 3
    assert store.pattern_count() == 0


def test_deletion_keeps_patterns_seen_elsewhere(learner, store, write_file):
    first = write_file("src/user.ts", CAMEL_TS)
    second = write_file("src/order.ts", "const orderId = 1;\n")
    learner.process_changes([{"path": first, "kind": "added"}, {"path": second, "kind": "added"}])

    learner.process_changes([{"path": first, "kind": "deleted"}])

    pattern = store.get_pattern(CAMEL_VARIABLE)
    assert pattern.frequency == 1
    assert [e.file_path for e in pattern.examples] == ["src/order.ts"]


def test_rename_rekeys_evidence(learner, store, write_file, project_dir):
    path = write_file("src/user.ts", CAMEL_TS)
    learner.process_changes([{"path": path, "kind": "added"}])
    (project_dir / "src" / "user.ts").rename(project_dir / "src" / "account.ts")

    delta = learner.process_changes([
        {"path": "src/account.ts", "kind": "renamed", "old_path": "src/user.ts"},
    ])

    pattern = store.get_pattern(CAMEL_VARIABLE)
    assert delta.applied
    assert delta.concepts_modified == 4
    assert pattern.frequency == 2
    assert {e.file_path for e in pattern.examples} == {"src/account.ts"}
    assert store.evidence_for_files(["src/user.ts"]) == {"src/user.ts": {}}
    assert store.evidence_for_files(["src/account.ts"])["src/account.ts"][CAMEL_VARIABLE] == 2


def test_inline_content_and_generic_language(store):
    learner = IncrementalLearner(store)
    delta = learner.process_changes([
        ChangeEvent(path="app/users.py", kind=ChangeKind.ADDED, content=SNAKE_PY),
    ])

    patterns = by_category(store)
    assert delta.applied
    assert patterns[("variable_naming", "snake_case")].language == "python"
    assert patterns[("constant_naming", "SCREAMING_SNAKE_CASE")].frequency == 1
    assert patterns[("error_handling", "logger.error")].frequency == 1


def test_content_required_without_project_root(store):
    learner = IncrementalLearner(store)

    with pytest.raises(InputError):
        learner.process_changes([{"path": "src/a.ts", "kind": "added"}])
    assert store.version == 0


def test_malformed_batch_processes_nothing(learner, store, write_file):
    path = write_file("src/user.ts", CAMEL_TS)

    with pytest.raises(InputError):
        learner.process_changes([{"path": path, "kind": "added"}, {"path": "", "kind": "added"}])
    assert store.version == 0


def test_degraded_files_are_reported(learner, store, write_file):
    good = write_file("src/user.ts", CAMEL_TS)
    bad = write_file("assets/logo.png", "not really a png")

    delta = learner.process_changes([{"path": good, "kind": "added"}, {"path": bad, "kind": "added"}])

    assert delta.applied
    assert delta.partial_degradation
    assert delta.degraded_files == ["assets/logo.png"]
    assert store.pattern_count() == 3


def test_extractor_crash_degrades_only_that_file(store, project_dir, write_file):
    class FlakyExtractor(ConceptExtractor):
        def __init__(self):
            self.inner = RegexConceptExtractor()

        def extract(self, file_path, content):
            if file_path.endswith("broken.ts"):
                raise RuntimeError("parser exploded")
            return self.inner.extract(file_path, content)

    learner = IncrementalLearner(store, project_root=str(project_dir), extractor=FlakyExtractor())
    good = write_file("src/user.ts", CAMEL_TS)
    bad = write_file("src/broken.ts", "const x_y = 1;\n")

    delta = learner.process_changes([{"path": good, "kind": "added"}, {"path": bad, "kind": "added"}])

    assert delta.degraded_files == ["src/broken.ts"]
    assert store.get_pattern(CAMEL_VARIABLE).frequency == 2


def test_ambiguous_identifiers_do_not_create_patterns(store):
    learner = IncrementalLearner(store)
    delta = learner.process_changes([
        ChangeEvent(path="src/a.ts", kind=ChangeKind.ADDED, content="let count = 1;\nlet total = 2;\n"),
    ])

    assert delta.patterns_added == 0
    assert store.pattern_count() == 0
    assert delta.concepts_added == 2


def test_failed_merge_leaves_store_untouched(tmp_path, project_dir, write_file):
    class FailingStore(SQLitePatternStore):
        def _insert_delta(self, conn, plan):
            raise RuntimeError("disk full")

    failing = FailingStore(str(tmp_path / "failing" / "patterns.db"))
    learner = IncrementalLearner(failing, project_root=str(project_dir))
    path = write_file("src/user.ts", CAMEL_TS)

    with pytest.raises(MergeError):
        learner.process_changes([{"path": path, "kind": "added"}])

    assert failing.version == 0
    assert failing.list_patterns() == []
    assert failing.list_concepts() == []
    failing.close()


def test_import_patterns(learner, store):
    delta = learner.import_patterns([{
        "pattern_type": "naming",
        "content": {"language": "typescript", "subject": "variable", "convention": "camelCase"},
        "frequency": 10,
        "confidence": 0.88,
    }])

    pattern = store.get_pattern(CAMEL_VARIABLE)
    assert delta.applied
    assert delta.patterns_added == 1
    assert pattern.frequency == 10
    assert pattern.confidence == 0.88
    assert store.evidence_for_files([IMPORT_SOURCE])[IMPORT_SOURCE] == {CAMEL_VARIABLE: 10}

    again = learner.import_patterns([pattern])
    assert not again.applied
    assert store.version == 1


def test_imported_patterns_survive_file_deletion(learner, store, write_file):
    learner.import_patterns([{
        "pattern_type": "naming",
        "content": {"language": "typescript", "subject": "variable", "convention": "camelCase"},
        "frequency": 3,
    }])
    path = write_file("src/user.ts", CAMEL_TS)
    learner.process_changes([{"path": path, "kind": "added"}])
    assert store.get_pattern(CAMEL_VARIABLE).frequency == 5

    learner.process_changes([{"path": path, "kind": "deleted"}])
    assert store.get_pattern(CAMEL_VARIABLE).frequency == 3


def test_import_rejects_bad_payloads(learner):
    with pytest.raises(InputError):
        learner.import_patterns([{"pattern_type": "nope", "content": {}}])
    with pytest.raises(InputError):
        learner.import_patterns([{"pattern_type": "naming", "content": {}, "frequency": 0}])
    with pytest.raises(InputError):
        learner.import_patterns([{"pattern_type": "naming", "content": {}, "confidence": 1.5}])


def test_import_patterns_file(learner, store, tmp_path, write_file):
    path = write_file("src/user.ts", CAMEL_TS)
    learner.process_changes([{"path": path, "kind": "added"}])
    export = tmp_path / "export.json"
    store.export_patterns(str(export))

    other = SQLitePatternStore(str(tmp_path / "other" / "patterns.db"))
    delta = IncrementalLearner(other).import_patterns_file(str(export))

    assert delta.patterns_added == 3
    assert other.get_pattern(CAMEL_VARIABLE).frequency == 2
    assert json.loads(export.read_text())["count"] == 3
    other.close()


def test_statistics(learner, write_file):
    path = write_file("src/user.ts", CAMEL_TS)
    learner.process_changes([{"path": path, "kind": "added"}])

    stats = learner.get_statistics()
    assert stats["version"] == 1
    assert stats["patterns"] == 3
    assert stats["concepts"] == 4
    assert stats["files_processed"] == 1
    assert [d.resulting_version for d in learner.get_recent_deltas()] == [1]
