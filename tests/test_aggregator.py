"""Tests for cross-project aggregation."""

import sqlite3
import threading
from datetime import datetime

import pytest

from pattern_nexus.core.global_store import SQLiteGlobalStore
from pattern_nexus.core.models import AggregationFilter, Concept, ProjectMetadata
from pattern_nexus.core.store import ChangeSet, SQLitePatternStore, Tombstone
from pattern_nexus.embeddings import SimpleEmbeddings
from pattern_nexus.errors import InputError, NotFoundError, SyncInProgressError
from pattern_nexus.patterns.learner import IncrementalLearner
from pattern_nexus.patterns.types import NamingContent, Pattern, PatternType, make_pattern_id
from pattern_nexus.portfolio.aggregator import GlobalAggregator
from pattern_nexus.portfolio.registry import ProjectRegistry
from pattern_nexus.portfolio.signature import compute_signature

from conftest import CAMEL_TS


class FakeProjectStore:
    """Just the read side a sync needs."""

    def __init__(self):
        self.patterns = {}
        self.tombstones = []
        self.concepts = []

    def put(self, pattern):
        self.patterns[pattern.id] = pattern
        return pattern

    def remove(self, pattern_id, version):
        pattern = self.patterns.pop(pattern_id)
        self.tombstones.append(Tombstone(
            pattern_id=pattern.id,
            pattern_type=pattern.pattern_type,
            content=pattern.content.to_dict(),
            version=version,
            removed_at=datetime.now(),
        ))

    def patterns_since(self, version):
        return sorted((p for p in self.patterns.values() if p.version > version), key=lambda p: p.version)

    def removed_since(self, version):
        return [t for t in self.tombstones if t.version > version]

    def changes_since(self, version):
        versions = [p.version for p in self.patterns.values()] + [t.version for t in self.tombstones]
        return ChangeSet(
            version=max(versions, default=0),
            patterns=self.patterns_since(version),
            removed=self.removed_since(version),
        )

    def list_concepts(self):
        return list(self.concepts)

    def pattern_count(self):
        return len(self.patterns)


def naming(subject="variable", convention="camelCase", language="typescript",
           frequency=1, confidence=0.6, version=1):
    content = NamingContent(language=language, subject=subject, convention=convention)
    return Pattern(
        id=make_pattern_id(PatternType.NAMING, content),
        pattern_type=PatternType.NAMING,
        content=content,
        frequency=frequency,
        confidence=confidence,
        version=version,
    )


@pytest.fixture
def stores():
    return {}


@pytest.fixture
def aggregator(global_store, registry, stores):
    return GlobalAggregator(global_store, registry, store_for=lambda project: stores[project.id])


@pytest.fixture
def link(tmp_path, registry, stores):
    """Link a project directory and give it a fake pattern store."""

    def _link(name, **metadata):
        path = tmp_path / name
        path.mkdir()
        project_id = registry.link_project(str(path), ProjectMetadata(**metadata))
        stores[project_id] = FakeProjectStore()
        return project_id

    return _link


def test_consensus_across_two_projects(aggregator, link, stores):
    a = link("a")
    b = link("b")
    stores[a].put(naming(frequency=5, confidence=0.6))
    stores[b].put(naming(language="javascript", frequency=15, confidence=0.9))

    first = aggregator.sync_project(a)
    second = aggregator.sync_project(b)

    assert (first.status, first.patterns_added) == ("success", 1)
    assert (second.status, second.patterns_added) == ("success", 1)
    aggregations = aggregator.get_aggregations()
    assert len(aggregations) == 1
    aggregation = aggregations[0]
    assert aggregation.aggregated_confidence == pytest.approx(0.825)
    assert aggregation.consensus_score == pytest.approx(1.0)
    assert aggregation.project_ids == sorted([a, b])
    assert aggregation.languages == ["javascript", "typescript"]
    assert aggregation.signature == compute_signature(
        "naming", {"subject": "variable", "convention": "camelCase", "category": "variable_naming"}
    )


def test_sync_is_incremental(aggregator, link, stores, registry):
    a = link("a")
    stores[a].put(naming(version=1))
    aggregator.sync_project(a)
    assert registry.get_project(a).last_synced_version == 1

    again = aggregator.sync_project(a)
    assert (again.patterns_added, again.patterns_updated) == (0, 0)
    assert (again.previous_version, again.synced_version) == (1, 1)

    stores[a].put(naming(frequency=4, confidence=0.7, version=2))
    updated = aggregator.sync_project(a)
    assert updated.patterns_updated == 1
    assert updated.synced_version == 2
    assert aggregator.get_aggregations()[0].total_frequency == 4


def test_tombstone_withdraws_contribution(aggregator, link, stores):
    a = link("a")
    b = link("b")
    pattern = stores[a].put(naming(frequency=2))
    stores[b].put(naming(frequency=3))
    aggregator.sync_project(a)
    aggregator.sync_project(b)

    stores[a].remove(pattern.id, version=2)
    result = aggregator.sync_project(a)

    assert result.patterns_removed == 1
    aggregation = aggregator.get_aggregations()[0]
    assert aggregation.project_ids == [b]
    assert aggregation.consensus_score == pytest.approx(0.5)


def test_last_withdrawal_deletes_aggregation(aggregator, link, stores):
    a = link("a")
    pattern = stores[a].put(naming())
    aggregator.sync_project(a)

    stores[a].remove(pattern.id, version=2)
    result = aggregator.sync_project(a)

    assert result.patterns_removed == 1
    assert aggregator.get_aggregations() == []


def test_partial_sync_resumes(tmp_path, stores):
    class FlakyGlobalStore(SQLiteGlobalStore):
        fail_after = None

        def insert_aggregation(self, aggregation):
            if self.fail_after is not None:
                if self.fail_after == 0:
                    raise sqlite3.OperationalError("database is locked")
                self.fail_after -= 1
            return super().insert_aggregation(aggregation)

    gstore = FlakyGlobalStore(str(tmp_path / "flaky.db"))
    registry = ProjectRegistry(gstore)
    aggregator = GlobalAggregator(gstore, registry, store_for=lambda project: stores[project.id])
    (tmp_path / "a").mkdir()
    a = registry.link_project(str(tmp_path / "a"))
    stores[a] = FakeProjectStore()
    stores[a].put(naming(version=1))
    stores[a].put(naming(subject="function", version=2))

    gstore.fail_after = 1
    partial = aggregator.sync_project(a)

    assert partial.status == "partial"
    assert partial.retryable
    assert "locked" in partial.error
    assert partial.synced_version == 1
    assert registry.get_project(a).last_synced_version == 1

    gstore.fail_after = None
    retry = aggregator.sync_project(a)

    assert retry.status == "success"
    assert (retry.previous_version, retry.synced_version) == (1, 2)
    assert retry.patterns_added == 1
    assert len(aggregator.get_aggregations()) == 2
    gstore.close()


class MergeDuringReadStore(SQLitePatternStore):
    """Runs ``on_read`` in another thread while a sync's read is half done."""

    on_read = None

    def _removed_since(self, conn, version):
        hook, self.on_read = self.on_read, None
        if hook is not None:
            worker = threading.Thread(target=hook)
            worker.start()
            worker.join()
        return super()._removed_since(conn, version)


def test_merge_committed_during_sync_read_is_not_skipped(
    tmp_path, project_dir, write_file, config, global_store, registry
):
    local = MergeDuringReadStore(str(tmp_path / "racing" / "patterns.db"))
    learner = IncrementalLearner(local, project_root=str(project_dir), config=config)
    learner.process_changes([{"path": write_file("a.ts", CAMEL_TS), "kind": "added"}])
    project_id = registry.link_project(str(project_dir))
    aggregator = GlobalAggregator(global_store, registry, store_for=lambda project: local)

    b_path = write_file("b.ts", "function FetchUser() {}\nfunction SaveOrder() {}\n")
    errors = []

    def concurrent_merge():
        try:
            learner.process_changes([
                {"path": "a.ts", "kind": "deleted"},
                {"path": b_path, "kind": "added"},
            ])
        except Exception as e:  # surfaced by the assertion below
            errors.append(e)

    local.on_read = concurrent_merge
    first = aggregator.sync_project(project_id)

    assert errors == []
    assert local.version == 2
    assert first.synced_version == 1

    second = aggregator.sync_project(project_id)

    assert second.status == "success"
    assert (second.previous_version, second.synced_version) == (1, 2)
    local_categories = sorted({p.category for p in local.list_patterns()})
    global_categories = sorted({a.category for a in aggregator.get_aggregations()})
    assert local_categories == ["function_naming"]
    assert global_categories == local_categories
    local.close()


def test_project_store_failure_is_a_retryable_partial_sync(global_store, registry, link):
    a = link("a")

    def broken_store_for(project):
        raise sqlite3.OperationalError("unable to open database file")

    aggregator = GlobalAggregator(global_store, registry, store_for=broken_store_for)
    result = aggregator.sync_project(a)

    assert result.status == "partial"
    assert result.retryable
    assert "unable to open" in result.error
    assert result.synced_version == 0
    assert registry.get_project(a).last_synced_version == 0


def test_concurrent_sync_of_same_project_is_rejected(global_store, registry, link, stores):
    a = link("a")
    inner = []

    def reentrant_store_for(project):
        with pytest.raises(SyncInProgressError):
            aggregator.sync_project(project.id)
        inner.append(project.id)
        return stores[project.id]

    aggregator = GlobalAggregator(global_store, registry, store_for=reentrant_store_for)
    result = aggregator.sync_project(a)

    assert inner == [a]
    assert result.status == "success"


def test_sync_rejects_unknown_and_unlinked_projects(aggregator, link, registry):
    with pytest.raises(NotFoundError):
        aggregator.sync_project("proj_missing")

    a = link("a")
    registry.unlink_project(a)
    with pytest.raises(InputError):
        aggregator.sync_project(a)


def test_consensus_follows_active_projects(aggregator, link, stores, registry):
    a = link("a")
    b = link("b")
    link("c")
    stores[a].put(naming())
    aggregator.sync_project(a)
    assert aggregator.get_aggregations()[0].consensus_score == pytest.approx(1 / 3)

    registry.unlink_project(b)
    assert aggregator.refresh_consensus() == 1
    assert aggregator.get_aggregations()[0].consensus_score == pytest.approx(0.5)


def test_filters_and_ordering(aggregator, link, stores):
    a = link("a")
    b = link("b")
    stores[a].put(naming(confidence=0.6))
    stores[a].put(naming(subject="function", confidence=0.9))
    stores[b].put(naming(language="javascript", confidence=0.7))
    aggregator.sync_project(a)
    aggregator.sync_project(b)

    ordered = aggregator.get_aggregations()
    assert [x.category for x in ordered] == ["variable_naming", "function_naming"]

    assert [x.category for x in aggregator.get_aggregations(AggregationFilter(category="FUNCTION_NAMING"))] == [
        "function_naming"
    ]
    assert len(aggregator.get_aggregations(AggregationFilter(min_project_count=2))) == 1
    assert len(aggregator.get_aggregations(AggregationFilter(min_consensus=0.75))) == 1
    assert len(aggregator.get_aggregations(AggregationFilter(language="javascript"))) == 1
    assert len(aggregator.get_aggregations(AggregationFilter(pattern_type="structural"))) == 0
    assert len(aggregator.get_aggregations(AggregationFilter(limit=1))) == 1

    with pytest.raises(InputError):
        aggregator.get_aggregations(AggregationFilter(min_consensus=1.5))
    with pytest.raises(InputError):
        aggregator.get_aggregations(AggregationFilter(min_project_count=-1))


def test_portfolio_view_and_statistics(aggregator, link, stores):
    a = link("a", primary_language="typescript", frameworks=["react"])
    b = link("b", frameworks=["react", "express"])
    stores[a].put(naming())
    stores[b].concepts = [Concept(name="fetch_user", concept_type="function", line=3, file_path="app/users.py")]
    aggregator.sync_project(a)
    aggregator.sync_project(b)

    view = aggregator.get_portfolio_view()
    assert view.total_projects == 2
    assert view.total_patterns == 1
    assert view.total_concepts == 1
    assert view.top_languages == [{"language": "typescript", "count": 1}, {"language": "python", "count": 1}]
    assert view.top_frameworks[0] == {"framework": "react", "count": 2}

    stats = aggregator.get_statistics()
    assert stats["active_projects"] == 2
    assert stats["aggregations_by_type"] == {"naming": 1}


def test_search_concepts(aggregator, link, stores):
    a = link("a")
    stores[a].concepts = [
        Concept(name="fetchUser", concept_type="function", line=4, file_path="src/user.ts"),
        Concept(name="orderTotal", concept_type="variable", line=2, file_path="src/order.ts"),
    ]
    result = aggregator.sync_project(a)

    assert result.concepts_added == 2
    hits = aggregator.search_concepts("user")
    assert [(h["name"], h["project_id"]) for h in hits] == [("fetchUser", a)]
    assert aggregator.search_concepts("user", project_id="proj_other") == []
    with pytest.raises(InputError):
        aggregator.search_concepts("  ")


def test_similarity_and_diff(aggregator, link, stores):
    a = link("a")
    b = link("b")
    stores[a].put(naming())
    stores[a].put(naming(subject="function"))
    stores[b].put(naming())
    stores[b].put(naming(subject="class", convention="PascalCase"))
    aggregator.sync_project(a)
    aggregator.sync_project(b)

    assert aggregator.get_project_similarity(a, b) == pytest.approx(1 / 3)
    diff = aggregator.get_pattern_diff(a, b)
    assert [d["category"] for d in diff["only_in_a"]] == ["function_naming"]
    assert [d["category"] for d in diff["only_in_b"]] == ["class_naming"]
    assert [d["category"] for d in diff["shared"]] == ["variable_naming"]
    with pytest.raises(NotFoundError):
        aggregator.get_project_similarity(a, "proj_missing")


def test_rank_aggregations(global_store, registry, link, stores):
    aggregator = GlobalAggregator(global_store, registry, store_for=lambda project: stores[project.id])
    a = link("a")
    stores[a].put(naming())
    stores[a].put(naming(subject="function"))
    aggregator.sync_project(a)

    with pytest.raises(InputError):
        aggregator.rank_aggregations("variable names")

    aggregator.embeddings = SimpleEmbeddings()
    target = next(x for x in aggregator.get_aggregations() if x.category == "variable_naming")
    ranked = aggregator.rank_aggregations(GlobalAggregator._describe(target))

    assert ranked[0][0].signature == target.signature
    assert ranked[0][1] == pytest.approx(1.0)
    assert ranked[0][1] >= ranked[1][1]
