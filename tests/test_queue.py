"""Tests for the learning queue and worker pool."""

import threading

import pytest

from pattern_nexus.core.models import ChangeEvent, ChangeKind, OriginContext, Trigger
from pattern_nexus.errors import InputError
from pattern_nexus.patterns.queue import LearnerPool, LearningQueue

from conftest import CAMEL_TS


def event(path, kind=ChangeKind.MODIFIED, old_path=None):
    return ChangeEvent(path=path, kind=kind, old_path=old_path)


def test_manual_tasks_run_before_watch_tasks():
    queue = LearningQueue("proj_1")
    queue.put([event("a.ts")], OriginContext(trigger=Trigger.WATCH))
    queue.put([event("b.ts")], OriginContext(trigger=Trigger.GIT_COMMIT))
    queue.put([event("c.ts")], OriginContext(trigger=Trigger.MANUAL))

    order = []
    while True:
        task = queue.get()
        if task is None:
            break
        order.append(task.origin.trigger)

    assert order == [Trigger.MANUAL, Trigger.GIT_COMMIT, Trigger.WATCH]


def test_same_priority_is_fifo():
    queue = LearningQueue("proj_1")
    first = queue.put([event("a.ts")], OriginContext())
    second = queue.put([event("b.ts")], OriginContext())

    assert queue.get() is first
    assert queue.get() is second


def test_newer_change_supersedes_waiting_task():
    queue = LearningQueue("proj_1")
    older = queue.put([event("a.ts")], OriginContext(trigger=Trigger.WATCH))
    newer = queue.put([event("a.ts")], OriginContext(trigger=Trigger.MANUAL))

    assert older.future.cancelled()
    assert len(queue) == 1
    assert queue.get() is newer
    assert [e.path for e in newer.changes()] == ["a.ts"]
    assert queue.get() is None


def test_partial_overlap_keeps_older_task():
    queue = LearningQueue("proj_1")
    older = queue.put([event("a.ts"), event("b.ts")], OriginContext(trigger=Trigger.WATCH))
    newer = queue.put([event("a.ts", ChangeKind.DELETED)], OriginContext(trigger=Trigger.WATCH))

    assert not older.future.cancelled()
    assert [e.path for e in older.changes()] == ["b.ts"]
    assert [(e.path, e.kind) for e in newer.changes()] == [("a.ts", ChangeKind.DELETED)]
    assert len(queue) == 2


def test_pulled_change_keeps_higher_priority():
    queue = LearningQueue("proj_1")
    queue.put([event("a.ts")], OriginContext(trigger=Trigger.MANUAL))
    newer = queue.put([event("a.ts")], OriginContext(trigger=Trigger.WATCH))

    assert newer.priority == Trigger.MANUAL.priority


def test_renamed_paths_are_not_coalesced():
    queue = LearningQueue("proj_1")
    older = queue.put([event("b.ts", ChangeKind.RENAMED, old_path="a.ts")], OriginContext())
    queue.put([event("b.ts")], OriginContext())

    assert not older.future.cancelled()
    assert len(queue) == 2


def test_pool_runs_batches(learner, store, write_file):
    path = write_file("src/user.ts", CAMEL_TS)
    pool = LearnerPool(lambda project_id: learner, max_workers=2)
    try:
        future = pool.submit("proj_1", [{"path": path, "kind": "added"}])
        delta = future.result(timeout=30)
    finally:
        pool.shutdown()

    assert delta.applied
    assert delta.resulting_version == 1
    assert store.version == 1
    assert pool.pending("proj_1") == 0


def test_pool_rejects_bad_input_synchronously(learner):
    pool = LearnerPool(lambda project_id: learner, max_workers=1)
    try:
        with pytest.raises(InputError):
            pool.submit("proj_1", [{"path": "a.ts", "kind": "exploded"}])
    finally:
        pool.shutdown()
    assert pool.pending("proj_1") == 0


def test_pool_sets_exception_on_failure(project_dir):
    class BrokenLearner:
        project_root = str(project_dir)

        def process_changes(self, changes, origin):
            raise RuntimeError("boom")

    pool = LearnerPool(lambda project_id: BrokenLearner(), max_workers=1)
    try:
        future = pool.submit("proj_1", [{"path": "src/a.ts", "kind": "modified"}])
        with pytest.raises(RuntimeError):
            future.result(timeout=30)
    finally:
        pool.shutdown()


class RecordingLearner:
    """Records batch order and how many batches of its project overlap."""

    def __init__(self, project_root, started=None, release=None):
        self.project_root = str(project_root)
        self.started = started
        self.release = release
        self.order = []
        self.running = 0
        self.max_running = 0
        self._lock = threading.Lock()

    def process_changes(self, changes, origin):
        with self._lock:
            self.running += 1
            self.max_running = max(self.max_running, self.running)
        try:
            if self.started is not None:
                self.started.set()
            if self.release is not None:
                assert self.release.wait(timeout=10)
            self.order.append([c.path for c in changes])
        finally:
            with self._lock:
                self.running -= 1
        return len(self.order)


def test_pool_runs_one_project_serially(project_dir):
    started, release = threading.Event(), threading.Event()
    learner = RecordingLearner(project_dir, started=started, release=release)
    pool = LearnerPool(lambda project_id: learner, max_workers=4)
    try:
        first = pool.submit("proj_1", [{"path": "a.ts", "kind": "modified"}])
        assert started.wait(timeout=10)
        rest = [pool.submit("proj_1", [{"path": p, "kind": "modified"}]) for p in ("b.ts", "c.ts")]
        assert pool.pending("proj_1") == 2
        release.set()
        results = [f.result(timeout=30) for f in [first] + rest]
    finally:
        pool.shutdown()

    assert results == [1, 2, 3]
    assert learner.order == [["a.ts"], ["b.ts"], ["c.ts"]]
    assert learner.max_running == 1


def test_pool_runs_projects_in_parallel(tmp_path):
    both_running = threading.Barrier(2, timeout=10)

    class MeetingLearner(RecordingLearner):
        def process_changes(self, changes, origin):
            both_running.wait()
            return super().process_changes(changes, origin)

    learners = {name: MeetingLearner(tmp_path / name) for name in ("proj_1", "proj_2")}
    pool = LearnerPool(lambda project_id: learners[project_id], max_workers=2)
    try:
        futures = [pool.submit(name, [{"path": "a.ts", "kind": "modified"}]) for name in learners]
        results = [f.result(timeout=30) for f in futures]
    finally:
        pool.shutdown()

    assert results == [1, 1]
