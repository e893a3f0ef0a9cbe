"""
Learning queue and worker pool.

LearningQueue orders pending tasks by trigger (manual > git-commit > watch)
and coalesces changes: a newer change to a path that is still waiting in an
older task is pulled into the newer task, and a task left with nothing to do
is cancelled. LearnerPool runs queues on a bounded thread pool with at most
one task in flight per project.
"""

import heapq
import itertools
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set, Tuple

from ..core.models import ChangeEvent, ChangeKind, LearningDelta, OriginContext
from .changes import ChangeLike, merge_changes, validate_batch
from .learner import IncrementalLearner

logger = logging.getLogger(__name__)


@dataclass
class LearningTask:
    """A pending change batch for one project."""
    project_id: str
    origin: OriginContext
    priority: int
    seq: int
    events: Dict[str, ChangeEvent] = field(default_factory=dict)
    future: Future = field(default_factory=Future)
    created_at: datetime = field(default_factory=datetime.now)

    def add(self, event: ChangeEvent) -> None:
        if event.kind == ChangeKind.RENAMED:
            self.events[f"rename:{event.old_path}->{event.path}:{len(self.events)}"] = event
        elif event.path in self.events:
            self.events[event.path] = merge_changes(self.events[event.path], event)
        else:
            self.events[event.path] = event

    def take(self, path: str) -> Optional[ChangeEvent]:
        return self.events.pop(path, None)

    def changes(self) -> List[ChangeEvent]:
        return list(self.events.values())

    @property
    def is_empty(self) -> bool:
        return not self.events


class LearningQueue:
    """
    Priority queue of learning tasks for one project, deduplicated by path.

    Example:
        queue = LearningQueue("proj_1")
        queue.put(events, OriginContext(trigger=Trigger.WATCH))
        task = queue.get()
    """

    def __init__(self, project_id: str):
        self.project_id = project_id
        self._heap: List[Tuple[int, int, LearningTask]] = []
        self._holders: Dict[str, LearningTask] = {}
        self._renamed: Set[str] = set()
        self._seq = itertools.count()
        self._lock = threading.Lock()

    def put(self, events: List[ChangeEvent], origin: OriginContext) -> LearningTask:
        with self._lock:
            task = LearningTask(
                project_id=self.project_id,
                origin=origin,
                priority=origin.trigger.priority,
                seq=next(self._seq),
            )
            for event in events:
                if event.kind == ChangeKind.RENAMED:
                    task.add(event)
                    self._renamed.update((event.path, event.old_path))
                    continue
                holder = self._holders.get(event.path)
                if holder is not None and holder is not task and event.path not in self._renamed:
                    previous = holder.take(event.path)
                    if previous is not None:
                        event = merge_changes(previous, event)
                        task.priority = min(task.priority, holder.priority)
                    if holder.is_empty and holder.future.cancel():
                        logger.debug(f"Task {holder.seq} for {self.project_id} superseded")
                task.add(event)
                self._holders[event.path] = task

            heapq.heappush(self._heap, (task.priority, task.seq, task))
            return task

    def get(self) -> Optional[LearningTask]:
        """Next runnable task, skipping superseded and cancelled ones."""
        with self._lock:
            while self._heap:
                _, _, task = heapq.heappop(self._heap)
                for key, event in task.events.items():
                    if self._holders.get(key) is task:
                        del self._holders[key]
                    if event.kind == ChangeKind.RENAMED:
                        self._renamed.discard(event.path)
                        self._renamed.discard(event.old_path)
                if task.is_empty or task.future.cancelled():
                    continue
                return task
            return None

    def __len__(self) -> int:
        with self._lock:
            return sum(
                1 for _, _, task in self._heap
                if not task.is_empty and not task.future.cancelled()
            )


class LearnerPool:
    """
    Bounded worker pool for incremental learning.

    Tasks for one project run strictly one after another; different projects
    run in parallel up to ``max_workers``.

    Example:
        pool = LearnerPool(lambda project_id: learners[project_id], max_workers=4)
        future = pool.submit("proj_1", [{"path": "a.ts", "kind": "modified"}])
        delta = future.result()
    """

    def __init__(
        self,
        learner_for: Callable[[str], IncrementalLearner],
        max_workers: int = 4,
    ):
        self._learner_for = learner_for
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="pattern-learner")
        self._queues: Dict[str, LearningQueue] = {}
        self._active: Set[str] = set()
        self._lock = threading.Lock()

    def submit(
        self,
        project_id: str,
        changes: List[ChangeLike],
        origin: Optional[OriginContext] = None,
    ) -> "Future[LearningDelta]":
        """
        Queue a change batch. Input errors are raised here, synchronously.

        The returned future is cancelled if every change in it is superseded
        by a later submission before it starts.
        """
        learner = self._learner_for(project_id)
        events = validate_batch(changes, learner.project_root)
        origin = origin or OriginContext()

        with self._lock:
            queue = self._queues.get(project_id)
            if queue is None:
                queue = self._queues[project_id] = LearningQueue(project_id)
            task = queue.put(events, origin)
            if project_id not in self._active:
                self._active.add(project_id)
                self._executor.submit(self._drain, project_id)
        return task.future

    def pending(self, project_id: str) -> int:
        with self._lock:
            queue = self._queues.get(project_id)
            return len(queue) if queue else 0

    def _drain(self, project_id: str) -> None:
        learner = self._learner_for(project_id)
        while True:
            with self._lock:
                task = self._queues[project_id].get()
                if task is None:
                    self._active.discard(project_id)
                    return
            if not task.future.set_running_or_notify_cancel():
                continue
            try:
                delta = learner.process_changes(task.changes(), task.origin)
            except Exception as e:
                logger.error(f"Learning task for {project_id} failed: {e}")
                task.future.set_exception(e)
            else:
                task.future.set_result(delta)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
