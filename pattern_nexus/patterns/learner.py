"""
Incremental Learner.

Consumes change batches and folds them into the project's pattern store
without re-scanning the codebase:

- added/modified: re-extract that file only and replace its evidence
- deleted: drop the file's concepts and subtract its evidence
- renamed: re-key concepts, evidence and examples to the new path

Evidence is kept per (pattern, file), and a pattern's frequency is the sum
over files. Because re-analysis replaces a file's evidence instead of adding
to it, replaying a batch is a no-op. A pattern whose frequency reaches zero
is removed.

All writes for one batch go through a single atomic merge. Extraction runs
before the merge transaction starts; a file whose extraction fails is
skipped and reported as degraded instead of failing the batch.
"""

import json
import logging
import threading
import time
from collections import defaultdict
from dataclasses import replace
from datetime import datetime
from pathlib import Path, PurePosixPath
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple, Union

from ..config import PatternNexusConfig
from ..core.models import ChangeEvent, ChangeKind, Concept, LearningDelta, OriginContext, Trigger
from ..core.store import MergePlan, PatternStore
from ..errors import InputError
from .analyzer import ObservationAnalyzer
from .changes import ChangeLike, validate_batch
from .extractor import ConceptExtractor, RegexConceptExtractor
from .types import (
    Pattern,
    PatternExample,
    PatternObservation,
    PatternType,
    compute_confidence,
    content_from_dict,
    make_pattern_id,
)

logger = logging.getLogger(__name__)

# Evidence key for patterns seeded through import rather than observed in a file
IMPORT_SOURCE = "@import"

ContentLoader = Callable[[str], Optional[str]]


class _FileAnalysis:
    """Extraction outcome for one file."""

    def __init__(self, path: str):
        self.path = path
        self.concepts: List[Concept] = []
        self.observations: List[PatternObservation] = []
        self.degraded = False
        self.missing = False
        self.reason: Optional[str] = None

    def evidence(self) -> Dict[str, int]:
        counts: Dict[str, int] = defaultdict(int)
        for obs in self.observations:
            if not obs.is_ambiguous:
                counts[obs.pattern_id] += 1
        return dict(counts)


class IncrementalLearner:
    """
    Applies change batches to one project's pattern store.

    At most one merge is in flight per learner; calls from several threads
    for the same project are serialized.

    Example:
        store = SQLitePatternStore("./app/.pattern-nexus/patterns.db")
        learner = IncrementalLearner(store, project_root="./app")

        delta = learner.process_changes(
            [{"path": "src/user.ts", "kind": "modified"}],
            OriginContext(trigger=Trigger.GIT_COMMIT, commit_id="abc123"),
        )
        print(delta.patterns_added, delta.resulting_version)
    """

    def __init__(
        self,
        store: PatternStore,
        project_root: Optional[str] = None,
        extractor: Optional[ConceptExtractor] = None,
        analyzer: Optional[ObservationAnalyzer] = None,
        content_loader: Optional[ContentLoader] = None,
        config: Optional[PatternNexusConfig] = None,
    ):
        """
        Args:
            store: The project's pattern store (this learner is its only writer)
            project_root: Directory that change paths are relative to
            extractor: Concept extraction collaborator
            analyzer: Turns concepts into pattern observations
            content_loader: Reads a file's text by relative path; returns None
                when the file no longer exists
            config: Tuning (example bound, recency window)
        """
        self.store = store
        self.project_root = str(Path(project_root).expanduser().resolve()) if project_root else None
        self.extractor = extractor or RegexConceptExtractor()
        self.analyzer = analyzer or ObservationAnalyzer()
        self.content_loader = content_loader or (self._read_file if self.project_root else None)
        self.config = config or PatternNexusConfig()
        self._lock = threading.Lock()

    # =========================================================================
    # Public API
    # =========================================================================

    def process_changes(
        self,
        changes: Iterable[ChangeLike],
        origin: Optional[OriginContext] = None,
    ) -> LearningDelta:
        """
        Apply one change batch as a single atomic merge.

        Args:
            changes: (path, kind) events as ChangeEvent objects or dicts
            origin: Trigger and commit metadata

        Returns:
            The LearningDelta. ``applied`` is False when nothing changed.

        Raises:
            InputError: malformed batch (nothing is processed)
            MergeError: the store write failed (store left at its prior version)
            ConsistencyError: the store version moved underneath the merge
        """
        started = time.perf_counter()
        origin = origin or OriginContext()
        if not isinstance(origin, OriginContext):
            raise InputError("origin must be an OriginContext")
        events = validate_batch(changes, self.project_root)
        for event in events:
            if (
                event.kind in (ChangeKind.ADDED, ChangeKind.MODIFIED)
                and event.content is None
                and self.content_loader is None
            ):
                raise InputError(f"No content for {event.path} and no project root to read it from")

        with self._lock:
            analyses = self._analyze(events)
            delta, plan = self._plan(events, analyses, origin)
            if plan is not None:
                delta.duration_ms = int((time.perf_counter() - started) * 1000)
                self.store.commit_merge(plan)
                logger.info(
                    f"Applied delta {delta.id} (v{delta.resulting_version}): "
                    f"{len(delta.files_touched)} files, +{delta.patterns_added} "
                    f"~{delta.patterns_modified} -{delta.patterns_removed} patterns"
                )
            else:
                delta.duration_ms = int((time.perf_counter() - started) * 1000)
                logger.debug(f"No-op batch of {len(events)} changes at v{delta.preceding_version}")

        if delta.partial_degradation:
            logger.warning(f"Degraded extraction for {len(delta.degraded_files)} files: {delta.degraded_files}")
        return delta

    def import_patterns(
        self,
        patterns: List[Union[Pattern, Dict[str, Any]]],
        origin: Optional[OriginContext] = None,
    ) -> LearningDelta:
        """
        Seed patterns (e.g. from another project's export) through a normal merge.

        Each imported pattern contributes its frequency as evidence from a
        pseudo-file, so later file deletions never remove it. An explicit
        confidence is kept as long as it is not below what the store holds.
        """
        started = time.perf_counter()
        origin = origin or OriginContext(trigger=Trigger.MANUAL)
        seeded: Dict[str, Pattern] = {}
        for raw in patterns:
            pattern = self._coerce_pattern(raw)
            seeded[pattern.id] = pattern

        with self._lock:
            preceding = self.store.version
            import_evidence = self.store.evidence_for_files([IMPORT_SOURCE]).get(IMPORT_SOURCE, {})
            overlay = {IMPORT_SOURCE: dict(import_evidence)}
            for pid, pattern in seeded.items():
                overlay[IMPORT_SOURCE][pid] = pattern.frequency

            now = datetime.now()
            upserts, removals, added, modified = self._pattern_changes(
                overlay=overlay,
                replaced_files={IMPORT_SOURCE},
                rename_map={},
                new_observations={},
                seeded=seeded,
                version=preceding + 1,
                now=now,
            )
            delta = LearningDelta(
                trigger=origin.trigger,
                commit_id=origin.commit_id,
                files_touched=[],
                patterns_added=added,
                patterns_modified=modified,
                preceding_version=preceding,
                resulting_version=preceding + 1,
                applied_at=now,
            )
            if not upserts and not removals:
                delta.applied = False
                delta.resulting_version = preceding
                return delta

            delta.duration_ms = int((time.perf_counter() - started) * 1000)
            plan = MergePlan(
                delta=delta,
                upserts=upserts,
                removals=removals,
                evidence=overlay,
                origin=origin.to_dict(),
            )
            self.store.commit_merge(plan)
        logger.info(f"Imported {len(seeded)} patterns at v{delta.resulting_version}")
        return delta

    def import_patterns_file(self, input_path: str) -> LearningDelta:
        """Import patterns from a JSON export file."""
        with open(input_path, "r") as f:
            data = json.load(f)
        return self.import_patterns(data.get("patterns", []))

    def get_recent_deltas(self, limit: int = 10) -> List[LearningDelta]:
        return self.store.get_recent_deltas(limit)

    def get_statistics(self) -> Dict[str, Any]:
        return self.store.get_statistics()

    # =========================================================================
    # Extraction
    # =========================================================================

    def _read_file(self, relative_path: str) -> Optional[str]:
        path = Path(self.project_root) / relative_path
        if not path.is_file():
            return None
        return path.read_text(encoding="utf-8", errors="replace")

    def _analyze(self, events: List[ChangeEvent]) -> Dict[str, _FileAnalysis]:
        analyses: Dict[str, _FileAnalysis] = {}
        for event in events:
            if event.kind not in (ChangeKind.ADDED, ChangeKind.MODIFIED):
                continue
            analysis = _FileAnalysis(event.path)
            analyses[event.path] = analysis

            content = event.content
            if content is None:
                try:
                    content = self.content_loader(event.path)
                except OSError as e:
                    analysis.degraded = True
                    analysis.reason = f"unreadable: {e}"
                    continue
                if content is None:
                    analysis.missing = True
                    continue

            try:
                result = self.extractor.extract(event.path, content)
            except Exception as e:
                logger.warning(f"Concept extraction failed for {event.path}: {e}")
                analysis.degraded = True
                analysis.reason = str(e)
                continue

            if result.degraded:
                analysis.degraded = True
                analysis.reason = result.reason
                continue

            analysis.concepts = [replace(c, file_path=event.path) for c in result.concepts]
            analysis.observations = self.analyzer.observe(result, event.path, content)
        return analyses

    # =========================================================================
    # Planning
    # =========================================================================

    def _plan(
        self,
        events: List[ChangeEvent],
        analyses: Dict[str, _FileAnalysis],
        origin: OriginContext,
    ) -> Tuple[LearningDelta, Optional[MergePlan]]:
        preceding = self.store.version
        now = datetime.now()

        touched: Set[str] = set()
        for event in events:
            touched.add(event.path)
            if event.old_path:
                touched.add(event.old_path)

        old_evidence = self.store.evidence_for_files(touched)
        old_concepts = self.store.concepts_for_files(touched)
        evidence = {path: dict(counts) for path, counts in old_evidence.items()}
        concepts = {path: list(items) for path, items in old_concepts.items()}

        rename_map: Dict[str, str] = {}
        replaced: Set[str] = set()
        written: Set[str] = set()
        new_observations: Dict[str, List[PatternObservation]] = defaultdict(list)
        degraded: List[str] = []

        for event in events:
            path = event.path
            if event.kind == ChangeKind.RENAMED:
                evidence[path] = evidence.get(event.old_path, {})
                evidence[event.old_path] = {}
                concepts[path] = [replace(c, file_path=path) for c in concepts.get(event.old_path, [])]
                concepts[event.old_path] = []
                for source, target in list(rename_map.items()):
                    if target == event.old_path:
                        rename_map[source] = path
                rename_map[event.old_path] = path
                if event.old_path in replaced:
                    replaced.discard(event.old_path)
                    replaced.add(path)
                written.update((path, event.old_path))
                continue

            analysis = analyses.get(path)
            if event.kind == ChangeKind.DELETED or (analysis is not None and analysis.missing):
                evidence[path] = {}
                concepts[path] = []
                replaced.add(path)
                written.add(path)
                new_observations = self._drop_observations(new_observations, path)
                continue

            if analysis.degraded:
                degraded.append(path)
                continue

            evidence[path] = analysis.evidence()
            concepts[path] = analysis.concepts
            replaced.add(path)
            written.add(path)
            new_observations = self._drop_observations(new_observations, path)
            for obs in analysis.observations:
                if not obs.is_ambiguous:
                    new_observations[obs.pattern_id].append(obs)

        evidence_overlay = {path: evidence[path] for path in written}
        concept_overlay = {path: concepts[path] for path in written}
        evidence_changed = any(
            evidence_overlay[path] != old_evidence.get(path, {}) for path in written
        )

        c_added, c_modified, c_removed = self._diff_concepts(old_concepts, concept_overlay, rename_map)

        delta = LearningDelta(
            trigger=origin.trigger,
            commit_id=origin.commit_id,
            files_touched=sorted(e.path for e in events),
            concepts_added=c_added,
            concepts_modified=c_modified,
            concepts_removed=c_removed,
            applied_at=now,
            preceding_version=preceding,
            resulting_version=preceding + 1,
            partial_degradation=bool(degraded),
            degraded_files=sorted(degraded),
        )

        upserts, removals, p_added, p_modified = self._pattern_changes(
            overlay=evidence_overlay,
            replaced_files=replaced,
            rename_map=rename_map,
            new_observations=new_observations,
            seeded={},
            version=preceding + 1,
            now=now,
        )
        delta.patterns_added = p_added
        delta.patterns_modified = p_modified
        delta.patterns_removed = len(removals)

        if not (upserts or removals or evidence_changed or c_added or c_modified or c_removed):
            delta.applied = False
            delta.resulting_version = preceding
            return delta, None

        plan = MergePlan(
            delta=delta,
            upserts=upserts,
            removals=removals,
            evidence=evidence_overlay,
            concepts=concept_overlay,
            origin=origin.to_dict(),
        )
        return delta, plan

    @staticmethod
    def _drop_observations(
        observations: Dict[str, List[PatternObservation]], path: str
    ) -> Dict[str, List[PatternObservation]]:
        kept: Dict[str, List[PatternObservation]] = defaultdict(list)
        for pid, items in observations.items():
            remaining = [o for o in items if o.file_path != path]
            if remaining:
                kept[pid] = remaining
        return kept

    def _pattern_changes(
        self,
        overlay: Dict[str, Dict[str, int]],
        replaced_files: Set[str],
        rename_map: Dict[str, str],
        new_observations: Dict[str, List[PatternObservation]],
        seeded: Dict[str, Pattern],
        version: int,
        now: datetime,
    ) -> Tuple[List[Pattern], List[Pattern], int, int]:
        """Recompute every pattern whose evidence the overlay touches."""
        affected: Set[str] = set(new_observations) | set(seeded)
        old_by_file = self.store.evidence_for_files(overlay.keys())
        for counts in list(old_by_file.values()) + list(overlay.values()):
            affected.update(counts)
        if not affected:
            return [], [], 0, 0

        stored_evidence = self.store.evidence_for_patterns(affected)
        upserts: List[Pattern] = []
        removals: List[Pattern] = []
        added = modified = 0

        for pid in sorted(affected):
            files = {f: c for f, c in stored_evidence.get(pid, {}).items() if f not in overlay}
            for path, counts in overlay.items():
                if counts.get(pid, 0) > 0:
                    files[path] = counts[pid]
            frequency = sum(files.values())
            existing = self.store.get_pattern(pid)

            if frequency <= 0:
                if existing is not None:
                    removals.append(existing)
                continue

            observations = new_observations.get(pid, [])
            template = seeded.get(pid)
            if existing is None:
                if template is None and not observations:
                    logger.warning(f"Evidence for unknown pattern {pid} without observations, skipping")
                    continue
                pattern_type = template.pattern_type if template else observations[0].pattern_type
                content = template.content if template else observations[0].content
                confidence = self._confidence(frequency, now, now)
                if template is not None and template.confidence:
                    confidence = max(confidence, template.confidence)
                upserts.append(Pattern(
                    id=pid,
                    pattern_type=pattern_type,
                    content=content,
                    frequency=frequency,
                    confidence=confidence,
                    contexts=self._contexts(files, content.language),
                    examples=self._examples([], replaced_files, rename_map, observations),
                    version=version,
                    created_at=now,
                    last_seen=now,
                ))
                added += 1
                continue

            if frequency > existing.frequency:
                confidence = max(existing.confidence, self._confidence(frequency, now, now))
                last_seen = now
            elif frequency < existing.frequency:
                confidence = min(existing.confidence, self._confidence(frequency, existing.last_seen, now))
                last_seen = now if observations else existing.last_seen
            else:
                confidence = existing.confidence
                last_seen = now if observations else existing.last_seen
            if template is not None and template.confidence:
                confidence = max(confidence, template.confidence)

            contexts = self._contexts(files, existing.content.language)
            examples = self._examples(existing.examples, replaced_files, rename_map, observations)
            if (
                frequency == existing.frequency
                and confidence == existing.confidence
                and contexts == existing.contexts
                and [e.to_dict() for e in examples] == [e.to_dict() for e in existing.examples]
            ):
                continue

            upserts.append(replace(
                existing,
                frequency=frequency,
                confidence=confidence,
                contexts=contexts,
                examples=examples,
                version=version,
                last_seen=last_seen,
            ))
            modified += 1

        return upserts, removals, added, modified

    def _confidence(self, frequency: int, last_seen: datetime, now: datetime) -> float:
        return compute_confidence(
            frequency,
            last_seen=last_seen,
            now=now,
            recency_window_days=self.config.recency_window_days,
            recency_bonus=self.config.recency_bonus,
        )

    @staticmethod
    def _contexts(files: Dict[str, int], language: Optional[str]) -> List[str]:
        contexts = set()
        for path in files:
            if path == IMPORT_SOURCE:
                continue
            parent = str(PurePosixPath(path).parent)
            contexts.add(parent if parent else ".")
        if language:
            contexts.add(f"lang:{language}")
        return sorted(contexts)

    def _examples(
        self,
        current: List[PatternExample],
        replaced_files: Set[str],
        rename_map: Dict[str, str],
        observations: List[PatternObservation],
    ) -> List[PatternExample]:
        """Bounded examples, ordered by location so the result is deterministic."""
        candidates: Dict[Tuple[str, int], PatternExample] = {}
        for example in current:
            path = rename_map.get(example.file_path, example.file_path)
            if path in replaced_files:
                continue
            candidates.setdefault(
                (path, example.line),
                PatternExample(file_path=path, line=example.line, snippet=example.snippet),
            )
        for obs in observations:
            candidates.setdefault(
                (obs.file_path, obs.line),
                PatternExample(file_path=obs.file_path, line=obs.line, snippet=obs.snippet),
            )
        return [candidates[key] for key in sorted(candidates)][: self.config.max_examples]

    @staticmethod
    def _diff_concepts(
        old: Dict[str, List[Concept]],
        new: Dict[str, List[Concept]],
        rename_map: Dict[str, str],
    ) -> Tuple[int, int, int]:
        """Count added/modified/removed concepts; a renamed file's concepts count as modified."""
        before: Dict[Tuple[str, str, str], List[Tuple[str, int, int]]] = defaultdict(list)
        after: Dict[Tuple[str, str, str], List[Tuple[str, int, int]]] = defaultdict(list)
        for path, items in old.items():
            target = rename_map.get(path, path)
            for c in items:
                before[(target, c.concept_type, c.name)].append((path, c.line, c.column))
        for path, items in new.items():
            for c in items:
                after[(path, c.concept_type, c.name)].append((path, c.line, c.column))

        added = modified = removed = 0
        for key in set(before) | set(after):
            old_items = sorted(before.get(key, []))
            new_items = sorted(after.get(key, []))
            common = min(len(old_items), len(new_items))
            modified += sum(1 for i in range(common) if old_items[i] != new_items[i])
            added += max(0, len(new_items) - common)
            removed += max(0, len(old_items) - common)
        return added, modified, removed

    @staticmethod
    def _coerce_pattern(raw: Union[Pattern, Dict[str, Any]]) -> Pattern:
        if isinstance(raw, Pattern):
            pattern = raw
        elif isinstance(raw, dict):
            try:
                pattern_type = PatternType(raw["pattern_type"])
                content = content_from_dict(pattern_type, raw.get("content", {}))
            except (KeyError, ValueError, TypeError) as e:
                raise InputError(f"Invalid pattern payload: {e}")
            pattern = Pattern(
                id="",
                pattern_type=pattern_type,
                content=content,
                frequency=int(raw.get("frequency", 1)),
                confidence=float(raw.get("confidence", 0.0)),
            )
        else:
            raise InputError(f"Cannot import {type(raw).__name__} as a pattern")
        if pattern.frequency < 1:
            raise InputError("Imported pattern frequency must be at least 1")
        if not 0.0 <= pattern.confidence <= 1.0:
            raise InputError("Imported pattern confidence must be within [0, 1]")
        return replace(pattern, id=make_pattern_id(pattern.pattern_type, pattern.content))
