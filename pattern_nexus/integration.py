"""
Pattern Nexus - unified entry point.

Ties together, for every linked project:
- its pattern store and incremental learner (fed through the worker pool)
- its conflict detector
and, across projects, the registry and the global aggregator.

Stores are passed explicitly to the components that use them; nothing here
relies on module-level singletons, so several PatternNexus instances with
different data directories can live in one process.
"""

import logging
import threading
from concurrent.futures import CancelledError
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .config import PatternNexusConfig
from .core.global_store import SQLiteGlobalStore
from .core.models import (
    AggregationFilter,
    ComplianceOptions,
    ComplianceReport,
    LearningDelta,
    OriginContext,
    PatternException,
    PortfolioView,
    Project,
    ProjectMetadata,
    SyncResult,
    Trigger,
)
from .core.store import PatternStore, SQLitePatternStore
from .embeddings import create_embeddings
from .errors import InputError
from .patterns.analyzer import ObservationAnalyzer
from .patterns.changes import ChangeLike
from .patterns.detector import ConflictDetector, SeverityPolicy, parse_severity
from .patterns.extractor import ConceptExtractor, RegexConceptExtractor
from .patterns.learner import IncrementalLearner
from .patterns.queue import LearnerPool
from .patterns.types import Pattern, PatternType
from .portfolio.aggregator import GlobalAggregator
from .portfolio.registry import ProjectRegistry

logger = logging.getLogger(__name__)

ProjectRef = str  # project id or project path


def _origin_from(origin: Union[OriginContext, Dict[str, Any], None]) -> OriginContext:
    if origin is None:
        return OriginContext()
    if isinstance(origin, OriginContext):
        return origin
    if not isinstance(origin, dict):
        raise InputError("origin must be an OriginContext or a dict")
    try:
        trigger = Trigger(origin.get("trigger", Trigger.MANUAL.value))
    except ValueError:
        raise InputError(f"Unknown trigger {origin.get('trigger')!r}")
    return OriginContext(
        trigger=trigger,
        commit_id=origin.get("commit_id") or origin.get("commitId"),
        author=origin.get("author"),
        metadata=dict(origin.get("metadata") or {}),
    )


def _options_from(options: Union[ComplianceOptions, Dict[str, Any], None]) -> ComplianceOptions:
    if options is None:
        return ComplianceOptions()
    if isinstance(options, ComplianceOptions):
        return options
    return ComplianceOptions(
        severity_threshold=parse_severity(options.get("severity_threshold")),
        auto_fix=bool(options.get("auto_fix", False)),
        track_history=bool(options.get("track_history", False)),
    )


def _filter_from(filter: Union[AggregationFilter, Dict[str, Any], None]) -> AggregationFilter:
    if filter is None:
        return AggregationFilter()
    if isinstance(filter, AggregationFilter):
        return filter
    unknown = set(filter) - set(AggregationFilter.__dataclass_fields__)
    if unknown:
        raise InputError(f"Unknown filter fields: {sorted(unknown)}")
    return AggregationFilter(**filter)


class PatternNexus:
    """
    Pattern intelligence across a portfolio of projects.

    Example:
        nexus = PatternNexus(data_dir="~/.pattern-nexus")
        project_id = nexus.link_project("~/code/web-app")

        nexus.process_changes(project_id, [{"path": "src/user.ts", "kind": "added"}])
        report = nexus.check_compliance(project_id, "const user_id = 1;", "src/new.ts")

        nexus.sync_project(project_id)
        for aggregation in nexus.get_aggregations({"min_consensus": 0.5}):
            print(aggregation.category, aggregation.content, aggregation.consensus_score)
    """

    def __init__(
        self,
        config: Optional[PatternNexusConfig] = None,
        data_dir: Optional[str] = None,
        extractor: Optional[ConceptExtractor] = None,
        embeddings=None,
    ):
        """
        Args:
            config: Settings; read from the environment when omitted
            data_dir: Overrides ``config.data_dir`` (global store location)
            extractor: Concept extraction collaborator shared by learners and detectors
            embeddings: Embedding provider for ``rank_aggregations``; built from
                config on first use when omitted
        """
        self.config = (config or PatternNexusConfig.from_env()).ensure_valid()
        self.data_dir = Path(data_dir or self.config.data_dir).expanduser()
        self.data_dir.mkdir(parents=True, exist_ok=True)

        self.extractor = extractor or RegexConceptExtractor()
        self.analyzer = ObservationAnalyzer()
        self.policy = SeverityPolicy.from_config(self.config)

        self.global_store = SQLiteGlobalStore(str(self.data_dir / "global.db"))
        self.registry = ProjectRegistry(self.global_store)
        self.aggregator = GlobalAggregator(
            self.global_store,
            self.registry,
            store_for=self.store_for,
            embeddings=embeddings,
            config=self.config,
        )

        self._stores: Dict[str, PatternStore] = {}
        self._learners: Dict[str, IncrementalLearner] = {}
        self._detectors: Dict[str, ConflictDetector] = {}
        self._lock = threading.RLock()
        self.pool = LearnerPool(self._learner_for_id, max_workers=self.config.max_workers)

        logger.info(f"Pattern Nexus ready (data dir {self.data_dir})")

    # =========================================================================
    # Per-project components
    # =========================================================================

    def store_for(self, project: Project) -> PatternStore:
        """The pattern store of a project, opened on first use."""
        with self._lock:
            store = self._stores.get(project.id)
            if store is None:
                db_path = Path(project.path) / self.config.store_dirname / "patterns.db"
                store = self._stores[project.id] = SQLitePatternStore(str(db_path))
            return store

    def learner_for(self, project: Project) -> IncrementalLearner:
        with self._lock:
            learner = self._learners.get(project.id)
            if learner is None:
                learner = self._learners[project.id] = IncrementalLearner(
                    self.store_for(project),
                    project_root=project.path,
                    extractor=self.extractor,
                    analyzer=self.analyzer,
                    config=self.config,
                )
            return learner

    def detector_for(self, project: Project) -> ConflictDetector:
        with self._lock:
            detector = self._detectors.get(project.id)
            if detector is None:
                detector = self._detectors[project.id] = ConflictDetector(
                    self.store_for(project),
                    extractor=self.extractor,
                    analyzer=self.analyzer,
                    policy=self.policy,
                    min_pattern_frequency=self.config.min_pattern_frequency,
                )
            return detector

    def _learner_for_id(self, project_id: str) -> IncrementalLearner:
        return self.learner_for(self.registry.get_project(project_id))

    # =========================================================================
    # Incremental learning
    # =========================================================================

    def process_changes(
        self,
        project: ProjectRef,
        changes: List[ChangeLike],
        origin: Union[OriginContext, Dict[str, Any], None] = None,
        wait: bool = True,
    ):
        """
        Learn from a change batch.

        Args:
            project: Project id or path
            changes: ChangeEvents or dicts with ``path``, ``kind`` and, for
                renames, ``old_path``
            origin: Trigger and commit metadata (defaults to a manual trigger)
            wait: Block for the result; otherwise return the Future

        Returns:
            LearningDelta (or a Future of one when ``wait`` is False). A batch
            whose every change was superseded by a later submission returns an
            unapplied delta.

        Raises:
            InputError: unknown project or malformed batch (nothing is queued)
            MergeError: the store write failed and was rolled back
        """
        target = self.registry.resolve(project)
        origin = _origin_from(origin)
        future = self.pool.submit(target.id, changes, origin)
        if not wait:
            return future
        try:
            return future.result()
        except CancelledError:
            version = self.store_for(target).version
            return LearningDelta(
                trigger=origin.trigger,
                commit_id=origin.commit_id,
                preceding_version=version,
                resulting_version=version,
                applied=False,
            )

    def import_patterns(self, project: ProjectRef, patterns: List[Union[Pattern, Dict[str, Any]]]) -> LearningDelta:
        target = self.registry.resolve(project)
        return self.learner_for(target).import_patterns(patterns)

    def export_patterns(self, project: ProjectRef, output_path: str, min_confidence: float = 0.0) -> int:
        target = self.registry.resolve(project)
        return self.store_for(target).export_patterns(output_path, min_confidence)

    def list_patterns(
        self,
        project: ProjectRef,
        pattern_type: Optional[str] = None,
        language: Optional[str] = None,
        min_frequency: int = 1,
    ) -> List[Pattern]:
        target = self.registry.resolve(project)
        if pattern_type is not None:
            try:
                pattern_type = PatternType(pattern_type)
            except ValueError:
                raise InputError(f"Unknown pattern type {pattern_type!r}")
        return self.store_for(target).list_patterns(
            pattern_type=pattern_type, language=language, min_frequency=min_frequency
        )

    def get_recent_deltas(self, project: ProjectRef, limit: int = 10) -> List[LearningDelta]:
        return self.learner_for(self.registry.resolve(project)).get_recent_deltas(limit)

    def get_learning_statistics(self, project: ProjectRef) -> Dict[str, Any]:
        return self.learner_for(self.registry.resolve(project)).get_statistics()

    # =========================================================================
    # Compliance
    # =========================================================================

    def check_compliance(
        self,
        project: ProjectRef,
        code_unit: str,
        file_path: str,
        options: Union[ComplianceOptions, Dict[str, Any], None] = None,
    ) -> ComplianceReport:
        target = self.registry.resolve(project)
        return self.detector_for(target).check_compliance(code_unit, file_path, _options_from(options))

    def add_exception(self, project: ProjectRef, pattern_id: str, reason: str, scope_glob: str) -> PatternException:
        target = self.registry.resolve(project)
        exception = self.detector_for(target).add_exception(pattern_id, reason, scope_glob)
        logger.info(f"Exception for {pattern_id} on '{exception.scope_glob}' in {target.name}")
        return exception

    def is_excepted(self, project: ProjectRef, pattern_id: str, file_path: str) -> bool:
        return self.detector_for(self.registry.resolve(project)).is_excepted(pattern_id, file_path)

    def list_exceptions(self, project: ProjectRef, pattern_id: Optional[str] = None) -> List[PatternException]:
        return self.detector_for(self.registry.resolve(project)).list_exceptions(pattern_id)

    def get_violation_history(self, project: ProjectRef, **filters) -> List[Dict[str, Any]]:
        return self.detector_for(self.registry.resolve(project)).get_violation_history(**filters)

    def resolve_violation(self, project: ProjectRef, violation_id: str, resolution: str) -> bool:
        return self.detector_for(self.registry.resolve(project)).resolve_violation(violation_id, resolution)

    # =========================================================================
    # Portfolio
    # =========================================================================

    def link_project(self, path: str, metadata: Union[ProjectMetadata, Dict[str, Any], None] = None) -> str:
        project_id = self.registry.link_project(path, metadata)
        self.aggregator.refresh_consensus()
        return project_id

    def unlink_project(self, project: ProjectRef) -> Project:
        target = self.registry.resolve(project)
        unlinked = self.registry.unlink_project(target.id)
        self.aggregator.refresh_consensus()
        return unlinked

    def get_project(self, project: ProjectRef) -> Project:
        return self.registry.resolve(project)

    def list_projects(self, include_inactive: bool = False) -> List[Project]:
        return self.registry.list_projects(include_inactive)

    def sync_project(self, project: ProjectRef) -> SyncResult:
        return self.aggregator.sync_project(self.registry.resolve(project).id)

    def sync_all(self) -> List[SyncResult]:
        return [self.aggregator.sync_project(project_id) for project_id in self.registry.active_project_ids()]

    def get_aggregations(self, filter: Union[AggregationFilter, Dict[str, Any], None] = None):
        return self.aggregator.get_aggregations(_filter_from(filter))

    def get_portfolio_view(self) -> PortfolioView:
        return self.aggregator.get_portfolio_view()

    def search_concepts(self, query: str, limit: int = 20, project: Optional[ProjectRef] = None):
        project_id = self.registry.resolve(project).id if project else None
        return self.aggregator.search_concepts(query, limit=limit, project_id=project_id)

    def rank_aggregations(self, query: str, limit: int = 10):
        if self.aggregator.embeddings is None:
            self.aggregator.embeddings = create_embeddings(
                self.config.embedding_provider, model_name=self.config.embedding_model
            )
        return self.aggregator.rank_aggregations(query, limit)

    def get_project_similarity(self, project_a: ProjectRef, project_b: ProjectRef) -> float:
        return self.aggregator.get_project_similarity(
            self.registry.resolve(project_a).id, self.registry.resolve(project_b).id
        )

    def get_pattern_diff(self, project_a: ProjectRef, project_b: ProjectRef) -> Dict[str, List[Dict[str, Any]]]:
        return self.aggregator.get_pattern_diff(
            self.registry.resolve(project_a).id, self.registry.resolve(project_b).id
        )

    def get_statistics(self) -> Dict[str, Any]:
        return self.aggregator.get_statistics()

    def close(self) -> None:
        """Stop the worker pool and close every store."""
        self.pool.shutdown(wait=True)
        with self._lock:
            for store in self._stores.values():
                store.close()
            self._stores.clear()
            self._learners.clear()
            self._detectors.clear()
        self.global_store.close()
        logger.info("Pattern Nexus closed")
