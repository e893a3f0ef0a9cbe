"""
Global Aggregator.

Merges per-project patterns into signature-keyed aggregations:

- occurrences hold one entry per project (with one contribution per local
  pattern that maps to the signature)
- aggregated confidence is the frequency-weighted mean of occurrence
  confidences
- consensus is the share of active projects with an occurrence, recomputed
  from the full occurrence list on every write

Syncs are incremental: only patterns newer than the project's checkpoint are
read, and the checkpoint advances one store version at a time, so a failed
sync resumes where it stopped.
"""

import logging
import sqlite3
import threading
import time
from collections import Counter
from datetime import datetime
from itertools import groupby
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import numpy as np

from ..config import PatternNexusConfig
from ..core.global_store import GlobalStore
from ..core.models import (
    AggregationFilter,
    Occurrence,
    PatternAggregation,
    PortfolioView,
    Project,
    SyncResult,
)
from ..core.store import PatternStore, SQLitePatternStore, Tombstone
from ..errors import InputError, SyncError, SyncInProgressError
from ..patterns.extractor import detect_language
from ..patterns.types import Pattern
from .registry import ProjectRegistry
from .signature import compute_signature, normalize_content

logger = logging.getLogger(__name__)

MAX_SWAP_ATTEMPTS = 20
TOP_N = 5

StoreResolver = Callable[[Project], PatternStore]


class GlobalAggregator:
    """
    Cross-project pattern aggregation.

    Example:
        aggregator = GlobalAggregator(global_store, registry)
        result = aggregator.sync_project(project_id)
        top = aggregator.get_aggregations(AggregationFilter(min_consensus=0.5))
    """

    def __init__(
        self,
        store: GlobalStore,
        registry: ProjectRegistry,
        store_for: Optional[StoreResolver] = None,
        embeddings=None,
        config: Optional[PatternNexusConfig] = None,
    ):
        """
        Args:
            store: Global store holding aggregations and concepts
            registry: Project registry over the same store
            store_for: Opens the pattern store of a project (read-only use)
            embeddings: Optional embedding provider for semantic ranking
            config: Used to locate project stores when ``store_for`` is omitted
        """
        self.store = store
        self.registry = registry
        self.config = config or PatternNexusConfig()
        self.store_for = store_for or self._default_store_for
        self.embeddings = embeddings
        self._syncing: Set[str] = set()
        self._sync_lock = threading.Lock()

    def _default_store_for(self, project: Project) -> PatternStore:
        return SQLitePatternStore(str(Path(project.path) / self.config.store_dirname / "patterns.db"))

    # =========================================================================
    # Sync
    # =========================================================================

    def sync_project(self, project_id: str) -> SyncResult:
        """
        Merge a project's changed patterns into the aggregations.

        Returns:
            SyncResult. ``status`` is "partial" with ``retryable=True`` when the
            global store failed part way; the checkpoint then points at the
            last fully merged store version.

        Raises:
            InputError: unknown or inactive project
            SyncInProgressError: the project is already being synced
        """
        project = self.registry.get_project(project_id)
        if not project.is_active:
            raise InputError(f"Project {project_id} is not linked")

        with self._sync_lock:
            if project_id in self._syncing:
                raise SyncInProgressError(
                    f"Sync already in progress for {project_id}",
                    details={"project_id": project_id},
                )
            self._syncing.add(project_id)
        try:
            return self._sync(project)
        finally:
            with self._sync_lock:
                self._syncing.discard(project_id)

    def _sync(self, project: Project) -> SyncResult:
        started = time.perf_counter()
        checkpoint = project.last_synced_version
        result = SyncResult(
            project_id=project.id,
            previous_version=checkpoint,
            synced_version=checkpoint,
        )

        items: List[Tuple[int, int, str, Any]] = []
        try:
            local = self.store_for(project)
            changes = local.changes_since(checkpoint)
            items = [(t.version, 0, t.pattern_id, t) for t in changes.removed]
            items += [(p.version, 1, p.id, p) for p in changes.patterns]
            items.sort(key=lambda item: item[:3])

            active_ids = set(self.registry.active_project_ids())
            for version, group in groupby(items, key=lambda item: item[0]):
                for _, _, _, item in group:
                    if isinstance(item, Tombstone):
                        outcome = self._withdraw(project.id, item, active_ids)
                    else:
                        outcome = self._contribute(project.id, item, active_ids)
                    if outcome == "added":
                        result.patterns_added += 1
                    elif outcome == "updated":
                        result.patterns_updated += 1
                    elif outcome == "removed":
                        result.patterns_removed += 1
                self.registry.advance_checkpoint(project.id, version)
                result.synced_version = version

            concepts = local.list_concepts()
            result.concepts_added = self.store.replace_project_concepts(project.id, concepts)
            self.registry.update_project_stats(
                project.id,
                pattern_count=local.pattern_count(),
                concept_count=len(concepts),
                primary_language=self._infer_language(concepts),
            )
            if not items:
                self.store.touch_sync(project.id)
        except (sqlite3.Error, SyncError) as e:
            result.status = "partial"
            result.retryable = True
            result.error = str(e)
            logger.warning(
                f"Sync of {project.id} stopped at v{result.synced_version} "
                f"(target v{items[-1][0] if items else checkpoint}): {e}"
            )
        result.duration_ms = int((time.perf_counter() - started) * 1000)

        if result.status == "success":
            logger.info(
                f"Synced {project.name}: v{checkpoint} -> v{result.synced_version}, "
                f"+{result.patterns_added} ~{result.patterns_updated} -{result.patterns_removed}"
            )
        return result

    @staticmethod
    def _infer_language(concepts) -> Optional[str]:
        counts = Counter(detect_language(c.file_path) for c in concepts)
        counts.pop(None, None)
        return counts.most_common(1)[0][0] if counts else None

    def _contribute(self, project_id: str, pattern: Pattern, active_ids: Set[str]) -> str:
        content = pattern.content.to_dict()
        contribution = {
            "frequency": pattern.frequency,
            "confidence": pattern.confidence,
            "language": pattern.language,
        }
        return self._merge(
            signature=compute_signature(pattern.pattern_type.value, content),
            pattern_type=pattern.pattern_type.value,
            category=pattern.category.lower(),
            content=normalize_content(content),
            project_id=project_id,
            key=pattern.id,
            contribution=contribution,
            active_ids=active_ids,
        )

    def _withdraw(self, project_id: str, tombstone: Tombstone, active_ids: Set[str]) -> str:
        content = tombstone.content
        return self._merge(
            signature=compute_signature(tombstone.pattern_type.value, content),
            pattern_type=tombstone.pattern_type.value,
            category=str(content.get("category", "")).lower(),
            content=normalize_content(content),
            project_id=project_id,
            key=tombstone.pattern_id,
            contribution=None,
            active_ids=active_ids,
        )

    def _merge(
        self,
        signature: str,
        pattern_type: str,
        category: str,
        content: Dict[str, Any],
        project_id: str,
        key: str,
        contribution: Optional[Dict[str, Any]],
        active_ids: Set[str],
    ) -> str:
        """
        Replace one project contribution in one aggregation (compare-and-swap).

        Returns "added", "updated", "removed" or "unchanged".
        """
        for _ in range(MAX_SWAP_ATTEMPTS):
            now = datetime.now()
            aggregation = self.store.get_aggregation(signature)
            if aggregation is None:
                if contribution is None:
                    return "unchanged"
                aggregation = PatternAggregation(
                    signature=signature,
                    pattern_type=pattern_type,
                    category=category,
                    content=content,
                    occurrences=[Occurrence(project_id=project_id, contributions={key: contribution})],
                    revision=1,
                    created_at=now,
                    updated_at=now,
                )
                self.recompute(aggregation, active_ids)
                if self.store.insert_aggregation(aggregation):
                    return "added"
                continue

            expected = aggregation.revision
            occurrence = next((o for o in aggregation.occurrences if o.project_id == project_id), None)
            had_occurrence = occurrence is not None

            if contribution is None:
                if occurrence is None or key not in occurrence.contributions:
                    return "unchanged"
                del occurrence.contributions[key]
                if not occurrence.contributions:
                    aggregation.occurrences.remove(occurrence)
                outcome = "removed" if occurrence not in aggregation.occurrences else "updated"
            else:
                if occurrence is None:
                    occurrence = Occurrence(project_id=project_id)
                    aggregation.occurrences.append(occurrence)
                elif occurrence.contributions.get(key) == contribution:
                    return "unchanged"
                occurrence.contributions[key] = contribution
                outcome = "updated" if had_occurrence else "added"

            if not aggregation.occurrences:
                if self.store.delete_aggregation(signature, expected):
                    return "removed"
                continue

            self.recompute(aggregation, active_ids)
            aggregation.revision = expected + 1
            aggregation.updated_at = now
            if self.store.swap_aggregation(aggregation, expected):
                return outcome
            logger.debug(f"Revision conflict on {signature}, retrying")

        raise SyncError(f"Could not update aggregation {signature} after {MAX_SWAP_ATTEMPTS} attempts")

    @staticmethod
    def recompute(aggregation: PatternAggregation, active_ids: Set[str]) -> None:
        """Recompute confidence and consensus from the full occurrence list."""
        aggregation.occurrences.sort(key=lambda o: o.project_id)
        weights = [o.frequency for o in aggregation.occurrences]
        if sum(weights) > 0:
            aggregation.aggregated_confidence = float(np.average(
                [o.confidence for o in aggregation.occurrences], weights=weights
            ))
        else:
            aggregation.aggregated_confidence = 0.0
        if active_ids:
            exhibiting = sum(1 for o in aggregation.occurrences if o.project_id in active_ids)
            aggregation.consensus_score = min(1.0, exhibiting / len(active_ids))
        else:
            aggregation.consensus_score = 0.0

    def refresh_consensus(self) -> int:
        """Recompute consensus everywhere after the set of active projects changed."""
        active_ids = set(self.registry.active_project_ids())
        updated = 0
        for aggregation in self.store.list_aggregations():
            for _ in range(MAX_SWAP_ATTEMPTS):
                expected = aggregation.revision
                before = (aggregation.aggregated_confidence, aggregation.consensus_score)
                self.recompute(aggregation, active_ids)
                if (aggregation.aggregated_confidence, aggregation.consensus_score) == before:
                    break
                aggregation.revision = expected + 1
                aggregation.updated_at = datetime.now()
                if self.store.swap_aggregation(aggregation, expected):
                    updated += 1
                    break
                aggregation = self.store.get_aggregation(aggregation.signature)
                if aggregation is None:
                    break
        logger.debug(f"Refreshed consensus on {updated} aggregations ({len(active_ids)} active projects)")
        return updated

    # =========================================================================
    # Queries
    # =========================================================================

    def get_aggregations(self, filter: Optional[AggregationFilter] = None) -> List[PatternAggregation]:
        """
        Aggregations matching a filter, most widespread first.

        Ordered by number of projects (descending), then aggregated
        confidence (descending).
        """
        filter = filter or AggregationFilter()
        if filter.min_consensus < 0 or filter.min_consensus > 1:
            raise InputError("min_consensus must be within [0, 1]")
        if filter.min_project_count < 0:
            raise InputError("min_project_count must not be negative")

        results = []
        for aggregation in self.store.list_aggregations():
            if filter.category and aggregation.category != filter.category.lower():
                continue
            if filter.pattern_type and aggregation.pattern_type != filter.pattern_type:
                continue
            if len(aggregation.occurrences) < filter.min_project_count:
                continue
            if aggregation.consensus_score < filter.min_consensus:
                continue
            if filter.language and filter.language not in aggregation.languages:
                continue
            results.append(aggregation)

        results.sort(key=lambda a: (-len(a.occurrences), -a.aggregated_confidence, a.signature))
        if filter.limit is not None:
            results = results[: filter.limit]
        return results

    def get_portfolio_view(self) -> PortfolioView:
        """Read-only summary over the registry and the aggregations."""
        projects = self.registry.list_projects()
        languages = Counter(p.primary_language for p in projects if p.primary_language)
        frameworks = Counter(f for p in projects for f in p.frameworks)
        return PortfolioView(
            total_projects=len(projects),
            total_patterns=len(self.store.list_aggregations()),
            total_concepts=sum(p.concept_count for p in projects),
            top_languages=[{"language": k, "count": v} for k, v in languages.most_common(TOP_N)],
            top_frameworks=[{"framework": k, "count": v} for k, v in frameworks.most_common(TOP_N)],
            projects=[p.to_dict() for p in projects],
        )

    def search_concepts(self, query: str, limit: int = 20, project_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Find concepts by name across all synced projects."""
        if not query or not query.strip():
            raise InputError("query is required")
        return self.store.search_concepts(query.strip(), limit=limit, project_id=project_id)

    def rank_aggregations(self, query: str, limit: int = 10) -> List[Tuple[PatternAggregation, float]]:
        """
        Rank aggregations by semantic similarity to a query.

        Needs an embedding provider; the core never depends on this.
        """
        if self.embeddings is None:
            raise InputError("Semantic ranking needs an embedding provider")
        aggregations = self.store.list_aggregations()
        if not aggregations:
            return []
        texts = [self._describe(a) for a in aggregations]
        matrix = np.array(self.embeddings.embed_batch(texts), dtype=float)
        query_vec = np.array(self.embeddings.embed(query), dtype=float)

        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query_vec)
        norms[norms == 0] = 1.0
        scores = matrix @ query_vec / norms

        order = np.argsort(-scores, kind="stable")[:limit]
        return [(aggregations[i], float(scores[i])) for i in order]

    @staticmethod
    def _describe(aggregation: PatternAggregation) -> str:
        values = " ".join(str(v) for v in aggregation.content.values() if isinstance(v, str))
        return f"{aggregation.pattern_type} {aggregation.category.replace('_', ' ')} {values}"

    def _signatures_for(self, project_id: str) -> Dict[str, PatternAggregation]:
        return {
            a.signature: a
            for a in self.store.list_aggregations()
            if project_id in a.project_ids
        }

    def get_project_similarity(self, project_a: str, project_b: str) -> float:
        """Jaccard similarity of two projects' pattern signatures."""
        self.registry.get_project(project_a)
        self.registry.get_project(project_b)
        a = set(self._signatures_for(project_a))
        b = set(self._signatures_for(project_b))
        if not a and not b:
            return 0.0
        return len(a & b) / len(a | b)

    def get_pattern_diff(self, project_a: str, project_b: str) -> Dict[str, List[Dict[str, Any]]]:
        """Signatures one project has and the other lacks, plus the shared ones."""
        self.registry.get_project(project_a)
        self.registry.get_project(project_b)
        a = self._signatures_for(project_a)
        b = self._signatures_for(project_b)

        def summary(aggregation: PatternAggregation) -> Dict[str, Any]:
            return {
                "signature": aggregation.signature,
                "pattern_type": aggregation.pattern_type,
                "category": aggregation.category,
                "content": aggregation.content,
                "consensus_score": aggregation.consensus_score,
            }

        return {
            "only_in_a": [summary(a[s]) for s in sorted(set(a) - set(b))],
            "only_in_b": [summary(b[s]) for s in sorted(set(b) - set(a))],
            "shared": [summary(a[s]) for s in sorted(set(a) & set(b))],
        }

    def get_statistics(self) -> Dict[str, Any]:
        all_projects = self.registry.list_projects(include_inactive=True)
        active = [p for p in all_projects if p.is_active]
        aggregations = self.store.list_aggregations()
        by_type = Counter(a.pattern_type for a in aggregations)
        return {
            "total_projects": len(all_projects),
            "active_projects": len(active),
            "total_aggregations": len(aggregations),
            "aggregations_by_type": dict(by_type),
            "total_concepts": sum(p.concept_count for p in active),
            "avg_consensus": float(np.mean([a.consensus_score for a in aggregations])) if aggregations else 0.0,
        }
