"""
Global Storage - cross-project registry and pattern aggregations.

Default: SQLite in WAL mode (zero dependencies).

Aggregation rows carry a ``revision`` counter; writers update a row only if
the revision they read is still current (compare-and-swap), so concurrent
syncs of different projects can touch the same signature without losing
each other's occurrences.
"""

import json
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .models import Concept, Occurrence, PatternAggregation, Project

logger = logging.getLogger(__name__)


class GlobalStore(ABC):
    """Abstract base for the global (cross-project) store."""

    @abstractmethod
    def save_project(self, project: Project) -> None:
        pass

    @abstractmethod
    def get_project(self, project_id: str) -> Optional[Project]:
        pass

    @abstractmethod
    def get_project_by_path(self, path: str) -> Optional[Project]:
        pass

    @abstractmethod
    def list_projects(self, active_only: bool = True) -> List[Project]:
        pass

    @abstractmethod
    def advance_checkpoint(self, project_id: str, version: int) -> bool:
        pass

    @abstractmethod
    def touch_sync(self, project_id: str) -> None:
        """Record a sync that found nothing new."""
        pass

    @abstractmethod
    def get_aggregation(self, signature: str) -> Optional[PatternAggregation]:
        pass

    @abstractmethod
    def list_aggregations(self) -> List[PatternAggregation]:
        pass

    @abstractmethod
    def insert_aggregation(self, aggregation: PatternAggregation) -> bool:
        """Insert a new row. False if the signature already exists."""
        pass

    @abstractmethod
    def swap_aggregation(self, aggregation: PatternAggregation, expected_revision: int) -> bool:
        """Replace a row if its revision is still ``expected_revision``."""
        pass

    @abstractmethod
    def delete_aggregation(self, signature: str, expected_revision: int) -> bool:
        pass

    @abstractmethod
    def replace_project_concepts(self, project_id: str, concepts: List[Concept]) -> int:
        """Replace a project's concepts. Returns how many were not present before."""
        pass

    @abstractmethod
    def search_concepts(self, query: str, limit: int = 20, project_id: Optional[str] = None) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    def close(self) -> None:
        pass


class SQLiteGlobalStore(GlobalStore):
    """
    SQLite-based global store.

    Example:
        store = SQLiteGlobalStore("~/.pattern-nexus/global.db")
        for aggregation in store.list_aggregations():
            print(aggregation.signature, aggregation.consensus_score)
    """

    def __init__(self, db_path: str = "~/.pattern-nexus/global.db"):
        self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._local = threading.local()
        self._connections: List[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()
        self._init_db()
        logger.info(f"SQLite global store initialized at {self.db_path}")

    @property
    def _conn(self) -> sqlite3.Connection:
        """Thread-local connection."""
        if not hasattr(self._local, "conn"):
            conn = sqlite3.connect(str(self.db_path), check_same_thread=False, timeout=30.0)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            self._local.conn = conn
            with self._connections_lock:
                self._connections.append(conn)
        return self._local.conn

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._conn:
            self._conn.executescript("""
                CREATE TABLE IF NOT EXISTS projects (
                    id TEXT PRIMARY KEY,
                    path TEXT NOT NULL UNIQUE,
                    name TEXT NOT NULL,
                    primary_language TEXT,
                    frameworks JSON,
                    linked_at TIMESTAMP NOT NULL,
                    last_synced_version INTEGER DEFAULT 0,
                    last_synced_at TIMESTAMP,
                    pattern_count INTEGER DEFAULT 0,
                    concept_count INTEGER DEFAULT 0,
                    is_active INTEGER DEFAULT 1
                );

                CREATE TABLE IF NOT EXISTS aggregations (
                    signature TEXT PRIMARY KEY,
                    pattern_type TEXT NOT NULL,
                    category TEXT NOT NULL,
                    content JSON NOT NULL,
                    occurrences JSON NOT NULL,
                    aggregated_confidence REAL NOT NULL,
                    consensus_score REAL NOT NULL,
                    revision INTEGER NOT NULL,
                    created_at TIMESTAMP NOT NULL,
                    updated_at TIMESTAMP NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_aggregations_category ON aggregations(category);

                CREATE TABLE IF NOT EXISTS global_concepts (
                    project_id TEXT NOT NULL,
                    file_path TEXT NOT NULL,
                    name TEXT NOT NULL,
                    concept_type TEXT NOT NULL,
                    line INTEGER,
                    confidence_score REAL
                );

                CREATE INDEX IF NOT EXISTS idx_global_concepts_project ON global_concepts(project_id);
                CREATE INDEX IF NOT EXISTS idx_global_concepts_name ON global_concepts(name);
            """)

    # =========================================================================
    # Projects
    # =========================================================================

    def _row_to_project(self, row: sqlite3.Row) -> Project:
        return Project(
            id=row["id"],
            path=row["path"],
            name=row["name"],
            primary_language=row["primary_language"],
            frameworks=json.loads(row["frameworks"]) if row["frameworks"] else [],
            linked_at=datetime.fromisoformat(row["linked_at"]),
            last_synced_version=row["last_synced_version"] or 0,
            last_synced_at=datetime.fromisoformat(row["last_synced_at"]) if row["last_synced_at"] else None,
            pattern_count=row["pattern_count"] or 0,
            concept_count=row["concept_count"] or 0,
            is_active=bool(row["is_active"]),
        )

    def save_project(self, project: Project) -> None:
        with self._conn:
            self._conn.execute(
                """
                INSERT INTO projects
                    (id, path, name, primary_language, frameworks, linked_at, last_synced_version,
                     last_synced_at, pattern_count, concept_count, is_active)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    primary_language = excluded.primary_language,
                    frameworks = excluded.frameworks,
                    pattern_count = excluded.pattern_count,
                    concept_count = excluded.concept_count,
                    is_active = excluded.is_active
                """,
                (
                    project.id,
                    project.path,
                    project.name,
                    project.primary_language,
                    json.dumps(project.frameworks),
                    project.linked_at.isoformat(),
                    project.last_synced_version,
                    project.last_synced_at.isoformat() if project.last_synced_at else None,
                    project.pattern_count,
                    project.concept_count,
                    1 if project.is_active else 0,
                ),
            )

    def get_project(self, project_id: str) -> Optional[Project]:
        row = self._conn.execute("SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone()
        return self._row_to_project(row) if row else None

    def get_project_by_path(self, path: str) -> Optional[Project]:
        row = self._conn.execute("SELECT * FROM projects WHERE path = ?", (path,)).fetchone()
        return self._row_to_project(row) if row else None

    def list_projects(self, active_only: bool = True) -> List[Project]:
        sql = "SELECT * FROM projects"
        if active_only:
            sql += " WHERE is_active = 1"
        sql += " ORDER BY linked_at, id"
        return [self._row_to_project(row) for row in self._conn.execute(sql)]

    def advance_checkpoint(self, project_id: str, version: int) -> bool:
        """Move a project's sync checkpoint forward. Never moves it back."""
        with self._conn:
            cursor = self._conn.execute(
                """
                UPDATE projects SET last_synced_version = ?, last_synced_at = ?
                WHERE id = ? AND last_synced_version < ?
                """,
                (version, datetime.now().isoformat(), project_id, version),
            )
        return cursor.rowcount > 0

    def touch_sync(self, project_id: str) -> None:
        with self._conn:
            self._conn.execute(
                "UPDATE projects SET last_synced_at = ? WHERE id = ?",
                (datetime.now().isoformat(), project_id),
            )

    # =========================================================================
    # Aggregations
    # =========================================================================

    def _row_to_aggregation(self, row: sqlite3.Row) -> PatternAggregation:
        return PatternAggregation(
            signature=row["signature"],
            pattern_type=row["pattern_type"],
            category=row["category"],
            content=json.loads(row["content"]),
            occurrences=[Occurrence.from_dict(o) for o in json.loads(row["occurrences"])],
            aggregated_confidence=row["aggregated_confidence"],
            consensus_score=row["consensus_score"],
            revision=row["revision"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    @staticmethod
    def _aggregation_values(aggregation: PatternAggregation) -> Tuple:
        return (
            aggregation.pattern_type,
            aggregation.category,
            json.dumps(aggregation.content, sort_keys=True),
            json.dumps([o.to_dict() for o in aggregation.occurrences]),
            aggregation.aggregated_confidence,
            aggregation.consensus_score,
            aggregation.revision,
            aggregation.created_at.isoformat(),
            aggregation.updated_at.isoformat(),
        )

    def get_aggregation(self, signature: str) -> Optional[PatternAggregation]:
        row = self._conn.execute("SELECT * FROM aggregations WHERE signature = ?", (signature,)).fetchone()
        return self._row_to_aggregation(row) if row else None

    def list_aggregations(self) -> List[PatternAggregation]:
        rows = self._conn.execute("SELECT * FROM aggregations ORDER BY signature")
        return [self._row_to_aggregation(row) for row in rows]

    def insert_aggregation(self, aggregation: PatternAggregation) -> bool:
        with self._conn:
            cursor = self._conn.execute(
                """
                INSERT OR IGNORE INTO aggregations
                    (signature, pattern_type, category, content, occurrences,
                     aggregated_confidence, consensus_score, revision, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (aggregation.signature,) + self._aggregation_values(aggregation),
            )
        return cursor.rowcount > 0

    def swap_aggregation(self, aggregation: PatternAggregation, expected_revision: int) -> bool:
        with self._conn:
            cursor = self._conn.execute(
                """
                UPDATE aggregations SET
                    pattern_type = ?, category = ?, content = ?, occurrences = ?,
                    aggregated_confidence = ?, consensus_score = ?, revision = ?,
                    created_at = ?, updated_at = ?
                WHERE signature = ? AND revision = ?
                """,
                self._aggregation_values(aggregation) + (aggregation.signature, expected_revision),
            )
        return cursor.rowcount > 0

    def delete_aggregation(self, signature: str, expected_revision: int) -> bool:
        with self._conn:
            cursor = self._conn.execute(
                "DELETE FROM aggregations WHERE signature = ? AND revision = ?",
                (signature, expected_revision),
            )
        return cursor.rowcount > 0

    # =========================================================================
    # Concepts
    # =========================================================================

    def replace_project_concepts(self, project_id: str, concepts: List[Concept]) -> int:
        before = {
            (row["file_path"], row["concept_type"], row["name"])
            for row in self._conn.execute(
                "SELECT file_path, concept_type, name FROM global_concepts WHERE project_id = ?",
                (project_id,),
            )
        }
        with self._conn:
            self._conn.execute("DELETE FROM global_concepts WHERE project_id = ?", (project_id,))
            self._conn.executemany(
                """
                INSERT INTO global_concepts (project_id, file_path, name, concept_type, line, confidence_score)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [
                    (project_id, c.file_path, c.name, c.concept_type, c.line, c.confidence_score)
                    for c in concepts
                ],
            )
        after = {(c.file_path, c.concept_type, c.name) for c in concepts}
        return len(after - before)

    def search_concepts(self, query: str, limit: int = 20, project_id: Optional[str] = None) -> List[Dict[str, Any]]:
        sql = """
            SELECT c.*, p.name AS project_name FROM global_concepts c
            JOIN projects p ON p.id = c.project_id
            WHERE p.is_active = 1 AND c.name LIKE ? ESCAPE '\\'
        """
        escaped = query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        params: List[Any] = [f"%{escaped}%"]
        if project_id is not None:
            sql += " AND c.project_id = ?"
            params.append(project_id)
        sql += " ORDER BY LENGTH(c.name), c.name, c.project_id LIMIT ?"
        params.append(limit)
        return [
            {
                "project_id": row["project_id"],
                "project_name": row["project_name"],
                "file_path": row["file_path"],
                "name": row["name"],
                "concept_type": row["concept_type"],
                "line": row["line"],
                "confidence_score": row["confidence_score"],
            }
            for row in self._conn.execute(sql, params)
        ]

    def close(self) -> None:
        """Close every connection opened by this store."""
        with self._connections_lock:
            for conn in self._connections:
                conn.close()
            self._connections.clear()
        self._local = threading.local()


def create_global_store(backend: str = "sqlite", **kwargs) -> GlobalStore:
    """Factory function to create the global store."""
    if backend == "sqlite":
        return SQLiteGlobalStore(**kwargs)
    raise ValueError(f"Unknown global store backend: {backend}")
