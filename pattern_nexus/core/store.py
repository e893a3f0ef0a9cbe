"""
Pattern Store - durable, versioned patterns for one project.

Default: SQLite in WAL mode (zero dependencies).

Layout:
- patterns: current state, one row per pattern id
- evidence: corroboration counts per (pattern, file)
- concepts: extracted concepts per file
- tombstones: removed patterns, so a sync can withdraw them
- deltas: append-only learning log with per-version pattern snapshots
- exceptions: append-only suppression records
- violations: compliance history (only when callers ask for it)

The store has a single writer (the project's learner) and any number of
readers. Every merge runs in one IMMEDIATE transaction guarded by a
compare-and-swap on the store version; readers use snapshot reads, so they
see the store either before or after a merge, never in between.
"""

import json
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional

from ..errors import ConsistencyError, InputError, MergeError, PatternNexusError
from ..patterns.types import Pattern, PatternType
from .models import Concept, LearningDelta, PatternException, PatternViolation

logger = logging.getLogger(__name__)

RESOLUTIONS = ("fixed", "ignored", "pattern_updated")


@dataclass
class MergePlan:
    """
    Every write of one learning delta.

    ``evidence`` and ``concepts`` are per-file replacements: the listed
    files' rows are deleted and rewritten (an empty value clears the file).
    """
    delta: LearningDelta
    upserts: List[Pattern] = field(default_factory=list)
    removals: List[Pattern] = field(default_factory=list)
    evidence: Dict[str, Dict[str, int]] = field(default_factory=dict)
    concepts: Dict[str, List[Concept]] = field(default_factory=dict)
    origin: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Tombstone:
    pattern_id: str
    pattern_type: PatternType
    content: Dict[str, Any]
    version: int
    removed_at: datetime


@dataclass
class StoreSnapshot:
    """A consistent read of patterns and exceptions at one version."""
    version: int
    patterns: List[Pattern]
    exceptions: List[PatternException]


@dataclass
class ChangeSet:
    """Patterns and tombstones newer than a version, read at one store version."""
    version: int
    patterns: List[Pattern]
    removed: List[Tombstone]


class PatternStore(ABC):
    """Abstract base for pattern store backends."""

    @property
    @abstractmethod
    def version(self) -> int:
        """Current store version (0 for an empty store)."""
        pass

    @abstractmethod
    def get_pattern(self, pattern_id: str) -> Optional[Pattern]:
        pass

    @abstractmethod
    def list_patterns(
        self,
        pattern_type: Optional[PatternType] = None,
        language: Optional[str] = None,
        min_frequency: int = 1,
    ) -> List[Pattern]:
        pass

    @abstractmethod
    def patterns_since(self, version: int) -> List[Pattern]:
        """Patterns whose last change is newer than ``version``."""
        pass

    @abstractmethod
    def removed_since(self, version: int) -> List[Tombstone]:
        pass

    @abstractmethod
    def changes_since(self, version: int) -> ChangeSet:
        """patterns_since and removed_since read together, so no merge lands between them."""
        pass

    @abstractmethod
    def evidence_for_files(self, file_paths: Iterable[str]) -> Dict[str, Dict[str, int]]:
        """file -> {pattern_id: count}"""
        pass

    @abstractmethod
    def evidence_for_patterns(self, pattern_ids: Iterable[str]) -> Dict[str, Dict[str, int]]:
        """pattern_id -> {file: count}"""
        pass

    @abstractmethod
    def concepts_for_files(self, file_paths: Iterable[str]) -> Dict[str, List[Concept]]:
        pass

    @abstractmethod
    def list_concepts(self) -> List[Concept]:
        pass

    @abstractmethod
    def commit_merge(self, plan: MergePlan) -> int:
        """Apply a merge atomically. Returns the resulting version."""
        pass

    @abstractmethod
    def get_recent_deltas(self, limit: int = 10) -> List[LearningDelta]:
        pass

    @abstractmethod
    def replay_deltas(self) -> Dict[str, Pattern]:
        """Rebuild the pattern table from the delta log."""
        pass

    @abstractmethod
    def add_exception(self, pattern_id: str, scope_glob: str, reason: str = "") -> PatternException:
        pass

    @abstractmethod
    def list_exceptions(self, pattern_id: Optional[str] = None) -> List[PatternException]:
        pass

    @abstractmethod
    def snapshot(self) -> StoreSnapshot:
        pass

    @abstractmethod
    def close(self) -> None:
        pass


class SQLitePatternStore(PatternStore):
    """
    SQLite-based pattern store.

    Example:
        store = SQLitePatternStore("~/code/app/.pattern-nexus/patterns.db")
        print(store.version, len(store.list_patterns()))
    """

    def __init__(self, db_path: str = "~/.pattern-nexus/patterns.db"):
        self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._local = threading.local()
        self._connections: List[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()
        self._init_db()
        logger.info(f"SQLite pattern store initialized at {self.db_path}")

    @property
    def _conn(self) -> sqlite3.Connection:
        """Thread-local connection in autocommit mode; transactions are explicit."""
        if not hasattr(self._local, "conn"):
            conn = sqlite3.connect(
                str(self.db_path),
                check_same_thread=False,
                isolation_level=None,
                timeout=30.0,
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            self._local.conn = conn
            with self._connections_lock:
                self._connections.append(conn)
        return self._local.conn

    @contextmanager
    def _transaction(self, mode: str = "IMMEDIATE") -> Iterator[sqlite3.Connection]:
        conn = self._conn
        conn.execute(f"BEGIN {mode}")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        else:
            conn.execute("COMMIT")

    def _init_db(self) -> None:
        """Initialize database schema."""
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS meta (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS patterns (
                id TEXT PRIMARY KEY,
                pattern_type TEXT NOT NULL,
                category TEXT NOT NULL,
                language TEXT,
                frequency INTEGER NOT NULL,
                confidence REAL NOT NULL,
                version INTEGER NOT NULL,
                data JSON NOT NULL,
                last_seen TIMESTAMP
            );

            CREATE INDEX IF NOT EXISTS idx_patterns_version ON patterns(version);
            CREATE INDEX IF NOT EXISTS idx_patterns_type ON patterns(pattern_type, category);

            CREATE TABLE IF NOT EXISTS evidence (
                pattern_id TEXT NOT NULL,
                file_path TEXT NOT NULL,
                count INTEGER NOT NULL,
                PRIMARY KEY (pattern_id, file_path)
            );

            CREATE INDEX IF NOT EXISTS idx_evidence_file ON evidence(file_path);

            CREATE TABLE IF NOT EXISTS concepts (
                file_path TEXT NOT NULL,
                name TEXT NOT NULL,
                concept_type TEXT NOT NULL,
                confidence_score REAL,
                line INTEGER,
                col INTEGER,
                metadata JSON
            );

            CREATE INDEX IF NOT EXISTS idx_concepts_file ON concepts(file_path);

            CREATE TABLE IF NOT EXISTS tombstones (
                pattern_id TEXT PRIMARY KEY,
                pattern_type TEXT NOT NULL,
                content JSON NOT NULL,
                version INTEGER NOT NULL,
                removed_at TIMESTAMP NOT NULL
            );

            CREATE TABLE IF NOT EXISTS deltas (
                id TEXT PRIMARY KEY,
                preceding_version INTEGER NOT NULL,
                resulting_version INTEGER NOT NULL UNIQUE,
                trigger TEXT NOT NULL,
                data JSON NOT NULL,
                origin JSON,
                changes JSON NOT NULL,
                applied_at TIMESTAMP NOT NULL
            );

            CREATE TABLE IF NOT EXISTS exceptions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                pattern_id TEXT NOT NULL,
                scope_glob TEXT NOT NULL,
                reason TEXT,
                created_at TIMESTAMP NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_exceptions_pattern ON exceptions(pattern_id);

            CREATE TABLE IF NOT EXISTS violations (
                id TEXT PRIMARY KEY,
                pattern_id TEXT NOT NULL,
                file_path TEXT NOT NULL,
                severity TEXT NOT NULL,
                message TEXT NOT NULL,
                start_line INTEGER,
                end_line INTEGER,
                data JSON NOT NULL,
                detected_at TIMESTAMP NOT NULL,
                resolved INTEGER DEFAULT 0,
                resolution TEXT,
                resolved_at TIMESTAMP
            );

            CREATE INDEX IF NOT EXISTS idx_violations_file ON violations(file_path);

            INSERT OR IGNORE INTO meta (key, value) VALUES ('version', '0');
        """)

    # =========================================================================
    # Reads
    # =========================================================================

    @property
    def version(self) -> int:
        return self._read_version(self._conn)

    @staticmethod
    def _read_version(conn: sqlite3.Connection) -> int:
        row = conn.execute("SELECT value FROM meta WHERE key = 'version'").fetchone()
        return int(row["value"]) if row else 0

    def _row_to_pattern(self, row: sqlite3.Row) -> Optional[Pattern]:
        try:
            return Pattern.from_dict(json.loads(row["data"]))
        except (KeyError, ValueError, TypeError) as e:
            logger.warning(f"Failed to load pattern {row['id']}: {e}")
            return None

    def get_pattern(self, pattern_id: str) -> Optional[Pattern]:
        row = self._conn.execute("SELECT id, data FROM patterns WHERE id = ?", (pattern_id,)).fetchone()
        return self._row_to_pattern(row) if row else None

    def list_patterns(
        self,
        pattern_type: Optional[PatternType] = None,
        language: Optional[str] = None,
        min_frequency: int = 1,
    ) -> List[Pattern]:
        return self._list_patterns(self._conn, pattern_type, language, min_frequency)

    def _list_patterns(
        self,
        conn: sqlite3.Connection,
        pattern_type: Optional[PatternType] = None,
        language: Optional[str] = None,
        min_frequency: int = 1,
    ) -> List[Pattern]:
        sql = "SELECT id, data FROM patterns WHERE frequency >= ?"
        params: List[Any] = [min_frequency]
        if pattern_type is not None:
            sql += " AND pattern_type = ?"
            params.append(pattern_type.value)
        if language is not None:
            sql += " AND (language = ? OR language IS NULL)"
            params.append(language)
        sql += " ORDER BY frequency DESC, confidence DESC, id"
        patterns = [self._row_to_pattern(row) for row in conn.execute(sql, params)]
        return [p for p in patterns if p is not None]

    def patterns_since(self, version: int) -> List[Pattern]:
        return self._patterns_since(self._conn, version)

    def _patterns_since(self, conn: sqlite3.Connection, version: int) -> List[Pattern]:
        rows = conn.execute(
            "SELECT id, data FROM patterns WHERE version > ? ORDER BY version, id",
            (version,),
        )
        patterns = [self._row_to_pattern(row) for row in rows]
        return [p for p in patterns if p is not None]

    def removed_since(self, version: int) -> List[Tombstone]:
        return self._removed_since(self._conn, version)

    def changes_since(self, version: int) -> ChangeSet:
        with self._transaction("DEFERRED") as conn:
            current = self._read_version(conn)
            patterns = self._patterns_since(conn, version)
            removed = self._removed_since(conn, version)
        return ChangeSet(version=current, patterns=patterns, removed=removed)

    @staticmethod
    def _removed_since(conn: sqlite3.Connection, version: int) -> List[Tombstone]:
        rows = conn.execute(
            "SELECT * FROM tombstones WHERE version > ? ORDER BY version, pattern_id",
            (version,),
        )
        return [
            Tombstone(
                pattern_id=row["pattern_id"],
                pattern_type=PatternType(row["pattern_type"]),
                content=json.loads(row["content"]),
                version=row["version"],
                removed_at=datetime.fromisoformat(row["removed_at"]),
            )
            for row in rows
        ]

    def evidence_for_files(self, file_paths: Iterable[str]) -> Dict[str, Dict[str, int]]:
        result: Dict[str, Dict[str, int]] = {}
        for file_path in set(file_paths):
            rows = self._conn.execute(
                "SELECT pattern_id, count FROM evidence WHERE file_path = ?", (file_path,)
            )
            result[file_path] = {row["pattern_id"]: row["count"] for row in rows}
        return result

    def evidence_for_patterns(self, pattern_ids: Iterable[str]) -> Dict[str, Dict[str, int]]:
        result: Dict[str, Dict[str, int]] = {}
        for pattern_id in set(pattern_ids):
            rows = self._conn.execute(
                "SELECT file_path, count FROM evidence WHERE pattern_id = ?", (pattern_id,)
            )
            result[pattern_id] = {row["file_path"]: row["count"] for row in rows}
        return result

    def _row_to_concept(self, row: sqlite3.Row) -> Concept:
        return Concept(
            name=row["name"],
            concept_type=row["concept_type"],
            confidence_score=row["confidence_score"],
            line=row["line"],
            column=row["col"],
            file_path=row["file_path"],
            metadata=json.loads(row["metadata"]) if row["metadata"] else {},
        )

    def concepts_for_files(self, file_paths: Iterable[str]) -> Dict[str, List[Concept]]:
        result: Dict[str, List[Concept]] = {}
        for file_path in set(file_paths):
            rows = self._conn.execute(
                "SELECT * FROM concepts WHERE file_path = ? ORDER BY line, name", (file_path,)
            )
            result[file_path] = [self._row_to_concept(row) for row in rows]
        return result

    def list_concepts(self) -> List[Concept]:
        rows = self._conn.execute("SELECT * FROM concepts ORDER BY file_path, line, name")
        return [self._row_to_concept(row) for row in rows]

    def pattern_count(self) -> int:
        return self._conn.execute("SELECT COUNT(*) AS n FROM patterns").fetchone()["n"]

    def concept_count(self) -> int:
        return self._conn.execute("SELECT COUNT(*) AS n FROM concepts").fetchone()["n"]

    def snapshot(self) -> StoreSnapshot:
        """Read patterns and exceptions inside one read transaction."""
        with self._transaction("DEFERRED") as conn:
            version = self._read_version(conn)
            patterns = self._list_patterns(conn)
            exceptions = self._list_exceptions(conn)
        return StoreSnapshot(version=version, patterns=patterns, exceptions=exceptions)

    # =========================================================================
    # Merge
    # =========================================================================

    def commit_merge(self, plan: MergePlan) -> int:
        delta = plan.delta
        if delta.resulting_version != delta.preceding_version + 1:
            raise ConsistencyError(
                f"Delta must advance the version by one "
                f"({delta.preceding_version} -> {delta.resulting_version})"
            )
        for pattern in plan.upserts:
            if pattern.version != delta.resulting_version:
                raise ConsistencyError(
                    f"Pattern {pattern.id} carries version {pattern.version}, "
                    f"expected {delta.resulting_version}"
                )

        try:
            with self._transaction("IMMEDIATE") as conn:
                current = self._read_version(conn)
                if current != delta.preceding_version:
                    raise ConsistencyError(
                        f"Store is at version {current}, merge expected {delta.preceding_version}",
                        details={"current": current, "expected": delta.preceding_version},
                    )
                self._write_concepts(conn, plan.concepts)
                self._write_evidence(conn, plan.evidence)
                self._write_patterns(conn, plan.upserts)
                self._write_removals(conn, plan.removals, delta.resulting_version)
                conn.execute(
                    "UPDATE meta SET value = ? WHERE key = 'version'",
                    (str(delta.resulting_version),),
                )
                self._insert_delta(conn, plan)
        except PatternNexusError:
            raise
        except Exception as e:
            logger.error(f"Merge to version {delta.resulting_version} failed, rolled back: {e}")
            raise MergeError(
                f"Merge failed and was rolled back: {e}",
                details={"preceding_version": delta.preceding_version},
            ) from e

        logger.debug(
            f"Committed delta {delta.id}: v{delta.preceding_version} -> v{delta.resulting_version}"
        )
        return delta.resulting_version

    def _write_concepts(self, conn: sqlite3.Connection, concepts: Dict[str, List[Concept]]) -> None:
        for file_path, file_concepts in concepts.items():
            conn.execute("DELETE FROM concepts WHERE file_path = ?", (file_path,))
            conn.executemany(
                """
                INSERT INTO concepts (file_path, name, concept_type, confidence_score, line, col, metadata)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        file_path, c.name, c.concept_type, c.confidence_score,
                        c.line, c.column, json.dumps(c.metadata),
                    )
                    for c in file_concepts
                ],
            )

    def _write_evidence(self, conn: sqlite3.Connection, evidence: Dict[str, Dict[str, int]]) -> None:
        for file_path, counts in evidence.items():
            conn.execute("DELETE FROM evidence WHERE file_path = ?", (file_path,))
            conn.executemany(
                "INSERT INTO evidence (pattern_id, file_path, count) VALUES (?, ?, ?)",
                [(pid, file_path, count) for pid, count in counts.items() if count > 0],
            )

    def _write_patterns(self, conn: sqlite3.Connection, patterns: List[Pattern]) -> None:
        for pattern in patterns:
            conn.execute(
                """
                INSERT OR REPLACE INTO patterns
                    (id, pattern_type, category, language, frequency, confidence, version, data, last_seen)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    pattern.id,
                    pattern.pattern_type.value,
                    pattern.category,
                    pattern.language,
                    pattern.frequency,
                    pattern.confidence,
                    pattern.version,
                    json.dumps(pattern.to_dict()),
                    pattern.last_seen.isoformat(),
                ),
            )
            conn.execute("DELETE FROM tombstones WHERE pattern_id = ?", (pattern.id,))

    def _write_removals(self, conn: sqlite3.Connection, removals: List[Pattern], version: int) -> None:
        now = datetime.now().isoformat()
        for pattern in removals:
            conn.execute("DELETE FROM patterns WHERE id = ?", (pattern.id,))
            conn.execute("DELETE FROM evidence WHERE pattern_id = ?", (pattern.id,))
            conn.execute(
                """
                INSERT OR REPLACE INTO tombstones (pattern_id, pattern_type, content, version, removed_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    pattern.id,
                    pattern.pattern_type.value,
                    json.dumps(pattern.content.to_dict()),
                    version,
                    now,
                ),
            )

    def _insert_delta(self, conn: sqlite3.Connection, plan: MergePlan) -> None:
        delta = plan.delta
        changes = {
            "upserted": [p.to_dict() for p in plan.upserts],
            "removed": [p.id for p in plan.removals],
        }
        conn.execute(
            """
            INSERT INTO deltas
                (id, preceding_version, resulting_version, trigger, data, origin, changes, applied_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                delta.id,
                delta.preceding_version,
                delta.resulting_version,
                delta.trigger.value,
                json.dumps(delta.to_dict()),
                json.dumps(plan.origin),
                json.dumps(changes),
                delta.applied_at.isoformat(),
            ),
        )

    # =========================================================================
    # Delta log
    # =========================================================================

    def get_recent_deltas(self, limit: int = 10) -> List[LearningDelta]:
        rows = self._conn.execute(
            "SELECT data FROM deltas ORDER BY resulting_version DESC LIMIT ?", (limit,)
        )
        return [LearningDelta.from_dict(json.loads(row["data"])) for row in rows]

    def list_deltas(self) -> List[LearningDelta]:
        rows = self._conn.execute("SELECT data FROM deltas ORDER BY resulting_version")
        return [LearningDelta.from_dict(json.loads(row["data"])) for row in rows]

    def replay_deltas(self) -> Dict[str, Pattern]:
        state: Dict[str, Dict[str, Any]] = {}
        expected = 0
        for row in self._conn.execute(
            "SELECT preceding_version, resulting_version, changes FROM deltas ORDER BY resulting_version"
        ):
            if row["preceding_version"] != expected:
                raise ConsistencyError(
                    f"Delta log gap: expected v{expected}, found v{row['preceding_version']}"
                )
            changes = json.loads(row["changes"])
            for data in changes.get("upserted", []):
                state[data["id"]] = data
            for pattern_id in changes.get("removed", []):
                state.pop(pattern_id, None)
            expected = row["resulting_version"]
        return {pid: Pattern.from_dict(data) for pid, data in state.items()}

    def get_statistics(self) -> Dict[str, Any]:
        deltas = self.list_deltas()
        by_type: Dict[str, int] = {}
        for row in self._conn.execute(
            "SELECT pattern_type, COUNT(*) AS n FROM patterns GROUP BY pattern_type"
        ):
            by_type[row["pattern_type"]] = row["n"]
        total_duration = sum(d.duration_ms for d in deltas)
        return {
            "version": self.version,
            "patterns": self.pattern_count(),
            "patterns_by_type": by_type,
            "concepts": self.concept_count(),
            "deltas": len(deltas),
            "files_processed": sum(len(d.files_touched) for d in deltas),
            "avg_duration_ms": (total_duration / len(deltas)) if deltas else 0.0,
            "degraded_deltas": sum(1 for d in deltas if d.partial_degradation),
            "last_applied_at": deltas[-1].applied_at.isoformat() if deltas else None,
        }

    # =========================================================================
    # Exceptions
    # =========================================================================

    def add_exception(self, pattern_id: str, scope_glob: str, reason: str = "") -> PatternException:
        created_at = datetime.now()
        with self._transaction() as conn:
            cursor = conn.execute(
                "INSERT INTO exceptions (pattern_id, scope_glob, reason, created_at) VALUES (?, ?, ?, ?)",
                (pattern_id, scope_glob, reason, created_at.isoformat()),
            )
            exception_id = cursor.lastrowid
        logger.info(f"Added exception for {pattern_id} on '{scope_glob}'")
        return PatternException(
            pattern_id=pattern_id,
            scope_glob=scope_glob,
            reason=reason,
            created_at=created_at,
            id=exception_id,
        )

    def list_exceptions(self, pattern_id: Optional[str] = None) -> List[PatternException]:
        return self._list_exceptions(self._conn, pattern_id)

    @staticmethod
    def _list_exceptions(conn: sqlite3.Connection, pattern_id: Optional[str] = None) -> List[PatternException]:
        sql = "SELECT * FROM exceptions"
        params: List[Any] = []
        if pattern_id is not None:
            sql += " WHERE pattern_id = ?"
            params.append(pattern_id)
        sql += " ORDER BY id"
        return [
            PatternException(
                id=row["id"],
                pattern_id=row["pattern_id"],
                scope_glob=row["scope_glob"],
                reason=row["reason"] or "",
                created_at=datetime.fromisoformat(row["created_at"]),
            )
            for row in conn.execute(sql, params)
        ]

    # =========================================================================
    # Violation history
    # =========================================================================

    def record_violations(self, violations: List[PatternViolation]) -> int:
        if not violations:
            return 0
        now = datetime.now().isoformat()
        with self._transaction() as conn:
            conn.executemany(
                """
                INSERT OR REPLACE INTO violations
                    (id, pattern_id, file_path, severity, message, start_line, end_line, data, detected_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        v.id, v.pattern_id, v.file_path, v.severity.value, v.message,
                        v.start_line, v.end_line, json.dumps(v.to_dict()), now,
                    )
                    for v in violations
                ],
            )
        return len(violations)

    def get_violation_history(
        self,
        file_path: Optional[str] = None,
        pattern_id: Optional[str] = None,
        include_resolved: bool = False,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        sql = "SELECT * FROM violations WHERE 1 = 1"
        params: List[Any] = []
        if file_path is not None:
            sql += " AND file_path = ?"
            params.append(file_path)
        if pattern_id is not None:
            sql += " AND pattern_id = ?"
            params.append(pattern_id)
        if not include_resolved:
            sql += " AND resolved = 0"
        sql += " ORDER BY detected_at DESC, id LIMIT ?"
        params.append(limit)

        history = []
        for row in self._conn.execute(sql, params):
            record = json.loads(row["data"])
            record["detected_at"] = row["detected_at"]
            record["resolved"] = bool(row["resolved"])
            record["resolution"] = row["resolution"]
            record["resolved_at"] = row["resolved_at"]
            history.append(record)
        return history

    def resolve_violation(self, violation_id: str, resolution: str) -> bool:
        if resolution not in RESOLUTIONS:
            raise InputError(f"Resolution must be one of {list(RESOLUTIONS)}, got {resolution!r}")
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE violations SET resolved = 1, resolution = ?, resolved_at = ? WHERE id = ?",
                (resolution, datetime.now().isoformat(), violation_id),
            )
        return cursor.rowcount > 0

    # =========================================================================
    # Export
    # =========================================================================

    def export_patterns(self, output_path: str, min_confidence: float = 0.0) -> int:
        """
        Export patterns to a JSON file.

        Args:
            output_path: Path to output file
            min_confidence: Only export patterns at or above this confidence

        Returns:
            Number of patterns exported
        """
        patterns = [p.to_dict() for p in self.list_patterns() if p.confidence >= min_confidence]
        with open(output_path, "w") as f:
            json.dump({
                "patterns": patterns,
                "version": self.version,
                "exported_at": datetime.now().isoformat(),
                "count": len(patterns),
            }, f, indent=2)
        return len(patterns)

    def close(self) -> None:
        """Close every connection opened by this store."""
        with self._connections_lock:
            for conn in self._connections:
                conn.close()
            self._connections.clear()
        self._local = threading.local()


def create_pattern_store(backend: str = "sqlite", **kwargs) -> PatternStore:
    """Factory function to create a pattern store."""
    if backend == "sqlite":
        return SQLitePatternStore(**kwargs)
    raise ValueError(f"Unknown pattern store backend: {backend}")
