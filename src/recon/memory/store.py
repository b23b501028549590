"""Durable storage for reconciliation runs, recommendations, and checkpoints."""

from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import shutil
import sqlite3
import tempfile
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Set, Tuple

from .schema import (
    CLOSED_TEST_STATUSES,
    Atom,
    AtomRecommendation,
    Checkpoint,
    Molecule,
    MoleculeRecommendation,
    RecommendationStatus,
    ReconciliationRun,
    RunMode,
    RunStatus,
    TestAtomLink,
    TestRecord,
    TestRecordStatus,
    utc_now,
)

DEFAULT_DB_PATH = Path("data/recon.sqlite")
LOGGER = logging.getLogger(__name__)

_ATOM_ID_PATTERN = re.compile(r"^IA-(\d+)$")
_MOLECULE_ID_PATTERN = re.compile(r"^M-(\d+)$")

_RUN_UPDATABLE_FIELDS = {
    "status",
    "summary",
    "patch_ops",
    "errors",
    "current_commit",
    "completed_at",
    "options",
}


class StoreError(RuntimeError):
    """Raised when a persistence operation cannot be completed."""


class PatchApplicationError(StoreError):
    """Raised when accepted recommendations cannot be applied as a unit."""


@dataclass(slots=True)
class ApplyResult:
    """Outcome of applying a run's accepted recommendations."""

    run_id: str
    atom_ids: List[str] = field(default_factory=list)
    molecule_ids: List[str] = field(default_factory=list)
    links_created: int = 0


def _as_iso(timestamp: datetime) -> str:
    """Serialise a timestamp to a timezone-aware ISO 8601 string."""
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(timezone.utc).isoformat()


def _from_iso(value: str) -> datetime:
    """Parse an ISO 8601 timestamp produced by `_as_iso`."""
    return datetime.fromisoformat(value)


def _optional_iso(timestamp: Optional[datetime]) -> Optional[str]:
    return _as_iso(timestamp) if timestamp is not None else None


def _optional_from_iso(value: Optional[str]) -> Optional[datetime]:
    return _from_iso(value) if value else None


def _dump_json(data: Any, *, default: Any) -> str:
    """Convert arbitrary JSON-like payloads into a persisted string."""
    if data is None:
        serialisable = default
    else:
        if isinstance(data, set):
            serialisable = sorted(data)
        else:
            serialisable = data
    return json.dumps(serialisable)


def _load_json(value: Optional[str], *, default: Any) -> Any:
    """Decode JSON columns while falling back to the provided default."""
    if not value:
        return default
    data = json.loads(value)
    if data is None:
        return default
    return data


def new_record_id() -> str:
    """Mint a durable identifier for a stored row."""
    return str(uuid.uuid4())


class ReconciliationStore:
    """SQLite-backed persistence for reconciliation runs."""

    @staticmethod
    def _is_writable(path: Path) -> bool:
        parent = path.parent
        try:
            parent.mkdir(parents=True, exist_ok=True)
        except OSError:
            return False
        if path.exists():
            return os.access(path, os.W_OK)
        return os.access(parent, os.W_OK)

    @staticmethod
    def _fallback_db_path(source: Path) -> Path:
        digest = hashlib.sha1(source.as_posix().encode("utf-8")).hexdigest()[:12]
        fallback_dir = Path(tempfile.gettempdir()) / "recon" / "db" / digest
        fallback_dir.mkdir(parents=True, exist_ok=True)
        return fallback_dir / source.name

    @classmethod
    def _resolve_db_path(cls, requested: Path) -> Path:
        resolved = requested.resolve()
        if cls._is_writable(resolved):
            return resolved
        fallback = cls._fallback_db_path(resolved)
        if not fallback.exists():
            if resolved.exists() and os.access(resolved, os.R_OK):
                try:
                    shutil.copy2(resolved, fallback)
                except OSError:
                    fallback.touch(exist_ok=True)
            else:
                fallback.touch(exist_ok=True)
        if not cls._is_writable(fallback):
            raise OSError(f"Unable to locate writable database path (attempted {requested})")
        return fallback

    def __init__(self, db_path: Path | str = DEFAULT_DB_PATH) -> None:
        requested_path = Path(db_path)
        self.db_path = self._resolve_db_path(requested_path)
        if self.db_path != requested_path.resolve():
            LOGGER.warning(
                "Database path %s is not writable; using fallback %s",
                requested_path,
                self.db_path,
            )
        self._conn: Optional[sqlite3.Connection] = self._open_connection()
        self._bootstrap()

    def close(self) -> None:
        if getattr(self, "_conn", None) is not None:
            try:
                self._conn.close()
            finally:
                self._conn = None

    def __enter__(self) -> "ReconciliationStore":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def _open_connection(self) -> sqlite3.Connection:
        connection = sqlite3.connect(str(self.db_path))
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON")
        return connection

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "ReconciliationStore":
        paths = config.get("paths") or {}
        db_path = paths.get("db_path")
        if db_path:
            return cls(Path(db_path))

        data_path = paths.get("data") or "data"
        return cls(Path(data_path) / "recon.sqlite")

    def _bootstrap(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS runs (
                id TEXT PRIMARY KEY,
                run_key TEXT NOT NULL UNIQUE,
                mode TEXT NOT NULL,
                root_directory TEXT NOT NULL,
                baseline_run_key TEXT,
                baseline_commit TEXT,
                current_commit TEXT,
                options TEXT NOT NULL,
                status TEXT NOT NULL,
                summary TEXT NOT NULL,
                patch_ops TEXT NOT NULL,
                errors TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                completed_at TEXT
            );
            CREATE INDEX IF NOT EXISTS idx_runs_status
                ON runs(status, created_at);

            CREATE TABLE IF NOT EXISTS atom_recommendations (
                id TEXT PRIMARY KEY,
                run_id TEXT NOT NULL,
                temp_id TEXT NOT NULL,
                description TEXT NOT NULL,
                category TEXT NOT NULL,
                confidence REAL NOT NULL DEFAULT 0,
                quality_score REAL,
                observable_outcomes TEXT NOT NULL,
                reasoning TEXT NOT NULL,
                ambiguity_reasons TEXT NOT NULL,
                source_test_file TEXT NOT NULL,
                source_test_name TEXT NOT NULL,
                source_test_line INTEGER NOT NULL DEFAULT 0,
                status TEXT NOT NULL,
                atom_id TEXT,
                resolved_by TEXT,
                resolution_note TEXT,
                resolved_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                UNIQUE(run_id, temp_id),
                FOREIGN KEY(run_id) REFERENCES runs(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS molecule_recommendations (
                id TEXT PRIMARY KEY,
                run_id TEXT NOT NULL,
                temp_id TEXT NOT NULL,
                name TEXT NOT NULL,
                description TEXT NOT NULL,
                atom_temp_ids TEXT NOT NULL,
                atom_recommendation_ids TEXT NOT NULL,
                confidence REAL NOT NULL DEFAULT 0,
                reasoning TEXT NOT NULL,
                status TEXT NOT NULL,
                molecule_id TEXT,
                resolved_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                UNIQUE(run_id, temp_id),
                FOREIGN KEY(run_id) REFERENCES runs(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS test_records (
                id TEXT PRIMARY KEY,
                run_id TEXT NOT NULL,
                file_path TEXT NOT NULL,
                test_name TEXT NOT NULL,
                line_number INTEGER NOT NULL DEFAULT 0,
                content_hash TEXT,
                status TEXT NOT NULL,
                atom_recommendation_id TEXT,
                had_atom_annotation INTEGER NOT NULL DEFAULT 0,
                is_delta_change INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                UNIQUE(run_id, file_path, test_name),
                FOREIGN KEY(run_id) REFERENCES runs(id) ON DELETE CASCADE,
                FOREIGN KEY(atom_recommendation_id)
                    REFERENCES atom_recommendations(id) ON DELETE SET NULL
            );
            CREATE INDEX IF NOT EXISTS idx_test_records_file_status
                ON test_records(file_path, status);

            CREATE TABLE IF NOT EXISTS atoms (
                id TEXT PRIMARY KEY,
                description TEXT NOT NULL,
                category TEXT NOT NULL,
                observable_outcomes TEXT NOT NULL,
                confidence REAL NOT NULL DEFAULT 0,
                quality_score REAL,
                source_run_id TEXT,
                source_recommendation_id TEXT,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS molecules (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                description TEXT NOT NULL,
                atom_ids TEXT NOT NULL,
                source_recommendation_id TEXT,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS test_atom_links (
                id TEXT PRIMARY KEY,
                atom_id TEXT NOT NULL,
                file_path TEXT NOT NULL,
                test_name TEXT NOT NULL,
                line_number INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                UNIQUE(atom_id, file_path, test_name),
                FOREIGN KEY(atom_id) REFERENCES atoms(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS checkpoints (
                id TEXT PRIMARY KEY,
                run_key TEXT NOT NULL UNIQUE,
                phase TEXT NOT NULL,
                payload TEXT NOT NULL,
                created_at TEXT NOT NULL
            );
            """
        )
        self._conn.commit()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        try:
            yield self._conn
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise

    # Run operations ------------------------------------------------------------------
    def create_run_with_records(
        self,
        run: ReconciliationRun,
        atoms: Sequence[AtomRecommendation],
        molecules: Sequence[MoleculeRecommendation],
        tests: Sequence[TestRecord],
    ) -> ReconciliationRun:
        """Insert a run together with its recommendations and test records.

        Everything is written in one transaction: either the whole record set
        exists afterwards or none of it does.
        """
        now = utc_now()
        record = run.model_copy(update={"updated_at": now})
        try:
            with self._transaction():
                self._insert_run(record)
                if atoms:
                    self._insert_atom_recommendations(
                        [atom.model_copy(update={"updated_at": now}) for atom in atoms]
                    )
                if molecules:
                    self._insert_molecule_recommendations(
                        [molecule.model_copy(update={"updated_at": now}) for molecule in molecules]
                    )
                if tests:
                    self._insert_test_records(
                        [test.model_copy(update={"updated_at": now}) for test in tests]
                    )
        except sqlite3.IntegrityError as error:
            raise StoreError(f"Failed to save run {record.run_key}: {error}") from error
        return record

    def _insert_run(self, record: ReconciliationRun) -> None:
        self._conn.execute(
            """
            INSERT INTO runs (
                id, run_key, mode, root_directory, baseline_run_key, baseline_commit,
                current_commit, options, status, summary, patch_ops, errors,
                created_at, updated_at, completed_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.id,
                record.run_key,
                record.mode.value,
                record.root_directory,
                record.baseline_run_key,
                record.baseline_commit,
                record.current_commit,
                _dump_json(record.options, default={}),
                record.status.value,
                _dump_json(record.summary, default={}),
                _dump_json(record.patch_ops, default=[]),
                _dump_json(record.errors, default=[]),
                _as_iso(record.created_at),
                _as_iso(record.updated_at),
                _optional_iso(record.completed_at),
            ),
        )

    def update_run(self, run_id: str, **changes: Any) -> ReconciliationRun:
        """Update selected columns of an existing run and return the stored row."""
        unknown = set(changes) - _RUN_UPDATABLE_FIELDS
        if unknown:
            raise StoreError(f"Cannot update run fields: {', '.join(sorted(unknown))}")
        if self.get_run(run_id) is None:
            raise StoreError(f"Run {run_id} does not exist")

        assignments: List[str] = []
        params: List[Any] = []
        for name, value in changes.items():
            assignments.append(f"{name} = ?")
            if name == "status":
                params.append(RunStatus(value).value)
            elif name == "completed_at":
                params.append(_optional_iso(value))
            elif name in {"summary", "options"}:
                params.append(_dump_json(value, default={}))
            elif name in {"patch_ops", "errors"}:
                params.append(_dump_json(value, default=[]))
            else:
                params.append(value)
        assignments.append("updated_at = ?")
        params.append(_as_iso(utc_now()))
        params.append(run_id)

        with self._transaction():
            self._conn.execute(
                f"UPDATE runs SET {', '.join(assignments)} WHERE id = ?",
                params,
            )
        updated = self.get_run(run_id)
        assert updated is not None
        return updated

    def get_run(self, run_id: str) -> Optional[ReconciliationRun]:
        row = self._conn.execute("SELECT * FROM runs WHERE id = ?", (run_id,)).fetchone()
        if not row:
            return None
        return self._row_to_run(row)

    def get_run_by_key(self, run_key: str) -> Optional[ReconciliationRun]:
        row = self._conn.execute("SELECT * FROM runs WHERE run_key = ?", (run_key,)).fetchone()
        if not row:
            return None
        return self._row_to_run(row)

    def list_runs(
        self,
        *,
        statuses: Optional[Sequence[RunStatus]] = None,
        limit: Optional[int] = None,
    ) -> List[ReconciliationRun]:
        query = "SELECT * FROM runs"
        params: List[Any] = []
        if statuses:
            placeholders = ",".join("?" for _ in statuses)
            query += f" WHERE status IN ({placeholders})"
            params.extend(RunStatus(status).value for status in statuses)
        query += " ORDER BY created_at DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        cursor = self._conn.execute(query, params)
        return [self._row_to_run(row) for row in cursor.fetchall()]

    # Atom recommendation operations --------------------------------------------------
    def _insert_atom_recommendations(self, records: Sequence[AtomRecommendation]) -> None:
        self._conn.executemany(
            """
            INSERT INTO atom_recommendations (
                id, run_id, temp_id, description, category, confidence, quality_score,
                observable_outcomes, reasoning, ambiguity_reasons, source_test_file,
                source_test_name, source_test_line, status, atom_id, resolved_by,
                resolution_note, resolved_at, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    record.id,
                    record.run_id,
                    record.temp_id,
                    record.description,
                    record.category,
                    record.confidence,
                    record.quality_score,
                    _dump_json(record.observable_outcomes, default=[]),
                    record.reasoning,
                    _dump_json(record.ambiguity_reasons, default=[]),
                    record.source_test_file,
                    record.source_test_name,
                    record.source_test_line,
                    record.status.value,
                    record.atom_id,
                    record.resolved_by,
                    record.resolution_note,
                    _optional_iso(record.resolved_at),
                    _as_iso(record.created_at),
                    _as_iso(record.updated_at),
                )
                for record in records
            ],
        )

    def list_atom_recommendations(
        self,
        run_id: str,
        *,
        statuses: Optional[Sequence[RecommendationStatus]] = None,
    ) -> List[AtomRecommendation]:
        query = "SELECT * FROM atom_recommendations WHERE run_id = ?"
        params: List[Any] = [run_id]
        if statuses:
            placeholders = ",".join("?" for _ in statuses)
            query += f" AND status IN ({placeholders})"
            params.extend(RecommendationStatus(status).value for status in statuses)
        query += " ORDER BY created_at ASC, temp_id ASC"
        cursor = self._conn.execute(query, params)
        return [self._row_to_atom_recommendation(row) for row in cursor.fetchall()]

    def update_atom_recommendation(self, recommendation_id: str, **changes: Any) -> None:
        """Update quality/status columns of an atom recommendation in place."""
        allowed = {"quality_score", "status", "description", "resolution_note", "resolved_by"}
        unknown = set(changes) - allowed
        if unknown:
            raise StoreError(f"Cannot update recommendation fields: {', '.join(sorted(unknown))}")
        assignments: List[str] = []
        params: List[Any] = []
        for name, value in changes.items():
            assignments.append(f"{name} = ?")
            params.append(RecommendationStatus(value).value if name == "status" else value)
        if "status" in changes:
            assignments.append("resolved_at = ?")
            status = RecommendationStatus(changes["status"])
            params.append(_as_iso(utc_now()) if status != RecommendationStatus.PENDING else None)
        assignments.append("updated_at = ?")
        params.append(_as_iso(utc_now()))
        params.append(recommendation_id)
        with self._transaction():
            self._conn.execute(
                f"UPDATE atom_recommendations SET {', '.join(assignments)} WHERE id = ?",
                params,
            )

    def resolve_atom_recommendation(
        self,
        run_id: str,
        temp_id: str,
        status: RecommendationStatus,
        *,
        resolved_by: Optional[str] = None,
        note: Optional[str] = None,
    ) -> AtomRecommendation:
        """Accept or reject a recommendation and close the tests that produced it."""
        status = RecommendationStatus(status)
        row = self._conn.execute(
            "SELECT * FROM atom_recommendations WHERE run_id = ? AND temp_id = ?",
            (run_id, temp_id),
        ).fetchone()
        if not row:
            raise StoreError(f"No atom recommendation {temp_id} in run {run_id}")
        recommendation = self._row_to_atom_recommendation(row)
        timestamp = _as_iso(utc_now())
        test_status = {
            RecommendationStatus.ACCEPTED: TestRecordStatus.ACCEPTED,
            RecommendationStatus.REJECTED: TestRecordStatus.REJECTED,
        }.get(status, TestRecordStatus.PENDING)
        with self._transaction():
            self._conn.execute(
                """
                UPDATE atom_recommendations
                SET status = ?, resolved_by = ?, resolution_note = ?, resolved_at = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    status.value,
                    resolved_by,
                    note,
                    timestamp if status != RecommendationStatus.PENDING else None,
                    timestamp,
                    recommendation.id,
                ),
            )
            self._conn.execute(
                "UPDATE test_records SET status = ?, updated_at = ? WHERE atom_recommendation_id = ?",
                (test_status.value, timestamp, recommendation.id),
            )
        return recommendation.model_copy(
            update={"status": status, "resolved_by": resolved_by, "resolution_note": note}
        )

    # Molecule recommendation operations ----------------------------------------------
    def _insert_molecule_recommendations(self, records: Sequence[MoleculeRecommendation]) -> None:
        self._conn.executemany(
            """
            INSERT INTO molecule_recommendations (
                id, run_id, temp_id, name, description, atom_temp_ids,
                atom_recommendation_ids, confidence, reasoning, status, molecule_id,
                resolved_at, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    record.id,
                    record.run_id,
                    record.temp_id,
                    record.name,
                    record.description,
                    _dump_json(record.atom_temp_ids, default=[]),
                    _dump_json(record.atom_recommendation_ids, default=[]),
                    record.confidence,
                    record.reasoning,
                    record.status.value,
                    record.molecule_id,
                    _optional_iso(record.resolved_at),
                    _as_iso(record.created_at),
                    _as_iso(record.updated_at),
                )
                for record in records
            ],
        )

    def list_molecule_recommendations(
        self,
        run_id: str,
        *,
        statuses: Optional[Sequence[RecommendationStatus]] = None,
    ) -> List[MoleculeRecommendation]:
        query = "SELECT * FROM molecule_recommendations WHERE run_id = ?"
        params: List[Any] = [run_id]
        if statuses:
            placeholders = ",".join("?" for _ in statuses)
            query += f" AND status IN ({placeholders})"
            params.extend(RecommendationStatus(status).value for status in statuses)
        query += " ORDER BY created_at ASC, temp_id ASC"
        cursor = self._conn.execute(query, params)
        return [self._row_to_molecule_recommendation(row) for row in cursor.fetchall()]

    def resolve_molecule_recommendation(
        self, run_id: str, temp_id: str, status: RecommendationStatus
    ) -> None:
        status = RecommendationStatus(status)
        timestamp = _as_iso(utc_now())
        with self._transaction():
            cursor = self._conn.execute(
                """
                UPDATE molecule_recommendations
                SET status = ?, resolved_at = ?, updated_at = ?
                WHERE run_id = ? AND temp_id = ?
                """,
                (
                    status.value,
                    timestamp if status != RecommendationStatus.PENDING else None,
                    timestamp,
                    run_id,
                    temp_id,
                ),
            )
            if cursor.rowcount == 0:
                raise StoreError(f"No molecule recommendation {temp_id} in run {run_id}")

    # Test record operations ----------------------------------------------------------
    def _insert_test_records(self, records: Sequence[TestRecord]) -> None:
        self._conn.executemany(
            """
            INSERT INTO test_records (
                id, run_id, file_path, test_name, line_number, content_hash, status,
                atom_recommendation_id, had_atom_annotation, is_delta_change,
                created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    record.id,
                    record.run_id,
                    record.file_path,
                    record.test_name,
                    record.line_number,
                    record.content_hash,
                    record.status.value,
                    record.atom_recommendation_id,
                    int(record.had_atom_annotation),
                    int(record.is_delta_change),
                    _as_iso(record.created_at),
                    _as_iso(record.updated_at),
                )
                for record in records
            ],
        )

    def list_test_records(self, run_id: str) -> List[TestRecord]:
        cursor = self._conn.execute(
            "SELECT * FROM test_records WHERE run_id = ? ORDER BY file_path ASC, line_number ASC",
            (run_id,),
        )
        return [self._row_to_test_record(row) for row in cursor.fetchall()]

    def find_closed_tests(self, file_paths: Sequence[str]) -> Set[Tuple[str, str]]:
        """Return ``(file_path, test_name)`` pairs accepted or rejected in any run."""
        if not file_paths:
            return set()
        closed: Set[Tuple[str, str]] = set()
        statuses = [status.value for status in CLOSED_TEST_STATUSES]
        unique_paths = sorted(set(file_paths))
        # Stay under SQLite's bound parameter limit for very large change sets.
        chunk_size = 500
        for start in range(0, len(unique_paths), chunk_size):
            chunk = unique_paths[start : start + chunk_size]
            path_placeholders = ",".join("?" for _ in chunk)
            status_placeholders = ",".join("?" for _ in statuses)
            cursor = self._conn.execute(
                f"""
                SELECT DISTINCT file_path, test_name FROM test_records
                WHERE file_path IN ({path_placeholders})
                  AND status IN ({status_placeholders})
                """,
                [*chunk, *statuses],
            )
            closed.update((row["file_path"], row["test_name"]) for row in cursor.fetchall())
        return closed

    # Canonical atoms -----------------------------------------------------------------
    def list_atoms(self) -> List[Atom]:
        cursor = self._conn.execute("SELECT * FROM atoms ORDER BY id ASC")
        return [
            Atom(
                id=row["id"],
                description=row["description"],
                category=row["category"],
                observable_outcomes=_load_json(row["observable_outcomes"], default=[]),
                confidence=row["confidence"],
                quality_score=row["quality_score"],
                source_run_id=row["source_run_id"],
                source_recommendation_id=row["source_recommendation_id"],
                created_at=_from_iso(row["created_at"]),
            )
            for row in cursor.fetchall()
        ]

    def list_molecules(self) -> List[Molecule]:
        cursor = self._conn.execute("SELECT * FROM molecules ORDER BY id ASC")
        return [
            Molecule(
                id=row["id"],
                name=row["name"],
                description=row["description"],
                atom_ids=_load_json(row["atom_ids"], default=[]),
                source_recommendation_id=row["source_recommendation_id"],
                created_at=_from_iso(row["created_at"]),
            )
            for row in cursor.fetchall()
        ]

    def list_test_links(self, atom_id: Optional[str] = None) -> List[TestAtomLink]:
        query = "SELECT * FROM test_atom_links"
        params: List[Any] = []
        if atom_id:
            query += " WHERE atom_id = ?"
            params.append(atom_id)
        query += " ORDER BY file_path ASC, line_number ASC"
        cursor = self._conn.execute(query, params)
        return [
            TestAtomLink(
                id=row["id"],
                atom_id=row["atom_id"],
                file_path=row["file_path"],
                test_name=row["test_name"],
                line_number=row["line_number"],
                created_at=_from_iso(row["created_at"]),
            )
            for row in cursor.fetchall()
        ]

    def apply_recommendations(self, run_id: str) -> ApplyResult:
        """Turn a run's accepted recommendations into atoms, molecules and links.

        Everything is written inside one transaction: if any step fails, no atom,
        molecule, or link from this call is kept.
        """
        run = self.get_run(run_id)
        if run is None:
            raise PatchApplicationError(f"Run {run_id} does not exist")

        accepted = self.list_atom_recommendations(run_id, statuses=[RecommendationStatus.ACCEPTED])
        molecules = self.list_molecule_recommendations(
            run_id, statuses=[RecommendationStatus.ACCEPTED]
        )
        records = self.list_test_records(run_id)
        result = ApplyResult(run_id=run_id)
        timestamp = _as_iso(utc_now())

        try:
            with self._transaction():
                next_atom = self._next_sequence("atoms", _ATOM_ID_PATTERN)
                atom_ids: Dict[str, str] = {}
                for recommendation in accepted:
                    if recommendation.atom_id:
                        atom_ids[recommendation.id] = recommendation.atom_id
                        continue
                    atom_id = f"IA-{next_atom:03d}"
                    next_atom += 1
                    self._conn.execute(
                        """
                        INSERT INTO atoms (
                            id, description, category, observable_outcomes, confidence,
                            quality_score, source_run_id, source_recommendation_id, created_at
                        )
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            atom_id,
                            recommendation.description,
                            recommendation.category,
                            _dump_json(recommendation.observable_outcomes, default=[]),
                            recommendation.confidence,
                            recommendation.quality_score,
                            run_id,
                            recommendation.id,
                            timestamp,
                        ),
                    )
                    self._conn.execute(
                        "UPDATE atom_recommendations SET atom_id = ?, updated_at = ? WHERE id = ?",
                        (atom_id, timestamp, recommendation.id),
                    )
                    atom_ids[recommendation.id] = atom_id
                    result.atom_ids.append(atom_id)

                for record in records:
                    atom_id = atom_ids.get(record.atom_recommendation_id or "")
                    if atom_id is None:
                        continue
                    cursor = self._conn.execute(
                        """
                        INSERT OR IGNORE INTO test_atom_links (
                            id, atom_id, file_path, test_name, line_number, created_at
                        )
                        VALUES (?, ?, ?, ?, ?, ?)
                        """,
                        (
                            new_record_id(),
                            atom_id,
                            record.file_path,
                            record.test_name,
                            record.line_number,
                            timestamp,
                        ),
                    )
                    result.links_created += cursor.rowcount

                next_molecule = self._next_sequence("molecules", _MOLECULE_ID_PATTERN)
                for molecule in molecules:
                    if molecule.molecule_id:
                        continue
                    members = [
                        atom_ids[rec_id]
                        for rec_id in molecule.atom_recommendation_ids
                        if rec_id in atom_ids
                    ]
                    if not members:
                        raise PatchApplicationError(
                            f"Molecule {molecule.temp_id} has no accepted member atoms"
                        )
                    molecule_id = f"M-{next_molecule:03d}"
                    next_molecule += 1
                    self._conn.execute(
                        """
                        INSERT INTO molecules (
                            id, name, description, atom_ids, source_recommendation_id, created_at
                        )
                        VALUES (?, ?, ?, ?, ?, ?)
                        """,
                        (
                            molecule_id,
                            molecule.name,
                            molecule.description,
                            _dump_json(members, default=[]),
                            molecule.id,
                            timestamp,
                        ),
                    )
                    self._conn.execute(
                        """
                        UPDATE molecule_recommendations
                        SET molecule_id = ?, updated_at = ?
                        WHERE id = ?
                        """,
                        (molecule_id, timestamp, molecule.id),
                    )
                    result.molecule_ids.append(molecule_id)
        except sqlite3.Error as error:
            raise PatchApplicationError(f"Failed to apply recommendations: {error}") from error

        LOGGER.info(
            "Applied run %s: %d atom(s), %d molecule(s), %d test link(s)",
            run.run_key,
            len(result.atom_ids),
            len(result.molecule_ids),
            result.links_created,
        )
        return result

    def _next_sequence(self, table: str, pattern: re.Pattern[str]) -> int:
        highest = 0
        for row in self._conn.execute(f"SELECT id FROM {table}").fetchall():
            match = pattern.match(row["id"])
            if match:
                highest = max(highest, int(match.group(1)))
        return highest + 1

    # Checkpoint operations -----------------------------------------------------------
    def save_checkpoint(self, checkpoint: Checkpoint) -> None:
        """Store ``checkpoint`` as the single checkpoint of its run key."""
        record = checkpoint.model_copy()
        with self._transaction():
            self._conn.execute(
                """
                INSERT INTO checkpoints (id, run_key, phase, payload, created_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(run_key) DO UPDATE SET
                    id = excluded.id,
                    phase = excluded.phase,
                    payload = excluded.payload,
                    created_at = excluded.created_at
                """,
                (
                    record.id,
                    record.run_key,
                    record.phase,
                    _dump_json(record.payload, default={}),
                    _as_iso(record.created_at),
                ),
            )

    def load_checkpoint(self, run_key: str) -> Optional[Checkpoint]:
        """Return the most recent checkpoint written for ``run_key``."""
        row = self._conn.execute(
            """
            SELECT * FROM checkpoints WHERE run_key = ?
            ORDER BY created_at DESC, rowid DESC LIMIT 1
            """,
            (run_key,),
        ).fetchone()
        if not row:
            return None
        return Checkpoint(
            id=row["id"],
            run_key=row["run_key"],
            phase=row["phase"],
            payload=_load_json(row["payload"], default={}),
            created_at=_from_iso(row["created_at"]),
        )

    def delete_checkpoints(self, run_key: str) -> None:
        with self._transaction():
            self._conn.execute("DELETE FROM checkpoints WHERE run_key = ?", (run_key,))

    # Row converters ------------------------------------------------------------------
    def _row_to_run(self, row: sqlite3.Row) -> ReconciliationRun:
        return ReconciliationRun(
            id=row["id"],
            run_key=row["run_key"],
            mode=RunMode(row["mode"]),
            root_directory=row["root_directory"],
            baseline_run_key=row["baseline_run_key"],
            baseline_commit=row["baseline_commit"],
            current_commit=row["current_commit"],
            options=_load_json(row["options"], default={}),
            status=RunStatus(row["status"]),
            summary=_load_json(row["summary"], default={}),
            patch_ops=_load_json(row["patch_ops"], default=[]),
            errors=_load_json(row["errors"], default=[]),
            created_at=_from_iso(row["created_at"]),
            updated_at=_from_iso(row["updated_at"]),
            completed_at=_optional_from_iso(row["completed_at"]),
        )

    def _row_to_atom_recommendation(self, row: sqlite3.Row) -> AtomRecommendation:
        return AtomRecommendation(
            id=row["id"],
            run_id=row["run_id"],
            temp_id=row["temp_id"],
            description=row["description"],
            category=row["category"],
            confidence=row["confidence"],
            quality_score=row["quality_score"],
            observable_outcomes=_load_json(row["observable_outcomes"], default=[]),
            reasoning=row["reasoning"],
            ambiguity_reasons=_load_json(row["ambiguity_reasons"], default=[]),
            source_test_file=row["source_test_file"],
            source_test_name=row["source_test_name"],
            source_test_line=row["source_test_line"],
            status=RecommendationStatus(row["status"]),
            atom_id=row["atom_id"],
            resolved_by=row["resolved_by"],
            resolution_note=row["resolution_note"],
            resolved_at=_optional_from_iso(row["resolved_at"]),
            created_at=_from_iso(row["created_at"]),
            updated_at=_from_iso(row["updated_at"]),
        )

    def _row_to_molecule_recommendation(self, row: sqlite3.Row) -> MoleculeRecommendation:
        return MoleculeRecommendation(
            id=row["id"],
            run_id=row["run_id"],
            temp_id=row["temp_id"],
            name=row["name"],
            description=row["description"],
            atom_temp_ids=_load_json(row["atom_temp_ids"], default=[]),
            atom_recommendation_ids=_load_json(row["atom_recommendation_ids"], default=[]),
            confidence=row["confidence"],
            reasoning=row["reasoning"],
            status=RecommendationStatus(row["status"]),
            molecule_id=row["molecule_id"],
            resolved_at=_optional_from_iso(row["resolved_at"]),
            created_at=_from_iso(row["created_at"]),
            updated_at=_from_iso(row["updated_at"]),
        )

    def _row_to_test_record(self, row: sqlite3.Row) -> TestRecord:
        return TestRecord(
            id=row["id"],
            run_id=row["run_id"],
            file_path=row["file_path"],
            test_name=row["test_name"],
            line_number=row["line_number"],
            content_hash=row["content_hash"],
            status=TestRecordStatus(row["status"]),
            atom_recommendation_id=row["atom_recommendation_id"],
            had_atom_annotation=bool(row["had_atom_annotation"]),
            is_delta_change=bool(row["is_delta_change"]),
            created_at=_from_iso(row["created_at"]),
            updated_at=_from_iso(row["updated_at"]),
        )


__all__ = [
    "ApplyResult",
    "DEFAULT_DB_PATH",
    "PatchApplicationError",
    "ReconciliationStore",
    "StoreError",
    "new_record_id",
]
