"""SQLite ledger for location imports.

ImportLedger wraps a SQLite database with:
- Schema initialization from schema.sql
- One row per import run, one per submitted batch (audit trail)
- Server ids keyed by (facility, location path), so a failed or interrupted
  import can be re-run without creating anything twice
- Read-only query helper returning list[dict]
"""

from __future__ import annotations

import hashlib
import json
import sqlite3
import time
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path as FilePath

from locimport.hierarchy import Forest
from locimport.models import Path
from locimport.scheduler import BatchOutcome, CommitReport


def _get_schema_sql() -> str:
    """Read the schema.sql file bundled with the package."""
    schema_path = FilePath(__file__).parent / "schema.sql"
    return schema_path.read_text()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def encode_path(path: Path) -> str:
    return json.dumps(list(path), ensure_ascii=False)


def decode_path(value: str) -> Path:
    return tuple(json.loads(value))


def forest_hash(forest: Forest) -> str:
    """Stable SHA-256 of a parsed forest, for spotting re-imports of the same file."""
    h = hashlib.sha256()
    h.update(json.dumps([asdict(n) for n in forest], sort_keys=True).encode())
    return h.hexdigest()


class ImportLedger:
    """SQLite-backed record of import runs and the ids they produced."""

    def __init__(self, db_path: str = "locimport.db"):
        self.db_path = db_path
        self.conn = sqlite3.connect(db_path)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA foreign_keys=ON")
        self._started: dict[int, float] = {}

    def init_schema(self) -> None:
        """Create all tables from schema.sql (IF NOT EXISTS)."""
        self.conn.executescript(_get_schema_sql())

    def start_run(
        self,
        facility_id: str,
        source_file: str = "",
        content_hash: str = "",
        total_nodes: int = 0,
    ) -> int:
        """Open a new run and return its id."""
        with self.conn:
            cursor = self.conn.execute(
                "INSERT INTO import_runs (facility_id, source_file, content_hash, "
                "started_at, total_nodes) VALUES (?, ?, ?, ?, ?)",
                (facility_id, source_file, content_hash, _now(), total_nodes),
            )
        run_id = cursor.lastrowid or 0
        self._started[run_id] = time.monotonic()
        return run_id

    def _facility_for(self, run_id: int) -> str:
        row = self.conn.execute(
            "SELECT facility_id FROM import_runs WHERE id = ?", (run_id,)
        ).fetchone()
        if row is None:
            raise KeyError(f"unknown import run {run_id}")
        return row["facility_id"]

    def record_batch(self, run_id: int, outcome: BatchOutcome) -> None:
        """Log one batch, store the ids it assigned and the entries that failed."""
        facility_id = self._facility_for(run_id)
        now = _now()
        with self.conn:
            self.conn.execute(
                "INSERT INTO batch_log (run_id, batch_number, parent_id, parent_path, "
                "entry_count, succeeded, failed, error, submitted_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    run_id,
                    outcome.number,
                    outcome.parent_id or "",
                    encode_path(outcome.parent_path),
                    len(outcome.entries),
                    len(outcome.assigned),
                    len(outcome.failures),
                    outcome.error,
                    now,
                ),
            )
            self.conn.executemany(
                "INSERT INTO assigned_ids (facility_id, path, server_id, run_id, assigned_at) "
                "VALUES (?, ?, ?, ?, ?) "
                "ON CONFLICT(facility_id, path) DO UPDATE SET "
                "server_id = excluded.server_id, run_id = excluded.run_id, "
                "assigned_at = excluded.assigned_at",
                [
                    (facility_id, encode_path(path), server_id, run_id, now)
                    for path, server_id in outcome.assigned.items()
                ],
            )
            self.conn.executemany(
                "INSERT INTO entry_errors (run_id, batch_number, reference_id, path, "
                "status_code, message) VALUES (?, ?, ?, ?, ?, ?)",
                [
                    (run_id, outcome.number, e.reference_id, encode_path(e.path),
                     e.status_code, e.message)
                    for e in outcome.failures
                ],
            )

    def finish_run(self, run_id: int, report: CommitReport) -> None:
        """Close a run with the final status and counts."""
        started = self._started.pop(run_id, None)
        duration = time.monotonic() - started if started is not None else 0.0
        pending = sum(len(item.nodes) for item in report.pending)
        with self.conn:
            self.conn.execute(
                "UPDATE import_runs SET finished_at=?, duration_seconds=?, status=?, "
                "created_count=?, failed_count=?, pending_count=?, batch_count=?, error=? "
                "WHERE id=?",
                (
                    _now(),
                    duration,
                    report.status,
                    report.created,
                    len(report.failures),
                    pending,
                    report.batches,
                    report.error,
                    run_id,
                ),
            )

    def known_ids(self, facility_id: str) -> dict[Path, str]:
        """All server ids recorded for a facility, keyed by location path."""
        rows = self.conn.execute(
            "SELECT path, server_id FROM assigned_ids WHERE facility_id = ?",
            (facility_id,),
        ).fetchall()
        return {decode_path(r["path"]): r["server_id"] for r in rows}

    def forget_facility(self, facility_id: str) -> int:
        """Drop recorded ids for a facility. Returns the number removed."""
        with self.conn:
            cursor = self.conn.execute(
                "DELETE FROM assigned_ids WHERE facility_id = ?", (facility_id,)
            )
        return cursor.rowcount

    def runs(self, limit: int = 20) -> list[dict]:
        """Most recent runs first."""
        return self.query(
            "SELECT * FROM import_runs ORDER BY id DESC LIMIT ?", (limit,)
        )

    def get_run(self, run_id: int) -> dict | None:
        rows = self.query("SELECT * FROM import_runs WHERE id = ?", (run_id,))
        return rows[0] if rows else None

    def batches(self, run_id: int) -> list[dict]:
        return self.query(
            "SELECT * FROM batch_log WHERE run_id = ? ORDER BY batch_number", (run_id,)
        )

    def errors(self, run_id: int) -> list[dict]:
        rows = self.query(
            "SELECT batch_number, reference_id, path, status_code, message "
            "FROM entry_errors WHERE run_id = ? ORDER BY id",
            (run_id,),
        )
        for row in rows:
            row["path"] = list(decode_path(row["path"]))
        return rows

    def query(self, sql: str, params: tuple = ()) -> list[dict]:
        """Execute a read-only SQL query and return results as list of dicts."""
        cursor = self.conn.execute(sql, params)
        return [dict(row) for row in cursor.fetchall()]

    def close(self) -> None:
        self.conn.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
