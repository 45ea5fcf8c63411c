"""SQLite access layer for rollback points."""

from __future__ import annotations

import sqlite3
import threading
from pathlib import Path
from typing import Mapping, Sequence

from logsource_retire.ledger.models import (
    ExecutionRecord,
    HostChange,
    ItemChange,
    RollbackPoint,
    RollbackSummary,
)
from logsource_retire.utils.time import parse_utc_iso, to_utc_iso

_SqlValue = str | bytes | int | float | None
_SqlParams = Sequence[_SqlValue] | Mapping[str, _SqlValue]


class SqliteLedgerStore:
    def __init__(self, path: str, wal: bool = True) -> None:
        if path != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._closed = False
        if wal and path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._init_schema()

    def _init_schema(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS rollback_points (
                rollback_id TEXT PRIMARY KEY,
                description TEXT NOT NULL,
                created_at TEXT NOT NULL,
                actor TEXT NOT NULL,
                job_id TEXT,
                backup_location TEXT,
                collection_monitor_count INTEGER NOT NULL DEFAULT 0,
                checksum TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS rollback_item_changes (
                rollback_id TEXT NOT NULL,
                position INTEGER NOT NULL,
                item_id TEXT NOT NULL,
                host_id TEXT NOT NULL,
                host_name TEXT NOT NULL,
                item_name TEXT NOT NULL,
                status_before TEXT NOT NULL,
                status_after TEXT NOT NULL,
                collection_host_id TEXT,
                PRIMARY KEY (rollback_id, position),
                FOREIGN KEY(rollback_id) REFERENCES rollback_points(rollback_id)
                    ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS rollback_host_changes (
                rollback_id TEXT NOT NULL,
                position INTEGER NOT NULL,
                host_id TEXT NOT NULL,
                host_name TEXT NOT NULL,
                status_before TEXT NOT NULL,
                status_after TEXT NOT NULL,
                PRIMARY KEY (rollback_id, position),
                FOREIGN KEY(rollback_id) REFERENCES rollback_points(rollback_id)
                    ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS rollback_executions (
                execution_id TEXT PRIMARY KEY,
                rollback_id TEXT NOT NULL,
                executed_at TEXT NOT NULL,
                actor TEXT NOT NULL,
                reverted_count INTEGER NOT NULL,
                failed_count INTEGER NOT NULL,
                FOREIGN KEY(rollback_id) REFERENCES rollback_points(rollback_id)
                    ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_rollback_points_created_at
                ON rollback_points(created_at);
            CREATE INDEX IF NOT EXISTS idx_rollback_executions_rollback_id
                ON rollback_executions(rollback_id);
            """
        )
        self._conn.commit()

    def execute(self, query: str, params: _SqlParams) -> None:
        with self._lock:
            self._conn.execute(query, params)
            self._conn.commit()

    def fetch_one(self, query: str, params: _SqlParams) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.execute(query, params)
            return cur.fetchone()

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._conn.close()
            self._closed = True

    def insert_point(self, point: RollbackPoint) -> None:
        """Insert a point and all of its changes in one transaction."""
        with self._lock:
            try:
                self._conn.execute(
                    """
                    INSERT INTO rollback_points (
                        rollback_id, description, created_at, actor, job_id,
                        backup_location, collection_monitor_count, checksum
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        point.rollback_id,
                        point.description,
                        to_utc_iso(point.created_at),
                        point.actor,
                        point.job_id,
                        point.backup_location,
                        point.collection_monitor_count,
                        point.checksum,
                    ),
                )
                self._conn.executemany(
                    """
                    INSERT INTO rollback_item_changes (
                        rollback_id, position, item_id, host_id, host_name, item_name,
                        status_before, status_after, collection_host_id
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (
                            point.rollback_id,
                            position,
                            change.item_id,
                            change.host_id,
                            change.host_name,
                            change.item_name,
                            change.status_before,
                            change.status_after,
                            change.collection_host_id,
                        )
                        for position, change in enumerate(point.item_changes)
                    ],
                )
                self._conn.executemany(
                    """
                    INSERT INTO rollback_host_changes (
                        rollback_id, position, host_id, host_name, status_before, status_after
                    ) VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (
                            point.rollback_id,
                            position,
                            change.host_id,
                            change.host_name,
                            change.status_before,
                            change.status_after,
                        )
                        for position, change in enumerate(point.host_changes)
                    ],
                )
            except sqlite3.Error:
                self._conn.rollback()
                raise
            self._conn.commit()

    def get_point(self, rollback_id: str) -> RollbackPoint | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM rollback_points WHERE rollback_id = ?", (rollback_id,)
            ).fetchone()
            if row is None:
                return None
            item_rows = self._conn.execute(
                "SELECT * FROM rollback_item_changes WHERE rollback_id = ? ORDER BY position",
                (rollback_id,),
            ).fetchall()
            host_rows = self._conn.execute(
                "SELECT * FROM rollback_host_changes WHERE rollback_id = ? ORDER BY position",
                (rollback_id,),
            ).fetchall()

        return RollbackPoint(
            rollback_id=row["rollback_id"],
            description=row["description"],
            created_at=parse_utc_iso(row["created_at"]),
            actor=row["actor"],
            item_changes=tuple(
                ItemChange(
                    item_id=r["item_id"],
                    host_id=r["host_id"],
                    host_name=r["host_name"],
                    item_name=r["item_name"],
                    status_before=r["status_before"],
                    status_after=r["status_after"],
                    collection_host_id=r["collection_host_id"],
                )
                for r in item_rows
            ),
            host_changes=tuple(
                HostChange(
                    host_id=r["host_id"],
                    host_name=r["host_name"],
                    status_before=r["status_before"],
                    status_after=r["status_after"],
                )
                for r in host_rows
            ),
            collection_monitor_count=row["collection_monitor_count"],
            job_id=row["job_id"],
            backup_location=row["backup_location"],
            checksum=row["checksum"],
        )

    def list_summaries(self) -> list[RollbackSummary]:
        """Summaries ordered newest first."""
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT p.*,
                    (SELECT COUNT(*) FROM rollback_item_changes i
                        WHERE i.rollback_id = p.rollback_id) AS item_count,
                    (SELECT COUNT(*) FROM rollback_host_changes h
                        WHERE h.rollback_id = p.rollback_id) AS host_count
                FROM rollback_points p
                ORDER BY p.created_at DESC, p.rowid DESC
                """
            ).fetchall()
        return [
            RollbackSummary(
                rollback_id=row["rollback_id"],
                description=row["description"],
                created_at=parse_utc_iso(row["created_at"]),
                actor=row["actor"],
                item_count=row["item_count"],
                host_count=row["host_count"],
                collection_monitor_count=row["collection_monitor_count"],
            )
            for row in rows
        ]

    def delete_points(self, rollback_ids: Sequence[str]) -> int:
        if not rollback_ids:
            return 0
        placeholders = ",".join("?" for _ in rollback_ids)
        with self._lock:
            cursor = self._conn.execute(
                f"DELETE FROM rollback_points WHERE rollback_id IN ({placeholders})",
                list(rollback_ids),
            )
            self._conn.commit()
            return cursor.rowcount

    def add_execution(self, record: ExecutionRecord) -> None:
        self.execute(
            """
            INSERT INTO rollback_executions (
                execution_id, rollback_id, executed_at, actor, reverted_count, failed_count
            ) VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                record.execution_id,
                record.rollback_id,
                to_utc_iso(record.executed_at),
                record.actor,
                record.reverted_count,
                record.failed_count,
            ),
        )

    def list_executions(self, rollback_id: str) -> list[ExecutionRecord]:
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT * FROM rollback_executions
                WHERE rollback_id = ? ORDER BY executed_at DESC, rowid DESC
                """,
                (rollback_id,),
            ).fetchall()
        return [
            ExecutionRecord(
                execution_id=row["execution_id"],
                rollback_id=row["rollback_id"],
                executed_at=parse_utc_iso(row["executed_at"]),
                actor=row["actor"],
                reverted_count=row["reverted_count"],
                failed_count=row["failed_count"],
            )
            for row in rows
        ]
