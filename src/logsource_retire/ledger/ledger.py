"""Rollback ledger: durable record of applied retirements and their undo."""

from __future__ import annotations

import asyncio
import logging
import threading
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable

from logsource_retire.collaborators.base import RetirementCollaborator
from logsource_retire.domain.errors import (
    EmptyChangeSet,
    ExternalError,
    InvalidParameters,
    LedgerIntegrityError,
    NotFound,
    PartialRevertFailure,
)
from logsource_retire.ledger.db import SqliteLedgerStore
from logsource_retire.ledger.models import (
    ChangeSet,
    ExecutionRecord,
    RevertOutcome,
    RevertReport,
    RollbackPoint,
    RollbackSummary,
)
from logsource_retire.utils.hashing import sha256_text
from logsource_retire.utils.serialization import canonical_json
from logsource_retire.utils.time import utc_now

logger = logging.getLogger(__name__)


def compute_checksum(point: RollbackPoint) -> str:
    return sha256_text(canonical_json(point.checksum_payload()))


class RollbackLedger:
    """Rollback points persisted in SQLite.

    Record, Delete and Cleanup are serialized by one writer lock so that
    retention cleanup cannot race a concurrent insert. Execute is serialized
    separately so two reverts of the same history never interleave.
    """

    def __init__(
        self,
        store: SqliteLedgerStore,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._clock = clock
        self._write_lock = threading.Lock()
        self._execute_lock = asyncio.Lock()

    def record(self, change_set: ChangeSet) -> str:
        if change_set.is_empty:
            raise EmptyChangeSet("Refusing to record a rollback point with no changes")

        point = RollbackPoint(
            rollback_id=f"rollback_{uuid.uuid4().hex}",
            description=change_set.description,
            created_at=self._clock(),
            actor=change_set.actor,
            item_changes=change_set.item_changes,
            host_changes=change_set.host_changes,
            collection_monitor_count=change_set.collection_monitor_count,
            job_id=change_set.job_id,
            backup_location=change_set.backup_location,
        )
        point = _with_checksum(point)
        with self._write_lock:
            self._store.insert_point(point)
        logger.info(
            "Recorded rollback point %s (%d item changes, %d host changes)",
            point.rollback_id,
            len(point.item_changes),
            len(point.host_changes),
        )
        return point.rollback_id

    def list(self) -> list[RollbackSummary]:
        return self._store.list_summaries()

    def get(self, rollback_id: str) -> RollbackPoint:
        point = self._store.get_point(rollback_id)
        if point is None:
            raise NotFound(f"Rollback point not found: {rollback_id}")
        expected = compute_checksum(point)
        if point.checksum != expected:
            logger.error("Checksum mismatch for rollback point %s", rollback_id)
            raise LedgerIntegrityError(
                f"Rollback point {rollback_id} failed checksum verification"
            )
        return point

    def preview(self, rollback_id: str) -> RollbackPoint:
        """Full change lists. Display capping is left to the caller."""
        return self.get(rollback_id)

    def executions(self, rollback_id: str) -> list[ExecutionRecord]:
        self.get(rollback_id)
        return self._store.list_executions(rollback_id)

    async def execute(
        self,
        rollback_id: str,
        collaborator: RetirementCollaborator,
        actor: str = "system",
    ) -> RevertReport:
        """Restore every recorded status before the change.

        Hosts are restored first so items are not reactivated under a retired
        host. The stored point is never rewritten or removed here.
        """
        async with self._execute_lock:
            point = await asyncio.to_thread(self.get, rollback_id)
            report = RevertReport(rollback_id=rollback_id)

            for host_change in point.host_changes:
                try:
                    await collaborator.set_host_status(
                        host_change.host_id, host_change.status_before
                    )
                except ExternalError as exc:
                    logger.warning(
                        "Failed to restore host %s (%s): %s",
                        host_change.host_name,
                        host_change.host_id,
                        exc,
                    )
                    error: str | None = str(exc)
                else:
                    error = None
                report.add(
                    RevertOutcome(
                        target_kind="host",
                        target_id=host_change.host_id,
                        name=host_change.host_name,
                        restored_status=host_change.status_before,
                        error=error,
                    )
                )

            for item_change in point.item_changes:
                try:
                    await collaborator.set_item_status(
                        item_change.item_id, item_change.status_before
                    )
                except ExternalError as exc:
                    logger.warning(
                        "Failed to restore log source %s (%s): %s",
                        item_change.item_name,
                        item_change.item_id,
                        exc,
                    )
                    error = str(exc)
                else:
                    error = None
                report.add(
                    RevertOutcome(
                        target_kind="item",
                        target_id=item_change.item_id,
                        name=item_change.item_name,
                        restored_status=item_change.status_before,
                        error=error,
                    )
                )

            execution = ExecutionRecord(
                execution_id=uuid.uuid4().hex,
                rollback_id=rollback_id,
                executed_at=self._clock(),
                actor=actor,
                reverted_count=len(report.reverted),
                failed_count=len(report.failed),
            )
            await asyncio.to_thread(self._store.add_execution, execution)

        logger.info(
            "Executed rollback %s by %s: %d reverted, %d failed",
            rollback_id,
            actor,
            len(report.reverted),
            len(report.failed),
        )
        if not report.ok:
            raise PartialRevertFailure(report)
        return report

    def delete(self, rollback_id: str) -> None:
        with self._write_lock:
            deleted = self._store.delete_points([rollback_id])
        if not deleted:
            raise NotFound(f"Rollback point not found: {rollback_id}")
        logger.info("Deleted rollback point %s", rollback_id)

    def cleanup(
        self,
        retention_days: int,
        max_points: int,
        now: datetime | None = None,
    ) -> list[str]:
        """Apply age then count retention. The newest point always survives."""
        if retention_days < 0:
            raise InvalidParameters("retention_days must be >= 0")
        if max_points < 1:
            raise InvalidParameters("max_points must be >= 1")

        cutoff = (now or self._clock()) - timedelta(days=retention_days)
        with self._write_lock:
            summaries = self._store.list_summaries()
            if not summaries:
                return []
            newest, older = summaries[0], summaries[1:]

            expired = [s.rollback_id for s in older if s.created_at < cutoff]
            survivors = [newest] + [s for s in older if s.created_at >= cutoff]
            excess = survivors[max_points:]
            doomed = expired + [s.rollback_id for s in excess]
            self._store.delete_points(doomed)

        if doomed:
            logger.info(
                "Rollback cleanup removed %d point(s) (%d expired, %d over limit)",
                len(doomed),
                len(expired),
                len(excess),
            )
        return doomed


def _with_checksum(point: RollbackPoint) -> RollbackPoint:
    return replace(point, checksum=compute_checksum(point))
