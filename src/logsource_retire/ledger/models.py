"""Data models for rollback points and revert outcomes."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from logsource_retire.utils.time import to_utc_iso


@dataclass(frozen=True)
class ItemChange:
    item_id: str
    host_id: str
    host_name: str
    item_name: str
    status_before: str
    status_after: str
    collection_host_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "logSourceId": self.item_id,
            "hostId": self.host_id,
            "hostName": self.host_name,
            "logSourceName": self.item_name,
            "statusBefore": self.status_before,
            "statusAfter": self.status_after,
            "systemMonitorId": self.collection_host_id,
        }


@dataclass(frozen=True)
class HostChange:
    host_id: str
    host_name: str
    status_before: str
    status_after: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "hostId": self.host_id,
            "hostName": self.host_name,
            "statusBefore": self.status_before,
            "statusAfter": self.status_after,
        }


@dataclass(frozen=True)
class ChangeSet:
    """Mutations actually applied by one apply job."""

    description: str
    actor: str
    item_changes: tuple[ItemChange, ...] = ()
    host_changes: tuple[HostChange, ...] = ()
    collection_monitor_count: int = 0
    job_id: str | None = None
    backup_location: str | None = None

    @property
    def is_empty(self) -> bool:
        return not self.item_changes and not self.host_changes


@dataclass(frozen=True)
class RollbackPoint:
    rollback_id: str
    description: str
    created_at: datetime
    actor: str
    item_changes: tuple[ItemChange, ...]
    host_changes: tuple[HostChange, ...]
    collection_monitor_count: int = 0
    job_id: str | None = None
    backup_location: str | None = None
    checksum: str = ""

    def checksum_payload(self) -> dict[str, Any]:
        return {
            "id": self.rollback_id,
            "description": self.description,
            "createdAt": to_utc_iso(self.created_at),
            "actor": self.actor,
            "itemChanges": [change.to_dict() for change in self.item_changes],
            "hostChanges": [change.to_dict() for change in self.host_changes],
            "collectionMonitorCount": self.collection_monitor_count,
            "jobId": self.job_id,
            "backupLocation": self.backup_location,
        }

    def summary(self) -> RollbackSummary:
        return RollbackSummary(
            rollback_id=self.rollback_id,
            description=self.description,
            created_at=self.created_at,
            actor=self.actor,
            item_count=len(self.item_changes),
            host_count=len(self.host_changes),
            collection_monitor_count=self.collection_monitor_count,
        )

    def to_dict(self) -> dict[str, Any]:
        data = self.checksum_payload()
        data["checksum"] = self.checksum
        return data


@dataclass(frozen=True)
class RollbackSummary:
    rollback_id: str
    description: str
    created_at: datetime
    actor: str
    item_count: int
    host_count: int
    collection_monitor_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.rollback_id,
            "description": self.description,
            "timestamp": to_utc_iso(self.created_at),
            "user": self.actor,
            "logSources": self.item_count,
            "hosts": self.host_count,
            "systemMonitors": self.collection_monitor_count,
        }


@dataclass(frozen=True)
class PreviewPage:
    """A display-capped view of a rollback point, built by the caller."""

    rollback_id: str
    description: str
    item_changes: tuple[ItemChange, ...]
    host_changes: tuple[HostChange, ...]
    item_overflow: int
    host_overflow: int

    @classmethod
    def cap(cls, point: RollbackPoint, limit: int = 5) -> PreviewPage:
        limit = max(limit, 0)
        return cls(
            rollback_id=point.rollback_id,
            description=point.description,
            item_changes=point.item_changes[:limit],
            host_changes=point.host_changes[:limit],
            item_overflow=max(len(point.item_changes) - limit, 0),
            host_overflow=max(len(point.host_changes) - limit, 0),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.rollback_id,
            "description": self.description,
            "logSourceChanges": [change.to_dict() for change in self.item_changes],
            "hostChanges": [change.to_dict() for change in self.host_changes],
            "moreLogSources": self.item_overflow,
            "moreHosts": self.host_overflow,
        }


@dataclass(frozen=True)
class RevertOutcome:
    target_kind: str
    target_id: str
    name: str
    restored_status: str
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.target_kind,
            "id": self.target_id,
            "name": self.name,
            "restoredStatus": self.restored_status,
            "error": self.error,
        }


@dataclass
class RevertReport:
    rollback_id: str
    reverted: list[RevertOutcome] = field(default_factory=list)
    failed: list[RevertOutcome] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed

    def add(self, outcome: RevertOutcome) -> None:
        (self.reverted if outcome.ok else self.failed).append(outcome)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.rollback_id,
            "status": "success" if self.ok else "partial_failure",
            "reverted": [outcome.to_dict() for outcome in self.reverted],
            "failed": [outcome.to_dict() for outcome in self.failed],
        }


@dataclass(frozen=True)
class ExecutionRecord:
    execution_id: str
    rollback_id: str
    executed_at: datetime
    actor: str
    reverted_count: int
    failed_count: int

    @property
    def status(self) -> str:
        return "success" if self.failed_count == 0 else "partial_failure"

    def to_dict(self) -> dict[str, Any]:
        return {
            "executionId": self.execution_id,
            "rollbackId": self.rollback_id,
            "executedAt": to_utc_iso(self.executed_at),
            "user": self.actor,
            "reverted": self.reverted_count,
            "failed": self.failed_count,
            "status": self.status,
        }
