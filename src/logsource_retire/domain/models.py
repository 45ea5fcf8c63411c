"""Domain objects for retirement jobs, hosts and log sources."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Iterable

from logsource_retire.utils.time import to_utc_iso, utc_now

ACTIVE = "Active"
RETIRED = "Retired"

# The admin API reports sources that never produced data with this timestamp.
NEVER_RECEIVED = datetime(1899, 12, 31, 17, 0, tzinfo=timezone.utc)
_NEVER_RECEIVED_BEFORE = datetime(1900, 1, 1, tzinfo=timezone.utc)


class JobMode(str, Enum):
    ANALYZE = "analyze"
    APPLY = "apply"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class Reachability(str, Enum):
    SUCCESS = "Success"
    FAILURE = "Failure"
    UNKNOWN = "Unknown"


def is_never_received(value: datetime | None) -> bool:
    return value is None or value < _NEVER_RECEIVED_BEFORE


def _iso(value: datetime | None) -> str | None:
    return to_utc_iso(value) if value is not None else None


@dataclass(frozen=True)
class Item:
    """A log source, the unit of retirement."""

    item_id: str
    host_id: str
    host_name: str
    name: str
    source_type: str = ""
    last_activity: datetime | None = None
    status: str = ACTIVE
    host_status: str = ACTIVE
    reachability: Reachability = Reachability.UNKNOWN
    collection_host_id: str | None = None
    collection_host_name: str | None = None
    recommended: bool = False

    @property
    def never_received(self) -> bool:
        return is_never_received(self.last_activity)

    @property
    def is_retired(self) -> bool:
        return self.status == RETIRED

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.item_id,
            "hostId": self.host_id,
            "hostName": self.host_name,
            "name": self.name,
            "logSourceType": self.source_type,
            "maxLogDate": _iso(self.last_activity),
            "neverReceived": self.never_received,
            "recordStatus": self.status,
            "pingResult": self.reachability.value,
            "systemMonitorId": self.collection_host_id,
            "systemMonitorName": self.collection_host_name,
            "recommended": self.recommended,
        }


@dataclass
class Host:
    """A monitored machine and the log sources it owns."""

    host_id: str
    name: str
    status: str = ACTIVE
    reachability: Reachability = Reachability.UNKNOWN
    items: list[Item] = field(default_factory=list)
    recommended: bool = False

    @property
    def last_activity(self) -> datetime | None:
        seen = [item.last_activity for item in self.items if not item.never_received]
        return max(seen) if seen else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "hostId": self.host_id,
            "hostName": self.name,
            "recordStatus": self.status,
            "logSourceCount": len(self.items),
            "maxLogDate": _iso(self.last_activity),
            "pingResult": self.reachability.value,
            "recommended": self.recommended,
            "logSources": [item.to_dict() for item in self.items],
        }


def _unique(values: Iterable[object]) -> tuple[str, ...]:
    seen: dict[str, None] = {}
    for value in values:
        text = str(value).strip()
        if text:
            seen.setdefault(text, None)
    return tuple(seen)


@dataclass(frozen=True)
class Selection:
    """Host-level and item-level picks submitted with an apply request."""

    host_ids: tuple[str, ...] = ()
    item_ids: tuple[str, ...] = ()

    @classmethod
    def of(cls, host_ids: Iterable[object] = (), item_ids: Iterable[object] = ()) -> Selection:
        return cls(host_ids=_unique(host_ids), item_ids=_unique(item_ids))

    @property
    def is_empty(self) -> bool:
        return not self.host_ids and not self.item_ids


@dataclass(frozen=True)
class AnalysisResult:
    """Per-item row produced by an analyze job."""

    item_id: str
    host_id: str
    host_name: str
    name: str
    source_type: str
    last_activity: datetime | None
    reachability: Reachability
    recommended: bool

    @classmethod
    def from_item(cls, item: Item) -> AnalysisResult:
        return cls(
            item_id=item.item_id,
            host_id=item.host_id,
            host_name=item.host_name,
            name=item.name,
            source_type=item.source_type,
            last_activity=item.last_activity,
            reachability=item.reachability,
            recommended=item.recommended,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.item_id,
            "hostId": self.host_id,
            "hostName": self.host_name,
            "name": self.name,
            "logSourceType": self.source_type,
            "maxLogDate": _iso(self.last_activity),
            "pingResult": self.reachability.value,
            "recommended": self.recommended,
        }


@dataclass
class CollectionHostAnalysis:
    """Advisory aggregate for a host that forwards logs for others."""

    collection_host_id: str
    name: str
    reachability: Reachability
    items: list[Item]
    recommended: bool

    @property
    def active_item_count(self) -> int:
        return sum(1 for item in self.items if not item.is_retired)

    def to_dict(self) -> dict[str, Any]:
        return {
            "systemMonitorId": self.collection_host_id,
            "systemMonitorName": self.name,
            "logSourceCount": len(self.items),
            "activeLogSourceCount": self.active_item_count,
            "pingResult": self.reachability.value,
            "recommended": self.recommended,
        }


@dataclass(frozen=True)
class RetirementRecord:
    item_id: str
    host_id: str
    host_name: str
    original_name: str
    retired_name: str
    original_status: str
    retired_status: str
    timestamp: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "logSourceId": self.item_id,
            "hostId": self.host_id,
            "hostName": self.host_name,
            "originalName": self.original_name,
            "retiredName": self.retired_name,
            "originalStatus": self.original_status,
            "retiredStatus": self.retired_status,
            "timestamp": to_utc_iso(self.timestamp),
        }


@dataclass(frozen=True)
class MutationFailure:
    target_kind: str
    target_id: str
    name: str
    host_name: str
    error: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.target_kind,
            "id": self.target_id,
            "name": self.name,
            "hostName": self.host_name,
            "error": self.error,
        }


@dataclass
class Job:
    """A single analyze or apply run.

    Only the task executing the job mutates it. Progress never moves
    backwards, and no transition leaves a terminal status.
    """

    job_id: str
    mode: JobMode
    status: JobStatus = JobStatus.PENDING
    progress: int = 0
    message: str = ""
    results: list[AnalysisResult] = field(default_factory=list)
    host_analysis: list[Host] = field(default_factory=list)
    collection_host_analysis: list[CollectionHostAnalysis] | None = None
    retirement_records: list[RetirementRecord] | None = None
    failures: list[MutationFailure] = field(default_factory=list)
    error: str | None = None
    started_at: datetime = field(default_factory=utc_now)
    ended_at: datetime | None = None
    rollback_id: str | None = None
    cutoff: date | None = None
    selection: Selection | None = None
    session_id: str | None = None

    def start(self, message: str) -> None:
        if self.status is not JobStatus.PENDING:
            raise RuntimeError(f"Job {self.job_id} cannot start from {self.status.value}")
        self.status = JobStatus.RUNNING
        self.message = message

    def advance(self, progress: int, message: str | None = None) -> None:
        if self.status is not JobStatus.RUNNING:
            raise RuntimeError(f"Job {self.job_id} is not running ({self.status.value})")
        self.progress = max(self.progress, min(int(progress), 100))
        if message is not None:
            self.message = message

    def complete(self, message: str) -> None:
        if self.status is not JobStatus.RUNNING:
            raise RuntimeError(f"Job {self.job_id} cannot complete from {self.status.value}")
        self.status = JobStatus.COMPLETED
        self.progress = 100
        self.message = message
        self.ended_at = utc_now()

    def fail(self, error: str, message: str | None = None) -> None:
        if self.status.is_terminal:
            raise RuntimeError(f"Job {self.job_id} already finished ({self.status.value})")
        self.status = JobStatus.FAILED
        self.error = error or "unknown error"
        self.message = message or f"Job failed: {self.error}"
        self.ended_at = utc_now()

    def attach_rollback(self, rollback_id: str) -> None:
        self.rollback_id = rollback_id

    def snapshot(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.job_id,
            "mode": self.mode.value,
            "status": self.status.value,
            "progress": self.progress,
            "message": self.message,
            "results": [result.to_dict() for result in self.results],
            "hostAnalysis": [host.to_dict() for host in self.host_analysis],
            "failures": [failure.to_dict() for failure in self.failures],
            "error": self.error,
            "startTime": to_utc_iso(self.started_at),
            "endTime": _iso(self.ended_at),
            "rollbackId": self.rollback_id,
        }
        if self.collection_host_analysis is not None:
            data["collectionHostAnalysis"] = [
                entry.to_dict() for entry in self.collection_host_analysis
            ]
        if self.retirement_records is not None:
            data["retirementRecords"] = [record.to_dict() for record in self.retirement_records]
        if self.cutoff is not None:
            data["cutoff"] = self.cutoff.isoformat()
        if self.selection is not None:
            data["selection"] = {
                "hostIds": list(self.selection.host_ids),
                "itemIds": list(self.selection.item_ids),
            }
        return data
