"""Application context assembly."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache

from logsource_retire.analysis.heuristics import ExclusionRules
from logsource_retire.broadcast.broadcaster import ProgressBroadcaster
from logsource_retire.collaborators.backup import SqlcmdBackupRunner
from logsource_retire.collaborators.base import BackupRunner, RetirementCollaborator
from logsource_retire.collaborators.logrhythm import LogRhythmClient
from logsource_retire.collaborators.reachability import TcpReachabilityProbe
from logsource_retire.config import Settings, load_settings
from logsource_retire.ledger.db import SqliteLedgerStore
from logsource_retire.ledger.ledger import RollbackLedger
from logsource_retire.orchestrator.jobs import JobTable
from logsource_retire.orchestrator.orchestrator import JobOrchestrator, RetentionPolicy


@dataclass
class AppContext:
    """Application-wide dependency container.

    Built once per process. Tests build their own with fake collaborators.
    """

    settings: Settings
    store: SqliteLedgerStore
    ledger: RollbackLedger
    broadcaster: ProgressBroadcaster
    collaborator: RetirementCollaborator
    backup: BackupRunner
    orchestrator: JobOrchestrator


def build_app_context(
    settings: Settings,
    collaborator: RetirementCollaborator | None = None,
    backup: BackupRunner | None = None,
) -> AppContext:
    store = SqliteLedgerStore(settings.rollback.sqlite_path, wal=settings.rollback.sqlite_wal)
    ledger = RollbackLedger(store)
    broadcaster = ProgressBroadcaster(queue_size=settings.jobs.event_queue_size)

    if collaborator is None:
        probe = TcpReachabilityProbe(
            ports=settings.analysis.probe_ports,
            timeout=settings.analysis.probe_timeout_seconds,
        )
        collaborator = LogRhythmClient(settings.siem, probe=probe)
    if backup is None:
        backup = SqlcmdBackupRunner(settings.backup)

    analysis = settings.analysis
    orchestrator = JobOrchestrator(
        collaborator=collaborator,
        ledger=ledger,
        broadcaster=broadcaster,
        jobs=JobTable(max_retained=settings.jobs.max_retained),
        exclusions=ExclusionRules(
            type_prefixes=analysis.excluded_type_prefixes,
            name_markers=analysis.excluded_name_markers,
            type_patterns=analysis.excluded_types,
        ),
        retention=RetentionPolicy(
            retention_days=settings.rollback.retention_days,
            max_points=settings.rollback.max_points,
            auto_cleanup=settings.rollback.auto_cleanup,
        ),
        max_concurrent_pings=analysis.max_concurrent_pings,
        retired_suffix=settings.siem.retired_suffix,
        default_actor=settings.jobs.default_actor,
    )
    return AppContext(
        settings=settings,
        store=store,
        ledger=ledger,
        broadcaster=broadcaster,
        collaborator=collaborator,
        backup=backup,
        orchestrator=orchestrator,
    )


@lru_cache(maxsize=1)
def get_app_context() -> AppContext:
    """Get or create the process-wide application context."""
    return build_app_context(load_settings())
