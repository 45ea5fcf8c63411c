"""Interfaces the core consumes from the SIEM and the backup tooling."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from logsource_retire.domain.models import Item, Reachability


@runtime_checkable
class RetirementCollaborator(Protocol):
    """External calls made by the orchestrator and the rollback ledger.

    Mutations return the status the record held before the call. Setting a
    record to the status it already has is a successful no-op. Failures of a
    single call are raised as ``ExternalError``.
    """

    async def ping_host(self, host_name: str) -> Reachability: ...

    async def list_log_sources(self, host_id: str | None = None) -> list[Item]: ...

    async def set_item_status(self, item_id: str, status: str) -> str: ...

    async def set_host_status(self, host_id: str, status: str) -> str: ...


@runtime_checkable
class BackupRunner(Protocol):
    async def perform_backup(self, credential: str, location: str) -> str:
        """Run a database backup and return the file it wrote.

        Raises ``BackupError`` when the backup could not be taken.
        """
        ...
