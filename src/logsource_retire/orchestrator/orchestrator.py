"""Retirement job orchestrator.

Drives analyze (read-only) and apply (mutating) jobs from creation to a
terminal status, publishing a snapshot after every state change.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, replace
from datetime import date
from typing import Any, Iterable, Mapping

from logsource_retire.analysis.heuristics import (
    ExclusionRules,
    analyze_collection_hosts,
    apply_reachability,
    build_host_analysis,
    build_results,
    group_by_collection_host,
    reachability_counts,
    select_candidates,
)
from logsource_retire.broadcast.broadcaster import ProgressBroadcaster
from logsource_retire.collaborators.base import RetirementCollaborator
from logsource_retire.domain.errors import (
    BackupNotAcknowledged,
    EmptySelection,
    ExternalError,
    InvalidParameters,
    NotFound,
)
from logsource_retire.domain.models import (
    RETIRED,
    CollectionHostAnalysis,
    Item,
    Job,
    JobMode,
    JobStatus,
    MutationFailure,
    Reachability,
    RetirementRecord,
    Selection,
)
from logsource_retire.ledger.ledger import RollbackLedger
from logsource_retire.ledger.models import ChangeSet, HostChange, ItemChange
from logsource_retire.orchestrator.jobs import JobTable
from logsource_retire.selection.reconciler import Catalog, ReconciledSelection, reconcile
from logsource_retire.utils.time import utc_now

logger = logging.getLogger(__name__)

_PING_PROGRESS_START = 25
_PING_PROGRESS_END = 70
_MUTATION_PROGRESS_START = 10
_MUTATION_PROGRESS_END = 90


@dataclass(frozen=True)
class RetentionPolicy:
    retention_days: int = 30
    max_points: int = 10
    auto_cleanup: bool = True


@dataclass(frozen=True)
class _ApplyOptions:
    actor: str
    description: str | None
    backup_location: str | None


def parse_cutoff(value: Any) -> date:
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not value.strip():
        raise InvalidParameters("A cutoff date (YYYY-MM-DD) is required for analysis")
    try:
        return date.fromisoformat(value.strip())
    except ValueError as exc:
        raise InvalidParameters(f"Invalid cutoff date {value!r}, expected YYYY-MM-DD") from exc


def _id_list(parameters: Mapping[str, Any], *keys: str) -> list[Any]:
    for key in keys:
        value = parameters.get(key)
        if value is None:
            continue
        if not isinstance(value, (list, tuple)):
            raise InvalidParameters(f"{key} must be a list of identifiers")
        return list(value)
    return []


def _optional_text(parameters: Mapping[str, Any], key: str) -> str | None:
    value = parameters.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise InvalidParameters(f"{key} must be a string")
    return value.strip() or None


class JobOrchestrator:
    """Owns the job table and runs each job as its own asyncio task."""

    def __init__(
        self,
        collaborator: RetirementCollaborator,
        ledger: RollbackLedger,
        broadcaster: ProgressBroadcaster,
        jobs: JobTable | None = None,
        exclusions: ExclusionRules | None = None,
        retention: RetentionPolicy | None = None,
        max_concurrent_pings: int = 50,
        retired_suffix: str = "",
        default_actor: str = "system",
    ) -> None:
        self._collaborator = collaborator
        self._ledger = ledger
        self._broadcaster = broadcaster
        self.jobs = jobs if jobs is not None else JobTable()
        self._exclusions = exclusions if exclusions is not None else ExclusionRules()
        self._retention = retention if retention is not None else RetentionPolicy()
        self._max_concurrent_pings = max(1, max_concurrent_pings)
        self._retired_suffix = retired_suffix
        self._default_actor = default_actor
        self._tasks: dict[str, asyncio.Task[None]] = {}

    # -- job creation -----------------------------------------------------

    def create_job(self, mode: JobMode | str, parameters: Mapping[str, Any]) -> str:
        """Validate the request and start a job. Nothing is created on error."""
        try:
            mode = JobMode(mode)
        except ValueError as exc:
            raise InvalidParameters(f"Unknown job mode: {mode!r}") from exc
        if not isinstance(parameters, Mapping):
            raise InvalidParameters("Job parameters must be an object")

        session_id = _optional_text(parameters, "sessionId")
        if mode is JobMode.ANALYZE:
            cutoff = parse_cutoff(parameters.get("cutoff", parameters.get("date")))
            job = Job(
                job_id=self._new_job_id(mode), mode=mode, cutoff=cutoff, session_id=session_id
            )
            return self._launch(job, self._run_analyze(job))

        selection = Selection.of(
            _id_list(parameters, "hostIds", "selectedHosts"),
            _id_list(parameters, "itemIds", "selectedLogSources"),
        )
        if selection.is_empty:
            raise EmptySelection("Select at least one host or log source to retire")
        if parameters.get("backupAcknowledged") is not True:
            raise BackupNotAcknowledged(
                "Confirm that a database backup was taken or explicitly skipped"
            )
        raw_cutoff = parameters.get("cutoff", parameters.get("date"))
        options = _ApplyOptions(
            actor=_optional_text(parameters, "user") or self._default_actor,
            description=_optional_text(parameters, "description"),
            backup_location=_optional_text(parameters, "backupLocation"),
        )
        job = Job(
            job_id=self._new_job_id(mode),
            mode=mode,
            selection=selection,
            cutoff=parse_cutoff(raw_cutoff) if raw_cutoff else None,
            session_id=session_id,
        )
        return self._launch(job, self._run_apply(job, options))

    def _new_job_id(self, mode: JobMode) -> str:
        return f"{mode.value}_{uuid.uuid4().hex[:12]}"

    def _launch(self, job: Job, coro: Any) -> str:
        task = asyncio.create_task(coro, name=f"job-{job.job_id}")
        self.jobs.add(job)
        self._tasks[job.job_id] = task
        task.add_done_callback(lambda _t, job_id=job.job_id: self._tasks.pop(job_id, None))
        logger.info("Created %s job %s", job.mode.value, job.job_id)
        self._publish(job)
        return job.job_id

    # -- queries ----------------------------------------------------------

    def get_job(self, job_id: str) -> Job:
        return self.jobs.get(job_id)

    def list_jobs(self) -> list[Job]:
        return self.jobs.list()

    def current_job(self, session_id: str) -> Job:
        return self.jobs.current_for(session_id)

    async def wait(self, job_id: str) -> Job:
        """Wait for a job to reach a terminal status."""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.shield(task)
        return self.jobs.get(job_id)

    async def drain(self) -> None:
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def preview_selection(
        self, selection: Selection, analysis_job_id: str | None = None
    ) -> dict[str, Any]:
        """Count what a selection would cover against an analysis catalog."""
        if analysis_job_id:
            job = self.jobs.get(analysis_job_id)
            if job.mode is not JobMode.ANALYZE:
                raise InvalidParameters(f"Job {analysis_job_id} is not an analysis job")
        else:
            job = self.jobs.latest(JobMode.ANALYZE, JobStatus.COMPLETED)
            if job is None:
                raise NotFound("No completed analysis job to preview against")
        catalog = Catalog.from_hosts(job.host_analysis)
        summary = reconcile(selection, catalog).summary()
        summary["analysisJobId"] = job.job_id
        return summary

    # -- execution --------------------------------------------------------

    def _publish(self, job: Job) -> None:
        self._broadcaster.publish(job.snapshot())

    def _advance(self, job: Job, progress: int, message: str | None = None) -> None:
        before = (job.progress, job.message)
        job.advance(progress, message)
        if (job.progress, job.message) != before:
            self._publish(job)

    def _fail(self, job: Job, error: str, message: str | None = None) -> None:
        job.fail(error, message)
        logger.warning("Job %s failed: %s", job.job_id, error)
        self._publish(job)

    async def _run_analyze(self, job: Job) -> None:
        try:
            await self._analyze(job)
        except Exception as exc:  # job task boundary
            logger.exception("Analysis job %s crashed", job.job_id)
            if not job.status.is_terminal:
                self._fail(job, str(exc) or exc.__class__.__name__)

    async def _analyze(self, job: Job) -> None:
        assert job.cutoff is not None
        job.start("Fetching log sources...")
        self._publish(job)

        try:
            items = await self._collaborator.list_log_sources()
        except ExternalError as exc:
            self._fail(job, f"Failed to fetch log sources: {exc}")
            return
        self._advance(job, 5, f"Fetched {len(items)} log sources")

        candidates = select_candidates(items, job.cutoff, self._exclusions)
        host_names = sorted({item.host_name for item in candidates if item.host_name})
        self._advance(
            job,
            _PING_PROGRESS_START,
            f"Found {len(candidates)} stale log sources; checking {len(host_names)} hosts...",
        )

        reachability = await self._ping_hosts(job, host_names)
        annotated = apply_reachability(candidates, reachability)
        job.results = build_results(annotated)
        job.host_analysis = build_host_analysis(annotated)
        counts = reachability_counts(reachability.values())
        self._advance(
            job,
            75,
            f"Host analysis ready: {counts['Success']} reachable, "
            f"{counts['Failure']} unreachable, {counts['Unknown']} unknown",
        )

        job.collection_host_analysis = await self._collection_analysis(items, job.cutoff)
        self._advance(job, 95)

        recommended_hosts = sum(1 for host in job.host_analysis if host.recommended)
        job.complete(
            f"Analysis complete: {len(job.results)} stale log sources on "
            f"{len(job.host_analysis)} hosts, {recommended_hosts} hosts recommended "
            "for retirement"
        )
        logger.info("Analysis job %s completed: %s", job.job_id, job.message)
        self._publish(job)

    async def _ping_one(
        self, semaphore: asyncio.Semaphore, name: str
    ) -> tuple[str, Reachability]:
        async with semaphore:
            try:
                return name, await self._collaborator.ping_host(name)
            except Exception as exc:  # a single host never aborts the job
                logger.warning("Ping of %s failed, reporting Unknown: %s", name, exc)
                return name, Reachability.UNKNOWN

    async def _ping_hosts(self, job: Job, host_names: list[str]) -> dict[str, Reachability]:
        if not host_names:
            return {}
        semaphore = asyncio.Semaphore(self._max_concurrent_pings)
        pings = [self._ping_one(semaphore, name) for name in host_names]

        results: dict[str, Reachability] = {}
        span = _PING_PROGRESS_END - _PING_PROGRESS_START
        for done, future in enumerate(asyncio.as_completed(pings), 1):
            name, state = await future
            results[name] = state
            self._advance(
                job,
                _PING_PROGRESS_START + span * done // len(host_names),
                f"Checked {done}/{len(host_names)} hosts",
            )
        return results

    async def _collection_analysis(
        self, items: Iterable[Item], cutoff: date | None
    ) -> list[CollectionHostAnalysis]:
        """Advisory only: unreachable or unprobeable collectors report Unknown."""
        items = list(items)
        names = sorted({name for name, _ in group_by_collection_host(items).values()})
        semaphore = asyncio.Semaphore(self._max_concurrent_pings)
        states = await asyncio.gather(*(self._ping_one(semaphore, name) for name in names))
        return analyze_collection_hosts(items, dict(states), cutoff)

    async def _run_apply(self, job: Job, options: _ApplyOptions) -> None:
        try:
            await self._apply(job, options)
        except Exception as exc:  # job task boundary
            logger.exception("Apply job %s crashed", job.job_id)
            if not job.status.is_terminal:
                self._fail(job, str(exc) or exc.__class__.__name__)

    async def _apply(self, job: Job, options: _ApplyOptions) -> None:
        assert job.selection is not None
        job.start("Fetching log source catalog...")
        self._publish(job)

        try:
            catalog = Catalog.from_items(await self._collaborator.list_log_sources())
        except ExternalError as exc:
            self._fail(job, f"Failed to fetch log sources: {exc}")
            return

        reconciled = reconcile(job.selection, catalog)
        targets = reconciled.targets
        self._advance(
            job,
            _MUTATION_PROGRESS_START,
            f"Retiring {len(targets)} log sources "
            f"({reconciled.host_count} hosts, {reconciled.direct_item_count} direct)...",
        )

        item_changes: list[ItemChange] = []
        records: list[RetirementRecord] = []
        failures: list[MutationFailure] = []
        retired_ids: set[str] = set()
        attempts = 0
        successes = 0
        span = _MUTATION_PROGRESS_END - _MUTATION_PROGRESS_START

        # One call at a time so each outcome is attributed before the next.
        for index, item in enumerate(targets, 1):
            if item.is_retired:
                retired_ids.add(item.item_id)
            else:
                attempts += 1
                try:
                    previous = await self._collaborator.set_item_status(item.item_id, RETIRED)
                except ExternalError as exc:
                    logger.warning(
                        "Failed to retire log source %s (%s): %s", item.name, item.item_id, exc
                    )
                    failures.append(
                        MutationFailure("item", item.item_id, item.name, item.host_name, str(exc))
                    )
                else:
                    successes += 1
                    retired_ids.add(item.item_id)
                    if previous != RETIRED:
                        item_changes.append(
                            ItemChange(
                                item_id=item.item_id,
                                host_id=item.host_id,
                                host_name=item.host_name,
                                item_name=item.name,
                                status_before=previous,
                                status_after=RETIRED,
                                collection_host_id=item.collection_host_id,
                            )
                        )
                        records.append(self._retirement_record(item, previous))
            self._advance(
                job,
                _MUTATION_PROGRESS_START + span * index // len(targets),
                f"Processed {index}/{len(targets)} log sources",
            )

        host_changes = await self._retire_emptied_hosts(
            catalog, item_changes, retired_ids, failures
        )
        attempts += len(host_changes) + sum(1 for f in failures if f.target_kind == "host")
        successes += len(host_changes)

        job.failures = failures
        self._advance(job, 92)

        if attempts and not successes:
            self._fail(
                job,
                f"All {attempts} retirement calls failed",
                f"Retirement failed: 0 of {attempts} log sources retired",
            )
            return

        if item_changes or host_changes:
            collection_ids = {c.collection_host_id for c in item_changes if c.collection_host_id}
            change_set = ChangeSet(
                description=options.description
                or f"Retired {len(item_changes)} log sources and {len(host_changes)} hosts",
                actor=options.actor,
                item_changes=tuple(item_changes),
                host_changes=tuple(host_changes),
                collection_monitor_count=len(collection_ids),
                job_id=job.job_id,
                backup_location=options.backup_location,
            )
            rollback_id = await asyncio.to_thread(self._ledger.record, change_set)
            job.attach_rollback(rollback_id)
            await self._auto_cleanup()

        updated = [
            replace(item, status=RETIRED) if item.item_id in retired_ids else item
            for item in catalog.items.values()
        ]
        job.collection_host_analysis = await self._collection_analysis(updated, job.cutoff)

        job.retirement_records = records
        job.complete(self._apply_message(item_changes, host_changes, failures, reconciled))
        logger.info("Apply job %s completed: %s", job.job_id, job.message)
        self._publish(job)

    async def _retire_emptied_hosts(
        self,
        catalog: Catalog,
        item_changes: list[ItemChange],
        retired_ids: set[str],
        failures: list[MutationFailure],
    ) -> list[HostChange]:
        """Retire hosts left with no active log sources by this job."""
        host_changes: list[HostChange] = []
        touched = dict.fromkeys(change.host_id for change in item_changes)
        for host_id in touched:
            host = catalog.hosts.get(host_id)
            if host is None or host.status == RETIRED:
                continue
            still_active = [
                item
                for item in host.items
                if not item.is_retired and item.item_id not in retired_ids
            ]
            if still_active:
                continue
            try:
                previous = await self._collaborator.set_host_status(host_id, RETIRED)
            except ExternalError as exc:
                logger.warning("Failed to retire host %s (%s): %s", host.name, host_id, exc)
                failures.append(MutationFailure("host", host_id, host.name, host.name, str(exc)))
                continue
            if previous != RETIRED:
                host_changes.append(HostChange(host_id, host.name, previous, RETIRED))
        return host_changes

    def _retirement_record(self, item: Item, previous: str) -> RetirementRecord:
        suffix = self._retired_suffix
        retired_name = item.name if not suffix or item.name.endswith(suffix) else item.name + suffix
        return RetirementRecord(
            item_id=item.item_id,
            host_id=item.host_id,
            host_name=item.host_name,
            original_name=item.name,
            retired_name=retired_name,
            original_status=previous,
            retired_status=RETIRED,
            timestamp=utc_now(),
        )

    async def _auto_cleanup(self) -> None:
        policy = self._retention
        if not policy.auto_cleanup:
            return
        try:
            await asyncio.to_thread(
                self._ledger.cleanup, policy.retention_days, policy.max_points
            )
        except Exception:  # cleanup must not undo a recorded retirement
            logger.exception("Automatic rollback cleanup failed")

    @staticmethod
    def _apply_message(
        item_changes: list[ItemChange],
        host_changes: list[HostChange],
        failures: list[MutationFailure],
        reconciled: ReconciledSelection,
    ) -> str:
        parts = [
            f"Retired {len(item_changes)} log sources and {len(host_changes)} hosts"
        ]
        if failures:
            names = ", ".join(f"{f.name} ({f.target_id})" for f in failures[:5])
            more = f" and {len(failures) - 5} more" if len(failures) > 5 else ""
            parts.append(f"{len(failures)} failed: {names}{more}")
        unknown = len(reconciled.unknown_host_ids) + len(reconciled.unknown_item_ids)
        if unknown:
            parts.append(f"{unknown} selected ids not found")
        return "; ".join(parts)
