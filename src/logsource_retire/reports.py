"""CSV export of analysis rows and the plain-text retirement report."""

from __future__ import annotations

import csv
import io
from datetime import datetime

from logsource_retire.domain.models import Job, RetirementRecord, is_never_received
from logsource_retire.utils.time import utc_now

CSV_HEADER = (
    "LogSourceID",
    "HostID",
    "HostName",
    "LogSourceName",
    "LogSourceType",
    "MaxLogDate",
    "PingResult",
)

_DISPLAY_FORMAT = "%Y-%m-%d %H:%M:%S"


def _display(value: datetime | None) -> str:
    return value.strftime(_DISPLAY_FORMAT) if value is not None else ""


def export_csv(job: Job) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    for result in job.results:
        last_seen = result.last_activity
        writer.writerow(
            (
                result.item_id,
                result.host_id,
                result.host_name,
                result.name,
                result.source_type,
                "Never" if is_never_received(last_seen) else _display(last_seen),
                result.reachability.value,
            )
        )
    return buffer.getvalue()


def _group_by_host(records: list[RetirementRecord]) -> dict[str, list[RetirementRecord]]:
    grouped: dict[str, list[RetirementRecord]] = {}
    for record in records:
        grouped.setdefault(record.host_name, []).append(record)
    return dict(sorted(grouped.items(), key=lambda entry: entry[0].lower()))


def render_text_report(job: Job, generated_at: datetime | None = None) -> str:
    records = job.retirement_records or []
    lines = [
        "Log Source Retirement Report",
        "============================",
        "",
        f"Job ID: {job.job_id}",
        f"Completed: {_display(job.ended_at) or 'in progress'}",
        f"Status: {job.status.value}",
        f"Total Log Sources Retired: {len(records)}",
    ]
    if job.rollback_id:
        lines.append(f"Rollback Point: {job.rollback_id}")
    lines += ["", "Retirement Summary:", "===================", ""]

    for host_name, host_records in _group_by_host(records).items():
        lines.append(f"Host: {host_name} ({len(host_records)} log sources)")
        lines.append("-" * 40)
        for record in host_records:
            lines += [
                f"  Log Source ID: {record.item_id}",
                f"  Original Name: {record.original_name}",
                f"  Retired Name: {record.retired_name}",
                f"  Status: {record.original_status} -> {record.retired_status}",
                f"  Timestamp: {_display(record.timestamp)}",
                "",
            ]
        lines.append("")

    if job.failures:
        lines += ["Failures:", "=========", ""]
        for failure in job.failures:
            lines.append(
                f"  {failure.target_kind} {failure.target_id} ({failure.name}): {failure.error}"
            )
        lines.append("")

    lines.append(f"Generated on {_display(generated_at or utc_now())}")
    return "\n".join(lines) + "\n"
