"""Error taxonomy for retirement jobs and the rollback ledger."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from logsource_retire.ledger.models import RevertReport


class RetirementError(Exception):
    """Base error with a stable machine-readable code."""

    code = "retirement_error"

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code


class InvalidParameters(RetirementError):
    """Bad or missing request fields. Raised before any job exists."""

    code = "invalid_parameters"


class EmptySelection(InvalidParameters):
    """Apply requested with neither hosts nor items selected."""

    code = "empty_selection"


class BackupNotAcknowledged(RetirementError):
    code = "backup_not_acknowledged"


class ExternalError(RetirementError):
    """A single ping, fetch or mutation call against the SIEM failed."""

    code = "external_error"

    def __init__(self, message: str, target: str | None = None) -> None:
        super().__init__(message)
        self.target = target


class BackupError(RetirementError):
    code = "backup_error"


class NotFound(RetirementError):
    code = "not_found"


class EmptyChangeSet(RetirementError):
    code = "empty_change_set"


class LedgerIntegrityError(RetirementError):
    """Stored rollback point no longer matches its checksum."""

    code = "ledger_integrity"


class PartialRevertFailure(RetirementError):
    """One or more inverse mutations failed. The rollback point is kept."""

    code = "partial_revert_failure"

    def __init__(self, report: RevertReport) -> None:
        super().__init__(
            f"Rollback {report.rollback_id} partially failed: "
            f"{len(report.reverted)} reverted, {len(report.failed)} failed"
        )
        self.report = report
