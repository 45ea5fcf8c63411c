"""SQL Server database backup through the ``sqlcmd`` command line tool."""

from __future__ import annotations

import asyncio
import logging
import os
import re
import subprocess
from datetime import datetime
from typing import Callable

from logsource_retire.config import BackupSettings
from logsource_retire.domain.errors import BackupError
from logsource_retire.utils.time import utc_now

logger = logging.getLogger(__name__)

# Interpolated into T-SQL: no quotes or statement separators.
_SAFE_LOCATION_RE = re.compile(r"^[A-Za-z0-9 _.:\\/()$-]+$")


def build_backup_statement(database: str, backup_file: str) -> str:
    return (
        f"BACKUP DATABASE [{database}] TO DISK = '{backup_file}' "
        f"WITH FORMAT, INIT, NAME = '{database} Full Backup', "
        "SKIP, NOREWIND, NOUNLOAD, STATS = 10"
    )


class SqlcmdBackupRunner:
    def __init__(
        self,
        settings: BackupSettings,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._settings = settings
        self._clock = clock

    def backup_file_for(self, location: str) -> str:
        timestamp = self._clock().strftime("%Y%m%d_%H%M%S")
        separator = "/" if "/" in location and "\\" not in location else "\\"
        base = location.rstrip("/\\")
        return f"{base}{separator}{self._settings.database}_backup_{timestamp}.bak"

    async def perform_backup(self, credential: str, location: str) -> str:
        location = location.strip()
        if not credential:
            raise BackupError("A database password is required for backup")
        if not location or not _SAFE_LOCATION_RE.match(location):
            raise BackupError(f"Invalid backup location: {location!r}")

        backup_file = self.backup_file_for(location)
        statement = build_backup_statement(self._settings.database, backup_file)
        logger.info(
            "Starting backup of %s on %s as %s to %s (password=***)",
            self._settings.database,
            self._settings.server,
            self._settings.user,
            backup_file,
        )
        await asyncio.to_thread(self._run_sqlcmd, credential, statement)
        logger.info("Database backup completed: %s", backup_file)
        return backup_file

    def _run_sqlcmd(self, credential: str, statement: str) -> None:
        cmd = [
            self._settings.sqlcmd_path,
            "-S",
            self._settings.server,
            "-U",
            self._settings.user,
            "-d",
            self._settings.database,
            "-b",
            "-Q",
            statement,
        ]
        try:
            result = subprocess.run(
                cmd,
                check=False,
                capture_output=True,
                text=True,
                timeout=self._settings.timeout_seconds,
                env={**os.environ, "SQLCMDPASSWORD": credential},
            )
        except FileNotFoundError as exc:
            raise BackupError(f"sqlcmd not found at {self._settings.sqlcmd_path}") from exc
        except subprocess.TimeoutExpired as exc:
            raise BackupError(
                f"Backup timed out after {self._settings.timeout_seconds}s"
            ) from exc
        if result.returncode != 0:
            detail = (result.stderr or result.stdout or "").strip().splitlines()
            message = detail[-1] if detail else "no output"
            raise BackupError(f"Backup failed (exit {result.returncode}): {message}")
