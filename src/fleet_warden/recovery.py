"""Repair of the orchestrator's task-queue file.

Killing the orchestrator mid-write can leave its task file truncated to zero
bytes. If a non-empty backup sibling exists it is copied over the empty
file. Any other combination is left alone; this is corruption repair, not a
backup/restore system.
"""

from __future__ import annotations

import os
import shutil
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from fleet_warden.config import StateFileConfig
    from fleet_warden.models import KillOutcome

log = structlog.get_logger()


class RecoveryStatus(str, Enum):
    RESTORED = "restored"
    HEALTHY = "healthy"
    PRIMARY_MISSING = "primary_missing"
    BACKUP_MISSING = "backup_missing"
    BACKUP_EMPTY = "backup_empty"
    FAILED = "failed"


@dataclass
class RecoveryResult:
    status: RecoveryStatus
    messages: list[str] = field(default_factory=list)

    @property
    def restored(self) -> bool:
        return self.status is RecoveryStatus.RESTORED


def restore_task_file(task_file: Path, backup_file: Path) -> RecoveryResult:
    """Restore task_file from backup_file iff task_file is empty and the backup is not.

    The copy goes to a temporary sibling first and is moved into place with
    os.replace, so readers never see a half-written file.
    """
    messages = [f"Checking task file {task_file}"]

    def finish(status: RecoveryStatus, message: str) -> RecoveryResult:
        messages.append(message)
        log.info("task_file_recovery", status=status.value, task_file=str(task_file))
        return RecoveryResult(status=status, messages=messages)

    try:
        if not task_file.exists():
            return finish(RecoveryStatus.PRIMARY_MISSING, f"⚠ Task file not found: {task_file}")
        if not backup_file.exists():
            return finish(
                RecoveryStatus.BACKUP_MISSING, f"⚠ Backup file not found: {backup_file}"
            )

        size = task_file.stat().st_size
        messages.append(f"Task file size: {size} bytes")
        if size != 0:
            return finish(RecoveryStatus.HEALTHY, "✓ Task file is intact, nothing to restore")

        messages.append("⚠ Task file is EMPTY, restoring from backup...")
        backup_size = backup_file.stat().st_size
        messages.append(f"Backup file size: {backup_size} bytes")
        if backup_size == 0:
            return finish(
                RecoveryStatus.BACKUP_EMPTY, "✗ Backup file is empty too, cannot recover"
            )

        tmp = task_file.with_name(task_file.name + ".restoring")
        try:
            shutil.copyfile(backup_file, tmp)
            os.replace(tmp, task_file)
        except OSError:
            tmp.unlink(missing_ok=True)
            raise
        messages.append("Replaced empty task file")
        return finish(
            RecoveryStatus.RESTORED, f"✓ Task file restored from backup ({backup_size} bytes)"
        )
    except OSError as e:
        log.warning("task_file_recovery_failed", task_file=str(task_file), error=str(e))
        messages.append(f"✗ Task file recovery failed: {e}")
        return RecoveryResult(status=RecoveryStatus.FAILED, messages=messages)


class TaskFileRecovery:
    """Post-termination hook that repairs the orchestrator's task file."""

    def __init__(self, state_file: StateFileConfig) -> None:
        self.task_file = state_file.task_path
        self.backup_file = state_file.backup_path

    def __call__(self, pid: int, outcome: KillOutcome) -> RecoveryResult:
        result = restore_task_file(self.task_file, self.backup_file)
        for message in result.messages:
            outcome.add(message)
        return result
