"""Process enumeration via psutil.

Lists live processes by image name and turns each into a ProcessRecord.
Processes that exit or deny access mid-read are dropped and counted, never
raised: a partial sweep is always preferable to a failed one.
"""

from __future__ import annotations

import re
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import PureWindowsPath

import psutil
import structlog

from fleet_warden.models import UNKNOWN_ACCOUNT, ProcessRecord

log = structlog.get_logger()

BYTES_PER_MB = 1024 * 1024

USER_DATA_DIR_FLAG = "--user-data-dir="

# --user-data-dir="C:\profiles\acc1" (raw Windows command line) or
# --user-data-dir=C:\profiles\acc1 (unquoted, no spaces)
_USER_DATA_DIR_RE = re.compile(r'--user-data-dir=(?:"(?P<quoted>[^"]+)"|(?P<bare>[^\s"]+))')

_PROCESS_ERRORS = (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess)


def extract_account(command_line: str | None) -> str | None:
    """Return the final path segment of the --user-data-dir argument.

    Trailing path separators are stripped first. Returns None when the
    argument is absent or empty.

    Examples:
        >>> extract_account('zbe1.exe --user-data-dir="C:\\\\profiles\\\\acc1\\\\"')
        'acc1'
        >>> extract_account("zbe1.exe --headless") is None
        True
    """
    if not command_line:
        return None
    match = _USER_DATA_DIR_RE.search(command_line)
    if not match:
        return None
    return _account_from_path(match.group("quoted") or match.group("bare") or "")


def extract_account_from_args(args: list[str]) -> str | None:
    """Like extract_account(), but over an argv list.

    psutil hands back Windows argv already de-quoted, so a profile path with
    spaces is one element here and would be cut short by the string form.
    """
    for arg in args:
        if arg.startswith(USER_DATA_DIR_FLAG):
            return _account_from_path(arg[len(USER_DATA_DIR_FLAG) :])
    return None


def _account_from_path(path: str) -> str | None:
    path = path.strip('"').strip("\\/")
    if not path:
        return None
    return PureWindowsPath(path).name or None


def memory_mb(rss_bytes: int) -> int:
    """Resident memory in whole megabytes (floor division)."""
    return rss_bytes // BYTES_PER_MB


def _base_name(name: str) -> str:
    if name.lower().endswith(".exe"):
        return name[:-4]
    return name


@dataclass
class EnumerationResult:
    """Records found for one process name, plus how many were dropped."""

    records: list[ProcessRecord] = field(default_factory=list)
    skipped: int = 0


class ProcessEnumerator:
    """Enumerates OS processes by exact image name."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock

    def list_processes(self, name: str) -> EnumerationResult:
        """List live processes whose image name is `name`.

        A trailing ".exe" is ignored on both sides, so "zbe1" matches
        "zbe1.exe" on Windows.
        """
        wanted = _base_name(name)
        result = EnumerationResult()
        now = self._clock()

        for proc in psutil.process_iter(["pid", "name"]):
            proc_name = proc.info.get("name") or ""
            if _base_name(proc_name) != wanted:
                continue
            try:
                with proc.oneshot():
                    rss = proc.memory_info().rss
                    created = proc.create_time()
            except _PROCESS_ERRORS as e:
                result.skipped += 1
                log.debug("process_read_skipped", pid=proc.pid, name=name, error=type(e).__name__)
                continue

            args = self._cmdline(proc)
            result.records.append(
                ProcessRecord(
                    pid=proc.pid,
                    memory_mb=memory_mb(rss),
                    age_minutes=max(0, int((now - created) // 60)),
                    command_line=" ".join(args) or None,
                    account=extract_account_from_args(args) or UNKNOWN_ACCOUNT,
                )
            )

        return result

    def command_line(self, proc: psutil.Process) -> str | None:
        """Full command line of a process, or None when it can't be read."""
        return " ".join(self._cmdline(proc)) or None

    def _cmdline(self, proc: psutil.Process) -> list[str]:
        try:
            return proc.cmdline() or []
        except (*_PROCESS_ERRORS, OSError):
            return []
