"""Data models shared by the enumerator, classifier, terminator and recorder."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

UNKNOWN_ACCOUNT = "unknown"


class ProcessKind(str, Enum):
    """Process-name category of a fleet member."""

    ORCHESTRATOR = "orchestrator"
    WORKER = "worker"


class EventKind(str, Enum):
    """Lifecycle event derived by diffing consecutive samples."""

    STARTED = "started"
    STOPPED = "stopped"


@dataclass(frozen=True, slots=True)
class ProcessRecord:
    """One live process as seen by a single enumeration pass."""

    pid: int
    memory_mb: int  # Floor of RSS bytes / 1 MiB
    age_minutes: int  # Whole minutes since process start
    command_line: str | None = None
    account: str = UNKNOWN_ACCOUNT

    @property
    def has_identity(self) -> bool:
        return bool(self.account) and self.account != UNKNOWN_ACCOUNT

    def display_label(self, show_raw: bool = False) -> str:
        """Label shown next to the process: account, or the raw command line."""
        if show_raw:
            return self.command_line or UNKNOWN_ACCOUNT
        return self.account or UNKNOWN_ACCOUNT


@dataclass(frozen=True, slots=True)
class ClassificationCounts:
    """Aggregate counts for the statistics panel."""

    total: int
    over_age: int
    over_memory: int
    with_identity: int
    without_identity: int


@dataclass(frozen=True)
class ClassificationResult:
    """Partition of the fleet produced by the classifier.

    over_age and over_memory overlap freely. Every record lands in exactly one
    of has_identity / no_identity; orchestrators always count as no_identity
    and never appear in the candidate sets.
    """

    over_age: tuple[ProcessRecord, ...] = ()
    over_memory: tuple[ProcessRecord, ...] = ()
    has_identity: tuple[ProcessRecord, ...] = ()
    no_identity: tuple[ProcessRecord, ...] = ()
    orchestrators: tuple[ProcessRecord, ...] = ()
    skipped: int = 0  # Records dropped because of per-process read errors

    @property
    def over_age_pids(self) -> frozenset[int]:
        return frozenset(r.pid for r in self.over_age)

    @property
    def over_memory_pids(self) -> frozenset[int]:
        return frozenset(r.pid for r in self.over_memory)

    def counts(self) -> ClassificationCounts:
        return ClassificationCounts(
            total=len(self.has_identity) + len(self.no_identity),
            over_age=len(self.over_age),
            over_memory=len(self.over_memory),
            with_identity=len(self.has_identity),
            without_identity=len(self.no_identity),
        )


@dataclass
class KillOutcome:
    """Result of one enforcement run.

    messages is the ordered log of every attempt; it is shown to the user
    and is the only record of partial failure.
    """

    killed_by_age: int = 0
    killed_by_memory: int = 0
    killed_main: int = 0
    skipped: int = 0
    messages: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        """Sum of the three counters (a process may count under age and memory)."""
        return self.killed_by_age + self.killed_by_memory + self.killed_main

    def add(self, message: str) -> None:
        self.messages.append(message)


@dataclass(frozen=True, slots=True)
class ProcessSnapshot:
    """One point-in-time reading for one process."""

    timestamp: datetime
    pid: int
    kind: ProcessKind
    memory_mb: int
    command_line: str = ""
    account: str = UNKNOWN_ACCOUNT
    is_alive: bool = True


@dataclass(frozen=True, slots=True)
class ProcessEvent:
    """A start or stop inferred from two consecutive samples."""

    timestamp: datetime
    pid: int
    kind: ProcessKind
    event: EventKind
    command_line: str = ""
    account: str = UNKNOWN_ACCOUNT


@dataclass
class MonitoringSession:
    """A window of continuous monitoring, closed by a checkpoint or shutdown."""

    start_time: datetime
    end_time: datetime | None = None
    snapshots: list[ProcessSnapshot] = field(default_factory=list)
    events: list[ProcessEvent] = field(default_factory=list)
    end_reason: str | None = None

    @property
    def is_active(self) -> bool:
        return self.end_time is None

    @property
    def duration_minutes(self) -> float:
        """Length of a closed session; 0.0 while active."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds() / 60

    def close(self, at: datetime, reason: str) -> None:
        """Set the end timestamp and reason.

        Raises:
            ValueError: Session already closed, or at precedes start_time.
        """
        if self.end_time is not None:
            raise ValueError("Session already closed")
        if at < self.start_time:
            raise ValueError(f"End time {at} precedes session start {self.start_time}")
        self.end_time = at
        self.end_reason = reason
