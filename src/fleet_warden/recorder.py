"""Session-based resource monitoring.

The recorder samples the fleet on a background timer, appends one snapshot
per live process to the active MonitoringSession, and derives started/stopped
events by diffing each sample against the previous one. A checkpoint closes
the session and opens a new one so the timeline splits cleanly around
disruptive events such as an orchestrator kill.

Every mutation of session state happens under one lock, so timer ticks,
checkpoints and stop() never interleave.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

import structlog

from fleet_warden import logging as fw_logging
from fleet_warden.config import ProcessNamesConfig
from fleet_warden.enumerator import ProcessEnumerator
from fleet_warden.models import (
    UNKNOWN_ACCOUNT,
    EventKind,
    MonitoringSession,
    ProcessEvent,
    ProcessKind,
    ProcessSnapshot,
)
from fleet_warden.report import ReportWriter

log = structlog.get_logger()

DEFAULT_STOP_REASON = "AppExit"
ORCHESTRATOR_KILLED = "OrchestratorKilled"


@dataclass
class RecorderStats:
    """Counters over the recorder's lifetime."""

    sample_count: int = 0
    failed_samples: int = 0
    skipped_processes: int = 0
    last_sample_time: datetime | None = None


class SessionRecorder:
    """Timer-driven sampler that accumulates monitoring sessions."""

    def __init__(
        self,
        enumerator: ProcessEnumerator,
        processes: ProcessNamesConfig,
        writer: ReportWriter | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        """Initialize the recorder.

        Args:
            enumerator: Source of process records
            processes: Image names of orchestrator and worker processes
            writer: Report writer; None disables all report output
            clock: Source of sample timestamps
        """
        self.enumerator = enumerator
        self.processes = processes
        self.writer = writer
        self.stats = RecorderStats()
        self._clock = clock

        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._running = False
        self._interval_seconds = 60.0

        self._session: MonitoringSession | None = None
        self._closed: list[MonitoringSession] = []
        # pid -> last snapshot seen; the baseline for start/stop detection
        self._baseline: dict[int, ProcessSnapshot] = {}

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def session(self) -> MonitoringSession | None:
        """The active session, or None when stopped."""
        return self._session

    @property
    def sessions(self) -> list[MonitoringSession]:
        """All sessions of this recorder, oldest first, the active one last."""
        with self._lock:
            result = list(self._closed)
            if self._session is not None:
                result.append(self._session)
            return result

    def start(self, interval_minutes: float = 1) -> None:
        """Open a new session and arm the timer.

        The first sample is taken one interval later; start() never samples
        synchronously so it never blocks the caller on enumeration.
        """
        with self._lock:
            if self._running:
                return
            self._interval_seconds = interval_minutes * 60
            self._session = MonitoringSession(start_time=self._clock())
            self._baseline.clear()
            self._stop_event.clear()
            self._running = True
            self._thread = threading.Thread(
                target=self._timer_loop,
                daemon=True,
                name="SessionRecorder",
            )
            self._thread.start()
        log.info("recorder_started", interval_minutes=interval_minutes)

    def stop(
        self, reason: str = DEFAULT_STOP_REASON, timeout: float | None = 5.0
    ) -> MonitoringSession | None:
        """Cancel the timer, then close and flush the active session.

        A sample already in progress finishes first (it holds the lock).

        Returns:
            The closed session, or None if the recorder was not running.
        """
        with self._lock:
            if not self._running:
                return None
            self._running = False
            self._stop_event.set()
            closed = self._close_session(reason)
            thread, self._thread = self._thread, None

        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)
        log.info("recorder_stopped", reason=reason)
        return closed

    def checkpoint(self, reason: str = ORCHESTRATOR_KILLED) -> MonitoringSession | None:
        """Close the active session and open a new one.

        The diff baseline is cleared and the new session is sampled
        immediately, so it is never empty at birth.

        Returns:
            The closed session, or None if the recorder was not running.
        """
        with self._lock:
            if not self._running or self._session is None:
                return None
            closed = self._close_session(reason)
            self._session = MonitoringSession(start_time=closed.end_time or self._clock())
            self._baseline.clear()
            self._sample_locked()
        log.info("recorder_checkpoint", reason=reason, start_time=str(closed.start_time))
        return closed

    def sample(self) -> bool:
        """Run the sampling routine once.

        Returns:
            True if a sample was recorded, False if stopped or the sample failed.
        """
        with self._lock:
            if not self._running or self._session is None:
                return False
            return self._sample_locked()

    def _timer_loop(self) -> None:
        """Background timer: one tick per interval until stop()."""
        while not self._stop_event.wait(timeout=self._interval_seconds):
            self.sample()

    def _sample_locked(self) -> bool:
        try:
            self._collect()
        except Exception as e:
            self.stats.failed_samples += 1
            log.exception("sample_failed", error=str(e))
            fw_logging.sample_failed(str(e))
            return False
        return True

    def _collect(self) -> None:
        session = self._session
        assert session is not None
        timestamp = self._clock()
        current: dict[int, ProcessSnapshot] = {}

        for kind, name in (
            (ProcessKind.ORCHESTRATOR, self.processes.orchestrator_name),
            (ProcessKind.WORKER, self.processes.worker_name),
        ):
            found = self.enumerator.list_processes(name)
            self.stats.skipped_processes += found.skipped
            for record in found.records:
                snapshot = ProcessSnapshot(
                    timestamp=timestamp,
                    pid=record.pid,
                    kind=kind,
                    memory_mb=record.memory_mb,
                    command_line=record.command_line or "",
                    account=record.account or UNKNOWN_ACCOUNT,
                )
                session.snapshots.append(snapshot)
                current[record.pid] = snapshot

        for pid, last in self._baseline.items():
            if pid not in current:
                session.events.append(self._event(timestamp, last, EventKind.STOPPED))
        for pid, snapshot in current.items():
            if pid not in self._baseline:
                session.events.append(self._event(timestamp, snapshot, EventKind.STARTED))

        self._baseline = current
        self.stats.sample_count += 1
        self.stats.last_sample_time = timestamp
        log.debug("sample_recorded", processes=len(current), snapshots=len(session.snapshots))

        if self.writer is not None:
            try:
                self.writer.write_current(session)
            except OSError as e:
                log.error("report_write_failed", error=str(e), current=True)

    @staticmethod
    def _event(timestamp: datetime, snapshot: ProcessSnapshot, kind: EventKind) -> ProcessEvent:
        return ProcessEvent(
            timestamp=timestamp,
            pid=snapshot.pid,
            kind=snapshot.kind,
            event=kind,
            command_line=snapshot.command_line,
            account=snapshot.account,
        )

    def _close_session(self, reason: str) -> MonitoringSession:
        session = self._session
        assert session is not None
        session.close(self._clock(), reason)
        self._closed.append(session)
        self._session = None
        self._flush(session)
        return session

    def _flush(self, session: MonitoringSession) -> None:
        if self.writer is None:
            return
        try:
            self.writer.write_session(session)
        except OSError as e:
            log.error("report_write_failed", error=str(e), start_time=str(session.start_time))
