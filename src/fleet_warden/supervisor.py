"""Background supervisor for fleet-warden.

Wires the enumerator, terminator and session recorder together: runs the
kill policies on an interval and checkpoints the monitoring session whenever
an orchestrator is killed.
"""

import asyncio
import os
import signal
from dataclasses import dataclass
from datetime import datetime

import psutil
import structlog

from fleet_warden import logging as fw_logging
from fleet_warden.classifier import collect_stats
from fleet_warden.config import Config
from fleet_warden.enumerator import ProcessEnumerator
from fleet_warden.models import ClassificationResult, KillOutcome
from fleet_warden.recorder import DEFAULT_STOP_REASON, ORCHESTRATOR_KILLED, SessionRecorder
from fleet_warden.recovery import TaskFileRecovery
from fleet_warden.report import ReportWriter
from fleet_warden.terminator import Terminator

log = structlog.get_logger()


class AlreadyRunning(RuntimeError):
    """Another live supervisor owns the PID file."""

    def __init__(self, pid: int) -> None:
        super().__init__(f"Supervisor already running (PID {pid})")
        self.pid = pid


@dataclass
class SupervisorState:
    """Runtime state of the supervisor."""

    running: bool = False
    check_count: int = 0
    last_check_time: datetime | None = None
    last_outcome: KillOutcome | None = None

    def update_check(self, outcome: KillOutcome) -> None:
        """Update state after an enforcement run."""
        self.check_count += 1
        self.last_outcome = outcome
        self.last_check_time = datetime.now()


class Supervisor:
    """Owns the core components and drives them from one event loop."""

    def __init__(self, config: Config, enumerator: ProcessEnumerator | None = None):
        self.config = config
        self.state = SupervisorState()

        self.enumerator = enumerator or ProcessEnumerator()
        self.terminator = Terminator(self.enumerator, hooks=[TaskFileRecovery(config.state_file)])
        self.writer = ReportWriter(config.reports_dir)
        self.recorder = SessionRecorder(self.enumerator, config.processes, writer=self.writer)

        self._shutdown_event = asyncio.Event()
        self._auto_check_task: asyncio.Task | None = None

    def stats(self) -> ClassificationResult:
        """Classify the current fleet for display."""
        return collect_stats(self.enumerator, self.config)

    def check_and_kill(self) -> KillOutcome:
        """Enforce the kill policies once.

        Runs on the calling thread. A killed orchestrator restarts the fleet,
        so the monitoring session is checkpointed around it.
        """
        outcome = self.terminator.enforce(self.config)
        self.state.update_check(outcome)
        fw_logging.enforcement_summary(outcome)
        if outcome.killed_main > 0 and self.recorder.is_running:
            closed = self.recorder.checkpoint(ORCHESTRATOR_KILLED)
            if closed is not None:
                fw_logging.session_checkpoint(ORCHESTRATOR_KILLED, len(closed.snapshots))
        return outcome

    def start_monitoring(self) -> None:
        interval = self.config.monitoring.interval_minutes
        self.recorder.start(interval)
        fw_logging.monitoring_started(interval, str(self.writer.reports_dir))

    def stop_monitoring(self, reason: str = DEFAULT_STOP_REASON) -> None:
        closed = self.recorder.stop(reason)
        if closed is not None:
            fw_logging.session_checkpoint(reason, len(closed.snapshots))
            _, report_path = self.writer.session_paths(closed)
            if report_path.exists():
                fw_logging.report_written(str(report_path))

    async def start(self) -> None:
        """Start the supervisor and block until shutdown is requested."""
        log.info(
            "supervisor_config",
            worker_name=self.config.processes.worker_name,
            orchestrator_name=self.config.processes.orchestrator_name,
            kill_old=self.config.policy.kill_old,
            kill_heavy=self.config.policy.kill_heavy,
            kill_main=self.config.policy.kill_main,
            auto_check_interval=self.config.policy.auto_check_interval,
        )
        fw_logging.config_summary(self.config)

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, lambda s=sig: self._handle_signal(s))
            except NotImplementedError:
                # Windows event loops have no signal handler support
                signal.signal(sig, lambda signum, frame: self._request_shutdown(loop))

        pid = self._check_already_running()
        if pid is not None:
            fw_logging.already_running(pid)
            raise AlreadyRunning(pid)

        self._write_pid_file()

        if self.config.monitoring.enabled:
            self.start_monitoring()

        self.state.running = True
        log.info("supervisor_started")
        fw_logging.supervisor_started()

        if self.config.policy.auto_check_interval > 0:
            self._auto_check_task = asyncio.create_task(self._auto_check())

        await self._shutdown_event.wait()

    async def stop(self) -> None:
        """Stop the supervisor gracefully."""
        log.info("supervisor_stopping")
        fw_logging.supervisor_stopping()
        self.state.running = False

        if self._auto_check_task:
            self._auto_check_task.cancel()
            try:
                await self._auto_check_task
            except asyncio.CancelledError:
                pass
            self._auto_check_task = None

        # Waits out an in-flight sample and writes reports
        await asyncio.to_thread(self.stop_monitoring, DEFAULT_STOP_REASON)
        self._remove_pid_file()

        log.info("supervisor_stopped")
        fw_logging.supervisor_stopped()

    def _handle_signal(self, sig: signal.Signals) -> None:
        """SIGINT/SIGTERM: wake start() so the caller can stop()."""
        log.info("signal_received", signal=sig.name)
        fw_logging.signal_received(sig.name)
        self._shutdown_event.set()

    def _request_shutdown(self, loop: asyncio.AbstractEventLoop) -> None:
        loop.call_soon_threadsafe(self._shutdown_event.set)

    async def _auto_check(self) -> None:
        """Run enforcement every auto_check_interval minutes."""
        interval = self.config.policy.auto_check_interval * 60
        while not self._shutdown_event.is_set():
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=interval)
                break
            except asyncio.TimeoutError:
                # Enforcement blocks (orchestrator exit wait), keep it off the loop
                await asyncio.to_thread(self.check_and_kill)

    def _write_pid_file(self) -> None:
        """Record our pid in the state directory."""
        self.config.pid_path.parent.mkdir(parents=True, exist_ok=True)
        self.config.pid_path.write_text(str(os.getpid()))
        log.debug("pid_file_written", path=str(self.config.pid_path))

    def _remove_pid_file(self) -> None:
        """Delete the pid file if present."""
        if self.config.pid_path.exists():
            self.config.pid_path.unlink()
            log.debug("pid_file_removed")

    def _check_already_running(self) -> int | None:
        """Return the PID of another live supervisor, or None.

        The pid must belong to a process whose command line names
        fleet-warden; a reused pid after a reboot counts as stale.
        """
        if not self.config.pid_path.exists():
            return None

        try:
            pid = int(self.config.pid_path.read_text().strip())
        except ValueError:
            log.warning("pid_file_invalid", reason="not a number")
            self._remove_pid_file()
            return None

        if pid == os.getpid():
            return None

        try:
            proc = psutil.Process(pid)
            cmdline_str = " ".join(proc.cmdline()).lower()
            if "fleet-warden" in cmdline_str or "fleet_warden" in cmdline_str:
                log.info("supervisor_already_running_verified", pid=pid)
                return pid
            log.warning(
                "pid_file_stale", reason="different process", pid=pid, actual_process=proc.name()
            )
            self._remove_pid_file()
            return None
        except psutil.NoSuchProcess:
            log.warning("pid_file_stale", reason="process not found", pid=pid)
            self._remove_pid_file()
            return None
        except psutil.AccessDenied:
            # Unreadable cmdline: treat as a live supervisor rather than run twice
            log.warning("pid_check_access_denied", pid=pid)
            return pid


async def run_supervisor(config: Config | None = None) -> None:
    """Run the supervisor until shutdown.

    Args:
        config: Optional config, loads from file if not provided
    """
    if config is None:
        config = Config.load()

    fw_logging.configure(config)

    supervisor = Supervisor(config)

    try:
        await supervisor.start()
    except AlreadyRunning:
        raise
    except Exception as e:
        log.exception("supervisor_crashed", error=str(e))
        raise
    finally:
        if supervisor.state.running:
            await supervisor.stop()
