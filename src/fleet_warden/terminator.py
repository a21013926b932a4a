"""Policy enforcement: terminate workers over age/memory and a bloated orchestrator."""

from __future__ import annotations

from collections.abc import Callable, Sequence

import psutil
import structlog

from fleet_warden import logging as fw_logging
from fleet_warden.classifier import classify
from fleet_warden.config import Config
from fleet_warden.enumerator import ProcessEnumerator, memory_mb
from fleet_warden.models import KillOutcome, ProcessRecord

log = structlog.get_logger()

# Seconds to wait for the orchestrator to exit after the kill signal
ORCHESTRATOR_EXIT_TIMEOUT = 10.0

# Called with (pid, outcome) after each confirmed orchestrator termination
TerminationHook = Callable[[int, KillOutcome], object]


class Terminator:
    """Applies the kill policies to the fleet.

    Every per-process operation is caught on its own; failures only show up
    in the outcome's message log and never abort the rest of the batch.
    """

    def __init__(
        self,
        enumerator: ProcessEnumerator,
        hooks: Sequence[TerminationHook] = (),
        exit_timeout: float = ORCHESTRATOR_EXIT_TIMEOUT,
    ) -> None:
        self.enumerator = enumerator
        self.hooks = list(hooks)
        self.exit_timeout = exit_timeout

    def add_hook(self, hook: TerminationHook) -> None:
        """Register a callback run after each confirmed orchestrator termination."""
        self.hooks.append(hook)

    def enforce(
        self, config: Config, workers: Sequence[ProcessRecord] | None = None
    ) -> KillOutcome:
        """Run one enforcement pass.

        Args:
            config: Thresholds and policy flags for this pass
            workers: Pre-enumerated worker records; enumerated when omitted

        Returns:
            Counters per policy plus the ordered message log.
        """
        outcome = KillOutcome()
        try:
            self._enforce(config, workers, outcome)
        except Exception as e:
            log.exception("enforcement_failed", error=str(e))
            outcome.add(f"Critical error: {e}")
        log.info(
            "enforcement_complete",
            killed_by_age=outcome.killed_by_age,
            killed_by_memory=outcome.killed_by_memory,
            killed_main=outcome.killed_main,
            skipped=outcome.skipped,
        )
        return outcome

    def _enforce(
        self,
        config: Config,
        workers: Sequence[ProcessRecord] | None,
        outcome: KillOutcome,
    ) -> None:
        if workers is None:
            found = self.enumerator.list_processes(config.processes.worker_name)
            workers = found.records
            outcome.skipped += found.skipped
        outcome.add(f"Worker processes found: {len(workers)}")

        result = classify(workers, config.limits)
        # pid -> whether the OS accepted the kill during this pass
        terminated: dict[int, bool] = {}
        policy = config.policy

        if policy.kill_old and result.over_age:
            outcome.add(f"Killing {len(result.over_age)} old processes...")
            for record in result.over_age:
                if self._kill_worker(record.pid, terminated, outcome):
                    outcome.killed_by_age += 1

        if policy.kill_heavy and result.over_memory:
            outcome.add(f"Killing {len(result.over_memory)} heavy processes...")
            for record in result.over_memory:
                if self._kill_worker(record.pid, terminated, outcome):
                    outcome.killed_by_memory += 1

        if policy.kill_main:
            self._enforce_orchestrator(config, outcome)

    def _kill_worker(self, pid: int, terminated: dict[int, bool], outcome: KillOutcome) -> bool:
        if pid in terminated:
            if terminated[pid]:
                outcome.add(f"✓ PID {pid} already killed")
            else:
                outcome.add(f"✗ PID {pid} already failed, not retrying")
            return terminated[pid]
        try:
            psutil.Process(pid).kill()
        except Exception as e:
            terminated[pid] = False
            log.warning("kill_failed", pid=pid, error=str(e))
            outcome.add(f"✗ Failed to kill PID {pid} - {e}")
            return False
        terminated[pid] = True
        log.info("process_killed", pid=pid)
        outcome.add(f"✓ Killed PID {pid}")
        return True

    def _enforce_orchestrator(self, config: Config, outcome: KillOutcome) -> None:
        limit = config.limits.max_memory_for_orchestrator
        found = self.enumerator.list_processes(config.processes.orchestrator_name)
        outcome.skipped += found.skipped

        queued: list[ProcessRecord] = []
        for record in found.records:
            outcome.add(
                f"Orchestrator PID {record.pid} uses {record.memory_mb}MB (limit: {limit}MB)"
            )
            if record.memory_mb > limit:
                queued.append(record)
                outcome.add("  → Over the limit, will be killed")
            else:
                outcome.add("  → Within limit")

        if not queued:
            outcome.add("✓ Orchestrator within limits, not killing")
            return

        outcome.add(f"⚠ Killing {len(queued)} orchestrator process(es)...")
        for record in queued:
            if self._kill_orchestrator(record, outcome):
                outcome.killed_main += 1
                self._run_hooks(record.pid, outcome)

    def _kill_orchestrator(self, record: ProcessRecord, outcome: KillOutcome) -> bool:
        pid = record.pid
        try:
            proc = psutil.Process(pid)
            try:
                mem = memory_mb(proc.memory_info().rss)
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                mem = record.memory_mb
            proc.kill()
        except Exception as e:
            log.warning("orchestrator_kill_failed", pid=pid, error=str(e))
            outcome.add(f"✗ Failed to kill PID {pid} - {e}")
            return False

        log.info("orchestrator_killed", pid=pid, memory_mb=mem)
        outcome.add(f"☠ Killed orchestrator PID {pid} (was {mem}MB)")
        outcome.add(f"⏳ Waiting for process {pid} to exit...")
        try:
            proc.wait(timeout=self.exit_timeout)
        except psutil.TimeoutExpired:
            log.warning("orchestrator_exit_timeout", pid=pid, timeout=self.exit_timeout)
            fw_logging.orchestrator_exit_timeout(pid, self.exit_timeout)
            outcome.add(f"⚠ PID {pid} still running after {self.exit_timeout:g}s")
        except psutil.NoSuchProcess:
            pass  # Already gone
        return True

    def _run_hooks(self, pid: int, outcome: KillOutcome) -> None:
        for hook in self.hooks:
            try:
                hook(pid, outcome)
            except Exception as e:
                log.exception("termination_hook_failed", pid=pid, error=str(e))
                outcome.add(f"✗ Post-termination step failed: {e}")
