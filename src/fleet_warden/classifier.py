"""Fleet classification against the configured limits."""

from __future__ import annotations

from collections.abc import Iterable
from typing import TYPE_CHECKING

from fleet_warden.config import LimitsConfig
from fleet_warden.models import ClassificationResult, ProcessKind, ProcessRecord

if TYPE_CHECKING:
    from fleet_warden.config import Config
    from fleet_warden.enumerator import ProcessEnumerator


def is_over_age(record: ProcessRecord, limits: LimitsConfig) -> bool:
    """Strictly older than max_age_for_instance (equal is not over-age)."""
    return record.age_minutes > limits.max_age_for_instance


def is_over_memory(record: ProcessRecord, limits: LimitsConfig) -> bool:
    """Strictly larger than max_memory_for_instance."""
    return record.memory_mb > limits.max_memory_for_instance


def classify(
    workers: Iterable[ProcessRecord],
    limits: LimitsConfig,
    orchestrators: Iterable[ProcessRecord] = (),
    skipped: int = 0,
) -> ClassificationResult:
    """Partition workers into kill candidates and identity groups.

    Args:
        workers: Worker records from one enumeration pass
        limits: Age and memory thresholds
        orchestrators: Orchestrator records; reported as no-identity only
        skipped: Records the enumerator dropped, carried through for reporting
    """
    over_age: list[ProcessRecord] = []
    over_memory: list[ProcessRecord] = []
    has_identity: list[ProcessRecord] = []
    no_identity: list[ProcessRecord] = []

    for record in workers:
        if is_over_age(record, limits):
            over_age.append(record)
        if is_over_memory(record, limits):
            over_memory.append(record)
        if record.has_identity:
            has_identity.append(record)
        else:
            no_identity.append(record)

    orchestrators = tuple(orchestrators)
    no_identity.extend(orchestrators)

    return ClassificationResult(
        over_age=tuple(over_age),
        over_memory=tuple(over_memory),
        has_identity=tuple(has_identity),
        no_identity=tuple(no_identity),
        orchestrators=orchestrators,
        skipped=skipped,
    )


def collect_stats(enumerator: ProcessEnumerator, config: Config) -> ClassificationResult:
    """Enumerate the whole fleet and classify it for the statistics panel."""
    workers = enumerator.list_processes(config.processes.worker_name)
    orchestrators = enumerator.list_processes(config.processes.orchestrator_name)
    return classify(
        workers.records,
        config.limits,
        orchestrators=orchestrators.records,
        skipped=workers.skipped + orchestrators.skipped,
    )


def describe(record: ProcessRecord, kind: ProcessKind, show_raw: bool = False) -> str:
    """One-line description used by the statistics output."""
    if kind is ProcessKind.ORCHESTRATOR:
        return (
            f"pid: {record.pid}, type: orchestrator, "
            f"age: {record.age_minutes}Min, mem: {record.memory_mb}Mb"
        )
    return (
        f"pid: {record.pid}, age: {record.age_minutes}Min, "
        f"mem: {record.memory_mb}Mb, arg: {record.display_label(show_raw)}"
    )
