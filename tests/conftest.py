"""Shared test fixtures for fleet-warden."""

from contextlib import ExitStack
from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterator
from unittest.mock import patch

import pytest

from fleet_warden.config import Config, LimitsConfig, PolicyConfig, ProcessNamesConfig
from fleet_warden.enumerator import EnumerationResult
from fleet_warden.models import UNKNOWN_ACCOUNT, ProcessRecord

WORKER = "zbe1"
ORCHESTRATOR = "ZennoPoster"


def make_record(
    pid: int = 100,
    memory_mb: int = 50,
    age_minutes: int = 5,
    account: str = UNKNOWN_ACCOUNT,
    command_line: str | None = None,
) -> ProcessRecord:
    """Create a ProcessRecord; the command line is derived from the account when omitted."""
    if command_line is None and account != UNKNOWN_ACCOUNT:
        command_line = f'zbe1.exe --user-data-dir="C:\\profiles\\{account}"'
    return ProcessRecord(
        pid=pid,
        memory_mb=memory_mb,
        age_minutes=age_minutes,
        command_line=command_line,
        account=account,
    )


def make_config(
    max_age: int = 30,
    max_memory: int = 1000,
    max_orchestrator_memory: int = 20000,
    kill_old: bool = True,
    kill_heavy: bool = True,
    kill_main: bool = False,
) -> Config:
    """Create a Config with the given limits and policy flags."""
    return Config(
        limits=LimitsConfig(
            max_memory_for_instance=max_memory,
            max_age_for_instance=max_age,
            max_memory_for_orchestrator=max_orchestrator_memory,
        ),
        policy=PolicyConfig(kill_old=kill_old, kill_heavy=kill_heavy, kill_main=kill_main),
        processes=ProcessNamesConfig(worker_name=WORKER, orchestrator_name=ORCHESTRATOR),
    )


class FakeEnumerator:
    """Stands in for ProcessEnumerator; returns whatever the test put in `processes`."""

    def __init__(self, processes: dict[str, list[ProcessRecord]] | None = None) -> None:
        self.processes: dict[str, list[ProcessRecord]] = processes or {}
        self.skipped: dict[str, int] = {}
        self.calls: list[str] = []
        self.error: Exception | None = None

    def list_processes(self, name: str) -> EnumerationResult:
        self.calls.append(name)
        if self.error is not None:
            raise self.error
        return EnumerationResult(
            records=list(self.processes.get(name, [])),
            skipped=self.skipped.get(name, 0),
        )


class FakeClock:
    """Deterministic clock advancing by `step` on every call."""

    def __init__(self, start: datetime | None = None, step: timedelta = timedelta(seconds=20)):
        self.now = start or datetime(2024, 3, 1, 12, 0, 0)
        self.step = step

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + self.step
        return current


@pytest.fixture
def fake_enumerator() -> FakeEnumerator:
    return FakeEnumerator()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


def _patch_config_paths(stack: ExitStack, base_path: Path) -> None:
    """Point every Config path property at base_path.

    Args:
        stack: ExitStack to register patches with
        base_path: Directory to use for all Config paths
    """
    # fmt: off
    stack.enter_context(patch.object(
        Config, "config_dir",
        new_callable=lambda: property(lambda self: base_path / "config")
    ))
    stack.enter_context(patch.object(
        Config, "data_dir",
        new_callable=lambda: property(lambda self: base_path / "data")
    ))
    stack.enter_context(patch.object(
        Config, "state_dir",
        new_callable=lambda: property(lambda self: base_path / "state")
    ))
    # fmt: on


@pytest.fixture
def patched_config_paths(tmp_path: Path) -> Iterator[Path]:
    """Redirect config, data and state directories into tmp_path."""
    with ExitStack() as stack:
        _patch_config_paths(stack, tmp_path)
        yield tmp_path
