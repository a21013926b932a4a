"""Tests for process enumeration."""

from unittest.mock import MagicMock, patch

import psutil

from fleet_warden.enumerator import (
    ProcessEnumerator,
    extract_account,
    extract_account_from_args,
    memory_mb,
)
from fleet_warden.models import UNKNOWN_ACCOUNT

NOW = 1_700_000_000.0


def _proc(pid, name, rss=50 * 1024 * 1024, created=NOW - 300, cmdline=None):
    proc = MagicMock()
    proc.pid = pid
    proc.info = {"pid": pid, "name": name}
    proc.memory_info.return_value.rss = rss
    proc.create_time.return_value = created
    proc.cmdline.return_value = cmdline if cmdline is not None else [name]
    return proc


def _enumerate(procs, name="zbe1"):
    with patch("fleet_warden.enumerator.psutil.process_iter", return_value=procs):
        return ProcessEnumerator(clock=lambda: NOW).list_processes(name)


def test_memory_mb_floors():
    assert memory_mb(1048576) == 1
    assert memory_mb(1048575) == 0
    assert memory_mb(3 * 1048576 - 1) == 2


def test_extract_account_quoted_path():
    cmd = 'zbe1.exe --user-data-dir="C:\\profiles\\acc1" --headless'
    assert extract_account(cmd) == "acc1"


def test_extract_account_strips_trailing_separator():
    assert extract_account('zbe1.exe --user-data-dir="C:\\profiles\\acc1\\"') == "acc1"
    assert extract_account('zbe1.exe --user-data-dir="/home/u/profiles/acc2/"') == "acc2"


def test_extract_account_unquoted_argv():
    assert extract_account("zbe1.exe --user-data-dir=C:\\profiles\\acc3 --mute") == "acc3"


def test_extract_account_missing():
    assert extract_account("zbe1.exe --headless") is None
    assert extract_account("") is None
    assert extract_account(None) is None
    assert extract_account('zbe1.exe --user-data-dir=""') is None


def test_extract_account_from_args_keeps_spaces():
    args = ["zbe1.exe", "--user-data-dir=C:\\Users\\John Doe\\profiles\\acc1", "--mute"]
    assert extract_account_from_args(args) == "acc1"
    assert extract_account_from_args(["zbe1.exe", '--user-data-dir="C:\\p\\acc2\\"']) == "acc2"
    assert extract_account_from_args(["zbe1.exe", "--headless"]) is None
    assert extract_account_from_args([]) is None


def test_list_processes_account_from_profile_path_with_spaces():
    proc = _proc(
        100,
        "zbe1.exe",
        cmdline=["zbe1.exe", "--user-data-dir=C:\\Users\\John Doe\\profiles\\acc1"],
    )

    record = _enumerate([proc]).records[0]

    assert record.account == "acc1"
    assert record.command_line == "zbe1.exe --user-data-dir=C:\\Users\\John Doe\\profiles\\acc1"


def test_list_processes_builds_records():
    procs = [
        _proc(
            100,
            "zbe1.exe",
            rss=1500 * 1024 * 1024,
            created=NOW - 45 * 60 - 30,
            cmdline=["zbe1.exe", "--user-data-dir=C:\\profiles\\acc1"],
        ),
        _proc(101, "chrome.exe"),
    ]
    result = _enumerate(procs)

    assert result.skipped == 0
    assert len(result.records) == 1
    record = result.records[0]
    assert record.pid == 100
    assert record.memory_mb == 1500
    assert record.age_minutes == 45
    assert record.account == "acc1"
    assert record.command_line == "zbe1.exe --user-data-dir=C:\\profiles\\acc1"


def test_list_processes_matches_with_or_without_exe():
    procs = [_proc(1, "zbe1.exe"), _proc(2, "zbe1"), _proc(3, "zbe10.exe")]
    assert [r.pid for r in _enumerate(procs).records] == [1, 2]
    assert [r.pid for r in _enumerate(procs, name="zbe1.exe").records] == [1, 2]


def test_list_processes_name_is_exact():
    procs = [_proc(1, "ZennoPoster.exe"), _proc(2, "ZennoPosterHelper.exe")]
    assert [r.pid for r in _enumerate(procs, name="ZennoPoster").records] == [1]


def test_list_processes_skips_vanished_and_denied():
    gone = _proc(1, "zbe1.exe")
    gone.memory_info.side_effect = psutil.NoSuchProcess(1)
    denied = _proc(2, "zbe1.exe")
    denied.create_time.side_effect = psutil.AccessDenied(2)
    alive = _proc(3, "zbe1.exe")

    result = _enumerate([gone, denied, alive])

    assert [r.pid for r in result.records] == [3]
    assert result.skipped == 2


def test_unreadable_command_line_keeps_record():
    proc = _proc(5, "zbe1.exe")
    proc.cmdline.side_effect = psutil.AccessDenied(5)

    result = _enumerate([proc])

    assert len(result.records) == 1
    assert result.records[0].command_line is None
    assert result.records[0].account == UNKNOWN_ACCOUNT


def test_age_never_negative():
    # Clock skew: create_time slightly in the future
    result = _enumerate([_proc(7, "zbe1.exe", created=NOW + 5)])
    assert result.records[0].age_minutes == 0


def test_age_exactly_thirty_minutes():
    result = _enumerate([_proc(8, "zbe1.exe", created=NOW - 30 * 60)])
    assert result.records[0].age_minutes == 30
