"""Tests for shared data models."""

from datetime import datetime, timedelta

import pytest

from fleet_warden.models import UNKNOWN_ACCOUNT, KillOutcome, MonitoringSession
from tests.conftest import make_record

T0 = datetime(2024, 3, 1, 12, 0, 0)


def test_record_identity():
    assert make_record(account="acc1").has_identity
    assert not make_record().has_identity
    assert not make_record(account="").has_identity


def test_display_label():
    record = make_record(account="acc1")
    assert record.display_label() == "acc1"
    assert record.display_label(show_raw=True) == record.command_line
    assert make_record().display_label(show_raw=True) == UNKNOWN_ACCOUNT


def test_kill_outcome_total_counts_overlap():
    outcome = KillOutcome(killed_by_age=1, killed_by_memory=1, killed_main=1)
    assert outcome.total == 3


def test_session_active_until_closed():
    session = MonitoringSession(start_time=T0)
    assert session.is_active
    assert session.duration_minutes == 0.0

    session.close(T0 + timedelta(minutes=90), "AppExit")

    assert not session.is_active
    assert session.duration_minutes == 90.0
    assert session.end_reason == "AppExit"


def test_session_close_twice_rejected():
    session = MonitoringSession(start_time=T0)
    session.close(T0, "AppExit")
    with pytest.raises(ValueError, match="already closed"):
        session.close(T0 + timedelta(minutes=1), "AppExit")


def test_session_end_before_start_rejected():
    session = MonitoringSession(start_time=T0)
    with pytest.raises(ValueError):
        session.close(T0 - timedelta(seconds=1), "AppExit")
    assert session.is_active
