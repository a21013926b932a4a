"""Tests for session report rendering and writing."""

import json
import re
from datetime import datetime

from fleet_warden.models import (
    EventKind,
    MonitoringSession,
    ProcessEvent,
    ProcessKind,
    ProcessSnapshot,
)
from fleet_warden.report import CHART_COLORS, ReportWriter, render, render_html, render_series

T0 = datetime(2024, 3, 1, 12, 0, 5)


def _snap(minute, pid, mem, kind=ProcessKind.WORKER, account="acc1", second=5, day=1):
    return ProcessSnapshot(
        timestamp=datetime(2024, 3, day, 12, minute, second),
        pid=pid,
        kind=kind,
        memory_mb=mem,
        command_line=f"zbe1.exe --user-data-dir=C:\\p\\{account}",
        account=account,
    )


def test_series_labels_deduplicated_and_zero_filled():
    session = MonitoringSession(start_time=T0)
    session.snapshots = [
        _snap(0, 100, 300),
        _snap(0, 200, 400, account="acc2"),
        _snap(1, 100, 310),
        _snap(2, 200, 420, account="acc2"),
    ]

    block = render_series(session, ProcessKind.WORKER)

    assert block["labels"] == ["12:00", "12:01", "12:02"]
    by_pid = {ds["pid"]: ds for ds in block["datasets"]}
    assert by_pid[100]["data"] == [300, 310, 0]
    assert by_pid[200]["data"] == [400, 0, 420]
    assert all(len(ds["data"]) == len(block["labels"]) for ds in block["datasets"])


def test_series_last_reading_in_minute_wins():
    session = MonitoringSession(start_time=T0)
    session.snapshots = [_snap(0, 100, 300, second=5), _snap(0, 100, 350, second=45)]

    block = render_series(session, ProcessKind.WORKER)

    assert block["labels"] == ["12:00"]
    assert block["datasets"][0]["data"] == [350]


def test_series_labels_include_date_across_days():
    session = MonitoringSession(start_time=T0)
    session.snapshots = [_snap(59, 100, 300, day=1), _snap(0, 100, 310, day=2)]

    block = render_series(session, ProcessKind.WORKER)

    assert block["labels"] == ["03-01 12:59", "03-02 12:00"]


def test_dataset_labels_and_colors():
    session = MonitoringSession(start_time=T0)
    session.snapshots = [
        _snap(0, 100, 300),
        _snap(0, 101, 300, account="unknown"),
        _snap(0, 10, 9000, kind=ProcessKind.ORCHESTRATOR, account="unknown"),
    ]

    workers = render_series(session, ProcessKind.WORKER)["datasets"]
    orchestrators = render_series(session, ProcessKind.ORCHESTRATOR)["datasets"]

    assert [ds["label"] for ds in workers] == ["PID:100 (acc1)", "worker PID:101"]
    assert [ds["color"] for ds in workers] == list(CHART_COLORS[:2])
    assert orchestrators[0]["label"] == "orchestrator PID:10"


def test_render_document_shape():
    session = MonitoringSession(start_time=T0)
    session.snapshots = [
        _snap(0, 100, 300),
        _snap(0, 10, 9000, kind=ProcessKind.ORCHESTRATOR, account="unknown"),
    ]
    late = ProcessEvent(
        timestamp=datetime(2024, 3, 1, 12, 5), pid=100, kind=ProcessKind.WORKER,
        event=EventKind.STOPPED, account="acc1",
    )
    early = ProcessEvent(
        timestamp=datetime(2024, 3, 1, 12, 0), pid=100, kind=ProcessKind.WORKER,
        event=EventKind.STARTED, account="acc1",
    )
    session.events = [late, early]
    session.close(datetime(2024, 3, 1, 12, 30, 5), "OrchestratorKilled")

    document = render(session)

    assert document["session"] == {
        "start_time": "2024-03-01 12:00:05",
        "end_time": "2024-03-01 12:30:05",
        "duration_minutes": 30.0,
        "end_reason": "OrchestratorKilled",
        "is_active": False,
    }
    assert [e["event"] for e in document["events"]] == ["started", "stopped"]
    assert document["events"][0]["process_kind"] == "worker"
    assert document["orchestrator"]["datasets"][0]["pid"] == 10
    assert document["worker"]["datasets"][0]["pid"] == 100
    # Must serialize cleanly
    json.dumps(document)


def test_render_active_session():
    document = render(MonitoringSession(start_time=T0))

    assert document["session"]["is_active"] is True
    assert document["session"]["end_time"] is None
    assert document["session"]["duration_minutes"] == 0.0
    assert document["worker"] == {"labels": [], "datasets": []}


def test_html_embeds_document():
    session = MonitoringSession(start_time=T0)
    session.snapshots = [_snap(0, 100, 300, account="</script><b>")]
    document = render(session)

    page = render_html(document)

    assert page.startswith("<!DOCTYPE html>")
    assert "Resource Usage Report" in page
    match = re.search(
        r'<script type="application/json" id="report-data">(.*?)</script>', page, re.S
    )
    assert match is not None
    assert json.loads(match.group(1)) == document


def test_html_without_samples_has_no_charts():
    page = render_html(render(MonitoringSession(start_time=T0)))
    assert "No process events recorded." in page
    assert "plotly" not in page.lower().split('id="report-data"')[0]


def test_writer_session_paths(tmp_path):
    writer = ReportWriter(tmp_path)
    session = MonitoringSession(start_time=datetime(2024, 3, 1, 9, 5, 7))

    data_path, report_path = writer.session_paths(session)

    assert data_path == tmp_path / "data_2024-03-01_09-05-07.json"
    assert report_path == tmp_path / "report_2024-03-01_09-05-07.html"


def test_writer_creates_directory_and_files(tmp_path):
    writer = ReportWriter(tmp_path / "nested" / "reports")
    session = MonitoringSession(start_time=T0)
    session.snapshots = [_snap(0, 100, 300)]
    session.close(datetime(2024, 3, 1, 12, 10), "AppExit")

    path = writer.write_session(session)

    assert path.exists()
    data_path, _ = writer.session_paths(session)
    assert json.loads(data_path.read_text())["session"]["end_reason"] == "AppExit"
    assert not list(writer.reports_dir.glob("*.tmp"))


def test_latest_report_prefers_current(tmp_path):
    writer = ReportWriter(tmp_path)
    assert writer.latest_report() is None

    (tmp_path / "report_2024-03-01_09-00-00.html").write_text("old")
    (tmp_path / "report_2024-03-02_09-00-00.html").write_text("new")
    assert writer.latest_report() == tmp_path / "report_2024-03-02_09-00-00.html"

    writer.write_current(MonitoringSession(start_time=T0))
    assert writer.latest_report() == writer.current_report_path
