"""Session reports.

render() turns a MonitoringSession into a self-describing document: session
metadata, one memory time series block per process kind and the event list.
render_html() embeds that document in a standalone page with interactive
Plotly charts. ReportWriter puts both on disk, once per closed session and
continuously for the live session.
"""

from __future__ import annotations

import html
import json
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any

import plotly.graph_objects as go
import structlog

from fleet_warden.models import UNKNOWN_ACCOUNT, MonitoringSession, ProcessKind, ProcessSnapshot

log = structlog.get_logger()

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
FILENAME_FORMAT = "%Y-%m-%d_%H-%M-%S"

CURRENT_DATA = "current_data.json"
CURRENT_REPORT = "current_report.html"

CHART_COLORS = (
    "#4ec9b0",
    "#ce9178",
    "#c586c0",
    "#9cdcfe",
    "#4fc1ff",
    "#f48771",
    "#b5cea8",
    "#d4d4d4",
    "#569cd6",
    "#dcdcaa",
)


def chart_color(index: int) -> str:
    return CHART_COLORS[index % len(CHART_COLORS)]


def _format(ts: datetime | None) -> str | None:
    return ts.strftime(TIMESTAMP_FORMAT) if ts else None


def _minute(ts: datetime) -> datetime:
    return ts.replace(second=0, microsecond=0)


def render_series(session: MonitoringSession, kind: ProcessKind) -> dict[str, Any]:
    """Build the labels/datasets block for one process kind.

    Labels are the sample minutes, de-duplicated and sorted. Each pid gets one
    dataset aligned to the labels; a minute without a reading is 0 MB, and
    several readings in one minute keep the last.
    """
    snapshots = [s for s in session.snapshots if s.kind is kind]
    minutes = sorted({_minute(s.timestamp) for s in snapshots})
    multi_day = len({m.date() for m in minutes}) > 1
    label_format = "%m-%d %H:%M" if multi_day else "%H:%M"
    index = {m: i for i, m in enumerate(minutes)}

    # Insertion order of first appearance decides dataset order
    by_pid: dict[int, list[int]] = {}
    first_seen: dict[int, ProcessSnapshot] = {}
    for snap in snapshots:
        series = by_pid.setdefault(snap.pid, [0] * len(minutes))
        series[index[_minute(snap.timestamp)]] = snap.memory_mb
        first_seen.setdefault(snap.pid, snap)

    datasets = []
    for i, (pid, data) in enumerate(by_pid.items()):
        first = first_seen[pid]
        account = first.account or UNKNOWN_ACCOUNT
        if kind is ProcessKind.WORKER and account != UNKNOWN_ACCOUNT:
            label = f"PID:{pid} ({account})"
        else:
            label = f"{kind.value} PID:{pid}"
        datasets.append(
            {
                "label": label,
                "pid": pid,
                "account": account,
                "data": data,
                "color": chart_color(i),
                "command_line": first.command_line,
            }
        )

    return {"labels": [m.strftime(label_format) for m in minutes], "datasets": datasets}


def render(session: MonitoringSession) -> dict[str, Any]:
    """Serialize a session into the report document."""
    events = sorted(session.events, key=lambda e: e.timestamp)
    return {
        "session": {
            "start_time": _format(session.start_time),
            "end_time": _format(session.end_time),
            "duration_minutes": round(session.duration_minutes, 1),
            "end_reason": session.end_reason,
            "is_active": session.is_active,
        },
        ProcessKind.ORCHESTRATOR.value: render_series(session, ProcessKind.ORCHESTRATOR),
        ProcessKind.WORKER.value: render_series(session, ProcessKind.WORKER),
        "events": [
            {
                "timestamp": _format(e.timestamp),
                "pid": e.pid,
                "process_kind": e.kind.value,
                "event": e.event.value,
                "command_line": e.command_line,
                "account": e.account or UNKNOWN_ACCOUNT,
            }
            for e in events
        ],
    }


_PAGE_STYLE = """
body {
  font-family: 'Iosevka', 'Consolas', monospace;
  background: #0d1117; color: #c9d1d9; margin: 0; padding: 15px;
}
.container { max-width: 1900px; margin: 0 auto; }
.panel {
  background: #161b22; border: 1px solid #30363d;
  padding: 12px 20px; border-radius: 6px; margin-bottom: 15px;
}
.event {
  padding: 6px 12px; margin-bottom: 4px; border-left: 3px solid #3fb950;
  background: #0d1117; font-size: 12px;
}
.event.stopped { border-left-color: #f85149; }
.pid { color: #58a6ff; font-weight: 600; }
"""


def _figure(title: str, block: dict[str, Any]) -> go.Figure:
    fig = go.Figure()
    for ds in block["datasets"]:
        fig.add_trace(
            go.Scatter(
                x=block["labels"],
                y=ds["data"],
                mode="lines+markers",
                name=ds["label"],
                line={"color": ds["color"]},
                hovertext=ds["command_line"] or None,
            )
        )
    fig.update_layout(
        title=title,
        template="plotly_dark",
        xaxis_title="Time",
        yaxis_title="Memory (MB)",
        hovermode="x unified",
        height=420,
    )
    return fig


def _session_panel(info: dict[str, Any]) -> str:
    rows = [f"<p><strong>Session start:</strong> {html.escape(info['start_time'])}</p>"]
    if info["is_active"]:
        rows.append("<p><strong>Status:</strong> Active (auto-updating)</p>")
    else:
        rows.append(f"<p><strong>Session end:</strong> {html.escape(info['end_time'])}</p>")
        rows.append(f"<p><strong>Duration:</strong> {info['duration_minutes']:.1f} minutes</p>")
        rows.append(f"<p><strong>End reason:</strong> {html.escape(info['end_reason'] or '')}</p>")
    return "\n".join(rows)


def _events_panel(events: list[dict[str, Any]]) -> str:
    if not events:
        return "<p>No process events recorded.</p>"
    rows = []
    for e in events:
        event = html.escape(e["event"])
        rows.append(
            f"<div class='event {event}' title='{html.escape(e['command_line'], quote=True)}'>"
            f"{html.escape(e['timestamp'])} "
            f"<span class='pid'>{e['process_kind']} PID:{e['pid']}</span> "
            f"{event} ({html.escape(e['account'])})</div>"
        )
    return "\n".join(rows)


def render_html(document: dict[str, Any]) -> str:
    """Render the report document as a standalone HTML page.

    The document itself is embedded as JSON (script#report-data) so the page
    carries the same data as the .json artifact.
    """
    charts = []
    include_js: str | bool = "cdn"
    for kind, title in (
        (ProcessKind.ORCHESTRATOR.value, "Orchestrator memory (MB)"),
        (ProcessKind.WORKER.value, "Worker memory (MB)"),
    ):
        block = document[kind]
        if not block["datasets"]:
            continue
        charts.append(
            _figure(title, block).to_html(full_html=False, include_plotlyjs=include_js)
        )
        include_js = False

    # "</" must not close the script element early
    data = json.dumps(document, ensure_ascii=False).replace("</", "<\\/")
    body = "\n".join(f"<div class='panel'>{c}</div>" for c in charts)
    return f"""<!DOCTYPE html>
<html>
<head>
<meta charset="utf-8">
<title>Resource Usage Report</title>
<style>{_PAGE_STYLE}</style>
</head>
<body>
<div class="container">
<div class="panel"><h1>Resource Usage Report</h1></div>
<div class="panel">{_session_panel(document["session"])}</div>
{body}
<div class="panel"><h2>Process events</h2>
{_events_panel(document["events"])}
</div>
</div>
<script type="application/json" id="report-data">{data}</script>
</body>
</html>
"""


def _atomic_write(path: Path, text: str) -> None:
    """Write via a temporary sibling and os.replace so readers never see a torn file."""
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


class ReportWriter:
    """Writes report artifacts into a fixed reports directory."""

    def __init__(self, reports_dir: Path) -> None:
        self.reports_dir = reports_dir

    @property
    def current_data_path(self) -> Path:
        return self.reports_dir / CURRENT_DATA

    @property
    def current_report_path(self) -> Path:
        return self.reports_dir / CURRENT_REPORT

    def session_paths(self, session: MonitoringSession) -> tuple[Path, Path]:
        """(data, report) paths for a closed session, named after its start time."""
        stamp = session.start_time.strftime(FILENAME_FORMAT)
        return (
            self.reports_dir / f"data_{stamp}.json",
            self.reports_dir / f"report_{stamp}.html",
        )

    def write(self, session: MonitoringSession, data_path: Path, report_path: Path) -> None:
        self.reports_dir.mkdir(parents=True, exist_ok=True)
        document = render(session)
        _atomic_write(data_path, json.dumps(document, indent=2, ensure_ascii=False))
        _atomic_write(report_path, render_html(document))

    def write_current(self, session: MonitoringSession) -> None:
        """Refresh the fixed-name artifacts of the live session."""
        self.write(session, self.current_data_path, self.current_report_path)

    def write_session(self, session: MonitoringSession) -> Path:
        """Write the timestamped artifacts of a closed session; returns the HTML path."""
        data_path, report_path = self.session_paths(session)
        self.write(session, data_path, report_path)
        log.info("session_report_written", path=str(report_path), snapshots=len(session.snapshots))
        return report_path

    def latest_report(self) -> Path | None:
        """Current report if present, else the newest timestamped one."""
        if self.current_report_path.exists():
            return self.current_report_path
        reports = sorted(self.reports_dir.glob("report_*.html"))
        return reports[-1] if reports else None
