"""Operator-facing console output and the machine log file.

Two channels:

* the console: short Rich-marked-up lines for whoever runs `fleet-warden run`
  (Icon marks, a level tag, and one helper per supervisor event), and
* the log file: structlog events rendered as JSON Lines into a rotating file
  under the state directory, set up by configure().

Source modules log machine events with `structlog.get_logger()` and call the
helpers below only for what an operator should see.
"""

from __future__ import annotations

import logging
import logging.handlers
from datetime import datetime
from typing import TYPE_CHECKING

import structlog
from rich.console import Console
from rich.markup import escape

if TYPE_CHECKING:
    from fleet_warden.config import Config
    from fleet_warden.models import KillOutcome

_console = Console(highlight=False)


# ── Console ──────────────────────────────────────────────────────────────────


class Icon:
    """Rich-marked-up glyphs placed between the level tag and the message."""

    OK = "[bold green]✓[/]"
    FAIL = "[bold red]✗[/]"
    WAIT = "⏳"
    KILL = "[bold red]☠[/]"
    SAVE = "💾"
    CHECKPOINT = "[magenta]◆[/]"
    SIGNAL = "⚡"


_TAGS = {
    "info": "[bright_blue]\\[info][/]",
    "warn": "[yellow]\\[warn][/]",
    "error": "[bold red]\\[err][/] ",
}


def log(level: str, msg: str, icon: str = "") -> None:
    """Print one console line: clock time, level tag, optional icon, message.

    msg may contain Rich markup; interpolate untrusted text through escape().
    """
    parts = [f"[dim]{datetime.now():%H:%M:%S}[/]", _TAGS.get(level, f"[{level}]")]
    if icon:
        parts.append(icon)
    parts.append(msg)
    _console.print(" ".join(parts))


def info(msg: str, icon: str = "") -> None:
    log("info", msg, icon)


def warn(msg: str, icon: str = "") -> None:
    log("warn", msg, icon)


def error(msg: str, icon: str = "") -> None:
    log("error", msg, icon)


# ── Supervisor events ────────────────────────────────────────────────────────


def supervisor_started() -> None:
    info("Supervisor started", Icon.OK)


def supervisor_stopping() -> None:
    info("Supervisor stopping...", Icon.WAIT)


def supervisor_stopped() -> None:
    info("Supervisor stopped", Icon.OK)


def signal_received(name: str) -> None:
    info(f"Got [bold]{name}[/], shutting down", Icon.SIGNAL)


def already_running(pid: int) -> None:
    error(f"Another supervisor already running [dim](PID {pid})[/]", Icon.FAIL)


def config_summary(config: Config) -> None:
    """Thresholds and enabled kill policies, printed once at startup."""
    limits = config.limits
    policy = config.policy
    switches = (
        ("old", policy.kill_old),
        ("heavy", policy.kill_heavy),
        ("main", policy.kill_main),
    )
    flags = [name for name, on in switches if on]
    info(
        f"Limits: age>[cyan]{limits.max_age_for_instance}[/]min, "
        f"mem>[cyan]{limits.max_memory_for_instance}[/]MB, "
        f"main>[cyan]{limits.max_memory_for_orchestrator}[/]MB "
        f"[dim](kill: {', '.join(flags) or 'none'})[/]"
    )


def monitoring_started(interval_minutes: int, reports_dir: str) -> None:
    info(f"Monitoring every [cyan]{interval_minutes}[/]min → [cyan]{escape(reports_dir)}[/]")


def enforcement_summary(outcome: KillOutcome) -> None:
    """Counters of one enforcement pass; a quiet line when nothing died."""
    if outcome.total == 0:
        info("[dim]Check complete, nothing killed[/]", Icon.OK)
        return
    info(
        f"Killed [bold]{outcome.total}[/] "
        f"[dim](age {outcome.killed_by_age}, mem {outcome.killed_by_memory}, "
        f"main {outcome.killed_main})[/]",
        Icon.KILL,
    )


def session_checkpoint(reason: str, snapshot_count: int) -> None:
    info(f"Session closed [dim]({escape(reason)}, {snapshot_count} snapshots)[/]", Icon.CHECKPOINT)


def report_written(path: str) -> None:
    info(f"[dim]Report saved: {escape(path)}[/]", Icon.SAVE)


def orchestrator_exit_timeout(pid: int, timeout: float) -> None:
    warn(f"Orchestrator [dim](PID {pid})[/] still running after [cyan]{timeout:g}[/]s", Icon.WAIT)


def sample_failed(error_msg: str) -> None:
    error(f"Sample failed: {escape(error_msg)}", Icon.FAIL)


# ── Log file ─────────────────────────────────────────────────────────────────


def _add_source(source: str) -> structlog.types.Processor:
    """Processor stamping every event with the emitting component."""

    def stamp(
        logger: structlog.types.WrappedLogger,
        method_name: str,
        event_dict: structlog.types.EventDict,
    ) -> structlog.types.EventDict:
        event_dict["source"] = source
        return event_dict

    return stamp


def _base_processors(source: str) -> list[structlog.types.Processor]:
    # Local time, to line up with sample timestamps in the reports
    return [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso", utc=False, key="ts"),
        structlog.processors.add_log_level,
        _add_source(source),
    ]


def _rotating_handler(config: Config, source: str) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        config.log_path,
        maxBytes=config.system.log_max_bytes,
        backupCount=config.system.log_backup_count,
        encoding="utf-8",
    )
    handler.setLevel(logging.INFO)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=structlog.processors.JSONRenderer(),
            # Records from plain stdlib loggers get the same fields
            foreign_pre_chain=[
                *_base_processors(source),
                structlog.processors.format_exc_info,
            ],
        )
    )
    return handler


def configure(config: Config, source: str = "supervisor") -> None:
    """Route structlog events (INFO and up) to config.log_path as JSON Lines.

    Replaces whatever handlers the root logger had. Nothing is written to the
    console from here; that is what the helpers above are for.
    """
    config.state_dir.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(logging.INFO)
    root.addHandler(_rotating_handler(config, source))

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *_base_processors(source),
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
