"""CLI commands for fleet-warden."""

import click


def _load_config():
    from fleet_warden.config import Config

    try:
        return Config.load()
    except ValueError as e:
        raise click.ClickException(str(e)) from e


@click.group()
@click.version_option(package_name="fleet-warden")
def main() -> None:
    """Supervise a fleet of browser worker processes and their orchestrator."""
    pass


@main.command()
def run() -> None:
    """Run the supervisor (monitoring + automatic checks) until interrupted."""
    import asyncio

    from fleet_warden.supervisor import AlreadyRunning, run_supervisor

    config = _load_config()
    try:
        asyncio.run(run_supervisor(config))
    except AlreadyRunning as e:
        raise click.ClickException(str(e)) from e


@main.command()
@click.option("--raw", is_flag=True, help="Show raw command lines instead of accounts")
def stats(raw: bool) -> None:
    """Show the current fleet, classified against the configured limits."""
    from fleet_warden.classifier import collect_stats, describe
    from fleet_warden.enumerator import ProcessEnumerator
    from fleet_warden.models import ProcessKind

    config = _load_config()
    show_raw = raw or config.display.show_raw_command_line
    result = collect_stats(ProcessEnumerator(), config)
    counts = result.counts()
    orchestrator_pids = {r.pid for r in result.orchestrators}

    def line(record) -> str:
        kind = ProcessKind.ORCHESTRATOR if record.pid in orchestrator_pids else ProcessKind.WORKER
        return describe(record, kind, show_raw)

    click.echo(f"Total: {counts.total}")
    click.echo(f"Known: {counts.with_identity}")
    click.echo(f"Unknown: {counts.without_identity}")
    click.echo(f"Over age (>{config.limits.max_age_for_instance}min): {counts.over_age}")
    click.echo(f"Over memory (>{config.limits.max_memory_for_instance}MB): {counts.over_memory}")
    if result.skipped:
        click.echo(f"Skipped (exited or access denied): {result.skipped}")

    for title, records in (
        ("Over age", result.over_age),
        ("Over memory", result.over_memory),
        ("With account", result.has_identity),
        ("Without account", result.no_identity),
    ):
        if not records:
            continue
        click.echo(f"\n{title}:")
        for record in records:
            click.echo(f"  {line(record)}")


@main.command()
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt")
@click.option("--verbose", "-v", is_flag=True, help="Print the full message log")
def kill(yes: bool, verbose: bool) -> None:
    """Check the fleet and kill processes according to the policies."""
    from fleet_warden.enumerator import ProcessEnumerator
    from fleet_warden.recovery import TaskFileRecovery
    from fleet_warden.terminator import Terminator

    config = _load_config()
    if config.policy.kill_main and not yes:
        click.confirm("kill_main is enabled and may kill the orchestrator. Continue?", abort=True)

    terminator = Terminator(ProcessEnumerator(), hooks=[TaskFileRecovery(config.state_file)])
    outcome = terminator.enforce(config)

    show_log = verbose or config.display.show_logs
    if show_log:
        for message in outcome.messages:
            click.echo(message)
        click.echo()

    click.echo(f"Killed by age: {outcome.killed_by_age}")
    click.echo(f"Killed by memory: {outcome.killed_by_memory}")
    click.echo(f"Killed main: {outcome.killed_main}")
    if outcome.total == 0:
        click.echo("Nothing to kill.")


@main.command()
@click.option("--open", "open_report", is_flag=True, help="Open the report in a browser")
def report(open_report: bool) -> None:
    """Show the path of the latest resource report."""
    from fleet_warden.report import ReportWriter

    config = _load_config()
    path = ReportWriter(config.reports_dir).latest_report()
    if path is None:
        click.echo(f"No reports in {config.reports_dir}. Run 'fleet-warden run' first.")
        return

    click.echo(str(path))
    if open_report:
        click.launch(str(path))


@main.group()
def config() -> None:
    """Manage configuration."""
    pass


@config.command("show")
def config_show() -> None:
    """Display current configuration."""
    from dataclasses import fields

    from fleet_warden.config import SECTIONS

    cfg = _load_config()

    click.echo(f"Config file: {cfg.config_path}")
    click.echo(f"Exists: {cfg.config_path.exists()}")
    for name in SECTIONS:
        section = getattr(cfg, name)
        click.echo()
        click.echo(f"[{name}]")
        for f in fields(section):
            click.echo(f"  {f.name} = {getattr(section, f.name)!r}")


@config.command("set")
@click.argument("key")
@click.argument("value")
def config_set(key: str, value: str) -> None:
    """Set KEY (section.field) to VALUE and save.

    VALUE is parsed as a TOML value, so true/false and numbers keep their type;
    anything else is taken as a string.
    """
    import tomlkit

    from fleet_warden.config import SettingsStore

    cfg = _load_config()
    try:
        parsed = tomlkit.parse(f"value = {value}")["value"]
        parsed = parsed.unwrap() if hasattr(parsed, "unwrap") else parsed
    except tomlkit.exceptions.TOMLKitError:
        parsed = value

    try:
        draft = cfg.with_value(key, parsed)
    except ValueError as e:
        raise click.ClickException(str(e)) from e

    SettingsStore(cfg, cfg.config_path).commit(draft)
    click.echo(f"{key} = {parsed!r}")


@config.command("edit")
def config_edit() -> None:
    """Open config file in editor."""
    import os
    import subprocess

    cfg = _load_config()

    # Create config if it doesn't exist
    if not cfg.config_path.exists():
        cfg.save()
        click.echo(f"Created default config at {cfg.config_path}")

    editor = os.environ.get("EDITOR", "nano")
    subprocess.run([editor, str(cfg.config_path)])


@config.command("reset")
@click.confirmation_option(prompt="Reset config to defaults?")
def config_reset() -> None:
    """Reset configuration to defaults."""
    from fleet_warden.config import Config

    cfg = Config()
    cfg.save()
    click.echo(f"Config reset to defaults at {cfg.config_path}")
