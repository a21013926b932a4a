"""Configuration system for fleet-warden."""

import os
import threading
from dataclasses import dataclass, field, fields, is_dataclass, replace
from pathlib import Path

import tomlkit


@dataclass(frozen=True)
class LimitsConfig:
    """Thresholds used by the classifier and terminator."""

    max_memory_for_instance: int = 1000  # MB per worker
    max_age_for_instance: int = 30  # Minutes per worker
    max_memory_for_orchestrator: int = 20000  # MB for the orchestrator


@dataclass(frozen=True)
class PolicyConfig:
    """Which termination policies are enforced."""

    kill_old: bool = True
    kill_heavy: bool = True
    kill_main: bool = False
    auto_check_interval: int = 0  # Minutes between automatic checks, 0 = disabled


@dataclass(frozen=True)
class MonitoringConfig:
    """Resource monitoring (session recorder) configuration."""

    enabled: bool = True
    interval_minutes: int = 1
    reports_dir: str = ""  # Empty = <data_dir>/reports


@dataclass(frozen=True)
class DisplayConfig:
    """Presentation switches consumed by the stats output."""

    show_raw_command_line: bool = False
    show_logs: bool = False


@dataclass(frozen=True)
class ProcessNamesConfig:
    """Process image names of the supervised fleet."""

    worker_name: str = "zbe1"
    orchestrator_name: str = "ZennoPoster"


def _host_state_dir() -> Path:
    appdata = os.environ.get("APPDATA")
    base = Path(appdata) if appdata else Path.home() / "AppData" / "Roaming"
    return base / "ZennoLab" / "ZennoPoster" / "7" / "ZennoPoster"


@dataclass(frozen=True)
class StateFileConfig:
    """Orchestrator task-queue file and its backup sibling.

    Empty strings resolve to the host application's default location.
    """

    task_file: str = ""
    backup_file: str = ""

    @property
    def task_path(self) -> Path:
        return Path(self.task_file) if self.task_file else _host_state_dir() / "Tasks.dat"

    @property
    def backup_path(self) -> Path:
        return Path(self.backup_file) if self.backup_file else _host_state_dir() / "Tasks.1.dat"


@dataclass(frozen=True)
class SystemConfig:
    """Log file rotation."""

    log_max_bytes: int = 5 * 1024 * 1024  # Max log file size (5MB)
    log_backup_count: int = 3  # Number of backup log files to keep


SECTIONS = (
    "limits",
    "policy",
    "monitoring",
    "display",
    "processes",
    "state_file",
    "system",
)


def _dataclass_to_table(obj: object) -> tomlkit.items.Table:
    """Section dataclass -> tomlkit table, recursing into nested dataclasses."""
    table = tomlkit.table()
    for f in fields(obj):  # type: ignore[arg-type]
        value = getattr(obj, f.name)
        if is_dataclass(value) and not isinstance(value, type):
            table.add(f.name, _dataclass_to_table(value))
        else:
            table.add(f.name, value)
    return table


def _load_section(cls: type, data: dict) -> object:
    """Build a section dataclass from TOML data, using dataclass defaults for missing keys."""
    defaults = cls()
    values = {}
    for f in fields(cls):
        value = data.get(f.name, getattr(defaults, f.name))
        expected = type(getattr(defaults, f.name))
        # tomlkit items unwrap to plain Python values
        if hasattr(value, "unwrap"):
            value = value.unwrap()
        if expected is bool and not isinstance(value, bool):
            raise ValueError(f"{f.name} must be true or false, got {value!r}")
        if expected is int and (isinstance(value, bool) or not isinstance(value, int)):
            raise ValueError(f"{f.name} must be an integer, got {value!r}")
        if expected is str and not isinstance(value, str):
            raise ValueError(f"{f.name} must be a string, got {value!r}")
        values[f.name] = value
    return cls(**values)


@dataclass(frozen=True)
class Config:
    """Main configuration container.

    Instances are immutable; edits go through with_value() which returns a new
    Config, and SettingsStore.commit() which swaps the live value.
    """

    limits: LimitsConfig = field(default_factory=LimitsConfig)
    policy: PolicyConfig = field(default_factory=PolicyConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)
    display: DisplayConfig = field(default_factory=DisplayConfig)
    processes: ProcessNamesConfig = field(default_factory=ProcessNamesConfig)
    state_file: StateFileConfig = field(default_factory=StateFileConfig)
    system: SystemConfig = field(default_factory=SystemConfig)

    def __post_init__(self) -> None:
        limits = self.limits
        for f in fields(limits):
            if getattr(limits, f.name) < 0:
                raise ValueError(f"{f.name} must be >= 0, got {getattr(limits, f.name)}")
        if self.policy.auto_check_interval < 0:
            raise ValueError(
                f"auto_check_interval must be >= 0, got {self.policy.auto_check_interval}"
            )
        if self.monitoring.interval_minutes < 1:
            raise ValueError(
                f"interval_minutes must be >= 1, got {self.monitoring.interval_minutes}"
            )
        if not self.processes.worker_name or not self.processes.orchestrator_name:
            raise ValueError("worker_name and orchestrator_name must not be empty")

    @property
    def config_dir(self) -> Path:
        """Configuration directory."""
        return Path.home() / ".config" / "fleet-warden"

    @property
    def config_path(self) -> Path:
        """Path to config file."""
        return self.config_dir / "config.toml"

    @property
    def data_dir(self) -> Path:
        """Data directory."""
        return Path.home() / ".local" / "share" / "fleet-warden"

    @property
    def state_dir(self) -> Path:
        """State directory for logs and the PID file."""
        return Path.home() / ".local" / "state" / "fleet-warden"

    @property
    def reports_dir(self) -> Path:
        """Directory holding session reports."""
        if self.monitoring.reports_dir:
            return Path(self.monitoring.reports_dir)
        return self.data_dir / "reports"

    @property
    def log_path(self) -> Path:
        """Supervisor log path (JSON Lines)."""
        return self.state_dir / "supervisor.log"

    @property
    def pid_path(self) -> Path:
        """PID file path."""
        return self.state_dir / "supervisor.pid"

    def with_value(self, key: str, value: object) -> "Config":
        """Return a copy with one dotted key ("section.field") replaced.

        Raises:
            ValueError: Unknown key, or the resulting config is invalid.
        """
        section_name, _, field_name = key.partition(".")
        if section_name not in SECTIONS or not field_name:
            raise ValueError(f"Unknown config key: {key!r}")
        section = getattr(self, section_name)
        if field_name not in {f.name for f in fields(section)}:
            raise ValueError(f"Unknown config key: {key!r}")
        data = {f.name: getattr(section, f.name) for f in fields(section)}
        data[field_name] = value
        return replace(self, **{section_name: _load_section(type(section), data)})

    def save(self, path: Path | None = None) -> None:
        """Save config to TOML file."""
        path = path or self.config_path
        path.parent.mkdir(parents=True, exist_ok=True)

        doc = tomlkit.document()
        for name in SECTIONS:
            doc.add(name, _dataclass_to_table(getattr(self, name)))
            doc.add(tomlkit.nl())

        path.write_text(tomlkit.dumps(doc))

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """Read a TOML config file; absent sections and keys take the dataclass defaults.

        A missing file yields Config(). Type or range errors and TOML syntax
        errors raise ValueError.
        """
        defaults = cls()
        path = path or defaults.config_path
        if not path.exists():
            return defaults

        try:
            with open(path) as f:
                data = tomlkit.load(f)
        except tomlkit.exceptions.TOMLKitError as e:
            raise ValueError(f"Failed to parse config file {path}: {e}") from e

        sections = {}
        for name in SECTIONS:
            section_cls = type(getattr(defaults, name))
            sections[name] = _load_section(section_cls, data.get(name, {}))
        return cls(**sections)


class SettingsStore:
    """Holds the live configuration.

    Editors work on a draft (a Config built with with_value()); the live value
    is only replaced after the draft has been saved.
    """

    def __init__(self, config: Config, path: Path | None = None) -> None:
        self._config = config
        self._path = path
        self._lock = threading.Lock()

    @property
    def current(self) -> Config:
        with self._lock:
            return self._config

    def commit(self, draft: Config) -> Config:
        """Persist the draft and make it the live configuration."""
        draft.save(self._path)
        with self._lock:
            self._config = draft
        return draft
