"""Configuration system for sql-profiler."""

from dataclasses import asdict, dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Any

import tomlkit

BACKEND_NAMES = ("extended_events", "live_requests", "classic_trace")


@dataclass(frozen=True)
class ConnectionConfig:
    """Connection parameters for one SQL Server.

    Immutable: a new capture against a different server means a new Connect
    with a new ConnectionConfig.
    """

    host: str = "localhost"
    port: int = 1433
    username: str = "sa"
    password: str = ""
    database: str = "master"
    trust_cert: bool = False
    driver: str = "ODBC Driver 18 for SQL Server"
    login_timeout: int = 15  # Seconds

    def __post_init__(self) -> None:
        if not 0 < self.port < 65536:
            raise ValueError(f"port must be in 1..65535, got {self.port}")
        if not self.host:
            raise ValueError("host must not be empty")

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serializable copy."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConnectionConfig":
        """Build from a (possibly partial) mapping, using defaults for missing keys."""
        d = cls()
        return cls(
            host=str(data.get("host", d.host)),
            port=int(data.get("port", d.port)),
            username=str(data.get("username", d.username)),
            password=str(data.get("password", d.password)),
            database=str(data.get("database", d.database)),
            trust_cert=bool(data.get("trust_cert", d.trust_cert)),
            driver=str(data.get("driver", d.driver)),
            login_timeout=int(data.get("login_timeout", d.login_timeout)),
        )

    def __repr__(self) -> str:
        # Keep the password out of logs and tracebacks
        return (
            f"ConnectionConfig(host={self.host!r}, port={self.port}, "
            f"username={self.username!r}, database={self.database!r}, "
            f"trust_cert={self.trust_cert})"
        )


@dataclass
class CaptureConfig:
    """Capture backend configuration."""

    backend: str = "extended_events"  # extended_events | live_requests | classic_trace
    xe_interval: float = 0.5  # Seconds between ring buffer polls
    live_interval: float = 1.0  # Seconds between DMV samples
    trace_interval: float = 0.3  # Seconds between trace file reads
    trace_max_rows: int = 5000  # TOP N rows per trace poll
    ring_buffer_kb: int = 51200  # XE ring_buffer max_memory (50 MiB)
    heartbeat_ticks: int = 120  # Log a heartbeat every N poll ticks

    def interval_for(self, backend: str) -> float:
        """Return the poll interval for a backend name."""
        intervals = {
            "extended_events": self.xe_interval,
            "live_requests": self.live_interval,
            "classic_trace": self.trace_interval,
        }
        if backend not in intervals:
            raise ValueError(f"Unknown backend: {backend!r}. Valid backends: {list(BACKEND_NAMES)}")
        return intervals[backend]


@dataclass
class SystemConfig:
    """Daemon configuration."""

    command_queue_size: int = 32  # Pending supervisor commands before "Internal error"
    recent_events: int = 200  # Events replayed to a newly connected client
    # Log file rotation
    log_max_bytes: int = 5 * 1024 * 1024  # Max log file size (5MB)
    log_backup_count: int = 3  # Number of backup log files to keep


@dataclass
class StatusColors:
    """Colors for status indicators and event rows.

    Default palette: Dracula theme.
    """

    connected: str = "#50fa7b"  # Dracula green
    capturing: str = "#8be9fd"  # Dracula cyan
    disconnected: str = "#ff5555"  # Dracula red
    running: str = "#f1fa8c"  # Dracula yellow - live request still executing
    completed: str = ""  # Default text color
    slow: str = "#ffb86c"  # Dracula orange - elapsed above slow_query_ms


@dataclass
class TUIConfig:
    """TUI-specific configuration."""

    colors: StatusColors = field(default_factory=StatusColors)
    max_rows: int = 2000  # Oldest rows are dropped past this
    sql_truncate_length: int = 80  # Max chars of SQL shown in the table
    slow_query_ms: int = 1000  # Highlight events slower than this
    activity_max_entries: int = 15
    # Reconnection settings
    reconnect_initial_delay: float = 1.0  # Initial reconnect delay (seconds)
    reconnect_max_delay: float = 30.0  # Max reconnect delay (seconds)
    reconnect_multiplier: float = 2.0  # Exponential backoff multiplier


def _dataclass_to_table(obj: object) -> tomlkit.items.Table:
    """Convert a dataclass instance to a tomlkit Table recursively."""
    table = tomlkit.table()
    for f in fields(obj):  # type: ignore[arg-type]
        value = getattr(obj, f.name)
        if is_dataclass(value) and not isinstance(value, type):
            table.add(f.name, _dataclass_to_table(value))
        else:
            table.add(f.name, value)
    return table


@dataclass
class Config:
    """Main configuration container."""

    connection: ConnectionConfig = field(default_factory=ConnectionConfig)
    capture: CaptureConfig = field(default_factory=CaptureConfig)
    system: SystemConfig = field(default_factory=SystemConfig)
    tui: TUIConfig = field(default_factory=TUIConfig)

    @property
    def config_dir(self) -> Path:
        """Configuration directory."""
        return Path.home() / ".config" / "sql-profiler"

    @property
    def config_path(self) -> Path:
        """Path to config file."""
        return self.config_dir / "config.toml"

    @property
    def state_dir(self) -> Path:
        """State directory for logs."""
        return Path.home() / ".local" / "state" / "sql-profiler"

    @property
    def runtime_dir(self) -> Path:
        """Runtime directory for ephemeral files (PID, socket).

        Stored in /tmp/ so it's cleared on reboot, avoiding stale file issues.
        """
        return Path("/tmp/sql-profiler")

    @property
    def log_path(self) -> Path:
        """Daemon log path."""
        return self.state_dir / "daemon.log"

    @property
    def pid_path(self) -> Path:
        """PID file path."""
        return self.runtime_dir / "daemon.pid"

    @property
    def socket_path(self) -> Path:
        """Unix socket path for daemon IPC."""
        return self.runtime_dir / "daemon.sock"

    def save(self, path: Path | None = None) -> None:
        """Save config to TOML file."""
        path = path or self.config_path
        path.parent.mkdir(parents=True, exist_ok=True)

        doc = tomlkit.document()
        for name in ("connection", "capture", "system", "tui"):
            doc.add(name, _dataclass_to_table(getattr(self, name)))
            doc.add(tomlkit.nl())

        path.write_text(tomlkit.dumps(doc))

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """Load config from TOML file, returning defaults for missing values.

        All defaults come from the dataclass definitions - no hardcoded values here.
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

        return cls(
            connection=ConnectionConfig.from_dict(data.get("connection", {})),
            capture=_load_capture_config(data.get("capture", {})),
            system=_load_system_config(data.get("system", {})),
            tui=_load_tui_config(data.get("tui", {})),
        )


def _load_capture_config(data: dict) -> CaptureConfig:
    """Load capture config from TOML data, using dataclass defaults for missing fields."""
    d = CaptureConfig()
    backend = data.get("backend", d.backend)
    if backend not in BACKEND_NAMES:
        raise ValueError(f"Invalid backend: {backend!r}. Must be one of {list(BACKEND_NAMES)}")

    trace_max_rows = data.get("trace_max_rows", d.trace_max_rows)
    if trace_max_rows < 1:
        raise ValueError(f"trace_max_rows must be >= 1, got {trace_max_rows}")

    config = CaptureConfig(
        backend=backend,
        xe_interval=data.get("xe_interval", d.xe_interval),
        live_interval=data.get("live_interval", d.live_interval),
        trace_interval=data.get("trace_interval", d.trace_interval),
        trace_max_rows=trace_max_rows,
        ring_buffer_kb=data.get("ring_buffer_kb", d.ring_buffer_kb),
        heartbeat_ticks=data.get("heartbeat_ticks", d.heartbeat_ticks),
    )
    for name in BACKEND_NAMES:
        if config.interval_for(name) <= 0:
            raise ValueError(f"Poll interval for {name} must be > 0")
    return config


def _load_system_config(data: dict) -> SystemConfig:
    """Load system config from TOML data."""
    d = SystemConfig()
    queue_size = data.get("command_queue_size", d.command_queue_size)
    if queue_size < 1:
        raise ValueError(f"command_queue_size must be >= 1, got {queue_size}")
    return SystemConfig(
        command_queue_size=queue_size,
        recent_events=data.get("recent_events", d.recent_events),
        log_max_bytes=data.get("log_max_bytes", d.log_max_bytes),
        log_backup_count=data.get("log_backup_count", d.log_backup_count),
    )


def _load_tui_config(data: dict) -> TUIConfig:
    """Load TUI config from TOML data, including the nested [tui.colors] table."""
    t = TUIConfig()
    c = StatusColors()
    colors_data = data.get("colors", {})

    return TUIConfig(
        colors=StatusColors(
            connected=colors_data.get("connected", c.connected),
            capturing=colors_data.get("capturing", c.capturing),
            disconnected=colors_data.get("disconnected", c.disconnected),
            running=colors_data.get("running", c.running),
            completed=colors_data.get("completed", c.completed),
            slow=colors_data.get("slow", c.slow),
        ),
        max_rows=data.get("max_rows", t.max_rows),
        sql_truncate_length=data.get("sql_truncate_length", t.sql_truncate_length),
        slow_query_ms=data.get("slow_query_ms", t.slow_query_ms),
        activity_max_entries=data.get("activity_max_entries", t.activity_max_entries),
        reconnect_initial_delay=data.get("reconnect_initial_delay", t.reconnect_initial_delay),
        reconnect_max_delay=data.get("reconnect_max_delay", t.reconnect_max_delay),
        reconnect_multiplier=data.get("reconnect_multiplier", t.reconnect_multiplier),
    )
