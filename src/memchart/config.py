"""Configuration system for memchart."""

from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path

import tomlkit


@dataclass
class ServerConfig:
    """HTTP export surface configuration."""

    host: str = "0.0.0.0"
    port: int = 7777


@dataclass
class SamplingConfig:
    """Sampler configuration."""

    interval: float = 120.0  # Seconds between measurements
    verbose: bool = False  # Also print CSV to stdout after every cycle
    proc_root: str = "/proc"  # Process-information root


@dataclass
class SystemConfig:
    """Daemon housekeeping configuration."""

    heartbeat_cycles: int = 30  # Log heartbeat every N cycles (~1h at 120s)
    # Log file rotation
    log_max_bytes: int = 5 * 1024 * 1024  # Max log file size (5MB)
    log_backup_count: int = 3  # Number of backup log files to keep


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

    server: ServerConfig = field(default_factory=ServerConfig)
    sampling: SamplingConfig = field(default_factory=SamplingConfig)
    system: SystemConfig = field(default_factory=SystemConfig)

    @property
    def config_dir(self) -> Path:
        """Configuration directory."""
        return Path.home() / ".config" / "memchart"

    @property
    def config_path(self) -> Path:
        """Path to config file."""
        return self.config_dir / "config.toml"

    @property
    def state_dir(self) -> Path:
        """State directory for logs."""
        return Path.home() / ".local" / "state" / "memchart"

    @property
    def runtime_dir(self) -> Path:
        """Runtime directory for the PID file. Cleared on reboot."""
        return Path("/tmp/memchart")

    @property
    def log_path(self) -> Path:
        """Daemon log path (JSON lines)."""
        return self.state_dir / "daemon.log"

    @property
    def pid_path(self) -> Path:
        """PID file path."""
        return self.runtime_dir / "daemon.pid"

    @property
    def proc_root(self) -> Path:
        """Process-information root as a Path."""
        return Path(self.sampling.proc_root)

    def save(self, path: Path | None = None) -> None:
        """Save config to TOML file."""
        path = path or self.config_path
        path.parent.mkdir(parents=True, exist_ok=True)

        doc = tomlkit.document()
        for name in ("server", "sampling", "system"):
            doc.add(name, _dataclass_to_table(getattr(self, name)))
            doc.add(tomlkit.nl())

        path.write_text(tomlkit.dumps(doc))

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """Load config from TOML file, returning defaults for missing values.

        All defaults come from the dataclass definitions, so Config() and
        Config.load() agree on an empty file.

        Raises:
            ValueError: The file is not valid TOML or a value is out of range.
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

        try:
            return cls(
                server=_load_server_config(data.get("server", {})),
                sampling=_load_sampling_config(data.get("sampling", {})),
                system=_load_system_config(data.get("system", {})),
            )
        except (TypeError, AttributeError) as e:
            raise ValueError(f"Invalid value in config file {path}: {e}") from e


def _load_server_config(data: dict) -> ServerConfig:
    """Load server config from TOML data."""
    d = ServerConfig()
    port = int(data.get("port", d.port))
    if not 1 <= port <= 65535:
        raise ValueError(f"port must be between 1 and 65535, got {port}")
    return ServerConfig(
        host=str(data.get("host", d.host)),
        port=port,
    )


def _load_sampling_config(data: dict) -> SamplingConfig:
    """Load sampling config from TOML data."""
    d = SamplingConfig()
    interval = float(data.get("interval", d.interval))
    if interval <= 0:
        raise ValueError(f"interval must be > 0, got {interval}")
    return SamplingConfig(
        interval=interval,
        verbose=bool(data.get("verbose", d.verbose)),
        proc_root=str(data.get("proc_root", d.proc_root)),
    )


def _load_system_config(data: dict) -> SystemConfig:
    """Load system config from TOML data."""
    d = SystemConfig()
    heartbeat_cycles = int(data.get("heartbeat_cycles", d.heartbeat_cycles))
    if heartbeat_cycles < 1:
        raise ValueError(f"heartbeat_cycles must be >= 1, got {heartbeat_cycles}")
    return SystemConfig(
        heartbeat_cycles=heartbeat_cycles,
        log_max_bytes=int(data.get("log_max_bytes", d.log_max_bytes)),
        log_backup_count=int(data.get("log_backup_count", d.log_backup_count)),
    )
