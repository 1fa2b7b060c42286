"""Configuration loading and validation."""

import sys
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from .errors import ConfigError


DEFAULT_GROUP = "default"


def _default_directory() -> str:
    return str(Path.home() / ".local" / "share" / "shellqueue")


class SharedConfig(BaseModel):
    """Settings known to both the daemon and its clients."""
    directory: str = Field(default_factory=_default_directory)
    runtime_directory: Optional[str] = Field(default=None)

    # Transport
    use_unix_socket: bool = Field(default=sys.platform != "win32")
    unix_socket_path: Optional[str] = Field(default=None)
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=6924, ge=1, le=65535)

    # Security material
    daemon_cert: Optional[str] = Field(default=None)
    daemon_key: Optional[str] = Field(default=None)
    shared_secret_path: Optional[str] = Field(default=None)

    pid_path: Optional[str] = Field(default=None)

    def base_path(self) -> Path:
        return Path(self.directory).expanduser()

    def runtime_path(self) -> Path:
        if self.runtime_directory:
            return Path(self.runtime_directory).expanduser()
        return self.base_path()

    def socket_path(self) -> Path:
        if self.unix_socket_path:
            return Path(self.unix_socket_path).expanduser()
        return self.runtime_path() / "shellqueue.socket"

    def cert_path(self) -> Path:
        if self.daemon_cert:
            return Path(self.daemon_cert).expanduser()
        return self.base_path() / "certs" / "daemon.cert"

    def key_path(self) -> Path:
        if self.daemon_key:
            return Path(self.daemon_key).expanduser()
        return self.base_path() / "certs" / "daemon.key"

    def secret_path(self) -> Path:
        if self.shared_secret_path:
            return Path(self.shared_secret_path).expanduser()
        return self.base_path() / "shared_secret"

    def pid_file_path(self) -> Path:
        if self.pid_path:
            return Path(self.pid_path).expanduser()
        return self.runtime_path() / "shellqueue.pid"

    def state_db_path(self) -> Path:
        return self.base_path() / "state.db"

    def task_log_directory(self) -> Path:
        return self.base_path() / "task_logs"


class DaemonConfig(BaseModel):
    """Scheduling, execution and protocol limits of the daemon."""
    default_parallel_tasks: int = Field(default=1, ge=1)
    groups: dict[str, int] = Field(default_factory=dict)

    # Failure handling
    pause_group_on_failure: bool = Field(default=False)
    pause_all_on_failure: bool = Field(default=False)

    # Completion hook
    callback: Optional[str] = Field(default=None)
    callback_log_lines: int = Field(default=10, ge=0)

    # Child processes
    shell: str = Field(default="sh")
    env_passthrough: list[str] = Field(
        default=["PATH", "HOME", "USER", "LOGNAME", "LANG", "TZ", "TERM"]
    )
    kill_grace_seconds: float = Field(default=5.0, ge=0)

    # Lifecycle
    snapshot_interval_seconds: float = Field(default=30.0, gt=0)
    shutdown_timeout_seconds: float = Field(default=10.0, ge=0)

    # Protocol
    max_message_bytes: int = Field(default=16 * 1024 * 1024, ge=1024)
    auth_timeout_seconds: float = Field(default=10.0, gt=0)
    log_poll_interval_seconds: float = Field(default=0.2, gt=0)


class Settings(BaseModel):
    """Root configuration document."""
    shared: SharedConfig = Field(default_factory=SharedConfig)
    daemon: DaemonConfig = Field(default_factory=DaemonConfig)


class ConfigLoader:
    """Loads and saves the YAML configuration file."""

    def __init__(self, path: Optional[str] = None):
        self.path = Path(path).expanduser() if path else None

    def load(self) -> Settings:
        """Load settings, falling back to defaults when no file exists."""
        if self.path is None or not self.path.exists():
            return Settings()

        try:
            data = yaml.safe_load(self.path.read_text()) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML: {e}", config_path=str(self.path))
        except OSError as e:
            raise ConfigError(f"Cannot read config: {e}", config_path=str(self.path))

        if not isinstance(data, dict):
            raise ConfigError("Config root must be a mapping", config_path=str(self.path))

        try:
            return Settings(**data)
        except ValidationError as e:
            raise ConfigError(f"Invalid config: {e}", config_path=str(self.path))

    def save(self, settings: Settings) -> None:
        """Write settings as YAML."""
        if self.path is None:
            raise ConfigError("No config path to save to")

        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(
            yaml.safe_dump(settings.model_dump(mode="json"), sort_keys=False)
        )
