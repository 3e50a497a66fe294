"""Configuration handling for the scribed worker."""

import getpass
import os
import tomllib
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, field_validator


def get_default_config_path() -> Path:
    """Get the default config file path following the XDG base directory layout."""
    xdg_config = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config:
        base_dir = Path(xdg_config)
    else:
        base_dir = Path.home() / ".config"

    return base_dir / "scribed" / "config.toml"


def get_default_socket_path() -> Path:
    """Get the default socket path following the XDG base directory layout."""
    xdg_runtime_dir = os.environ.get("XDG_RUNTIME_DIR")
    if xdg_runtime_dir:
        sock_dir = Path(xdg_runtime_dir) / "scribed"
        try:
            sock_dir.mkdir(parents=True, exist_ok=True)
            if not os.access(sock_dir, os.W_OK | os.X_OK):
                raise OSError("Insufficient permissions for XDG runtime dir.")
            return sock_dir / "worker.sock"
        except (OSError, PermissionError) as e:
            print(
                f"Warning: Could not use XDG_RUNTIME_DIR ({e}), falling back to /tmp."
            )

    # Fallback if XDG_RUNTIME_DIR not set or unusable
    uid = getpass.getuser()
    return Path(f"/tmp/scribed-{uid}.sock")


def get_default_log_path() -> Path:
    """Get the default log file path following the XDG base directory layout."""
    xdg_state = os.environ.get("XDG_STATE_HOME")
    if xdg_state:
        base_dir = Path(xdg_state)
    else:
        base_dir = Path.home() / ".local" / "state"

    log_dir = base_dir / "scribed"
    log_dir.mkdir(parents=True, exist_ok=True)
    return log_dir / "scribed.log"


class EngineConfig(BaseModel):
    """Inference engine configuration."""

    accelerated_device: str = Field(
        default="cuda",
        description="Engine device used when a job requests the accelerated path.",
    )
    device_index: int = Field(
        default=0, ge=0, description="Index of the accelerated device to load on."
    )
    cpu_threads: int = Field(
        default=0, ge=0, description="Number of CPU threads for inference (0 = auto)."
    )
    num_workers: int = Field(
        default=1, ge=1, description="Number of parallel engine workers per model."
    )
    download_root: Optional[Path] = Field(
        default=None, description="Directory for downloaded models (default cache)."
    )
    local_files_only: bool = Field(
        default=False, description="Only load models already present in the cache."
    )

    @field_validator("accelerated_device")
    @classmethod
    def check_device_not_cpu(cls, v: str) -> str:
        if not v or v == "cpu":
            raise ValueError("accelerated_device must name a non-CPU device")
        return v


class DaemonConfig(BaseModel):
    """Daemon runtime configuration."""

    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).",
    )
    log_file: Optional[Path] = Field(
        default=None, description="Optional custom log file path."
    )
    socket_path: Optional[Path] = Field(
        default=None, description="Optional custom socket path for the job channel."
    )
    max_message_bytes: int = Field(
        default=256 * 1024 * 1024,
        gt=0,
        description="Upper bound on a single inbound job line (audio included).",
    )

    @field_validator("log_level")
    @classmethod
    def check_log_level(cls, v: str) -> str:
        allowed_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper_v = v.upper()
        if upper_v not in allowed_levels:
            raise ValueError(f"Invalid log level. Choose from {allowed_levels}")
        return upper_v

    @property
    def computed_log_file(self) -> Path:
        return self.log_file or get_default_log_path()

    @property
    def computed_socket_path(self) -> Path:
        return self.socket_path or get_default_socket_path()


class AppConfig(BaseModel):
    """Root configuration."""

    engine: EngineConfig = Field(default_factory=EngineConfig)
    daemon: DaemonConfig = Field(default_factory=DaemonConfig)


def load_config(path: Optional[Path] = None) -> AppConfig:
    """Load and validate configuration.

    If path is not provided, looks for config in standard locations.
    If no config file is found, returns default configuration.

    Args:
        path: Optional path to config file.

    Returns:
        Validated AppConfig instance.

    Raises:
        ValueError: If config file exists but has invalid format/content.
        OSError: If config file exists but can't be read.
    """
    if path is None:
        path = get_default_config_path()

    if not path.exists():
        return AppConfig()  # Use defaults

    try:
        with open(path, "rb") as f:
            config_data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ValueError(f"Error decoding TOML file: {path}\n{e}") from e
    except OSError as e:
        raise OSError(f"Error reading file: {path}\n{e}") from e

    try:
        return AppConfig(**config_data)
    except Exception as e:
        raise ValueError(f"Configuration validation failed: {e}") from e
