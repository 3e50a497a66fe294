"""Tests for configuration loading."""

from pathlib import Path

import pytest

from scribed.config import AppConfig, DaemonConfig, EngineConfig, load_config


def test_missing_file_uses_defaults(tmp_path):
    config = load_config(tmp_path / "missing.toml")

    assert config == AppConfig()
    assert config.engine.accelerated_device == "cuda"
    assert config.daemon.log_level == "INFO"


def test_load_valid_file(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text(
        """
[engine]
accelerated_device = "cuda"
device_index = 1
cpu_threads = 4

[daemon]
log_level = "debug"
socket_path = "/tmp/custom.sock"
"""
    )

    config = load_config(path)

    assert config.engine.device_index == 1
    assert config.engine.cpu_threads == 4
    assert config.daemon.log_level == "DEBUG"
    assert config.daemon.computed_socket_path == Path("/tmp/custom.sock")


def test_invalid_toml(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text("[engine\n")

    with pytest.raises(ValueError, match="Error decoding TOML"):
        load_config(path)


def test_invalid_values(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text('[daemon]\nlog_level = "LOUD"\n')

    with pytest.raises(ValueError, match="Configuration validation failed"):
        load_config(path)


def test_accelerated_device_cannot_be_cpu():
    with pytest.raises(ValueError):
        EngineConfig(accelerated_device="cpu")


def test_default_paths_follow_xdg(tmp_path, monkeypatch):
    monkeypatch.setenv("XDG_RUNTIME_DIR", str(tmp_path / "run"))
    monkeypatch.setenv("XDG_STATE_HOME", str(tmp_path / "state"))

    daemon = DaemonConfig()

    assert daemon.computed_socket_path == tmp_path / "run" / "scribed" / "worker.sock"
    assert daemon.computed_log_file == tmp_path / "state" / "scribed" / "scribed.log"
