"""Tests for the worker entry point."""

import signal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from scribed.config import AppConfig, DaemonConfig
from scribed.main import main


@pytest.fixture
def mock_config(tmp_path):
    """Patch config loading to return defaults with temporary paths."""
    with patch("scribed.main.load_config") as mock_load:
        config = AppConfig(
            daemon=DaemonConfig(
                log_file=tmp_path / "scribed.log", socket_path=tmp_path / "w.sock"
            )
        )
        mock_load.return_value = config
        yield config


@pytest.fixture
def mock_components():
    """Patch logging, engine and IPC server."""
    with (
        patch("scribed.main.setup_logging") as mock_logging,
        patch("scribed.main.FasterWhisperEngine") as mock_engine,
        patch("scribed.main.IPCServer") as mock_ipc,
    ):
        ipc = MagicMock()
        ipc.start = AsyncMock()
        ipc.stop = AsyncMock()
        mock_ipc.return_value = ipc
        yield {
            "logging": mock_logging,
            "engine": mock_engine,
            "ipc_class": mock_ipc,
            "ipc": ipc,
        }


@pytest.mark.asyncio
async def test_main_runs_until_signal(mock_config, mock_components):
    """Test the worker serves until SIGTERM, then stops cleanly."""
    ipc = mock_components["ipc"]
    ipc.start.side_effect = lambda: signal.raise_signal(signal.SIGTERM)

    exit_code = await main()

    assert exit_code == 0
    mock_components["logging"].assert_called_once_with(
        "INFO", mock_config.daemon.computed_log_file
    )
    mock_components["engine"].assert_called_once_with(mock_config.engine)
    ipc.start.assert_awaited_once()
    ipc.stop.assert_awaited_once()

    _, kwargs = mock_components["ipc_class"].call_args
    assert kwargs["max_message_size"] == mock_config.daemon.max_message_bytes


@pytest.mark.asyncio
async def test_main_config_error(mock_components):
    with patch("scribed.main.load_config", side_effect=ValueError("bad config")):
        assert await main() == 1

    mock_components["ipc"].start.assert_not_awaited()


@pytest.mark.asyncio
async def test_main_ipc_start_failure(mock_config, mock_components):
    mock_components["ipc"].start.side_effect = OSError("address in use")

    assert await main() == 1
