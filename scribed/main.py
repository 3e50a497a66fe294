"""Main entry point for the scribed worker."""

import asyncio
import logging
import signal
import sys
from typing import NoReturn

from .config import load_config
from .engine import FasterWhisperEngine
from .ipc_server import IPCServer
from .logging_setup import setup_logging
from .pipeline_manager import PipelineManager
from .transcriber import Transcriber

logger = logging.getLogger(__name__)

__all__ = ["run"]  # Export the run function


async def main() -> int:
    """Main worker function.

    Returns:
        Exit code (0 for success, non-zero for error)
    """
    # Load configuration first
    try:
        config = load_config()
    except Exception as e:
        print(f"Error loading configuration: {e}", file=sys.stderr)
        return 1

    setup_logging(config.daemon.log_level, config.daemon.computed_log_file)
    logger.info("Starting scribed worker...")

    shutdown_event = asyncio.Event()

    # Models are loaded lazily by the first job that needs them
    engine = FasterWhisperEngine(config.engine)
    pipeline_manager = PipelineManager(engine)
    transcriber = Transcriber(pipeline_manager)
    ipc_server = IPCServer(
        config.daemon.computed_socket_path,
        transcriber,
        max_message_size=config.daemon.max_message_bytes,
    )

    try:
        def handle_signal(sig: int) -> None:
            sig_name = signal.Signals(sig).name
            logger.info(f"Received signal {sig_name}, initiating shutdown...")
            shutdown_event.set()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, lambda s=sig: handle_signal(s))

        await ipc_server.start()
        logger.info("Worker started successfully")

        await shutdown_event.wait()
        logger.info("Starting graceful shutdown...")

    except Exception:
        logger.exception("Fatal error in worker startup:")
        return 1

    finally:
        if ipc_server._server:
            await ipc_server.stop()
        try:
            await pipeline_manager.close()
        except Exception:
            logger.exception("Error disposing model on shutdown")

        logger.info("Worker shutdown complete")

    return 0


def run() -> NoReturn:
    """Entry point for the worker."""
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        sys.exit(0)
    except Exception as e:
        # Fallback logger in case of early failure
        logging.basicConfig()
        logger.exception(f"Worker failed with unhandled exception: {e}")
        sys.exit(1)
