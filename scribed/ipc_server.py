"""Job channel server over a Unix domain socket.

Each line a client sends is one JSON job. The server answers with a
stream of JSON lines for that job: any number of ``progress`` and
``update`` messages, then exactly one ``complete`` or ``error``.
"""

import asyncio
import logging
from pathlib import Path
from typing import Optional, Set

from pydantic import BaseModel, ValidationError

from .ipc_models import ErrorMessage, ErrorPayload, JobRequest, MessageWrapper
from .transcriber import Transcriber

logger = logging.getLogger(__name__)

MESSAGE_TERMINATOR = b"\n"
# Jobs carry whole audio buffers
DEFAULT_MAX_MESSAGE_SIZE = 256 * 1024 * 1024


class IPCServer:
    """Serves transcription jobs over a Unix domain socket."""

    def __init__(
        self,
        socket_path: Path,
        transcriber: Transcriber,
        max_message_size: int = DEFAULT_MAX_MESSAGE_SIZE,
    ):
        """Initialize the IPC server.

        Args:
            socket_path: Path to the Unix domain socket
            transcriber: Runs each received job
            max_message_size: Largest accepted job line in bytes
        """
        self.socket_path = socket_path
        self.transcriber = transcriber
        self.max_message_size = max_message_size

        self._server: Optional[asyncio.AbstractServer] = None
        self._client_tasks: Set[asyncio.Task] = set()

    def _send_message(self, writer: asyncio.StreamWriter, message: BaseModel) -> None:
        """Queue one outbound message on the client connection."""
        if writer.is_closing():
            logger.debug(f"Dropping {type(message).__name__}: connection closing")
            return
        try:
            data = MessageWrapper(root=message).model_dump_json()
            writer.write(data.encode("utf-8") + MESSAGE_TERMINATOR)
        except Exception as e:
            logger.error(f"Error sending message: {e}")

    async def _send_error(self, writer: asyncio.StreamWriter, exc: Exception) -> None:
        self._send_message(writer, ErrorMessage(data=ErrorPayload.from_exception(exc)))
        await writer.drain()

    async def _handle_job(self, writer: asyncio.StreamWriter, message: str) -> None:
        """Parse and run one job message.

        Args:
            writer: StreamWriter to send messages through
            message: Raw JSON job line
        """
        try:
            job = JobRequest.model_validate_json(message)
        except ValidationError as e:
            logger.error(f"Invalid job format: {e}")
            await self._send_error(writer, e)
            return

        await self.transcriber.transcribe(
            job, lambda msg: self._send_message(writer, msg)
        )
        await writer.drain()

    async def _handle_client(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        """Handle a client connection.

        Args:
            reader: StreamReader for the client
            writer: StreamWriter for the client
        """
        peer = writer.get_extra_info("peername") or "Unknown"
        logger.info(f"Client connected: {peer}")

        task = asyncio.current_task()
        assert task is not None  # for type checking
        self._client_tasks.add(task)

        try:
            while True:
                try:
                    data = await reader.readuntil(MESSAGE_TERMINATOR)
                    message = data.rstrip(MESSAGE_TERMINATOR).decode("utf-8")
                    if not message.strip():
                        continue

                    logger.debug(f"Received {len(data)} bytes from {peer}")
                    await self._handle_job(writer, message)

                except asyncio.IncompleteReadError:
                    logger.info(f"Client disconnected: {peer}")
                    break
                except asyncio.LimitOverrunError as e:
                    logger.error(f"Job from {peer} exceeds {self.max_message_size} bytes")
                    await self._send_error(
                        writer, ValueError(f"Message too large: {e}")
                    )
                    break
                except UnicodeDecodeError as e:
                    logger.error(f"Undecodable message from {peer}: {e}")
                    await self._send_error(writer, e)
                except ConnectionError as e:
                    logger.warning(f"Connection error with {peer}: {e}")
                    break
                except asyncio.CancelledError:
                    logger.info(f"Client connection cancelled: {peer}")
                    break
                except Exception as e:
                    logger.exception(f"Error handling client {peer}: {e}")
                    break

        finally:
            logger.info(f"Closing connection with {peer}")
            if not writer.is_closing():
                writer.close()
                try:
                    await asyncio.wait_for(writer.wait_closed(), timeout=1.0)
                except (asyncio.TimeoutError, Exception) as e:
                    logger.warning(f"Error during connection cleanup: {e}")

            self._client_tasks.discard(task)
            logger.debug(f"Connection closed: {peer}")

    async def start(self) -> None:
        """Start the IPC server."""
        if self._server:
            logger.warning("Server already started")
            return

        # Clean up existing socket if needed
        if self.socket_path.exists():
            if self.socket_path.is_socket():
                logger.info(f"Removing existing socket file: {self.socket_path}")
                try:
                    self.socket_path.unlink()
                except OSError as e:
                    logger.error(f"Failed to remove existing socket: {e}")
                    raise
            else:
                logger.error(f"Path exists but is not a socket: {self.socket_path}")
                raise OSError(f"Path exists but is not a socket: {self.socket_path}")

        try:
            self.socket_path.parent.mkdir(parents=True, exist_ok=True)

            self._server = await asyncio.start_unix_server(
                self._handle_client,
                path=str(self.socket_path),
                limit=self.max_message_size,
            )

            logger.info(f"IPC server listening on {self.socket_path}")

        except Exception as e:
            logger.error(f"Failed to start IPC server: {e}")
            if self.socket_path.exists():
                self.socket_path.unlink(missing_ok=True)
            raise

    async def stop(self) -> None:
        """Stop the IPC server."""
        if not self._server:
            logger.warning("Server not running")
            return

        logger.info("Stopping IPC server...")

        self._server.close()

        # Cancel active client connections; wait_closed() waits for them
        if self._client_tasks:
            logger.info(f"Cancelling {len(self._client_tasks)} client tasks...")
            for task in list(self._client_tasks):
                if not task.done():
                    task.cancel()
            await asyncio.gather(*self._client_tasks, return_exceptions=True)
            self._client_tasks.clear()

        await self._server.wait_closed()
        self._server = None

        logger.debug(f"Removing socket file: {self.socket_path}")
        try:
            self.socket_path.unlink(missing_ok=True)
        except OSError as e:
            logger.error(f"Error removing socket file: {e}")

        logger.info("IPC server stopped")
