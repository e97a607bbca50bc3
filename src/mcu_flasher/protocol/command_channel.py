"""
Text command channel.

Sends short line-terminated commands to a connected device and collects the
decoded text it prints back. Runs independently of flashing and shares the
device through a ConnectionState.
"""

from __future__ import annotations

import codecs
import logging
import threading
from typing import Callable, List, Optional

from .transport import ConnectionState, EndOfStream, TransportError

logger = logging.getLogger(__name__)

DEFAULT_LINE_TERMINATOR = "\n"
DEFAULT_READ_SIZE = 64


class CommandChannel:
    """
    Fire-and-forget command writer plus a background receive loop.

    Example:
        channel = CommandChannel(connection, on_text=print)
        channel.start()
        channel.send("version")
        ...
        channel.stop()
    """

    def __init__(
        self,
        connection: ConnectionState,
        *,
        line_terminator: str = DEFAULT_LINE_TERMINATOR,
        encoding: str = "utf-8",
        read_size: int = DEFAULT_READ_SIZE,
        on_text: Optional[Callable[[str], None]] = None,
        on_error: Optional[Callable[[Exception], None]] = None,
    ):
        self.connection = connection
        self.line_terminator = line_terminator
        self.encoding = encoding
        self.read_size = read_size
        self.on_text = on_text
        self.on_error = on_error
        self._chunks: List[str] = []
        self._output_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None

    @property
    def output(self) -> str:
        """Everything received so far."""
        with self._output_lock:
            return "".join(self._chunks)

    def clear_output(self) -> None:
        with self._output_lock:
            self._chunks.clear()

    def send(self, command: str) -> None:
        """
        Write command + line terminator. Does not wait for a reply.

        Raises:
            FlashInProgress: While a flash owns the connection
            TransportError: If the connection is closed or the write fails
        """
        if not self.connection.is_connected and not self.connection.flash_active:
            raise TransportError("Not connected")
        payload = (command + self.line_terminator).encode(self.encoding)
        self.connection.write_command(payload)
        logger.debug("Sent command %r", command)

    def receive_loop(self) -> None:
        """
        Read and decode until end-of-stream or disconnect.

        The connected flag is checked before every read. A read error is
        reported via on_error; the loop only stops on it when the transport
        has closed as a result.
        """
        decoder = codecs.getincrementaldecoder(self.encoding)(errors="replace")
        with self.connection.read_lock:
            logger.debug("Receive loop started")
            try:
                while self.connection.is_connected:
                    transport = self.connection.transport
                    try:
                        data = transport.read(self.read_size)
                    except EndOfStream:
                        logger.info("Device closed the stream")
                        break
                    except TransportError as e:
                        self._report(e)
                        if not transport.is_open:
                            break
                        continue
                    if not data:
                        continue
                    self._append(decoder.decode(data))
                self._append(decoder.decode(b"", final=True))
            finally:
                logger.debug("Receive loop stopped")

    def _append(self, text: str) -> None:
        if not text:
            return
        with self._output_lock:
            self._chunks.append(text)
        if self.on_text:
            self.on_text(text)

    def _report(self, error: Exception) -> None:
        logger.warning("Read error: %s", error)
        if self.on_error:
            self.on_error(error)

    def start(self) -> threading.Thread:
        """Run receive_loop() in a daemon thread."""
        self._thread = threading.Thread(
            target=self.receive_loop, name="command-channel-rx", daemon=True
        )
        self._thread.start()
        return self._thread

    def stop(self, timeout: float = 2.0) -> None:
        """Clear the connected flag and wait for the receive thread."""
        self.connection.connected.clear()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
