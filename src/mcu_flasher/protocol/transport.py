"""
Byte-stream transport layer.

Defines the abstract Transport interface consumed by the flasher and the
command channel, a pyserial implementation, and ConnectionState, the
explicit per-connection state that replaces shared "is connected" flags.

This module provides:
- Transport protocol (open/close/read/write/control signals)
- SerialTransport backed by pyserial
- ConnectionState: connected flag, write/read locks, flash ownership
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from typing import Optional, Protocol, runtime_checkable

try:
    import serial
except ImportError:
    raise ImportError("PySerial required: pip install pyserial")

logger = logging.getLogger(__name__)

DEFAULT_OPERATING_BAUDRATE = 115200


class TransportError(Exception):
    """Open/close/read/write failure. The underlying error is chained as __cause__."""


class EndOfStream(TransportError):
    """The device closed the stream; no more data will arrive."""


class FlashInProgress(Exception):
    """A flash operation already owns this connection."""


@dataclass(frozen=True)
class TransportConfig:
    """Serial line settings."""

    port: str = ""
    baudrate: int = DEFAULT_OPERATING_BAUDRATE
    timeout: float = 0.1
    write_timeout: float = 2.0

    def with_baudrate(self, baudrate: int) -> "TransportConfig":
        return replace(self, baudrate=baudrate)


@runtime_checkable
class Transport(Protocol):
    """Minimal byte-stream device interface."""

    config: TransportConfig

    @property
    def is_open(self) -> bool: ...

    def open(self, config: Optional[TransportConfig] = None) -> None: ...

    def close(self) -> None: ...

    def write(self, data: bytes) -> int: ...

    def read(self, max_bytes: int) -> bytes: ...

    def set_control_signals(self, dtr: bool, rts: bool) -> None: ...


class SerialTransport:
    """
    pyserial-backed Transport.

    Example:
        transport = SerialTransport(TransportConfig(port="/dev/ttyACM0"))
        transport.open()
        transport.write(b"hello\\n")
        reply = transport.read(64)
        transport.close()
    """

    def __init__(self, config: TransportConfig):
        self.config = config
        self.ser: Optional[serial.Serial] = None

    @property
    def port(self) -> str:
        return self.config.port

    @property
    def is_open(self) -> bool:
        return bool(self.ser and self.ser.is_open)

    def open(self, config: Optional[TransportConfig] = None) -> None:
        """
        Open the serial port, optionally with new settings.

        Raises:
            TransportError: If the port cannot be opened
        """
        if config is not None:
            self.config = config
        if self.is_open:
            self.close()
        try:
            self.ser = serial.Serial(
                port=self.config.port,
                baudrate=self.config.baudrate,
                bytesize=8,
                parity="N",
                stopbits=1,
                timeout=self.config.timeout,
                write_timeout=self.config.write_timeout,
                rtscts=False,
                dsrdtr=False,
            )
            logger.debug(f"Opened {self.config.port} at {self.config.baudrate} bps")
        except (serial.SerialException, OSError) as e:
            self.ser = None
            raise TransportError(f"Cannot open port {self.config.port}: {e}") from e

    def close(self) -> None:
        """Close the serial port. Safe to call when already closed."""
        if self.ser is None:
            return
        try:
            if self.ser.is_open:
                self.ser.close()
                logger.debug(f"Closed {self.config.port}")
        except (serial.SerialException, OSError) as e:
            raise TransportError(f"Error closing {self.config.port}: {e}") from e
        finally:
            self.ser = None

    def write(self, data: bytes) -> int:
        """
        Write all bytes.

        Raises:
            TransportError: If the port is closed or the write is short
        """
        if not self.is_open:
            raise TransportError("Serial port not open")
        try:
            written = self.ser.write(data)
            self.ser.flush()
        except (serial.SerialException, OSError) as e:
            raise TransportError(f"Write error: {e}") from e
        if written != len(data):
            raise TransportError(f"Incomplete write: sent {written}/{len(data)} bytes")
        logger.debug(f">>> {data[:32].hex()}" + ("..." if len(data) > 32 else ""))
        return written

    def read(self, max_bytes: int) -> bytes:
        """
        Read up to max_bytes; returns b"" when the read timeout expires.

        A pyserial error here means the device went away, so the port is
        closed before TransportError is raised.
        """
        if not self.is_open:
            raise TransportError("Serial port not open")
        try:
            data = self.ser.read(max_bytes)
        except (serial.SerialException, OSError) as e:
            self._abandon()
            raise TransportError(f"Read error: {e}") from e
        if data:
            logger.debug(f"<<< {data[:32].hex()}" + ("..." if len(data) > 32 else ""))
        return data

    def set_control_signals(self, dtr: bool, rts: bool) -> None:
        if not self.is_open:
            raise TransportError("Serial port not open")
        try:
            self.ser.dtr = dtr
            self.ser.rts = rts
        except (serial.SerialException, OSError) as e:
            raise TransportError(f"Cannot set control lines on {self.config.port}: {e}") from e

    def _abandon(self) -> None:
        try:
            self.ser.close()
        except (serial.SerialException, OSError):
            logger.debug("Ignoring close error on vanished port %s", self.config.port)
        self.ser = None


class ConnectionState:
    """
    Explicit state shared by everything that talks to one device.

    - `connected` is the flag the receive loop polls before every read
    - `write_lock` serializes writers
    - `read_lock` is held by the single active reader
    - flash ownership excludes command writes for the duration of a flash
    """

    def __init__(self, transport: Transport):
        self.transport = transport
        self.connected = threading.Event()
        self.write_lock = threading.Lock()
        self.read_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._flash_active = False
        if transport.is_open:
            self.connected.set()

    @property
    def is_connected(self) -> bool:
        return self.connected.is_set()

    @property
    def flash_active(self) -> bool:
        with self._state_lock:
            return self._flash_active

    def open(self, config: Optional[TransportConfig] = None) -> None:
        self.transport.open(config)
        self.connected.set()

    def close(self) -> None:
        """Mark disconnected first so readers stop, then close the transport."""
        self.connected.clear()
        self.transport.close()

    def begin_flash(self) -> None:
        """
        Take flash ownership.

        Raises:
            FlashInProgress: If another flash already owns the connection
        """
        with self._state_lock:
            if self._flash_active:
                raise FlashInProgress("A flash operation is already running on this connection")
            self._flash_active = True

    def end_flash(self) -> None:
        with self._state_lock:
            self._flash_active = False

    def write(self, data: bytes) -> int:
        with self.write_lock:
            return self.transport.write(data)

    def write_command(self, data: bytes) -> int:
        """
        Write on behalf of a non-flash writer.

        Flash ownership is checked under the write lock, so a command can
        never land between two blocks of a flash.

        Raises:
            FlashInProgress: If a flash owns the connection
        """
        with self.write_lock:
            if self.flash_active:
                raise FlashInProgress("Cannot send commands while flashing")
            return self.transport.write(data)
