"""Shared fixtures: an in-memory transport that records every call."""

from collections import deque

import pytest

from mcu_flasher.protocol.transport import (
    EndOfStream,
    TransportConfig,
    TransportError,
)


class FakeTransport:
    """
    Scriptable stand-in for SerialTransport.

    - writes are recorded in `writes`
    - `opens` records the baud rate of every open()
    - `signals` records every (dtr, rts) pair
    - reads pop from `script`: bytes are returned, exceptions raised,
      an empty script returns b"" (read timeout)
    """

    def __init__(self, port="/dev/ttyFAKE0", baudrate=115200, *, fail_on_write=None,
                 fail_open=False, start_open=False):
        self.config = TransportConfig(port=port, baudrate=baudrate)
        self.writes = []
        self.opens = []
        self.signals = []
        self.close_count = 0
        self.script = deque()
        self.fail_on_write = fail_on_write
        self.fail_open = fail_open
        self._open = start_open

    @property
    def is_open(self):
        return self._open

    def open(self, config=None):
        if config is not None:
            self.config = config
        if self.fail_open:
            raise TransportError(f"Cannot open port {self.config.port}: busy")
        self.opens.append(self.config.baudrate)
        self._open = True

    def close(self):
        if self._open:
            self.close_count += 1
        self._open = False

    def write(self, data):
        if not self._open:
            raise TransportError("Serial port not open")
        if self.fail_on_write is not None and len(self.writes) == self.fail_on_write:
            raise TransportError(f"Write error: device unplugged at write {len(self.writes)}")
        self.writes.append(bytes(data))
        return len(data)

    def read(self, max_bytes):
        if not self._open:
            raise TransportError("Serial port not open")
        if not self.script:
            return b""
        item = self.script.popleft()
        if isinstance(item, BaseException):
            if isinstance(item, TransportError) and not isinstance(item, EndOfStream):
                self._open = False
            raise item
        return item[:max_bytes]

    def set_control_signals(self, dtr, rts):
        if not self._open:
            raise TransportError("Serial port not open")
        self.signals.append((dtr, rts))


@pytest.fixture
def fake_transport():
    """A closed FakeTransport."""
    return FakeTransport()


@pytest.fixture
def open_transport():
    """A FakeTransport that is already open."""
    return FakeTransport(start_open=True)


@pytest.fixture
def no_sleep():
    """Sleep replacement that records requested delays."""
    calls = []

    def sleep(seconds):
        calls.append(seconds)

    sleep.calls = calls
    return sleep
