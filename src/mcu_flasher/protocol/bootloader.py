"""
Bootloader entry handshake.

Forces a device from its application firmware into the bootloader and back.

The trigger is the "baud rate touch": opening the port at a distinguished low
baud rate (1200 bps on most USB-CDC bootloaders) and closing it again with the
control lines dropped. The application firmware interprets this as a request
to reset into the bootloader, which then re-enumerates as a different serial
device.

Phases:
    APPLICATION -> TRIGGERING -> AWAITING_REENUMERATION -> BOOTLOADER_READY
                -> RESETTING -> APPLICATION

Public API:
    BootloaderHandshake  -- phase machine driving a Transport
    BootloaderConfig     -- touch baud, settle delay, timeouts
    PortWatcher          -- waits for the re-enumerated serial port
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, List, Optional, Union

from .transport import (
    DEFAULT_OPERATING_BAUDRATE,
    SerialTransport,
    Transport,
    TransportConfig,
    TransportError,
)

logger = logging.getLogger(__name__)

DEFAULT_TOUCH_BAUDRATE = 1200
DEFAULT_SETTLE_DELAY = 2.0
DEFAULT_REENUMERATION_TIMEOUT = 10.0
POLL_INTERVAL = 0.25


class HandshakePhase(Enum):
    APPLICATION = "application"
    TRIGGERING = "triggering"
    AWAITING_REENUMERATION = "awaiting_reenumeration"
    BOOTLOADER_READY = "bootloader_ready"
    RESETTING = "resetting"


class BootloaderHandshakeFailed(Exception):
    """
    Raised when any handshake transition fails.

    Attributes:
        phase: Phase in which the failure happened
        cause: Underlying exception, if any
    """

    def __init__(self, phase: HandshakePhase, cause: Optional[BaseException] = None):
        self.phase = phase
        self.cause = cause
        detail = f": {cause}" if cause else ""
        super().__init__(f"Bootloader handshake failed during {phase.value}{detail}")


@dataclass(frozen=True)
class BootloaderConfig:
    """Tunable handshake parameters (per device family)."""

    touch_baudrate: int = DEFAULT_TOUCH_BAUDRATE
    operating_baudrate: int = DEFAULT_OPERATING_BAUDRATE
    settle_delay: float = DEFAULT_SETTLE_DELAY
    reenumeration_timeout: float = DEFAULT_REENUMERATION_TIMEOUT
    reopen_after_reset: bool = False


TransportProvider = Callable[[], Transport]


class BootloaderHandshake:
    """
    Drives one device through bootloader entry and exit.

    Example:
        handshake = BootloaderHandshake(BootloaderConfig(settle_delay=1.5))
        handshake.enter_bootloader(app_transport)
        boot_transport = handshake.attach(PortWatcher(app_transport.config))
        ...  # write firmware blocks
        handshake.exit_bootloader(boot_transport, original=app_transport)
    """

    def __init__(
        self,
        config: Optional[BootloaderConfig] = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config or BootloaderConfig()
        self.phase = HandshakePhase.APPLICATION
        self._sleep = sleep

    def _set_phase(self, phase: HandshakePhase) -> None:
        logger.info("Bootloader handshake: %s -> %s", self.phase.value, phase.value)
        self.phase = phase

    def _require(self, expected: HandshakePhase) -> None:
        if self.phase is not expected:
            raise self._fail(
                RuntimeError(f"expected phase {expected.value}, in {self.phase.value}")
            )

    def _fail(self, cause: BaseException) -> BootloaderHandshakeFailed:
        failed_phase = self.phase
        self.phase = HandshakePhase.APPLICATION
        logger.error("Bootloader handshake failed in %s: %s", failed_phase.value, cause)
        return BootloaderHandshakeFailed(failed_phase, cause)

    def reset(self) -> None:
        """Forget any in-progress handshake."""
        self.phase = HandshakePhase.APPLICATION

    def enter_bootloader(self, transport: Transport) -> None:
        """
        Send the baud-rate touch and wait for the device to settle.

        The transport is left closed; the device is expected to come back
        as a new serial device (see attach()).

        Raises:
            BootloaderHandshakeFailed: If the transport cannot be cycled
        """
        self._require(HandshakePhase.APPLICATION)
        self._set_phase(HandshakePhase.TRIGGERING)

        app_config = transport.config
        try:
            if transport.is_open:
                transport.set_control_signals(dtr=False, rts=False)
                transport.close()
            logger.info(
                "Touching %s at %d bps", app_config.port or "device", self.config.touch_baudrate
            )
            transport.open(app_config.with_baudrate(self.config.touch_baudrate))
            transport.set_control_signals(dtr=False, rts=False)
            transport.close()
        except TransportError as e:
            raise self._fail(e) from e
        finally:
            transport.config = app_config

        self._set_phase(HandshakePhase.AWAITING_REENUMERATION)
        if self.config.settle_delay > 0:
            logger.debug("Waiting %.2fs for re-enumeration", self.config.settle_delay)
            self._sleep(self.config.settle_delay)

    def attach(self, target: Union[Transport, TransportProvider]) -> Transport:
        """
        Bind the re-enumerated device and open it at the operating baud rate.

        Args:
            target: The bootloader transport, or a callable that waits for
                and returns it (raising TimeoutError when it never appears)

        Returns:
            The opened bootloader transport

        Raises:
            BootloaderHandshakeFailed: On timeout or open failure
        """
        self._require(HandshakePhase.AWAITING_REENUMERATION)
        try:
            transport = target() if callable(target) else target
            transport.open(transport.config.with_baudrate(self.config.operating_baudrate))
        except (TransportError, TimeoutError) as e:
            raise self._fail(e) from e

        self._set_phase(HandshakePhase.BOOTLOADER_READY)
        return transport

    def exit_bootloader(
        self,
        transport: Transport,
        original: Optional[Transport] = None,
    ) -> None:
        """
        Tell the bootloader to boot the application.

        Drops the control lines and closes the bootloader transport. When
        reopen_after_reset is configured, the original transport is reopened
        at the operating baud rate after the settle delay.

        Raises:
            BootloaderHandshakeFailed: If closing or reopening fails
        """
        self._require(HandshakePhase.BOOTLOADER_READY)
        self._set_phase(HandshakePhase.RESETTING)
        try:
            if transport.is_open:
                transport.set_control_signals(dtr=False, rts=False)
                transport.close()
            if self.config.reopen_after_reset and original is not None:
                if self.config.settle_delay > 0:
                    self._sleep(self.config.settle_delay)
                original.open(original.config.with_baudrate(self.config.operating_baudrate))
        except TransportError as e:
            raise self._fail(e) from e

        self._set_phase(HandshakePhase.APPLICATION)


def _list_serial_ports() -> List[str]:
    import serial.tools.list_ports

    return [p.device for p in serial.tools.list_ports.comports()]


class PortWatcher:
    """
    Waits for a serial port to re-enumerate after a bootloader touch.

    The port listing is snapshotted at construction, so create the watcher
    before calling enter_bootloader(). Calling the watcher polls until either
    a port that was not in the snapshot appears, or the original port
    disappears and comes back.
    """

    def __init__(
        self,
        original: TransportConfig,
        *,
        timeout: float = DEFAULT_REENUMERATION_TIMEOUT,
        poll_interval: float = POLL_INTERVAL,
        list_ports: Callable[[], Iterable[str]] = _list_serial_ports,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.original = original
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._list_ports = list_ports
        self._sleep = sleep
        self._clock = clock
        self.snapshot = set(list_ports())

    def wait_for_port(self) -> str:
        """
        Return the device path of the re-enumerated port.

        Raises:
            TimeoutError: If no suitable port shows up in time
        """
        deadline = self._clock() + self.timeout
        original_vanished = False
        current = set()
        while self._clock() < deadline:
            current = set(self._list_ports())
            new_ports = sorted(current - self.snapshot)
            if new_ports:
                logger.info("Bootloader port appeared: %s", new_ports[0])
                return new_ports[0]
            if self.original.port not in current:
                original_vanished = True
            elif original_vanished:
                logger.info("Port %s re-enumerated", self.original.port)
                return self.original.port
            self._sleep(self.poll_interval)

        if self.original.port and self.original.port in current:
            logger.warning(
                "No new port after %.1fs; assuming %s re-enumerated under the same name",
                self.timeout,
                self.original.port,
            )
            return self.original.port
        raise TimeoutError(f"No bootloader port appeared within {self.timeout:.1f}s")

    def __call__(self) -> Transport:
        return SerialTransport(TransportConfig(
            port=self.wait_for_port(),
            baudrate=self.original.baudrate,
            timeout=self.original.timeout,
            write_timeout=self.original.write_timeout,
        ))
