"""
MCU Flasher - serial firmware transfer engine for microcontrollers

Parses Intel HEX / binary / UF2 images, enters the bootloader with a
baud-rate touch, and streams raw or UF2-framed blocks with progress events.
"""

__version__ = "0.1.0"

from mcu_flasher.hex_parser import HexRecordParser, MalformedRecord, parse_intel_hex
from mcu_flasher.firmware import FirmwareImage, load_firmware
from mcu_flasher.protocol import (
    SerialTransport,
    ConnectionState,
    BootloaderHandshake,
    CommandChannel,
)
from mcu_flasher.flasher import FlashOrchestrator, RawChunked, UF2Framed, FlashEvent

__all__ = [
    "HexRecordParser",
    "MalformedRecord",
    "parse_intel_hex",
    "FirmwareImage",
    "load_firmware",
    "SerialTransport",
    "ConnectionState",
    "BootloaderHandshake",
    "CommandChannel",
    "FlashOrchestrator",
    "RawChunked",
    "UF2Framed",
    "FlashEvent",
    "__version__",
]
