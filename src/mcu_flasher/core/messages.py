"""
Standardized warning and message system for MCU Flasher.

Provides structured warning items with stable codes that any front end can
display consistently.
"""

from dataclasses import dataclass
from enum import Enum
from typing import List, Dict, Any


class MessageLevel(Enum):
    """Severity level for messages."""
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class WarningCode(Enum):
    """Stable warning codes for known conditions."""
    # Device/connection warnings
    W_DEVICE_NOT_FOUND = "W_DEVICE_NOT_FOUND"
    W_SERIAL_ERROR = "W_SERIAL_ERROR"
    W_SERIAL_TIMEOUT = "W_SERIAL_TIMEOUT"

    # Bootloader warnings
    W_HANDSHAKE_FAILED = "W_HANDSHAKE_FAILED"
    W_REENUMERATION_TIMEOUT = "W_REENUMERATION_TIMEOUT"

    # Transfer warnings
    W_WRITE_FAILED = "W_WRITE_FAILED"
    W_CANCELLED = "W_CANCELLED"

    # Image warnings
    W_EMPTY_IMAGE = "W_EMPTY_IMAGE"
    W_ADDRESS_GAP = "W_ADDRESS_GAP"
    W_DATA_PADDED = "W_DATA_PADDED"
    W_FAMILY_MISMATCH = "W_FAMILY_MISMATCH"

    # Operation warnings
    W_DRY_RUN = "W_DRY_RUN"

    # Generic
    W_UNKNOWN = "W_UNKNOWN"


# Default remediation hints for each warning code
WARNING_REMEDIATIONS: Dict[WarningCode, str] = {
    WarningCode.W_DEVICE_NOT_FOUND:
        "Check USB connection, try 'ports' command to list available ports.",
    WarningCode.W_SERIAL_ERROR:
        "Close other serial apps (serial monitors, IDEs). Check USB driver.",
    WarningCode.W_SERIAL_TIMEOUT:
        "Check cable connection. Try a lower baud rate or increase timeout.",
    WarningCode.W_HANDSHAKE_FAILED:
        "The device did not enter its bootloader. Double-tap reset and retry with --no-bootloader.",
    WarningCode.W_REENUMERATION_TIMEOUT:
        "Increase --settle-delay, or put the device in bootloader mode manually.",
    WarningCode.W_WRITE_FAILED:
        "The device stopped accepting data. Reconnect it and flash again from the start.",
    WarningCode.W_CANCELLED:
        "The device may hold a partial image. Flash again before using it.",
    WarningCode.W_EMPTY_IMAGE:
        "The firmware file contains no data records. Check the build output.",
    WarningCode.W_ADDRESS_GAP:
        "HEX records were concatenated in file order. Convert to a contiguous binary first.",
    WarningCode.W_DATA_PADDED:
        "The final block was zero-padded to full size.",
    WarningCode.W_FAMILY_MISMATCH:
        "The UF2 family ID does not match the selected profile. Check --profile.",
    WarningCode.W_DRY_RUN:
        "Dry run complete. Remove --dry-run to write to the device.",
    WarningCode.W_UNKNOWN:
        "Check logs for more details.",
}


@dataclass
class WarningItem:
    """
    Structured warning message with stable code.

    Attributes:
        level: Severity (INFO, WARN, ERROR)
        code: Stable warning code for programmatic handling
        title: Short, user-facing title
        detail: Longer explanation of the issue
        remediation: Suggested action to resolve the issue
    """
    level: MessageLevel
    code: WarningCode
    title: str
    detail: str = ""
    remediation: str = ""

    def __post_init__(self):
        """Set default remediation if not provided."""
        if not self.remediation and self.code in WARNING_REMEDIATIONS:
            self.remediation = WARNING_REMEDIATIONS[self.code]

    @classmethod
    def info(cls, code: WarningCode, title: str, detail: str = "") -> "WarningItem":
        """Create an INFO-level warning."""
        return cls(MessageLevel.INFO, code, title, detail)

    @classmethod
    def warn(cls, code: WarningCode, title: str, detail: str = "") -> "WarningItem":
        """Create a WARN-level warning."""
        return cls(MessageLevel.WARN, code, title, detail)

    @classmethod
    def error(cls, code: WarningCode, title: str, detail: str = "") -> "WarningItem":
        """Create an ERROR-level warning."""
        return cls(MessageLevel.ERROR, code, title, detail)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON/display."""
        return {
            "level": self.level.value,
            "code": self.code.value,
            "title": self.title,
            "detail": self.detail,
            "remediation": self.remediation,
        }


def _classify(message: str) -> WarningCode:
    msg = message.lower()
    if "cancelled" in msg:
        return WarningCode.W_CANCELLED
    if "bootloader port" in msg or "re-enumerat" in msg:
        return WarningCode.W_REENUMERATION_TIMEOUT
    if "handshake" in msg:
        return WarningCode.W_HANDSHAKE_FAILED
    if "timeout" in msg:
        return WarningCode.W_SERIAL_TIMEOUT
    if "cannot open port" in msg:
        return WarningCode.W_DEVICE_NOT_FOUND
    if "write" in msg:
        return WarningCode.W_WRITE_FAILED
    if "empty firmware" in msg:
        return WarningCode.W_EMPTY_IMAGE
    if "not contiguous" in msg or "gap" in msg:
        return WarningCode.W_ADDRESS_GAP
    if "padded" in msg:
        return WarningCode.W_DATA_PADDED
    if "family" in msg:
        return WarningCode.W_FAMILY_MISMATCH
    if "dry run" in msg:
        return WarningCode.W_DRY_RUN
    if "serial" in msg or "port" in msg:
        return WarningCode.W_SERIAL_ERROR
    return WarningCode.W_UNKNOWN


def warnings_from_strings(
    warning_strings: List[str],
    default_level: MessageLevel = MessageLevel.WARN,
) -> List[WarningItem]:
    """
    Convert plain warning strings to WarningItem list.

    Known patterns are mapped to their stable codes.
    """
    return [
        WarningItem(level=default_level, code=_classify(msg), title=msg)
        for msg in warning_strings
    ]


def result_to_warnings(result) -> List[WarningItem]:
    """Convert an OperationResult's warnings and errors to WarningItems."""
    items = warnings_from_strings(result.warnings, MessageLevel.WARN)
    items.extend(warnings_from_strings(result.errors, MessageLevel.ERROR))
    return items
