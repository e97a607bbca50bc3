"""
Centralized parsing helpers for numeric and mode option values.

The CLI must import these helpers rather than re-implement.
"""

from typing import Optional

from mcu_flasher.models import TransferMode


def parse_int(value: Optional[str], label: str = "value") -> Optional[int]:
    """
    Parse an integer from string, supporting multiple formats.

    Accepts:
        - Decimal: "4096"
        - Hex with 0x prefix: "0x1000" or "0X1000"
        - Hex with h suffix: "1000h" or "1000H"
        - None or empty for "not given"

    Raises:
        ValueError: If value cannot be parsed.
    """
    if value is None:
        return None

    value = value.strip()
    if not value:
        return None

    try:
        if value.lower().startswith("0x"):
            return int(value, 16)
        if value.lower().endswith("h"):
            return int(value[:-1], 16)
        return int(value)
    except ValueError:
        raise ValueError(
            f"Invalid {label} '{value}'. Use decimal (4096), hex (0x1000), or suffix (1000h)."
        )


def parse_transfer_mode(value: Optional[str]) -> Optional[TransferMode]:
    """
    Parse a transfer mode name ("raw", "uf2"; case-insensitive).

    Returns None for None/empty so the device profile default applies.

    Raises:
        ValueError: If mode is not recognized.
    """
    if value is None or not value.strip():
        return None
    try:
        return TransferMode(value.strip().lower())
    except ValueError:
        valid = ", ".join(m.value for m in TransferMode)
        raise ValueError(f"Invalid mode '{value}'. Use one of: {valid}.")
