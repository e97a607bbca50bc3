"""
Firmware image container and loaders.

Normalizes the supported input formats (Intel HEX text, raw binary, UF2)
into one immutable FirmwareImage.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from .hex_parser import HexRecordParser

logger = logging.getLogger(__name__)

HEX_SUFFIXES = {".hex", ".ihex", ".ihx"}
UF2_SUFFIXES = {".uf2"}


@dataclass(frozen=True)
class FirmwareImage:
    """Immutable firmware bytes plus the address they load at."""

    data: bytes
    load_address: int = 0
    source: str = ""

    def __len__(self) -> int:
        return len(self.data)

    @property
    def sha256(self) -> str:
        return hashlib.sha256(self.data).hexdigest()

    @classmethod
    def from_hex(cls, text: str, *, load_address: int = 0, strict: bool = False,
                 source: str = "") -> "FirmwareImage":
        data = HexRecordParser(strict=strict).parse(text)
        return cls(data=data, load_address=load_address, source=source or "hex")


def load_firmware(
    path: Union[str, Path],
    *,
    load_address: Optional[int] = None,
    strict: bool = False,
) -> FirmwareImage:
    """
    Load a firmware file, choosing the decoder from its suffix.

    - .hex/.ihex/.ihx: Intel HEX, data records concatenated
    - .uf2: UF2 blocks reassembled by target address
    - anything else: raw binary

    Args:
        path: Firmware file path
        load_address: Override for the image load address
        strict: Validate HEX checksums / UF2 block fields

    Raises:
        FileNotFoundError: If path does not exist
        MalformedRecord / InvalidBlock: On decode errors
    """
    from .protocol.uf2 import blocks_to_image, iter_blocks

    file_path = Path(path)
    if not file_path.exists():
        raise FileNotFoundError(f"Firmware file not found: {file_path}")

    suffix = file_path.suffix.lower()
    if suffix in HEX_SUFFIXES:
        image = FirmwareImage.from_hex(
            file_path.read_text(encoding="ascii", errors="replace"),
            load_address=load_address or 0,
            strict=strict,
            source=str(file_path),
        )
    elif suffix in UF2_SUFFIXES:
        decoded = blocks_to_image(list(iter_blocks(file_path.read_bytes(), strict=strict)))
        image = FirmwareImage(
            data=decoded.data,
            load_address=decoded.load_address if load_address is None else load_address,
            source=str(file_path),
        )
    else:
        image = FirmwareImage(
            data=file_path.read_bytes(),
            load_address=load_address or 0,
            source=str(file_path),
        )

    logger.info("Loaded %s: %d bytes @ 0x%08X", file_path.name, len(image), image.load_address)
    return image
