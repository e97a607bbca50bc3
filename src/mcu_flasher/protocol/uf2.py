"""
UF2 block codec.

UF2 is a block-oriented firmware container made of fixed 512-byte blocks:

    offset  size  field
    0       4     magic start 0 (0x0A324655, "UF2\\n")
    4       4     magic start 1 (0x9E5D5157)
    8       4     flags
    12      4     target address
    16      4     payload size
    20      4     block number
    24      4     total block count
    28      4     family ID (valid when UF2_FLAG_FAMILY_ID is set)
    32      476   payload, zero padded
    508     4     magic end (0x0AB16F30)

All fields are little-endian. 512 - 32 (header) - 4 (end magic) leaves 476
bytes of payload capacity. Some tools declare 480 here; that overlaps the end
magic, so 476 is the hard limit.
"""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass
from typing import Iterable, Iterator, List, Optional

logger = logging.getLogger(__name__)

UF2_MAGIC_START0 = 0x0A324655
UF2_MAGIC_START1 = 0x9E5D5157
UF2_MAGIC_END = 0x0AB16F30
UF2_FLAG_FAMILY_ID = 0x00002000
UF2_FLAG_NOT_MAIN_FLASH = 0x00000001

UF2_BLOCK_SIZE = 512
UF2_HEADER_SIZE = 32
UF2_PAYLOAD_CAPACITY = UF2_BLOCK_SIZE - UF2_HEADER_SIZE - 4  # 476
UF2_DEFAULT_PAYLOAD = 256

_HEADER = struct.Struct("<IIIIIIII")
_FOOTER = struct.Struct("<I")


class Uf2Error(Exception):
    """Base exception for UF2 encode/decode errors."""


class BlockOverflow(Uf2Error):
    """Payload does not fit in a single UF2 block."""


class InvalidBlock(Uf2Error):
    """Buffer is not a well-formed UF2 block."""


@dataclass(frozen=True)
class Uf2Block:
    """One 512-byte UF2 block."""

    flags: int
    target_address: int
    payload_size: int
    block_no: int
    num_blocks: int
    family_id: int
    payload: bytes

    @property
    def has_family_id(self) -> bool:
        return bool(self.flags & UF2_FLAG_FAMILY_ID)

    @property
    def data(self) -> bytes:
        """Payload bytes trimmed to the declared payload size."""
        return self.payload[:self.payload_size]

    def to_bytes(self) -> bytes:
        """Serialize to the 512-byte wire format."""
        if len(self.payload) > UF2_PAYLOAD_CAPACITY:
            raise BlockOverflow(
                f"payload is {len(self.payload)} bytes (max {UF2_PAYLOAD_CAPACITY})"
            )
        header = _HEADER.pack(
            UF2_MAGIC_START0,
            UF2_MAGIC_START1,
            self.flags & 0xFFFFFFFF,
            self.target_address & 0xFFFFFFFF,
            self.payload_size,
            self.block_no,
            self.num_blocks,
            self.family_id & 0xFFFFFFFF,
        )
        payload = self.payload.ljust(UF2_PAYLOAD_CAPACITY, b"\x00")
        return header + payload + _FOOTER.pack(UF2_MAGIC_END)


def encode_block(
    payload: bytes,
    block_no: int,
    num_blocks: int,
    target_address: int,
    family_id: Optional[int] = None,
) -> Uf2Block:
    """
    Build a UF2 block around up to 476 payload bytes.

    Short payloads are zero-padded to the full 476-byte payload region.
    The flags word carries UF2_FLAG_FAMILY_ID only when family_id is given.

    Raises:
        BlockOverflow: If payload is longer than 476 bytes
        ValueError: If block_no is not below num_blocks
    """
    if len(payload) > UF2_PAYLOAD_CAPACITY:
        raise BlockOverflow(
            f"payload is {len(payload)} bytes (max {UF2_PAYLOAD_CAPACITY})"
        )
    if not 0 <= block_no < num_blocks:
        raise ValueError(f"block_no {block_no} out of range for {num_blocks} blocks")

    padding = UF2_PAYLOAD_CAPACITY - len(payload)
    if padding:
        logger.debug("Block %d/%d: padded %d bytes", block_no, num_blocks, padding)

    return Uf2Block(
        flags=UF2_FLAG_FAMILY_ID if family_id is not None else 0,
        target_address=target_address,
        payload_size=len(payload),
        block_no=block_no,
        num_blocks=num_blocks,
        family_id=family_id or 0,
        payload=bytes(payload) + bytes(padding),
    )


def decode_block(data: bytes, strict: bool = False) -> Uf2Block:
    """
    Parse and validate a 512-byte UF2 block.

    Args:
        data: Raw block bytes
        strict: Also check payload_size <= 476 and block_no < num_blocks

    Raises:
        InvalidBlock: On wrong length or magic mismatch (and, in strict mode,
            inconsistent header fields)
    """
    if len(data) != UF2_BLOCK_SIZE:
        raise InvalidBlock(f"UF2 block must be {UF2_BLOCK_SIZE} bytes, got {len(data)}")

    (magic0, magic1, flags, target_address, payload_size,
     block_no, num_blocks, family_id) = _HEADER.unpack_from(data, 0)
    (magic_end,) = _FOOTER.unpack_from(data, UF2_BLOCK_SIZE - 4)

    if magic0 != UF2_MAGIC_START0 or magic1 != UF2_MAGIC_START1:
        raise InvalidBlock(f"Bad start magic 0x{magic0:08X}/0x{magic1:08X}")
    if magic_end != UF2_MAGIC_END:
        raise InvalidBlock(f"Bad end magic 0x{magic_end:08X}")

    if strict:
        if payload_size > UF2_PAYLOAD_CAPACITY:
            raise InvalidBlock(f"payload_size {payload_size} exceeds {UF2_PAYLOAD_CAPACITY}")
        if block_no >= num_blocks:
            raise InvalidBlock(f"block_no {block_no} >= num_blocks {num_blocks}")

    return Uf2Block(
        flags=flags,
        target_address=target_address,
        payload_size=payload_size,
        block_no=block_no,
        num_blocks=num_blocks,
        family_id=family_id,
        payload=bytes(data[UF2_HEADER_SIZE:UF2_HEADER_SIZE + UF2_PAYLOAD_CAPACITY]),
    )


def iter_blocks(blob: bytes, strict: bool = False) -> Iterator[Uf2Block]:
    """Decode every block of a .uf2 file."""
    if len(blob) % UF2_BLOCK_SIZE:
        raise InvalidBlock(
            f"UF2 file size {len(blob)} is not a multiple of {UF2_BLOCK_SIZE}"
        )
    for offset in range(0, len(blob), UF2_BLOCK_SIZE):
        yield decode_block(blob[offset:offset + UF2_BLOCK_SIZE], strict=strict)


def blocks_to_image(blocks: Iterable[Uf2Block]):
    """
    Reassemble decoded blocks into a FirmwareImage.

    Blocks flagged "not main flash" are skipped. Holes between target
    addresses are zero filled.
    """
    from ..firmware import FirmwareImage

    usable: List[Uf2Block] = [
        b for b in blocks if not b.flags & UF2_FLAG_NOT_MAIN_FLASH
    ]
    if not usable:
        return FirmwareImage(data=b"", load_address=0, source="uf2")

    usable.sort(key=lambda b: b.target_address)
    base = usable[0].target_address
    out = bytearray()
    for block in usable:
        offset = block.target_address - base
        if offset > len(out):
            out.extend(bytes(offset - len(out)))
        out[offset:offset + block.payload_size] = block.data
    return FirmwareImage(data=bytes(out), load_address=base, source="uf2")


def image_to_uf2(
    data: bytes,
    *,
    base_address: int = 0,
    data_per_block: int = UF2_DEFAULT_PAYLOAD,
    family_id: Optional[int] = None,
) -> bytes:
    """Encode a whole image into .uf2 file bytes."""
    if not 0 < data_per_block <= UF2_PAYLOAD_CAPACITY:
        raise BlockOverflow(
            f"data_per_block must be 1..{UF2_PAYLOAD_CAPACITY}, got {data_per_block}"
        )
    num_blocks = (len(data) + data_per_block - 1) // data_per_block
    out = bytearray()
    for block_no in range(num_blocks):
        offset = block_no * data_per_block
        chunk = data[offset:offset + data_per_block].ljust(data_per_block, b"\x00")
        block = encode_block(chunk, block_no, num_blocks, base_address + offset, family_id)
        out.extend(block.to_bytes())
    return bytes(out)
