"""
Intel HEX record parser.

Decodes an Intel HEX text image into a flat byte buffer.

Record layout (one per line):
    ':' | byte_count (2) | address (4) | record_type (2) | data (2*N) | checksum (2)

Only data records (type 0x00) contribute bytes to the output; all other
record types are skipped, including end-of-file: data records that follow an
EOF record are still kept. Data payloads are concatenated in file order.
The 16-bit address field is parsed and kept on each record, but it is NOT
used to place bytes at an offset: images with holes or out-of-order records
come out packed. `HexRecordParser.address_gaps` reports where that happens.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterator, List, Tuple

logger = logging.getLogger(__name__)

RECORD_MARKER = ":"

RECORD_DATA = 0x00
RECORD_EOF = 0x01
RECORD_EXT_SEGMENT_ADDR = 0x02
RECORD_START_SEGMENT_ADDR = 0x03
RECORD_EXT_LINEAR_ADDR = 0x04
RECORD_START_LINEAR_ADDR = 0x05

# byte_count + address + record_type, in hex characters
_HEADER_CHARS = 8


class MalformedRecord(Exception):
    """
    Raised for a HEX line that cannot be decoded.

    Attributes:
        line_number: 1-based line number in the input text
        reason: Human-readable explanation
    """

    def __init__(self, line_number: int, reason: str):
        self.line_number = line_number
        self.reason = reason
        super().__init__(f"Line {line_number}: {reason}")


@dataclass(frozen=True)
class HexRecord:
    """One parsed Intel HEX line."""

    byte_count: int
    address: int
    record_type: int
    data: bytes
    checksum: int
    line_number: int = 0

    @property
    def checksum_valid(self) -> bool:
        """Two's complement of the byte sum must equal the checksum byte."""
        total = self.byte_count + (self.address >> 8) + (self.address & 0xFF) + self.record_type
        total += sum(self.data)
        return ((-total) & 0xFF) == self.checksum


def _hex_field(line: str, start: int, length: int, line_number: int, name: str) -> int:
    token = line[start:start + length]
    try:
        return int(token, 16)
    except ValueError:
        raise MalformedRecord(line_number, f"invalid hex in {name}: {token!r}")


def parse_record(line: str, line_number: int = 0, strict: bool = False) -> HexRecord:
    """
    Parse a single HEX line (including the leading ':').

    Args:
        line: Record text, without line terminator
        line_number: Line number used in error messages
        strict: Also verify the record checksum

    Raises:
        MalformedRecord: If the line is truncated, contains non-hex
            characters, or (strict only) has a bad checksum
    """
    if not line.startswith(RECORD_MARKER):
        raise MalformedRecord(line_number, "missing ':' record marker")
    body = line[1:]
    if len(body) < _HEADER_CHARS:
        raise MalformedRecord(line_number, f"record too short ({len(line)} chars)")

    byte_count = _hex_field(body, 0, 2, line_number, "byte count")
    address = _hex_field(body, 2, 4, line_number, "address")
    record_type = _hex_field(body, 6, 2, line_number, "record type")

    data_end = _HEADER_CHARS + byte_count * 2
    if len(body) < data_end:
        raise MalformedRecord(
            line_number,
            f"declares {byte_count} data bytes but only "
            f"{max(0, (len(body) - _HEADER_CHARS) // 2)} present",
        )
    try:
        data = bytes.fromhex(body[_HEADER_CHARS:data_end])
    except ValueError:
        raise MalformedRecord(line_number, "invalid hex in data field")

    checksum_text = body[data_end:data_end + 2]
    if len(checksum_text) == 2:
        checksum = _hex_field(body, data_end, 2, line_number, "checksum")
    elif strict:
        raise MalformedRecord(line_number, "missing checksum")
    else:
        checksum = 0

    record = HexRecord(
        byte_count=byte_count,
        address=address,
        record_type=record_type,
        data=data,
        checksum=checksum,
        line_number=line_number,
    )
    if strict and not record.checksum_valid:
        raise MalformedRecord(line_number, f"checksum mismatch (0x{checksum:02X})")
    return record


def iter_records(text: str, strict: bool = False) -> Iterator[HexRecord]:
    """
    Yield records for every non-empty line starting with ':'.

    Lines without the marker are ignored. The end-of-file record is yielded
    like any other; records that follow it are still read.
    """
    for line_number, raw_line in enumerate(text.splitlines(), start=1):
        line = raw_line.strip()
        if not line or not line.startswith(RECORD_MARKER):
            continue
        record = parse_record(line, line_number, strict=strict)
        yield record


class HexRecordParser:
    """
    Stateful parser that keeps diagnostics from the last parse.

    Example:
        parser = HexRecordParser()
        data = parser.parse(Path("firmware.hex").read_text())
        for prev_end, addr in parser.address_gaps:
            logger.warning("gap before 0x%04X", addr)
    """

    def __init__(self, strict: bool = False):
        self.strict = strict
        self.records: List[HexRecord] = []
        self.skipped_record_types: List[int] = []
        self.address_gaps: List[Tuple[int, int]] = []
        self.records_after_eof = 0

    def parse(self, text: str) -> bytes:
        """Return all data-record payloads concatenated in file order."""
        self.records = []
        self.skipped_record_types = []
        self.address_gaps = []
        self.records_after_eof = 0

        out = bytearray()
        expected_addr = None
        seen_eof = False
        for record in iter_records(text, strict=self.strict):
            self.records.append(record)
            if record.record_type != RECORD_DATA:
                if record.record_type == RECORD_EOF:
                    seen_eof = True
                else:
                    self.skipped_record_types.append(record.record_type)
                continue
            if seen_eof:
                self.records_after_eof += 1
            if expected_addr is not None and record.address != expected_addr:
                self.address_gaps.append((expected_addr, record.address))
            expected_addr = (record.address + record.byte_count) & 0xFFFF
            out.extend(record.data)

        if self.skipped_record_types:
            logger.debug(
                "Skipped %d non-data records (types %s)",
                len(self.skipped_record_types),
                sorted({f"0x{t:02X}" for t in self.skipped_record_types}),
            )
        if self.records_after_eof:
            logger.warning(
                "%d data record(s) follow the EOF record; they were kept",
                self.records_after_eof,
            )
        if self.address_gaps:
            logger.warning(
                "HEX data is not contiguous (%d gaps); records were concatenated in file order",
                len(self.address_gaps),
            )
        logger.debug("Parsed %d HEX records into %d bytes", len(self.records), len(out))
        return bytes(out)


def parse_intel_hex(text: str, strict: bool = False) -> bytes:
    """Convenience wrapper around HexRecordParser.parse()."""
    return HexRecordParser(strict=strict).parse(text)
