"""Reading and writing firmware images in Intel HEX format."""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
from enum import IntEnum

_MAX_RECORD_CHARS = 522
_MIN_RECORD_CHARS = 10
_CHUNK_SIZE = 16
_HEX_DIGITS = frozenset("0123456789abcdefABCDEF")


class ConversionError(Exception):
    """Raised when data cannot be converted to or from Intel HEX."""


class UnpackingError(ConversionError):
    """Raised when Intel HEX records cannot be laid out as a flat image."""


class ParsingError(UnpackingError):
    """Raised when a record line is malformed."""


class ChecksumMismatchError(ParsingError):
    """Raised when a record's checksum does not match its contents."""

    def __init__(self, expected: int, found: int) -> None:
        super().__init__(
            f"Checksum mismatch: expected {expected:#04x}, found {found:#04x}"
        )
        self.expected = expected
        self.found = found


class AddressTooHighError(UnpackingError):
    """Raised when a data record reaches past the allowed image size."""

    def __init__(self, addr: int, size: int) -> None:
        super().__init__(f"Address {addr:#06x} greater than binary size {size:#06x}")
        self.addr = addr
        self.size = size


class UnsupportedRecordTypeError(UnpackingError):
    """Raised for address records that a flat 16-bit image cannot use."""

    def __init__(self, record_type: int, data: bytes) -> None:
        super().__init__(f"Unsupported record type {record_type:#04x}")
        self.record_type = record_type
        self.data = data


class _RecordType(IntEnum):
    DATA = 0x00
    END_OF_FILE = 0x01
    EXTENDED_SEGMENT_ADDRESS = 0x02
    START_SEGMENT_ADDRESS = 0x03
    EXTENDED_LINEAR_ADDRESS = 0x04
    START_LINEAR_ADDRESS = 0x05


_FIXED_LENGTHS = {
    _RecordType.END_OF_FILE: 0,
    _RecordType.EXTENDED_SEGMENT_ADDRESS: 2,
    _RecordType.START_SEGMENT_ADDRESS: 4,
    _RecordType.EXTENDED_LINEAR_ADDRESS: 2,
    _RecordType.START_LINEAR_ADDRESS: 4,
}


@dataclass(frozen=True)
class _Record:
    kind: _RecordType
    offset: int
    data: bytes

    def encode(self) -> str:
        if len(self.data) > 0xFF:
            raise ConversionError("Record data exceeds 255 bytes")
        raw = bytes([len(self.data), self.offset >> 8, self.offset & 0xFF, self.kind])
        raw += self.data
        checksum = -sum(raw) & 0xFF
        return ":" + (raw + bytes([checksum])).hex().upper()


def _parse_record(line: str) -> _Record:
    if not line.startswith(":"):
        raise ParsingError("Record does not begin with a start code")
    body = line[1:]
    if len(body) < _MIN_RECORD_CHARS:
        raise ParsingError("Record is too short")
    if len(body) > _MAX_RECORD_CHARS:
        raise ParsingError("Record is too long")
    if len(body) % 2:
        raise ParsingError("Record does not have an even number of characters")
    if not set(body) <= _HEX_DIGITS:
        raise ParsingError("Record contains invalid characters")

    raw = bytes.fromhex(body)
    count = raw[0]
    if len(raw) != count + 5:
        raise ParsingError("Record payload length does not match its byte count")

    expected = -sum(raw[:-1]) & 0xFF
    found = raw[-1]
    if expected != found:
        raise ChecksumMismatchError(expected, found)

    try:
        kind = _RecordType(raw[3])
    except ValueError:
        raise ParsingError(f"Unknown record type {raw[3]:#04x}") from None

    data = raw[4:-1]
    fixed = _FIXED_LENGTHS.get(kind)
    if fixed is not None and len(data) != fixed:
        raise ParsingError(f"Invalid payload length for record type {int(kind):#04x}")

    return _Record(kind, (raw[1] << 8) | raw[2], data)


def _read_records(text: str) -> Iterator[_Record]:
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        record = _parse_record(line)
        yield record
        if record.kind is _RecordType.END_OF_FILE:
            return


def to_ihex(data: bytes) -> str:
    """Encode data as Intel HEX data records of 16 bytes followed by an end-of-file record."""
    records = []
    for offset in range(0, len(data), _CHUNK_SIZE):
        if offset > 0xFFFF:
            raise ConversionError("Data does not fit in a 16-bit address space")
        records.append(_Record(_RecordType.DATA, offset, bytes(data[offset : offset + _CHUNK_SIZE])))
    records.append(_Record(_RecordType.END_OF_FILE, 0, b""))
    return "".join(record.encode() + "\n" for record in records)


def from_ihex(text: str, max_length: int) -> bytes:
    """Decode Intel HEX text into a flat image of at most max_length bytes.

    Gaps between data records are filled with zeros.
    """
    image = bytearray()
    for record in _read_records(text):
        if record.kind is _RecordType.DATA:
            end = record.offset + len(record.data)
            if end > max_length:
                raise AddressTooHighError(end, max_length)
            if end > len(image):
                image.extend(bytes(end - len(image)))
            image[record.offset : end] = record.data
        elif record.kind in (
            _RecordType.EXTENDED_SEGMENT_ADDRESS,
            _RecordType.EXTENDED_LINEAR_ADDRESS,
        ):
            raise UnsupportedRecordTypeError(int(record.kind), record.data)
        elif record.kind is _RecordType.END_OF_FILE:
            break
    return bytes(image)