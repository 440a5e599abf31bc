#!/usr/bin/python3
"""NDEF record framing and payload decoding"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Union


class NdefFormatError(ValueError):
    """Raised when NDEF message framing is truncated or malformed"""


class TypeNameFormat(Enum):
    """Type Name Format of an NDEF record"""

    EMPTY = "empty"
    WELL_KNOWN = "wellKnown"
    MEDIA = "media"
    ABSOLUTE_URI = "absoluteUri"
    EXTERNAL_TYPE = "externalType"
    UNKNOWN = "unknown"

    @classmethod
    def from_code(cls, tnf: int) -> "TypeNameFormat":
        """Map the 3-bit TNF wire code; unchanged and reserved count as unknown"""
        return _TNF_CODES.get(tnf & 0x07, cls.UNKNOWN)


_TNF_CODES: Dict[int, TypeNameFormat] = {
    0x00: TypeNameFormat.EMPTY,
    0x01: TypeNameFormat.WELL_KNOWN,
    0x02: TypeNameFormat.MEDIA,
    0x03: TypeNameFormat.ABSOLUTE_URI,
    0x04: TypeNameFormat.EXTERNAL_TYPE,
    0x05: TypeNameFormat.UNKNOWN,
}


@dataclass(frozen=True)
class RawRecord:
    """One framed NDEF record as delivered by the reader"""

    tnf: TypeNameFormat
    record_type: bytes
    payload: bytes
    record_id: bytes = b""

    @property
    def type_str(self) -> Optional[str]:
        """Record type as text, None when empty or not UTF-8"""
        if not self.record_type:
            return None
        try:
            return self.record_type.decode("utf-8")
        except UnicodeDecodeError:
            return None


@dataclass(frozen=True)
class UriRecord:
    uri: str


@dataclass(frozen=True)
class TextRecord:
    language: str
    text: str


@dataclass(frozen=True)
class RawTextRecord:
    text: str


@dataclass(frozen=True)
class HexRecord:
    hex: str


DecodedRecord = Union[UriRecord, TextRecord, RawTextRecord, HexRecord]


URI_PREFIXES: Dict[int, str] = {
    0x00: "",
    0x01: "http://www.",
    0x02: "https://www.",
    0x03: "http://",
    0x04: "https://",
    0x05: "tel:",
    0x06: "mailto:",
    0x07: "ftp://anonymous:anonymous@",
    0x08: "ftp://ftp.",
    0x09: "ftps://",
    0x0A: "sftp://",
    0x0B: "smb://",
    0x0C: "nfs://",
    0x0D: "ftp://",
    0x0E: "dav://",
    0x0F: "news:",
    0x10: "telnet://",
    0x11: "imap:",
    0x12: "rtsp://",
    0x13: "urn:",
    0x14: "pop:",
    0x15: "sip:",
    0x16: "sips:",
    0x17: "tftp:",
    0x18: "btspp://",
    0x19: "btl2cap://",
    0x1A: "btgoep://",
    0x1B: "tcpobex://",
    0x1C: "irdaobex://",
    0x1D: "file://",
    0x1E: "urn:epc:id:",
    0x1F: "urn:epc:tag:",
    0x20: "urn:epc:pat:",
    0x21: "urn:epc:raw:",
    0x22: "urn:epc:",
    0x23: "urn:nfc:",
}


def prefix_for(code: int) -> str:
    """URI identifier code to scheme prefix; unknown codes have no prefix"""
    return URI_PREFIXES.get(code, "")


def hex_string(data: bytes) -> str:
    """Uppercase hex, no separator"""
    return data.hex().upper()


def _decode_uri(payload: bytes) -> Optional[UriRecord]:
    if not payload:
        return None
    try:
        body = payload[1:].decode("utf-8")
    except UnicodeDecodeError:
        return None
    return UriRecord(prefix_for(payload[0]) + body)


def _decode_text(payload: bytes) -> Optional[TextRecord]:
    if not payload:
        return None

    # Status byte: bits 0-5 are the language code length
    lang_length = payload[0] & 0x3F
    if len(payload) < 1 + lang_length:
        return None
    try:
        language = payload[1 : 1 + lang_length].decode("utf-8")
        text = payload[1 + lang_length :].decode("utf-8")
    except UnicodeDecodeError:
        return None
    return TextRecord(language, text)


def decode_payload(record: RawRecord) -> DecodedRecord:
    """Decode one record, degrading URI -> Text -> raw text -> hex"""
    decoded: Optional[DecodedRecord] = None
    if record.tnf is TypeNameFormat.WELL_KNOWN:
        if record.record_type == b"U":
            decoded = _decode_uri(record.payload)
        elif record.record_type == b"T":
            decoded = _decode_text(record.payload)
    if decoded is not None:
        return decoded

    if record.payload:
        try:
            return RawTextRecord(record.payload.decode("utf-8"))
        except UnicodeDecodeError:
            pass

    return HexRecord(hex_string(record.payload))


def decode_record(data: bytes, offset: int) -> tuple[Optional[RawRecord], int, bool]:
    """Decode a single NDEF record, returns (record, new_offset, last_record)"""
    if offset >= len(data):
        return None, offset, True

    def take(count: int) -> bytes:
        nonlocal offset
        if offset + count > len(data):
            raise NdefFormatError(
                f"Record truncated at offset {offset}: need {count} bytes, "
                f"have {len(data) - offset}"
            )
        chunk = data[offset : offset + count]
        offset += count
        return chunk

    # Read the TNF and flags byte
    tnf_flags = take(1)[0]

    me = (tnf_flags & 0x40) != 0  # Message End
    sr = (tnf_flags & 0x10) != 0  # Short Record
    il = (tnf_flags & 0x08) != 0  # ID Length present
    tnf = tnf_flags & 0x07  # Type Name Format

    type_length = take(1)[0]

    # Payload Length is 1 or 4 bytes depending on SR flag
    if sr:
        payload_length = take(1)[0]
    else:
        payload_length = int.from_bytes(take(4), "big")

    id_length = take(1)[0] if il else 0

    record_type = take(type_length)
    record_id = take(id_length) if il else b""
    payload = take(payload_length)

    record = RawRecord(
        tnf=TypeNameFormat.from_code(tnf),
        record_type=record_type,
        payload=payload,
        record_id=record_id,
    )
    return record, offset, me


def decode_records(data: bytes) -> List[RawRecord]:
    """Decode all NDEF records in the data"""
    records: List[RawRecord] = []
    offset = 0

    while offset < len(data):
        record, offset, last_record = decode_record(data, offset)
        if record is None:
            break
        records.append(record)

        # If this was the last record (ME flag set), stop
        if last_record:
            break

    return records
