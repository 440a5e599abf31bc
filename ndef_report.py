#!/usr/bin/python3
"""Render decoded NDEF messages as human-readable text"""

from typing import Iterable, List, Sequence

from ndef_decoder import (
    DecodedRecord,
    HexRecord,
    RawRecord,
    RawTextRecord,
    TextRecord,
    UriRecord,
    decode_payload,
)

NO_READABLE_CONTENT = "No readable content"
RECORD_SEPARATOR = "---"


def format_decoded(decoded: DecodedRecord) -> str:
    """Format one decoded record as a display line"""
    if isinstance(decoded, UriRecord):
        return f"URI: {decoded.uri}"
    if isinstance(decoded, TextRecord):
        return f"Text ({decoded.language}): {decoded.text}"
    if isinstance(decoded, RawTextRecord):
        return f"Content: {decoded.text}"
    if isinstance(decoded, HexRecord):
        return f"Data (HEX): {decoded.hex}"
    raise TypeError(f"Unsupported decoded record: {decoded!r}")


def _record_lines(record: RawRecord) -> List[str]:
    return [
        f"Type: {record.type_str or 'Unknown'}",
        format_decoded(decode_payload(record)),
        RECORD_SEPARATOR,
    ]


def render_messages(messages: Iterable[Sequence[RawRecord]]) -> str:
    """Render several messages in order; empty output becomes the sentinel"""
    lines: List[str] = []
    for records in messages:
        for record in records:
            lines.extend(_record_lines(record))

    if not lines:
        return NO_READABLE_CONTENT
    return "\n".join(lines)


def render(records: Sequence[RawRecord]) -> str:
    """Render the records of one NDEF message"""
    return render_messages([records])
