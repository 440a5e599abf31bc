#!/usr/bin/python3
"""NDEF access for NFC Forum Type 2 tags over PC/SC"""

from typing import List, Optional, Tuple

from smartcard.CardConnection import CardConnection

# Logic taken mostly from:
# https://github.com/Giraut/pcsc-ndef/blob/master/pcsc_ndef.py

CC_MAGIC = 0xE1
CC_PAGE = 3
DATA_PAGE = 4
PAGE_SIZE = 4
INS_READ = 0xB0
SW1_OK = 0x90
SW2_OK = 0x00

TLV_NULL = 0x00
TLV_NDEF = 0x03
TLV_TERMINATOR = 0xFE


def read_page(connection: CardConnection, page: int) -> Tuple[Optional[bytes], Optional[str]]:
    """Read one 4-byte page"""
    response, sw1, sw2 = connection.transmit([0xFF, INS_READ, 0x00, page, PAGE_SIZE])
    if sw1 != SW1_OK or sw2 != SW2_OK:
        return None, f"Page {page} read error: {sw1:02X}{sw2:02X}"
    if len(response) < PAGE_SIZE:
        return None, f"Page {page} short read: {len(response)} bytes"
    return bytes(response[:PAGE_SIZE]), None


def read_capability(connection: CardConnection) -> Tuple[Optional[bytes], Optional[str]]:
    """Read the capability container at page 3"""
    cc, error = read_page(connection, CC_PAGE)
    if error:
        return None, f"CC read error: {error}"
    if cc[0] != CC_MAGIC:
        return None, "Invalid capability container"
    return cc, None


def is_read_only(cc: bytes) -> bool:
    """CC byte 3 low nibble is the write access condition"""
    return (cc[3] & 0x0F) != 0


class _PageStream:
    """Sequential byte reader over the tag data area"""

    def __init__(self, connection: CardConnection, page: int = DATA_PAGE):
        self.connection = connection
        self.page = page
        self.buffer: List[int] = []

    def read(self, count: int) -> Tuple[Optional[bytes], Optional[str]]:
        while len(self.buffer) < count:
            data, error = read_page(self.connection, self.page)
            if error:
                return None, error
            self.buffer.extend(data)
            self.page += 1
        chunk = bytes(self.buffer[:count])
        del self.buffer[:count]
        return chunk, None


def read_ndef(connection: CardConnection) -> Tuple[Optional[bytes], Optional[str]]:
    """Read the NDEF message bytes; (b"", None) when the tag holds no message"""
    _, error = read_capability(connection)
    if error:
        return None, error

    stream = _PageStream(connection)
    while True:
        tag, error = stream.read(1)
        if error:
            return None, f"NDEF TLV read error: {error}"

        if tag[0] == TLV_NULL:
            continue
        if tag[0] == TLV_TERMINATOR:
            return b"", None

        # Length is 1 byte, or 0xFF followed by 2 bytes
        length, error = stream.read(1)
        if error:
            return None, error
        tlv_len = length[0]
        if tlv_len == 0xFF:
            length, error = stream.read(2)
            if error:
                return None, error
            tlv_len = (length[0] << 8) + length[1]

        value, error = stream.read(tlv_len)
        if error:
            return None, error

        if tag[0] == TLV_NDEF:
            return value, None
        # Lock/memory control and proprietary TLVs are skipped
