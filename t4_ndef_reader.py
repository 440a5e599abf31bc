#!/usr/bin/python3
"""NDEF access for NFC Forum Type 4 tags over PC/SC"""

from typing import List, Optional, Tuple

from smartcard.CardConnection import CardConnection

NDEF_AID = [0xD2, 0x76, 0x00, 0x00, 0x85, 0x01, 0x01]
CC_FILE_ID = [0xE1, 0x03]
CC_LENGTH = 15
MAX_READ = 59  # typical MLe for Type 4 Tags
SW1_OK = 0x90
SW2_OK = 0x00


def _transmit(connection: CardConnection, apdu: List[int], what: str):
    response, sw1, sw2 = connection.transmit(apdu)
    if sw1 != SW1_OK or sw2 != SW2_OK:
        return None, f"{what} failed (SW={sw1:02X}{sw2:02X})"
    return bytes(response), None


def select_application(connection: CardConnection) -> Optional[str]:
    """SELECT the NDEF Tag Application; returns an error string or None"""
    apdu = [0x00, 0xA4, 0x04, 0x00, len(NDEF_AID)] + NDEF_AID + [0x00]
    _, error = _transmit(connection, apdu, "SELECT NDEF AID")
    return error


def select_file(connection: CardConnection, file_id: List[int]) -> Optional[str]:
    apdu = [0x00, 0xA4, 0x00, 0x0C, 0x02] + list(file_id)
    _, error = _transmit(connection, apdu, f"SELECT file {bytes(file_id).hex().upper()}")
    return error


def read_binary(connection: CardConnection, offset: int, length: int):
    apdu = [0x00, 0xB0, (offset >> 8) & 0xFF, offset & 0xFF, length]
    return _transmit(connection, apdu, f"READ BINARY at {offset}")


def read_capability(connection: CardConnection) -> Tuple[Optional[bytes], Optional[str]]:
    """Select the NDEF application and read the 15-byte CC file"""
    error = select_application(connection)
    if error:
        return None, error
    error = select_file(connection, CC_FILE_ID)
    if error:
        return None, error

    cc, error = read_binary(connection, 0, CC_LENGTH)
    if error:
        return None, error
    if len(cc) < CC_LENGTH:
        return None, f"Short CC file: {len(cc)} bytes"
    return cc, None


def is_read_only(cc: bytes) -> bool:
    """CC byte 14 is the NDEF file write access condition"""
    return cc[14] != 0x00


def read_ndef(connection: CardConnection) -> Tuple[Optional[bytes], Optional[str]]:
    """Read the NDEF message bytes; (b"", None) when NLEN is zero"""
    cc, error = read_capability(connection)
    if error:
        return None, error

    # CC bytes 9-10 hold the NDEF file id
    error = select_file(connection, list(cc[9:11]))
    if error:
        return None, error

    length, error = read_binary(connection, 0, 2)
    if error:
        return None, error
    if len(length) < 2:
        return None, "Short NLEN read"
    ndef_len = (length[0] << 8) | length[1]

    ndef_data = b""
    offset = 2
    while len(ndef_data) < ndef_len:
        chunk_size = min(ndef_len - len(ndef_data), MAX_READ)
        chunk, error = read_binary(connection, offset, chunk_size)
        if error:
            return None, error
        if not chunk:
            return None, f"Empty read at offset {offset}"
        ndef_data += chunk
        offset += len(chunk)

    return ndef_data[:ndef_len], None
