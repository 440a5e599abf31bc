"""Shared fake cards answering PC/SC APDUs like real Type 2 / Type 4 tags"""

import struct

import pytest
from smartcard.Exceptions import NoCardException

SW_OK = (0x90, 0x00)
SW_NOT_FOUND = (0x6A, 0x82)
SW_UNSUPPORTED = (0x6D, 0x00)


class FakeT2Card:
    """Type 2 tag page memory behind the FF B0 read pseudo-APDU"""

    def __init__(self, ndef_data=None, uid=b"\x04\x12\x34\x56\x78\x9a\xbc", cc=None, tlv_prefix=b""):
        self.uid = uid
        self.ndef_data = ndef_data
        self.pages = self._create_t2_structure(cc or [0xE1, 0x10, 0x12, 0x00], tlv_prefix)
        self.apdus = []

    def _create_t2_structure(self, cc, tlv_prefix):
        pages = {
            0: list(self.uid[:3]) + [0x88],
            1: list(self.uid[3:7]),
            2: [0x00, 0x00, 0x00, 0x00],
            3: list(cc),
        }

        if self.ndef_data is None:
            data = tlv_prefix + bytes([0xFE])
        elif len(self.ndef_data) < 0xFF:
            data = tlv_prefix + bytes([0x03, len(self.ndef_data)]) + self.ndef_data + b"\xfe"
        else:
            length_bytes = struct.pack(">H", len(self.ndef_data))
            data = tlv_prefix + bytes([0x03, 0xFF]) + length_bytes + self.ndef_data + b"\xfe"

        # Pack TLVs into pages starting at page 4
        page_num = 4
        for offset in range(0, len(data), 4):
            page_data = list(data[offset : offset + 4])
            page_data.extend([0x00] * (4 - len(page_data)))
            pages[page_num] = page_data
            page_num += 1
        return pages

    def transmit(self, apdu):
        self.apdus.append(list(apdu))
        cla, ins, _p1, p2 = apdu[:4]
        if cla == 0xFF and ins == 0xCA:
            return list(self.uid), *SW_OK
        if cla == 0xFF and ins == 0xB0:
            return list(self.pages.get(p2, [0x00] * 4)), *SW_OK
        return [], *SW_UNSUPPORTED


class FakeT4Card:
    """Type 4 tag with an NDEF application, CC file and NDEF file"""

    CC_FILE_ID = 0xE103
    NDEF_FILE_ID = 0xE104

    def __init__(
        self, ndef_data=b"", uid=b"\x08\x01\x02\x03", read_only=False, has_app=True, desfire=False
    ):
        self.uid = uid
        self.has_app = has_app
        self.desfire = desfire
        self.cc_file = bytes(
            [0x00, 0x0F, 0x20, 0x00, 0x3B, 0x00, 0x34, 0x04, 0x06, 0xE1, 0x04, 0x04, 0x00, 0x00]
            + [0xFF if read_only else 0x00]
        )
        self.ndef_file = struct.pack(">H", len(ndef_data)) + ndef_data
        self.selected = None
        self.apdus = []

    def transmit(self, apdu):
        self.apdus.append(list(apdu))
        cla, ins, p1, p2 = apdu[:4]
        if cla == 0xFF and ins == 0xCA:
            return list(self.uid), *SW_OK
        if cla == 0x90 and ins == 0x60 and self.desfire:
            # GetVersion hardware part: NXP, DESFire EV1, more frames follow
            return [0x04, 0x01, 0x01, 0x01, 0x00, 0x18, 0x05], 0x91, 0xAF
        if ins == 0xA4:
            data = bytes(apdu[5 : 5 + apdu[4]])
            if p1 == 0x04:
                if self.has_app and data == bytes.fromhex("D2760000850101"):
                    return [], *SW_OK
                return [], *SW_NOT_FOUND
            file_id = int.from_bytes(data, "big")
            if file_id == self.CC_FILE_ID:
                self.selected = self.cc_file
            elif file_id == self.NDEF_FILE_ID:
                self.selected = self.ndef_file
            else:
                return [], *SW_NOT_FOUND
            return [], *SW_OK
        if ins == 0xB0:
            if self.selected is None:
                return [], *SW_NOT_FOUND
            offset = (p1 << 8) | p2
            return list(self.selected[offset : offset + apdu[4]]), *SW_OK
        return [], *SW_UNSUPPORTED


@pytest.fixture
def t2_card():
    return FakeT2Card


@pytest.fixture
def t4_card():
    return FakeT4Card


def uri_message(body: bytes, prefix: int = 0x04) -> bytes:
    """Single short URI record"""
    return bytes([0xD1, 0x01, len(body) + 1, 0x55, prefix]) + body


@pytest.fixture
def make_uri_message():
    return uri_message


class FakeConnection:
    """CardConnection stand-in delegating APDUs to a fake card"""

    def __init__(self, card, atr, present=True):
        self.card = card
        self.atr = atr
        self.present = present
        self.connected = False

    def connect(self):
        if not self.present:
            raise NoCardException("no card", -1)
        self.connected = True

    def disconnect(self):
        self.connected = False

    def getATR(self):  # pylint: disable=invalid-name
        return self.atr

    def transmit(self, apdu):
        return self.card.transmit(apdu)


class FakePcscCard:
    """What pyscard's card monitor hands to observers"""

    def __init__(self, card, atr, present=True):
        self.atr = atr
        self.connection = FakeConnection(card, atr, present)

    def createConnection(self):  # pylint: disable=invalid-name
        return self.connection


@pytest.fixture
def pcsc_card():
    return FakePcscCard


def storage_atr(standard: int, card_name: int):
    """PC/SC Part 3 ATR for a contactless storage card"""
    return [
        0x3B, 0x8F, 0x80, 0x01, 0x80, 0x4F, 0x0C,
        0xA0, 0x00, 0x00, 0x03, 0x06,
        standard, (card_name >> 8) & 0xFF, card_name & 0xFF,
        0x00, 0x00, 0x00, 0x00, 0x68,
    ]


@pytest.fixture
def make_storage_atr():
    return storage_atr
