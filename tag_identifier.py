#!/usr/bin/python3
"""Tag handles and per-technology UID extraction"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


class Technology(Enum):
    """Radio technology of a detected tag"""

    ISO7816 = "ISO-7816"
    ISO15693 = "ISO-15693"
    MIFARE = "MIFARE"
    FELICA = "FeliCa"
    UNKNOWN = "Unknown"


class MifareFamily(Enum):
    """MIFARE product family"""

    PLUS = "MIFARE Plus"
    DESFIRE = "MIFARE DESFire"
    ULTRALIGHT = "MIFARE Ultralight"
    UNKNOWN = "MIFARE Unknown"


def format_uid(data: bytes) -> str:
    """Canonical UID rendering: uppercase hex, no separator"""
    return data.hex().upper()


@dataclass(frozen=True)
class TagHandle:
    """A detected tag, built once by the reader when it is discovered.

    Only the fields belonging to ``technology`` are populated. ``token`` is
    opaque to the core and lets the reader find its own connection objects
    again when the controller asks it to connect or read. ``session`` is
    stamped by the controller before the handle is passed back to the reader,
    so callbacks from an earlier scan never match the current one.
    """

    technology: Technology
    identifier: bytes = b""
    historical_bytes: Optional[bytes] = None
    mifare_family: Optional[MifareFamily] = None
    ic_manufacturer_code: Optional[int] = None
    system_code: Optional[bytes] = None
    session: int = 0
    token: Any = field(default=None, compare=False, repr=False)

    @classmethod
    def iso7816(cls, identifier: bytes, historical_bytes=None, token=None):
        return cls(
            Technology.ISO7816,
            identifier=bytes(identifier),
            historical_bytes=historical_bytes,
            token=token,
        )

    @classmethod
    def iso15693(cls, identifier: bytes, ic_manufacturer_code=None, token=None):
        return cls(
            Technology.ISO15693,
            identifier=bytes(identifier),
            ic_manufacturer_code=ic_manufacturer_code,
            token=token,
        )

    @classmethod
    def mifare(
        cls,
        identifier: bytes,
        family: MifareFamily = MifareFamily.UNKNOWN,
        historical_bytes=None,
        token=None,
    ):
        return cls(
            Technology.MIFARE,
            identifier=bytes(identifier),
            mifare_family=family,
            historical_bytes=historical_bytes,
            token=token,
        )

    @classmethod
    def felica(cls, current_idm: bytes, current_system_code=None, token=None):
        return cls(
            Technology.FELICA,
            identifier=bytes(current_idm),
            system_code=current_system_code,
            token=token,
        )

    @classmethod
    def unknown(cls, token=None):
        return cls(Technology.UNKNOWN, token=token)


@dataclass(frozen=True)
class TagIdentity:
    technology: Technology
    uid: bytes

    @property
    def uid_hex(self) -> str:
        return format_uid(self.uid)

    @property
    def is_identified(self) -> bool:
        """False for tags whose technology could not be determined"""
        return self.technology is not Technology.UNKNOWN


Extras = Dict[str, str]


def _identify_iso7816(handle: TagHandle) -> Tuple[bytes, Extras]:
    extras: Extras = {}
    if handle.historical_bytes:
        extras["Historical bytes"] = format_uid(handle.historical_bytes)
    return handle.identifier, extras


def _identify_iso15693(handle: TagHandle) -> Tuple[bytes, Extras]:
    extras: Extras = {}
    if handle.ic_manufacturer_code is not None:
        extras["Manufacturer"] = str(handle.ic_manufacturer_code)
    return handle.identifier, extras


def _identify_mifare(handle: TagHandle) -> Tuple[bytes, Extras]:
    family = handle.mifare_family or MifareFamily.UNKNOWN
    extras: Extras = {"MIFARE family": family.value}
    if handle.historical_bytes:
        extras["Historical bytes"] = format_uid(handle.historical_bytes)
    return handle.identifier, extras


def _identify_felica(handle: TagHandle) -> Tuple[bytes, Extras]:
    extras: Extras = {}
    if handle.system_code is not None:
        extras["System code"] = format_uid(handle.system_code)
    return handle.identifier, extras


_IDENTIFIERS: Dict[Technology, Callable[[TagHandle], Tuple[bytes, Extras]]] = {
    Technology.ISO7816: _identify_iso7816,
    Technology.ISO15693: _identify_iso15693,
    Technology.MIFARE: _identify_mifare,
    Technology.FELICA: _identify_felica,
}


def identify(handle: TagHandle) -> Tuple[TagIdentity, Extras]:
    """Return the tag identity and technology-specific extras"""
    extractor = _IDENTIFIERS.get(handle.technology)
    if extractor is None:
        logger.warning("Tag technology could not be determined")
        return TagIdentity(Technology.UNKNOWN, b""), {}

    uid, extras = extractor(handle)
    identity = TagIdentity(handle.technology, bytes(uid))
    logger.debug(
        "Identified %s tag %s", identity.technology.value, identity.uid_hex
    )
    return identity, extras
