#!/usr/bin/python3
"""PC/SC implementation of the reader side of a scan session"""

import logging
import os
import threading
from typing import List, Optional, Tuple

from smartcard.ATR import ATR
from smartcard.CardConnection import CardConnection
from smartcard.CardMonitoring import CardMonitor, CardObserver
from smartcard.Exceptions import CardConnectionException, NoCardException
from smartcard.System import readers
from smartcard.util import toHexString

import t2_ndef_reader
import t4_ndef_reader
from ndef_decoder import NdefFormatError, decode_records
from scan_session import InvalidationReason, NdefStatus, ReaderSession
from tag_identifier import MifareFamily, TagHandle, Technology

SESSION_TIMEOUT = float(os.getenv("NFC_SESSION_TIMEOUT", "0"))

GET_UID = [0xFF, 0xCA, 0x00, 0x00, 0x00]
SW1_OK = 0x90

# PC/SC Part 3 ATR for contactless storage cards
PCSC_RID = [0xA0, 0x00, 0x00, 0x03, 0x06]
STANDARD_ISO14443A_3 = 0x03
STANDARD_FELICA = 0x11
STANDARDS_ISO15693 = (0x09, 0x0A, 0x0B, 0x0C)

MIFARE_CARD_NAMES = {
    0x0003: MifareFamily.ULTRALIGHT,
    0x003A: MifareFamily.ULTRALIGHT,
    0x0036: MifareFamily.PLUS,
    0x0037: MifareFamily.PLUS,
    0x0038: MifareFamily.PLUS,
    0x0039: MifareFamily.PLUS,
}

# DESFire native GetVersion wrapped in an ISO 7816 APDU
DESFIRE_GET_VERSION = [0x90, 0x60, 0x00, 0x00, 0x00]
NXP_VENDOR_ID = 0x04
DESFIRE_HW_TYPE = 0x01

logger = logging.getLogger(__name__)


def read_uid(connection: CardConnection) -> Tuple[Optional[bytes], Optional[str]]:
    """Read the UID (IDm for FeliCa) with the PC/SC GET DATA command"""
    response, sw1, sw2 = connection.transmit(GET_UID)
    if sw1 != SW1_OK:
        return None, f"GET DATA error: {sw1:02X}{sw2:02X}"
    return bytes(response), None


def iso15693_manufacturer(uid: bytes) -> Optional[int]:
    """IC manufacturer code follows the 0xE0 allocation byte"""
    if len(uid) != 8:
        return None
    if uid[-1] == 0xE0:  # LSB first, as most readers report it
        return uid[-2]
    if uid[0] == 0xE0:
        return uid[1]
    return None


def is_storage_card(atr: List[int]) -> bool:
    """PC/SC Part 3 ATR of a contactless storage card"""
    atr = list(atr)
    return len(atr) >= 15 and atr[5] == 0x4F and atr[7:12] == PCSC_RID


def is_desfire(connection: CardConnection) -> bool:
    """DESFire answers GetVersion with NXP hardware info and 91AF"""
    try:
        response, sw1, sw2 = connection.transmit(DESFIRE_GET_VERSION)
    except CardConnectionException as e:
        logger.debug("GetVersion failed: %s", e)
        return False
    return (
        (sw1, sw2) == (0x91, 0xAF)
        and len(response) >= 2
        and response[0] == NXP_VENDOR_ID
        and response[1] == DESFIRE_HW_TYPE
    )


def build_handle(atr: List[int], uid: bytes, token=None, desfire: bool = False) -> TagHandle:
    """Classify a card by its ATR into a technology-tagged handle"""
    atr = list(atr)
    if is_storage_card(atr):
        standard = atr[12]
        card_name = (atr[13] << 8) | atr[14]
        if standard == STANDARD_ISO14443A_3:
            family = MIFARE_CARD_NAMES.get(card_name, MifareFamily.UNKNOWN)
            return TagHandle.mifare(uid, family, token=token)
        if standard == STANDARD_FELICA:
            return TagHandle.felica(uid, token=token)
        if standard in STANDARDS_ISO15693:
            return TagHandle.iso15693(uid, iso15693_manufacturer(uid), token=token)
        logger.debug("Unhandled PC/SC storage card standard %02X", standard)
        return TagHandle.unknown(token=token)

    try:
        historical = bytes(ATR(atr).getHistoricalBytes())
    except Exception as e:  # pylint: disable=broad-exception-caught
        logger.debug("Could not parse ATR %s: %s", toHexString(atr), e)
        return TagHandle.unknown(token=token)
    if desfire:
        return TagHandle.mifare(uid, MifareFamily.DESFIRE, historical or None, token=token)
    return TagHandle.iso7816(uid, historical or None, token=token)


def _ndef_reader_for(handle: TagHandle):
    """Pick the NDEF access module for a handle, None if unsupported"""
    if handle.technology is Technology.MIFARE:
        if handle.mifare_family is MifareFamily.ULTRALIGHT:
            return t2_ndef_reader
        if handle.mifare_family is MifareFamily.DESFIRE:
            return t4_ndef_reader
        return None
    if handle.technology is Technology.ISO7816:
        return t4_ndef_reader
    return None


def _run(target, *args) -> None:
    threading.Thread(target=target, args=args, daemon=True).start()


# Since this is an observer class, it doesn't need public methods
# pylint: disable=too-few-public-methods
class _InsertionObserver(CardObserver):
    """Forwards card insertions to the reader session"""

    def __init__(self, session: "PcscReaderSession"):
        self.session = session

    def update(self, observable, handlers):
        """Called when card events occur"""
        (addedcards, removedcards) = handlers
        for card in removedcards:
            logger.info("Card removed: %s", toHexString(card.atr))
        if addedcards:
            logger.debug("Cards inserted: %d", len(addedcards))
            _run(self.session._detect, list(addedcards))


class PcscReaderSession(ReaderSession):
    """Drives pyscard's card monitor and answers the controller callbacks"""

    def __init__(self, session_timeout: float = SESSION_TIMEOUT):
        self.delegate = None
        self.session_timeout = session_timeout
        self._monitor: Optional[CardMonitor] = None
        self._observer: Optional[_InsertionObserver] = None
        self._connection: Optional[CardConnection] = None
        self._timer: Optional[threading.Timer] = None
        self._lock = threading.Lock()

    @property
    def reading_available(self) -> bool:
        try:
            return bool(readers())
        except Exception as e:  # pylint: disable=broad-exception-caught
            logger.error("PC/SC reader listing failed: %s", e)
            logger.debug("Exception details:", exc_info=True)
            return False

    def begin(self) -> None:
        with self._lock:
            if self._timer:
                self._timer.cancel()
                self._timer = None
            if self.session_timeout > 0:
                self._timer = threading.Timer(self.session_timeout, self._on_timeout)
                self._timer.daemon = True
                self._timer.start()

            if self._monitor is not None:
                # Session kept open after a read: wait for the next insertion
                logger.debug("Card monitor already running")
                return

            self._monitor = CardMonitor()
            self._observer = _InsertionObserver(self)
            # Present cards are reported straight away to a new observer
            self._monitor.addObserver(self._observer)
        logger.info("Card monitoring started - place a card on the reader")
        self.delegate.on_session_active()

    def restart_polling(self) -> None:
        _run(self._probe_present)

    def connect(self, handle: TagHandle) -> None:
        _run(self._connect, handle)

    def query_ndef_status(self, handle: TagHandle) -> None:
        _run(self._query_ndef_status, handle)

    def read_ndef(self, handle: TagHandle) -> None:
        _run(self._read_ndef, handle)

    def invalidate(self, message: Optional[str] = None) -> None:
        if message:
            logger.info("Invalidating session: %s", message)
        with self._lock:
            self._teardown()

    def _teardown(self) -> None:
        if self._timer:
            self._timer.cancel()
            self._timer = None

        if self._monitor and self._observer:
            try:
                self._monitor.deleteObserver(self._observer)
                logger.debug("Card monitor stopped")
            except Exception as e:  # pylint: disable=broad-exception-caught
                logger.warning("Error stopping card monitor: %s", e)
        self._monitor = None
        self._observer = None
        self._disconnect()

    # Worker thread bodies

    def _probe(self, card) -> Optional[TagHandle]:
        connection = card.createConnection()
        try:
            connection.connect()
            atr = connection.getATR()
            uid, error = read_uid(connection)
            if error:
                logger.warning("Could not read UID: %s", error)
                uid = b""
            logger.info("Card present: ATR %s", toHexString(atr))
            desfire = not is_storage_card(atr) and is_desfire(connection)
            return build_handle(atr, uid, token=card, desfire=desfire)
        except NoCardException:
            return None
        finally:
            try:
                connection.disconnect()
            except Exception as e:  # pylint: disable=broad-exception-caught
                logger.debug("Error disconnecting probe connection: %s", e)

    def _detect(self, cards) -> None:
        handles = []
        for card in cards:
            try:
                handle = self._probe(card)
            except Exception as e:  # pylint: disable=broad-exception-caught
                logger.error("Error probing card: %s", e)
                logger.debug("Exception details:", exc_info=True)
                continue
            if handle is not None:
                handles.append(handle)
        if handles:
            self.delegate.on_tags_detected(handles)

    def _probe_present(self) -> None:
        try:
            present = readers()
        except Exception as e:  # pylint: disable=broad-exception-caught
            logger.error("PC/SC reader listing failed: %s", e)
            return
        self._detect(present)

    def _connect(self, handle: TagHandle) -> None:
        try:
            connection = handle.token.createConnection()
            connection.connect()
        except Exception as e:  # pylint: disable=broad-exception-caught
            logger.debug("Exception details:", exc_info=True)
            self.delegate.on_connect_result(handle, e)
            return
        with self._lock:
            self._disconnect()
            self._connection = connection
        logger.info("Connected to card")
        self.delegate.on_connect_result(handle, None)

    def _query_ndef_status(self, handle: TagHandle) -> None:
        module = _ndef_reader_for(handle)
        if module is None:
            self.delegate.on_ndef_status(handle, NdefStatus.NOT_SUPPORTED)
            return
        try:
            cc, error = module.read_capability(self._connection)
        except Exception as e:  # pylint: disable=broad-exception-caught
            logger.debug("Exception details:", exc_info=True)
            self.delegate.on_ndef_status(handle, None, e)
            return

        if error:
            logger.info("No NDEF capability: %s", error)
            self.delegate.on_ndef_status(handle, NdefStatus.NOT_SUPPORTED)
        elif module.is_read_only(cc):
            self.delegate.on_ndef_status(handle, NdefStatus.READ_ONLY)
        else:
            self.delegate.on_ndef_status(handle, NdefStatus.READ_WRITE)

    def _read_ndef(self, handle: TagHandle) -> None:
        module = _ndef_reader_for(handle)
        try:
            data, error = module.read_ndef(self._connection)
            if error:
                raise IOError(error)
            logger.debug("Raw NDEF data (%d bytes): %s", len(data), data.hex())
            records = decode_records(data)
        except (IOError, NdefFormatError) as e:
            logger.error("Error reading NDEF: %s", e)
            self.delegate.on_ndef_message(handle, None, e)
            return
        except Exception as e:  # pylint: disable=broad-exception-caught
            logger.error("Error processing card: %s", e)
            logger.debug("Exception details:", exc_info=True)
            self.delegate.on_ndef_message(handle, None, e)
            return

        for i, record in enumerate(records):
            logger.debug(
                "Record %d: TNF %s, type %r, %d payload bytes",
                i + 1,
                record.tnf.value,
                record.record_type,
                len(record.payload),
            )
        self.delegate.on_ndef_message(handle, records)

    def _on_timeout(self) -> None:
        logger.info("Scan session timed out after %.0fs", self.session_timeout)
        with self._lock:
            self._teardown()
        self.delegate.on_session_invalidated(
            InvalidationReason.TIMEOUT, f"no tag read within {self.session_timeout:.0f}s"
        )

    def _disconnect(self) -> None:
        if self._connection:
            try:
                self._connection.disconnect()
                logger.debug("Card connection closed")
            except Exception as e:  # pylint: disable=broad-exception-caught
                logger.warning("Error disconnecting card: %s", e)
            finally:
                self._connection = None
