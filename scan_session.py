#!/usr/bin/python3
"""Scan session state machine: detection, collision retry, connect and read"""

import logging
import os
import threading
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence

from ndef_decoder import RawRecord
from ndef_report import render
from tag_identifier import TagHandle, TagIdentity, identify

COLLISION_RETRY_DELAY = int(os.getenv("NFC_COLLISION_RETRY_MS", "500")) / 1000.0

logger = logging.getLogger(__name__)


class ScanError(Exception):
    """Base class for scan session errors"""


class SessionBusyError(ScanError):
    """A scan is already in progress"""


class UnsupportedDeviceError(ScanError):
    """No compatible tag reader is available"""


class SessionState(Enum):
    IDLE = "idle"
    POLLING = "polling"
    TAGS_DETECTED = "tags_detected"
    CONNECTING = "connecting"
    READING = "reading"
    REPORTING = "reporting"
    ERROR = "error"


class FailureKind(Enum):
    UNSUPPORTED_DEVICE = "UnsupportedDevice"
    COLLISION = "Collision"
    CONNECT_FAILED = "ConnectFailed"
    NDEF_NOT_SUPPORTED = "NdefNotSupported"
    NO_CONTENT = "NoContent"
    TIMEOUT = "Timeout"
    UNKNOWN = "Unknown"


class NdefStatus(Enum):
    NOT_SUPPORTED = "notSupported"
    READ_ONLY = "readOnly"
    READ_WRITE = "readWrite"


class InvalidationReason(Enum):
    """Why the reader ended a session on its own"""

    TIMEOUT = "timeout"
    USER_CANCELED = "user_canceled"
    SESSION_TERMINATED = "session_terminated"
    OTHER = "other"


STATUS_READY = "Ready to scan"
STATUS_POLLING = "Hold your device near an NFC tag"
STATUS_COLLISION = "More than one tag detected. Please present only one tag."
STATUS_CONNECTING = "Tag detected, connecting..."
STATUS_READING = "Reading tag..."
STATUS_SUCCESS = "Tag read successfully"
STATUS_SUCCESS_UNKNOWN = "Tag read successfully (unknown tag technology)"
STATUS_STOPPED = "Scan stopped"
STATUS_CANCELED = "Scan canceled"

FAILURE_MESSAGES: Dict[FailureKind, str] = {
    FailureKind.UNSUPPORTED_DEVICE: "This device does not support NFC tag reading",
    FailureKind.CONNECT_FAILED: "Connection error",
    FailureKind.NDEF_NOT_SUPPORTED: "Tag is not NDEF compatible",
    FailureKind.NO_CONTENT: "No NDEF content found",
    FailureKind.TIMEOUT: "Session timed out",
    FailureKind.UNKNOWN: "Read error",
}


@dataclass(frozen=True)
class ScanResult:
    identity: TagIdentity
    rendered_content: str
    extras: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ScanSnapshot:
    """What the UI layer sees after each transition"""

    state: SessionState
    status: str
    is_scanning: bool
    identity: Optional[TagIdentity] = None
    rendered_content: str = ""
    extras: Dict[str, str] = field(default_factory=dict)
    error: Optional[FailureKind] = None


class ReaderSession:
    """Radio-side collaborator driven by the controller.

    Implementations answer asynchronously by calling the controller's
    ``on_*`` callbacks, from any thread.
    """

    @property
    def reading_available(self) -> bool:
        raise NotImplementedError

    def begin(self) -> None:
        raise NotImplementedError

    def restart_polling(self) -> None:
        raise NotImplementedError

    def connect(self, handle: TagHandle) -> None:
        raise NotImplementedError

    def query_ndef_status(self, handle: TagHandle) -> None:
        raise NotImplementedError

    def read_ndef(self, handle: TagHandle) -> None:
        raise NotImplementedError

    def invalidate(self, message: Optional[str] = None) -> None:
        raise NotImplementedError


def _start_timer(delay: float, callback: Callable[[], None]) -> None:
    timer = threading.Timer(delay, callback)
    timer.daemon = True
    timer.start()


class ScanSessionController:
    """Owns one scan attempt at a time and publishes snapshots of its state"""

    def __init__(
        self,
        reader: ReaderSession,
        publish: Callable[[ScanSnapshot], None],
        retry_delay: float = COLLISION_RETRY_DELAY,
        keep_session_open: bool = False,
        schedule: Callable[[float, Callable[[], None]], None] = _start_timer,
    ):
        self.reader = reader
        self._publish = publish
        self.retry_delay = retry_delay
        self.keep_session_open = keep_session_open
        self._schedule = schedule
        self._lock = threading.RLock()
        self._state = SessionState.IDLE
        self._generation = 0
        self._session_open = False
        self._handle: Optional[TagHandle] = None
        self._identity: Optional[TagIdentity] = None
        self._extras: Dict[str, str] = {}
        self.last_result: Optional[ScanResult] = None
        self.last_error: Optional[FailureKind] = None
        self.status = STATUS_READY

    @property
    def state(self) -> SessionState:
        with self._lock:
            return self._state

    @property
    def is_scanning(self) -> bool:
        return self.state is not SessionState.IDLE

    # Public operations

    def start(self) -> None:
        """Begin a new scan session"""
        with self._lock:
            if self._state is not SessionState.IDLE:
                raise SessionBusyError(f"Scan already in progress ({self._state.value})")

            if not self.reader.reading_available:
                self.last_error = FailureKind.UNSUPPORTED_DEVICE
                self.status = FAILURE_MESSAGES[FailureKind.UNSUPPORTED_DEVICE]
                self._emit(error=FailureKind.UNSUPPORTED_DEVICE)
                raise UnsupportedDeviceError(self.status)

            self._generation += 1
            self._clear_tag()
            self.last_result = None
            self.last_error = None
            self._enter(SessionState.POLLING, STATUS_POLLING)
            logger.info("Scan session %d started", self._generation)
            self._session_open = True
            self.reader.begin()

    def stop(self) -> None:
        """End the current session, discarding anything in flight"""
        with self._lock:
            if self._state is SessionState.IDLE:
                if self._session_open:
                    logger.info("Closing reader session kept open after the last read")
                    self._invalidate_reader()
                return
            logger.info("Stopping scan session from state %s", self._state.value)
            self._generation += 1
            self._clear_tag()
            self._enter(SessionState.IDLE, STATUS_STOPPED)
            self._invalidate_reader()

    # Reader callbacks

    def on_session_active(self) -> None:
        logger.debug("Reader session became active")

    def on_tags_detected(self, handles: Sequence[TagHandle]) -> None:
        with self._lock:
            if self._state is not SessionState.POLLING:
                logger.debug("Ignoring tag detection in state %s", self._state.value)
                return

            handles = list(handles)
            if not handles:
                logger.debug("Empty detection, polling again")
                self.reader.restart_polling()
                return

            if len(handles) > 1:
                logger.info(
                    "Collision: %d tags detected, retrying in %.1fs",
                    len(handles),
                    self.retry_delay,
                )
                self._enter(SessionState.TAGS_DETECTED, STATUS_COLLISION)
                generation = self._generation
                self._schedule(self.retry_delay, lambda: self._retry_polling(generation))
                return

            self._enter(SessionState.TAGS_DETECTED, STATUS_CONNECTING)
            self._handle = replace(handles[0], session=self._generation)
            self._enter(SessionState.CONNECTING, STATUS_CONNECTING)
            self.reader.connect(self._handle)

    def on_connect_result(self, handle: TagHandle, error: Optional[Exception] = None) -> None:
        with self._lock:
            if not self._expects(SessionState.CONNECTING, handle):
                return

            if error is not None:
                logger.error("Connect failed: %s", error)
                self._fail(FailureKind.CONNECT_FAILED, str(error))
                return

            self._identity, self._extras = identify(handle)
            self._enter(SessionState.READING, STATUS_READING)
            self.reader.query_ndef_status(handle)

    def on_ndef_status(
        self,
        handle: TagHandle,
        status: Optional[NdefStatus],
        error: Optional[Exception] = None,
    ) -> None:
        with self._lock:
            if not self._expects(SessionState.READING, handle):
                return

            if error is not None:
                logger.error("NDEF status query failed: %s", error)
                self._fail(FailureKind.UNKNOWN, str(error))
            elif status is NdefStatus.NOT_SUPPORTED:
                self._fail(FailureKind.NDEF_NOT_SUPPORTED)
            elif status in (NdefStatus.READ_ONLY, NdefStatus.READ_WRITE):
                logger.debug("NDEF status: %s", status.value)
                self.reader.read_ndef(handle)
            else:
                self._fail(FailureKind.UNKNOWN, f"unknown NDEF status {status!r}")

    def on_ndef_message(
        self,
        handle: TagHandle,
        records: Optional[List[RawRecord]],
        error: Optional[Exception] = None,
    ) -> None:
        with self._lock:
            if not self._expects(SessionState.READING, handle):
                return

            if error is not None:
                logger.error("NDEF read failed: %s", error)
                self._fail(FailureKind.UNKNOWN, str(error))
                return
            if not records:
                self._fail(FailureKind.NO_CONTENT)
                return

            identity = self._identity
            result = ScanResult(
                identity=identity,
                rendered_content=render(records),
                extras=dict(self._extras),
            )
            self.last_result = result
            if identity.is_identified:
                status = STATUS_SUCCESS
            else:
                status = STATUS_SUCCESS_UNKNOWN
            logger.info(
                "Read %d record(s) from %s tag %s",
                len(records),
                identity.technology.value,
                identity.uid_hex or "<no uid>",
            )

            self._enter(SessionState.REPORTING, status)
            self._generation += 1
            self._clear_tag()
            self._enter(SessionState.IDLE, status)
            if not self.keep_session_open:
                self._invalidate_reader(status)

    def on_session_invalidated(
        self, reason: InvalidationReason, detail: Optional[str] = None
    ) -> None:
        with self._lock:
            # The reader ended the session on its own
            self._session_open = False
            if self._state in (SessionState.IDLE, SessionState.ERROR):
                logger.debug("Session invalidated (%s) while %s", reason.value, self._state.value)
                return

            if reason is InvalidationReason.TIMEOUT:
                self._fail(FailureKind.TIMEOUT, detail, invalidate=False)
            elif reason is InvalidationReason.USER_CANCELED:
                logger.info("Scan canceled by user")
                self._generation += 1
                self._clear_tag()
                self._enter(SessionState.IDLE, STATUS_CANCELED)
            else:
                self._fail(FailureKind.UNKNOWN, detail or reason.value, invalidate=False)

    # Internals

    def _retry_polling(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation or self._state is not SessionState.TAGS_DETECTED:
                logger.debug("Discarding stale collision retry")
                return
            self._enter(SessionState.POLLING, STATUS_POLLING)
            self.reader.restart_polling()

    def _expects(self, state: SessionState, handle: TagHandle) -> bool:
        if (
            self._state is not state
            or handle != self._handle
            or handle.session != self._generation
        ):
            logger.debug(
                "Ignoring stale callback for %r in state %s", handle, self._state.value
            )
            return False
        return True

    def _fail(self, kind: FailureKind, detail: Optional[str] = None, invalidate: bool = True) -> None:
        message = FAILURE_MESSAGES[kind]
        if detail:
            message = f"{message}: {detail}"
        logger.warning("Scan failed (%s): %s", kind.value, message)

        self.last_error = kind
        self._enter(SessionState.ERROR, message, error=kind)
        if invalidate:
            self._invalidate_reader(message)
        self._generation += 1
        self._clear_tag()
        self._enter(SessionState.IDLE, message, error=kind)

    def _invalidate_reader(self, message: Optional[str] = None) -> None:
        self._session_open = False
        self.reader.invalidate(message)

    def _clear_tag(self) -> None:
        self._handle = None
        self._identity = None
        self._extras = {}

    def _enter(self, state: SessionState, status: str, error: Optional[FailureKind] = None) -> None:
        logger.debug("State %s -> %s", self._state.value, state.value)
        self._state = state
        self.status = status
        self._emit(error=error)

    def _emit(self, error: Optional[FailureKind] = None) -> None:
        result = self.last_result
        identity = result.identity if result else self._identity
        self._publish(
            ScanSnapshot(
                state=self._state,
                status=self.status,
                is_scanning=self._state is not SessionState.IDLE,
                identity=identity,
                rendered_content=result.rendered_content if result else "",
                extras=dict(result.extras if result else self._extras),
                error=error,
            )
        )
