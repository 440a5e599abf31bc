#!/usr/bin/python3
"""Scan NFC tags on a PC/SC reader and publish decoded content"""

import sys
import signal
import atexit
import time
import logging
import os
from typing import Optional

from smartcard.System import readers
from smartcard.util import toHexString
from smartcard.Exceptions import NoCardException

from mqtt_handler import MQTTHandler
from pcsc_session import PcscReaderSession
from scan_session import ScanError, ScanSessionController, ScanSnapshot, SessionState
from snapshot_channel import SnapshotChannel

KEEP_SESSION_OPEN = os.getenv("NFC_KEEP_SESSION_OPEN", "1").lower() in ("1", "true", "yes")
RESTART_DELAY = float(os.getenv("NFC_RESTART_DELAY", "3"))

# Configure logging
logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    stream=sys.stderr,
)

logger = logging.getLogger(__name__)

# Global variables for resource cleanup
_controller: Optional[ScanSessionController] = None
_channel: Optional[SnapshotChannel] = None
_mqtt_handler: Optional[MQTTHandler] = None


def check_pcsc_system() -> bool:
    """Check PC/SC system status and available readers"""
    try:
        logger.info("Checking PC/SC system status...")

        available_readers = readers()
        logger.info("Available readers: %d", len(available_readers))

        for i, reader in enumerate(available_readers):
            logger.info("Reader %d: %s", i, reader)

            try:
                # Try to connect to see if there's a card
                connection = reader.createConnection()
                connection.connect()
                logger.info("Reader %d has a card present", i)
                logger.debug("ATR: %s", toHexString(connection.getATR()))
                connection.disconnect()
            except NoCardException:
                logger.info("Reader %d has no card", i)
            except Exception as e:  # pylint: disable=broad-exception-caught
                logger.warning("Reader %d error: %s", i, e)

        if not available_readers:
            logger.error("No PC/SC readers found!")
            return False

        return True

    except Exception as e:  # pylint: disable=broad-exception-caught
        logger.error("PC/SC system check failed: %s", e)
        logger.debug("Exception details:", exc_info=True)
        return False


def log_snapshot(snapshot: ScanSnapshot) -> None:
    """Print finished reads to stdout and status changes to the log"""
    logger.info("[%s] %s", snapshot.state.value, snapshot.status)
    if snapshot.state is SessionState.REPORTING and snapshot.identity:
        print(f"Tag: {snapshot.identity.technology.value}")
        print(f"UID: {snapshot.identity.uid_hex}")
        for label, value in snapshot.extras.items():
            print(f"{label}: {value}")
        print(snapshot.rendered_content)
        sys.stdout.flush()


def cleanup_resources() -> None:
    """Cleanup function to be called on exit"""
    global _controller, _channel, _mqtt_handler  # pylint: disable=global-statement

    if _controller:
        try:
            _controller.stop()
        except Exception as e:  # pylint: disable=broad-exception-caught
            logger.warning("Error stopping scan session: %s", e)
        finally:
            _controller = None

    if _channel:
        _channel.close()
        _channel = None

    if _mqtt_handler:
        _mqtt_handler.cleanup()
        _mqtt_handler = None


def signal_handler(signum: int, _frame) -> None:
    """Handle termination signals"""
    signal_name = (
        "SIGTERM"
        if signum == signal.SIGTERM
        else "SIGINT" if signum == signal.SIGINT else f"signal {signum}"
    )
    logger.info("Received %s, cleaning up...", signal_name)
    cleanup_resources()
    sys.exit(128 + signum)


def setup_signal_handlers() -> None:
    """Setup signal handlers for proper cleanup"""
    # Handle SIGTERM (docker stop, systemctl stop, etc.)
    signal.signal(signal.SIGTERM, signal_handler)
    # Handle SIGINT (Ctrl+C)
    signal.signal(signal.SIGINT, signal_handler)
    # Register cleanup function to run at normal exit
    atexit.register(cleanup_resources)


def main() -> int:
    """Main function - restarts a scan whenever the previous one finishes"""
    global _controller, _channel, _mqtt_handler  # pylint: disable=global-statement

    logger.info("NFC scanner starting up...")

    setup_signal_handlers()

    if not check_pcsc_system():
        logger.error("PC/SC system check failed - cannot continue")
        return 1

    _channel = SnapshotChannel()
    _channel.subscribe(log_snapshot)

    # Setup MQTT (optional - system can work without it)
    _mqtt_handler = MQTTHandler()
    if _mqtt_handler.setup():
        _channel.subscribe(_mqtt_handler.publish_snapshot)
    _channel.start()

    reader = PcscReaderSession()
    _controller = ScanSessionController(
        reader, _channel.publish, keep_session_open=KEEP_SESSION_OPEN
    )
    reader.delegate = _controller

    scans_started = 0
    try:
        while True:
            if _controller.state is SessionState.IDLE:
                if scans_started:
                    time.sleep(RESTART_DELAY)
                try:
                    _controller.start()
                    scans_started += 1
                except ScanError as e:
                    logger.error("Could not start scan: %s", e)
                    return 1
            time.sleep(1)

    except KeyboardInterrupt:
        logger.info("Shutting down... Started %d scans.", scans_started)
        return 0
    except Exception as e:  # pylint: disable=broad-exception-caught
        logger.error("Unexpected error in main loop: %s", e)
        logger.debug("Exception details:", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
