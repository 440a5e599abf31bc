#!/usr/bin/python3
"""Deliver scan snapshots to subscribers on one dispatcher thread"""

import logging
import queue
import threading
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)

_STOP = object()


class SnapshotChannel:
    """Single-context delivery of published snapshots, in publish order"""

    def __init__(self):
        self._subscribers: List[Callable] = []
        self._queue: queue.Queue = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    def subscribe(self, callback: Callable) -> None:
        """Register a callback that receives every snapshot"""
        with self._lock:
            self._subscribers.append(callback)

    def start(self) -> None:
        """Start the dispatcher thread"""
        if self._thread and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._dispatch_loop, daemon=True)
        self._thread.start()
        logger.debug("Snapshot dispatcher started")

    def publish(self, snapshot) -> None:
        """Queue a snapshot for delivery; safe to call from any thread"""
        self._queue.put(snapshot)

    def drain(self) -> None:
        """Block until every queued snapshot has been delivered"""
        self._queue.join()

    def close(self) -> None:
        """Stop the dispatcher after delivering what is already queued"""
        if not self._thread:
            return
        self._queue.put(_STOP)
        self._thread.join(timeout=2)
        self._thread = None
        logger.debug("Snapshot dispatcher stopped")

    def _dispatch_loop(self) -> None:
        while True:
            snapshot = self._queue.get()
            try:
                if snapshot is _STOP:
                    return
                with self._lock:
                    subscribers = list(self._subscribers)
                for callback in subscribers:
                    try:
                        callback(snapshot)
                    except Exception as e:  # pylint: disable=broad-exception-caught
                        logger.error("Snapshot subscriber failed: %s", e)
                        logger.debug("Exception details:", exc_info=True)
            finally:
                self._queue.task_done()
