#!/usr/bin/env python3
"""Tests for single-thread snapshot delivery"""

import threading

import pytest

from snapshot_channel import SnapshotChannel


@pytest.fixture
def channel():
    channel = SnapshotChannel()
    channel.start()
    yield channel
    channel.close()


def test_delivers_in_publish_order_on_one_thread(channel):
    received = []
    threads = set()

    def subscriber(snapshot):
        received.append(snapshot)
        threads.add(threading.current_thread().name)

    channel.subscribe(subscriber)
    for i in range(20):
        channel.publish(i)
    channel.drain()

    assert received == list(range(20))
    assert len(threads) == 1
    assert threading.current_thread().name not in threads


def test_publish_from_many_threads(channel):
    received = []
    channel.subscribe(received.append)

    workers = [
        threading.Thread(target=lambda n=n: [channel.publish((n, i)) for i in range(10)])
        for n in range(4)
    ]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join()
    channel.drain()

    assert len(received) == 40
    for n in range(4):
        assert [i for (m, i) in received if m == n] == list(range(10))


def test_failing_subscriber_does_not_block_others(channel):
    received = []

    def broken(_snapshot):
        raise RuntimeError("subscriber bug")

    channel.subscribe(broken)
    channel.subscribe(received.append)
    channel.publish("first")
    channel.publish("second")
    channel.drain()

    assert received == ["first", "second"]


def test_close_delivers_queued_snapshots():
    channel = SnapshotChannel()
    received = []
    channel.subscribe(received.append)
    channel.publish("queued")
    channel.start()
    channel.close()

    assert received == ["queued"]
