"""Tests for the DiscoveryMonitor class."""

import threading
import time
from queue import Queue

import pytest

from nsview.monitor import DiscoveryMonitor, DiscoveryUpdate, RefreshFailed


class TestDiscoveryMonitor:
    """Tests for DiscoveryMonitor class."""

    def test_monitor_creation(self, make_snapshot):
        """Test DiscoveryMonitor can be instantiated."""
        monitor = DiscoveryMonitor(Queue(), make_snapshot)

        assert monitor.poll_rate == 5.0
        assert not monitor.is_running
        assert monitor.last_graph is None

    def test_poll_rate_minimum(self, make_snapshot):
        """Test poll rate has a minimum value."""
        monitor = DiscoveryMonitor(Queue(), make_snapshot, poll_rate=0.01)
        assert monitor.poll_rate == 0.1

        monitor.poll_rate = 0.0
        assert monitor.poll_rate == 0.1
        monitor.poll_rate = 2.0
        assert monitor.poll_rate == 2.0

    def test_fetch_sequence_numbers(self, make_snapshot):
        """Test each fetch is stamped with an increasing sequence number."""
        queue = Queue()
        monitor = DiscoveryMonitor(queue, make_snapshot)

        first = monitor.fetch()
        second = monitor.fetch()

        assert isinstance(first, DiscoveryUpdate)
        assert (first.seq, second.seq) == (1, 2)
        assert queue.get_nowait() is first
        assert queue.get_nowait() is second
        assert monitor.last_graph is second.graph
        assert first.graph is not second.graph

    def test_failure_keeps_last_graph(self, make_snapshot):
        """Test failed refreshes are reported but never replace the graph."""
        snapshots = iter([make_snapshot(), OSError("gone"), {"processes": {}}])

        def provider():
            result = next(snapshots)
            if isinstance(result, Exception):
                raise result
            return result

        queue = Queue()
        monitor = DiscoveryMonitor(queue, provider)
        good = monitor.fetch()
        failed = monitor.fetch()
        malformed = monitor.fetch()

        assert isinstance(failed, RefreshFailed)
        assert failed.error == "gone"
        assert isinstance(malformed, RefreshFailed)
        assert monitor.last_graph is good.graph
        assert queue.qsize() == 3

    def test_no_overlapping_fetches(self, make_snapshot):
        """Test a fetch while another is in flight does nothing."""
        started = threading.Event()
        release = threading.Event()

        def slow_provider():
            started.set()
            release.wait(timeout=5.0)
            return make_snapshot()

        queue = Queue()
        monitor = DiscoveryMonitor(queue, slow_provider)
        worker = threading.Thread(target=monitor.fetch)
        worker.start()
        try:
            assert started.wait(timeout=5.0)
            assert monitor.fetch() is None
            assert not monitor.refresh()
        finally:
            release.set()
            worker.join(timeout=5.0)

        assert queue.qsize() == 1
        assert monitor.refresh()

    def test_monitor_start_stop(self, make_snapshot):
        """Test DiscoveryMonitor can be started and stopped."""
        queue = Queue()
        monitor = DiscoveryMonitor(queue, make_snapshot, poll_rate=0.1)

        monitor.start()
        assert monitor.is_running

        update = queue.get(timeout=5.0)
        assert isinstance(update, DiscoveryUpdate)

        monitor.stop()
        assert not monitor.is_running

    def test_refresh_wakes_monitor(self, make_snapshot):
        """Test a refresh request triggers a fetch before the poll interval."""
        queue = Queue()
        monitor = DiscoveryMonitor(queue, make_snapshot, poll_rate=60.0)
        monitor.start()
        try:
            assert queue.get(timeout=5.0).seq == 1
            # the first fetch may not have released its in-flight lock yet
            while not monitor.refresh():
                time.sleep(0.01)
            assert queue.get(timeout=5.0).seq == 2
        finally:
            monitor.stop()

    def test_start_twice(self, make_snapshot):
        """Test starting a running monitor is a no-op."""
        monitor = DiscoveryMonitor(Queue(), make_snapshot, poll_rate=0.1)
        monitor.start()
        thread = monitor._thread
        monitor.start()
        assert monitor._thread is thread
        monitor.stop()


@pytest.mark.parametrize("error", [ValueError("bad json"), OSError("no such file")])
def test_provider_errors_reported(error):
    """Test provider errors become RefreshFailed events."""

    def provider():
        raise error

    event = DiscoveryMonitor(Queue(), provider).fetch()
    assert isinstance(event, RefreshFailed)
    assert event.seq == 1


def test_malformed_snapshot_reported(make_snapshot):
    """Test snapshots with malformed entries become RefreshFailed events."""

    def provider():
        snapshot = make_snapshot()
        snapshot["processes"]["1"]["tasks"] = 5
        return snapshot

    queue: Queue = Queue()
    event = DiscoveryMonitor(queue, provider).fetch()
    assert isinstance(event, RefreshFailed)
    assert queue.get_nowait() is event


def test_unexpected_errors_keep_monitor_running():
    """Test the monitor survives provider bugs and keeps refreshing."""
    calls = []

    def provider():
        calls.append(1)
        raise RuntimeError("provider bug")

    queue: Queue = Queue()
    monitor = DiscoveryMonitor(queue, provider, poll_rate=0.1)
    monitor.start()
    try:
        time.sleep(0.6)
        assert monitor.is_running
    finally:
        monitor.stop()

    assert len(calls) >= 2
    events = []
    while not queue.empty():
        events.append(queue.get_nowait())
    assert len(events) == len(calls)
    assert all(isinstance(event, RefreshFailed) for event in events)
    assert "RuntimeError: provider bug" in events[0].error
    assert monitor.last_graph is None
