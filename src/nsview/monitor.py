"""Background discovery engine for nsview."""

import itertools
import logging
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from queue import Queue
from typing import Any

import psutil

from nsview.collector import collect_snapshot
from nsview.models import DiscoveryGraph
from nsview.resolver import resolve

logger = logging.getLogger(__name__)

SnapshotProvider = Callable[[], Mapping[str, Any]]


@dataclass(slots=True)
class DiscoveryUpdate:
    """A freshly resolved discovery graph."""

    seq: int
    graph: DiscoveryGraph
    timestamp: float


@dataclass(slots=True)
class RefreshFailed:
    """A refresh that could not fetch or resolve its snapshot."""

    seq: int
    error: str


MonitorEvent = DiscoveryUpdate | RefreshFailed


class DiscoveryMonitor:
    """
    Discovery monitor that periodically fetches and resolves snapshots.

    Runs in a separate daemon thread and pushes updates to a thread-safe Queue.
    At most one fetch is in flight at any time; refresh requests arriving
    while a fetch runs are dropped. Any error during a refresh is queued as
    RefreshFailed and never replaces the last good graph.
    """

    def __init__(
        self,
        update_queue: Queue[MonitorEvent],
        provider: SnapshotProvider = collect_snapshot,
        poll_rate: float = 5.0,
    ) -> None:
        """
        Initialize the DiscoveryMonitor.

        Args:
            update_queue: Thread-safe queue to push updates to.
            provider: Returns a discovery snapshot when called.
            poll_rate: How often to refresh (in seconds). Default 5.0s.
        """
        self._queue = update_queue
        self._provider = provider
        self._poll_rate = max(0.1, poll_rate)
        self._stop_event = threading.Event()
        self._wake_event = threading.Event()
        self._in_flight = threading.Lock()
        self._seq = itertools.count(1)
        self._thread: threading.Thread | None = None
        self._last_graph: DiscoveryGraph | None = None

    @property
    def poll_rate(self) -> float:
        return self._poll_rate

    @poll_rate.setter
    def poll_rate(self, value: float) -> None:
        self._poll_rate = max(0.1, value)  # Minimum 0.1 seconds

    @property
    def is_running(self) -> bool:
        """Check if the monitor thread is running."""
        return self._thread is not None and self._thread.is_alive()

    @property
    def last_graph(self) -> DiscoveryGraph | None:
        """The most recent successfully resolved graph."""
        return self._last_graph

    def start(self) -> None:
        """Start the monitoring thread."""
        if self.is_running:
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._poll_loop,
            daemon=True,
            name="DiscoveryMonitor",
        )
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        """
        Stop the monitoring thread.

        Args:
            timeout: How long to wait for thread to stop (seconds).
        """
        self._stop_event.set()
        self._wake_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def refresh(self) -> bool:
        """Request an immediate refresh; False if one is already in flight."""
        if self._in_flight.locked():
            return False
        self._wake_event.set()
        return True

    def fetch(self) -> MonitorEvent | None:
        """
        Fetch and resolve one snapshot, queueing the outcome.

        Returns None without doing anything if another fetch is in flight.
        """
        if not self._in_flight.acquire(blocking=False):
            return None
        try:
            seq = next(self._seq)
            try:
                graph = resolve(self._provider())
            except (OSError, ValueError, psutil.Error) as exc:
                logger.warning("refresh %d failed: %s", seq, exc)
                event: MonitorEvent = RefreshFailed(seq, str(exc))
            except Exception as exc:
                logger.exception("refresh %d crashed", seq)
                event = RefreshFailed(seq, f"{type(exc).__name__}: {exc}")
            else:
                logger.debug(
                    "refresh %d: %d namespaces, %d processes",
                    seq, len(graph.namespaces), len(graph.processes),
                )
                self._last_graph = graph
                event = DiscoveryUpdate(seq, graph, time.time())
            self._queue.put(event)
            return event
        finally:
            self._in_flight.release()

    def _poll_loop(self) -> None:
        """Main polling loop running in the background thread."""
        while not self._stop_event.is_set():
            try:
                self.fetch()
            except Exception:
                # Keep the loop running
                logger.exception("discovery monitor error")

            # Wait for poll_rate seconds, a refresh request, or stop
            self._wake_event.wait(timeout=self._poll_rate)
            self._wake_event.clear()
