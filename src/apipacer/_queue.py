"""
Bounded FIFO buffer between callers and the dispatcher.

Callers (many producer threads) put requests; the dispatcher (a single
consumer thread) takes them. A full buffer blocks the producer instead of
dropping requests. Closing the buffer wakes everyone up.
"""

from __future__ import annotations

import logging
import threading
from collections import deque

from apipacer._models import PendingRequest

logger = logging.getLogger(__name__)


class ClientClosedError(RuntimeError):
    """
    Raised when a request is submitted to a client (or queue) that was shut down.

    Example:
        >>> client.shutdown()
        >>> client.submit("https://api.example.com/v2/status")
        Traceback (most recent call last):
        ...
        ClientClosedError: Client was shut down; request not accepted.
    """

    def __init__(self, message: str = "Client was shut down; request not accepted."):
        super().__init__(message)


class RequestQueue:
    """
    Bounded, blocking FIFO of pending requests.

    This queue is thread-safe and owns its own lock, independent from the
    admission gate.

    Example:
        >>> queue = RequestQueue(capacity=2)
        >>> queue.put(PendingRequest(url="https://api.example.com/a"))
        >>> request = queue.take()

    Args:
        capacity: Maximum number of buffered requests (default: 500).
    """

    def __init__(self, capacity: int = 500):
        assert capacity is not None, "capacity cannot be None."
        assert capacity > 0, "capacity must be greater than 0."

        self._capacity = capacity
        self._items: deque[PendingRequest] = deque()
        self._lock = threading.Lock()
        self._not_empty = threading.Condition(self._lock)
        self._not_full = threading.Condition(self._lock)
        self._closed = False

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def put(self, request: PendingRequest) -> None:
        """
        Append a request, blocking while the queue is full.

        Raises:
            ClientClosedError: If the queue is closed before (or while) waiting.
        """
        assert request is not None, "request cannot be None."

        with self._not_full:
            while not self._closed and len(self._items) >= self._capacity:
                self._not_full.wait()
            if self._closed:
                raise ClientClosedError()

            self._items.append(request)
            self._not_empty.notify()

    def take(self) -> PendingRequest | None:
        """
        Remove and return the oldest request, blocking while the queue is empty.

        Returns:
            The next request, or None once the queue is closed.
        """
        with self._not_empty:
            while not self._closed and not self._items:
                self._not_empty.wait()
            if self._closed:
                return None

            request = self._items.popleft()
            self._not_full.notify()
            return request

    def close(self) -> int:
        """
        Stop accepting requests and wake up every blocked producer and consumer.

        Requests still buffered are abandoned.

        Returns:
            How many buffered requests were abandoned.
        """
        with self._lock:
            if self._closed:
                return 0
            self._closed = True
            abandoned = len(self._items)
            self._items.clear()
            self._not_empty.notify_all()
            self._not_full.notify_all()

        if abandoned:
            logger.debug(f"{'RequestQueue':<26} | Queue | Closed with {abandoned} pending request(s) abandoned.")
        return abandoned
