"""
Rate limiting components for the apipacer dispatcher.

The server quota is never configured: it is learned from the response
headers of the first request of every window, and re-learned after each
reset. This module provides the three pieces that make that work:

- AdmissionGate: Shared counter of permits left in the current window,
  together with the window flags, behind a single condition variable.
- ResetScheduler: One-shot timer that puts the gate back in its "probe"
  state once the server window is over.
- ResponseClassifier: Reads status and `ratelimit-*` headers of each response
  and decides whether to surface it, re-queue it, or calibrate the gate.

Example:
    >>> gate = AdmissionGate()
    >>> scheduler = ResetScheduler(gate)
    >>> classifier = ResponseClassifier(gate, scheduler, requeue=queue.put)
    >>> outcome = classifier.classify(response, request)
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass

import requests

from apipacer._event_listeners import DispatchEventListener, notify_listeners
from apipacer._models import PendingRequest, ResponseOutcome, WindowState
from apipacer._utils import read_int_header

logger = logging.getLogger(__name__)

TOO_MANY_REQUESTS = 429


# =============================================================================
# Admission Gate
# =============================================================================


class AdmissionGate:
    """
    Permits left in the current rate-limit window.

    `remaining` and both window flags form one unit of shared state: every
    read-modify-write on them happens under the same condition variable, so
    a waiter never observes a calibrated `remaining` without the matching
    `first_response_seen` flag.

    The gate starts with a single probe permit: the very first request of a
    window is the one that discovers the real quota, every other request
    waits until its response arrives.

    Example:
        >>> gate = AdmissionGate()
        >>> gate.acquire()          # takes the probe permit
        True
        >>> gate.calibrate(42)      # first response says 42 requests left
        True
        >>> gate.remaining
        42

    Args:
        initial_permits: Permits available at the start of each window (default: 1).
    """

    def __init__(self, initial_permits: int = 1):
        assert initial_permits is not None, "initial_permits cannot be None."
        assert initial_permits > 0, "initial_permits must be greater than 0."

        self.initial_permits = initial_permits
        self._condition = threading.Condition()
        self._remaining = initial_permits
        self._first_response_seen = False
        self._overflow_clock_started = False
        self._window_id = 0
        self._closed = False

    @property
    def window_id(self) -> int:
        """Identifier of the current window, bumped by every `reset()`."""
        with self._condition:
            return self._window_id

    @property
    def remaining(self) -> int:
        with self._condition:
            return self._remaining

    @property
    def state(self) -> WindowState:
        """Return a consistent snapshot of the permit counter and window flags."""
        with self._condition:
            return WindowState(
                remaining=self._remaining,
                first_response_seen=self._first_response_seen,
                overflow_clock_started=self._overflow_clock_started,
            )

    def acquire(self) -> bool:
        """
        Take one permit, blocking until one is available.

        Returns:
            True once a permit was taken, False if the gate was closed while waiting.
        """
        return self.acquire_window() is not None

    def acquire_window(self) -> int | None:
        """
        Take one permit, blocking until one is available.

        Returns:
            The id of the window the permit belongs to, or None if the gate
            was closed while waiting.
        """
        with self._condition:
            while not self._closed and self._remaining <= 0:
                self._condition.wait()
            if self._closed:
                return None

            self._remaining -= 1
            assert self._remaining >= 0, "🌀 Sanity check | Admission gate went negative."
            return self._window_id

    def release(self, permits: int = 1, window_id: int | None = None) -> bool:
        """
        Give permits back (e.g. a canceled request refunding its reserved permit).

        Args:
            permits: How many permits to give back.
            window_id: Window the permits were taken from. Permits of a window
                that was already reset are not given back.

        Returns:
            True if the permits were given back.
        """
        assert permits >= 1, "permits must be greater than or equal to 1."

        with self._condition:
            if window_id is not None and window_id != self._window_id:
                return False

            self._remaining += permits
            self._condition.notify_all()
            return True

    def calibrate(self, remaining: int) -> bool:
        """
        Set the quota learned from the first response of the window.

        Only the first caller per window wins; later calls are no-ops.

        Args:
            remaining: Value of the `ratelimit-remaining` header.

        Returns:
            True if this call calibrated the window (and must schedule its reset).
        """
        with self._condition:
            if self._first_response_seen:
                return False

            self._first_response_seen = True
            self._remaining = max(0, remaining)
            self._condition.notify_all()
            return True

    def exhaust(self) -> bool:
        """
        Close the window after the server answered HTTP 429.

        Only the first 429 per window wins; later calls are no-ops.

        Returns:
            True if this call exhausted the window (and must schedule its reset).
        """
        with self._condition:
            if self._overflow_clock_started:
                return False

            self._overflow_clock_started = True
            self._remaining = 0
            return True

    def reset(self) -> None:
        """Start a new window: clear the flags and hand out the probe permit again."""
        with self._condition:
            self._window_id += 1
            self._first_response_seen = False
            self._overflow_clock_started = False
            self._remaining = self.initial_permits
            self._condition.notify_all()

    def restore_probe(self, window_id: int | None = None) -> bool:
        """
        Give the probe permit back when the probe never got a response.

        Without a response there is nothing to calibrate and no reset gets
        scheduled, so the window would stay at zero permits forever.

        Args:
            window_id: Window the failed request took its permit from. A
                failure from a window that was already reset restores nothing.

        Returns:
            True if the probe permit was restored.
        """
        with self._condition:
            if window_id is not None and window_id != self._window_id:
                return False
            if self._first_response_seen or self._overflow_clock_started or self._remaining > 0:
                return False

            self._remaining = self.initial_permits
            self._condition.notify_all()
            return True

    def close(self) -> None:
        """Wake up every waiter; further `acquire()` calls return False."""
        with self._condition:
            self._closed = True
            self._condition.notify_all()


# =============================================================================
# Reset Scheduler
# =============================================================================


class ResetScheduler:
    """
    One-shot timer restoring the gate to its probe state.

    Scheduling again while a reset is pending replaces it, so at most one
    reset is ever outstanding. A timer that was replaced does nothing when
    it fires.

    Example:
        >>> scheduler = ResetScheduler(gate, margin=2.0)
        >>> scheduler.schedule(10)  # gate.reset() in 12 seconds

    Args:
        gate: The gate to reset.
        margin: Seconds added to every delay to absorb clock skew with the server.
        listeners: Listeners notified with `on_window_reset()`.
    """

    def __init__(
        self,
        gate: AdmissionGate,
        margin: float = 2.0,
        listeners: list[DispatchEventListener] | None = None,
    ):
        assert gate is not None, "gate cannot be None."
        assert margin is not None, "margin cannot be None."
        assert margin >= 0, "margin must be greater than or equal to 0."

        self.gate = gate
        self.margin = margin
        self.listeners: list[DispatchEventListener] = listeners or []

        self._lock = threading.Lock()
        self._timer: threading.Timer | None = None
        self._generation = 0
        self._closed = False

    @property
    def pending(self) -> bool:
        """Return True if a reset is scheduled and has not fired yet."""
        with self._lock:
            return self._timer is not None

    def schedule(self, reset_seconds: float) -> float:
        """
        Schedule `gate.reset()` after `reset_seconds + margin` seconds.

        Args:
            reset_seconds: Seconds until the server window resets.

        Returns:
            The effective delay in seconds.
        """
        delay = reset_seconds + self.margin

        with self._lock:
            if self._closed:
                return delay
            if self._timer is not None:
                self._timer.cancel()

            self._generation += 1
            timer = threading.Timer(delay, self._fire, args=(self._generation,))
            timer.daemon = True
            timer.name = f"apipacer-reset-{self._generation}"
            self._timer = timer
            timer.start()

        logger.debug(f"{'Window':<26} | Scheduler | Reset scheduled in {delay:.1f}s.")
        return delay

    def _fire(self, generation: int) -> None:
        with self._lock:
            if self._closed or generation != self._generation:
                return
            self._timer = None

        self.gate.reset()
        logger.debug(f"{'Window':<26} | Scheduler | Window reset, probe permit restored.")
        notify_listeners(self.listeners, "on_window_reset")

    def cancel(self) -> None:
        """Cancel any pending reset and refuse new ones."""
        with self._lock:
            self._closed = True
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None


# =============================================================================
# Response Classifier
# =============================================================================


@dataclass(frozen=True)
class RateLimitHeaders:
    """
    Rate-limit headers of a single response, with fallbacks applied.

    Attributes:
        remaining: Requests left in the window (`ratelimit-remaining`).
        reset: Seconds until the window resets (`ratelimit-reset`), floored at `min_reset`.
    """

    remaining: int
    reset: int

    @classmethod
    def parse(
        cls,
        headers: Mapping[str, str] | None,
        fallback_remaining: int = 110,
        fallback_reset: int = 10,
        min_reset: int = 1,
    ) -> RateLimitHeaders:
        """
        Read `ratelimit-remaining` and `ratelimit-reset` from response headers.

        Example:
            >>> RateLimitHeaders.parse({"ratelimit-remaining": "42", "ratelimit-reset": "0"})
            RateLimitHeaders(remaining=42, reset=1)
        """
        return cls(
            remaining=read_int_header(headers, "ratelimit-remaining", fallback_remaining),
            reset=max(min_reset, read_int_header(headers, "ratelimit-reset", fallback_reset)),
        )


class ResponseClassifier:
    """
    Decides what happens to each transport response.

    - HTTP 429: the first one of the window closes the gate and schedules the
      reset; every 429 re-queues its request. Never surfaced to the caller.
    - First other response of the window: calibrates the gate with
      `ratelimit-remaining` and schedules the reset. Surfaced to the caller.
    - Any later response: surfaced unchanged.

    Args:
        gate: Admission gate to calibrate.
        scheduler: Reset scheduler for the window.
        requeue: Callable putting a rejected request back in the queue (blocking).
        fallback_remaining: Quota assumed when `ratelimit-remaining` is missing.
        fallback_reset: Reset assumed when `ratelimit-reset` is missing.
        min_reset: Floor applied to `ratelimit-reset`.
        listeners: Listeners notified about quota and calibration events.
    """

    def __init__(
        self,
        gate: AdmissionGate,
        scheduler: ResetScheduler,
        requeue: Callable[[PendingRequest], None],
        fallback_remaining: int = 110,
        fallback_reset: int = 10,
        min_reset: int = 1,
        listeners: list[DispatchEventListener] | None = None,
    ):
        assert gate is not None, "gate cannot be None."
        assert scheduler is not None, "scheduler cannot be None."
        assert requeue is not None, "requeue cannot be None."

        self.gate = gate
        self.scheduler = scheduler
        self.requeue = requeue
        self.fallback_remaining = fallback_remaining
        self.fallback_reset = fallback_reset
        self.min_reset = min_reset
        self.listeners: list[DispatchEventListener] = listeners or []

    def classify(self, response: requests.Response, request: PendingRequest) -> ResponseOutcome:
        """
        Classify a response and apply its effect on the window.

        Args:
            response: The transport response.
            request: The request that produced it.

        Returns:
            ResponseOutcome with allow=False if the request was re-queued.

        Raises:
            ClientClosedError: If the request had to be re-queued but the
                queue was already closed.
        """
        limits = RateLimitHeaders.parse(
            response.headers,
            fallback_remaining=self.fallback_remaining,
            fallback_reset=self.fallback_reset,
            min_reset=self.min_reset,
        )

        if response.status_code == TOO_MANY_REQUESTS:
            if self.gate.exhaust():
                logger.warning(
                    f"{request.id[:26]:<26} | Classifier | Quota exceeded (HTTP 429). "
                    f"Holding every request for {limits.reset}s (+{self.scheduler.margin}s margin)."
                )
                self.scheduler.schedule(limits.reset)

            # Re-queue after the clock bookkeeping so the retry can't race the gate update
            self.requeue(request)
            notify_listeners(self.listeners, "on_quota_exceeded", request=request, reset_seconds=limits.reset)
            return ResponseOutcome(allow=False, status_code=response.status_code)

        if self.gate.calibrate(limits.remaining):
            logger.info(
                f"{request.id[:26]:<26} | Classifier | Window calibrated: "
                f"remaining={limits.remaining}, reset={limits.reset}s."
            )
            self.scheduler.schedule(limits.reset)
            notify_listeners(
                self.listeners, "on_window_calibrated",
                remaining=max(0, limits.remaining), reset_seconds=limits.reset,
            )

        return ResponseOutcome(allow=True, status_code=response.status_code)
