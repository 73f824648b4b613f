"""
Event listeners for the request dispatcher.

This module contains the DispatchEventListener base class and a logging
implementation for observing the dispatcher lifecycle.

Available Listeners:
    - DispatchEventListener: Base class for all event listeners.
    - LoggingDispatchListener: Reports every event through the `logging` module.

Example:
    >>> from apipacer import RateLimitedApiClient, LoggingDispatchListener
    >>> client = RateLimitedApiClient(api_key="...", listeners=[LoggingDispatchListener()])
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, override

if TYPE_CHECKING:
    from apipacer._models import ApiResponse, PendingRequest

logger = logging.getLogger(__name__)


class DispatchEventListener:
    """
    Base class for observing dispatcher events.

    Listeners are read-only observers: they can log, notify or collect
    metrics, but should NOT modify the request or response. They are invoked
    from the dispatcher, send and timer threads, so implementations must be
    thread-safe and fast.

    All methods have default empty implementations, so subclasses only need to
    override the methods they care about.

    Example:
        >>> class CountingListener(DispatchEventListener):
        ...     def __init__(self):
        ...         self.sent = 0
        ...     def on_dispatch(self, request):
        ...         self.sent += 1
    """

    def on_dispatch(self, request: PendingRequest) -> None:
        """
        Called right before the request is handed to the transport.

        Args:
            request: The request about to be sent. `request.attempts` already
                counts this send.
        """
        pass

    def on_canceled(self, request: PendingRequest) -> None:
        """Called when a canceled request is dropped without being sent."""
        pass

    def on_response(self, request: PendingRequest, response: ApiResponse) -> None:
        """Called when a response is surfaced to the caller."""
        pass

    def on_quota_exceeded(self, request: PendingRequest, reset_seconds: int) -> None:
        """
        Called when the server answered HTTP 429 and the request was re-queued.

        Args:
            request: The rejected request (already back in the queue).
            reset_seconds: Seconds until the server window resets, as reported.
        """
        pass

    def on_window_calibrated(self, remaining: int, reset_seconds: int) -> None:
        """
        Called when the first response of a window set the quota.

        Args:
            remaining: Permits granted for the rest of the window.
            reset_seconds: Seconds until the server window resets, as reported.
        """
        pass

    def on_window_reset(self) -> None:
        """Called when a scheduled reset restored the probe permit."""
        pass

    def on_transport_error(self, request: PendingRequest, error: Exception) -> None:
        """Called when the transport failed; the error goes to the caller."""
        pass


class LoggingDispatchListener(DispatchEventListener):
    """
    Listener that reports dispatcher events through `logging`.

    Args:
        level: Log level used for per-request events (default: DEBUG).
            Window events are always logged at INFO, quota overflows at WARNING.
    """

    def __init__(self, level: int = logging.DEBUG):
        self.level = level

    @override
    def on_dispatch(self, request: PendingRequest) -> None:
        logger.log(
            self.level,
            f"{request.id[:26]:<26} | Dispatcher | ➡️ Sending GET {request.url} (attempt={request.attempts})",
        )

    @override
    def on_canceled(self, request: PendingRequest) -> None:
        logger.log(self.level, f"{request.id[:26]:<26} | Dispatcher | Dropped canceled request.")

    @override
    def on_response(self, request: PendingRequest, response: ApiResponse) -> None:
        logger.log(
            self.level,
            f"{request.id[:26]:<26} | Dispatcher | ✅ Completed with status {response.status_code}.",
        )

    @override
    def on_quota_exceeded(self, request: PendingRequest, reset_seconds: int) -> None:
        logger.warning(
            f"{request.id[:26]:<26} | Dispatcher | ⚠️ Quota exceeded (HTTP 429), "
            f"request re-queued. Server window resets in {reset_seconds}s."
        )

    @override
    def on_window_calibrated(self, remaining: int, reset_seconds: int) -> None:
        logger.info(
            f"{'Window':<26} | Dispatcher | Quota learned: {remaining} request(s) left, "
            f"window resets in {reset_seconds}s."
        )

    @override
    def on_window_reset(self) -> None:
        logger.info(f"{'Window':<26} | Dispatcher | Window reset, probing quota again.")

    @override
    def on_transport_error(self, request: PendingRequest, error: Exception) -> None:
        logger.warning(f"{request.id[:26]:<26} | Dispatcher | ❌ Transport failure: {error}")


def notify_listeners(
    listeners: list[DispatchEventListener],
    event: str,
    **kwargs: object,
) -> None:
    """
    Notify all listeners about an event.

    Exceptions raised by listeners are logged but do not interrupt dispatching.

    Args:
        listeners: Listeners to notify.
        event: The event method name (e.g., 'on_dispatch').
        **kwargs: Keyword arguments to pass to the listener method.
    """
    for listener in listeners:
        try:
            method = getattr(listener, event, None)
            if method and callable(method):
                method(**kwargs)
        except Exception as e:
            listener_name = listener.__class__.__name__
            logger.warning(
                f"{'Listener':<26} | Dispatcher | Event listener `{listener_name}.{event}()` raised an exception: {e}",
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )
