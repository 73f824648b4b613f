"""
Rate-limited API client.

This module contains RateLimitedApiClient, the public entry point of the
package. It wires the request queue, the admission gate, the reset
scheduler, the response classifier and the dispatcher together, and
exposes a futures-based API to callers.

Example:
    >>> from apipacer import RateLimitedApiClient
    >>> with RateLimitedApiClient(api_key="0f3e9b2c-7a61-4d2e-9c1f-2b8a5d6e7f10") as client:
    ...     future = client.submit_authenticated("https://api.example.com/v2/counts")
    ...     response = future.result()
    ...     print(response.status_code, response.body)
"""

from __future__ import annotations

import logging
import threading
import uuid
from concurrent.futures import Future
from types import TracebackType
from typing import Self

from apipacer._auth import AuthenticationError, AuthProvider, create_auth_provider
from apipacer._config import APIPACER
from apipacer._dispatcher import Dispatcher
from apipacer._event_listeners import DispatchEventListener
from apipacer._http import HttpTransport, RequestsHttpTransport
from apipacer._models import ApiResponse, PendingRequest, WindowState
from apipacer._queue import ClientClosedError, RequestQueue
from apipacer._rate_limit import AdmissionGate, ResetScheduler, ResponseClassifier

logger = logging.getLogger(__name__)


class RateLimitedApiClient:
    """
    Client pacing GET requests to an API with a learned per-window quota.

    The quota is never configured: the first request of each window is sent
    alone, and the `ratelimit-remaining` / `ratelimit-reset` headers of its
    response tell how many more requests may go out and when the window
    ends. HTTP 429 responses are never surfaced: the request is re-queued and
    retried once the window resets.

    Cancelling a returned future cancels the request if it has not been sent
    yet. Cancelling after it was sent only detaches the caller.

    This client is thread-safe: any number of threads can submit requests.

    Example:
        >>> client = RateLimitedApiClient(api_key="my-key")
        >>> futures = [client.submit(url) for url in urls]
        >>> responses = [f.result() for f in futures]
        >>> client.shutdown()

    Args:
        api_key: Key attached to authenticated requests. If None, uses
            APIPACER.config.auth.api_key.
        min_delay_between_requests: Minimum milliseconds between two sends.
        buffer_capacity: Maximum number of queued requests; submitting to a
            full client blocks.
        max_in_flight: Number of threads performing sends.
        request_timeout: HTTP timeout in seconds.
        transport: HTTP transport. Defaults to RequestsHttpTransport.
        auth_provider: Credential provider; takes precedence over api_key.
        listeners: Dispatch event listeners.

    Any argument left as None falls back to the global configuration.
    """

    def __init__(
        self,
        api_key: str | uuid.UUID | None = None,
        *,
        min_delay_between_requests: int | None = None,
        buffer_capacity: int | None = None,
        max_in_flight: int | None = None,
        request_timeout: float | None = None,
        transport: HttpTransport | None = None,
        auth_provider: AuthProvider | None = None,
        listeners: list[DispatchEventListener] | None = None,
    ):
        dispatcher_cfg = APIPACER.config.dispatcher
        window_cfg = APIPACER.config.window

        if min_delay_between_requests is None:
            min_delay_between_requests = dispatcher_cfg.min_delay_between_requests
        if buffer_capacity is None:
            buffer_capacity = dispatcher_cfg.buffer_capacity
        if max_in_flight is None:
            max_in_flight = dispatcher_cfg.max_in_flight
        if request_timeout is None:
            request_timeout = dispatcher_cfg.request_timeout
        if auth_provider is None:
            auth_provider = create_auth_provider(api_key=api_key)
        if transport is None:
            transport = RequestsHttpTransport()
        if listeners is None:
            listeners = []

        assert min_delay_between_requests >= 0, "min_delay_between_requests must be greater than or equal to 0."
        assert buffer_capacity > 0, "buffer_capacity must be greater than 0."
        assert max_in_flight > 0, "max_in_flight must be greater than 0."
        assert request_timeout > 0, "request_timeout must be greater than 0."

        self.min_delay_between_requests = min_delay_between_requests
        self.buffer_capacity = buffer_capacity
        self.auth_provider = auth_provider
        self.listeners = listeners

        self._queue = RequestQueue(capacity=buffer_capacity)
        self._gate = AdmissionGate(initial_permits=window_cfg.initial_permits)
        self._scheduler = ResetScheduler(
            self._gate,
            margin=window_cfg.reset_margin,
            listeners=listeners,
        )
        self._classifier = ResponseClassifier(
            self._gate,
            self._scheduler,
            requeue=self._queue.put,
            fallback_remaining=window_cfg.fallback_remaining,
            fallback_reset=window_cfg.fallback_reset,
            min_reset=window_cfg.min_reset,
            listeners=listeners,
        )
        self._dispatcher = Dispatcher(
            self._queue,
            self._gate,
            self._classifier,
            transport,
            auth_provider=auth_provider,
            min_delay=min_delay_between_requests / 1000.0,
            max_in_flight=max_in_flight,
            request_timeout=request_timeout,
            listeners=listeners,
        )

        self._shutdown_lock = threading.Lock()
        self._shutdown = False
        self._dispatcher.start()

    # ======================
    # Public API
    # ======================

    def submit(self, url: str) -> Future[ApiResponse]:
        """
        Queue an unauthenticated GET request.

        Blocks while the buffer is full.

        Args:
            url: Full URL to request.

        Returns:
            A future completed with the ApiResponse, or with the transport error.

        Raises:
            ClientClosedError: If the client was shut down.
        """
        return self.request(url, authenticated=False)

    def submit_authenticated(self, url: str) -> Future[ApiResponse]:
        """
        Queue a GET request carrying the API key.

        Raises:
            AuthenticationError: If no API key (or auth provider) is configured.
            ClientClosedError: If the client was shut down.
        """
        return self.request(url, authenticated=True)

    def request(self, url: str, authenticated: bool = False) -> Future[ApiResponse]:
        """
        Queue a GET request.

        Args:
            url: Full URL to request.
            authenticated: Whether to attach the API key.

        Returns:
            A future completed with the ApiResponse, or with the transport error.
            Cancelling it prevents the request from being sent, if possible.

        Raises:
            AuthenticationError: If authenticated and no API key is configured.
            ClientClosedError: If the client was shut down.
        """
        assert url, "URL cannot be empty."

        if self._shutdown:
            raise ClientClosedError()
        if authenticated and self.auth_provider is None:
            raise AuthenticationError(
                "No API key configured. Pass `api_key` to RateLimitedApiClient, "
                "call APIPACER.configure(auth={'api_key': ...}) or set APIPACER_AUTH_API_KEY."
            )

        pending = PendingRequest(url=url, authenticated=authenticated)
        self._queue.put(pending)
        logger.debug(f"{pending.id[:26]:<26} | Client | Queued GET {url} (authenticated={authenticated}).")
        return pending.completion

    def shutdown(self) -> None:
        """
        Stop the dispatcher and release its threads.

        Pending requests are abandoned: their futures never complete.
        Calling this more than once is a no-op.
        """
        with self._shutdown_lock:
            if self._shutdown:
                return
            self._shutdown = True

        self._scheduler.cancel()
        self._dispatcher.stop()
        logger.debug(f"{'Client':<26} | Client | Shut down.")

    @property
    def window_state(self) -> WindowState:
        """Snapshot of the current window (permits left and window flags)."""
        return self._gate.state

    @property
    def pending_count(self) -> int:
        """Number of requests waiting in the buffer."""
        return len(self._queue)

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.shutdown()

    def __repr__(self) -> str:
        return (
            f"RateLimitedApiClient(min_delay_between_requests={self.min_delay_between_requests}, "
            f"buffer_capacity={self.buffer_capacity}, window={self.window_state})"
        )
