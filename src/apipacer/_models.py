"""
Data models for the apipacer dispatcher.

This module contains the core data structures shared by the dispatcher components:
- ApiResponse: Response surfaced to the caller (frozen/immutable)
- PendingRequest: A submitted request travelling through queue, dispatcher and transport
- ResponseOutcome: Decision taken by the ResponseClassifier for a single response
- WindowState: Snapshot of the admission gate and window flags
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping
from concurrent.futures import Future, InvalidStateError
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ApiResponse:
    """
    Represents a response surfaced to the caller.

    Attributes:
        status_code: HTTP status code returned by the server (never 429).
        body: Raw response body. Parsing it is up to the caller.
        headers: Response headers (case-insensitive when produced by `requests`).

    Example:
        >>> future = client.submit("https://api.example.com/v2/status")
        >>> response = future.result()
        >>> if response.ok:
        ...     data = json.loads(response.body)
    """

    status_code: int
    body: str
    headers: Mapping[str, str] = field(default_factory=dict, repr=False)

    @property
    def ok(self) -> bool:
        """Return True if status_code is below 400."""
        return 200 <= self.status_code < 400


@dataclass(frozen=True)
class ResponseOutcome:
    """
    Decision taken for a single transport response.

    Attributes:
        allow: False means "do not surface to the caller, the request was re-queued".
        status_code: The HTTP status code that led to this decision.
    """

    allow: bool
    status_code: int


@dataclass(frozen=True)
class WindowState:
    """
    Snapshot of the admission gate for the current rate-limit window.

    Attributes:
        remaining: Permits left in the current window.
        first_response_seen: Whether the first response of the window already
            calibrated the gate.
        overflow_clock_started: Whether a 429 already scheduled the reset of
            this window.
    """

    remaining: int
    first_response_seen: bool = False
    overflow_clock_started: bool = False


@dataclass(eq=False)
class PendingRequest:
    """
    A request waiting to be sent, or in flight.

    The request is owned by exactly one component at a time (queue, dispatcher
    or send worker). The only state shared with the caller is the completion
    future: cancelling the future is how a caller cancels the request, and
    `Future` guards its state with its own lock.

    Attributes:
        url: Full URL to GET.
        authenticated: Whether the API key must be attached.
        completion: Future handed to the caller. Completed at most once.
        id: Unique identifier used for logging.
        attempts: How many times the request was handed to the transport.
        window_id: Window its current permit was taken from (None until admitted).
    """

    url: str
    authenticated: bool = False
    completion: Future[ApiResponse] = field(default_factory=Future)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    attempts: int = 0
    window_id: int | None = None

    def __post_init__(self) -> None:
        assert self.url, "Request URL can not be empty."
        assert self.completion is not None, "Request completion can not be None."

    @property
    def canceled(self) -> bool:
        """Return True if the caller cancelled the completion future."""
        return self.completion.cancelled()

    def cancel(self) -> bool:
        """Cancel the request (same as cancelling its future)."""
        return self.completion.cancel()

    def succeed(self, response: ApiResponse) -> bool:
        """
        Complete the request with a response.

        Returns:
            False when the caller already detached (future cancelled),
            True otherwise.
        """
        try:
            self.completion.set_result(response)
            return True
        except InvalidStateError:
            logger.debug(f"{self.id[:26]:<26} | Request | Response discarded, request was already canceled or completed.")
            return False

    def fail(self, error: BaseException) -> bool:
        """
        Complete the request with a failure.

        Returns:
            False when the caller already detached (future cancelled),
            True otherwise.
        """
        try:
            self.completion.set_exception(error)
            return True
        except InvalidStateError:
            logger.debug(f"{self.id[:26]:<26} | Request | Failure discarded, request was already canceled or completed: {error}")
            return False
