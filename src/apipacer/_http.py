"""
HTTP transport abstraction for the apipacer dispatcher.

The dispatcher never talks to the network itself: it hands each admitted
request to an HttpTransport, which performs a single GET and returns the raw
`requests.Response` (status code, case-insensitive headers, body).

Available implementations:
    - RequestsHttpTransport: Performs the GET with `requests`. Default.

Example:
    >>> from apipacer._http import RequestsHttpTransport
    >>> transport = RequestsHttpTransport()
    >>> response = transport.get("https://api.example.com/v2/status", timeout=10)
"""

import logging
from abc import ABC, abstractmethod
from typing import override

import requests

logger = logging.getLogger(__name__)


class HttpTransport(ABC):
    """
    Abstract base class for HTTP transports.

    Implementations must be thread-safe: several sends can be in flight at
    the same time. Any exception raised is reported to the caller of the
    request as a transport failure and is not retried.

    Example:
        >>> class StaticTransport(HttpTransport):
        ...     def get(self, url, headers=None, timeout=30):
        ...         return requests.get(url, headers=headers, timeout=timeout)
    """

    @abstractmethod
    def get(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        timeout: float = 30,
    ) -> requests.Response:
        """
        Execute a single GET request.

        Args:
            url: The full URL to request.
            headers: Headers to include (credential headers when authenticated).
            timeout: Request timeout in seconds.

        Returns:
            The HTTP response, whatever its status code.

        Raises:
            requests.RequestException: If the HTTP request fails.
        """
        pass


class RequestsHttpTransport(HttpTransport):
    """
    HTTP transport backed by `requests`.

    Non-2xx responses are returned as-is (no `raise_for_status()`): the
    dispatcher needs 429 responses and their headers.

    Args:
        default_headers: Headers sent with every request (e.g. User-Agent).
    """

    def __init__(self, default_headers: dict[str, str] | None = None):
        self.default_headers = dict(default_headers or {})

    @override
    def get(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        timeout: float = 30,
    ) -> requests.Response:
        """
        Execute a GET request.

        Raises:
            AssertionError: If url is empty or timeout is invalid.
            requests.RequestException: If the HTTP request fails.
        """
        assert url, "URL cannot be empty."
        assert timeout is not None, "Timeout cannot be None."
        assert timeout > 0, "Timeout must be greater than 0."

        merged_headers = {**self.default_headers, **(headers or {})}

        return requests.get(
            url,
            headers=merged_headers,
            timeout=timeout,
        )
