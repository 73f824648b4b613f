"""
Credential providers for authenticated requests.

The dispatcher only attaches a credential to requests submitted as
authenticated; it never inspects or refreshes it.

The main classes are:
- AuthProvider: Abstract base class for credential providers.
- ApiKeyAuthProvider: Sends a static API key in a request header.

Example:
    >>> from apipacer._auth import ApiKeyAuthProvider
    >>> auth = ApiKeyAuthProvider(api_key="0f3e9b2c-7a61-4d2e-9c1f-2b8a5d6e7f10")
    >>> auth.get_auth_headers()
    {'API-Key': '0f3e9b2c-7a61-4d2e-9c1f-2b8a5d6e7f10'}
"""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, override

if TYPE_CHECKING:
    from apipacer._config import AuthConfig


# =============================================================================
# Exceptions
# =============================================================================


class AuthenticationError(Exception):
    """
    Raised when an authenticated request can't be prepared.

    Attributes:
        message: Description of the failure.
        cause: The underlying exception, if any.

    Example:
        >>> try:
        ...     client.submit_authenticated(url)
        ... except AuthenticationError as e:
        ...     print(f"Auth failed: {e}")
    """

    def __init__(self, message: str, cause: Exception | None = None):
        super().__init__(message)
        self.message = message
        self.cause = cause


# =============================================================================
# Abstract Base Class
# =============================================================================


class AuthProvider(ABC):
    """
    Abstract base class for credential providers.

    Implementations must be thread-safe: headers are requested from the
    send threads.

    Example:
        >>> class BearerAuthProvider(AuthProvider):
        ...     def get_auth_headers(self) -> dict[str, str]:
        ...         return {"Authorization": "Bearer my-token"}
    """

    @abstractmethod
    def get_auth_headers(self) -> dict[str, str]:
        """
        Return the headers carrying the credential.

        Raises:
            AuthenticationError: If the credential is unavailable.
        """
        pass


# =============================================================================
# Implementations
# =============================================================================


class ApiKeyAuthProvider(AuthProvider):
    """
    Static API key sent in a request header.

    Attributes:
        DEFAULT_HEADER_NAME: Header used when none is given ("API-Key").

    Args:
        api_key: The key. UUIDs are accepted and sent in their canonical form.
        header_name: Header carrying the key.
    """

    DEFAULT_HEADER_NAME = "API-Key"

    def __init__(self, api_key: str | uuid.UUID, header_name: str = DEFAULT_HEADER_NAME):
        assert api_key, "api_key cannot be empty"
        assert header_name, "header_name cannot be empty"

        self._api_key = str(api_key)
        self.header_name = header_name

    @override
    def get_auth_headers(self) -> dict[str, str]:
        return {self.header_name: self._api_key}

    def __repr__(self) -> str:
        return f"ApiKeyAuthProvider(header_name={self.header_name!r}, api_key='********{self._api_key[-4:]}')"


# =============================================================================
# Helper Functions
# =============================================================================


def create_auth_provider(
    api_key: str | uuid.UUID | None = None,
    config: AuthConfig | None = None,
) -> ApiKeyAuthProvider | None:
    """
    Create an ApiKeyAuthProvider from an explicit key or from configuration.

    Args:
        api_key: Explicit key; takes precedence over configuration.
        config: Optional AuthConfig. If None, uses APIPACER.config.auth.

    Returns:
        The provider, or None when no API key is available (only
        unauthenticated requests can be sent then).

    Example:
        >>> from apipacer import APIPACER
        >>> APIPACER.configure(auth={"api_key": "my-key"})
        >>> auth = create_auth_provider()
    """
    if config is None:
        from apipacer._config import APIPACER

        config = APIPACER.config.auth

    key = api_key or config.api_key
    if not key:
        return None

    return ApiKeyAuthProvider(api_key=key, header_name=config.header_name)
