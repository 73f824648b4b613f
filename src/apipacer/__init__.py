"""
apipacer: rate-limited HTTP dispatcher for Python.

Sends GET requests to an API that enforces a fixed-window quota and reports
it through `ratelimit-remaining` / `ratelimit-reset` response headers. The
quota is learned from the first response of every window instead of being
configured, and HTTP 429 responses are retried transparently once the
window resets.

Quick Start:
    >>> from apipacer import RateLimitedApiClient
    >>> with RateLimitedApiClient(api_key="0f3e9b2c-7a61-4d2e-9c1f-2b8a5d6e7f10") as client:
    ...     futures = [client.submit_authenticated(url) for url in urls]
    ...     responses = [f.result() for f in futures]

Global Configuration:
    >>> from apipacer import APIPACER
    >>>
    >>> # Pre-loaded with defaults + env vars
    >>> delay = APIPACER.config.dispatcher.min_delay_between_requests
    >>>
    >>> # Custom configuration
    >>> APIPACER.configure(
    ...     auth={"api_key": "my-key"},
    ...     dispatcher={"min_delay_between_requests": 10, "buffer_capacity": 1000},
    ...     window={"reset_margin": 1.5},
    ... )

Main Classes:
    - RateLimitedApiClient: Thread-safe client returning futures of ApiResponse.
    - ApiResponse: Response surfaced to the caller (status code, body, headers).
    - WindowState: Snapshot of the current rate-limit window.

Configuration:
    - APIPACER: Global singleton for configuration.
    - ApiPacerConfig: Root configuration dataclass.
    - AuthConfig: API key configuration.
    - DispatcherConfig: Pacing, buffering and timeout configuration.
    - WindowConfig: Rate-limit window fallbacks and margins.
    - ConfigEntry: A configuration value with its source.
    - ConfigEnvVarError: Exception raised when env var parsing fails.
    - ConfigValidationError: Exception raised when config validation fails.

Authentication:
    - AuthProvider: Abstract base class for credential providers.
    - ApiKeyAuthProvider: Static API key sent in a request header.
    - AuthenticationError: Exception raised when no credential is available.
    - create_auth_provider: Helper to create the provider from config.

HTTP Transport:
    - HttpTransport: Abstract base class for HTTP transports.
    - RequestsHttpTransport: Transport backed by `requests`. Default.

Dispatch internals:
    - RequestQueue: Bounded FIFO buffer of pending requests.
    - AdmissionGate: Permits left in the current window.
    - ResetScheduler: One-shot timer restoring the probe permit.
    - ResponseClassifier: Applies status and `ratelimit-*` headers to the window.
    - Dispatcher: Single-consumer loop admitting requests in FIFO order.
    - ClientClosedError: Exception raised when submitting to a shut down client.

Event Listeners:
    - DispatchEventListener: Base class for observing dispatcher events.
    - LoggingDispatchListener: Reports dispatcher events through `logging`.
"""

from importlib.metadata import version as _get_version

__version__ = _get_version("apipacer")

from apipacer._auth import (
    ApiKeyAuthProvider,
    AuthenticationError,
    AuthProvider,
    create_auth_provider,
)
from apipacer._client import RateLimitedApiClient
from apipacer._config import (
    APIPACER,
    ApiPacerConfig,
    AuthConfig,
    ConfigEntry,
    ConfigEnvVarError,
    ConfigValidationError,
    DispatcherConfig,
    SdkConfig,
    WindowConfig,
)
from apipacer._dispatcher import Dispatcher
from apipacer._event_listeners import (
    DispatchEventListener,
    LoggingDispatchListener,
)
from apipacer._http import (
    HttpTransport,
    RequestsHttpTransport,
)
from apipacer._models import (
    ApiResponse,
    PendingRequest,
    ResponseOutcome,
    WindowState,
)
from apipacer._queue import (
    ClientClosedError,
    RequestQueue,
)
from apipacer._rate_limit import (
    AdmissionGate,
    RateLimitHeaders,
    ResetScheduler,
    ResponseClassifier,
)

__all__ = [
    "__version__",
    # Client
    "RateLimitedApiClient",
    "ApiResponse",
    "WindowState",
    "ClientClosedError",
    # Configuration
    "APIPACER",
    "ApiPacerConfig",
    "SdkConfig",
    "ConfigEntry",
    "ConfigEnvVarError",
    "ConfigValidationError",
    "AuthConfig",
    "DispatcherConfig",
    "WindowConfig",
    # Authentication
    "AuthProvider",
    "ApiKeyAuthProvider",
    "AuthenticationError",
    "create_auth_provider",
    # HTTP Transport
    "HttpTransport",
    "RequestsHttpTransport",
    # Dispatch internals
    "PendingRequest",
    "ResponseOutcome",
    "RequestQueue",
    "AdmissionGate",
    "ResetScheduler",
    "RateLimitHeaders",
    "ResponseClassifier",
    "Dispatcher",
    # Event Listeners
    "DispatchEventListener",
    "LoggingDispatchListener",
]
