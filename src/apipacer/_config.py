"""
Global configuration for the apipacer package.

This module provides a simple configuration system following Convention over Configuration (CoC).
Users can optionally call APIPACER.configure() at application startup to customize defaults.
If not called, sensible defaults are used.

Hierarchy of precedence (highest to lowest):
1. Arguments passed to RateLimitedApiClient
2. Values set via APIPACER.configure()
3. Environment variables (APIPACER_*) - when allow_env_override=True
4. Hardcoded defaults (in dataclass fields)

Example:
    >>> from apipacer import APIPACER
    >>>
    >>> # Pre-loaded with defaults + env vars
    >>> delay = APIPACER.config.dispatcher.min_delay_between_requests
    >>>
    >>> # Custom configuration
    >>> APIPACER.configure(
    ...     auth={"api_key": "my-key"},
    ...     dispatcher={"buffer_capacity": 1000},
    ... )
"""

from __future__ import annotations

import os
from collections.abc import Callable
from dataclasses import dataclass, field, fields, replace
from functools import wraps
from typing import Any, Self

# Sections tracked by the configuration tracker and shown by explain()
_SECTIONS = ("auth", "dispatcher", "window")


# =============================================================================
# Exceptions
# =============================================================================


class ConfigEnvVarError(ValueError):
    """Raised when an environment variable has an invalid value."""

    def __init__(
        self,
        env_var: str,
        value: str,
        expected_type: str,
        cause: Exception | None = None,
    ):
        self.env_var = env_var
        self.value = value
        self.expected_type = expected_type
        super().__init__(f"Invalid value for {env_var}: '{value}' (expected {expected_type})")
        self.__cause__ = cause


class ConfigValidationError(ValueError):
    """Raised when a configuration value fails validation."""

    def __init__(
        self,
        field: str,
        value: Any,
        message: str,
        section: str | None = None,
    ):
        self.field = field
        self.value = value
        self.section = section
        prefix = f"[{section}] " if section else ""
        super().__init__(f"{prefix}Invalid value for '{field}': {value!r}. {message}")


# =============================================================================
# Environment Variables
# =============================================================================


class EnvVars:
    """
    Utility class for reading environment variables with type conversion.

    Example:
        >>> EnvVars.get("APIPACER_DISPATCHER_BUFFER_CAPACITY", type_hint=int)
        500
        >>> EnvVars.get("UNDEFINED_VAR")
        None
    """

    @staticmethod
    def get(
        var_name: str,
        type_hint: Any = str,
        converter: Callable[[str], Any] | None = None,
    ) -> Any:
        """
        Read an environment variable with optional type conversion.

        Args:
            var_name: The environment variable name.
            type_hint: Type hint used to infer the converter (ignored if converter is provided).
            converter: Custom converter function (takes precedence over type_hint).

        Returns:
            The converted value, or None if env var is not set/empty.

        Raises:
            ConfigEnvVarError: If the value cannot be converted.
        """
        raw_value = os.environ.get(var_name)
        if not raw_value:  # None or empty string
            return None

        actual_converter = converter or EnvVars._infer_converter(type_hint)
        try:
            return actual_converter(raw_value)
        except (ValueError, TypeError) as e:
            raise ConfigEnvVarError(
                env_var=var_name,
                value=raw_value,
                expected_type=type_hint.__name__ if hasattr(type_hint, "__name__") else str(type_hint),
                cause=e,
            ) from e

    @staticmethod
    def _infer_converter(type_hint: Any) -> Callable[[str], Any]:
        """
        Infer converter function from type hint.

        Handles both actual types and string annotations (PEP 563).
        """
        type_str = str(type_hint)

        if type_hint is int or type_str == "int":
            return int
        if type_hint is float or type_str == "float":
            return float
        if type_hint is bool or type_str == "bool":
            return lambda v: v.lower() in ("true", "1", "yes")
        return str


# =============================================================================
# Base Class
# =============================================================================


@dataclass(frozen=True)
class OverridableConfig:
    """
    Base class for immutable configuration dataclasses.

    Provides `.with_overrides()` and `.with_env_vars()` for creating new
    instances with partial field updates. Unknown field names are rejected
    so typos surface early.

    Example:
        >>> config = DispatcherConfig()
        >>> custom = config.with_overrides({"buffer_capacity": 1000})
        >>> custom.buffer_capacity
        1000
    """

    def with_overrides(
        self,
        overrides: dict[str, Any],
        allow_none_fields: set[str] | None = None,
    ) -> Self:
        """
        Return a new instance with specified fields overridden.

        Args:
            overrides: Dict of field names to new values.
                       Only existing fields are allowed.
            allow_none_fields: Set of field names that accept None as a valid value.
                       By default, None values are filtered out.

        Returns:
            New instance with updated values.

        Raises:
            ValueError: If overrides contains unknown field names.
        """
        if not overrides:
            return self

        valid_fields = {f.name for f in fields(self)}
        invalid_fields = set(overrides.keys()) - valid_fields

        if invalid_fields:
            raise ValueError(
                f"Unknown config fields: {invalid_fields}. "
                f"Valid fields are: {valid_fields}"
            )

        allow_none = allow_none_fields or set()
        filtered = {k: v for k, v in overrides.items() if v is not None or k in allow_none}
        return replace(self, **filtered) if filtered else self

    def with_env_vars(self) -> Self:
        """
        Return new instance with environment variables applied.

        Reads env vars declared in field metadata and applies them as overrides.

        Raises:
            ConfigEnvVarError: If an env var has an invalid value.
        """
        overrides: dict[str, Any] = {}
        for f in fields(self):
            env_var = f.metadata.get("env")
            if env_var:
                value = EnvVars.get(
                    var_name=env_var,
                    type_hint=f.type,
                    converter=f.metadata.get("converter"),
                )
                if value is not None:
                    overrides[f.name] = value
        return self.with_overrides(overrides)


# =============================================================================
# Configuration Dataclasses
# =============================================================================


@dataclass(frozen=True)
class SdkConfig:
    """
    Package metadata (read-only, not configurable).

    Attributes:
        version: The installed apipacer version.
    """

    version: str

    @classmethod
    def detect(cls) -> SdkConfig:
        """Detect package metadata from the runtime environment."""
        from apipacer import __version__

        return cls(version=__version__)


@dataclass(frozen=True)
class AuthConfig(OverridableConfig):
    """
    Credential attached to authenticated requests.

    Attributes:
        api_key: API key sent with authenticated requests.
            Env var: APIPACER_AUTH_API_KEY

        header_name: Request header carrying the API key.
            Env var: APIPACER_AUTH_HEADER_NAME

    Example:
        >>> from apipacer import APIPACER
        >>> if APIPACER.config.auth.has_api_key():
        ...     print("API key configured")
    """

    api_key: str | None = field(default=None, metadata={"env": "APIPACER_AUTH_API_KEY"})
    header_name: str = field(default="API-Key", metadata={"env": "APIPACER_AUTH_HEADER_NAME"})

    def has_api_key(self) -> bool:
        """Check if an API key is set."""
        return bool(self.api_key)

    def validate(self) -> Self:
        """Validate auth configuration fields."""
        if self.api_key is not None and self.api_key.strip() == "":
            raise ConfigValidationError(
                "api_key", self.api_key,
                "Must not be empty string.", section="auth"
            )
        if not self.header_name or self.header_name.strip() == "":
            raise ConfigValidationError(
                "header_name", self.header_name,
                "Must not be empty.", section="auth"
            )
        return self


@dataclass(frozen=True)
class DispatcherConfig(OverridableConfig):
    """
    Configuration for the request dispatcher.

    Attributes:
        min_delay_between_requests: Minimum time in milliseconds between two
            consecutive sends.
            Env var: APIPACER_DISPATCHER_MIN_DELAY_BETWEEN_REQUESTS

        buffer_capacity: Maximum number of requests waiting to be dispatched.
            Submitting to a full buffer blocks the caller.
            Env var: APIPACER_DISPATCHER_BUFFER_CAPACITY

        max_in_flight: Number of threads performing sends concurrently.
            Env var: APIPACER_DISPATCHER_MAX_IN_FLIGHT

        request_timeout: HTTP request timeout in seconds.
            Env var: APIPACER_DISPATCHER_REQUEST_TIMEOUT

    Example:
        >>> from apipacer import APIPACER
        >>> APIPACER.config.dispatcher.min_delay_between_requests
        8
        >>> APIPACER.config.dispatcher.buffer_capacity
        500
    """

    min_delay_between_requests: int = field(default=8, metadata={"env": "APIPACER_DISPATCHER_MIN_DELAY_BETWEEN_REQUESTS"})
    buffer_capacity: int = field(default=500, metadata={"env": "APIPACER_DISPATCHER_BUFFER_CAPACITY"})
    max_in_flight: int = field(default=16, metadata={"env": "APIPACER_DISPATCHER_MAX_IN_FLIGHT"})
    request_timeout: float = field(default=30.0, metadata={"env": "APIPACER_DISPATCHER_REQUEST_TIMEOUT"})

    def validate(self) -> Self:
        """Validate dispatcher configuration fields."""
        if self.min_delay_between_requests < 0:
            raise ConfigValidationError(
                "min_delay_between_requests", self.min_delay_between_requests,
                "Must be greater than or equal to 0.", section="dispatcher"
            )
        if self.buffer_capacity <= 0:
            raise ConfigValidationError(
                "buffer_capacity", self.buffer_capacity,
                "Must be greater than 0.", section="dispatcher"
            )
        if self.max_in_flight <= 0:
            raise ConfigValidationError(
                "max_in_flight", self.max_in_flight,
                "Must be greater than 0.", section="dispatcher"
            )
        if self.request_timeout <= 0:
            raise ConfigValidationError(
                "request_timeout", self.request_timeout,
                "Must be greater than 0.", section="dispatcher"
            )
        return self


@dataclass(frozen=True)
class WindowConfig(OverridableConfig):
    """
    Configuration for learning the server's rate-limit window.

    The quota itself is never configured: it is read from the
    `ratelimit-remaining` header of the first response of each window.
    These fields only control fallbacks and safety margins.

    Attributes:
        fallback_remaining: Quota assumed when `ratelimit-remaining` is missing or invalid.
            Env var: APIPACER_WINDOW_FALLBACK_REMAINING

        fallback_reset: Seconds until reset assumed when `ratelimit-reset` is missing or invalid.
            Env var: APIPACER_WINDOW_FALLBACK_RESET

        min_reset: Lower bound applied to the `ratelimit-reset` value.
            Env var: APIPACER_WINDOW_MIN_RESET

        reset_margin: Seconds added to every scheduled reset to absorb clock skew.
            Env var: APIPACER_WINDOW_RESET_MARGIN

        initial_permits: Permits available at the start of a window (the probe).
            Env var: APIPACER_WINDOW_INITIAL_PERMITS
    """

    fallback_remaining: int = field(default=110, metadata={"env": "APIPACER_WINDOW_FALLBACK_REMAINING"})
    fallback_reset: int = field(default=10, metadata={"env": "APIPACER_WINDOW_FALLBACK_RESET"})
    min_reset: int = field(default=1, metadata={"env": "APIPACER_WINDOW_MIN_RESET"})
    reset_margin: float = field(default=2.0, metadata={"env": "APIPACER_WINDOW_RESET_MARGIN"})
    initial_permits: int = field(default=1, metadata={"env": "APIPACER_WINDOW_INITIAL_PERMITS"})

    def validate(self) -> Self:
        """Validate window configuration fields."""
        if self.fallback_remaining < 0:
            raise ConfigValidationError(
                "fallback_remaining", self.fallback_remaining,
                "Must be greater than or equal to 0.", section="window"
            )
        if self.min_reset < 0:
            raise ConfigValidationError(
                "min_reset", self.min_reset,
                "Must be greater than or equal to 0.", section="window"
            )
        if self.fallback_reset < self.min_reset:
            raise ConfigValidationError(
                "fallback_reset", self.fallback_reset,
                f"Must be greater than or equal to min_reset ({self.min_reset}).", section="window"
            )
        if self.reset_margin < 0:
            raise ConfigValidationError(
                "reset_margin", self.reset_margin,
                "Must be greater than or equal to 0.", section="window"
            )
        if self.initial_permits <= 0:
            raise ConfigValidationError(
                "initial_permits", self.initial_permits,
                "Must be greater than 0.", section="window"
            )
        return self


# =============================================================================
# Source Tracking
# =============================================================================


@dataclass(frozen=True)
class ConfigEntry:
    """
    A configuration field with its resolved value and source.

    Attributes:
        name: The field name (e.g., "buffer_capacity").
        value: The resolved value.
        source: Where the value came from:
            - "default": Hardcoded default value
            - "env:VAR_NAME": Environment variable
            - "user": Set via APIPACER.configure()

    Example:
        >>> entry = ConfigEntry("buffer_capacity", 1000, "user")
        >>> entry.formatted_value
        '1000'
    """

    name: str
    value: Any
    source: str

    @property
    def formatted_value(self) -> str:
        """
        Return value formatted for display.

        Masks the API key showing only its last 4 characters, and truncates
        long strings.

        Examples:
            >>> ConfigEntry("api_key", "0f3e9b2c-7a61-4d2e", "user").formatted_value
            '********4d2e'
        """
        if self.name == "api_key" and self.value is not None:
            secret = str(self.value)
            if len(secret) >= 8:
                return f"********{secret[-4:]}"
            return "********"

        if self.value is None:
            return "None"

        str_value = str(self.value)
        max_length = 50
        if len(str_value) > max_length:
            return str_value[: max_length - 3] + "..."

        return str_value


@dataclass(frozen=True)
class ConfigTracker:
    """
    Tracks the source of config field values.

    Attributes:
        sources: Structure {"section": {"field": "source"}}.
    """

    sources: dict[str, dict[str, str]] = field(default_factory=dict)

    @staticmethod
    def track_changes(
        source_type: str,
    ) -> Callable[[Callable[..., ApiPacerConfig]], Callable[..., ApiPacerConfig]]:
        """
        Decorator that records which fields the decorated method touched.

        Args:
            source_type: Source label for tracking ("env" or "user").
        """

        def decorator(
            method: Callable[..., ApiPacerConfig],
        ) -> Callable[..., ApiPacerConfig]:
            @wraps(method)
            def wrapper(self: ApiPacerConfig, *args: Any, **kwargs: Any) -> ApiPacerConfig:
                new_config = method(self, *args, **kwargs)
                new_tracker = self._tracker.with_changes_tracked(
                    new_config, source_type, overrides=kwargs
                )
                return replace(new_config, _tracker=new_tracker)

            return wrapper

        return decorator

    def with_changes_tracked(
        self,
        new_config: ApiPacerConfig,
        source_type: str,
        overrides: dict[str, Any] | None = None,
    ) -> ConfigTracker:
        """Return new tracker with the fields touched by `source_type` recorded."""
        new_sources = {section: dict(flds) for section, flds in self.sources.items()}

        for section_name in _SECTIONS:
            section_config = getattr(new_config, section_name)
            section_sources = new_sources.setdefault(section_name, {})
            section_overrides = (overrides or {}).get(section_name) or {}

            for f in fields(section_config):
                if source_type == "env":
                    # Empty env vars are ignored, consistent with EnvVars.get
                    env_var = f.metadata.get("env")
                    if env_var and os.environ.get(env_var):
                        section_sources[f.name] = f"env:{env_var}"
                elif source_type == "user" and f.name in section_overrides:
                    section_sources[f.name] = source_type

        return ConfigTracker(sources={k: v for k, v in new_sources.items() if v})


@dataclass(frozen=True)
class ApiPacerConfig:
    """
    Global configuration for the apipacer package.

    Aggregates all configuration sections: sdk, auth, dispatcher and window.
    Access via the global `APIPACER.config` property.

    Example:
        >>> from apipacer import APIPACER
        >>> APIPACER.config.window.reset_margin
        2.0
        >>> APIPACER.config.auth.has_api_key()
        False
    """

    sdk: SdkConfig = field(default_factory=SdkConfig.detect)
    auth: AuthConfig = field(default_factory=AuthConfig)
    dispatcher: DispatcherConfig = field(default_factory=DispatcherConfig)
    window: WindowConfig = field(default_factory=WindowConfig)
    _tracker: ConfigTracker = field(default_factory=ConfigTracker, repr=False)

    @ConfigTracker.track_changes("env")
    def with_env_vars(self) -> ApiPacerConfig:
        """Return a new config with APIPACER_* environment variables applied on top."""
        return ApiPacerConfig(
            sdk=self.sdk,
            auth=self.auth.with_env_vars(),
            dispatcher=self.dispatcher.with_env_vars(),
            window=self.window.with_env_vars(),
        )

    @ConfigTracker.track_changes("user")
    def with_section_overrides(
        self,
        *,
        auth: dict[str, Any] | None = None,
        dispatcher: dict[str, Any] | None = None,
        window: dict[str, Any] | None = None,
    ) -> ApiPacerConfig:
        """
        Return a new config with overrides applied to nested sections.

        Each section dict is merged with the existing section config,
        only overriding the specified fields.
        """
        return ApiPacerConfig(
            sdk=self.sdk,
            auth=self.auth.with_overrides(auth or {}),
            dispatcher=self.dispatcher.with_overrides(dispatcher or {}),
            window=self.window.with_overrides(window or {}),
        )

    def explain_data(self) -> dict[str, list[ConfigEntry]]:
        """
        Return config data structured for explain output.

        Returns:
            Dict mapping section names to list of ConfigEntry objects.
        """
        result: dict[str, list[ConfigEntry]] = {
            "sdk": [
                ConfigEntry(name=f.name, value=getattr(self.sdk, f.name), source="-")
                for f in fields(self.sdk)
            ]
        }

        for section_name in _SECTIONS:
            section_config = getattr(self, section_name)
            section_sources = self._tracker.sources.get(section_name, {})
            result[section_name] = [
                ConfigEntry(
                    name=f.name,
                    value=getattr(section_config, f.name),
                    source=section_sources.get(f.name, "default"),
                )
                for f in fields(section_config)
            ]

        return result


# =============================================================================
# Global Configuration Singleton
# =============================================================================


class _APIPACER:
    """
    Singleton for package configuration.

    Use `APIPACER.configure()` to customize settings and `APIPACER.config`
    to access current configuration.

    Example:
        >>> from apipacer import APIPACER
        >>> APIPACER.configure(auth={"api_key": "..."})
        >>> print(APIPACER.config.dispatcher.buffer_capacity)
    """

    def __init__(self) -> None:
        """Initialize with defaults and environment variables."""
        self._config: ApiPacerConfig = ApiPacerConfig().with_env_vars()

    def configure(
        self,
        *,
        auth: dict[str, Any] | None = None,
        dispatcher: dict[str, Any] | None = None,
        window: dict[str, Any] | None = None,
        allow_env_override: bool = True,
    ) -> ApiPacerConfig:
        """
        Configure package settings.

        Call at application startup to customize defaults. Clients created
        afterwards pick up the new values.

        Args:
            auth: Auth config overrides (api_key, header_name).
            dispatcher: Dispatcher config overrides (delays, capacities, timeouts).
            window: Window config overrides (fallbacks, reset margin).
            allow_env_override: If True (default), env vars are used as fallback
                for fields NOT provided. If False, ignores env vars entirely.

        Returns:
            The configured ApiPacerConfig instance.

        Raises:
            ValueError: If any dict contains unknown field names.
            ConfigValidationError: If any config value fails validation.
        """
        base = ApiPacerConfig()
        if allow_env_override:
            base = base.with_env_vars()

        self._config = base.with_section_overrides(
            auth=auth,
            dispatcher=dispatcher,
            window=window,
        )

        return self.validate()

    @property
    def config(self) -> ApiPacerConfig:
        """Access current configuration (read-only)."""
        return self._config

    def reset(self) -> ApiPacerConfig:
        """
        Reset configuration to defaults + env vars.

        Useful for testing to ensure clean state between tests.
        """
        self._config = ApiPacerConfig().with_env_vars()
        return self.validate()

    def validate(self) -> ApiPacerConfig:
        """
        Validate current configuration.

        Raises:
            ConfigValidationError: If any config value is invalid.
        """
        self._config.auth.validate()
        self._config.dispatcher.validate()
        self._config.window.validate()
        return self._config

    def explain(
        self,
        output: Callable[[str], None] = print,
    ) -> None:
        """
        Print current configuration with sources.

        Args:
            output: Callable to output each line. Defaults to print.
                    Can be used with logging: `APIPACER.explain(logger.info)`
        """
        name_width = 30
        value_width = 50
        total_width = 2 + name_width + 2 + (value_width + 2) + 1 + 8

        output("APIPACER Configuration:")
        output("=" * total_width)
        output(f"  {'Field':<{name_width}} │ {'Value':<{value_width}} │ Source")
        output(f"--{'-' * name_width}-+{'-' * (value_width + 2)}+--------")

        for section_name, entries in self._config.explain_data().items():
            output(f"[{section_name}]")
            for entry in entries:
                dots = "." * (name_width - len(entry.name))
                value_padded = entry.formatted_value.ljust(value_width)
                marker = "✎" if entry.source not in ("default", "-") else " "
                output(f"  {entry.name} {dots} {value_padded} {marker} {entry.source}")

        output("=" * total_width)

    def __repr__(self) -> str:
        return f"APIPACER(config={self._config!r})"


# Global singleton instance - always reflects current configuration
APIPACER: _APIPACER = _APIPACER()
APIPACER.validate()
