"""
Utility functions for the apipacer package.

These functions are not part of the public API and may change without notice.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping

logger = logging.getLogger(__name__)


def read_int_header(headers: Mapping[str, str] | None, name: str, default: int) -> int:
    """
    Read an integer response header, falling back to a default.

    Missing headers, empty values and values that are not integers all
    yield `default`. Lookup relies on the mapping for case-insensitivity
    (e.g. `requests.structures.CaseInsensitiveDict`).

    Args:
        headers: Response headers.
        name: Header name (e.g. "ratelimit-remaining").
        default: Value returned when the header is absent or invalid.

    Returns:
        The parsed header value, or `default`.

    Example:
        >>> read_int_header({"ratelimit-reset": "42"}, "ratelimit-reset", 10)
        42
        >>> read_int_header({"ratelimit-reset": "soon"}, "ratelimit-reset", 10)
        10
    """
    if not headers:
        return default

    raw_value = headers.get(name)
    if raw_value is None or str(raw_value).strip() == "":
        return default

    try:
        return int(str(raw_value).strip())
    except ValueError:
        logger.debug(f"Ignoring invalid `{name}` header value: {raw_value!r} (using {default})")
        return default
