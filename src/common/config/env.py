"""Typed environment variable parsing helpers.

Strict readers (``get_env_*``) raise ``ValueError`` on malformed values.
Tunables use ``safe_env_int``/``safe_env_float``, which fall back to the
default and clamp to a floor instead.
"""

import os
from typing import Callable, List, Optional, TypeVar

T = TypeVar("T")

_BOOL_WORDS = {
    "true": True,
    "1": True,
    "yes": True,
    "on": True,
    "false": False,
    "0": False,
    "no": False,
    "off": False,
    "": False,
}


def _lookup(name: str, required: bool) -> Optional[str]:
    value = os.environ.get(name)
    if value is None and required:
        raise KeyError(f"Environment variable '{name}' is required but not set.")
    return value


def _typed(
    name: str,
    default: Optional[T],
    required: bool,
    convert: Callable[[str], T],
    kind: str,
) -> Optional[T]:
    value = _lookup(name, required)
    if value is None:
        return default
    try:
        return convert(value)
    except ValueError:
        raise ValueError(f"Environment variable '{name}' must be {kind}, got '{value}'.")


def get_env_str(name: str, default: Optional[str] = None, required: bool = False) -> Optional[str]:
    """Get an environment variable as a string."""
    return _typed(name, default, required, str, "a string")


def get_env_int(name: str, default: Optional[int] = None, required: bool = False) -> Optional[int]:
    """Get an environment variable as an integer."""
    return _typed(name, default, required, int, "an integer")


def get_env_float(
    name: str, default: Optional[float] = None, required: bool = False
) -> Optional[float]:
    """Get an environment variable as a float."""
    return _typed(name, default, required, float, "a float")


def _parse_bool(value: str) -> bool:
    key = value.strip().lower()
    if key not in _BOOL_WORDS:
        raise ValueError(value)
    return _BOOL_WORDS[key]


def get_env_bool(
    name: str, default: Optional[bool] = None, required: bool = False
) -> Optional[bool]:
    """Get an environment variable as a boolean.

    Truthy: true, 1, yes, on
    Falsey: false, 0, no, off, (empty string)
    """
    return _typed(name, default, required, _parse_bool, "a boolean")


def get_env_list(
    name: str, default: Optional[List[str]] = None, required: bool = False, separator: str = ","
) -> Optional[List[str]]:
    """Get an environment variable as a list of non-empty, trimmed strings."""

    def split(value: str) -> List[str]:
        return [item.strip() for item in value.split(separator) if item.strip()]

    return _typed(name, default, required, split, "a list")


def safe_env_int(name: str, default: int, minimum: int = 0) -> int:
    """Integer tunable: bad or missing input gives ``default``; never below ``minimum``."""
    try:
        value = get_env_int(name, default)
    except ValueError:
        value = default
    return max(minimum, int(default if value is None else value))


def safe_env_float(name: str, default: float, minimum: float = 0.0) -> float:
    """Float tunable with the same fallback rules as ``safe_env_int``."""
    try:
        value = get_env_float(name, default)
    except ValueError:
        value = default
    return max(minimum, float(default if value is None else value))


def is_production() -> bool:
    """Return True when APP_ENV names a production deployment."""
    return (get_env_str("APP_ENV", "development") or "").strip().lower() in ("production", "prod")
