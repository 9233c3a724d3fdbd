"""Utilities to normalize package names and display colours."""

from __future__ import annotations

import re
from typing import Optional

_PACKAGE_PATTERN = re.compile(r"^[a-z][a-z0-9_]*(\.[a-z0-9_]+)+$")
_HEX_COLOR_PATTERN = re.compile(r"^#?([0-9a-fA-F]{6}|[0-9a-fA-F]{8})$")

# Launcher activity suffixes some usage sources append to the package.
_ACTIVITY_SUFFIXES: tuple[str, ...] = ("/.MainActivity", "/.Launcher")


def normalize_package_name(value: Optional[str]) -> Optional[str]:
    """Lower-case and strip a package name; None when nothing usable remains."""
    if value is None:
        return None
    normalized = value.strip()
    for suffix in _ACTIVITY_SUFFIXES:
        if normalized.endswith(suffix):
            normalized = normalized[: -len(suffix)]
            break
    normalized = normalized.split("/", 1)[0].lower()
    return normalized or None


def is_valid_package_name(value: str) -> bool:
    return bool(_PACKAGE_PATTERN.match(value))


def normalize_color(value: Optional[str]) -> Optional[str]:
    """Return ``#RRGGBB`` / ``#AARRGGBB`` in upper case, or None if malformed."""
    if not value:
        return None
    match = _HEX_COLOR_PATTERN.match(value.strip())
    if not match:
        return None
    return f"#{match.group(1).upper()}"
