from __future__ import annotations

from typing import Final

_TRUTHY_ENV: Final[frozenset[str]] = frozenset({"1", "true", "yes", "on"})
_FALSY_ENV: Final[frozenset[str]] = frozenset({"0", "false", "no", "off"})


def parse_bool(value: object) -> bool | None:
    """Parse a bool-like value. Returns None when the text is not recognised."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    text = str(value).strip().lower()
    if text in _TRUTHY_ENV:
        return True
    if text in _FALSY_ENV:
        return False
    return None
