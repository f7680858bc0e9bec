"""Formatting utilities for consistent output across CLI and console logs."""

_UNITS = ("kB", "MB", "GB", "TB")


def format_kb(kb: int | float) -> str:
    """Format a kilobyte count for humans.

    Returns:
        - Under 1024 kB: "512kB"
        - Larger values: one decimal in the largest fitting unit, e.g. "1.5MB"
    """
    value = float(kb)
    unit = _UNITS[0]
    for unit in _UNITS:
        if abs(value) < 1024 or unit == _UNITS[-1]:
            break
        value /= 1024
    if unit == _UNITS[0]:
        return f"{int(value)}{unit}"
    return f"{value:.1f}{unit}"


def truncate(text: str, width: int) -> str:
    """Shorten text to width characters, marking the cut with '..'."""
    if len(text) <= width:
        return text
    return text[: max(width - 2, 0)] + ".."
