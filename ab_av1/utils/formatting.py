"""
Human-readable formatting helpers shared by the CLI and log messages.
"""

import math


def terse_float(value: float) -> str:
    """Format a float without trailing zeros: 32.0 -> "32", 32.5 -> "32.5"."""
    text = f"{value:.4f}".rstrip('0').rstrip('.')
    return text if text not in ("", "-0") else "0"


def round_half_away(value: float) -> int:
    """Round to nearest integer with halves rounded away from zero."""
    if value < 0:
        return -int(math.floor(-value + 0.5))
    return int(math.floor(value + 0.5))


def format_size(bytes_size: int) -> str:
    """Convert bytes to human readable format ("500 B", "1.50 KiB", "2.00 GiB")."""
    negative = bytes_size < 0
    size = float(abs(bytes_size))
    units = ['B', 'KiB', 'MiB', 'GiB', 'TiB', 'PiB']
    unit_index = 0
    while unit_index < len(units) - 1 and size >= 1024.0:
        size /= 1024.0
        unit_index += 1
    unit = units[unit_index]
    if unit == 'B':
        formatted = f"{int(size)} {unit}"
    else:
        formatted = f"{size:.2f} {unit}"
    return f"-{formatted}" if negative else formatted


def format_duration(seconds: float) -> str:
    """Format duration in seconds to a human-readable string"""
    if seconds < 60:
        return f"{seconds:.0f} seconds" if seconds >= 1 else f"{seconds:.2f} seconds"
    elif seconds < 3600:
        return f"{seconds / 60:.0f} minutes"
    else:
        hours = int(seconds // 3600)
        minutes = int((seconds % 3600) // 60)
        return f"{hours} hours {minutes} minutes"
