"""
Helper functions for formatting data into human-readable strings.
"""

from datetime import datetime


def format_size(bytes_size: int) -> str:
    """Formats bytes into a human-readable size string (e.g., '145.3 MB')."""
    if bytes_size <= 0:
        return "0 B"
    units = ["B", "KB", "MB", "GB", "TB"]
    i = 0
    while bytes_size >= 1024 and i < len(units) - 1:
        bytes_size /= 1024
        i += 1
    return f"{bytes_size:.1f} {units[i]}"


def format_duration(seconds: float) -> str:
    """
    Formats a duration in seconds into a human-readable string (e.g., '2h 34m 12s').

    Durations of a day or more are shown in days and hours.
    """
    s = int(seconds)
    days, s = divmod(s, 86400)
    hours, remainder = divmod(s, 3600)
    minutes, secs = divmod(remainder, 60)
    if days > 0:
        return f"{days}d {hours}h" if hours else f"{days}d"
    parts = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if secs > 0 or not parts:
        parts.append(f"{secs}s")
    return " ".join(parts)


def format_timestamp(posix_seconds: float) -> str:
    """Formats a POSIX timestamp as local time, e.g. '2024-05-01 13:37'."""
    return datetime.fromtimestamp(posix_seconds).strftime("%Y-%m-%d %H:%M")


def format_age(posix_seconds: float, now: float) -> str:
    """Formats how long ago a timestamp was, e.g. '3d 4h ago'."""
    return f"{format_duration(max(0.0, now - posix_seconds))} ago"
