"""Formatting utilities for display."""
from datetime import datetime, timezone


def format_value(value, unit=None, decimals=2):
    """Format a metric value with thousands separators and its unit."""
    if value is None:
        return "N/A"
    value = float(value)
    if value.is_integer() and abs(value) < 1e15:
        text = f"{int(value):,}"
    else:
        text = f"{value:,.{decimals}f}"
    if not unit:
        return text
    if unit == "%":
        return f"{text}%"
    return f"{text} {unit}"


def format_tags(tags):
    """Render a tag mapping as 'k=v, k2=v2' (sorted), or '-' when empty."""
    if not tags:
        return "-"
    return ", ".join(f"{k}={v}" for k, v in sorted(tags.items()))


def format_duration(seconds):
    """Format seconds compactly: 90 → '1m30s', 86400 → '1d'."""
    if seconds is None:
        return "N/A"
    seconds = int(seconds)
    if seconds < 60:
        return f"{seconds}s"
    parts = []
    for size, suffix in ((86400, "d"), (3600, "h"), (60, "m"), (1, "s")):
        if seconds >= size:
            count, seconds = divmod(seconds, size)
            parts.append(f"{count}{suffix}")
    return "".join(parts)


def format_timestamp(ts):
    """Format a datetime to human-readable string."""
    if ts is None:
        return "N/A"
    if isinstance(ts, str):
        return ts
    return ts.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


def time_ago(dt):
    """Return human-readable time since dt. E.g., '3h ago', '2d ago'."""
    if dt is None:
        return "N/A"
    now = datetime.now(timezone.utc)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    delta = now - dt
    seconds = int(delta.total_seconds())

    if seconds < 60:
        return f"{seconds}s ago"
    elif seconds < 3600:
        return f"{seconds // 60}m ago"
    elif seconds < 86400:
        return f"{seconds // 3600}h ago"
    else:
        return f"{seconds // 86400}d ago"


def parse_tag_args(pairs):
    """Parse ('k=v', ...) CLI arguments into a dict."""
    tags = {}
    for pair in pairs or ():
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise ValueError(f"Tag must look like key=value: {pair!r}")
        tags[key.strip()] = value.strip()
    return tags
