"""Time unit conversions shared by the metrics services."""

SECONDS_PER_MINUTE = 60
SECONDS_PER_HOUR = 3600
HOURS_PRECISION = 2


def seconds_to_hours(seconds: float, precision: int = HOURS_PRECISION) -> float:
    """Convert a second count to hours, rounded for display."""
    return round(seconds / SECONDS_PER_HOUR, precision)


def format_duration(seconds: float) -> str:
    """Format seconds as zero-padded ``HH:MMh``."""
    hours = int(seconds // SECONDS_PER_HOUR)
    minutes = int((seconds % SECONDS_PER_HOUR) // SECONDS_PER_MINUTE)
    return f"{hours:02d}:{minutes:02d}h"
