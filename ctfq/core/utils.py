"""
CTFQ Utilities
Common utilities for timing, unit conversion and JSON output.
"""

import json
import time
from pathlib import Path
from typing import Any, Union
import logging

logger = logging.getLogger(__name__)

NS_PER_SEC = 1_000_000_000


def get_monotonic_ns() -> int:
    """Get monotonic clock time in nanoseconds."""
    return time.monotonic_ns()


def ns_to_ms(ns: int) -> float:
    """Convert nanoseconds to milliseconds."""
    return ns / 1_000_000


def ns_to_us(ns: int) -> float:
    """Convert nanoseconds to microseconds."""
    return ns / 1_000


def format_duration_ns(ns: float) -> str:
    """Format a nanosecond duration in a human-readable way."""
    if ns < 1_000:
        return f"{ns:.0f} ns"
    elif ns < 1_000_000:
        return f"{ns_to_us(ns):.2f} us"
    elif ns < NS_PER_SEC:
        return f"{ns_to_ms(ns):.2f} ms"
    else:
        return f"{ns / NS_PER_SEC:.2f} s"


def safe_json_dump(data: Any, path: Union[str, Path], indent: int = 2) -> None:
    """Safely write JSON to file with atomic write pattern."""
    path = Path(path)
    temp_path = path.with_suffix(path.suffix + ".tmp")

    try:
        with open(temp_path, "w") as f:
            json.dump(data, f, indent=indent, default=str)
        temp_path.replace(path)
    except OSError as e:
        logger.error(f"Failed to write JSON to {path}: {e}")
        if temp_path.exists():
            temp_path.unlink()
        raise


class Timer:
    """Context manager for timing code blocks."""

    def __init__(self, name: str = ""):
        self.name = name
        self.start_ns = 0
        self.end_ns = 0
        self.duration_ns = 0
        self.duration_ms = 0.0

    def __enter__(self) -> "Timer":
        self.start_ns = get_monotonic_ns()
        return self

    def __exit__(self, *args) -> None:
        self.end_ns = get_monotonic_ns()
        self.duration_ns = self.end_ns - self.start_ns
        self.duration_ms = ns_to_ms(self.duration_ns)

        if self.name:
            logger.debug(f"{self.name}: {self.duration_ms:.2f} ms")
