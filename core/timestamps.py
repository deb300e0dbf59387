"""Timezone-aware UTC timestamp utilities.

All backend code should use these helpers instead of datetime.utcnow()
or datetime.now(). Persisted telemetry rows carry integer epoch
milliseconds; everything that is published or returned over HTTP is an
ISO 8601 string with a +00:00 offset.
"""

import time
from datetime import datetime, timezone
from typing import Optional, Union


def now() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""
    return datetime.now(timezone.utc)


def isonow() -> str:
    """Return the current UTC time as an ISO 8601 string with +00:00 offset."""
    return now().isoformat()


def epoch_ms(seconds: Optional[Union[int, float]] = None) -> int:
    """Epoch seconds (collector format) -> integer epoch milliseconds.

    With no argument, returns the current time.
    """
    if seconds is None:
        seconds = time.time()
    return int(float(seconds) * 1000)


def from_epoch_ms(ms: Union[int, float]) -> datetime:
    """Epoch milliseconds -> aware UTC datetime."""
    return datetime.fromtimestamp(float(ms) / 1000, tz=timezone.utc)
