"""Time helpers shared by the stores."""

from datetime import datetime, timedelta, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Timezone-aware current UTC time (staged orders, journal entries)."""
    return datetime.now(timezone.utc)


def utcnow_naive() -> datetime:
    """Naive UTC time, the representation used by permanent-store columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def backoff_delay(base_delay: float, attempts: int) -> timedelta:
    """Exponential backoff: base_delay * 2^(attempts-1), where attempts counts tries so far."""
    return timedelta(seconds=base_delay * (2 ** max(attempts - 1, 0)))
