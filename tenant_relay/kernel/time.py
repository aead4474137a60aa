from __future__ import annotations

import time
from datetime import datetime, timezone

UTC = timezone.utc


def utc_now() -> datetime:
    """Return a tz-aware UTC timestamp."""
    return datetime.now(UTC)


def epoch_seconds() -> int:
    """Current time as whole epoch seconds.

    Credential expiry is stored in this unit.
    """
    return int(time.time())


def from_epoch(value: int) -> datetime:
    return datetime.fromtimestamp(int(value), tz=UTC)

