"""Timezone helpers – provide a single UTC *now()* function.

Database columns are declared without timezone info, so everything that is
compared against a stored timestamp goes through :func:`utc_now_naive`.
"""

from datetime import datetime
from datetime import timezone


def utc_now() -> datetime:  # noqa: D401 – simple utility
    """Return *aware* current time in UTC."""

    return datetime.now(timezone.utc)


def utc_now_naive() -> datetime:  # noqa: D401 – simple utility
    """Return *naive* current time in UTC for database compatibility."""

    return datetime.now(timezone.utc).replace(tzinfo=None)


__all__ = ["utc_now", "utc_now_naive"]
