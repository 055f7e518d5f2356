"""Opening-hours evaluation for venues."""

import re
from datetime import datetime
from typing import Tuple

_TIME_OF_DAY = re.compile(r'^([01]\d|2[0-3]):([0-5]\d)$')


def is_valid_time_of_day(value) -> bool:
    return isinstance(value, str) and bool(_TIME_OF_DAY.match(value))


def parse_time_of_day(value: str) -> Tuple[int, int]:
    hour, minute = value.split(':')
    return int(hour), int(minute)


def is_open(open_time: str, close_time: str, now: datetime) -> bool:
    """Return True when ``now`` falls inside the venue's opening window.

    Both bounds are anchored to ``now``'s calendar date. A window whose close
    is not after its open (e.g. 18:00 -> 02:00) wraps past midnight.
    """
    open_hour, open_minute = parse_time_of_day(open_time)
    close_hour, close_minute = parse_time_of_day(close_time)

    opens_at = now.replace(hour=open_hour, minute=open_minute, second=0, microsecond=0)
    closes_at = now.replace(hour=close_hour, minute=close_minute, second=0, microsecond=0)

    if closes_at > opens_at:
        return opens_at <= now <= closes_at

    return now >= opens_at or now <= closes_at
