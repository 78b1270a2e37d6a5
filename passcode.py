"""Short-lived numeric passcodes for reconciling latecomers after a session ends."""

import secrets
from datetime import datetime, timezone
from typing import Optional

from settings import PASSCODE_TTL_SECONDS


def generate_passcode(previous: Optional[str] = None) -> str:
    """Uniform random 4-digit code, never equal to ``previous``."""
    while True:
        code = str(1000 + secrets.randbelow(9000))
        if code != previous:
            return code


def as_utc(dt: datetime) -> datetime:
    # Mongo hands back naive datetimes unless the client is tz aware
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def needs_refresh(last_rotated: Optional[datetime], now: datetime, ttl_seconds: int = PASSCODE_TTL_SECONDS) -> bool:
    if last_rotated is None:
        return True
    return (as_utc(now) - as_utc(last_rotated)).total_seconds() >= ttl_seconds
