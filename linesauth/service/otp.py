from __future__ import annotations

import secrets
from datetime import datetime, timedelta


def generate_otp(length: int = 6) -> str:
    """Random numeric code of exactly ``length`` digits with no leading zero."""
    if length <= 0:
        raise ValueError("otp length must be positive")
    floor = 10 ** (length - 1)
    return str(floor + secrets.randbelow(9 * floor))


def otp_expiry(now: datetime, ttl_minutes: int) -> datetime:
    return now + timedelta(minutes=ttl_minutes)


def is_well_formed(code: str, length: int) -> bool:
    return len(code) == length and code.isascii() and code.isdigit()
