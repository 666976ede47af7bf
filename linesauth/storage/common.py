"""Logic shared by the memory and postgres stores.

Both backends run these helpers while holding their own lock (or row lock),
so the ledger rules stay identical regardless of where the rows live.
"""

from __future__ import annotations

import hmac
from datetime import datetime, timezone
from typing import Optional

from linesauth.storage.models import OtpCheckStatus, PasswordReset, PendingRegistration


def ensure_aware(value: datetime) -> datetime:
    """Treat naive timestamps as UTC so comparisons never mix the two kinds."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def is_expired(expires_at: datetime, now: datetime) -> bool:
    return ensure_aware(now) > ensure_aware(expires_at)


def evaluate_otp_attempt(
    entry: Optional[PendingRegistration | PasswordReset],
    code: str,
    *,
    now: datetime,
    max_attempts: int,
) -> OtpCheckStatus:
    """Classify a verification attempt.

    Order matters: expiry wins over the attempt cap, and both win over code
    correctness, so a correct code cannot revive an exhausted or stale row.
    """
    if entry is None:
        return OtpCheckStatus.MISSING
    if is_expired(entry.otp_expiry, now):
        return OtpCheckStatus.EXPIRED
    if entry.attempts >= max_attempts:
        return OtpCheckStatus.EXHAUSTED
    if not hmac.compare_digest(entry.otp.encode(), code.encode()):
        return OtpCheckStatus.MISMATCH
    return OtpCheckStatus.MATCHED
