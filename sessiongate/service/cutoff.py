"""Daily cutoff policy: every session expires at the next fixed wall-clock time."""

from __future__ import annotations

from datetime import datetime, time, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo


def next_cutoff(
    now: datetime, cutoff: time, tz: Optional[ZoneInfo] = None
) -> datetime:
    """Return the next occurrence of ``cutoff`` strictly after ``now`` (UTC-aware).

    The cutoff is interpreted in ``tz`` so a local "everyone logs out at
    midnight" policy follows daylight-saving shifts.
    """
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    zone = tz or ZoneInfo("UTC")
    local_now = now.astimezone(zone)
    candidate = datetime.combine(local_now.date(), cutoff, tzinfo=zone)
    if candidate <= local_now:
        candidate = datetime.combine(
            local_now.date() + timedelta(days=1), cutoff, tzinfo=zone
        )
    return candidate.astimezone(timezone.utc)


def seconds_until(target: datetime, now: datetime) -> int:
    """Whole seconds from ``now`` until ``target``, rounded down and never below 1.

    Rounding down keeps a store TTL from outliving the logical expiry.
    """
    if target.tzinfo is None:
        target = target.replace(tzinfo=timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return max(1, int((target - now).total_seconds()))
