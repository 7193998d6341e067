"""Validity windows for check-in codes.

All stored instants are naive UTC. Gate decisions are taken on the wall clock
of the configured fixed offset (``LOCAL_UTC_OFFSET_MINUTES``), so the
helpers here convert in both directions and the window check itself works on
naive local datetimes only.
"""

from dataclasses import dataclass
from datetime import datetime, time, timezone

from gateguard.core.config import get_settings
from gateguard.core.exceptions import OutsideValidityWindowError

settings = get_settings()

NOT_YET_VALID = "not_yet_valid"
EXPIRED = "expired"


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_local(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc).astimezone(settings.local_timezone).replace(tzinfo=None)


def to_storage(value: datetime) -> datetime:
    """Normalize an incoming datetime to naive UTC; naive input is read as local gate time."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=settings.local_timezone)
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def format_clock(value: datetime | time) -> str:
    return value.strftime("%I:%M %p")


@dataclass(frozen=True)
class WindowDenial:
    reason: str
    valid_from: str | None
    valid_until: str

    @property
    def message(self) -> str:
        if self.reason == NOT_YET_VALID:
            return (
                "Please check your pre-approval time. You're early. "
                f"The code is valid from {self.valid_from} to {self.valid_until}."
            )
        if self.valid_from is None:
            return f"Check-in code has expired. It was valid until {self.valid_until}."
        return f"Check-in code has expired. It was valid from {self.valid_from} to {self.valid_until}."

    def to_error(self) -> OutsideValidityWindowError:
        return OutsideValidityWindowError(self.message, self.reason, self.valid_from, self.valid_until)


def evaluate_window(now_local: datetime, start_local: datetime, end_local: datetime) -> WindowDenial | None:
    """Return why ``now_local`` is outside the window, or None when entry is allowed.

    Start and end are compared by time of day, with their calendar dates
    bounding the first and last day. ``start_time > end_time`` is an overnight
    window; on the start date it opens at ``start_time`` and on the end date
    it closes at ``end_time``.
    """
    current = now_local.time()
    today = now_local.date()
    start_time, end_time = start_local.time(), end_local.time()
    start_date, end_date = start_local.date(), end_local.date()

    def deny(reason: str) -> WindowDenial:
        return WindowDenial(reason, format_clock(start_time), format_clock(end_time))

    if today < start_date:
        return deny(NOT_YET_VALID)
    if today > end_date:
        return deny(EXPIRED)

    if start_time >= end_time:
        if today == start_date and current < start_time:
            return deny(NOT_YET_VALID)
        if today == end_date and current > end_time:
            return deny(EXPIRED)
        return None

    if current < start_time:
        return deny(NOT_YET_VALID)
    if current > end_time:
        return deny(EXPIRED)
    return None


def code_window_denial(
    start_at: datetime | None, expiry_at: datetime | None, now: datetime | None = None
) -> WindowDenial | None:
    """Window check for stored (UTC) code bounds. A missing expiry means the code never lapses."""
    if expiry_at is None:
        return None
    now = now or utcnow()
    end_local = to_local(expiry_at)
    if start_at is None:
        # Legacy rows without a start only carry an expiry instant.
        if now > expiry_at:
            return WindowDenial(EXPIRED, None, format_clock(end_local))
        return None
    return evaluate_window(to_local(now), to_local(start_at), end_local)
