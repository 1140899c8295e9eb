"""
Daily testing windows.

Measurements may only start inside one of three fixed local-time windows.
The caller's zone decides which window applies; if that zone cannot be
evaluated the server's own zone is used, and if no window is active the
request is rejected before any process is spawned.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .errors import OutsideWindow

LOGGER = logging.getLogger(__name__)


class TimeSlot(Enum):
    MORNING = "MORNING"
    NOON = "NOON"
    AFTERNOON = "AFTERNOON"

    @property
    def label(self) -> str:
        return WINDOW_LABELS[self]


WINDOW_LABELS = {
    TimeSlot.MORNING: "6:00 AM - 11:59 AM",
    TimeSlot.NOON: "12:00 PM - 12:59 PM",
    TimeSlot.AFTERNOON: "1:00 PM - 6:00 PM",
}

OUTSIDE_WINDOW_MESSAGE = (
    "Testing is only allowed during designated time slots "
    "(6AM-11:59AM, 12PM-12:59PM, 1PM-6PM)"
)


def slot_for_hour(hour: int) -> Optional[TimeSlot]:
    if 6 <= hour <= 11:
        return TimeSlot.MORNING
    if hour == 12:
        return TimeSlot.NOON
    # the afternoon window runs through the 18:xx hour
    if 13 <= hour <= 18:
        return TimeSlot.AFTERNOON
    return None


def _zone(name: str) -> Optional[ZoneInfo]:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        LOGGER.warning(f"Cannot evaluate time zone {name!r}: {e}")
        return None


def current_slot(
    timezone_name: Optional[str],
    now: Optional[datetime] = None,
    server_timezone: str = "UTC",
) -> Optional[TimeSlot]:
    """
    Return the window active at `now` (default: the current instant) in
    `timezone_name`, falling back to `server_timezone` when the caller's zone
    is missing or unknown.
    """
    instant = now or datetime.now(timezone.utc)
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=timezone.utc)

    zone = _zone(timezone_name) if timezone_name else None
    if zone is None:
        zone = _zone(server_timezone) or timezone.utc
        LOGGER.debug(f"Using server zone {server_timezone!r} for window evaluation")

    return slot_for_hour(instant.astimezone(zone).hour)


def require_slot(
    timezone_name: Optional[str],
    now: Optional[datetime] = None,
    server_timezone: str = "UTC",
) -> TimeSlot:
    slot = current_slot(timezone_name, now=now, server_timezone=server_timezone)
    if slot is None:
        raise OutsideWindow(timezone_name or server_timezone, OUTSIDE_WINDOW_MESSAGE)
    return slot
