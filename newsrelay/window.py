"""Per-recipient delivery window matching."""
from datetime import datetime
from zoneinfo import ZoneInfo

from newsrelay.models import Recipient

DEFAULT_WINDOW_MINUTES = 30


def is_within_window(
    recipient: Recipient,
    now: datetime,
    tolerance_minutes: int = DEFAULT_WINDOW_MINUTES,
) -> bool:
    """Return True if `now`, in the recipient's zone, is within tolerance of their delivery time.

    The clock is compared linearly over the day: 23:50 and 00:10 are 1420
    minutes apart, not 20. A delivery pass every 30 minutes still lands in
    every window once per day.

    Args:
        recipient: Recipient with `delivery_time` ("HH:MM") and `timezone`
        now: Timezone-aware instant
        tolerance_minutes: Maximum distance from the delivery time, inclusive
    """
    local = now.astimezone(ZoneInfo(recipient.timezone))
    hour, minute = (int(part) for part in recipient.delivery_time.split(":"))

    current_minutes = local.hour * 60 + local.minute
    delivery_minutes = hour * 60 + minute

    return abs(current_minutes - delivery_minutes) <= tolerance_minutes
