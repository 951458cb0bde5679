from datetime import datetime, time
from typing import Optional

from marketplace.core.errors import ValidationError


def parse_cutoff(value: str) -> time:
    """Parse a seller cutoff given as HH:MM or HH:MM:SS."""
    for fmt in ("%H:%M:%S", "%H:%M"):
        try:
            return datetime.strptime(value.strip(), fmt).time()
        except ValueError:
            continue
    raise ValidationError(f"Invalid cutoff time format: {value!r}", field="cutoff_time")


def is_same_day_allowed(seller, now: Optional[datetime] = None) -> dict:
    """
    Decide whether `seller` accepts a same-day booking or pickup right now.

    `now` is local wall-clock time; seller cutoffs are configured in local
    time, the same way slot dates and times are stored.
    """
    if not seller.same_day_pickup_allowed:
        return {"allowed": False, "reason": "Same-day pickup is not available for this seller"}

    if seller.cutoff_time:
        cutoff = parse_cutoff(seller.cutoff_time)
        now = now or datetime.now()
        if now.time() >= cutoff:
            return {
                "allowed": False,
                "reason": f"Same-day cutoff time ({cutoff.strftime('%H:%M')}) has passed",
            }

    return {"allowed": True, "reason": None}
