import math
from datetime import datetime, timezone

from .config import DECAY_RATE_PER_DAY

SECONDS_PER_DAY = 86400.0


def parse_timestamp(value: str | datetime) -> datetime:
    """
    Parse an ISO-8601 timestamp into a tz-aware UTC datetime.

    Naive values are assumed to be UTC and a trailing 'Z' is accepted.
    Raises ValueError for anything unparseable so bad data never turns
    into a silently wrong weight.
    """
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str):
        raw = value.strip()
        if not raw:
            raise ValueError("empty timestamp")
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        dt = datetime.fromisoformat(raw)
    else:
        raise ValueError(f"unsupported timestamp type: {type(value).__name__}")

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def days_since(timestamp: str | datetime, now: datetime | None = None) -> int:
    """Whole days between timestamp and now, rounded up (absolute difference)."""
    ts = parse_timestamp(timestamp)
    ref = parse_timestamp(now) if now is not None else datetime.now(timezone.utc)
    return math.ceil(abs((ref - ts).total_seconds()) / SECONDS_PER_DAY)


def is_recent(timestamp: str | datetime, window_days: int, now: datetime | None = None) -> bool:
    return days_since(timestamp, now) <= window_days


def decayed_weight(
    timestamp: str | datetime,
    base_weight: float,
    decay_rate_per_day: float = DECAY_RATE_PER_DAY,
    now: datetime | None = None,
) -> float:
    """
    Exponentially decay a signal weight by its age.

    weight = base_weight * decay_rate_per_day ** days_since

    Args:
        timestamp: When the signal was recorded (ISO string or datetime)
        base_weight: Weight of the signal at age zero
        decay_rate_per_day: Fraction retained per day (0.95 = 5% loss per day)
        now: Reference time (default: current UTC time)
    """
    return base_weight * decay_rate_per_day ** days_since(timestamp, now)
