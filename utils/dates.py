"""Calendar date and timezone helpers."""
import logging
import re
from datetime import date, datetime, timezone
from typing import Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "Asia/Shanghai"

YMD_RE = re.compile(r'^(\d{4})-(\d{2})-(\d{2})$')


def parse_ymd(value) -> Optional[date]:
    """
    Parse a ``YYYY-MM-DD`` string into a date.

    Args:
        value: Date string, date instance or None

    Returns:
        Date, or None when the value is empty or not a real calendar date
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    match = YMD_RE.match(str(value or '').strip())
    if not match:
        return None

    try:
        return date(int(match.group(1)), int(match.group(2)), int(match.group(3)))
    except ValueError:
        return None


def format_ymd(value: date) -> str:
    """Format a date as ``YYYY-MM-DD``."""
    return value.strftime('%Y-%m-%d')


def get_zone(name: Optional[str], fallback: str = DEFAULT_TIMEZONE) -> ZoneInfo:
    """Resolve an IANA timezone name, falling back on unknown names."""
    try:
        return ZoneInfo(name or fallback)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown timezone {name!r}, using {fallback}")
        return ZoneInfo(fallback)


def to_local(tz_name: Optional[str], moment: Optional[datetime] = None) -> datetime:
    """Convert an instant (default: now) to wall-clock time in a timezone."""
    if moment is None:
        moment = datetime.now(timezone.utc)
    elif moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(get_zone(tz_name))


def local_today(tz_name: Optional[str]) -> date:
    """Current calendar date in a timezone."""
    return to_local(tz_name).date()


def local_date_label(tz_name: Optional[str], moment: Optional[datetime] = None) -> str:
    """Local calendar date of an instant as ``YYYY-MM-DD``."""
    return format_ymd(to_local(tz_name, moment).date())


def local_time_parts(tz_name: Optional[str], moment: Optional[datetime] = None) -> Tuple[int, int]:
    """Local (hour, minute) of an instant."""
    local = to_local(tz_name, moment)
    return local.hour, local.minute


def from_epoch_ms(value: int) -> datetime:
    """Epoch milliseconds to an aware UTC datetime."""
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


def epoch_ms(moment: Optional[datetime] = None) -> int:
    """Aware datetime (default: now) to epoch milliseconds."""
    if moment is None:
        moment = datetime.now(timezone.utc)
    return int(moment.timestamp() * 1000)
