"""Recurring billing date arithmetic.

All values are naive calendar dates. Month arithmetic goes through
``dateutil.relativedelta``, which keeps the day of month when the target
month has it and otherwise clamps to the target month's last day::

    2025-01-31 + Monthly  -> 2025-02-28
    2024-02-29 + Yearly   -> 2025-02-28
    2025-03-31 + Quarterly -> 2025-06-30
"""
from datetime import date
from typing import Iterator, List, Optional, Union

from dateutil.relativedelta import relativedelta

from models.subscription import Frequency
from utils.dates import format_ymd, parse_ymd

FrequencyLike = Union[Frequency, str]


def _to_frequency(frequency: FrequencyLike) -> Optional[Frequency]:
    if isinstance(frequency, Frequency):
        return frequency
    try:
        return Frequency(frequency)
    except ValueError:
        return None


def advance(value: date, frequency: FrequencyLike, cycles: int = 1) -> date:
    """
    Move a date forward by whole billing cycles.

    Args:
        value: Starting calendar date
        frequency: Billing frequency
        cycles: Number of cycles to move

    Returns:
        Shifted date

    Raises:
        ValueError: If frequency is unknown
    """
    freq = _to_frequency(frequency)
    if freq is None:
        raise ValueError(f"Unknown frequency: {frequency}")
    return value + relativedelta(months=freq.months * cycles)


def advance_label(ymd: Optional[str], frequency: FrequencyLike) -> str:
    """
    String variant of :func:`advance`.

    Returns an empty string when the date cannot be parsed or the
    frequency is unknown.
    """
    start = parse_ymd(ymd)
    if start is None or _to_frequency(frequency) is None:
        return ''
    return format_ymd(advance(start, frequency))


def days_until(value, today: Optional[date] = None) -> Optional[int]:
    """
    Signed number of calendar days from today to a date.

    Args:
        value: ``YYYY-MM-DD`` string or date
        today: Reference date (defaults to local today)

    Returns:
        Days until the date (0 for today, negative when past), or None
        when the value is empty or invalid. None means "never due".
    """
    target = parse_ymd(value)
    if target is None:
        return None
    if today is None:
        today = date.today()
    return (target - today).days


def iter_occurrences(start: date, frequency: FrequencyLike) -> Iterator[date]:
    """Yield start, start + 1 cycle, start + 2 cycles, ... without drift."""
    cycle = 0
    while True:
        yield advance(start, frequency, cycles=cycle)
        cycle += 1


def occurrences_between(
    start: date,
    frequency: FrequencyLike,
    range_start: date,
    range_end: date
) -> List[date]:
    """
    List billing occurrences inside an inclusive date range.

    Each occurrence is computed from ``start`` directly, so a subscription
    started on the 31st bills on the 31st again in long months.

    Args:
        start: First billing date
        frequency: Billing frequency
        range_start: First day of the range
        range_end: Last day of the range

    Returns:
        Sorted list of occurrence dates
    """
    if range_end < range_start:
        return []

    result = []
    for occurrence in iter_occurrences(start, frequency):
        if occurrence > range_end:
            break
        if occurrence >= range_start:
            result.append(occurrence)
    return result


def next_occurrence(
    start: date,
    frequency: FrequencyLike,
    today: Optional[date] = None
) -> date:
    """First billing occurrence on or after today."""
    if today is None:
        today = date.today()
    return next(o for o in iter_occurrences(start, frequency) if o >= today)
