"""Parser for human-readable event date ranges.

Listing sites describe event times in text such as::

    Fri: Aug 30 (9pm-2am)
    Wed: Jan 28, 2026 (8pm)
    Fri: Aug 30-Sun: Sep 1 (Fri: 9pm-Sun: 2am)
    Mondays (9:30pm-2:30am)
    2nd/4th Wednesdays (8pm-12am)

parse_date_range() turns these into ISO 8601 start and end instants. Each
supported grammar is a matcher function; GRAMMARS lists them in priority
order and the first one that returns a result wins.
"""
import logging
import re
from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Any, Callable, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

logger = logging.getLogger(__name__)

DEFAULT_DURATION = timedelta(hours=4)

MONTH_NAMES = [
    'january', 'february', 'march', 'april', 'may', 'june', 'july',
    'august', 'september', 'october', 'november', 'december'
]

# Indexed like date.weekday(): Monday is 0
WEEKDAY_NAMES = [
    'monday', 'tuesday', 'wednesday', 'thursday', 'friday', 'saturday', 'sunday'
]

MAX_LEAP_YEAR_GAP = 8

TIME_TOKEN_RE = re.compile(r'^(\d{1,2})(?::(\d{2}))?\s*([ap]m)$', re.IGNORECASE)

SINGLE_DAY_RE = re.compile(
    r'^([a-z]+):\s*([a-z]+)\s+(\d{1,2})(?:,\s*(\d{4}))?\s*\(([^)]+)\)$',
    re.IGNORECASE
)

MULTI_DAY_RE = re.compile(
    r'^([a-z]+):\s*([a-z]+)\s+(\d{1,2})\s*-\s*([a-z]+):\s*([a-z]+)\s+(\d{1,2})'
    r'(?:,\s*(\d{4}))?\s*'
    r'\(\s*([a-z]+):\s*([^-)]+?)\s*-\s*([a-z]+):\s*([^)]+?)\s*\)$',
    re.IGNORECASE
)

WEEKLY_RE = re.compile(r'^([a-z]+?)s\s*\(([^)]+)\)$', re.IGNORECASE)

MONTHLY_RE = re.compile(
    r'^(\d(?:st|nd|rd|th)(?:\s*/\s*\d(?:st|nd|rd|th))*)\s+([a-z]+?)s\s*\(([^)]+)\)$',
    re.IGNORECASE
)

NTH_RE = re.compile(r'(\d)(?:st|nd|rd|th)', re.IGNORECASE)

Clock = Tuple[int, int]
Interval = Tuple[datetime, datetime, bool]


def parse_date_range(
    text: Any,
    reference: Optional[datetime] = None,
    tz: Optional[str] = None
) -> Dict[str, Any]:
    """
    Parse date/time range text into start and end instants.

    Never raises. Text that no grammar accepts falls back to a four hour
    window starting at the reference time.

    Args:
        text: Date range text (e.g., "Fri: Aug 30 (9pm-2am)")
        reference: Current time used for year inference and recurring
            events (default: now). Naive values are taken to be in tz.
        tz: IANA timezone name the wall-clock times are in (default: UTC)

    Returns:
        Dict with ISO 8601 'start' and 'end' strings and a 'recurring' bool
    """
    now = reference if reference is not None else datetime.now(timezone.utc)

    if not isinstance(text, str) or not text.strip():
        logger.warning("Invalid or empty date range text provided")
        return _fallback(now)

    normalized = ' '.join(text.split())

    try:
        zone = _zone(tz)
        ref = _localize(now, zone)
        for matcher in GRAMMARS:
            result = matcher(normalized, ref, zone)
            if result is not None:
                start, end, recurring = result
                return {
                    'start': start.isoformat(),
                    'end': end.isoformat(),
                    'recurring': recurring
                }
    except (ValueError, KeyError, TypeError, OverflowError) as e:
        logger.warning(f"Error parsing date range '{normalized}': {e}")
        return _fallback(now)

    logger.warning(f"Could not parse date range: {normalized}")
    return _fallback(now)


def parse_time_token(token: str) -> Optional[Clock]:
    """
    Parse a 12-hour clock token such as "9pm" or "11:59PM".

    Args:
        token: Time text

    Returns:
        Tuple of (hour, minute) in 24-hour format or None if invalid
    """
    match = TIME_TOKEN_RE.match(token.strip())
    if not match:
        return None

    hour = int(match.group(1))
    minute = int(match.group(2) or 0)
    meridiem = match.group(3).lower()

    if not 1 <= hour <= 12 or not 0 <= minute <= 59:
        return None

    if meridiem == 'am' and hour == 12:
        hour = 0
    elif meridiem == 'pm' and hour != 12:
        hour += 12

    return hour, minute


def nth_weekday_of_month(year: int, month: int, weekday: int, nth: int) -> Optional[date]:
    """
    Find the nth occurrence of a weekday in a month.

    Args:
        year: Year
        month: Month (1-12)
        weekday: Day of week, Monday is 0
        nth: Occurrence (1 for the first)

    Returns:
        The date, or None if the month has fewer occurrences
    """
    first = date(year, month, 1)
    offset = (weekday - first.weekday()) % 7
    result = first + timedelta(days=offset + 7 * (nth - 1))
    if result.month != month:
        return None
    return result


def _match_single_day(text: str, ref: datetime, zone: tzinfo) -> Optional[Interval]:
    match = SINGLE_DAY_RE.match(text)
    if not match:
        return None

    weekday, month, day, year, time_range = match.groups()
    month_index = _month_index(month)
    if _weekday_index(weekday) is None or month_index is None:
        return None

    clocks = _parse_time_range(time_range)
    if clocks is None:
        return None

    day_value = _resolve_day(int(year) if year else None, month_index, int(day), ref.date())
    if day_value is None:
        return None

    start, end = _build_interval(day_value, clocks[0], clocks[1], zone)
    return start, end, False


def _match_multi_day(text: str, ref: datetime, zone: tzinfo) -> Optional[Interval]:
    match = MULTI_DAY_RE.match(text)
    if not match:
        return None

    (weekday_a, month_a, day_a, weekday_b, month_b, day_b, year,
     time_weekday_a, time_a, time_weekday_b, time_b) = match.groups()

    weekdays = (weekday_a, weekday_b, time_weekday_a, time_weekday_b)
    if any(_weekday_index(token) is None for token in weekdays):
        return None

    start_month = _month_index(month_a)
    end_month = _month_index(month_b)
    if start_month is None or end_month is None:
        return None

    start_clock = parse_time_token(time_a)
    end_clock = parse_time_token(time_b)
    if start_clock is None or end_clock is None:
        return None

    start_day = _resolve_day(int(year) if year else None, start_month, int(day_a), ref.date())
    if start_day is None:
        return None

    # Ranges like Dec 30-Jan 1 end in the following year
    end_year = start_day.year
    if (end_month, int(day_b)) < (start_month, int(day_a)):
        end_year += 1
    try:
        end_day = date(end_year, end_month, int(day_b))
    except ValueError:
        return None

    start = _at(start_day, start_clock, zone)
    end = _at(end_day, end_clock, zone)
    if end < start:
        return None
    return start, end, False


def _match_weekly(text: str, ref: datetime, zone: tzinfo) -> Optional[Interval]:
    match = WEEKLY_RE.match(text)
    if not match:
        return None

    weekday = _weekday_index(match.group(1))
    clocks = _parse_time_range(match.group(2))
    if weekday is None or clocks is None:
        return None

    # An event on today's weekday is scheduled for next week
    days_ahead = (weekday - ref.weekday()) % 7 or 7
    day_value = ref.date() + timedelta(days=days_ahead)

    start, end = _build_interval(day_value, clocks[0], clocks[1], zone)
    return start, end, True


def _match_monthly_nth(text: str, ref: datetime, zone: tzinfo) -> Optional[Interval]:
    match = MONTHLY_RE.match(text)
    if not match:
        return None

    occurrences = [int(value) for value in NTH_RE.findall(match.group(1))]
    if not occurrences or any(not 1 <= nth <= 4 for nth in occurrences):
        return None

    weekday = _weekday_index(match.group(2))
    clocks = _parse_time_range(match.group(3))
    if weekday is None or clocks is None:
        return None

    today = ref.date()
    candidates = []
    for months_ahead in range(3):
        year, month = _add_months(today.year, today.month, months_ahead)
        for nth in occurrences:
            candidate = nth_weekday_of_month(year, month, weekday, nth)
            if candidate is not None and candidate > today:
                candidates.append(candidate)

    if not candidates:
        return None

    start, end = _build_interval(min(candidates), clocks[0], clocks[1], zone)
    return start, end, True


GRAMMARS: List[Callable[[str, datetime, tzinfo], Optional[Interval]]] = [
    _match_single_day,
    _match_multi_day,
    _match_weekly,
    _match_monthly_nth,
]


def _parse_time_range(text: str) -> Optional[Tuple[Clock, Optional[Clock]]]:
    parts = text.split('-')
    if len(parts) > 2:
        return None

    start = parse_time_token(parts[0])
    if start is None:
        return None

    if len(parts) == 1:
        return start, None

    end = parse_time_token(parts[1])
    if end is None:
        return None
    return start, end


def _build_interval(
    day_value: date,
    start_clock: Clock,
    end_clock: Optional[Clock],
    zone: tzinfo
) -> Tuple[datetime, datetime]:
    start = _at(day_value, start_clock, zone)

    if end_clock is None:
        end = (start.astimezone(timezone.utc) + DEFAULT_DURATION).astimezone(zone)
        return start, end

    # End clock before start clock means the event runs past midnight
    end_day = day_value
    if end_clock < start_clock:
        end_day = day_value + timedelta(days=1)
    return start, _at(end_day, end_clock, zone)


def _resolve_day(year: Optional[int], month: int, day: int, today: date) -> Optional[date]:
    """Explicit year wins; otherwise the soonest month/day on or after today."""
    if year is not None:
        try:
            return date(year, month, day)
        except ValueError:
            return None

    for candidate_year in range(today.year, today.year + MAX_LEAP_YEAR_GAP + 1):
        try:
            candidate = date(candidate_year, month, day)
        except ValueError:
            continue
        if candidate >= today:
            return candidate
    return None


def _at(day_value: date, clock: Clock, zone: tzinfo) -> datetime:
    return datetime(day_value.year, day_value.month, day_value.day, clock[0], clock[1], tzinfo=zone)


def _month_index(token: str) -> Optional[int]:
    return _name_index(token, MONTH_NAMES)


def _weekday_index(token: str) -> Optional[int]:
    index = _name_index(token, WEEKDAY_NAMES)
    return None if index is None else index - 1


def _name_index(token: str, names: List[str]) -> Optional[int]:
    """1-based index of a full or abbreviated (3+ letters) name."""
    token = token.lower()
    if len(token) < 3:
        return None
    for index, name in enumerate(names, start=1):
        if name.startswith(token):
            return index
    return None


def _add_months(year: int, month: int, count: int) -> Tuple[int, int]:
    total = year * 12 + (month - 1) + count
    return total // 12, total % 12 + 1


def _zone(tz: Optional[str]) -> tzinfo:
    if not tz:
        return timezone.utc
    return ZoneInfo(tz)


def _localize(value: datetime, zone: tzinfo) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=zone)
    return value.astimezone(zone)


def _fallback(now: datetime) -> Dict[str, Any]:
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return {
        'start': now.isoformat(),
        'end': (now + DEFAULT_DURATION).isoformat(),
        'recurring': False
    }
