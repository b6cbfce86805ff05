"""
Date phrase recognition and calendar arithmetic.

DateTagger finds English date phrases in a line ("tomorrow", "next friday",
"March 3rd", "week 12", "Q2", "from May 1 to May 9") and resolves each one to
a start/end pair of pendulum DateTimes in the configured timezone. The helper
functions below implement the unit arithmetic the language parser needs.
"""

import datetime
import logging
import re
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

import pendulum

logger = logging.getLogger(__name__)

WEEKDAYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]

MONTHS = [
    "january", "february", "march", "april", "may", "june",
    "july", "august", "september", "october", "november", "december",
]

MONTH_ABBREVIATIONS = {name[:3]: index + 1 for index, name in enumerate(MONTHS)}

NUMBER_WORDS = {
    "a": 1, "an": 1, "one": 1, "two": 2, "three": 3, "four": 4, "five": 5,
    "six": 6, "seven": 7, "eight": 8, "nine": 9, "ten": 10, "eleven": 11, "twelve": 12,
}

ORDINALS = {"first": 1, "second": 2, "third": 3, "fourth": 4, "last": -1}

TIMESTAMP_FORMAT = "YYYY-MM-DD HH:mm:ss [GMT]Z"
LONG_DATE_FORMAT = "dddd Do, MMMM YYYY"

_MONTH = r"(jan(?:uary)?|feb(?:ruary)?|mar(?:ch)?|apr(?:il)?|may|june?|july?|aug(?:ust)?|sept?(?:ember)?|oct(?:ober)?|nov(?:ember)?|dec(?:ember)?)"
_FULL_MONTH = r"(January|February|March|April|May|June|July|August|September|October|November|December)"
_WEEKDAY = r"(monday|tuesday|wednesday|thursday|friday|saturday|sunday)"
_COUNT = r"(\d+|a|an|one|two|three|four|five|six|seven|eight|nine|ten|eleven|twelve)"
_UNIT = r"(day|week|month|year)s?"

_TIME = re.compile(r"\s+(?:at\s+)?(\d{1,2})(?::(\d{2}))?\s*(am|pm)?\b", re.IGNORECASE)
_RANGE_JOINER = re.compile(r"^\s*(?:to|until|till|through|thru|-)\s*$", re.IGNORECASE)
_BETWEEN_JOINER = re.compile(r"^\s*and\s*$", re.IGNORECASE)
_FROM_PREFIX = re.compile(r"\bfrom\s+$", re.IGNORECASE)
_BETWEEN_PREFIX = re.compile(r"\bbetween\s+$", re.IGNORECASE)

DAY = "date"
RANGE = "range"
WEEK = "week"
QUARTER = "quarter"
PERIOD = "period"


@dataclass
class DateSpan:
    """A date phrase found in a line."""
    text: str
    start: pendulum.DateTime
    end: pendulum.DateTime
    tag: str
    span: Tuple[int, int]

    @property
    def is_range(self) -> bool:
        return self.start.date() != self.end.date()


def month_number(name: str) -> int:
    return MONTH_ABBREVIATIONS[name.lower()[:3]]


def weekday_index(name: str) -> int:
    """Monday is 1 and Sunday is 7, as in ``isoweekday``."""
    name = name.lower()
    for index, weekday in enumerate(WEEKDAYS):
        if weekday.startswith(name[:3]):
            return index + 1
    raise ValueError(f"Unknown weekday: {name}")


def parse_count(token: str) -> int:
    token = token.lower()
    if token.isdigit():
        return int(token)
    return NUMBER_WORDS[token]


def add_workdays(start: pendulum.DateTime, amount: int) -> pendulum.DateTime:
    """
    Step one day at a time, counting only Monday to Friday.

    A negative amount walks backwards.
    """
    step = 1 if amount > 0 else -1
    date = start
    counted = 0
    while counted < abs(amount):
        date = date.add(days=step)
        if date.isoweekday() < 6:
            counted += 1
    return date


def add_offset(start: pendulum.DateTime, unit: str, amount: int) -> pendulum.DateTime:
    """Shift a date by ``amount`` days, workdays, weeks, months or years."""
    unit = unit.lower().rstrip("s")
    if unit == "workday":
        return add_workdays(start, amount)
    if unit == "day":
        return start.add(days=amount)
    if unit == "week":
        return start.add(weeks=amount)
    if unit == "month":
        return start.add(months=amount)
    if unit == "year":
        return start.add(years=amount)
    raise ValueError(f"Unsupported time unit: {unit}")


def count_workdays(start: pendulum.DateTime, end: pendulum.DateTime) -> int:
    """Weekdays between two dates, both endpoints included."""
    count = 0
    current = start.start_of("day")
    last = end.date()
    while current.date() <= last:
        if current.isoweekday() < 6:
            count += 1
        current = current.add(days=1)
    return count


def count_units(unit: str, start: pendulum.DateTime, end: pendulum.DateTime) -> int:
    """Signed number of whole ``unit`` between start and end."""
    unit = unit.lower()
    if unit == "workdays":
        return count_workdays(start, end)
    if unit == "days":
        return start.date().diff(end.date(), False).in_days()
    interval = start.diff(end, False)
    if unit == "weeks":
        return interval.in_weeks()
    if unit == "months":
        return interval.in_months()
    if unit == "years":
        return interval.in_years()
    raise ValueError(f"Unsupported time unit: {unit}")


def week_range(week: int, today: pendulum.DateTime) -> Optional[Tuple[pendulum.DateTime, pendulum.DateTime]]:
    """
    Monday to Sunday of ISO week ``week`` in the current week-numbering year.

    Week 1 starting in December refers to the first week of next year.
    Returns None for week numbers the year does not have.
    """
    if week < 1 or week > 53:
        return None

    week_year = today.isocalendar()[0]
    try:
        monday = datetime.date.fromisocalendar(week_year, week, 1)
        if week == 1 and monday.month == 12:
            monday = datetime.date.fromisocalendar(week_year + 1, week, 1)
    except ValueError:
        return None

    start = pendulum.datetime(monday.year, monday.month, monday.day, tz=today.timezone)
    return start, start.add(days=6).end_of("day")


def format_timestamp(value: pendulum.DateTime, timezone: str) -> str:
    return value.in_tz(timezone).format(TIMESTAMP_FORMAT)


def format_long(value: pendulum.DateTime) -> str:
    return value.format(LONG_DATE_FORMAT)


class DateTagger:
    """
    Find and resolve date phrases relative to "now".

    Args:
        timezone: IANA zone all dates are resolved in
        clock: Callable returning the current pendulum DateTime; defaults to
            ``pendulum.now``
    """

    def __init__(self, timezone: str = "UTC", clock: Optional[Callable[[], pendulum.DateTime]] = None):
        self.timezone = timezone
        self.clock = clock or pendulum.now
        self._patterns = self._build_patterns()

    def today(self) -> pendulum.DateTime:
        return self.clock().in_tz(self.timezone).start_of("day")

    def find_dates(self, text: str) -> List[DateSpan]:
        """
        All date phrases in ``text``, left to right.

        Overlapping candidates resolve to the leftmost, then longest, match.
        Adjacent phrases joined by "to", "until", "through" or "-" (optionally
        led by "from"), or by "between ... and", merge into one range.
        """
        today = self.today()
        candidates = []
        for tag, pattern, resolver in self._patterns:
            for match in pattern.finditer(text):
                try:
                    resolved = resolver(match, today)
                except (ValueError, KeyError, OverflowError) as e:
                    logger.debug(f"Ignoring date phrase {match.group(0)!r}: {e}")
                    continue
                if resolved is None:
                    continue
                candidates.append((match.start(), match.end(), tag, resolved))

        candidates.sort(key=lambda c: (c[0], -(c[1] - c[0])))
        spans: List[DateSpan] = []
        position = 0
        for begin, finish, tag, (start, end) in candidates:
            if begin < position:
                continue
            if tag == DAY:
                finish, start = self._apply_time(text, finish, start)
                if end < start:
                    end = start.end_of("day")
            spans.append(DateSpan(text[begin:finish], start, end, tag, (begin, finish)))
            position = finish

        return self._merge_ranges(text, spans)

    def parse_phrase(self, text: str) -> Optional[DateSpan]:
        """Resolve ``text`` only if the whole of it is one date phrase."""
        stripped = text.strip()
        spans = self.find_dates(stripped)
        if len(spans) == 1 and spans[0].span == (0, len(stripped)):
            return spans[0]
        return None

    def _merge_ranges(self, text: str, spans: List[DateSpan]) -> List[DateSpan]:
        merged: List[DateSpan] = []
        index = 0
        while index < len(spans):
            current = spans[index]
            if index + 1 < len(spans):
                following = spans[index + 1]
                between = text[current.span[1]:following.span[0]]
                before = text[:current.span[0]]
                joined = _RANGE_JOINER.match(between) or (
                    _BETWEEN_JOINER.match(between) and _BETWEEN_PREFIX.search(before)
                )
                if joined and following.end >= current.start:
                    begin = current.span[0]
                    prefix = _FROM_PREFIX.search(before) or _BETWEEN_PREFIX.search(before)
                    if prefix:
                        begin = prefix.start()
                    finish = following.span[1]
                    merged.append(DateSpan(
                        text[begin:finish], current.start, following.end, RANGE, (begin, finish)
                    ))
                    index += 2
                    continue
            merged.append(current)
            index += 1
        return merged

    @staticmethod
    def _apply_time(text: str, position: int, start: pendulum.DateTime):
        match = _TIME.match(text, position)
        if not match or not (match.group(2) or match.group(3)):
            return position, start

        hour = int(match.group(1))
        minute = int(match.group(2) or 0)
        meridiem = (match.group(3) or "").lower()
        if meridiem == "pm" and hour < 12:
            hour += 12
        elif meridiem == "am" and hour == 12:
            hour = 0
        if hour > 23 or minute > 59:
            return position, start
        return match.end(), start.set(hour=hour, minute=minute)

    def _build_patterns(self):
        flags = re.IGNORECASE
        return [
            (DAY, re.compile(r"\b(\d{4})-(\d{2})-(\d{2})\b"), self._iso_date),
            (DAY, re.compile(r"\b(\d{1,2})/(\d{1,2})/(\d{4})\b"), self._slash_date),
            (DAY, re.compile(rf"\b{_MONTH}\.?\s+(\d{{1,2}})(?:st|nd|rd|th)?\b(?:,?\s+(\d{{4}})\b)?", flags),
             self._month_day),
            (DAY, re.compile(rf"\b(\d{{1,2}})(?:st|nd|rd|th)?\s+(?:of\s+)?{_MONTH}\b(?:,?\s+(\d{{4}})\b)?", flags),
             self._day_month),
            (WEEK, re.compile(rf"\b(first|second|third|fourth|last)\s+week(end)?\s+of\s+{_MONTH}\b(?:\s+(\d{{4}})\b)?",
                              flags), self._week_of_month),
            (DAY, re.compile(rf"\b(first|last)\s+day\s+of\s+(?:(next|last|this)\s+month|{_MONTH}\b)", flags),
             self._day_of_month),
            (WEEK, re.compile(r"\bweek\s*(\d{1,2})\b", flags), self._week_number),
            (QUARTER, re.compile(r"\bq([1-4])\b(?:\s+(\d{4})\b)?", flags), self._quarter),
            (DAY, re.compile(rf"\bin\s+{_COUNT}\s+{_UNIT}\b", flags), self._in_future),
            (DAY, re.compile(rf"\b{_COUNT}\s+{_UNIT}\s+(ago|from\s+now|later)\b", flags), self._relative),
            (DAY, re.compile(r"\b(?:the\s+)?day\s+(after\s+tomorrow|before\s+yesterday)\b", flags), self._day_after),
            (DAY, re.compile(r"\b(today|tonight|tomorrow|yesterday)\b", flags), self._named_day),
            (DAY, re.compile(rf"\b(?:(next|last|this|on)\s+)?{_WEEKDAY}\b", flags), self._weekday),
            (PERIOD, re.compile(r"\b(next|last|this)\s+(week|month|year)\b", flags), self._relative_period),
            (PERIOD, re.compile(rf"\b{_MONTH}\s+(\d{{4}})\b", flags), self._month_year),
            (PERIOD, re.compile(rf"\b{_FULL_MONTH}\b"), self._bare_month),
        ]

    def _day(self, year: int, month: int, day: int):
        start = pendulum.datetime(year, month, day, tz=self.timezone)
        return start, start.end_of("day")

    def _iso_date(self, match, today):
        return self._day(int(match.group(1)), int(match.group(2)), int(match.group(3)))

    def _slash_date(self, match, today):
        return self._day(int(match.group(3)), int(match.group(1)), int(match.group(2)))

    def _month_day(self, match, today):
        year = int(match.group(3)) if match.group(3) else today.year
        return self._day(year, month_number(match.group(1)), int(match.group(2)))

    def _day_month(self, match, today):
        year = int(match.group(3)) if match.group(3) else today.year
        return self._day(year, month_number(match.group(2)), int(match.group(1)))

    def _week_of_month(self, match, today):
        ordinal = ORDINALS[match.group(1).lower()]
        weekend = bool(match.group(2))
        year = int(match.group(4)) if match.group(4) else today.year
        first = pendulum.datetime(year, month_number(match.group(3)), 1, tz=self.timezone)

        if ordinal == -1:
            anchor = first.end_of("month").start_of("day")
            start = anchor.start_of("week")
            if start.month != first.month:
                start = anchor
        else:
            start = first.start_of("week")
            if start.month != first.month:
                start = start.add(weeks=1)
            start = start.add(weeks=ordinal - 1)

        if weekend:
            start = start.add(days=5)
            return start, start.add(days=1).end_of("day")
        return start, start.add(days=6).end_of("day")

    def _day_of_month(self, match, today):
        which, relative, month_name = match.group(1).lower(), match.group(2), match.group(3)
        if month_name:
            month = pendulum.datetime(today.year, month_number(month_name), 1, tz=self.timezone)
        else:
            shift = {"next": 1, "last": -1, "this": 0}[relative.lower()]
            month = today.start_of("month").add(months=shift)
        day = month.start_of("month") if which == "first" else month.end_of("month").start_of("day")
        return day, day.end_of("day")

    def _week_number(self, match, today):
        return week_range(int(match.group(1)), today)

    def _quarter(self, match, today):
        quarter = int(match.group(1))
        year = int(match.group(2)) if match.group(2) else today.year
        start = pendulum.datetime(year, 3 * (quarter - 1) + 1, 1, tz=self.timezone)
        return start, start.add(months=2).end_of("month")

    def _in_future(self, match, today):
        day = add_offset(today, match.group(2), parse_count(match.group(1)))
        return day, day.end_of("day")

    def _relative(self, match, today):
        amount = parse_count(match.group(1))
        if match.group(3).lower() == "ago":
            amount = -amount
        day = add_offset(today, match.group(2), amount)
        return day, day.end_of("day")

    def _day_after(self, match, today):
        offset = 2 if match.group(1).lower().startswith("after") else -2
        day = today.add(days=offset)
        return day, day.end_of("day")

    def _named_day(self, match, today):
        offset = {"today": 0, "tonight": 0, "tomorrow": 1, "yesterday": -1}[match.group(1).lower()]
        day = today.add(days=offset)
        return day, day.end_of("day")

    def _weekday(self, match, today):
        modifier = (match.group(1) or "").lower()
        target = weekday_index(match.group(2))
        delta = target - today.isoweekday()

        if modifier == "next":
            delta = delta if delta > 0 else delta + 7
        elif modifier == "last":
            delta = delta if delta < 0 else delta - 7
        elif delta < 0:
            delta += 7

        day = today.add(days=delta)
        return day, day.end_of("day")

    def _relative_period(self, match, today):
        shift = {"next": 1, "last": -1, "this": 0}[match.group(1).lower()]
        unit = match.group(2).lower()
        anchor = today.add(**{f"{unit}s": shift})
        return anchor.start_of(unit), anchor.end_of(unit)

    def _month_year(self, match, today):
        start = pendulum.datetime(int(match.group(2)), month_number(match.group(1)), 1, tz=self.timezone)
        return start, start.end_of("month")

    def _bare_month(self, match, today):
        start = pendulum.datetime(today.year, month_number(match.group(1)), 1, tz=self.timezone)
        return start, start.end_of("month")
