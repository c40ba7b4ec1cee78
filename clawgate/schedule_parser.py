"""Natural-language schedule expressions compiled to 5-field cron.

Supported forms, tried in order (first match wins):

    every 15 minutes, every 2 hours, every day, every 3 days
    every monday at 9am, 9am every monday, every friday
    every weekday, every weekend, weekdays at 8:30am
    daily at 5pm, everyday, 5pm daily
    in 30 minutes, at 2pm today, next tuesday at 3pm    (one-time)
    on the 1st of january at noon                        (yearly)
    9am, at 9am
    */5 * * * *                                          (raw cron)

Any of these may end with a run count such as ``4x`` or ``3 times``.
"""

import re
from datetime import datetime, timedelta
from typing import List, NamedTuple, Optional, Tuple


DAYS = {
    "sun": 0, "sunday": 0,
    "mon": 1, "monday": 1,
    "tue": 2, "tues": 2, "tuesday": 2,
    "wed": 3, "wednesday": 3,
    "thu": 4, "thur": 4, "thurs": 4, "thursday": 4,
    "fri": 5, "friday": 5,
    "sat": 6, "saturday": 6,
}

DAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]

MONTHS = {
    "jan": 1, "january": 1,
    "feb": 2, "february": 2,
    "mar": 3, "march": 3,
    "apr": 4, "april": 4,
    "may": 5,
    "jun": 6, "june": 6,
    "jul": 7, "july": 7,
    "aug": 8, "august": 8,
    "sep": 9, "sept": 9, "september": 9,
    "oct": 10, "october": 10,
    "nov": 11, "november": 11,
    "dec": 12, "december": 12,
}

MONTH_NAMES = [
    "", "January", "February", "March", "April", "May", "June",
    "July", "August", "September", "October", "November", "December",
]

EXAMPLES = [
    "9am every Monday",
    "every Tuesday at 3pm",
    "every 15 minutes",
    "every hour",
    "daily at 9am",
    "weekdays at 8:30am",
    "next Thursday",
    "in 30 minutes",
    "at 2pm today",
    "1st of January at midnight",
    "every day 4x",
    "*/5 * * * *",
]

DEFAULT_TIME = (9, 0)

_DAY = r"(sunday|sun|monday|mon|tuesday|tues|tue|wednesday|wed|thursday|thurs|thur|thu|friday|fri|saturday|sat)"
_TIME = r"(\d{1,2}(?::\d{2})?\s*(?:am|pm)?|noon|midnight)"
_CRON_FIELD = r"[\d*/,\-]+"

INTERVAL_RE = re.compile(
    r"^(?:every|each)\s+(\d+)?\s*(mins?|minutes?|hours?|days?|weeks?|months?)$"
)
DAY_AT_TIME_RE = re.compile(rf"^every\s+{_DAY}\s+(?:at\s+)?{_TIME}$")
TIME_EVERY_DAY_RE = re.compile(rf"^(?:at\s+)?{_TIME}\s+every\s+{_DAY}$")
DAY_ONLY_RE = re.compile(rf"^every\s+{_DAY}$")
SPECIAL_DAYS_RE = re.compile(rf"^(?:every\s+)?(weekdays?|weekends?)(?:\s+at\s+{_TIME})?$")
DAILY_RE = re.compile(rf"^(?:everyday|daily|every\s+day)(?:\s+(?:at\s+)?{_TIME})?$")
TIME_DAILY_RE = re.compile(rf"^(?:at\s+)?{_TIME}\s+(?:everyday|daily|every\s+day)$")
IN_RE = re.compile(r"^in\s+(\d+)\s*(mins?|minutes?|hours?)$")
TODAY_RE = re.compile(rf"^(?:at\s+)?{_TIME}\s+today$")
NEXT_DAY_RE = re.compile(rf"^next\s+{_DAY}(?:\s+at\s+{_TIME})?$")
MONTH_DAY_RE = re.compile(
    rf"^(?:on\s+)?(?:the\s+)?(\d{{1,2}})(?:st|nd|rd|th)?\s+of\s+([a-z]+)(?:\s+at\s+{_TIME})?$"
)
SHORT_TIME_RE = re.compile(r"^(?:at\s+)?(\d{1,2})\s*(am|pm)$")
COUNT_SUFFIX_RE = re.compile(r"\s*(\d+)\s*(?:x|times?)\s*$", re.IGNORECASE)
RAW_CRON_RE = re.compile(rf"^({_CRON_FIELD})\s+({_CRON_FIELD})\s+({_CRON_FIELD})\s+({_CRON_FIELD})\s+({_CRON_FIELD})$")
TIME_TOKEN_RE = re.compile(r"^(\d{1,2})(?::(\d{2}))?\s*(am|pm)?$")

INTERVAL_LIMITS = {"minute": 59, "hour": 23, "day": 31, "week": 52, "month": 12}


class ParseError(ValueError):
    """Raised when a schedule expression cannot be compiled."""

    def __init__(self, expression: str, reason: Optional[str] = None):
        self.expression = expression
        self.reason = reason
        self.examples = list(EXAMPLES)
        message = f'Could not parse schedule: "{expression}"'
        if reason:
            message += f" ({reason})"
        message += '. Try: "9am every Monday", "every 15 minutes", "next Tuesday", "daily at 5pm"'
        super().__init__(message)


class ParseResult(NamedTuple):
    cron_expression: str
    description: str
    max_runs: Optional[int] = None
    is_one_time: bool = False


def normalize(expression: str) -> str:
    """Lowercase and collapse whitespace."""
    return " ".join(expression.lower().split())


def parse_time(token: str) -> Tuple[int, int]:
    """Parse '9', '9am', '9:30', '2:30pm', '14:30', 'noon' or 'midnight'."""
    token = token.strip()
    if token == "noon":
        return 12, 0
    if token == "midnight":
        return 0, 0
    match = TIME_TOKEN_RE.match(token)
    if not match:
        raise ValueError(f"Invalid time: {token}")
    hour = int(match.group(1))
    minute = int(match.group(2)) if match.group(2) else 0
    meridiem = match.group(3)
    if meridiem:
        if hour < 1 or hour > 12:
            raise ValueError(f"Invalid time: {token}")
        if meridiem == "pm" and hour != 12:
            hour += 12
        elif meridiem == "am" and hour == 12:
            hour = 0
    if hour > 23 or minute > 59:
        raise ValueError(f"Invalid time: {token}")
    return hour, minute


def parse_day(token: str) -> int:
    """Day name or abbreviation to cron day-of-week (Sunday is 0)."""
    try:
        return DAYS[token.lower()]
    except KeyError:
        raise ValueError(f"Invalid day: {token}")


def parse_month(token: str) -> int:
    """Month name or abbreviation to 1-12."""
    try:
        return MONTHS[token.lower()]
    except KeyError:
        raise ValueError(f"Invalid month: {token}")


def _fmt(hour: int, minute: int) -> str:
    return f"{hour}:{minute:02d}"


def _time_or_default(token: Optional[str]) -> Tuple[int, int]:
    return parse_time(token) if token else DEFAULT_TIME


def _interval(value: int, unit: str) -> ParseResult:
    plural = "s" if value > 1 else ""
    if unit == "minute":
        return ParseResult(f"*/{value} * * * *", f"Every {value} minute{plural}")
    if unit == "hour":
        return ParseResult(f"0 */{value} * * *", f"Every {value} hour{plural}")
    if unit == "day":
        return ParseResult(f"0 9 */{value} * *", f"Every {value} day{plural} at 9:00")
    if unit == "week":
        # Cron has no week step; N is not honored.
        return ParseResult("0 9 * * 1", f"Every {value} week{plural} on Monday at 9:00")
    return ParseResult(f"0 9 1 */{value} *", f"Every {value} month{plural} on the 1st at 9:00")


def _one_time(target: datetime, description: str) -> ParseResult:
    cron = f"{target.minute} {target.hour} {target.day} {target.month} *"
    return ParseResult(cron, description, is_one_time=True)


def _parse_base(text: str, now: Optional[datetime]) -> Optional[ParseResult]:
    match = INTERVAL_RE.match(text)
    if match:
        value = int(match.group(1)) if match.group(1) else 1
        unit = match.group(2).rstrip("s")
        if unit == "min":
            unit = "minute"
        if value < 1 or value > INTERVAL_LIMITS[unit]:
            raise ValueError(f"interval out of range: every {value} {unit}s")
        return _interval(value, unit)

    match = DAY_AT_TIME_RE.match(text)
    if match:
        day = parse_day(match.group(1))
        hour, minute = parse_time(match.group(2))
        return ParseResult(f"{minute} {hour} * * {day}", f"Every {DAY_NAMES[day]} at {_fmt(hour, minute)}")

    match = TIME_EVERY_DAY_RE.match(text)
    if match:
        hour, minute = parse_time(match.group(1))
        day = parse_day(match.group(2))
        return ParseResult(f"{minute} {hour} * * {day}", f"{_fmt(hour, minute)} every {DAY_NAMES[day]}")

    match = DAY_ONLY_RE.match(text)
    if match:
        day = parse_day(match.group(1))
        return ParseResult(f"0 9 * * {day}", f"Every {DAY_NAMES[day]} at 9:00")

    match = SPECIAL_DAYS_RE.match(text)
    if match:
        hour, minute = _time_or_default(match.group(2))
        if match.group(1).startswith("weekday"):
            return ParseResult(f"{minute} {hour} * * 1-5", f"Every weekday (Mon-Fri) at {_fmt(hour, minute)}")
        return ParseResult(f"{minute} {hour} * * 0,6", f"Every weekend (Sat-Sun) at {_fmt(hour, minute)}")

    match = DAILY_RE.match(text)
    if match:
        hour, minute = _time_or_default(match.group(1))
        return ParseResult(f"{minute} {hour} * * *", f"Daily at {_fmt(hour, minute)}")

    match = TIME_DAILY_RE.match(text)
    if match:
        hour, minute = parse_time(match.group(1))
        return ParseResult(f"{minute} {hour} * * *", f"{_fmt(hour, minute)} daily")

    match = IN_RE.match(text)
    if match:
        value = int(match.group(1))
        now = now or datetime.now()
        if match.group(2).startswith("hour"):
            target = now + timedelta(hours=value)
        else:
            target = now + timedelta(minutes=value)
        return _one_time(target, f"At {target.strftime('%Y-%m-%d %H:%M')}")

    match = TODAY_RE.match(text)
    if match:
        hour, minute = parse_time(match.group(1))
        now = now or datetime.now()
        target = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
        return _one_time(target, f"Today at {_fmt(hour, minute)}")

    match = NEXT_DAY_RE.match(text)
    if match:
        day = parse_day(match.group(1))
        hour, minute = _time_or_default(match.group(2))
        now = now or datetime.now()
        # isoweekday() is 1-7 for Mon-Sun; cron uses 0 for Sunday
        days_until = (day - now.isoweekday() % 7) % 7 or 7
        target = (now + timedelta(days=days_until)).replace(hour=hour, minute=minute)
        return _one_time(target, f"Next {DAY_NAMES[day]} at {_fmt(hour, minute)}")

    match = MONTH_DAY_RE.match(text)
    if match:
        day = int(match.group(1))
        month = parse_month(match.group(2))
        if day < 1 or day > 31:
            raise ValueError(f"Invalid day of month: {day}")
        hour, minute = _time_or_default(match.group(3))
        return ParseResult(
            f"{minute} {hour} {day} {month} *",
            f"{_fmt(hour, minute)} on day {day} of {MONTH_NAMES[month]}",
        )

    match = SHORT_TIME_RE.match(text)
    if match:
        hour, minute = parse_time(match.group(1) + match.group(2))
        return ParseResult(f"0 {hour} * * *", f"Daily at {match.group(1)}{match.group(2)}")

    return None


def compile_schedule(expression: str, now: Optional[datetime] = None) -> ParseResult:
    """Compile a schedule expression into a cron expression.

    ``now`` anchors the relative one-time forms ("in 5 minutes", "at 3pm
    today", "next friday") and defaults to the local wall clock. Raises
    ParseError for anything that does not match a supported form.
    """
    if not expression or not expression.strip():
        raise ParseError(expression or "", "empty expression")

    text = normalize(expression)
    try:
        result = _parse_base(text, now)
    except ValueError as e:
        raise ParseError(expression, str(e))
    if result is not None:
        return result

    count = COUNT_SUFFIX_RE.search(expression)
    if count:
        max_runs = int(count.group(1))
        base = expression[:count.start()].strip()
        if max_runs < 1:
            raise ParseError(expression, "run count must be at least 1")
        if not base:
            raise ParseError(expression, "missing schedule before run count")
        return compile_schedule(base, now)._replace(max_runs=max_runs)

    match = RAW_CRON_RE.match(text)
    if match:
        return ParseResult(" ".join(match.groups()), f"Custom schedule: {' '.join(match.groups())}")

    raise ParseError(expression)


def schedule_examples() -> List[str]:
    """Example expressions shown when parsing fails."""
    return list(EXAMPLES)
