"""Date helpers: day windows, daily-page titles, and ``hh:mm a`` style patterns.

Patterns use Unicode date-field letters (the same letters date pickers and
outliner templates use), not ``strftime`` directives. Supported fields:

==========  =====================================  ============
Field       Meaning                                Example
==========  =====================================  ============
``yyyy``    four digit year                        ``2021``
``yy``      two digit year                         ``21``
``M/MM``    month number (padded)                  ``9`` / ``09``
``MMM``     abbreviated month name                 ``Sep``
``MMMM``    full month name                        ``September``
``d/dd``    day of month (padded)                  ``1`` / ``01``
``do``      ordinal day of month                   ``1st``
``E/EEE``   abbreviated weekday                    ``Wed``
``EEEE``    full weekday                           ``Wednesday``
``h/hh``    12-hour clock hour (padded)            ``8`` / ``08``
``H/HH``    24-hour clock hour (padded)            ``8`` / ``08``
``m/mm``    minute (padded)                        ``5`` / ``05``
``s/ss``    second (padded)                        ``7`` / ``07``
``a``       ``AM`` / ``PM``                        ``AM``
``aaa``     ``am`` / ``pm``                        ``am``
==========  =====================================  ============

Text in single quotes is copied literally (``''`` is a quote). Any other
letter run is copied through unchanged.
"""

from __future__ import annotations

import re
from datetime import date, datetime, time, timedelta, tzinfo

from dateutil.tz import tzlocal

from calimport.models import TimeWindow

MONTH_NAMES = (
    "January",
    "February",
    "March",
    "April",
    "May",
    "June",
    "July",
    "August",
    "September",
    "October",
    "November",
    "December",
)
WEEKDAY_NAMES = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")

_PATTERN_TOKEN = re.compile(r"(?P<quoted>'(?:[^']|'')*')|(?P<ordinal>do)|(?P<field>(?P<ch>[A-Za-z])(?P=ch)*)")
_DAILY_PAGE_TITLE = re.compile(
    r"^(?P<month>" + "|".join(MONTH_NAMES) + r")\s+(?P<day>\d{1,2})(?:st|nd|rd|th),\s*(?P<year>\d{4})$"
)


def local_timezone() -> tzinfo:
    """Return the viewer's local time zone, with its daylight-saving rules."""
    return tzlocal()


def ordinal(value: int) -> str:
    if 10 <= value % 100 <= 20:
        suffix = "th"
    else:
        suffix = {1: "st", 2: "nd", 3: "rd"}.get(value % 10, "th")
    return f"{value}{suffix}"


def _render_field(value: datetime, letters: str) -> str:
    ch, width = letters[0], len(letters)
    hour12 = value.hour % 12 or 12
    if ch == "y":
        return f"{value.year % 100:02d}" if width == 2 else f"{value.year:0{width}d}"
    if ch == "M":
        if width >= 4:
            return MONTH_NAMES[value.month - 1]
        if width == 3:
            return MONTH_NAMES[value.month - 1][:3]
        return f"{value.month:0{width}d}"
    if ch == "d":
        return f"{value.day:0{width}d}"
    if ch == "E":
        name = WEEKDAY_NAMES[value.weekday()]
        return name if width >= 4 else name[:3]
    if ch == "h":
        return f"{hour12:0{width}d}"
    if ch == "H":
        return f"{value.hour:0{width}d}"
    if ch == "m":
        return f"{value.minute:0{width}d}"
    if ch == "s":
        return f"{value.second:0{width}d}"
    if ch == "a":
        meridiem = "AM" if value.hour < 12 else "PM"
        return meridiem.lower() if width == 3 else meridiem
    return letters


def format_instant(value: datetime, pattern: str) -> str:
    """Render ``value`` using a date-field ``pattern`` such as ``hh:mm a``."""
    parts: list[str] = []
    position = 0
    for match in _PATTERN_TOKEN.finditer(pattern):
        parts.append(pattern[position : match.start()])
        position = match.end()
        if match.group("quoted") is not None:
            quoted = match.group("quoted")
            parts.append("'" if quoted == "''" else quoted[1:-1].replace("''", "'"))
        elif match.group("ordinal") is not None:
            parts.append(ordinal(value.day))
        else:
            parts.append(_render_field(value, match.group("field")))
    parts.append(pattern[position:])
    return "".join(parts)


def day_window(day: date, tz: tzinfo) -> TimeWindow:
    """Return ``[start of day, start of next day)`` in ``tz``."""
    return TimeWindow(
        start=datetime.combine(day, time.min, tzinfo=tz),
        end=datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz),
    )


def daily_page_title(day: date) -> str:
    """Format ``day`` the way outliner daily pages are titled (``October 19th, 2026``)."""
    return f"{MONTH_NAMES[day.month - 1]} {ordinal(day.day)}, {day.year}"


def parse_day(text: str | None) -> date | None:
    """Parse an ISO date or a daily-page title; return ``None`` when neither matches."""
    if not text:
        return None
    normalized = text.strip()
    try:
        return date.fromisoformat(normalized)
    except ValueError:
        pass

    match = _DAILY_PAGE_TITLE.match(normalized)
    if match is None:
        return None
    try:
        return date(
            int(match.group("year")),
            MONTH_NAMES.index(match.group("month")) + 1,
            int(match.group("day")),
        )
    except ValueError:
        return None
