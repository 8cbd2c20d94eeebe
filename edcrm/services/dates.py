"""
Date and value normalisation for workbook cells.

Cells reach us in three shapes: Excel serial numbers (days since 1899-12-30),
ISO-8601 strings from Graph, and UK DD/MM/YYYY strings typed by users.
Everything here returns naive local datetimes or display strings and never
raises on bad input; None / "" mean "no date".
"""

import math
import re
from datetime import date, datetime, timedelta
from typing import Optional, Union


# Days between Excel's epoch (1899-12-30, which absorbs the 1900 leap-year bug)
# and the Unix epoch.
EXCEL_EPOCH_OFFSET_DAYS = 25569
SECONDS_PER_DAY = 86400

_UNIX_EPOCH = datetime(1970, 1, 1)
_LEADING_INT = re.compile(r"^\s*([+-]?\d+)")
_UK_DATETIME = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})\s(\d{1,2}):(\d{1,2})$")

CellValue = Union[str, int, float, bool, None]


def _leading_int(text: str) -> Optional[int]:
    match = _LEADING_INT.match(text)
    return int(match.group(1)) if match else None


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _serial_to_utc(serial: float) -> Optional[datetime]:
    """Excel serial -> naive datetime holding the UTC wall time."""
    try:
        seconds = round((serial - EXCEL_EPOCH_OFFSET_DAYS) * SECONDS_PER_DAY)
        return _UNIX_EPOCH + timedelta(seconds=seconds)
    except (OverflowError, ValueError):
        return None


def _parse_iso(text: str) -> Optional[datetime]:
    """ISO-8601 -> naive local datetime. Offset-less input is already local."""
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed


def _midnight(value: datetime) -> datetime:
    return value.replace(hour=0, minute=0, second=0, microsecond=0)


def _uk(value: Union[date, datetime]) -> str:
    return f"{value.day:02d}/{value.month:02d}/{value.year}"


def parse_uk_date(value: CellValue) -> Optional[datetime]:
    """
    Parse a cell into a local datetime at midnight.

    Args:
        value: Excel serial, ISO string ending in Z, or DD/MM/YYYY string.
               Two-digit years pivot at 70.

    Returns:
        datetime at 00:00, or None when the value is blank or unparseable.

    Example:
        parse_uk_date(44927)          # 2023-01-01 00:00
        parse_uk_date("05/03/24")     # 2024-03-05 00:00
        parse_uk_date("31/02/2024")   # None
    """
    if value is None or value == "" or isinstance(value, bool):
        return None

    if _is_number(value):
        utc = _serial_to_utc(value)
        if utc is None:
            return None
        return datetime(utc.year, utc.month, utc.day)

    text = str(value).strip()

    if "T" in text and "Z" in text:
        instant = _parse_iso(text)
        if instant is not None:
            return _midnight(instant)

    parts = re.split(r"[-/]", text)
    if len(parts) != 3:
        return None

    day, month, year = (_leading_int(part) for part in parts)
    if day is None or month is None or year is None:
        return None

    if year < 100:
        year += 2000 if year < 70 else 1900
    if not 1900 <= year <= 2100:
        return None

    try:
        return datetime(year, month, day)
    except ValueError:
        return None


def format_date_uk(value: Union[CellValue, date, datetime]) -> str:
    """Format as DD/MM/YYYY. Unparseable input is echoed back as text."""
    if isinstance(value, (date, datetime)):
        return _uk(value)

    parsed = parse_uk_date(value)
    if parsed is None:
        return str(value) if value else ""
    return _uk(parsed)


def format_datetime_uk(value: Optional[str]) -> str:
    """Format an ISO timestamp as local DD/MM/YYYY HH:MM."""
    if not value:
        return ""
    instant = _parse_iso(str(value).strip()) if isinstance(value, str) else None
    if instant is None:
        return format_date_uk(value)
    return f"{_uk(instant)} {instant.hour:02d}:{instant.minute:02d}"


def parse_uk_datetime_string(value: Optional[str]) -> Optional[datetime]:
    """Parse "DD/MM/YYYY HH:MM", falling back to a plain UK date."""
    if not value:
        return None
    text = str(value).strip()

    match = _UK_DATETIME.match(text)
    if match:
        day, month, year, hours, minutes = (int(g) for g in match.groups())
        try:
            return datetime(year, month, day, hours, minutes)
        except ValueError:
            pass

    return parse_uk_date(text)


def format_excel_datetime_uk(serial: CellValue) -> str:
    """
    Format an Excel serial as DD/MM/YYYY, adding HH:MM when it has a time part.

    The serial is timezone-agnostic so its UTC components are used as-is.
    """
    if not _is_number(serial) or math.isnan(serial):
        return ""
    utc = _serial_to_utc(serial)
    if utc is None:
        return ""
    if float(serial).is_integer():
        return _uk(utc)
    return f"{_uk(utc)} {utc.hour:02d}:{utc.minute:02d}"


def format_datetime_us_excel(value: datetime) -> str:
    """Format as M/D/YYYY h:mm:ss AM, the form Excel re-reads as a serial."""
    hours = value.hour % 12 or 12
    suffix = "PM" if value.hour >= 12 else "AM"
    return (
        f"{value.month}/{value.day}/{value.year} "
        f"{hours}:{value.minute:02d}:{value.second:02d} {suffix}"
    )


def format_excel_duration(value) -> str:
    """
    Format a call duration cell as m:ss.

    Durations are keyed in as h:mm in the sheet, so a day-fraction below one
    is scaled down by 60 to read it as m:ss.
    """
    if isinstance(value, str) and ":" in value:
        return value

    try:
        number = float(value)
    except (TypeError, ValueError):
        return str(value or "")

    if math.isnan(number) or number < 0:
        return str(value or "")

    if 0 < number < 1:
        number = number / 60

    total_seconds = int(math.floor(number * SECONDS_PER_DAY + 0.5))

    # An empty cell is not a zero-length call
    if total_seconds == 0 and str(value).strip() not in ("0", "0.0"):
        return ""

    return f"{total_seconds // 60}:{total_seconds % 60:02d}"


def get_excel_serial_date(value: datetime) -> float:
    """Convert a datetime to an Excel serial, reading its fields as UTC."""
    wall = datetime(value.year, value.month, value.day, value.hour, value.minute, value.second)
    return (wall - _UNIX_EPOCH).total_seconds() / SECONDS_PER_DAY + EXCEL_EPOCH_OFFSET_DAYS


def parse_duration_to_seconds(value: Optional[str]) -> int:
    """
    Parse a duration into seconds.

    Accepts "m:ss", the older "Xm Ys" form, or a bare number of minutes.

    Example:
        parse_duration_to_seconds("2:07")    # 127
        parse_duration_to_seconds("3m 5s")   # 185
        parse_duration_to_seconds("4")       # 240
    """
    if not value:
        return 0
    text = str(value).strip()

    pieces = text.split(":")
    if len(pieces) == 2:
        minutes, seconds = _leading_int(pieces[0]), _leading_int(pieces[1])
        if minutes is not None and seconds is not None:
            return minutes * 60 + seconds

    total = 0
    minute_match = re.search(r"(\d+)\s*m", text)
    second_match = re.search(r"(\d+)\s*s", text)
    if minute_match:
        total += int(minute_match.group(1)) * 60
    if second_match:
        total += int(second_match.group(1))
    if total > 0:
        return total

    minutes_only = _leading_int(text)
    return minutes_only * 60 if minutes_only is not None else 0


def parse_uk_datetime(date_str: Optional[str], time_str: Optional[str] = None) -> Optional[datetime]:
    """Combine a UK date and an optional HH:MM time."""
    parsed = parse_uk_date(date_str)
    if parsed is None:
        return None

    if time_str:
        pieces = time_str.split(":")
        if len(pieces) >= 2:
            hours, minutes = _leading_int(pieces[0]), _leading_int(pieces[1])
            if hours is not None and minutes is not None:
                parsed = parsed + timedelta(hours=hours, minutes=minutes)
    return parsed


def autoformat_date_input(value: str) -> str:
    """
    Format a date as the user types it, e.g. "010220" -> "01/02/20".

    Only the text before the first space is touched so a trailing time survives.
    """
    parts = value.split(" ")
    date_part = parts[0]
    time_part = " " + " ".join(parts[1:]) if len(parts) > 1 else ""

    digits = re.sub(r"\D", "", date_part)

    if not digits:
        return time_part.strip()
    if len(digits) <= 2:
        return digits + time_part
    if len(digits) <= 4:
        return f"{digits[:2]}/{digits[2:]}" + time_part
    return f"{digits[:2]}/{digits[2:4]}/{digits[4:8]}" + time_part


# ---------------------------------------------------------------------------
# Calendar predicates (local time)
# ---------------------------------------------------------------------------

def _today(now: Optional[datetime] = None) -> datetime:
    return _midnight(now or datetime.now())


def get_start_of_week(value: datetime) -> datetime:
    """Monday 00:00 of the week containing value."""
    return _midnight(value) - timedelta(days=value.weekday())


def get_start_of_month(value: datetime) -> datetime:
    return datetime(value.year, value.month, 1)


def is_overdue(date_str: Optional[str], now: Optional[datetime] = None) -> bool:
    due = parse_uk_date(date_str)
    if due is None:
        return False
    return due < _today(now)


def is_due_in_next_7_days(date_str: Optional[str], now: Optional[datetime] = None) -> bool:
    due = parse_uk_date(date_str)
    if due is None:
        return False
    today = _today(now)
    return today <= due <= today + timedelta(days=7)


def is_today(date_str: Optional[str], now: Optional[datetime] = None) -> bool:
    item = parse_uk_datetime_string(date_str)
    if item is None:
        return False
    return item.date() == (now or datetime.now()).date()


def is_this_week(date_str: Optional[str], now: Optional[datetime] = None) -> bool:
    """Between Monday of the current week and today, inclusive."""
    item = parse_uk_datetime_string(date_str)
    if item is None:
        return False
    item = _midnight(item)
    today = _today(now)
    if item > today:
        return False
    return item >= get_start_of_week(today)


def is_last_week(date_str: Optional[str], now: Optional[datetime] = None) -> bool:
    """Monday to Sunday of the previous calendar week."""
    item = parse_uk_date(date_str)
    if item is None:
        return False
    start = get_start_of_week(_today(now) - timedelta(days=7))
    end = start + timedelta(days=7) - timedelta(microseconds=1)
    return start <= item <= end


def is_in_last_7_days(date_str: Optional[str], now: Optional[datetime] = None) -> bool:
    """Today plus the previous six days."""
    item = parse_uk_datetime_string(date_str)
    if item is None:
        return False
    item = _midnight(item)
    today = _today(now)
    if item > today:
        return False
    return item >= today - timedelta(days=6)
