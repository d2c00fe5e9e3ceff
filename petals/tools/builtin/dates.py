"""Lenient date parsing shared by the calendar and reminder tools."""
from datetime import date, datetime, time, timedelta
from typing import Optional, Tuple

from ...errors import ToolError

_FORMATS = ("%Y-%m-%d %H:%M:%S", "%Y-%m-%d %H:%M", "%Y-%m-%d")


def parse_datetime(value: Optional[str], field: str, end_of_day: bool = False) -> Optional[datetime]:
    """Parse ISO 8601 (with or without offset), ``YYYY-MM-DD HH:MM[:SS]`` or ``YYYY-MM-DD``.

    Blank values and the literal ``null`` mean "not given". Aware datetimes are
    converted to naive local time. A bare date resolves to the start of that
    day, or its last second when ``end_of_day`` is set.
    """
    if value is None:
        return None
    text = value.strip()
    if not text or text.lower() == "null":
        return None

    lowered = text.lower()
    if lowered in ("today", "tomorrow", "yesterday"):
        offset = {"today": 0, "tomorrow": 1, "yesterday": -1}[lowered]
        return _bound(date.today() + timedelta(days=offset), end_of_day)

    if len(text) == 10:
        try:
            return _bound(datetime.strptime(text, "%Y-%m-%d").date(), end_of_day)
        except ValueError:
            pass

    iso = text[:-1] + "+00:00" if text.endswith("Z") else text
    try:
        parsed = datetime.fromisoformat(iso)
    except ValueError:
        parsed = None
        for fmt in _FORMATS:
            try:
                parsed = datetime.strptime(text, fmt)
                break
            except ValueError:
                continue
    if parsed is None:
        raise ToolError(f"Invalid date format for {field}: {value!r}")
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed


def _bound(day: date, end_of_day: bool) -> datetime:
    return datetime.combine(day, time(23, 59, 59) if end_of_day else time.min)


def date_window(start: Optional[str], end: Optional[str], days: int = 7) -> Tuple[datetime, datetime]:
    """Resolve an optional start/end pair; defaults to today through ``days`` days ahead."""
    start_at = parse_datetime(start, "start_date")
    end_at = parse_datetime(end, "end_date", end_of_day=True)
    if start_at is None:
        start_at = _bound(date.today(), False)
    if end_at is None:
        end_at = _bound(start_at.date() + timedelta(days=days), True)
    if end_at < start_at:
        raise ToolError(f"end_date {end_at:%Y-%m-%d %H:%M} is before start_date {start_at:%Y-%m-%d %H:%M}")
    return start_at, end_at


def format_when(dt: datetime, all_day: bool = False) -> str:
    return dt.strftime("%Y-%m-%d") if all_day else dt.strftime("%Y-%m-%d %H:%M")
