"""Clock and human-friendly time parsing.

All timestamps handled by tallybook are timezone-aware. Local times typed
by the user take the UTC offset of the reference ``now`` and keep it; a
timestamp is never converted into another zone behind the user's back.
"""

import re
from datetime import datetime, timedelta

from tallybook.errors import ValidationError

_LOCAL_FORMATS = (
    "%Y-%m-%dT%H:%M",
    "%Y-%m-%d %H:%M",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d",
)

_OFFSET_FORMATS = (
    "%Y-%m-%dT%H:%M %z",
    "%Y-%m-%d %H:%M %z",
    "%Y-%m-%dT%H:%M:%S %z",
    "%Y-%m-%d %H:%M:%S %z",
)

_TIME_ONLY_FORMATS = (
    "%H:%M",
    "%Hh%M",
    "%H:%M:%S",
)

_DAY_PREFIXES = {
    "yesterday": -1,
    "yst": -1,
    "today": 0,
    "tomorrow": 1,
    "tmrw": 1,
}

_DURATION_UNITS = {
    "w": timedelta(weeks=1),
    "d": timedelta(days=1),
    "h": timedelta(hours=1),
    "m": timedelta(minutes=1),
    "s": timedelta(seconds=1),
}

_DURATION_PATTERN = re.compile(r"(?:\d+[a-z]+)+")
_DURATION_COMPONENT = re.compile(r"(\d+)([a-z]+)")


def now() -> datetime:
    """Current local time with a fixed UTC offset, truncated to whole seconds."""
    return datetime.now().astimezone().replace(microsecond=0)


def start_of_day(moment: datetime) -> datetime:
    return moment.replace(hour=0, minute=0, second=0, microsecond=0)


def parse_timestamp(text: str, reference: datetime | None = None) -> datetime:
    """Parse a timestamp the way people type them.

    Accepted forms (``reference`` defaults to :func:`now`):

    - ``now``
    - ``2021-11-04 12:43`` / ``2021-11-04T12:43:23`` / ``2021-11-04``
      (local, in the reference offset)
    - ``2021-11-04 12:43:23 +02:00`` or any ISO-8601 string with an offset
    - ``10:00``, ``10h00``, ``10:23:44`` (today)
    - ``yesterday@10:00``, ``yst@10:00``, ``tomorrow@10:00``, ``tmrw@10:00``

    Args:
        text: The user-supplied timestamp.
        reference: The moment "now" refers to.

    Returns:
        A timezone-aware datetime.

    Raises:
        ValidationError: If the text matches none of the forms above.
    """
    reference = reference or now()
    raw = text.strip()

    if raw.lower() == "now":
        return reference

    for fmt in _LOCAL_FORMATS:
        try:
            return datetime.strptime(raw, fmt).replace(tzinfo=reference.tzinfo)
        except ValueError:
            continue

    for fmt in _OFFSET_FORMATS:
        try:
            return datetime.strptime(raw, fmt)
        except ValueError:
            continue

    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        parsed = None
    if parsed is not None and parsed.tzinfo is not None:
        return parsed

    day_offset, clock = _split_day_prefix(raw)
    for fmt in _TIME_ONLY_FORMATS:
        try:
            t = datetime.strptime(clock, fmt).time()
        except ValueError:
            continue
        moment = reference.replace(hour=t.hour, minute=t.minute, second=t.second, microsecond=0)
        return moment + timedelta(days=day_offset)

    raise ValidationError(f"invalid date/time: {text!r}")


def _split_day_prefix(raw: str) -> tuple[int, str]:
    parts = raw.lower().split("@")
    if len(parts) == 1:
        return 0, parts[0].strip()
    if len(parts) == 2 and parts[0].strip() in _DAY_PREFIXES:
        return _DAY_PREFIXES[parts[0].strip()], parts[1].strip()
    raise ValidationError(f"invalid date/time: {raw!r}")


def parse_duration(text: str) -> timedelta:
    """Parse durations such as ``30m``, ``1h30m``, ``1d 4h`` or ``2w``."""
    compact = "".join(text.lower().split())
    if not compact or not compact[0].isdigit():
        raise ValidationError(f"durations must start with a number: {text!r}")
    if not _DURATION_PATTERN.fullmatch(compact):
        raise ValidationError(f"invalid duration: {text!r}")

    total = timedelta()
    for amount, unit in _DURATION_COMPONENT.findall(compact):
        if unit not in _DURATION_UNITS:
            raise ValidationError(f"invalid units for duration: {unit!r} in {text!r}")
        total += int(amount) * _DURATION_UNITS[unit]
    return total


def format_duration(duration: timedelta) -> str:
    """Format a duration into a human-readable string.

    Args:
        duration: Duration to format

    Returns:
        Formatted string like "1h 23m" or "1w 3d 4h"
    """
    seconds = int(duration.total_seconds())
    if seconds <= 0:
        return "0s"

    parts = []
    for unit, size in (("w", 604800), ("d", 86400), ("h", 3600), ("m", 60), ("s", 1)):
        amount, seconds = divmod(seconds, size)
        if amount > 0:
            parts.append(f"{amount}{unit}")

    return " ".join(parts)


def parse_range(text: str, reference: datetime | None = None) -> tuple[datetime | None, datetime | None]:
    """Turn a named period into ``[from, to)`` bounds.

    Supports ``today``, ``yesterday``, ``tomorrow``, ``week``, ``month``,
    ``year`` (and their ``this-`` forms), ``N days`` (the last N days up to
    now), ``from <timestamp>`` and ``to <timestamp>``. An open side is None.
    """
    reference = reference or now()
    today = start_of_day(reference)
    key = text.strip().lower()

    if key == "today":
        return today, today + timedelta(days=1)
    if key in ("yesterday", "yst"):
        return today - timedelta(days=1), today
    if key in ("tomorrow", "tmrw"):
        return today + timedelta(days=1), today + timedelta(days=2)
    if key in ("week", "this-week"):
        monday = today - timedelta(days=today.weekday())
        return monday, monday + timedelta(days=7)
    if key in ("month", "this-month"):
        first = today.replace(day=1)
        return first, (first + timedelta(days=32)).replace(day=1)
    if key in ("year", "this-year"):
        first = today.replace(month=1, day=1)
        return first, first.replace(year=first.year + 1)

    head, _, rest = key.partition(" ")
    rest = rest.strip()
    if rest == "days" and head.isdigit():
        return today - timedelta(days=int(head)), reference
    if head in ("from", "starting", "start") and rest:
        return parse_timestamp(text.strip()[len(head):], reference), None
    if head in ("to", "before", "ending") and rest:
        return None, parse_timestamp(text.strip()[len(head):], reference)

    raise ValidationError(f"invalid time range: {text!r}")
