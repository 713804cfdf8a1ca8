import re
from datetime import date, datetime, timezone

_COMPACT_DATE_RE = re.compile(r"^\d{8}$")
_ISO_DATE_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})(?:[T ].*)?$")


def normalize_sheet_date(value: str | date | datetime | None) -> str:
    """
    Normalize a date-named sheet label to the 8-digit ``YYYYMMDD`` form.

    Accepted inputs:
    - ``None`` or blank string -> ``""``
    - ``"20250825"`` (already compact) -> unchanged
    - ``"2025-08-25"`` / ``"2025-08-25T00:00:00Z"`` / ``"2025-08-25 09:30"`` -> ``"20250825"``
      (the date portion is taken as written, no timezone shifting)
    - ``date`` / ``datetime`` objects -> ``"YYYYMMDD"`` (aware datetimes are read in UTC)

    Anything else is returned unchanged so unknown formats only ever compare
    equal to the exact same label.
    """
    if value is None:
        return ""
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.strftime("%Y%m%d")
    if isinstance(value, date):
        return value.strftime("%Y%m%d")

    text = str(value)
    stripped = text.strip()
    if not stripped:
        return ""
    if _COMPACT_DATE_RE.match(stripped):
        return stripped
    match = _ISO_DATE_RE.match(stripped)
    if match:
        return "".join(match.groups())
    return text
