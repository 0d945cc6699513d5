from __future__ import annotations

import re
from datetime import date, datetime
from typing import Optional, Union

from dateutil import parser as date_parser


_SEPARATORS_RE = re.compile(r"[–\-.]")


def parse_portal_date(value: Optional[str]) -> Optional[date]:
    """
    Parse listing dates written day-first, e.g.:
    - "16/10/2026"
    - "16-10-2026"
    - "16/10/2026 21:04:11"

    Returns None for blank or unparseable text so callers can rank such rows last.
    """
    if value is None:
        return None
    s = _SEPARATORS_RE.sub("/", value.strip())
    if not s:
        return None
    try:
        return date_parser.parse(s, dayfirst=True, yearfirst=False).date()
    except (ValueError, OverflowError):
        return None


def coerce_iso_date(value: Union[str, date, datetime, None]) -> date:
    """
    Accept the shapes a DB-API driver hands back for a date column.
    """
    if value is None:
        raise ValueError("coerce_iso_date: value is None")
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    s = str(value).strip()
    if not s:
        raise ValueError("coerce_iso_date: empty string")
    return date.fromisoformat(s[:10])
