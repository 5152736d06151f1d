from __future__ import annotations

from datetime import date, datetime, time, timezone
import re
from typing import Any

import pandas as pd


def normalize_key(value: str | None) -> str:
    if not value:
        return ""
    cleaned = value.replace("\ufeff", "").replace("\u00a0", " ").strip()
    cleaned = re.sub(r"\s+", " ", cleaned)
    return cleaned.casefold()


def parse_timestamp(value: Any) -> datetime | None:
    """Parse a stored timestamp into an aware datetime.

    Naive values are taken as UTC. Dates become midnight UTC.
    """
    if value in (None, ""):
        return None
    if isinstance(value, pd.Timestamp):
        if pd.isna(value):
            return None
        value = value.to_pydatetime()
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    text = str(value).strip()
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        try:
            coerced = pd.to_datetime(text, errors="coerce", utc=True)
        except (TypeError, ValueError):
            return None
        if pd.isna(coerced):
            return None
        return coerced.to_pydatetime()
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_timestamp(value: datetime | None) -> str | None:
    if value is None:
        return None
    return to_utc(value).isoformat()


def to_float(value: Any) -> float | None:
    if value in (None, "") or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if number != number:
        return None
    return number
