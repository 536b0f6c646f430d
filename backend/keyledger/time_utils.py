"""
All datetimes stored by the ledger are UTC without tzinfo. Conversion to
and from aware values happens only at the API edge.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional


_EPOCH = datetime(1970, 1, 1)


def utcnow() -> datetime:
    """Server-side 'now' in UTC (naive, canonical)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _as_naive_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def parse_iso_datetime(value: Optional[str]) -> Optional[datetime]:
    """
    ISO-8601 string -> naive UTC datetime. Blank input gives None.

    Offsets and a trailing 'Z' are honoured; values without an offset are
    taken to be UTC already. Raises ValueError on anything unparseable.
    """
    if not value or not value.strip():
        return None
    text = value.strip()
    if text[-1] in "zZ":
        text = text[:-1] + "+00:00"
    return _as_naive_utc(datetime.fromisoformat(text))


def to_utc_z(dt: Optional[datetime]) -> Optional[str]:
    """Second-precision ISO-8601 with a trailing 'Z'; None passes through."""
    if dt is None:
        return None
    return _as_naive_utc(dt).replace(microsecond=0).isoformat() + "Z"


def to_epoch_millis(dt: datetime) -> int:
    return (_as_naive_utc(dt) - _EPOCH) // timedelta(milliseconds=1)


def add_millis(dt: datetime, millis: int) -> datetime:
    return dt + timedelta(milliseconds=millis)
