"""
Timestamp utilities.

All timestamps stored by the trade assistant are timezone-aware
`pandas.Timestamp` objects in UTC.  Conversion to a local timezone only
happens when records are displayed or exported.
"""

from __future__ import annotations

from typing import Any, Optional
import pandas as pd


def utc_now() -> pd.Timestamp:
    """Return the current time as a UTC `pandas.Timestamp`."""
    return pd.Timestamp.now(tz="UTC")


def to_timezone(ts: pd.Timestamp, tz_name: str) -> pd.Timestamp:
    """Convert a `pandas.Timestamp` to the specified timezone.

    If the timestamp is naive, it is assumed to be in UTC before
    conversion.  If it already has a timezone, it will be converted.
    """
    if not isinstance(ts, pd.Timestamp):
        ts = pd.Timestamp(ts)
    if ts.tzinfo is None:
        ts = ts.tz_localize("UTC")
    return ts.tz_convert(tz_name)


def parse_timestamp(value: Any) -> Optional[pd.Timestamp]:
    """Parse an ISO string or epoch milliseconds into a UTC timestamp.

    Returns `None` for empty or unparseable values so that a damaged
    record does not prevent the rest of the state file from loading.
    """
    if value is None or value == "":
        return None
    try:
        if isinstance(value, (int, float)):
            ts = pd.Timestamp(value, unit="ms")
        else:
            ts = pd.Timestamp(value)
    except (ValueError, TypeError):
        return None
    if pd.isna(ts):
        return None
    return to_timezone(ts, "UTC")
