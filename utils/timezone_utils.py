"""
Timezone Consistency Utilities
All stored and compared datetimes are timezone-aware UTC
"""

import logging
from datetime import datetime, timezone, date as date_type
from typing import Optional, Union

import pytz

logger = logging.getLogger(__name__)

# Payment gateways operating in India report transaction dates in IST
IST = pytz.timezone('Asia/Kolkata')


def utc_now() -> datetime:
    """Current time in UTC"""
    return datetime.now(timezone.utc)


def ensure_aware(dt: Union[datetime, date_type, str, None]) -> Optional[datetime]:
    """
    Safely convert date/datetime/ISO string values to timezone-aware UTC datetimes.
    Plain dates become midnight UTC; naive datetimes are assumed to be UTC.
    """
    if dt is None:
        return None

    if isinstance(dt, str):
        value = dt.strip()
        if not value:
            return None
        if value.endswith('Z'):
            value = value[:-1] + '+00:00'
        try:
            dt = datetime.fromisoformat(value)
        except ValueError:
            logger.warning(f"⚠️ Unparseable timestamp: {dt!r}")
            return None

    if isinstance(dt, date_type) and not isinstance(dt, datetime):
        dt = datetime.combine(dt, datetime.min.time(), tzinfo=timezone.utc)

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def minutes_since(dt: Union[datetime, str, None], now: Optional[datetime] = None) -> Optional[float]:
    """Age of a timestamp in minutes, None when the timestamp is missing"""
    aware = ensure_aware(dt)
    if aware is None:
        return None
    now = now or utc_now()
    return (now - aware).total_seconds() / 60.0


def format_ist_date(dt: Union[datetime, str, None] = None) -> str:
    """Format a timestamp as dd-mm-YYYY in Asia/Kolkata"""
    aware = ensure_aware(dt) or utc_now()
    return aware.astimezone(IST).strftime('%d-%m-%Y')


def isoformat_or_none(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None
