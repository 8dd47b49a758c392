"""
Helpers shared by every table model: ids and naive-UTC timestamps.
"""

from datetime import datetime, timedelta, timezone
from uuid import uuid4


def utcnow() -> datetime:
    """Naive UTC now. Both backends store timestamps without a zone, so
    timestamp columns are declared with a plain (zone-less) DateTime type."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def next_timestamp(previous: datetime | None) -> datetime:
    """A timestamp strictly after `previous`, used as the row version."""
    now = utcnow()
    if previous is not None and now <= previous:
        return previous + timedelta(microseconds=1)
    return now


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex}"


def enum_value(value):
    """Plain value of an Enum member, passthrough for anything else."""
    return getattr(value, "value", value)
