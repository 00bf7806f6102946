"""Shared datetime helpers; timestamps are stored as naive UTC"""

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current UTC time as a naive datetime"""
    return datetime.now(timezone.utc).replace(tzinfo=None)
