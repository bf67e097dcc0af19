"""Clock used by the engine; injectable everywhere a timestamp is taken."""

from datetime import datetime


def utc_now() -> datetime:
    """Current time as a naive UTC datetime (the catalog stores naive UTC)."""
    return datetime.utcnow()
