from datetime import datetime, timezone


def utcnow() -> datetime:
    """Timezone-naive UTC now (what the SQL columns store)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
