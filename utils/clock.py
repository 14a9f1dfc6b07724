from datetime import datetime, timezone


def utcnow() -> datetime:
    """Naive UTC timestamp, comparable with the DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
