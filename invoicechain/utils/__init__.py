from datetime import datetime, timezone


def utcnow() -> datetime:
    """Naive UTC timestamp, matching what the database columns round-trip"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


__all__ = ['utcnow']
