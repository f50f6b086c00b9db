from datetime import datetime, timezone


def utcnow():
    """Naive UTC timestamp, matching how the database stores DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def from_unix(timestamp):
    if timestamp is None:
        return None
    return datetime.fromtimestamp(int(timestamp), tz=timezone.utc).replace(tzinfo=None)


def isoformat(value):
    return value.isoformat() if value else None
