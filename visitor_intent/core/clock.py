from datetime import datetime, timezone


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every table column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def seconds_between(later: datetime, earlier: datetime) -> int:
    # Client and server clocks disagree; never let a duration go negative.
    return int(abs((later - earlier).total_seconds()))
