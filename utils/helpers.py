from datetime import datetime, timezone # For timestamp handling.


def utcnow():
    """
    Current UTC time as a naive datetime.

    All DateTime columns store naive UTC values, so comparisons against them must
    use naive UTC too.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def from_unix_timestamp(value):
    """
    Converts a Unix timestamp (as sent by Stripe) into a naive UTC datetime.

    Args:
        value (int, float, str or None): Seconds since the epoch.

    Returns:
        datetime or None: None when `value` is missing or not numeric.
    """
    if value is None or value == '':
        return None
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return None
    return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)


def isoformat_or_none(value):
    """ISO-8601 string for a datetime, or None."""
    return value.isoformat() if value else None


def days_until(moment, now):
    """
    Whole days from `now` until `moment`, never negative.
    Returns None when `moment` is not set.
    """
    if moment is None:
        return None
    seconds = (moment - now).total_seconds()
    if seconds <= 0:
        return 0
    # Partial days count as a full day left.
    return int(-(-seconds // 86400))
