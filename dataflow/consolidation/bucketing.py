"""
Bucketing Policy

Maps an event time to the start of the bucket that contains it.
Buckets are aligned to the UTC epoch and are half-open: [start, start + period).
"""

from datetime import datetime, timezone

from schemas.market_data import Resolution

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
NAIVE_EPOCH = EPOCH.replace(tzinfo=None)


def bucket_start(time: datetime, resolution: Resolution) -> datetime:
    """Get the start time for a bucket containing this timestamp"""
    if resolution.is_native:
        return time

    epoch = EPOCH if time.tzinfo is not None else NAIVE_EPOCH
    period = resolution.period
    return epoch + ((time - epoch) // period) * period


def bucket_end(time: datetime, resolution: Resolution) -> datetime:
    """Get the exclusive end time of the bucket containing this timestamp"""
    return bucket_start(time, resolution) + resolution.period
