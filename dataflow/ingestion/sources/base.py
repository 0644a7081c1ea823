"""
Data Source Contract

A data source returns pages of time-ordered items for one tick type,
starting at (and including) a given time.
"""

from datetime import datetime
from typing import Dict, List, Optional, Protocol, Sequence, Tuple

from schemas.market_data import DataPoint, TickType


class DataSourceError(Exception):
    """
    A fetch failed (network, authentication, rate limit).

    Transient: the unit of work can be retried from its last persisted cursor.
    """

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TickSource(Protocol):
    """Historical data source consumed by the ingest loop"""

    async def fetch(
        self,
        tick_type: TickType,
        start: datetime,
        max_count: int,
        end: Optional[datetime] = None,
    ) -> Sequence[DataPoint]:
        """
        Fetch up to `max_count` items with start <= time (< end when given).

        An empty result means the window is exhausted. Items already returned
        by the previous call at the resume timestamp are not returned again.

        Raises:
            DataSourceError: If the fetch failed
        """
        ...


class ResumeBoundary:
    """
    Drops items re-yielded at the inclusive resume timestamp.

    Paged queries restart at the latest timestamp handed out so far, so a
    page may repeat items already returned at that timestamp. The boundary
    remembers the latest timestamp and how many items were handed out at it,
    and skips that many. A late item in a page does not move the boundary.

    Example usage:
        boundary = ResumeBoundary()
        limit = max_count + boundary.skip_count(tick_type, start)
        page = await query(start, limit)
        items = boundary.filter(tick_type, start, page)[:max_count]
        boundary.record(tick_type, items)
    """

    def __init__(self):
        # tick type -> (latest time handed out, items handed out at that time)
        self._latest: Dict[TickType, Tuple[datetime, int]] = {}

    def skip_count(self, tick_type: TickType, start: datetime) -> int:
        """Number of items at `start` that were already handed out"""
        latest = self._latest.get(tick_type)
        if latest is None or latest[0] != start:
            return 0
        return latest[1]

    def filter(self, tick_type: TickType, start: datetime, page: Sequence[DataPoint]) -> List[DataPoint]:
        skip = self.skip_count(tick_type, start)
        items = []
        for item in page:
            if skip > 0 and item.time == start:
                skip -= 1
                continue
            items.append(item)
        return items

    def record(self, tick_type: TickType, items: Sequence[DataPoint]) -> None:
        """Remember the latest timestamp handed out and its item count"""
        for item in items:
            latest = self._latest.get(tick_type)
            if latest is None or item.time > latest[0]:
                self._latest[tick_type] = (item.time, 1)
            elif item.time == latest[0]:
                self._latest[tick_type] = (item.time, latest[1] + 1)
