"""
Date range chunking for school-year syncs.
"""

from datetime import date, timedelta
from typing import List

from attendance_sync.core.sis_config import DateChunk
from attendance_sync.integrations.sis.error_handler import (
    InvalidConfigurationError, InvalidRangeError
)


def plan_date_chunks(start: date, end: date, chunk_days: int) -> List[DateChunk]:
    """
    Split the inclusive range [start, end] into consecutive chunks.

    Every chunk spans at most ``chunk_days`` days, chunks neither overlap nor
    leave gaps, and the last chunk ends exactly on ``end``. The result depends
    only on the three arguments.

    Raises:
        InvalidRangeError: If start is after end
        InvalidConfigurationError: If chunk_days is not positive
    """
    if isinstance(chunk_days, bool) or not isinstance(chunk_days, int) or chunk_days <= 0:
        raise InvalidConfigurationError(
            f"chunk_days must be a positive integer, got {chunk_days!r}",
            details={'chunk_days': chunk_days}
        )
    if start > end:
        raise InvalidRangeError(
            f"Start date {start.isoformat()} is after end date {end.isoformat()}",
            details={'start': start.isoformat(), 'end': end.isoformat()}
        )

    chunks: List[DateChunk] = []
    step = timedelta(days=chunk_days - 1)
    cursor = start
    while cursor <= end:
        chunk_end = min(cursor + step, end)
        chunks.append(DateChunk(start=cursor, end=chunk_end))
        cursor = chunk_end + timedelta(days=1)
    return chunks
