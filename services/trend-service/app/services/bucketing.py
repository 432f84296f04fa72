"""
Splitting of one multi-period record set into per-period summaries.

Bucketing a single bulk fetch over P1..Pn yields the same summaries as
fetching and summarizing each Pi on its own, which is what lets the trend
assembler replace n upstream calls with one.
"""

from datetime import date, datetime
from typing import Callable, Dict, Iterable, List, Sequence, Tuple

from ..core.logging_config import get_logger
from ..domain.entities import Period, RawRecord, Summary
from .summarizer import summarize_orders

logger = get_logger(__name__)

LocalDate = Callable[[datetime], date]


def bucket_records(
    records: Iterable[RawRecord],
    periods: Sequence[Period],
    to_local_date: LocalDate,
) -> Tuple[Dict[Period, List[RawRecord]], int]:
    """
    Assign each record to the first period containing its local date.

    Args:
        records: Records spanning any number of periods
        periods: Ordered period boundaries
        to_local_date: Maps a record timestamp to its calendar date

    Returns:
        (records per period, number of records outside every period)
    """
    buckets: Dict[Period, List[RawRecord]] = {period: [] for period in periods}
    unassigned = 0

    for record in records:
        day = to_local_date(record.timestamp)
        for period in periods:
            if period.contains(day):
                buckets[period].append(record)
                break
        else:
            unassigned += 1

    return buckets, unassigned


def summarize_buckets(
    records: Iterable[RawRecord],
    periods: Sequence[Period],
    to_local_date: LocalDate,
) -> Dict[Period, Summary]:
    """
    Summarize a record set once per period.

    Empty buckets get the empty summary without running the summarizer.
    """
    buckets, unassigned = bucket_records(records, periods, to_local_date)
    if unassigned:
        logger.debug("records_outside_periods", count=unassigned)

    return {
        period: summarize_orders(bucket) if bucket else Summary.empty()
        for period, bucket in buckets.items()
    }
