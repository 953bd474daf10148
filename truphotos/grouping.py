"""
Groups photos into calendar-day buckets with relative labels, plus the
small display formatters the photo views use.
"""

import calendar
import datetime
from typing import Iterable, List, Optional

from truphotos.models import DateBucket, PhotoRecord

FILE_SIZE_UNITS = ["Bytes", "KB", "MB", "GB", "TB"]


def _local(dt: datetime.datetime) -> datetime.datetime:
    # Naive datetimes are taken to be local time already.
    return dt.astimezone() if dt.tzinfo is not None else dt


def normalize_date(dt: datetime.datetime) -> datetime.datetime:
    """
    Return local midnight of the day `dt` falls on.
    """
    return _local(dt).replace(hour=0, minute=0, second=0, microsecond=0)


def format_date(dt: datetime.datetime, now: Optional[datetime.datetime] = None) -> str:
    """
    "Today", "Yesterday", "March 10" (this year) or "March 10, 2023".
    """
    now = datetime.datetime.now() if now is None else now
    day = _local(dt).date()
    today = _local(now).date()

    if day == today:
        return "Today"
    if day == today - datetime.timedelta(days=1):
        return "Yesterday"
    label = f"{calendar.month_name[day.month]} {day.day}"
    if day.year != today.year:
        label += f", {day.year}"
    return label


def group_photos_by_date(photos: Iterable[PhotoRecord],
                         now: Optional[datetime.datetime] = None) -> List[DateBucket]:
    """
    Partition photos, already sorted newest first, into one bucket per day.

    Single pass: a new bucket starts whenever the day differs from the
    previous photo's. Input order is kept; nothing is re-sorted. Labels
    are computed against `now` (the current time by default) on every call.
    """
    now = datetime.datetime.now() if now is None else now
    buckets = []
    current_day = None
    current_items = []

    def close_bucket():
        if current_day is not None:
            buckets.append(DateBucket(
                label=format_date(current_day, now),
                day_start=current_day,
                items=tuple(current_items),
            ))

    for photo in photos:
        day = normalize_date(photo.created_at)
        if day != current_day:
            close_bucket()
            current_day = day
            current_items = []
        current_items.append(photo)
    close_bucket()

    return buckets


def format_duration(seconds: float) -> str:
    """
    Format a duration in seconds as m:ss.
    """
    total = int(seconds)
    return f"{total // 60}:{total % 60:02d}"


def format_file_size(size_bytes: int) -> str:
    if size_bytes <= 0:
        return "0 Bytes"
    value = float(size_bytes)
    index = 0
    while value >= 1024 and index < len(FILE_SIZE_UNITS) - 1:
        value /= 1024
        index += 1
    return f"{round(value, 2):g} {FILE_SIZE_UNITS[index]}"
