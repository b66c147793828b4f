"""Spaced repetition scheduling (SM-2 style).

The functions here mutate and inspect objects shaped like
`models.Review` (interval_days, ease_factor, repetitions, status,
due_date, last_reviewed_at) and never touch the database, so the
scheduling rules can be tested in isolation.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Iterable, List, Optional

MAX_INTERVAL = 240  # ~8 months
MIN_EASE_FACTOR = 1.3
MAX_EASE_FACTOR = 2.5
DEFAULT_EASE_FACTOR = 2.5

RESULTS = ('again', 'hard', 'good', 'easy')
STATUSES = ('new', 'learning', 'reviewing', 'mastered')

QUEUE_CAP = 20
DUE_PER_NEW = 3


def format_due_date(d: date) -> str:
    """Render a due date as e.g. `Oct 20, 2026`."""
    return f"{d:%b} {d.day}, {d.year}"


def apply_result(review, result: str, today: Optional[date] = None, now: Optional[datetime] = None) -> dict:
    """Update the review's interval, ease and status for a rating.

    Returns a summary with the old and new interval/ease, the formatted
    next due date and the resulting status. Raises ValueError for an
    unknown rating.
    """
    if result not in RESULTS:
        raise ValueError(f"result must be one of {', '.join(RESULTS)}")
    today = today or date.today()
    review.last_reviewed_at = now or datetime.now(timezone.utc)
    review.repetitions += 1

    old_interval = review.interval_days
    old_ease = review.ease_factor
    ease = review.ease_factor
    interval = review.interval_days

    if result == 'again':
        review.repetitions = 0
        interval = 1
        status = 'learning'
        ease = max(MIN_EASE_FACTOR, ease - 0.2)
    elif result == 'hard':
        interval = max(1, int(interval * 1.2))
        ease = max(MIN_EASE_FACTOR, ease - 0.15)
        status = 'reviewing' if review.repetitions >= 2 else 'learning'
    elif result == 'good':
        if review.repetitions == 1:
            interval = 3
        elif review.repetitions == 2:
            interval = 7
        else:
            interval = min(MAX_INTERVAL, int(interval * ease))
        status = 'reviewing' if review.repetitions >= 2 else 'learning'
    else:
        interval = min(MAX_INTERVAL, int(interval * ease * 1.3))
        ease = min(MAX_EASE_FACTOR, ease + 0.15)
        status = 'reviewing' if review.repetitions >= 2 else 'learning'
        if interval >= 120 and review.repetitions >= 4:
            status = 'mastered'

    # stored with two decimals
    review.ease_factor = round(ease, 2)
    review.interval_days = interval
    review.status = status
    review.due_date = today + timedelta(days=interval)

    return {
        'old_interval': old_interval,
        'new_interval': review.interval_days,
        'old_ease_factor': round(old_ease, 2),
        'new_ease_factor': round(review.ease_factor, 2),
        'next_due': format_due_date(review.due_date),
        'status': review.status,
    }


def days_until_due(review, today: Optional[date] = None) -> int:
    """Signed number of days until the review is due (negative when overdue)."""
    if not review.due_date:
        return 0
    return (review.due_date - (today or date.today())).days


def is_overdue(review, today: Optional[date] = None) -> bool:
    if not review.due_date:
        return False
    return review.due_date < (today or date.today())


def priority(review, today: Optional[date] = None) -> int:
    """Scheduling priority: 1 critical, 2 high, 3 medium."""
    if review.status == 'new':
        return 3
    delta = days_until_due(review, today)
    if delta < -7:
        return 1
    if delta < 0:
        return 2
    if delta <= 1:
        return 2
    return 3


def _one_decimal(value: float) -> str:
    rounded = round(value, 1)
    if rounded == int(rounded):
        return str(int(rounded))
    return str(rounded)


def formatted_interval(interval_days: int) -> str:
    """Compact interval label: `3d`, `2w`, `1.4w`, `2.5mo`."""
    if interval_days < 7:
        return f"{interval_days}d"
    if interval_days < 30:
        return f"{_one_decimal(interval_days / 7)}w"
    return f"{_one_decimal(interval_days / 30)}mo"


def interleave_queue(due: Iterable, new: Iterable, cap: int = QUEUE_CAP, due_per_new: int = DUE_PER_NEW) -> List:
    """Mix due and new reviews, `due_per_new` due items before each new one.

    Items are deduplicated by `id` so a new review that is also due
    appears once.
    """
    due = list(due)
    new = list(new)
    queue = []
    seen = set()

    def push(item):
        key = getattr(item, 'id', None)
        if key is not None:
            if key in seen:
                return
            seen.add(key)
        queue.append(item)

    di = ni = 0
    while di < len(due) or ni < len(new):
        for _ in range(due_per_new):
            if di >= len(due):
                break
            push(due[di])
            di += 1
        if ni < len(new):
            push(new[ni])
            ni += 1
    return queue[:cap]
