from datetime import date
from typing import Optional


def next_streak(streak_count: int, last_streak_date: Optional[date], today: date) -> tuple[int, date]:
    """
    Compute the streak after activity on ``today``.

    Returns the new ``(streak_count, last_streak_date)`` pair. Same-day
    activity leaves the pair untouched, the following calendar day extends the
    streak, anything else restarts it at 1.
    """
    if last_streak_date is None:
        return 1, today

    days = (today - last_streak_date).days
    if days == 0:
        return streak_count, last_streak_date
    if days == 1:
        return streak_count + 1, today
    return 1, today
