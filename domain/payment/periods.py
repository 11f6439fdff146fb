"""
Calendar-month arithmetic for entitlement expiry.

Policy: the day-of-month is clamped to the last day of the target month
(Jan 31 + 1 month -> Feb 28/29, Feb 29 + 12 months -> Feb 28). Time of day and
tzinfo are preserved.
"""
from __future__ import annotations

import calendar
from datetime import datetime


def add_months(moment: datetime, months: int) -> datetime:
    if months < 0:
        raise ValueError("months must be non-negative")
    index = moment.month - 1 + months
    year = moment.year + index // 12
    month = index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return moment.replace(year=year, month=month, day=min(moment.day, last_day))
