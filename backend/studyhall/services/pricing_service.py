"""
Tiered pricing: pick the cheapest of daily / weekly / monthly for a range.

    days          = (end - start) + 1          (both endpoints count)
    daily_total   = days * daily_rate
    weekly_total  = ceil(days / 7)  * weekly_rate    only when days >= 7
    monthly_total = ceil(days / 30) * monthly_rate   only when days >= 30

A later tier replaces the current best only when strictly cheaper, so ties
resolve daily -> weekly -> monthly. The chosen tier and amount are stored on
the reservation; nothing re-derives them from the venue's current prices.
"""

import math
from datetime import date
from decimal import Decimal
from typing import Optional

from studyhall.core.exceptions import InvalidDateRangeError
from studyhall.models.reservation import BookingPeriod
from studyhall.models.venue import Venue
from studyhall.schemas.pricing import Quote

WEEK_DAYS = 7
MONTH_DAYS = 30


def count_days(start_date: date, end_date: date) -> int:
    if start_date > end_date:
        raise InvalidDateRangeError(start_date, end_date)
    return (end_date - start_date).days + 1


def price(
    start_date: date,
    end_date: date,
    daily_rate: Decimal,
    weekly_rate: Optional[Decimal] = None,
    monthly_rate: Optional[Decimal] = None,
) -> Quote:
    days = count_days(start_date, end_date)

    amount = Decimal(days) * Decimal(daily_rate)
    tier = BookingPeriod.DAILY

    if weekly_rate is not None and days >= WEEK_DAYS:
        weekly_total = Decimal(math.ceil(days / WEEK_DAYS)) * Decimal(weekly_rate)
        if weekly_total < amount:
            amount, tier = weekly_total, BookingPeriod.WEEKLY

    if monthly_rate is not None and days >= MONTH_DAYS:
        monthly_total = Decimal(math.ceil(days / MONTH_DAYS)) * Decimal(monthly_rate)
        if monthly_total < amount:
            amount, tier = monthly_total, BookingPeriod.MONTHLY

    return Quote(amount=amount, days=days, tier=tier)


def quote_for_venue(venue: Venue, start_date: date, end_date: date) -> Quote:
    return price(start_date, end_date, venue.daily_price, venue.weekly_price, venue.monthly_price)
