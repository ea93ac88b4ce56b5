"""Admin reporting over the booking store.

Read-only: everything is derived from ``BookingStore.list_all()`` and the
service catalog at call time.
"""

from __future__ import annotations

import datetime as dt
import logging
from collections import Counter

from pydantic import BaseModel, Field

from medcore.models import Booking, BookingStatus
from medcore.services.booking_store import BookingStore

logger = logging.getLogger(__name__)


class DailyCount(BaseModel):
    date: dt.date
    count: int


class BookingReport(BaseModel):
    """Aggregate view of every stored booking."""

    total: int = 0
    by_status: dict[BookingStatus, int] = Field(default_factory=dict)
    revenue: float = 0.0
    per_day: list[DailyCount] = Field(default_factory=list)


def summarize(bookings: list[Booking], prices: dict[str, float]) -> BookingReport:
    """Totals per status, revenue of non-cancelled bookings and a per-day histogram.

    Bookings whose service is no longer in *prices* count towards the totals
    but add nothing to revenue.
    """
    by_status = {status: 0 for status in BookingStatus}
    by_status.update(Counter(b.status for b in bookings))

    revenue = sum(
        prices.get(b.service_id, 0.0)
        for b in bookings
        if b.status is not BookingStatus.CANCELLED
    )

    per_day = Counter(b.date for b in bookings)
    return BookingReport(
        total=len(bookings),
        by_status=by_status,
        revenue=float(revenue),
        per_day=[DailyCount(date=day, count=n) for day, n in sorted(per_day.items())],
    )


async def build_report(store: BookingStore) -> BookingReport:
    """Compute the admin report from the store's current contents."""
    bookings = await store.list_all()
    services = await store.list_services()
    report = summarize(bookings, {s.id: s.price for s in services})
    logger.info(
        "Report built: %d bookings, revenue %.2f", report.total, report.revenue,
    )
    return report
