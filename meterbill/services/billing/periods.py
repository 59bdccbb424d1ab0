from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from meterbill.core.clock import add_months, ensure_utc
from meterbill.domain.enums import BILLING_PERIOD_MONTHS, BillingPeriod


@dataclass(frozen=True)
class BillingWindow:
    start: datetime
    end: datetime


def period_at(anchor: datetime, billing_period: str, index: int) -> BillingWindow:
    # Offsets are taken from the anchor each time so month-end clamping never drifts.
    months = BILLING_PERIOD_MONTHS[BillingPeriod(billing_period)]
    anchor = ensure_utc(anchor)
    return BillingWindow(
        start=add_months(anchor, months * index),
        end=add_months(anchor, months * (index + 1)),
    )


def latest_closed_period(
    *,
    starts_at: datetime,
    ends_at: datetime | None,
    billing_period: str,
    as_of: datetime,
) -> BillingWindow | None:
    """Most recently ended billing period of a contract as of ``as_of``.

    A contract ending mid-period closes a final partial period at ``ends_at``.
    """
    as_of = ensure_utc(as_of)
    ends_at = ensure_utc(ends_at) if ends_at is not None else None
    latest: BillingWindow | None = None
    index = 0
    while True:
        window = period_at(starts_at, billing_period, index)
        if ends_at is not None and window.start >= ends_at:
            break
        if ends_at is not None and window.end > ends_at:
            window = BillingWindow(start=window.start, end=ends_at)
        if window.end > as_of:
            break
        latest = window
        index += 1
    return latest
