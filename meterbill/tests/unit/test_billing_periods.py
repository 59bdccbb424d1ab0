from __future__ import annotations

from datetime import datetime, timedelta, timezone

from meterbill.core.clock import add_months, ensure_utc, isoformat
from meterbill.services.billing.periods import latest_closed_period, period_at


def _utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def test_add_months_clamps_to_month_end() -> None:
    assert add_months(_utc(2024, 1, 31), 1) == _utc(2024, 2, 29)
    assert add_months(_utc(2025, 1, 31), 1) == _utc(2025, 2, 28)
    assert add_months(_utc(2025, 11, 15), 3) == _utc(2026, 2, 15)


def test_periods_are_offset_from_the_anchor() -> None:
    anchor = _utc(2025, 1, 31)

    assert period_at(anchor, "MONTHLY", 1).start == _utc(2025, 2, 28)
    # Clamping in February does not drift March's boundary.
    assert period_at(anchor, "MONTHLY", 2).start == _utc(2025, 3, 31)
    quarter = period_at(anchor, "QUARTERLY", 0)
    assert (quarter.start, quarter.end) == (anchor, _utc(2025, 4, 30))


def test_no_period_closed_before_the_first_boundary() -> None:
    window = latest_closed_period(
        starts_at=_utc(2026, 1, 1), ends_at=None, billing_period="MONTHLY", as_of=_utc(2026, 1, 20)
    )

    assert window is None


def test_latest_closed_period_is_the_most_recent_full_period() -> None:
    window = latest_closed_period(
        starts_at=_utc(2025, 10, 1), ends_at=None, billing_period="MONTHLY", as_of=_utc(2026, 1, 15, 8)
    )

    assert window is not None
    assert (window.start, window.end) == (_utc(2025, 12, 1), _utc(2026, 1, 1))


def test_period_ending_exactly_at_as_of_is_closed() -> None:
    window = latest_closed_period(
        starts_at=_utc(2026, 1, 1), ends_at=None, billing_period="MONTHLY", as_of=_utc(2026, 2, 1)
    )

    assert window is not None
    assert window.end == _utc(2026, 2, 1)


def test_contract_end_truncates_the_final_period() -> None:
    ends_at = _utc(2026, 2, 10)

    window = latest_closed_period(
        starts_at=_utc(2026, 1, 1), ends_at=ends_at, billing_period="MONTHLY", as_of=_utc(2026, 6, 1)
    )

    assert window is not None
    assert (window.start, window.end) == (_utc(2026, 2, 1), ends_at)


def test_naive_timestamps_are_treated_as_utc() -> None:
    naive = datetime(2026, 3, 1, 12, 0)
    offset = datetime(2026, 3, 1, 14, 0, tzinfo=timezone(timedelta(hours=2)))

    assert ensure_utc(naive) == _utc(2026, 3, 1, 12)
    assert ensure_utc(offset) == _utc(2026, 3, 1, 12)
    assert isoformat(naive) == "2026-03-01T12:00:00Z"
    assert isoformat(None) is None
