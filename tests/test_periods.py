from datetime import date

import pytest

from periods import Period, lookback_period, resolve_period, union


def test_resolve_period_is_inclusive() -> None:
    period = resolve_period(date(2024, 10, 1), date(2024, 10, 31))
    assert period.contains(date(2024, 10, 1))
    assert period.contains(date(2024, 10, 31))
    assert not period.contains(date(2024, 11, 1))
    assert period.days == 31


def test_resolve_period_rejects_bad_windows() -> None:
    with pytest.raises(ValueError):
        resolve_period(date(2024, 10, 2), date(2024, 10, 1))
    with pytest.raises(ValueError):
        resolve_period(None, date(2024, 10, 1))


def test_single_day_period() -> None:
    period = resolve_period(date(2024, 2, 29), date(2024, 2, 29))
    assert period.days == 1


def test_lookback_period() -> None:
    period = lookback_period(365, today=date(2024, 12, 31))
    assert period == Period(date(2024, 1, 1), date(2024, 12, 31))


def test_union_merges_overlapping_and_adjacent_windows() -> None:
    merged = union(
        Period(date(2024, 3, 1), date(2024, 3, 10)),
        Period(date(2024, 1, 1), date(2024, 1, 31)),
        Period(date(2024, 2, 1), date(2024, 2, 5)),
        Period(date(2024, 3, 5), date(2024, 3, 20)),
    )
    assert merged == [
        Period(date(2024, 1, 1), date(2024, 2, 5)),
        Period(date(2024, 3, 1), date(2024, 3, 20)),
    ]
