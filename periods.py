from dataclasses import dataclass
from datetime import date, timedelta
from typing import Optional


@dataclass(frozen=True)
class Period:
    start: date
    end: date

    def contains(self, target: date) -> bool:
        return self.start <= target <= self.end

    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1


def resolve_period(
    start: Optional[date],
    end: Optional[date],
) -> Period:
    if start is None or end is None:
        raise ValueError("A period requires both fromDate and toDate")
    if start > end:
        raise ValueError("fromDate must not be after toDate")
    return Period(start, end)


def lookback_period(days: int, *, today: Optional[date] = None) -> Period:
    today = today or date.today()
    return Period(today - timedelta(days=days), today)


def union(*periods: Period) -> list[Period]:
    ordered = sorted(periods, key=lambda p: p.start)
    merged: list[Period] = []
    for period in ordered:
        if merged and period.start <= merged[-1].end + date.resolution:
            last = merged[-1]
            merged[-1] = Period(last.start, max(last.end, period.end))
        else:
            merged.append(period)
    return merged
