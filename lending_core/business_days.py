"""
Collection Calendar Module

Decides which days a borrower can be charged on. A due date that falls on an
excluded Saturday, Sunday or holiday is pushed forward one day at a time until
it lands on a collectable day.
"""

from dataclasses import dataclass
from datetime import date, timedelta
from typing import Dict, FrozenSet, Iterable, Optional

from .exceptions import LoanValidationError


# National holidays, including the movable Carnival, Good Friday and Corpus Christi
_HOLIDAYS: Dict[str, Dict[int, FrozenSet[date]]] = {
    "BR": {
        2025: frozenset({
            date(2025, 1, 1), date(2025, 3, 3), date(2025, 3, 4),
            date(2025, 4, 18), date(2025, 4, 21), date(2025, 5, 1),
            date(2025, 6, 19), date(2025, 9, 7), date(2025, 10, 12),
            date(2025, 11, 2), date(2025, 11, 15), date(2025, 11, 20),
            date(2025, 12, 25),
        }),
        2026: frozenset({
            date(2026, 1, 1), date(2026, 2, 16), date(2026, 2, 17),
            date(2026, 4, 3), date(2026, 4, 21), date(2026, 5, 1),
            date(2026, 6, 4), date(2026, 9, 7), date(2026, 10, 12),
            date(2026, 11, 2), date(2026, 11, 15), date(2026, 11, 20),
            date(2026, 12, 25),
        }),
        2027: frozenset({
            date(2027, 1, 1), date(2027, 2, 8), date(2027, 2, 9),
            date(2027, 3, 26), date(2027, 4, 21), date(2027, 5, 1),
            date(2027, 5, 27), date(2027, 9, 7), date(2027, 10, 12),
            date(2027, 11, 2), date(2027, 11, 15), date(2027, 11, 20),
            date(2027, 12, 25),
        }),
    },
}


class HolidayCalendar:
    """Static set of holiday dates for one jurisdiction"""

    def __init__(self, holidays: Iterable[date] = (), jurisdiction: str = "custom"):
        self.jurisdiction = jurisdiction
        self._dates: FrozenSet[date] = frozenset(holidays)

    @classmethod
    def for_jurisdiction(cls, jurisdiction: str, years: Optional[Iterable[int]] = None) -> 'HolidayCalendar':
        """
        Build the bundled calendar for a jurisdiction.

        Args:
            jurisdiction: Jurisdiction code, e.g. "BR"
            years: Restrict to these years; all bundled years when omitted
        """
        by_year = _HOLIDAYS.get(jurisdiction.upper())
        if by_year is None:
            raise LoanValidationError(f"No holiday data for jurisdiction {jurisdiction}")

        selected = by_year.keys() if years is None else years
        dates = set()
        for year in selected:
            dates.update(by_year.get(year, frozenset()))
        return cls(dates, jurisdiction.upper())

    def is_holiday(self, day: date) -> bool:
        return day in self._dates

    def with_dates(self, extra: Iterable[date]) -> 'HolidayCalendar':
        """Copy of this calendar with additional (e.g. municipal) holidays"""
        return HolidayCalendar(self._dates | frozenset(extra), self.jurisdiction)

    def __contains__(self, day: date) -> bool:
        return day in self._dates

    def __len__(self) -> int:
        return len(self._dates)


@dataclass(frozen=True)
class CollectionRules:
    """Which kinds of day are acceptable as due dates"""
    allow_saturday: bool = True
    allow_sunday: bool = False
    allow_holidays: bool = False

    def is_collectable(self, day: date, holidays: Optional[HolidayCalendar] = None) -> bool:
        weekday = day.weekday()
        if weekday == 5 and not self.allow_saturday:
            return False
        if weekday == 6 and not self.allow_sunday:
            return False
        if not self.allow_holidays and holidays is not None and day in holidays:
            return False
        return True


def adjust_to_collectable_day(day: date, rules: CollectionRules,
                              holidays: Optional[HolidayCalendar] = None,
                              max_days: int = 366) -> date:
    """
    Move a date forward to the first day the rules allow.

    A date that is already collectable is returned unchanged.

    Raises:
        LoanValidationError: if no collectable day exists within max_days
    """
    if day is None:
        raise LoanValidationError("A date is required for calendar adjustment")

    candidate = day
    for _ in range(max_days + 1):
        if rules.is_collectable(candidate, holidays):
            return candidate
        candidate += timedelta(days=1)

    raise LoanValidationError(f"No collectable day within {max_days} days of {day.isoformat()}")
