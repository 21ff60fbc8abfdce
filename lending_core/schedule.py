"""
Installment Schedule Module

Generates installment due dates for a cadence. Each date is derived from one
unadjusted reference date (never from a previously adjusted date), then moved
to a collectable day independently, so calendar shifts never accumulate.
"""

import calendar
from dataclasses import dataclass
from datetime import date, timedelta
from enum import Enum
from typing import List, Optional

from .business_days import CollectionRules, HolidayCalendar, adjust_to_collectable_day
from .exceptions import LoanValidationError


class Cadence(Enum):
    """Spacing between installments"""
    DAILY = "daily"
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"

    @property
    def default_grace_days(self) -> int:
        """Days from contract date to the first installment when none is given"""
        return _DEFAULT_GRACE_DAYS[self]

    @property
    def supports_fixed_weekday(self) -> bool:
        return self in (Cadence.WEEKLY, Cadence.BIWEEKLY)


_DEFAULT_GRACE_DAYS = {
    Cadence.DAILY: 1,
    Cadence.WEEKLY: 7,
    Cadence.BIWEEKLY: 14,
    Cadence.MONTHLY: 30,
}


@dataclass(frozen=True)
class ScheduleRequest:
    """Everything needed to lay out due dates"""
    installment_count: int
    cadence: Cadence
    contract_date: Optional[date] = None
    first_due_date: Optional[date] = None
    grace_days: Optional[int] = None
    fixed_weekday: Optional[int] = None  # 0 = Monday ... 6 = Sunday
    rules: CollectionRules = CollectionRules()


def add_months(start_date: date, months: int) -> date:
    """Add calendar months, clamping the day to the target month's last day"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def align_to_weekday(start_date: date, weekday: int) -> date:
    """Advance 0-6 days to the requested weekday"""
    if not 0 <= weekday <= 6:
        raise LoanValidationError(f"Weekday must be between 0 and 6, got {weekday}")
    return start_date + timedelta(days=(weekday - start_date.weekday()) % 7)


def nth_date(reference: date, cadence: Cadence, index: int) -> date:
    """Unadjusted due date of the installment at zero-based index"""
    if cadence == Cadence.MONTHLY:
        return add_months(reference, index)
    if cadence == Cadence.WEEKLY:
        return reference + timedelta(days=7 * index)
    if cadence == Cadence.BIWEEKLY:
        return reference + timedelta(days=14 * index)
    return reference + timedelta(days=index)


def reference_date(request: ScheduleRequest) -> date:
    """
    Unadjusted anchor of the series: the explicit first due date, or the
    contract date plus grace days, aligned to the fixed weekday if one is set.
    """
    if request.first_due_date is not None:
        reference = request.first_due_date
    elif request.contract_date is not None:
        grace = request.grace_days
        if grace is None:
            grace = request.cadence.default_grace_days
        if grace < 0:
            raise LoanValidationError("Grace days cannot be negative")
        reference = request.contract_date + timedelta(days=grace)
    else:
        raise LoanValidationError("Either a first due date or a contract date is required")

    if request.fixed_weekday is not None and request.cadence.supports_fixed_weekday:
        reference = align_to_weekday(reference, request.fixed_weekday)
    return reference


def generate_due_dates(request: ScheduleRequest,
                       holidays: Optional[HolidayCalendar] = None,
                       max_adjustment_days: int = 366) -> List[date]:
    """
    Generate the N due dates of a schedule.

    Args:
        request: Count, cadence, anchor and collection rules
        holidays: Holiday set excluded unless the rules allow holidays
        max_adjustment_days: Longest forward search for a collectable day

    Returns:
        Due dates in installment order, each on a collectable day
    """
    if request.installment_count <= 0:
        raise LoanValidationError("Installment count must be positive")

    reference = reference_date(request)
    return [
        adjust_to_collectable_day(nth_date(reference, request.cadence, index), request.rules, holidays,
                                  max_adjustment_days)
        for index in range(request.installment_count)
    ]
