"""
Interest and Totals Module

Computes the total payable and the per-installment amount under the three
interest-application modes, and solves the rate back from a target total.

Rates are Decimal fractions per installment period: Decimal('0.05') is 5%.
Nothing here rounds; callers round at the output boundary.
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Optional

from .exceptions import LoanValidationError

ZERO = Decimal('0')
ONE = Decimal('1')
TWO = Decimal('2')

DEFAULT_SOLVER_ITERATIONS = 40
DEFAULT_SOLVER_MAX_RATE = Decimal('5')  # 500% per period
# (1+i)^N - 1 below this is treated as a zero rate
GROWTH_EPSILON = Decimal('1E-12')


class InterestMode(Enum):
    """How the nominal rate turns into a total payable"""
    PER_INSTALLMENT = "per_installment"  # simple interest charged once per installment
    FIXED_TOTAL = "fixed_total"          # simple interest charged once on the contract
    ANNUITY = "annuity"                  # compound, equal installments (Price table)


@dataclass(frozen=True)
class LoanTotals:
    """Unrounded contract figures"""
    principal: Decimal
    rate: Decimal
    installment_count: int
    mode: InterestMode
    total: Decimal
    installment_amount: Decimal

    @property
    def interest(self) -> Decimal:
        """Contract interest, i.e. expected profit"""
        return self.total - self.principal

    @property
    def interest_per_installment(self) -> Decimal:
        """Contract interest attributable to a single installment"""
        if self.mode == InterestMode.FIXED_TOTAL:
            return self.interest
        return self.interest / Decimal(self.installment_count)


def _validate(principal: Decimal, installment_count: int) -> None:
    if principal is None or principal <= ZERO:
        raise LoanValidationError("Principal must be positive")
    if installment_count is None or installment_count <= 0:
        raise LoanValidationError("Installment count must be positive")


def annuity_installment(principal: Decimal, rate: Decimal, installment_count: int) -> Decimal:
    """
    Equal installment of a compound-interest (Price) schedule.

    installment = P * i * (1+i)^N / ((1+i)^N - 1), or P / N when i is zero or
    so small that (1+i)^N is indistinguishable from 1.
    """
    if rate <= ZERO:
        return principal / Decimal(installment_count)
    growth = (ONE + rate) ** installment_count
    if growth - ONE < GROWTH_EPSILON:
        return principal / Decimal(installment_count)
    return principal * rate * growth / (growth - ONE)


def compute_totals(principal: Decimal, rate: Decimal, installment_count: int,
                   mode: InterestMode) -> LoanTotals:
    """
    Total payable and per-installment amount for a rate.

    Args:
        principal: Amount lent
        rate: Per-period rate as a fraction
        installment_count: Number of installments N
        mode: Interest-application mode

    Returns:
        LoanTotals with unrounded figures
    """
    _validate(principal, installment_count)
    if rate < ZERO:
        raise LoanValidationError("Interest rate cannot be negative")

    count = Decimal(installment_count)
    if mode == InterestMode.PER_INSTALLMENT:
        total = principal * (ONE + rate * count)
        installment = total / count
    elif mode == InterestMode.FIXED_TOTAL:
        total = principal * (ONE + rate)
        installment = total / count
    else:
        installment = annuity_installment(principal, rate, installment_count)
        total = installment * count

    return LoanTotals(principal, rate, installment_count, mode, total, installment)


def solve_rate(principal: Decimal, target_total: Decimal, installment_count: int,
               mode: InterestMode, iterations: int = DEFAULT_SOLVER_ITERATIONS,
               max_rate: Decimal = DEFAULT_SOLVER_MAX_RATE) -> Decimal:
    """
    Find the per-period rate that yields target_total.

    Simple-interest modes invert in closed form. The annuity mode bisects on
    [0, max_rate] for a fixed number of iterations and returns the midpoint of
    the final bracket; a target outside the reachable range converges to the
    nearest end instead of failing.
    """
    if principal <= ZERO or target_total <= ZERO:
        return ZERO
    if installment_count <= 0:
        raise LoanValidationError("Installment count must be positive")

    ratio = target_total / principal
    if mode == InterestMode.PER_INSTALLMENT:
        return (ratio - ONE) / Decimal(installment_count)
    if mode == InterestMode.FIXED_TOTAL:
        return ratio - ONE

    target_installment = target_total / Decimal(installment_count)
    low, high = ZERO, max_rate
    for _ in range(iterations):
        mid = (low + high) / TWO
        if annuity_installment(principal, mid, installment_count) > target_installment:
            high = mid
        else:
            low = mid
    return (low + high) / TWO


def totals_from_target(principal: Decimal, target_total: Decimal, installment_count: int,
                       mode: InterestMode, iterations: int = DEFAULT_SOLVER_ITERATIONS,
                       max_rate: Decimal = DEFAULT_SOLVER_MAX_RATE) -> LoanTotals:
    """
    Contract figures when the total is agreed directly instead of the rate.

    The agreed total is kept exactly; the rate is the solved approximation.
    """
    _validate(principal, installment_count)
    if target_total < principal:
        raise LoanValidationError("Agreed total cannot be below the principal")

    rate = solve_rate(principal, target_total, installment_count, mode, iterations, max_rate)
    return LoanTotals(principal, rate, installment_count, mode, target_total,
                      target_total / Decimal(installment_count))


def resolve_totals(principal: Decimal, installment_count: int, mode: InterestMode,
                   rate: Optional[Decimal] = None,
                   manual_total: Optional[Decimal] = None,
                   iterations: int = DEFAULT_SOLVER_ITERATIONS,
                   max_rate: Decimal = DEFAULT_SOLVER_MAX_RATE) -> LoanTotals:
    """Use the agreed total when present, otherwise the rate"""
    if manual_total is not None:
        return totals_from_target(principal, manual_total, installment_count, mode, iterations, max_rate)
    if rate is None:
        raise LoanValidationError("Either an interest rate or an agreed total is required")
    return compute_totals(principal, rate, installment_count, mode)
