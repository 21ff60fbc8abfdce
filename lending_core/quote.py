"""
Loan Quote Module

One pure function derives every figure shown for a loan (balances, late
interest, settlement amount, next due date, profit) from the loan, its
installments and an evaluation date. Consumers call build_quote instead of
re-deriving totals themselves.
"""

from dataclasses import dataclass
from datetime import date
from typing import Iterable, List, Optional

from .currency import Money
from .late_charges import pending_late_interest
from .loans import Installment, InstallmentState, Loan


@dataclass(frozen=True)
class InstallmentQuote:
    """Figures of one installment as of the evaluation date"""
    number: int
    due_date: date
    base_amount: Money
    penalty: Money
    late_interest_recorded: Money
    late_interest_pending: Money
    paid_amount: Money
    recorded_balance: Money        # persisted balance, without pending late interest
    remaining_balance: Money       # what the borrower owes on the evaluation date
    days_late: int
    state: InstallmentState
    paid_at: Optional[date] = None

    @property
    def amount_due(self) -> Money:
        return self.remaining_balance


@dataclass(frozen=True)
class LoanQuote:
    """Every derived figure of a loan as of the evaluation date"""
    loan_id: str
    as_of: date
    principal: Money
    contract_total: Money
    total_receivable: Money
    total_received: Money
    outstanding_balance: Money
    pending_late_interest: Money
    settlement_amount: Money
    expected_profit: Money
    realized_profit: Money
    next_due_date: Optional[date]
    next_installment_number: Optional[int]
    overdue_count: int
    max_days_late: int
    paid_count: int
    open_count: int
    installments: List[InstallmentQuote]

    @property
    def is_overdue(self) -> bool:
        return self.overdue_count > 0

    @property
    def next_installment(self) -> Optional[InstallmentQuote]:
        for item in self.installments:
            if item.number == self.next_installment_number:
                return item
        return None


def quote_installment(loan: Loan, installment: Installment, as_of: date) -> InstallmentQuote:
    pending = pending_late_interest(installment, loan.late_interest, as_of)
    return InstallmentQuote(
        number=installment.number,
        due_date=installment.due_date,
        base_amount=installment.amount,
        penalty=installment.penalty_amount,
        late_interest_recorded=installment.late_interest_amount,
        late_interest_pending=pending,
        paid_amount=installment.paid_amount,
        recorded_balance=installment.remaining_balance,
        remaining_balance=installment.remaining_balance + pending,
        days_late=installment.days_late(as_of),
        state=installment.state,
        paid_at=installment.paid_at
    )


def build_quote(loan: Loan, installments: Iterable[Installment], as_of: Optional[date] = None,
                payments: Optional[Iterable] = None) -> LoanQuote:
    """
    Derive a loan's figures as of a date

    Args:
        loan: The loan
        installments: Its installments, in any order
        as_of: Evaluation date (default today)
        payments: Payment history; without it received amounts and realized
            profit are taken from the installments' accumulated paid amounts

    Returns:
        LoanQuote
    """
    as_of = as_of or date.today()
    currency = loan.currency
    ordered = sorted(installments, key=lambda i: i.number)
    items = [quote_installment(loan, i, as_of) for i in ordered]

    if ordered:
        total_receivable = Money.sum((i.total_due for i in ordered), currency)
    else:
        total_receivable = loan.total_amount

    if payments is not None:
        total_received = Money.sum(
            (p.amount for p in payments if not p.is_reversed and p.payment_type.moves_cash), currency)
    else:
        total_received = Money.sum((i.paid_amount for i in ordered), currency)

    open_items = [item for item in items if item.state != InstallmentState.PAID]
    outstanding = Money.sum((item.recorded_balance for item in open_items), currency)
    pending = Money.sum((item.late_interest_pending for item in open_items), currency)
    overdue = [item for item in open_items if item.due_date < as_of]
    upcoming = min(open_items, key=lambda item: (item.due_date, item.number), default=None)

    recovered_principal = min(total_received, loan.principal)

    return LoanQuote(
        loan_id=loan.id,
        as_of=as_of,
        principal=loan.principal,
        contract_total=loan.total_amount,
        total_receivable=total_receivable,
        total_received=total_received,
        outstanding_balance=outstanding,
        pending_late_interest=pending,
        settlement_amount=outstanding + pending,
        expected_profit=total_receivable - loan.principal,
        realized_profit=total_received - recovered_principal,
        next_due_date=upcoming.due_date if upcoming else None,
        next_installment_number=upcoming.number if upcoming else None,
        overdue_count=len(overdue),
        max_days_late=max((item.days_late for item in overdue), default=0),
        paid_count=len(items) - len(open_items),
        open_count=len(open_items),
        installments=items
    )
