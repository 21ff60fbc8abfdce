"""
Tests for late interest and penalties
"""

import pytest
from datetime import date
from decimal import Decimal

from lending_core.audit import AuditTrail, AuditEventType
from lending_core.business_days import HolidayCalendar
from lending_core.config import LendingConfig
from lending_core.currency import Money, Currency
from lending_core.events import EventDispatcher, DomainEvent
from lending_core.exceptions import LoanValidationError, PaymentAuthorizationError
from lending_core.late_charges import (
    LateChargeEngine, accrued_late_interest, calculate_penalty, pending_late_interest
)
from lending_core.loans import LoanManager
from lending_core.options import (
    ContractOptions, LateInterestConfig, LateInterestKind, LoanApplication,
    PenaltyConfig, PenaltyKind, PenaltyScope
)
from lending_core.payments import PaymentLedger
from lending_core.rbac import RBACManager
from lending_core.storage import InMemoryStorage


def brl(value):
    return Money(Decimal(value), Currency.BRL)


class LateChargeTestCase:
    """Shared wiring: a 5 x 220 monthly loan starting 2026-03-02"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit = AuditTrail(self.storage)
        self.rbac = RBACManager(self.storage, self.audit)
        self.staff = self.rbac.create_user("staff", "Staff", ["STAFF"])
        self.config = LendingConfig()
        self.dispatcher = EventDispatcher()
        self.loans = LoanManager(self.storage, self.audit, holidays=HolidayCalendar(),
                                 rbac=self.rbac, config=self.config)
        self.ledger = PaymentLedger(self.storage, self.loans, self.audit, self.rbac, config=self.config)
        self.engine = LateChargeEngine(self.storage, self.loans, self.audit, rbac=self.rbac,
                                       event_dispatcher=self.dispatcher)

    def create_loan(self, late_interest=None, **overrides):
        data = {
            "borrower_id": "cust_1",
            "principal": Decimal("1000"),
            "rate": Decimal("0.02"),
            "installment_count": 5,
            "contract_date": date(2026, 2, 2),
            "first_due_date": date(2026, 3, 2),
            "options": ContractOptions(late_interest=late_interest or LateInterestConfig()),
        }
        data.update(overrides)
        return self.loans.create_loan(LoanApplication(**data))


class TestLateInterest(LateChargeTestCase):
    """Test late interest accrual"""

    def test_flat_per_day(self):
        loan = self.create_loan(LateInterestConfig(enabled=True, rate=Decimal("2")),
                                principal=Decimal("100"), rate=Decimal("0"), installment_count=1)
        installment = self.loans.get_installment(loan.id, 1)

        assert accrued_late_interest(installment, loan.late_interest, date(2026, 3, 7)) == Decimal("10")
        assert pending_late_interest(installment, loan.late_interest, date(2026, 3, 7)) == brl("10.00")

    def test_percentage_per_day(self):
        config = LateInterestConfig(enabled=True, kind=LateInterestKind.PER_DAY_PERCENTAGE, rate=Decimal("0.001"))
        loan = self.create_loan(config)
        installment = self.loans.get_installment(loan.id, 1)

        # 0.1% of 220 for 7 days
        assert pending_late_interest(installment, loan.late_interest, date(2026, 3, 9)) == brl("1.54")

    def test_nothing_before_or_on_due_date(self):
        loan = self.create_loan(LateInterestConfig(enabled=True, rate=Decimal("2")))
        installment = self.loans.get_installment(loan.id, 1)

        assert pending_late_interest(installment, loan.late_interest, date(2026, 3, 2)).is_zero()
        assert pending_late_interest(installment, loan.late_interest, date(2026, 2, 20)).is_zero()

    def test_disabled_accrues_nothing(self):
        loan = self.create_loan(LateInterestConfig(enabled=False, rate=Decimal("2")))
        installment = self.loans.get_installment(loan.id, 1)
        assert accrued_late_interest(installment, loan.late_interest, date(2026, 4, 1)) == Decimal("0")

    def test_recorded_late_interest_is_not_charged_twice(self):
        loan = self.create_loan(LateInterestConfig(enabled=True, rate=Decimal("1")))
        self.ledger.pay_partial(loan.id, 1, Decimal("50"), self.staff.id, payment_date=date(2026, 3, 7))

        installment = self.loans.get_installment(loan.id, 1)
        assert installment.late_interest_amount == brl("5.00")
        assert pending_late_interest(installment, loan.late_interest, date(2026, 3, 7)).is_zero()
        assert pending_late_interest(installment, loan.late_interest, date(2026, 3, 10)) == brl("3.00")

    def test_late_interest_due_sums_overdue_installments(self):
        loan = self.create_loan(LateInterestConfig(enabled=True, rate=Decimal("1")))
        # installment 1 is 39 days late, installment 2 is 8 days late
        assert self.engine.late_interest_due(loan.id, date(2026, 4, 10)) == brl("47.00")
        assert [i.number for i in self.engine.overdue_installments(loan.id, date(2026, 4, 10))] == [1, 2]


class TestPenalty(LateChargeTestCase):
    """Test penalty computation and application"""

    @pytest.mark.parametrize("kind,value,expected", [
        (PenaltyKind.FLAT_ONCE, Decimal("10"), "10.00"),
        (PenaltyKind.PER_DAY_FLAT, Decimal("2"), "10.00"),
        (PenaltyKind.PER_DAY_PERCENTAGE, Decimal("0.01"), "11.00"),
    ])
    def test_calculate_penalty(self, kind, value, expected):
        loan = self.create_loan()
        installment = self.loans.get_installment(loan.id, 1)
        config = PenaltyConfig(kind=kind, value=value)
        assert calculate_penalty(installment, config, date(2026, 3, 7)) == brl(expected)

    def test_apply_to_all_overdue(self):
        loan = self.create_loan()
        events = []
        self.dispatcher.subscribe(DomainEvent.PENALTY_APPLIED, events.append)

        penalized = self.engine.apply_penalty(
            loan.id, PenaltyConfig(kind=PenaltyKind.FLAT_ONCE, value=Decimal("10")),
            user_id=self.staff.id, as_of=date(2026, 4, 10))

        assert [i.number for i in penalized] == [1, 2]
        for number in (1, 2):
            installment = self.loans.get_installment(loan.id, number)
            assert installment.penalty_amount == brl("10.00")
            assert installment.remaining_balance == brl("230.00")
            assert installment.penalty_applied_at == date(2026, 4, 10)
        assert self.loans.get_installment(loan.id, 3).penalty_amount.is_zero()
        assert self.loans.require_loan(loan.id).options.penalty.value == Decimal("10")
        assert events[0].data == {"installments": [1, 2]}
        assert len(self.audit.get_events_by_type(AuditEventType.PENALTY_APPLIED)) == 1

    def test_new_penalty_replaces_previous(self):
        loan = self.create_loan()
        as_of = date(2026, 3, 7)
        self.engine.apply_penalty(loan.id, PenaltyConfig(kind=PenaltyKind.FLAT_ONCE, value=Decimal("10")), as_of=as_of)
        self.engine.apply_penalty(loan.id, PenaltyConfig(kind=PenaltyKind.FLAT_ONCE, value=Decimal("5")), as_of=as_of)

        installment = self.loans.get_installment(loan.id, 1)
        assert installment.penalty_amount == brl("5.00")
        assert installment.remaining_balance == brl("225.00")

    def test_penalty_on_partially_paid_installment(self):
        loan = self.create_loan()
        self.ledger.pay_partial(loan.id, 1, Decimal("100"), self.staff.id, payment_date=date(2026, 3, 5))
        self.engine.apply_penalty(loan.id, PenaltyConfig(kind=PenaltyKind.FLAT_ONCE, value=Decimal("10")),
                                  as_of=date(2026, 3, 7))

        assert self.loans.get_installment(loan.id, 1).remaining_balance == brl("130.00")

    def test_replacement_penalty_cannot_drop_below_amount_paid(self):
        """220 base + 50 penalty, 260 received: a 10 penalty would owe only 230"""
        loan = self.create_loan()
        as_of = date(2026, 3, 7)
        self.engine.apply_penalty(loan.id, PenaltyConfig(kind=PenaltyKind.FLAT_ONCE, value=Decimal("50")), as_of=as_of)
        self.ledger.pay_partial(loan.id, 1, Decimal("260"), self.staff.id, payment_date=as_of)

        with pytest.raises(LoanValidationError, match="already paid"):
            self.engine.apply_penalty(loan.id, PenaltyConfig(kind=PenaltyKind.FLAT_ONCE, value=Decimal("10")),
                                      as_of=as_of)

        installment = self.loans.get_installment(loan.id, 1)
        assert installment.penalty_amount == brl("50.00")
        assert installment.paid_amount <= installment.total_due
        assert installment.remaining_balance == brl("10.00")
        assert not installment.paid
        assert len(self.audit.get_events_by_type(AuditEventType.PENALTY_APPLIED)) == 1

    def test_single_installment_scope(self):
        loan = self.create_loan()
        config = PenaltyConfig(kind=PenaltyKind.FLAT_ONCE, value=Decimal("10"),
                               scope=PenaltyScope.INSTALLMENT, installment_number=2)

        penalized = self.engine.apply_penalty(loan.id, config, as_of=date(2026, 4, 10))
        assert [i.number for i in penalized] == [2]
        assert self.loans.get_installment(loan.id, 1).penalty_amount.is_zero()

    def test_no_overdue_target(self):
        loan = self.create_loan()
        with pytest.raises(LoanValidationError, match="No overdue installment"):
            self.engine.apply_penalty(loan.id, PenaltyConfig(kind=PenaltyKind.FLAT_ONCE, value=Decimal("10")),
                                      as_of=date(2026, 3, 1))
        assert self.loans.require_loan(loan.id).options.penalty is None

    def test_requires_permission(self):
        clerk = self.rbac.create_user("clerk", "Clerk", [])
        loan = self.create_loan()
        with pytest.raises(PaymentAuthorizationError):
            self.engine.apply_penalty(loan.id, PenaltyConfig(kind=PenaltyKind.FLAT_ONCE, value=Decimal("10")),
                                      user_id=clerk.id, as_of=date(2026, 3, 7))
