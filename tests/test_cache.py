"""
Tests for the read-through loan cache
"""

from datetime import date
from decimal import Decimal

import pytest

from lending_core.audit import AuditTrail
from lending_core.business_days import HolidayCalendar
from lending_core.cache import LoanCache
from lending_core.config import LendingConfig
from lending_core.currency import Money, Currency
from lending_core.events import EventDispatcher
from lending_core.exceptions import LoanNotFoundError
from lending_core.loans import LoanManager
from lending_core.options import LoanApplication
from lending_core.payments import PaymentLedger
from lending_core.rbac import RBACManager
from lending_core.storage import InMemoryStorage


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class TestLoanCache:
    """Test cache hits, invalidation and expiry"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit = AuditTrail(self.storage)
        self.rbac = RBACManager(self.storage, self.audit)
        self.staff = self.rbac.create_user("staff", "Staff", ["STAFF"])
        self.dispatcher = EventDispatcher()
        config = LendingConfig()
        self.loans = LoanManager(self.storage, self.audit, holidays=HolidayCalendar(), rbac=self.rbac,
                                 config=config, event_dispatcher=self.dispatcher)
        self.ledger = PaymentLedger(self.storage, self.loans, self.audit, self.rbac, config=config,
                                    event_dispatcher=self.dispatcher)
        self.clock = FakeClock()
        self.cache = LoanCache(self.loans, self.ledger, self.dispatcher, ttl_seconds=60, clock=self.clock)
        self.loan = self.loans.create_loan(LoanApplication(
            borrower_id="cust_1",
            principal=Decimal("1000"),
            rate=Decimal("0.02"),
            installment_count=5,
            contract_date=date(2026, 2, 2),
            first_due_date=date(2026, 3, 2),
        ))

    def test_hit_after_miss(self):
        first = self.cache.get(self.loan.id)
        second = self.cache.get(self.loan.id)
        assert first is second
        assert (self.cache.hits, self.cache.misses) == (1, 1)
        assert self.loan.id in self.cache

    def test_payment_event_invalidates(self):
        self.cache.get(self.loan.id)
        self.ledger.pay_installment(self.loan.id, 1, self.staff.id, payment_date=date(2026, 3, 2))

        assert self.loan.id not in self.cache
        snapshot = self.cache.get(self.loan.id)
        assert snapshot.installments[0].paid
        assert len(snapshot.payments) == 1

    def test_reversal_event_invalidates(self):
        payment = self.ledger.pay_installment(self.loan.id, 1, self.staff.id, payment_date=date(2026, 3, 2))
        self.cache.get(self.loan.id)

        self.ledger.reverse_payment(payment.id, self.staff.id, "bounced")
        assert not self.cache.get(self.loan.id).installments[0].paid

    def test_expiry(self):
        self.cache.get(self.loan.id)
        self.clock.now = 59
        assert self.loan.id in self.cache
        self.clock.now = 60
        assert self.loan.id not in self.cache
        self.cache.get(self.loan.id)
        assert self.cache.misses == 2

    def test_refetch_and_clear(self):
        first = self.cache.get(self.loan.id)
        assert self.cache.refetch(self.loan.id) is not first
        self.cache.clear()
        assert self.loan.id not in self.cache

    def test_quote_from_cache(self):
        quote = self.cache.quote(self.loan.id, date(2026, 3, 1))
        assert quote.settlement_amount == Money(Decimal("1100"), Currency.BRL)

    def test_missing_loan(self):
        with pytest.raises(LoanNotFoundError):
            self.cache.get("missing")
