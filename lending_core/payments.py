"""
Payment Ledger Module

Applies payments to a loan's installments and reverses them.

A payment row never changes its financial content after it is written and is
never deleted: reversal only stamps it as reversed. Installment balances, paid
flags, paid-at dates, recorded late interest and rescheduled due dates are
always rebuilt by replaying every non-reversed payment of the loan in the
order they were recorded, so repeated reversals cannot drift.

Each operation runs as one atomic storage block: the loan and its installments
are read, validated and rewritten under the storage lock, and either every row
of the event is committed or none is.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional
import copy
import logging
import uuid

from .audit import AuditEventType, AuditTrail
from .config import LendingConfig, get_config
from .currency import Currency, Money, round_money
from .events import DomainEvent, EventDispatcher, EventPublisherMixin
from .exceptions import LoanValidationError, PaymentNotFoundError
from .late_charges import pending_late_interest
from .loans import Installment, Loan, LoanManager
from .logging_config import log_action
from .rbac import Permission, RBACManager
from .storage import StorageInterface, StorageRecord

logger = logging.getLogger("lending.payments")

ZERO = Decimal('0')


class PaymentType(Enum):
    """Kinds of payment events"""
    FULL_INSTALLMENT = "full_installment"    # pays an installment off
    PARTIAL = "partial"                      # part of an installment balance
    ADVANCE = "advance"                      # manual partial payment below the base amount
    SETTLEMENT = "settlement"                # clears every open installment
    DISCOUNT = "discount"                    # balance reduction without cash
    INTEREST_ONLY = "interest_only"          # renegotiation, pushes the due date
    INTEREST_PARTIAL = "interest_partial"    # interest received, nothing else changes

    @property
    def moves_cash(self) -> bool:
        return self != PaymentType.DISCOUNT

    @property
    def is_interest_only(self) -> bool:
        return self in (PaymentType.INTEREST_ONLY, PaymentType.INTEREST_PARTIAL)


@dataclass
class PaymentAllocation:
    """Part of a payment applied to one installment"""
    installment_id: str
    installment_number: int
    amount: Decimal                 # applied to the balance, late interest included
    late_interest: Decimal = ZERO   # late interest this payment records

    def to_dict(self) -> Dict[str, Any]:
        return {
            'installment_id': self.installment_id,
            'installment_number': self.installment_number,
            'amount': str(self.amount),
            'late_interest': str(self.late_interest),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PaymentAllocation':
        return cls(
            installment_id=data['installment_id'],
            installment_number=data['installment_number'],
            amount=Decimal(data['amount']),
            late_interest=Decimal(data['late_interest']),
        )


@dataclass
class Payment(StorageRecord):
    """A recorded payment event"""
    loan_id: str
    installment_id: Optional[str]
    payment_type: PaymentType
    amount: Money
    interest_amount: Money          # late interest recorded, or interest received
    payment_date: date
    recorded_by: str
    sequence: int                   # recording order within the loan
    allocations: List[PaymentAllocation] = field(default_factory=list)
    rescheduled_due_date: Optional[date] = None
    reversed_at: Optional[datetime] = None
    reversed_by: Optional[str] = None
    reversal_reason: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_reversed(self) -> bool:
        return self.reversed_at is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'loan_id': self.loan_id,
            'installment_id': self.installment_id,
            'payment_type': self.payment_type.value,
            'currency': self.amount.currency.code,
            'amount': str(self.amount.amount),
            'interest_amount': str(self.interest_amount.amount),
            'payment_date': self.payment_date.isoformat(),
            'recorded_by': self.recorded_by,
            'sequence': self.sequence,
            'allocations': [a.to_dict() for a in self.allocations],
            'rescheduled_due_date': self.rescheduled_due_date.isoformat() if self.rescheduled_due_date else None,
            'reversed_at': self.reversed_at.isoformat() if self.reversed_at else None,
            'reversed_by': self.reversed_by,
            'reversal_reason': self.reversal_reason,
            'is_reversed': self.is_reversed,
            'metadata': self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Payment':
        currency = Currency[data['currency']]
        rescheduled = data.get('rescheduled_due_date')
        reversed_at = data.get('reversed_at')
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            installment_id=data.get('installment_id'),
            payment_type=PaymentType(data['payment_type']),
            amount=Money(Decimal(data['amount']), currency),
            interest_amount=Money(Decimal(data['interest_amount']), currency),
            payment_date=date.fromisoformat(data['payment_date']),
            recorded_by=data['recorded_by'],
            sequence=data['sequence'],
            allocations=[PaymentAllocation.from_dict(a) for a in data.get('allocations', [])],
            rescheduled_due_date=date.fromisoformat(rescheduled) if rescheduled else None,
            reversed_at=datetime.fromisoformat(reversed_at) if reversed_at else None,
            reversed_by=data.get('reversed_by'),
            reversal_reason=data.get('reversal_reason'),
            metadata=data.get('metadata') or {},
        )


def replay_installments(installments: Iterable[Installment], payments: Iterable[Payment]) -> List[Installment]:
    """
    Rebuild installment balances from payment history.

    Starts every installment from its scheduled state (base, penalty, original
    due date) and applies the non-reversed payments in recording order. The
    inputs are not modified.

    Returns:
        New Installment objects ordered by number
    """
    state = {}
    for original in installments:
        inst = copy.deepcopy(original)
        currency = inst.currency
        inst.paid_amount = Money.zero(currency)
        inst.late_interest_amount = Money.zero(currency)
        inst.due_date = inst.original_due_date
        inst.paid = False
        inst.paid_at = None
        state[inst.id] = inst

    active = sorted((p for p in payments if not p.is_reversed), key=lambda p: p.sequence)
    for payment in active:
        for allocation in payment.allocations:
            inst = state.get(allocation.installment_id)
            if inst is None:
                continue
            inst.late_interest_amount = inst.late_interest_amount + Money(allocation.late_interest, inst.currency)
            inst.paid_amount = inst.paid_amount + Money(allocation.amount, inst.currency)
            if not inst.paid and not inst.outstanding().is_positive():
                inst.paid = True
                inst.paid_at = payment.payment_date
        if payment.rescheduled_due_date and payment.installment_id in state:
            state[payment.installment_id].due_date = payment.rescheduled_due_date

    for inst in state.values():
        paid_at = inst.paid_at
        inst.refresh_balance()
        if inst.paid:
            inst.paid_at = paid_at
    return sorted(state.values(), key=lambda i: i.number)


class PaymentLedger(EventPublisherMixin):
    """
    Records, reverses and re-dates payments against loan installments
    """

    def __init__(
        self,
        storage: StorageInterface,
        loan_manager: LoanManager,
        audit_trail: AuditTrail,
        rbac: RBACManager,
        config: Optional[LendingConfig] = None,
        event_dispatcher: Optional[EventDispatcher] = None
    ):
        self.storage = storage
        self.loan_manager = loan_manager
        self.audit_trail = audit_trail
        self.rbac = rbac
        self.config = config or get_config()
        self.event_dispatcher = event_dispatcher

        self.payments_table = "payments"

    # Queries

    def get_payment(self, payment_id: str) -> Payment:
        """Get payment by ID or raise PaymentNotFoundError"""
        data = self.storage.load(self.payments_table, payment_id)
        if not data:
            raise PaymentNotFoundError(payment_id)
        return Payment.from_dict(data)

    def get_loan_payments(self, loan_id: str, include_reversed: bool = True) -> List[Payment]:
        """Payment history of a loan in recording order"""
        payments = [Payment.from_dict(d) for d in self.storage.find(self.payments_table, {"loan_id": loan_id})]
        if not include_reversed:
            payments = [p for p in payments if not p.is_reversed]
        payments.sort(key=lambda p: p.sequence)
        return payments

    def total_received(self, loan_id: str) -> Money:
        """Cash received on a loan, reversed payments excluded"""
        loan = self.loan_manager.require_loan(loan_id)
        return Money.sum(
            (p.amount for p in self.get_loan_payments(loan_id, include_reversed=False)
             if p.payment_type.moves_cash),
            loan.currency
        )

    # Payment operations

    def pay_installment(self, loan_id: str, installment_number: int, user_id: str,
                        payment_date: Optional[date] = None, amount: Optional[Decimal] = None,
                        metadata: Optional[Dict[str, Any]] = None) -> Payment:
        """
        Pay an installment off

        The amount defaults to the remaining balance plus late interest accrued
        up to the payment date. A larger or smaller amount overrides the late
        interest recorded, but may not fall below the balance without it.

        Args:
            loan_id: Loan ID
            installment_number: Installment sequence number
            user_id: Staff user recording the payment
            payment_date: Date the money was received (default today)
            amount: Override for the amount received
            metadata: Free-form data stored with the payment

        Returns:
            Recorded Payment
        """
        payment_date = payment_date or date.today()

        def build(loan: Loan, installments: List[Installment]) -> Payment:
            installment = self._open_installment(installments, installment_number)
            outstanding = installment.remaining_balance.amount
            if amount is None:
                late_interest = pending_late_interest(installment, loan.late_interest, payment_date).amount
                paid = outstanding + late_interest
            else:
                paid = round_money(amount, loan.currency)
                if paid < outstanding:
                    raise LoanValidationError(
                        f"Amount {paid} is below the installment balance {outstanding}; "
                        f"record a partial payment instead")
                late_interest = paid - outstanding
            return self._new_payment(
                loan, installment.id, PaymentType.FULL_INSTALLMENT, paid, late_interest, payment_date,
                user_id, [PaymentAllocation(installment.id, installment.number, paid, late_interest)],
                metadata=metadata
            )

        return self._record(loan_id, user_id, build)

    def pay_partial(self, loan_id: str, installment_number: int, amount: Decimal, user_id: str,
                    payment_date: Optional[date] = None, advance: bool = False,
                    new_due_date: Optional[date] = None,
                    metadata: Optional[Dict[str, Any]] = None) -> Payment:
        """
        Pay part of an installment

        The amount must stay below what is owed (remaining balance plus
        pending late interest); paying it off is pay_installment.

        Late interest accrued up to the payment date is recorded on the
        installment. An advance must be strictly below the installment's base
        amount and never moves the due date; a plain partial payment may
        reschedule the installment.

        Raises:
            LoanValidationError: non-positive amount, amount not below what is
                owed, advance not below the base, or rescheduling an advance
        """
        payment_date = payment_date or date.today()
        if amount is None or amount <= ZERO:
            raise LoanValidationError("Payment amount must be positive")
        if advance and new_due_date is not None:
            raise LoanValidationError("An advance cannot reschedule the installment")

        def build(loan: Loan, installments: List[Installment]) -> Payment:
            installment = self._open_installment(installments, installment_number)
            late_interest = pending_late_interest(installment, loan.late_interest, payment_date).amount
            owed = installment.remaining_balance.amount + late_interest
            paid = round_money(amount, loan.currency)
            if paid > owed:
                raise LoanValidationError(f"Amount {paid} exceeds the remaining balance {owed}")
            if advance and paid >= installment.amount.amount:
                raise LoanValidationError(
                    f"An advance must be below the installment amount {installment.amount.amount}")
            if paid == owed:
                raise LoanValidationError(
                    f"Amount {paid} pays installment {installment_number} off; use pay_installment instead")
            return self._new_payment(
                loan, installment.id, PaymentType.ADVANCE if advance else PaymentType.PARTIAL,
                paid, late_interest, payment_date, user_id,
                [PaymentAllocation(installment.id, installment.number, paid, late_interest)],
                rescheduled_due_date=new_due_date, metadata=metadata
            )

        return self._record(loan_id, user_id, build)

    def settle_loan(self, loan_id: str, user_id: str, payment_date: Optional[date] = None,
                    metadata: Optional[Dict[str, Any]] = None) -> Payment:
        """
        Pay every open installment in a single event

        The amount is the sum of the open balances plus late interest accrued
        up to the payment date.
        """
        payment_date = payment_date or date.today()

        def build(loan: Loan, installments: List[Installment]) -> Payment:
            allocations = []
            for installment in installments:
                if installment.paid:
                    continue
                late_interest = pending_late_interest(installment, loan.late_interest, payment_date).amount
                owed = installment.remaining_balance.amount + late_interest
                allocations.append(PaymentAllocation(installment.id, installment.number, owed, late_interest))

            total = sum((a.amount for a in allocations), ZERO)
            if total <= ZERO:
                raise LoanValidationError("Loan has no outstanding balance to settle")
            return self._new_payment(
                loan, None, PaymentType.SETTLEMENT, total,
                sum((a.late_interest for a in allocations), ZERO),
                payment_date, user_id, allocations, metadata=metadata
            )

        return self._record(loan_id, user_id, build)

    def apply_discount(self, loan_id: str, amount: Decimal, user_id: str,
                       installment_numbers: Optional[List[int]] = None,
                       payment_date: Optional[date] = None,
                       metadata: Optional[Dict[str, Any]] = None) -> Payment:
        """
        Reduce balances without receiving cash

        The discount fills the selected open installments (all open ones by
        default) in ascending number order, each up to its balance, until the
        amount is used up.
        """
        payment_date = payment_date or date.today()
        if amount is None or amount <= ZERO:
            raise LoanValidationError("Discount amount must be positive")

        def build(loan: Loan, installments: List[Installment]) -> Payment:
            selected = [i for i in installments if not i.paid]
            if installment_numbers is not None:
                wanted = set(installment_numbers)
                selected = [i for i in selected if i.number in wanted]

            available = sum((i.remaining_balance.amount for i in selected), ZERO)
            if available <= ZERO:
                raise LoanValidationError("Loan has no outstanding balance to discount")
            discount = round_money(amount, loan.currency)
            if discount > available:
                raise LoanValidationError(f"Discount {discount} exceeds the outstanding balance {available}")

            left = discount
            allocations = []
            for installment in selected:
                if left <= ZERO:
                    break
                applied = min(left, installment.remaining_balance.amount)
                if applied > ZERO:
                    allocations.append(PaymentAllocation(installment.id, installment.number, applied))
                    left -= applied

            target = allocations[0].installment_id if len(allocations) == 1 else None
            return self._new_payment(
                loan, target, PaymentType.DISCOUNT, discount, ZERO, payment_date,
                user_id, allocations, metadata=metadata
            )

        return self._record(loan_id, user_id, build)

    def pay_interest_only(self, loan_id: str, user_id: str, amount: Optional[Decimal] = None,
                          payment_date: Optional[date] = None,
                          installment_number: Optional[int] = None,
                          new_due_date: Optional[date] = None, partial: bool = False,
                          metadata: Optional[Dict[str, Any]] = None) -> Payment:
        """
        Receive interest without touching principal

        Targets the given installment or the first open one. The amount
        defaults to the contract interest of one installment. The full variant
        pushes the installment's due date to new_due_date, by default the
        configured extension after the later of the due date and payment date;
        the partial variant changes nothing but the history.
        """
        payment_date = payment_date or date.today()
        if amount is not None and amount <= ZERO:
            raise LoanValidationError("Payment amount must be positive")
        if partial and new_due_date is not None:
            raise LoanValidationError("A partial interest payment cannot reschedule the installment")

        def build(loan: Loan, installments: List[Installment]) -> Payment:
            if installment_number is not None:
                installment = self._open_installment(installments, installment_number)
            else:
                open_installments = [i for i in installments if not i.paid]
                if not open_installments:
                    raise LoanValidationError("Loan has no open installment")
                installment = open_installments[0]

            if amount is not None:
                paid = round_money(amount, loan.currency)
            else:
                paid = loan.interest_per_installment.amount
            if paid <= ZERO:
                raise LoanValidationError("Loan has no contract interest; an amount is required")

            if partial:
                payment_type, rescheduled = PaymentType.INTEREST_PARTIAL, None
            else:
                payment_type = PaymentType.INTEREST_ONLY
                rescheduled = new_due_date or self.loan_manager.next_collectable_day(
                    loan,
                    max(installment.due_date, payment_date)
                    + timedelta(days=self.config.interest_only_extension_days)
                )
                if rescheduled <= installment.due_date:
                    raise LoanValidationError("The new due date must be after the current one")

            return self._new_payment(
                loan, installment.id, payment_type, paid, paid, payment_date, user_id, [],
                rescheduled_due_date=rescheduled, metadata=metadata
            )

        return self._record(loan_id, user_id, build)

    # Reversal and corrections

    def reverse_payment(self, payment_id: str, user_id: str, reason: str) -> Payment:
        """
        Reverse a payment without deleting it

        Reversing an already reversed payment changes nothing. Types listed in
        the configured elevated set need REVERSE_MANUAL_PAYMENT on top of
        REVERSE_PAYMENT.

        Args:
            payment_id: Payment ID
            user_id: Staff user reversing the payment
            reason: Why the payment is reversed

        Returns:
            The payment as stored after the call
        """
        if not reason or not reason.strip():
            raise LoanValidationError("A reversal reason is required")

        payment = self.get_payment(payment_id)
        self.rbac.require_permission(user_id, Permission.REVERSE_PAYMENT)
        if payment.payment_type.value in self.config.elevated_reversal_types:
            self.rbac.require_permission(user_id, Permission.REVERSE_MANUAL_PAYMENT)

        with self.storage.atomic():
            payment = self.get_payment(payment_id)
            if payment.is_reversed:
                logger.info(f"Payment {payment_id} already reversed")
                return payment

            now = datetime.now(timezone.utc)
            payment.reversed_at = now
            payment.reversed_by = user_id
            payment.reversal_reason = reason.strip()
            payment.updated_at = now
            self._save_payment(payment)

            loan = self.loan_manager.require_loan(payment.loan_id)
            installments = self._recompute(loan)

            self.audit_trail.log_event(
                event_type=AuditEventType.PAYMENT_REVERSED,
                entity_type="payment",
                entity_id=payment.id,
                metadata={
                    "loan_id": loan.id,
                    "payment_type": payment.payment_type.value,
                    "amount": payment.amount.to_string(),
                    "reason": payment.reversal_reason,
                    "open_balance": self._open_balance(installments, loan.currency).to_string(),
                    "loan_status": loan.status.value
                },
                user_id=user_id
            )

        log_action(logger, "info", "Payment reversed", user_id=user_id, action="reverse_payment",
                   resource=f"payment:{payment.id}",
                   extra={"loan_id": payment.loan_id, "payment_type": payment.payment_type.value})
        self.publish_event(DomainEvent.PAYMENT_REVERSED, "payment", payment.id, {"loan_id": payment.loan_id})
        return payment

    def update_payment_date(self, payment_id: str, new_date: date, user_id: str) -> Payment:
        """
        Correct the date a payment was received

        Paid-at dates of the installments it completed follow, and so does the
        loan's settled date.
        """
        if new_date is None:
            raise LoanValidationError("A payment date is required")
        self.rbac.require_permission(user_id, Permission.EDIT_PAYMENT_DATE)

        with self.storage.atomic():
            payment = self.get_payment(payment_id)
            if payment.is_reversed:
                raise LoanValidationError("Cannot change the date of a reversed payment")

            previous = payment.payment_date
            payment.payment_date = new_date
            payment.updated_at = datetime.now(timezone.utc)
            self._save_payment(payment)

            loan = self.loan_manager.require_loan(payment.loan_id)
            self._recompute(loan)

            self.audit_trail.log_event(
                event_type=AuditEventType.PAYMENT_DATE_CHANGED,
                entity_type="payment",
                entity_id=payment.id,
                metadata={"loan_id": loan.id, "old_date": previous, "new_date": new_date},
                user_id=user_id
            )

        self.publish_event(DomainEvent.PAYMENT_UPDATED, "payment", payment.id, {"loan_id": payment.loan_id})
        return payment

    def recompute_balances(self, loan_id: str) -> List[Installment]:
        """Rebuild and persist a loan's installment balances from its payment history"""
        with self.storage.atomic():
            loan = self.loan_manager.require_loan(loan_id)
            installments = self._recompute(loan)
        self.publish_event(DomainEvent.LOAN_UPDATED, "loan", loan_id, {"recomputed": True})
        return installments

    # Internals

    def _record(self, loan_id: str, user_id: str, build) -> Payment:
        self.rbac.require_permission(user_id, Permission.RECORD_PAYMENT)

        with self.storage.atomic():
            loan = self.loan_manager.require_loan(loan_id)
            if not loan.accepts_payments:
                raise LoanValidationError(f"Loan {loan_id} is {loan.status.value} and accepts no payments")

            installments = self.loan_manager.get_installments(loan_id)
            payment = build(loan, installments)
            self._save_payment(payment)
            installments = self._recompute(loan, installments)

            self.audit_trail.log_event(
                event_type=AuditEventType.PAYMENT_APPLIED,
                entity_type="payment",
                entity_id=payment.id,
                metadata={
                    "loan_id": loan.id,
                    "payment_type": payment.payment_type.value,
                    "amount": payment.amount.to_string(),
                    "interest_amount": payment.interest_amount.to_string(),
                    "payment_date": payment.payment_date,
                    "allocations": [a.to_dict() for a in payment.allocations],
                    "open_balance": self._open_balance(installments, loan.currency).to_string(),
                    "loan_status": loan.status.value
                },
                user_id=user_id
            )

        log_action(logger, "info", "Payment applied", user_id=user_id, action="apply_payment",
                   resource=f"payment:{payment.id}",
                   extra={"loan_id": loan_id, "payment_type": payment.payment_type.value,
                          "amount": str(payment.amount.amount)})
        self.publish_event(DomainEvent.PAYMENT_APPLIED, "payment", payment.id, {"loan_id": loan_id})
        return payment

    def _recompute(self, loan: Loan, installments: Optional[List[Installment]] = None) -> List[Installment]:
        """Replay history, save changed installments and sync the loan status"""
        if installments is None:
            installments = self.loan_manager.get_installments(loan.id)
        rebuilt = replay_installments(installments, self.get_loan_payments(loan.id))

        now = datetime.now(timezone.utc)
        before = {i.id: i.to_dict() for i in installments}
        for installment in rebuilt:
            current = installment.to_dict()
            current['updated_at'] = before[installment.id]['updated_at']
            if current != before[installment.id]:
                installment.updated_at = now
                self.loan_manager.save_installment(installment)

        if self.loan_manager.sync_status(loan, rebuilt):
            self.loan_manager.save_loan(loan)
        return rebuilt

    def _open_installment(self, installments: List[Installment], number: int) -> Installment:
        for installment in installments:
            if installment.number == number:
                if installment.paid:
                    raise LoanValidationError(f"Installment {number} is already paid")
                return installment
        raise LoanValidationError(f"Installment {number} does not exist")

    def _new_payment(self, loan: Loan, installment_id: Optional[str], payment_type: PaymentType,
                     amount: Decimal, interest: Decimal, payment_date: date, user_id: str,
                     allocations: List[PaymentAllocation],
                     rescheduled_due_date: Optional[date] = None,
                     metadata: Optional[Dict[str, Any]] = None) -> Payment:
        now = datetime.now(timezone.utc)
        return Payment(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=loan.id,
            installment_id=installment_id,
            payment_type=payment_type,
            amount=Money(amount, loan.currency),
            interest_amount=Money(interest, loan.currency),
            payment_date=payment_date,
            recorded_by=user_id,
            sequence=len(self.storage.find(self.payments_table, {"loan_id": loan.id})),
            allocations=allocations,
            rescheduled_due_date=rescheduled_due_date,
            metadata=metadata or {}
        )

    def _save_payment(self, payment: Payment) -> None:
        self.storage.save(self.payments_table, payment.id, payment.to_dict())

    @staticmethod
    def _open_balance(installments: List[Installment], currency: Currency) -> Money:
        return Money.sum((i.remaining_balance for i in installments), currency)
