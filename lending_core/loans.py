"""
Loan Module

Handles loan contracts and their installments: creation from a validated
application (totals, rate solving and schedule generation), status changes,
contract renewal, custom schedules and amortization previews.

Installment balances are owned by the payment ledger; this module persists
whatever the ledger and the late-charge engine compute.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
import logging
import uuid

from .audit import AuditEventType, AuditTrail
from .business_days import CollectionRules, HolidayCalendar, adjust_to_collectable_day
from .config import LendingConfig, get_config
from .currency import Currency, Money, round_money
from .events import DomainEvent, EventDispatcher, EventPublisherMixin
from .exceptions import LoanNotFoundError, LoanValidationError
from .interest import InterestMode, LoanTotals, resolve_totals
from .logging_config import log_action
from .options import ContractOptions, LateInterestConfig, LoanApplication, ScheduleOverride
from .rbac import Permission, RBACManager
from .schedule import Cadence, ScheduleRequest, generate_due_dates
from .storage import StorageInterface, StorageRecord

logger = logging.getLogger("lending.loans")

ZERO = Decimal('0')


class LoanStatus(Enum):
    """Loan lifecycle states"""
    ACTIVE = "active"        # Installments being collected
    SETTLED = "settled"      # Every installment paid
    ADVANCED = "advanced"    # Borrower paying ahead of schedule
    CANCELED = "canceled"    # Contract voided, no further payments


class InstallmentState(Enum):
    OPEN = "open"
    PARTIALLY_PAID = "partially_paid"
    PAID = "paid"


def _parse_date(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None


def _iso(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class Installment(StorageRecord):
    """One scheduled payment of a loan"""
    loan_id: str
    number: int
    due_date: date              # current due date, may be pushed forward
    original_due_date: date     # due date as scheduled
    amount: Money               # base amount
    paid_amount: Money = None
    remaining_balance: Money = None
    paid: bool = False
    paid_at: Optional[date] = None
    penalty_amount: Money = None
    penalty_type: Optional[str] = None
    penalty_applied_at: Optional[date] = None
    late_interest_amount: Money = None  # late interest recorded by payments

    def __post_init__(self):
        currency = self.amount.currency
        if self.paid_amount is None:
            self.paid_amount = Money.zero(currency)
        if self.penalty_amount is None:
            self.penalty_amount = Money.zero(currency)
        if self.late_interest_amount is None:
            self.late_interest_amount = Money.zero(currency)
        if self.remaining_balance is None:
            self.remaining_balance = self.outstanding()

    @property
    def currency(self) -> Currency:
        return self.amount.currency

    @property
    def total_due(self) -> Money:
        """Base plus penalty plus recorded late interest"""
        return self.amount + self.penalty_amount + self.late_interest_amount

    @property
    def state(self) -> InstallmentState:
        if self.paid:
            return InstallmentState.PAID
        if self.paid_amount.is_positive():
            return InstallmentState.PARTIALLY_PAID
        return InstallmentState.OPEN

    def outstanding(self) -> Money:
        """max(0, base + penalty + late interest - accumulated paid)"""
        balance = self.total_due - self.paid_amount
        return balance if balance.is_positive() else Money.zero(self.currency)

    def refresh_balance(self) -> None:
        """Recompute remaining balance and the paid flag from the amounts"""
        self.remaining_balance = self.outstanding()
        self.paid = self.remaining_balance.is_zero()
        if not self.paid:
            self.paid_at = None

    def is_overdue(self, as_of: date) -> bool:
        return not self.paid and self.due_date < as_of

    def days_late(self, as_of: date) -> int:
        """Whole calendar days past due for an unpaid installment"""
        if self.paid:
            return 0
        return max(0, (as_of - self.due_date).days)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'loan_id': self.loan_id,
            'number': self.number,
            'due_date': self.due_date.isoformat(),
            'original_due_date': self.original_due_date.isoformat(),
            'currency': self.currency.code,
            'amount': str(self.amount.amount),
            'paid_amount': str(self.paid_amount.amount),
            'remaining_balance': str(self.remaining_balance.amount),
            'paid': self.paid,
            'paid_at': _iso(self.paid_at),
            'penalty_amount': str(self.penalty_amount.amount),
            'penalty_type': self.penalty_type,
            'penalty_applied_at': _iso(self.penalty_applied_at),
            'late_interest_amount': str(self.late_interest_amount.amount),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Installment':
        currency = Currency[data['currency']]

        def money(key: str) -> Money:
            return Money(Decimal(data[key]), currency)

        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            number=data['number'],
            due_date=date.fromisoformat(data['due_date']),
            original_due_date=date.fromisoformat(data['original_due_date']),
            amount=money('amount'),
            paid_amount=money('paid_amount'),
            remaining_balance=money('remaining_balance'),
            paid=data['paid'],
            paid_at=_parse_date(data.get('paid_at')),
            penalty_amount=money('penalty_amount'),
            penalty_type=data.get('penalty_type'),
            penalty_applied_at=_parse_date(data.get('penalty_applied_at')),
            late_interest_amount=money('late_interest_amount'),
        )


@dataclass
class Loan(StorageRecord):
    """Loan contract with its terms and current status"""
    borrower_id: str
    principal: Money
    rate: Decimal                       # per-period rate as a fraction
    installment_count: int
    cadence: Cadence
    interest_mode: InterestMode
    contract_date: date
    total_amount: Money                 # contract snapshot at creation
    installment_amount: Money
    grace_days: Optional[int] = None
    rules: CollectionRules = field(default_factory=CollectionRules)
    fixed_weekday: Optional[int] = None
    first_due_date: Optional[date] = None
    status: LoanStatus = LoanStatus.ACTIVE
    options: ContractOptions = field(default_factory=ContractOptions)
    settled_at: Optional[date] = None
    renewed_from: Optional[str] = None
    created_by: Optional[str] = None
    notes: Optional[str] = None

    @property
    def currency(self) -> Currency:
        return self.principal.currency

    @property
    def is_active(self) -> bool:
        return self.status in (LoanStatus.ACTIVE, LoanStatus.ADVANCED)

    @property
    def accepts_payments(self) -> bool:
        return self.status != LoanStatus.CANCELED

    @property
    def late_interest(self) -> LateInterestConfig:
        return self.options.late_interest

    @property
    def contract_interest(self) -> Money:
        """Expected profit according to the contract snapshot"""
        return self.total_amount - self.principal

    @property
    def interest_per_installment(self) -> Money:
        """Contract interest of one installment, the default interest-only amount"""
        if self.interest_mode == InterestMode.FIXED_TOTAL:
            return self.contract_interest
        return Money(self.contract_interest.amount / Decimal(self.installment_count), self.currency)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'borrower_id': self.borrower_id,
            'currency': self.currency.code,
            'principal': str(self.principal.amount),
            'rate': str(self.rate),
            'installment_count': self.installment_count,
            'cadence': self.cadence.value,
            'interest_mode': self.interest_mode.value,
            'contract_date': self.contract_date.isoformat(),
            'total_amount': str(self.total_amount.amount),
            'installment_amount': str(self.installment_amount.amount),
            'grace_days': self.grace_days,
            'allow_saturday': self.rules.allow_saturday,
            'allow_sunday': self.rules.allow_sunday,
            'allow_holidays': self.rules.allow_holidays,
            'fixed_weekday': self.fixed_weekday,
            'first_due_date': _iso(self.first_due_date),
            'status': self.status.value,
            'options': self.options.model_dump(mode='json'),
            'settled_at': _iso(self.settled_at),
            'renewed_from': self.renewed_from,
            'created_by': self.created_by,
            'notes': self.notes,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        currency = Currency[data['currency']]
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            borrower_id=data['borrower_id'],
            principal=Money(Decimal(data['principal']), currency),
            rate=Decimal(data['rate']),
            installment_count=data['installment_count'],
            cadence=Cadence(data['cadence']),
            interest_mode=InterestMode(data['interest_mode']),
            contract_date=date.fromisoformat(data['contract_date']),
            total_amount=Money(Decimal(data['total_amount']), currency),
            installment_amount=Money(Decimal(data['installment_amount']), currency),
            grace_days=data.get('grace_days'),
            rules=CollectionRules(data['allow_saturday'], data['allow_sunday'], data['allow_holidays']),
            fixed_weekday=data.get('fixed_weekday'),
            first_due_date=_parse_date(data.get('first_due_date')),
            status=LoanStatus(data['status']),
            options=ContractOptions.model_validate(data.get('options') or {}),
            settled_at=_parse_date(data.get('settled_at')),
            renewed_from=data.get('renewed_from'),
            created_by=data.get('created_by'),
            notes=data.get('notes'),
        )


@dataclass(frozen=True)
class AmortizationPreview:
    """Effect of paying down principal, before anything is recorded"""
    amortized: Money
    new_principal: Money
    new_interest: Money
    new_total: Money
    remaining_installments: int
    new_installment_amount: Money


def split_installment_amounts(totals: LoanTotals, currency: Currency,
                              agreed_total: bool = False) -> List[Decimal]:
    """
    Per-installment base amounts in cents.

    Every installment gets the rounded installment amount; the last one absorbs
    the rounding residue so the schedule adds up to the rounded total. An
    annuity without an agreed total is a true equal-installment schedule whose
    total is the rounded installment times N.
    """
    count = totals.installment_count
    installment = round_money(totals.installment_amount, currency)
    if totals.mode == InterestMode.ANNUITY and not agreed_total:
        return [installment] * count
    total = round_money(totals.total, currency)
    return [installment] * (count - 1) + [total - installment * (count - 1)]


class LoanManager(EventPublisherMixin):
    """
    Manages loan contracts and installment rows
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        holidays: Optional[HolidayCalendar] = None,
        rbac: Optional[RBACManager] = None,
        config: Optional[LendingConfig] = None,
        event_dispatcher: Optional[EventDispatcher] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.config = config or get_config()
        self.holidays = holidays if holidays is not None else HolidayCalendar.for_jurisdiction(
            self.config.holiday_jurisdiction)
        self.rbac = rbac
        self.event_dispatcher = event_dispatcher

        self.loans_table = "loans"
        self.installments_table = "installments"

    def _authorize(self, user_id: Optional[str], permission: Permission) -> None:
        if self.rbac is not None and user_id is not None:
            self.rbac.require_permission(user_id, permission)

    def create_loan(self, application: LoanApplication, created_by: Optional[str] = None,
                    renewed_from: Optional[str] = None) -> Loan:
        """
        Create a loan and its installment schedule

        Args:
            application: Validated loan application
            created_by: Staff user creating the loan
            renewed_from: Previous contract when this loan is a renewal

        Returns:
            Created Loan
        """
        self._authorize(created_by, Permission.CREATE_LOAN)

        try:
            currency = Currency[application.currency]
        except KeyError:
            raise LoanValidationError(f"Unsupported currency {application.currency}")

        options = application.options
        totals = resolve_totals(
            application.principal,
            application.installment_count,
            application.interest_mode,
            rate=application.rate,
            manual_total=options.manual_total,
            iterations=self.config.rate_solver_iterations,
            max_rate=Decimal(self.config.rate_solver_max_rate)
        )

        due_dates = generate_due_dates(
            ScheduleRequest(
                installment_count=application.installment_count,
                cadence=application.cadence,
                contract_date=application.contract_date,
                first_due_date=application.first_due_date,
                grace_days=application.grace_days,
                fixed_weekday=application.fixed_weekday,
                rules=application.collection_rules
            ),
            self.holidays,
            self.config.max_adjustment_days
        )
        amounts = split_installment_amounts(totals, currency, options.manual_total is not None)
        total_amount = sum(amounts, ZERO)

        now = datetime.now(timezone.utc)
        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            borrower_id=application.borrower_id,
            principal=Money(application.principal, currency),
            rate=totals.rate,
            installment_count=application.installment_count,
            cadence=application.cadence,
            interest_mode=application.interest_mode,
            contract_date=application.contract_date,
            total_amount=Money(total_amount, currency),
            installment_amount=Money(amounts[0], currency),
            grace_days=application.grace_days,
            rules=application.collection_rules,
            fixed_weekday=application.fixed_weekday,
            first_due_date=application.first_due_date,
            options=options,
            renewed_from=renewed_from,
            created_by=created_by,
            notes=application.notes
        )

        installments = [
            Installment(
                id=f"{loan.id}_{number}",
                created_at=now,
                updated_at=now,
                loan_id=loan.id,
                number=number,
                due_date=due_date,
                original_due_date=due_date,
                amount=Money(amount, currency)
            )
            for number, (due_date, amount) in enumerate(zip(due_dates, amounts), start=1)
        ]
        self._apply_overrides(installments, options.custom_schedule)

        with self.storage.atomic():
            self.save_loan(loan)
            for installment in installments:
                self.save_installment(installment)

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_RENEWED if renewed_from else AuditEventType.LOAN_CREATED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={
                    "borrower_id": loan.borrower_id,
                    "principal": loan.principal.to_string(),
                    "rate": str(loan.rate),
                    "total_amount": loan.total_amount.to_string(),
                    "installment_count": loan.installment_count,
                    "cadence": loan.cadence.value,
                    "interest_mode": loan.interest_mode.value,
                    "renewed_from": renewed_from
                },
                user_id=created_by
            )

        log_action(logger, "info", "Loan created", user_id=created_by, action="create_loan",
                   resource=f"loan:{loan.id}",
                   extra={"total_amount": str(loan.total_amount.amount),
                          "installments": loan.installment_count})
        self.publish_event(DomainEvent.LOAN_CREATED, "loan", loan.id,
                           {"borrower_id": loan.borrower_id})
        return loan

    def _apply_overrides(self, installments: List[Installment],
                         overrides: List[ScheduleOverride]) -> None:
        by_number = {i.number: i for i in installments}
        for override in overrides:
            installment = by_number.get(override.number)
            if installment is None:
                raise LoanValidationError(f"Installment {override.number} does not exist")
            if override.due_date is not None:
                installment.due_date = override.due_date
                installment.original_due_date = override.due_date
            if override.amount is not None:
                installment.amount = Money(override.amount, installment.currency)
            installment.refresh_balance()

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        """Get loan by ID"""
        data = self.storage.load(self.loans_table, loan_id)
        if data:
            return Loan.from_dict(data)
        return None

    def require_loan(self, loan_id: str) -> Loan:
        """Get loan by ID or raise LoanNotFoundError"""
        loan = self.get_loan(loan_id)
        if loan is None:
            raise LoanNotFoundError(loan_id)
        return loan

    def get_borrower_loans(self, borrower_id: str) -> List[Loan]:
        """Get all loans of a borrower, oldest contract first"""
        loans = [Loan.from_dict(d) for d in self.storage.find(self.loans_table, {"borrower_id": borrower_id})]
        loans.sort(key=lambda loan: (loan.contract_date, loan.created_at))
        return loans

    def list_loans(self, status: Optional[LoanStatus] = None) -> List[Loan]:
        """List loans, optionally only those in one status"""
        filters = {"status": status.value} if status else {}
        return [Loan.from_dict(d) for d in self.storage.find(self.loans_table, filters)]

    def get_installments(self, loan_id: str) -> List[Installment]:
        """Installments of a loan ordered by number"""
        rows = self.storage.find(self.installments_table, {"loan_id": loan_id})
        installments = [Installment.from_dict(row) for row in rows]
        installments.sort(key=lambda i: i.number)
        return installments

    def get_open_installments(self, loan_id: str) -> List[Installment]:
        """Unpaid installments of a loan ordered by number"""
        rows = self.storage.find(self.installments_table, {"loan_id": loan_id, "paid": False})
        installments = [Installment.from_dict(row) for row in rows]
        installments.sort(key=lambda i: i.number)
        return installments

    def get_installment(self, loan_id: str, number: int) -> Installment:
        """One installment by its sequence number"""
        data = self.storage.load(self.installments_table, f"{loan_id}_{number}")
        if not data:
            raise LoanValidationError(f"Loan {loan_id} has no installment {number}")
        return Installment.from_dict(data)

    def save_loan(self, loan: Loan) -> None:
        self.storage.save(self.loans_table, loan.id, loan.to_dict())

    def save_installment(self, installment: Installment) -> None:
        self.storage.save(self.installments_table, installment.id, installment.to_dict())

    def sync_status(self, loan: Loan, installments: List[Installment]) -> bool:
        """
        Make the loan status follow its installments.

        All installments paid settles the loan (settled_at is the last paid-at
        date); a settled loan with an open installment goes back to active.
        Canceled loans are left alone.

        Returns:
            True if the loan changed
        """
        if loan.status == LoanStatus.CANCELED or not installments:
            return False

        before = (loan.status, loan.settled_at)
        if all(i.paid for i in installments):
            loan.status = LoanStatus.SETTLED
            paid_dates = [i.paid_at for i in installments if i.paid_at]
            loan.settled_at = max(paid_dates) if paid_dates else None
        elif loan.status == LoanStatus.SETTLED:
            loan.status = LoanStatus.ACTIVE
            loan.settled_at = None

        changed = (loan.status, loan.settled_at) != before
        if changed:
            loan.updated_at = datetime.now(timezone.utc)
        return changed

    def change_status(self, loan_id: str, status: LoanStatus, user_id: Optional[str] = None) -> Loan:
        """
        Manually move a loan to another status

        Raises:
            LoanValidationError: settling a loan that still has open installments
        """
        self._authorize(user_id, Permission.MANAGE_LOAN)

        with self.storage.atomic():
            loan = self.require_loan(loan_id)
            previous = loan.status
            if previous == status:
                return loan

            if status == LoanStatus.SETTLED:
                if self.get_open_installments(loan_id):
                    raise LoanValidationError("Cannot settle a loan with open installments")
                paid_dates = [i.paid_at for i in self.get_installments(loan_id) if i.paid_at]
                loan.settled_at = max(paid_dates) if paid_dates else None
            else:
                loan.settled_at = None

            loan.status = status
            loan.updated_at = datetime.now(timezone.utc)
            self.save_loan(loan)

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_STATUS_CHANGED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={"old_status": previous.value, "new_status": status.value},
                user_id=user_id
            )

        log_action(logger, "info", "Loan status changed", user_id=user_id, action="change_status",
                   resource=f"loan:{loan.id}", extra={"from": previous.value, "to": status.value})
        self.publish_event(DomainEvent.LOAN_UPDATED, "loan", loan.id, {"status": status.value})
        return loan

    def configure_late_interest(self, loan_id: str, late_interest: LateInterestConfig,
                                user_id: Optional[str] = None) -> Loan:
        """Replace the late-interest configuration of a loan"""
        self._authorize(user_id, Permission.CONFIGURE_LATE_INTEREST)

        with self.storage.atomic():
            loan = self.require_loan(loan_id)
            loan.options = loan.options.model_copy(update={"late_interest": late_interest})
            loan.updated_at = datetime.now(timezone.utc)
            self.save_loan(loan)

            self.audit_trail.log_event(
                event_type=AuditEventType.LATE_INTEREST_CONFIGURED,
                entity_type="loan",
                entity_id=loan.id,
                metadata=late_interest.model_dump(mode='json'),
                user_id=user_id
            )

        self.publish_event(DomainEvent.LOAN_UPDATED, "loan", loan.id, {"late_interest": True})
        return loan

    def customize_schedule(self, loan_id: str, overrides: List[ScheduleOverride],
                           user_id: Optional[str] = None) -> List[Installment]:
        """
        Edit due dates and/or base amounts of open installments

        Paid installments cannot be edited, and a new amount must leave a
        partially paid installment with something still owed. The loan's total
        receivable follows the edited amounts.
        """
        self._authorize(user_id, Permission.MANAGE_LOAN)

        with self.storage.atomic():
            loan = self.require_loan(loan_id)
            installments = self.get_installments(loan_id)
            by_number = {i.number: i for i in installments}
            for override in overrides:
                installment = by_number.get(override.number)
                if installment is None:
                    raise LoanValidationError(f"Loan {loan_id} has no installment {override.number}")
                if installment.paid:
                    raise LoanValidationError(f"Installment {override.number} is already paid")
                if override.amount is not None:
                    total_due = (Money(override.amount, installment.currency)
                                 + installment.penalty_amount + installment.late_interest_amount)
                    if total_due <= installment.paid_amount:
                        raise LoanValidationError(
                            f"Installment {override.number} already received "
                            f"{installment.paid_amount.amount}, not less than {total_due.amount}")

            self._apply_overrides(installments, overrides)
            now = datetime.now(timezone.utc)
            for override in overrides:
                installment = by_number[override.number]
                installment.updated_at = now
                self.save_installment(installment)

            self.audit_trail.log_event(
                event_type=AuditEventType.SCHEDULE_CUSTOMIZED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={"overrides": [o.model_dump(mode='json') for o in overrides]},
                user_id=user_id
            )

        self.publish_event(DomainEvent.LOAN_UPDATED, "loan", loan_id, {"schedule": True})
        return installments

    def resolve_grace_days(self, loan: Loan, installments: Optional[List[Installment]] = None) -> int:
        """Stored grace days, else first due date minus contract date, else the cadence default"""
        if loan.grace_days is not None:
            return loan.grace_days
        installments = installments if installments is not None else self.get_installments(loan.id)
        if installments:
            return max(0, (installments[0].original_due_date - loan.contract_date).days)
        return loan.cadence.default_grace_days

    def renew_loan(self, loan_id: str, base_date: date, user_id: Optional[str] = None) -> Loan:
        """
        Start a new contract with the same terms from a new base date

        The previous loan keeps its history and must be settled; the new loan
        points back to it through renewed_from.
        """
        if base_date is None:
            raise LoanValidationError("A base date is required to renew a loan")

        loan = self.require_loan(loan_id)
        if loan.status != LoanStatus.SETTLED:
            raise LoanValidationError("Only settled loans can be renewed")

        application = LoanApplication(
            borrower_id=loan.borrower_id,
            principal=loan.principal.amount,
            rate=loan.rate,
            installment_count=loan.installment_count,
            cadence=loan.cadence,
            interest_mode=loan.interest_mode,
            contract_date=base_date,
            grace_days=self.resolve_grace_days(loan),
            allow_saturday=loan.rules.allow_saturday,
            allow_sunday=loan.rules.allow_sunday,
            allow_holidays=loan.rules.allow_holidays,
            fixed_weekday=loan.fixed_weekday,
            currency=loan.currency.code,
            options=loan.options.model_copy(update={"custom_schedule": []}),
            notes=loan.notes
        )
        renewed = self.create_loan(application, created_by=user_id, renewed_from=loan.id)
        self.publish_event(DomainEvent.LOAN_RENEWED, "loan", loan.id, {"renewed_to": renewed.id})
        return renewed

    def next_collectable_day(self, loan: Loan, day: date) -> date:
        """Move a date to the next day the loan's collection rules allow"""
        return adjust_to_collectable_day(day, loan.rules, self.holidays, self.config.max_adjustment_days)

    def amortization_preview(self, loan_id: str, amount: Decimal) -> AmortizationPreview:
        """
        Preview paying down principal: interest shrinks in proportion to the
        principal and the new total is spread over the open installments.
        """
        if amount is None or amount <= ZERO:
            raise LoanValidationError("Amortization amount must be positive")

        loan = self.require_loan(loan_id)
        installments = self.get_installments(loan_id)
        open_count = sum(1 for i in installments if not i.paid) or 1

        principal = loan.principal.amount
        interest = sum((i.amount.amount for i in installments), ZERO) - principal
        amortized = min(amount, principal)
        new_principal = principal - amortized
        new_interest = interest * new_principal / principal
        new_total = new_principal + new_interest

        currency = loan.currency
        return AmortizationPreview(
            amortized=Money(amortized, currency),
            new_principal=Money(new_principal, currency),
            new_interest=Money(new_interest, currency),
            new_total=Money(new_total, currency),
            remaining_installments=open_count,
            new_installment_amount=Money(new_total / Decimal(open_count), currency)
        )
