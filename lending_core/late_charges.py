"""
Penalty and Late-Interest Module

Late interest accrues per day on overdue installments and is computed on the
fly; it becomes part of an installment only when a payment records it.
Penalties are a separate late fee that is persisted on the installment when
explicitly applied.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import List, Optional
import logging

from .audit import AuditEventType, AuditTrail
from .currency import Money, round_money
from .events import DomainEvent, EventDispatcher, EventPublisherMixin
from .exceptions import LoanValidationError
from .loans import Installment, LoanManager
from .logging_config import log_action
from .options import LateInterestConfig, LateInterestKind, PenaltyConfig, PenaltyKind, PenaltyScope
from .rbac import Permission, RBACManager
from .storage import StorageInterface

logger = logging.getLogger("lending.late_charges")

ZERO = Decimal('0')


def accrued_late_interest(installment: Installment, config: LateInterestConfig, as_of: date) -> Decimal:
    """
    Late interest owed on an installment as of a date, unrounded.

    (flat amount per day, or fraction per day x base) x days late; zero when
    the loan has late interest disabled or a zero rate.
    """
    if not config.is_active:
        return ZERO
    days = installment.days_late(as_of)
    if days == 0:
        return ZERO
    if config.kind == LateInterestKind.PER_DAY_PERCENTAGE:
        per_day = config.rate * installment.amount.amount
    else:
        per_day = config.rate
    return per_day * Decimal(days)


def pending_late_interest(installment: Installment, config: LateInterestConfig, as_of: date) -> Money:
    """Accrued late interest not yet recorded on the installment by a payment"""
    accrued = round_money(accrued_late_interest(installment, config, as_of), installment.currency)
    pending = accrued - installment.late_interest_amount.amount
    return Money(max(pending, ZERO), installment.currency)


def calculate_penalty(installment: Installment, config: PenaltyConfig, as_of: date) -> Money:
    """
    Penalty for one installment, rounded and never negative.

    Flat-once charges the value; per-day kinds multiply by days late, the
    percentage kind also by the installment base.
    """
    days = Decimal(installment.days_late(as_of))
    if config.kind == PenaltyKind.FLAT_ONCE:
        amount = config.value
    elif config.kind == PenaltyKind.PER_DAY_FLAT:
        amount = config.value * days
    else:
        amount = config.value * installment.amount.amount * days
    return Money(max(amount, ZERO), installment.currency)


class LateChargeEngine(EventPublisherMixin):
    """
    Applies penalties to overdue installments
    """

    def __init__(
        self,
        storage: StorageInterface,
        loan_manager: LoanManager,
        audit_trail: AuditTrail,
        rbac: Optional[RBACManager] = None,
        event_dispatcher: Optional[EventDispatcher] = None
    ):
        self.storage = storage
        self.loan_manager = loan_manager
        self.audit_trail = audit_trail
        self.rbac = rbac
        self.event_dispatcher = event_dispatcher

    def overdue_installments(self, loan_id: str, as_of: Optional[date] = None) -> List[Installment]:
        """Unpaid installments due before the evaluation date"""
        as_of = as_of or date.today()
        return [i for i in self.loan_manager.get_open_installments(loan_id) if i.is_overdue(as_of)]

    def late_interest_due(self, loan_id: str, as_of: Optional[date] = None) -> Money:
        """Late interest not yet recorded across the loan's overdue installments"""
        as_of = as_of or date.today()
        loan = self.loan_manager.require_loan(loan_id)
        return Money.sum(
            (pending_late_interest(i, loan.late_interest, as_of) for i in self.overdue_installments(loan_id, as_of)),
            loan.currency
        )

    def apply_penalty(self, loan_id: str, config: PenaltyConfig, user_id: Optional[str] = None,
                      as_of: Optional[date] = None) -> List[Installment]:
        """
        Persist a penalty on the targeted overdue installments

        The computed penalty replaces any earlier penalty on the installment and
        its remaining balance is recomputed. The configuration is stored on the
        loan. A replacement that would bring an installment's total due down to
        what it has already received is rejected, leaving every installment
        untouched.

        Args:
            loan_id: Loan ID
            config: Penalty kind, value and scope
            user_id: Staff user applying the penalty
            as_of: Evaluation date (default today)

        Returns:
            The penalized installments
        """
        if self.rbac is not None and user_id is not None:
            self.rbac.require_permission(user_id, Permission.APPLY_PENALTY)
        as_of = as_of or date.today()

        with self.storage.atomic():
            loan = self.loan_manager.require_loan(loan_id)
            targets = self.overdue_installments(loan_id, as_of)
            if config.scope == PenaltyScope.INSTALLMENT:
                targets = [i for i in targets if i.number == config.installment_number]
            if not targets:
                raise LoanValidationError("No overdue installment matches the penalty scope")

            penalties = [calculate_penalty(installment, config, as_of) for installment in targets]
            for installment, penalty in zip(targets, penalties):
                total_due = installment.amount + penalty + installment.late_interest_amount
                if total_due <= installment.paid_amount:
                    raise LoanValidationError(
                        f"Penalty {penalty.amount} on installment {installment.number} would leave "
                        f"{total_due.amount} due against {installment.paid_amount.amount} already paid")

            now = datetime.now(timezone.utc)
            applied = []
            for installment, penalty in zip(targets, penalties):
                installment.penalty_amount = penalty
                installment.penalty_type = config.kind.value
                installment.penalty_applied_at = as_of
                installment.refresh_balance()
                installment.updated_at = now
                self.loan_manager.save_installment(installment)
                applied.append({
                    "number": installment.number,
                    "penalty": str(installment.penalty_amount.amount),
                    "remaining_balance": str(installment.remaining_balance.amount)
                })

            loan.options = loan.options.model_copy(update={"penalty": config})
            loan.updated_at = now
            self.loan_manager.save_loan(loan)

            self.audit_trail.log_event(
                event_type=AuditEventType.PENALTY_APPLIED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={
                    "kind": config.kind.value,
                    "value": str(config.value),
                    "scope": config.scope.value,
                    "as_of": as_of.isoformat(),
                    "installments": applied
                },
                user_id=user_id
            )

        log_action(logger, "info", "Penalty applied", user_id=user_id, action="apply_penalty",
                   resource=f"loan:{loan_id}", extra={"installments": len(targets)})
        self.publish_event(DomainEvent.PENALTY_APPLIED, "loan", loan_id,
                           {"installments": [i.number for i in targets]})
        return targets
