"""
Typed contract configuration.

Boundary models for loan creation and for the optional per-contract features
(agreed total, late interest, penalty, custom schedule). They are validated
once when built; the engine only reads their attributes afterwards.
"""

from datetime import date
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from .business_days import CollectionRules
from .config import get_config
from .interest import InterestMode
from .schedule import Cadence


class LateInterestKind(Enum):
    PER_DAY_FLAT = "per_day_flat"              # currency amount per day late
    PER_DAY_PERCENTAGE = "per_day_percentage"  # fraction of the base per day late


class PenaltyKind(Enum):
    FLAT_ONCE = "flat_once"
    PER_DAY_FLAT = "per_day_flat"
    PER_DAY_PERCENTAGE = "per_day_percentage"


class PenaltyScope(Enum):
    ALL_OVERDUE = "all_overdue"
    INSTALLMENT = "installment"


class LateInterestConfig(BaseModel):
    """Interest charged per day on overdue installments"""
    enabled: bool = False
    kind: LateInterestKind = LateInterestKind.PER_DAY_FLAT
    rate: Decimal = Field(Decimal('0'), ge=0, description="Amount or fraction per day")

    @property
    def is_active(self) -> bool:
        return self.enabled and self.rate > 0


class PenaltyConfig(BaseModel):
    """Late fee, independent from late interest"""
    kind: PenaltyKind
    value: Decimal = Field(..., ge=0, description="Flat amount, amount per day or fraction per day")
    scope: PenaltyScope = PenaltyScope.ALL_OVERDUE
    installment_number: Optional[int] = Field(None, ge=1)

    @model_validator(mode="after")
    def _target_present(self) -> 'PenaltyConfig':
        if self.scope == PenaltyScope.INSTALLMENT and self.installment_number is None:
            raise ValueError("installment_number is required when the penalty targets one installment")
        return self


class ScheduleOverride(BaseModel):
    """Hand-edited due date and/or amount of one installment"""
    number: int = Field(..., ge=1)
    due_date: Optional[date] = None
    amount: Optional[Decimal] = Field(None, gt=0)


class ContractOptions(BaseModel):
    """Optional features of a loan contract"""
    manual_total: Optional[Decimal] = Field(None, gt=0, description="Agreed total replacing the rate")
    late_interest: LateInterestConfig = Field(default_factory=LateInterestConfig)
    penalty: Optional[PenaltyConfig] = None
    custom_schedule: List[ScheduleOverride] = Field(default_factory=list)

    @field_validator("custom_schedule")
    @classmethod
    def _unique_numbers(cls, overrides: List[ScheduleOverride]) -> List[ScheduleOverride]:
        numbers = [o.number for o in overrides]
        if len(numbers) != len(set(numbers)):
            raise ValueError("custom schedule lists an installment more than once")
        return sorted(overrides, key=lambda o: o.number)


class LoanApplication(BaseModel):
    """
    Validated request to create a loan

    Collection rules and currency default to the configured values.
    """
    borrower_id: str = Field(..., min_length=1)
    principal: Decimal = Field(..., gt=0)
    rate: Optional[Decimal] = Field(None, ge=0, description="Per-period rate as a fraction")
    installment_count: int = Field(..., gt=0)
    cadence: Cadence = Cadence.MONTHLY
    interest_mode: InterestMode = InterestMode.PER_INSTALLMENT
    contract_date: date
    first_due_date: Optional[date] = None
    grace_days: Optional[int] = Field(None, ge=0)
    allow_saturday: bool = Field(default_factory=lambda: get_config().allow_saturday)
    allow_sunday: bool = Field(default_factory=lambda: get_config().allow_sunday)
    allow_holidays: bool = Field(default_factory=lambda: get_config().allow_holidays)
    fixed_weekday: Optional[int] = Field(None, ge=0, le=6)
    currency: str = Field(default_factory=lambda: get_config().default_currency)
    options: ContractOptions = Field(default_factory=ContractOptions)
    notes: Optional[str] = None

    @model_validator(mode="after")
    def _rate_or_total(self) -> 'LoanApplication':
        if self.rate is None and self.options.manual_total is None:
            raise ValueError("either rate or options.manual_total is required")
        if self.options.manual_total is not None and self.options.manual_total < self.principal:
            raise ValueError("agreed total cannot be below the principal")
        if self.first_due_date is not None and self.first_due_date < self.contract_date:
            raise ValueError("first due date cannot precede the contract date")
        for override in self.options.custom_schedule:
            if override.number > self.installment_count:
                raise ValueError(f"custom schedule references installment {override.number} "
                                 f"of {self.installment_count}")
        return self

    @property
    def collection_rules(self) -> CollectionRules:
        return CollectionRules(self.allow_saturday, self.allow_sunday, self.allow_holidays)
