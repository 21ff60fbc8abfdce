"""
Credit Score Module

Derives a 0-1000 score and an A-D band per borrower from how their
installments were paid. Only installments already due on the evaluation date
count: paid on or before the due date, paid late, or still open past due.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Iterable, List, Optional
import uuid

from .audit import AuditEventType, AuditTrail
from .config import LendingConfig, get_config
from .loans import Installment, LoanManager, LoanStatus
from .rbac import Permission, RBACManager
from .storage import StorageInterface, StorageRecord


@dataclass(frozen=True)
class ScoreWeights:
    """Score formula constants"""
    base: int = 350
    on_time_weight: int = 650
    late_paid_penalty: int = 15
    late_unpaid_penalty: int = 30
    band_a: int = 900
    band_b: int = 750
    band_c: int = 600

    @classmethod
    def from_config(cls, config: LendingConfig) -> 'ScoreWeights':
        return cls(
            base=config.score_base,
            on_time_weight=config.score_on_time_weight,
            late_paid_penalty=config.score_late_paid_penalty,
            late_unpaid_penalty=config.score_late_unpaid_penalty,
            band_a=config.score_band_a,
            band_b=config.score_band_b,
            band_c=config.score_band_c,
        )


@dataclass(frozen=True)
class ScoreCounts:
    """How a borrower's due installments were paid"""
    total: int = 0
    evaluated: int = 0
    on_time_paid: int = 0
    late_paid: int = 0
    late_unpaid: int = 0

    @property
    def on_time_ratio(self) -> Decimal:
        if self.evaluated == 0:
            return Decimal('1')
        return Decimal(self.on_time_paid) / Decimal(self.evaluated)


@dataclass
class ScoreSnapshot(StorageRecord):
    """Score of one borrower at an evaluation date"""
    borrower_id: str
    score: int
    band: str
    as_of: date
    counts: ScoreCounts = field(default_factory=ScoreCounts)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'borrower_id': self.borrower_id,
            'score': self.score,
            'band': self.band,
            'as_of': self.as_of.isoformat(),
            'total': self.counts.total,
            'evaluated': self.counts.evaluated,
            'on_time_paid': self.counts.on_time_paid,
            'late_paid': self.counts.late_paid,
            'late_unpaid': self.counts.late_unpaid,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ScoreSnapshot':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            borrower_id=data['borrower_id'],
            score=data['score'],
            band=data['band'],
            as_of=date.fromisoformat(data['as_of']),
            counts=ScoreCounts(
                total=data['total'],
                evaluated=data['evaluated'],
                on_time_paid=data['on_time_paid'],
                late_paid=data['late_paid'],
                late_unpaid=data['late_unpaid'],
            ),
        )


def classify_installments(installments: Iterable[Installment], as_of: date) -> ScoreCounts:
    """
    Count on-time, late-paid and late-unpaid installments.

    Paid installments due on or before as_of are evaluated. An open
    installment is evaluated only once it is past due, so one due exactly on
    as_of does not count yet.
    """
    total = evaluated = on_time = late_paid = late_unpaid = 0
    for installment in installments:
        total += 1
        if installment.paid:
            if installment.due_date > as_of:
                continue
            evaluated += 1
            if installment.paid_at is not None and installment.paid_at <= installment.due_date:
                on_time += 1
            else:
                late_paid += 1
        elif installment.due_date < as_of:
            evaluated += 1
            late_unpaid += 1
    return ScoreCounts(total, evaluated, on_time, late_paid, late_unpaid)


def compute_score(counts: ScoreCounts, weights: ScoreWeights = ScoreWeights()) -> int:
    """base + weight x on-time ratio - late penalties, rounded half up and clamped to 0..1000"""
    raw = (
        Decimal(weights.base)
        + Decimal(weights.on_time_weight) * counts.on_time_ratio
        - Decimal(weights.late_paid_penalty * counts.late_paid)
        - Decimal(weights.late_unpaid_penalty * counts.late_unpaid)
    )
    score = int(raw.quantize(Decimal('1'), rounding=ROUND_HALF_UP))
    return max(0, min(1000, score))


def score_band(score: int, weights: ScoreWeights = ScoreWeights()) -> str:
    if score >= weights.band_a:
        return "A"
    if score >= weights.band_b:
        return "B"
    if score >= weights.band_c:
        return "C"
    return "D"


class CreditScoreEngine:
    """
    Scores borrowers from their installment history
    """

    def __init__(
        self,
        storage: StorageInterface,
        loan_manager: LoanManager,
        audit_trail: Optional[AuditTrail] = None,
        weights: Optional[ScoreWeights] = None,
        config: Optional[LendingConfig] = None,
        rbac: Optional[RBACManager] = None
    ):
        self.storage = storage
        self.loan_manager = loan_manager
        self.audit_trail = audit_trail
        self.weights = weights or ScoreWeights.from_config(config or get_config())
        self.rbac = rbac
        self.snapshots_table = "score_snapshots"

    def _borrower_installments(self, borrower_id: str) -> List[Installment]:
        installments = []
        for loan in self.loan_manager.get_borrower_loans(borrower_id):
            if loan.status == LoanStatus.CANCELED:
                continue
            installments.extend(self.loan_manager.get_installments(loan.id))
        return installments

    def score_borrower(self, borrower_id: str, as_of: Optional[date] = None) -> ScoreSnapshot:
        """Compute (without saving) a borrower's score as of a date"""
        as_of = as_of or date.today()
        counts = classify_installments(self._borrower_installments(borrower_id), as_of)
        score = compute_score(counts, self.weights)

        now = datetime.now(timezone.utc)
        return ScoreSnapshot(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            borrower_id=borrower_id,
            score=score,
            band=score_band(score, self.weights),
            as_of=as_of,
            counts=counts
        )

    def score_all(self, as_of: Optional[date] = None,
                  borrower_ids: Optional[Iterable[str]] = None) -> List[ScoreSnapshot]:
        """Scores of every borrower with a loan, best first, ties by borrower id"""
        if borrower_ids is None:
            borrower_ids = {loan.borrower_id for loan in self.loan_manager.list_loans()}
        snapshots = [self.score_borrower(borrower_id, as_of) for borrower_id in borrower_ids]
        snapshots.sort(key=lambda s: (-s.score, s.borrower_id))
        return snapshots

    def record_snapshot(self, borrower_id: str, as_of: Optional[date] = None,
                        user_id: Optional[str] = None) -> ScoreSnapshot:
        """Compute and persist a borrower's score; user_id needs RECORD_SCORE when rbac is set"""
        if self.rbac is not None and user_id is not None:
            self.rbac.require_permission(user_id, Permission.RECORD_SCORE)
        snapshot = self.score_borrower(borrower_id, as_of)
        with self.storage.atomic():
            self.storage.save(self.snapshots_table, snapshot.id, snapshot.to_dict())
            if self.audit_trail is not None:
                self.audit_trail.log_event(
                    event_type=AuditEventType.SCORE_RECORDED,
                    entity_type="borrower",
                    entity_id=borrower_id,
                    metadata={"score": snapshot.score, "band": snapshot.band,
                              "as_of": snapshot.as_of},
                    user_id=user_id
                )
        return snapshot

    def get_snapshots(self, borrower_id: str) -> List[ScoreSnapshot]:
        """Recorded scores of a borrower, oldest evaluation first"""
        rows = self.storage.find(self.snapshots_table, {"borrower_id": borrower_id})
        snapshots = [ScoreSnapshot.from_dict(row) for row in rows]
        snapshots.sort(key=lambda s: (s.as_of, s.created_at))
        return snapshots
