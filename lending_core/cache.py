"""
Read-Through Loan Cache

Keeps a snapshot (loan, installments, payments) per loan id for readers that
ask for the same loan repeatedly. A snapshot is dropped when a change
notification for its loan arrives, when a caller invalidates or refetches it
explicitly, or when it is older than the configured TTL.
"""

from dataclasses import dataclass
from datetime import date
from threading import RLock
from typing import Callable, Dict, List, Optional
import time

from .config import LendingConfig, get_config
from .events import EventDispatcher, EventPayload
from .loans import Installment, Loan, LoanManager
from .payments import Payment, PaymentLedger
from .quote import LoanQuote, build_quote


@dataclass(frozen=True)
class LoanSnapshot:
    """Everything read for one loan at one moment"""
    loan: Loan
    installments: List[Installment]
    payments: List[Payment]
    fetched_at: float


class LoanCache:
    """Read-through cache keyed by loan id"""

    def __init__(
        self,
        loan_manager: LoanManager,
        ledger: PaymentLedger,
        event_dispatcher: Optional[EventDispatcher] = None,
        ttl_seconds: Optional[float] = None,
        config: Optional[LendingConfig] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.loan_manager = loan_manager
        self.ledger = ledger
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else (config or get_config()).cache_ttl_seconds
        self._clock = clock
        self._entries: Dict[str, LoanSnapshot] = {}
        self._lock = RLock()
        self.hits = 0
        self.misses = 0

        if event_dispatcher is not None:
            event_dispatcher.subscribe_all(self._on_event)

    def _on_event(self, event: EventPayload) -> None:
        loan_id = event.loan_id
        if loan_id:
            self.invalidate(loan_id)

    def _fresh(self, snapshot: LoanSnapshot) -> bool:
        return self._clock() - snapshot.fetched_at < self.ttl_seconds

    def get(self, loan_id: str) -> LoanSnapshot:
        """
        Return the cached snapshot, loading it on a miss

        Raises:
            LoanNotFoundError: if the loan does not exist
        """
        with self._lock:
            snapshot = self._entries.get(loan_id)
            if snapshot is not None and self._fresh(snapshot):
                self.hits += 1
                return snapshot
            self.misses += 1
            return self._load(loan_id)

    def _load(self, loan_id: str) -> LoanSnapshot:
        snapshot = LoanSnapshot(
            loan=self.loan_manager.require_loan(loan_id),
            installments=self.loan_manager.get_installments(loan_id),
            payments=self.ledger.get_loan_payments(loan_id),
            fetched_at=self._clock()
        )
        self._entries[loan_id] = snapshot
        return snapshot

    def refetch(self, loan_id: str) -> LoanSnapshot:
        """Reload a loan regardless of what is cached"""
        with self._lock:
            return self._load(loan_id)

    def invalidate(self, loan_id: str) -> None:
        with self._lock:
            self._entries.pop(loan_id, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __contains__(self, loan_id: str) -> bool:
        with self._lock:
            snapshot = self._entries.get(loan_id)
            return snapshot is not None and self._fresh(snapshot)

    def quote(self, loan_id: str, as_of: Optional[date] = None) -> LoanQuote:
        """Quote a loan from its cached snapshot"""
        snapshot = self.get(loan_id)
        return build_quote(snapshot.loan, snapshot.installments, as_of, snapshot.payments)
