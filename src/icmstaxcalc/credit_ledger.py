"""
Cross-period regional surtax bookkeeping.

Surtax payable in period P becomes a credit in period P+1. A run for P:
  1. reads the payable recorded for P-1 (0 when absent),
  2. net surtax = current payable - that credit (may go negative; the
     negative value is reported, never carried further),
  3. stages P's payable, which is written only when the caller commits
     after a successful aggregation.

The ledger reads exactly one other period (P-1) and writes exactly one (P).
Re-running P overwrites P's entry.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .errors import LedgerUnavailable
from .models import CreditLedgerEntry, utcnow
from .periods import normalize_period, previous_period
from .rules.base import LedgerStore

logger = logging.getLogger(__name__)

ZERO = Decimal("0")

# Failures of the backing store that make the ledger unusable
STORE_ERRORS = (SQLAlchemyError, OSError)


class SqlLedgerStore:
    """LedgerStore on the credit_ledger table; writes join the caller's transaction."""

    def __init__(self, session: Session):
        self.session = session

    def _row(self, company: str, period: str) -> Optional[CreditLedgerEntry]:
        stmt = select(CreditLedgerEntry).where(
            CreditLedgerEntry.company == company, CreditLedgerEntry.period == period
        )
        return self.session.scalars(stmt).first()

    def get(self, company: str, period: str) -> Optional[Decimal]:
        row = self._row(company, period)
        return None if row is None else Decimal(row.payable_surtax)

    def put(self, company: str, period: str, payable_surtax: Decimal) -> None:
        row = self._row(company, period)
        if row is None:
            self.session.add(
                CreditLedgerEntry(company=company, period=period, payable_surtax=payable_surtax)
            )
        else:
            row.payable_surtax = payable_surtax
            row.updated_at = utcnow()
        self.session.flush()


class InMemoryLedgerStore:
    """Dict-backed LedgerStore keyed by (company, period)."""

    def __init__(self, entries: Dict[Tuple[str, str], Decimal] | None = None):
        self._entries: Dict[Tuple[str, str], Decimal] = dict(entries or {})
        self._lock = threading.Lock()

    def get(self, company: str, period: str) -> Optional[Decimal]:
        with self._lock:
            return self._entries.get((company, period))

    def put(self, company: str, period: str, payable_surtax: Decimal) -> None:
        with self._lock:
            self._entries[(company, period)] = payable_surtax

    def snapshot(self) -> Dict[Tuple[str, str], Decimal]:
        with self._lock:
            return dict(self._entries)


@dataclass(frozen=True)
class SurtaxReconciliation:
    company: str
    period: str
    prior_period: str
    prior_credit: Decimal
    current_payable: Decimal
    net_surtax: Decimal
    prior_found: bool


class CreditLedger:
    """Run-scoped view of a LedgerStore with a one-entry staged write buffer."""

    def __init__(self, store: LedgerStore, company: str, period: str):
        self.store = store
        self.company = company
        self.period = normalize_period(period)
        self._staged: Optional[Decimal] = None

    def prior_credit(self) -> Tuple[Decimal, bool]:
        prior = previous_period(self.period)
        try:
            value = self.store.get(self.company, prior)
        except STORE_ERRORS as exc:
            raise LedgerUnavailable(
                f"Ledger read failed for {self.company} {prior}: {exc}",
                details={"company": self.company, "period": prior, "operation": "get"},
            ) from exc
        if value is None:
            return ZERO, False
        return Decimal(value), True

    def reconcile(self, current_payable: Decimal) -> SurtaxReconciliation:
        credit, found = self.prior_credit()
        net = current_payable - credit
        if net < 0:
            logger.info(
                "Surtax credit exceeds payable for %s %s (net %s); not carried forward",
                self.company, self.period, net,
            )
        return SurtaxReconciliation(
            company=self.company,
            period=self.period,
            prior_period=previous_period(self.period),
            prior_credit=credit,
            current_payable=current_payable,
            net_surtax=net,
            prior_found=found,
        )

    def stage(self, payable_surtax: Decimal) -> None:
        self._staged = payable_surtax

    @property
    def staged(self) -> Optional[Decimal]:
        return self._staged

    def discard(self) -> None:
        self._staged = None

    def commit(self) -> None:
        if self._staged is None:
            return
        try:
            self.store.put(self.company, self.period, self._staged)
        except STORE_ERRORS as exc:
            raise LedgerUnavailable(
                f"Ledger write failed for {self.company} {self.period}: {exc}",
                details={"company": self.company, "period": self.period, "operation": "put"},
            ) from exc
        logger.debug("Ledger %s %s <- %s", self.company, self.period, self._staged)
        self._staged = None
