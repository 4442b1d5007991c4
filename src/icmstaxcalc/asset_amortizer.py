# asset_amortizer.py
"""
Fixed-asset ICMS credit recovery (CIAP).

An inbound acquisition qualifies when its NCM falls in the recovery table,
its CFOP is a fixed-asset purchase, or a FixedAssetCredit rule matches it.
Each qualifying asset gets a schedule of equal monthly installments:

    installment = icms_on_acquisition / recovery_months

Every run advances each active schedule by the delta between what should be
recognized by now and what already was:

    target     = min(installment * months_elapsed, icms_on_acquisition)
    recognized = clamp(target - cumulative, 0, balance)

so running the same period twice recognizes nothing the second time.
A schedule whose balance reaches zero is Settled and never reopens.

Planning is separate from writing: plan() only reads the store, and the
caller commits the plan after the whole period assessment succeeded.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from .classification import check_codes, is_inbound_cfop
from .credit_ledger import STORE_ERRORS
from .errors import AssetScheduleOverflow, LedgerUnavailable
from .models import FixedAssetCreditRow, FixedAssetMovement
from .periods import whole_months_between
from .rules.repository import RuleRepository
from .schemas import (
    Alert,
    AssessmentConfig,
    AssetAcquisition,
    AssetRecognition,
    AssetStatus,
    Direction,
    FixedAssetCreditRecord,
    RuleKind,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0")

# NCM prefix -> recovery months
RECOVERY_MONTHS_BY_NCM: Dict[str, int] = {
    "8471": 48,   # computers
    "8517": 60,   # telephone sets
    "8528": 60,   # monitors
    "8708": 120,  # vehicle parts
}

# purchases for fixed assets (in-state, interstate, import) and their ST variants
FIXED_ASSET_CFOPS = frozenset({"1551", "2551", "3551", "1406", "2406"})


def recovery_months_for(ncm: str, default: int) -> Tuple[int, bool]:
    """(months, found) using the longest matching NCM prefix."""
    best: Optional[str] = None
    for prefix in RECOVERY_MONTHS_BY_NCM:
        if ncm.startswith(prefix) and (best is None or len(prefix) > len(best)):
            best = prefix
    if best is None:
        return default, False
    return RECOVERY_MONTHS_BY_NCM[best], True


# ---------- store ----------

class SqlAssetStore:
    def __init__(self, session: Session):
        self.session = session

    @staticmethod
    def _to_record(row: FixedAssetCreditRow) -> FixedAssetCreditRecord:
        return FixedAssetCreditRecord.model_validate(row)

    def _row(self, company: str, asset_id: str) -> Optional[FixedAssetCreditRow]:
        stmt = select(FixedAssetCreditRow).where(
            FixedAssetCreditRow.company == company, FixedAssetCreditRow.asset_id == asset_id
        )
        return self.session.scalars(stmt).first()

    def list_records(self, company: str, status: AssetStatus | None = None) -> List[FixedAssetCreditRecord]:
        stmt = select(FixedAssetCreditRow).where(FixedAssetCreditRow.company == company)
        if status is not None:
            stmt = stmt.where(FixedAssetCreditRow.status == status.value)
        stmt = stmt.order_by(FixedAssetCreditRow.id.asc())
        return [self._to_record(r) for r in self.session.scalars(stmt)]

    def known_asset_ids(self, company: str) -> set[str]:
        stmt = select(FixedAssetCreditRow.asset_id).where(FixedAssetCreditRow.company == company)
        return set(self.session.scalars(stmt))

    def save(self, record: FixedAssetCreditRecord) -> None:
        data = record.model_dump()
        data["status"] = record.status.value
        row = self._row(record.company, record.asset_id)
        if row is None:
            self.session.add(FixedAssetCreditRow(**data))
        else:
            for key, value in data.items():
                setattr(row, key, value)

    def add_movement(self, company: str, period: str, assessment_id: str, rec: AssetRecognition) -> None:
        self.session.add(
            FixedAssetMovement(
                company=company,
                asset_id=rec.asset_id,
                period=period,
                assessment_id=assessment_id,
                months_elapsed=rec.months_elapsed,
                amount=rec.recognized,
            )
        )

    def flush(self) -> None:
        self.session.flush()


# ---------- pure schedule math ----------

def create_record(
    company: str, acq: AssetAcquisition, recovery_months: int, cfg: AssessmentConfig
) -> FixedAssetCreditRecord:
    installment = (acq.icms_on_acquisition / recovery_months).quantize(cfg.quantum, rounding=ROUND_HALF_UP)
    balance = max(ZERO, acq.icms_on_acquisition)
    return FixedAssetCreditRecord(
        company=company,
        asset_id=acq.asset_id,
        description=acq.description,
        ncm=acq.ncm,
        acquisition_date=acq.acquisition_date,
        acquisition_value=acq.acquisition_value,
        icms_on_acquisition=acq.icms_on_acquisition,
        recovery_months=recovery_months,
        monthly_installment=installment,
        cumulative_recognized=ZERO,
        balance_remaining=balance,
        status=AssetStatus.ACTIVE if balance > 0 else AssetStatus.SETTLED,
    )


def target_cumulative(record: FixedAssetCreditRecord, months_elapsed: int, cfg: AssessmentConfig) -> Decimal:
    """Credit due after `months_elapsed`, rounded from icms*months/recovery rather than installment*months."""
    icms = record.icms_on_acquisition
    if months_elapsed >= record.recovery_months:
        return icms
    # the last month then lands on icms exactly
    target = (icms * months_elapsed / record.recovery_months).quantize(cfg.quantum, rounding=ROUND_HALF_UP)
    return min(target, icms)


def advance_record(
    record: FixedAssetCreditRecord,
    assessment_date: date,
    period: str,
    cfg: AssessmentConfig,
) -> Tuple[FixedAssetCreditRecord, AssetRecognition, List[Alert]]:
    """Return the advanced copy of `record`; the input is left untouched."""
    alerts: List[Alert] = []
    months = whole_months_between(record.acquisition_date, assessment_date)
    target = target_cumulative(record, months, cfg)
    delta = target - record.cumulative_recognized
    recognized = max(ZERO, min(delta, record.balance_remaining))
    clamped = delta > record.balance_remaining
    if clamped:
        err = AssetScheduleOverflow(
            f"Asset {record.asset_id}: recognition {delta} exceeds balance {record.balance_remaining}; clamped",
            details={"asset_id": record.asset_id, "requested": str(delta)},
        )
        alerts.append(Alert(code=err.kind, message=err.message, ref=record.asset_id))
        logger.warning(err.message)

    cumulative = record.cumulative_recognized + recognized
    balance = record.balance_remaining - recognized
    status = AssetStatus.SETTLED if balance <= 0 else AssetStatus.ACTIVE
    updated = record.model_copy(
        update={
            "cumulative_recognized": cumulative,
            "balance_remaining": max(ZERO, balance),
            "status": status,
            "last_period": max(period, record.last_period or period),
        }
    )
    recognition = AssetRecognition(
        asset_id=record.asset_id,
        months_elapsed=months,
        target_cumulative=target,
        recognized=recognized,
        cumulative_recognized=cumulative,
        balance_remaining=updated.balance_remaining,
        status=status,
        clamped=clamped,
    )
    return updated, recognition, alerts


# ---------- run-level planning ----------

@dataclass
class AmortizationPlan:
    records: List[FixedAssetCreditRecord] = field(default_factory=list)
    recognitions: List[AssetRecognition] = field(default_factory=list)
    alerts: List[Alert] = field(default_factory=list)

    @property
    def total_recognized(self) -> Decimal:
        return sum((r.recognized for r in self.recognitions), ZERO)


class AssetAmortizer:
    def __init__(
        self,
        store: SqlAssetStore,
        repository: RuleRepository,
        jurisdiction: str,
        cfg: AssessmentConfig | None = None,
    ):
        self.store = store
        self.repository = repository
        self.jurisdiction = jurisdiction
        self.cfg = cfg or AssessmentConfig()

    def qualifying_months(self, acq: AssetAcquisition) -> Optional[int]:
        """Recovery months for a qualifying acquisition, None if it doesn't qualify."""
        if acq.direction != Direction.INBOUND or not is_inbound_cfop(acq.cfop):
            return None
        rules = self.repository.find_of_kind(
            RuleKind.FIXED_ASSET_CREDIT, self.jurisdiction, acq.ncm, acq.cfop, acq.cst, acq.acquisition_date
        )
        months, in_table = recovery_months_for(acq.ncm, self.cfg.default_recovery_months)
        for rule in rules:
            if rule.recovery_months:
                return rule.recovery_months
        if rules or in_table or acq.cfop in FIXED_ASSET_CFOPS:
            return months
        return None

    def plan(
        self,
        company: str,
        period: str,
        assessment_date: date,
        candidates: Sequence[AssetAcquisition],
    ) -> AmortizationPlan:
        for acq in candidates:
            check_codes(acq.ncm, acq.cfop, acq.cst, ref=f"asset {acq.asset_id}")

        try:
            active = self.store.list_records(company, AssetStatus.ACTIVE)
            known = self.store.known_asset_ids(company)
        except STORE_ERRORS as exc:
            raise LedgerUnavailable(f"Asset store read failed for {company}: {exc}") from exc

        plan = AmortizationPlan()
        created: set[str] = set()
        new_records: List[FixedAssetCreditRecord] = []
        for acq in candidates:
            if acq.asset_id in known or acq.asset_id in created:
                continue
            if acq.acquisition_date > assessment_date:
                continue
            months = self.qualifying_months(acq)
            if months is None:
                continue
            record = create_record(company, acq, months, self.cfg)
            created.add(acq.asset_id)
            new_records.append(record)
            logger.info("New CIAP schedule %s for %s: %s over %d months", acq.asset_id, company,
                        acq.icms_on_acquisition, months)

        for record in active + new_records:
            if record.status != AssetStatus.ACTIVE:
                plan.records.append(record)
                continue
            updated, recognition, alerts = advance_record(record, assessment_date, period, self.cfg)
            recognition.created = record.asset_id in created
            plan.records.append(updated)
            plan.recognitions.append(recognition)
            plan.alerts.extend(alerts)
        return plan

    def commit(self, company: str, period: str, assessment_id: str, plan: AmortizationPlan) -> None:
        try:
            for record in plan.records:
                self.store.save(record)
            for rec in plan.recognitions:
                if rec.recognized > 0:
                    self.store.add_movement(company, period, assessment_id, rec)
            self.store.flush()
        except STORE_ERRORS as exc:
            raise LedgerUnavailable(f"Asset store write failed for {company}: {exc}") from exc
