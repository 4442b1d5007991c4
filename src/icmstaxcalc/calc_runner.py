from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import date
from decimal import Decimal
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from .aggregator import aggregate
from .asset_amortizer import AssetAmortizer, SqlAssetStore
from .audit_digest import build_assessment_manifest, compute_digests
from .audit_utils import audit
from .benefit_pipeline import assess_items
from .classification import check_jurisdiction
from .credit_ledger import CreditLedger, SqlLedgerStore
from .db import SessionLocal
from .differential import assess_operations
from .errors import AssessmentError, LedgerUnavailable, RunCancelled
from .models import AssessmentRun
from .periods import iter_periods, next_period, normalize_period, period_end
from .rules.base import AssessmentSource, LedgerStore, RateTable, RuleSource
from .rules.rates import StaticRateTable
from .rules.repository import RuleRepository, SqlRuleSource
from .schemas import (
    Alert,
    AssessmentConfig,
    AssessmentFilter,
    AssessmentStatus,
    AssetAcquisition,
    ErrorInfo,
    LineItem,
    PeriodAssessment,
    SurtaxReport,
    SurtaxReportRow,
    TaxRule,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


class KeyedLocks:
    """One lock per key; entries are dropped once nobody holds or waits on them."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[Tuple[str, str], list] = {}

    @contextmanager
    def hold(self, company: str, period: str) -> Iterator[None]:
        key = (company, period)
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        entry[0].acquire()
        try:
            yield
        finally:
            entry[0].release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]


def _check_cancel(cancel: Optional[threading.Event], stage: str) -> None:
    if cancel is not None and cancel.is_set():
        raise RunCancelled(f"Run cancelled before {stage}", details={"stage": stage})


def _rule_dates(as_of: date, items: Sequence[LineItem], candidates: Sequence[AssetAcquisition]) -> List[date]:
    dates = {as_of}
    dates.update(i.issue_date for i in items if i.issue_date is not None)
    dates.update(a.acquisition_date for a in candidates if a.acquisition_date <= as_of)
    return sorted(dates)


def _failed(draft: PeriodAssessment, exc: BaseException) -> PeriodAssessment:
    if isinstance(exc, AssessmentError):
        info = ErrorInfo(**exc.to_dict())
    else:
        info = ErrorInfo(kind=type(exc).__name__, message=str(exc))
    return draft.model_copy(
        update={
            "status": AssessmentStatus.FAILED,
            "error": info,
            "alerts": [Alert(code=info.kind, message=info.message)],
            "confidence_score": 0,
        }
    )


def _from_row(row: AssessmentRun) -> PeriodAssessment:
    return PeriodAssessment.model_validate_json(row.payload_json)


class AssessmentRunner:
    """
    Runs one (company, period) assessment end to end.

    Asset schedules, the stored assessment and its audit rows go through one
    session and are committed together, only after aggregation succeeded.
    The ledger entry stays staged until every session write has flushed and
    is put right before the session commit, so a ledger store outside the
    session is not touched by a run that fails earlier. Any error rolls the
    session back, so a Failed run leaves ledger and asset state as it found it.

    Runs for the same (company, period) are serialized; different keys run
    concurrently. Share one runner per process so the locks are shared too.
    """

    def __init__(
        self,
        source: AssessmentSource,
        session_factory: sessionmaker | None = None,
        rule_source: RuleSource | None = None,
        rate_table: RateTable | None = None,
        cfg: AssessmentConfig | None = None,
        ledger_store_factory: Callable[[Session], LedgerStore] = SqlLedgerStore,
    ):
        self.source = source
        self.session_factory = session_factory or SessionLocal
        self.rule_source = rule_source
        self.rate_table = rate_table or StaticRateTable()
        self.cfg = cfg or AssessmentConfig()
        self.ledger_store_factory = ledger_store_factory
        self._locks = KeyedLocks()

    # ---------- run ----------

    def run_assessment(
        self, company: str, period: str, cancel: Optional[threading.Event] = None
    ) -> PeriodAssessment:
        """
        Assess `company` for `period` (YYYY-MM).

        Always returns a PeriodAssessment: Completed on success, Failed with
        the error kind and message otherwise. A malformed period raises
        InvalidPeriod before anything runs.
        """
        period = normalize_period(period)
        with self._locks.hold(company, period):
            draft = PeriodAssessment(company=company, period=period)
            logger.info("Assessment %s started for %s %s", draft.id, company, period)
            session = self.session_factory()
            try:
                result, ledger = self._run(session, draft, cancel)
                # every other write is flushed by now; a failure here still rolls the session back
                ledger.commit()
                session.commit()
            except AssessmentError as exc:
                session.rollback()
                logger.error("Assessment %s failed (%s): %s", draft.id, exc.kind, exc.message)
                result = _failed(draft, exc)
            except SQLAlchemyError as exc:
                session.rollback()
                logger.error("Assessment %s: store failure: %s", draft.id, exc)
                result = _failed(draft, LedgerUnavailable(f"Store failure: {exc}"))
            except Exception as exc:
                session.rollback()
                logger.exception("Assessment %s failed unexpectedly", draft.id)
                result = _failed(draft, exc)
            finally:
                session.close()

            if result.status == AssessmentStatus.FAILED:
                self._record_failure(result)
            else:
                logger.info(
                    "Assessment %s completed for %s %s: balance due %s, confidence %d",
                    result.id, company, period, result.totals.balance_due, result.confidence_score,
                )
            return result

    def _load_rules(
        self, session: Session, jurisdiction: str, dates: Sequence[date]
    ) -> RuleRepository:
        source = self.rule_source or SqlRuleSource(session)
        merged: Dict[int, TaxRule] = {}
        for as_of in dates:
            for rule in RuleRepository.from_source(source, jurisdiction, as_of).rules:
                merged.setdefault(rule.id, rule)
        logger.debug("Rule set for %s: %d rules over %d dates", jurisdiction, len(merged), len(dates))
        return RuleRepository(merged.values())

    def _run(
        self, session: Session, draft: PeriodAssessment, cancel: Optional[threading.Event]
    ) -> Tuple[PeriodAssessment, CreditLedger]:
        cfg = self.cfg
        company, period = draft.company, draft.period
        as_of = period_end(period)

        jurisdiction = check_jurisdiction(
            (self.source.get_jurisdiction(company) or "").upper(), ref=f"company {company}"
        )
        draft = draft.model_copy(update={"jurisdiction": jurisdiction})
        items, operations = self.source.get_line_items_and_operations(company, period)
        candidates = self.source.get_fixed_asset_candidates(company, period)
        repository = self._load_rules(session, jurisdiction, _rule_dates(as_of, items, candidates))
        _check_cancel(cancel, "item assessment")

        # 1) items, then operations over the item results
        item_results = assess_items(items, repository, jurisdiction, as_of, self.rate_table, cfg)
        op_results, op_alerts = assess_operations(operations, item_results, self.rate_table, cfg)
        _check_cancel(cancel, "ledger reconciliation")

        # 2) surtax against P-1, only once every item is done
        ledger = CreditLedger(self.ledger_store_factory(session), company, period)
        current_payable = sum((ia.surtax for ia in item_results), ZERO)
        reconciliation = ledger.reconcile(current_payable)
        ledger.stage(current_payable)

        # 3) CIAP schedules, planned but not written
        amortizer = AssetAmortizer(SqlAssetStore(session), repository, jurisdiction, cfg)
        plan = amortizer.plan(company, period, as_of, candidates)

        assessment = aggregate(draft, item_results, op_results, reconciliation, plan, op_alerts)
        _check_cancel(cancel, "commit")

        # 4) session writes; the staged ledger entry goes out last, in run_assessment
        amortizer.commit(company, period, assessment.id, plan)
        self._store(session, assessment)
        audit(
            session,
            cfg.actor,
            "assessment_completed",
            assessment.id,
            {
                "company": company,
                "period": period,
                "balance_due": assessment.totals.balance_due,
                "applied_rules": assessment.applied_rules,
                "confidence_score": assessment.confidence_score,
            },
        )
        session.flush()
        return assessment, ledger

    def _store(self, session: Session, assessment: PeriodAssessment) -> None:
        digests = compute_digests(build_assessment_manifest(assessment))
        session.add(
            AssessmentRun(
                id=assessment.id,
                company=assessment.company,
                period=assessment.period,
                status=assessment.status.value,
                confidence_score=assessment.confidence_score,
                error_kind=assessment.error.kind if assessment.error else None,
                payload_json=assessment.model_dump_json(),
                input_hash=digests["input_hash"],
                output_hash=digests["output_hash"],
                manifest_hash=digests["manifest_hash"],
                created_at=assessment.created_at.replace(tzinfo=None),
            )
        )

    def _record_failure(self, assessment: PeriodAssessment) -> None:
        """Keep the Failed assessment in its own transaction; a store outage only gets logged."""
        session = self.session_factory()
        try:
            self._store(session, assessment)
            audit(
                session,
                self.cfg.actor,
                "assessment_failed",
                assessment.id,
                {"company": assessment.company, "period": assessment.period, "error": assessment.error.kind},
            )
            session.commit()
        except SQLAlchemyError:
            session.rollback()
            logger.exception("Could not record failed assessment %s", assessment.id)
        finally:
            session.close()

    # ---------- queries ----------

    def get_assessment(self, company: str, period: str) -> Optional[PeriodAssessment]:
        """Latest stored assessment for the key, whatever its status."""
        period = normalize_period(period)
        stmt = (
            select(AssessmentRun)
            .where(AssessmentRun.company == company, AssessmentRun.period == period)
            .order_by(AssessmentRun.seq.desc())
            .limit(1)
        )
        with self.session_factory() as session:
            row = session.scalars(stmt).first()
            return None if row is None else _from_row(row)

    def list_assessments(self, company: str, flt: AssessmentFilter | None = None) -> List[PeriodAssessment]:
        """Stored assessments for a company, newest period first, newest run first within a period."""
        flt = flt or AssessmentFilter()
        stmt = select(AssessmentRun).where(AssessmentRun.company == company)
        if flt.status is not None:
            stmt = stmt.where(AssessmentRun.status == flt.status.value)
        if flt.period_from:
            stmt = stmt.where(AssessmentRun.period >= normalize_period(flt.period_from))
        if flt.period_to:
            stmt = stmt.where(AssessmentRun.period <= normalize_period(flt.period_to))
        stmt = stmt.order_by(AssessmentRun.period.desc(), AssessmentRun.seq.desc()).limit(flt.limit)
        with self.session_factory() as session:
            return [_from_row(row) for row in session.scalars(stmt)]

    def surtax_report(self, company: str, period_from: str, period_to: str) -> SurtaxReport:
        """
        Surtax payable, credited and net per period, from the latest Completed
        assessment of each period in the range. Periods never completed are skipped.
        """
        first, last = normalize_period(period_from), normalize_period(period_to)
        stmt = (
            select(AssessmentRun)
            .where(AssessmentRun.company == company)
            .where(AssessmentRun.status == AssessmentStatus.COMPLETED.value)
            .where(AssessmentRun.period >= first, AssessmentRun.period <= last)
            .order_by(AssessmentRun.seq.asc())
        )
        latest: Dict[str, PeriodAssessment] = {}
        with self.session_factory() as session:
            for row in session.scalars(stmt):
                latest[row.period] = _from_row(row)

        report = SurtaxReport(company=company, period_from=first, period_to=last)
        for period in iter_periods(first, last):
            assessment = latest.get(period)
            if assessment is None:
                continue
            t = assessment.totals
            report.rows.append(
                SurtaxReportRow(
                    period=period,
                    payable=t.surtax_payable,
                    credited=t.surtax_credited,
                    net=t.net_surtax,
                    credit_period=next_period(period),
                )
            )
            report.total_payable += t.surtax_payable
            report.total_credited += t.surtax_credited
            report.total_net += t.net_surtax
        report.periods = len(report.rows)
        return report
