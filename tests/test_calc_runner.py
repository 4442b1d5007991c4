import threading
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import select

from conftest import ListRuleSource, make_item, make_rule
from icmstaxcalc.asset_amortizer import AssetAmortizer
from icmstaxcalc.calc_runner import AssessmentRunner, KeyedLocks
from icmstaxcalc.credit_ledger import InMemoryLedgerStore
from icmstaxcalc.errors import InvalidPeriod, LedgerUnavailable
from icmstaxcalc.models import (
    AssessmentAudit,
    AssessmentRun,
    CreditLedgerEntry,
    FixedAssetCreditRow,
    FixedAssetMovement,
)
from icmstaxcalc.rules.repository import SqlRuleSource
from icmstaxcalc.schemas import (
    AssessmentFilter,
    AssessmentStatus,
    AssetAcquisition,
    Direction,
    Operation,
    RuleKind,
)

D = Decimal
P1, P2 = "2024-01", "2024-02"


@pytest.fixture()
def runner(session_factory, source, cfg):
    with session_factory() as session:
        SqlRuleSource(session).add(make_rule(0, RuleKind.REGIONAL_SURTAX, 10))
        session.commit()
    source.items[("ACME", P1)] = [make_item("1", total="1000")]
    source.items[("ACME", P2)] = [make_item("1", total="1200")]
    source.assets[("ACME", P1)] = [
        AssetAcquisition(
            asset_id="PC-1", ncm="84713012", cfop="1551", acquisition_date=date(2023, 3, 10),
            acquisition_value=D("40000"), icms_on_acquisition=D("4800"),
        )
    ]
    return AssessmentRunner(source, session_factory=session_factory, cfg=cfg)


def _state(session_factory):
    with session_factory() as s:
        ledger = [
            (r.company, r.period, r.payable_surtax)
            for r in s.scalars(select(CreditLedgerEntry).order_by(CreditLedgerEntry.id))
        ]
        assets = [
            (r.asset_id, r.cumulative_recognized, r.balance_remaining, r.status, r.last_period)
            for r in s.scalars(select(FixedAssetCreditRow).order_by(FixedAssetCreditRow.id))
        ]
        moves = [
            (m.asset_id, m.period, m.amount)
            for m in s.scalars(select(FixedAssetMovement).order_by(FixedAssetMovement.id))
        ]
    return ledger, assets, moves


def test_first_period(runner):
    result = runner.run_assessment("ACME", P1)
    assert result.status == AssessmentStatus.COMPLETED
    assert result.jurisdiction == "SP"
    t = result.totals
    assert t.tax_due == D("180.00")
    assert t.surtax_payable == D("100.00")
    assert t.surtax_credited == D("0")
    assert t.net_surtax == D("100.00")
    assert t.asset_credit_recognized == D("1000.00")
    assert t.balance_due == D("-720.00")
    assert result.applied_rules == [1]
    assert result.confidence_score == 100


def test_prior_surtax_is_credited_next_period(runner, session_factory):
    runner.run_assessment("ACME", P1)
    p2 = runner.run_assessment("ACME", P2)
    assert p2.totals.surtax_payable == D("120.00")
    assert p2.totals.surtax_credited == D("100")
    assert p2.totals.net_surtax == D("20.00")
    # one more CIAP month
    assert p2.totals.asset_credit_recognized == D("100.00")

    ledger_before, _, _ = _state(session_factory)
    again = runner.run_assessment("ACME", P2)
    assert again.id != p2.id
    assert again.totals.net_surtax == D("20.00")
    assert again.totals.asset_credit_recognized == D("0")
    ledger_after, _, _ = _state(session_factory)
    assert ledger_after == ledger_before
    assert ("ACME", P1, D("100")) in ledger_after


def test_failed_item_leaves_state_untouched(runner, source, session_factory):
    runner.run_assessment("ACME", P1)
    source.items[("ACME", P2)] = [
        make_item("1"), make_item("2"), make_item("3", ncm="12"), make_item("4"), make_item("5"),
    ]
    before = _state(session_factory)
    result = runner.run_assessment("ACME", P2)
    assert result.status == AssessmentStatus.FAILED
    assert result.error.kind == "InvalidClassification"
    assert "item 3" in result.error.message
    assert result.confidence_score == 0
    assert _state(session_factory) == before


def test_failure_after_ledger_write_rolls_back(runner, session_factory, monkeypatch):
    runner.run_assessment("ACME", P1)
    before = _state(session_factory)

    def boom(self, company, period, assessment_id, plan):
        raise LedgerUnavailable("asset store went away")

    monkeypatch.setattr(AssetAmortizer, "commit", boom)
    result = runner.run_assessment("ACME", P2)
    assert result.status == AssessmentStatus.FAILED
    assert result.error.kind == "LedgerUnavailable"
    assert _state(session_factory) == before


def test_failure_after_ledger_stage_keeps_external_store_clean(session_factory, source, cfg, monkeypatch):
    store = InMemoryLedgerStore()
    source.items[("ACME", P1)] = [make_item()]
    runner = AssessmentRunner(
        source,
        session_factory=session_factory,
        cfg=cfg,
        rule_source=ListRuleSource([make_rule(1, RuleKind.REGIONAL_SURTAX, 10)]),
        ledger_store_factory=lambda s: store,
    )

    def boom(self, company, period, assessment_id, plan):
        raise LedgerUnavailable("asset store went away")

    with monkeypatch.context() as m:
        m.setattr(AssetAmortizer, "commit", boom)
        failed = runner.run_assessment("ACME", P1)
    assert failed.status == AssessmentStatus.FAILED
    assert store.snapshot() == {}

    ok = runner.run_assessment("ACME", P1)
    assert ok.status == AssessmentStatus.COMPLETED
    assert store.snapshot() == {("ACME", P1): D("100.00")}


def test_unreadable_ledger_fails_the_run(session_factory, source, cfg):
    class BrokenStore:
        def get(self, company, period):
            raise OSError("ledger offline")

        def put(self, company, period, payable_surtax):
            raise OSError("ledger offline")

    source.items[("ACME", P1)] = [make_item()]
    runner = AssessmentRunner(
        source, session_factory=session_factory, cfg=cfg, ledger_store_factory=lambda s: BrokenStore()
    )
    result = runner.run_assessment("ACME", P1)
    assert result.status == AssessmentStatus.FAILED
    assert result.error.kind == "LedgerUnavailable"


def test_cancelled_run(runner, session_factory):
    cancel = threading.Event()
    cancel.set()
    result = runner.run_assessment("ACME", P1, cancel=cancel)
    assert result.status == AssessmentStatus.FAILED
    assert result.error.kind == "Cancelled"
    assert _state(session_factory) == ([], [], [])


def test_bad_period_raises(runner):
    with pytest.raises(InvalidPeriod):
        runner.run_assessment("ACME", "2024-13")


def test_differential_and_rule_source_override(session_factory, source, cfg):
    source.items[("ACME", P1)] = [make_item("1", cfop="6102")]
    source.operations[("ACME", P1)] = [
        Operation(id="NF-1", direction=Direction.OUTBOUND, origin="SP", destination="MG", item_refs=("1",))
    ]
    rules = ListRuleSource([make_rule(7, RuleKind.REDUCED_BASE, 50)])
    runner = AssessmentRunner(source, session_factory=session_factory, rule_source=rules, cfg=cfg)
    result = runner.run_assessment("ACME", P1)
    # 500 * 18% + 500 * (18 - 7)%
    assert result.totals.differential == D("55.00")
    assert result.totals.tax_due == D("145.00")
    assert result.applied_rules == [7]


def test_shared_product_code_across_documents(session_factory, source, cfg):
    source.items[("ACME", P1)] = [
        make_item("P1", line_id="NF-1/1", total="1000", cfop="6102"),
        make_item("P1", line_id="NF-2/1", total="3000", cfop="6102"),
    ]
    source.operations[("ACME", P1)] = [
        Operation(id="NF-1", direction=Direction.OUTBOUND, origin="SP", destination="MG", item_refs=("NF-1/1",)),
        Operation(id="NF-2", direction=Direction.OUTBOUND, origin="SP", destination="MG", item_refs=("NF-2/1",)),
    ]
    runner = AssessmentRunner(source, session_factory=session_factory, rule_source=ListRuleSource([]), cfg=cfg)
    result = runner.run_assessment("ACME", P1)
    assert result.status == AssessmentStatus.COMPLETED
    assert [op.adjusted_base for op in result.operation_assessments] == [D("1000.00"), D("3000.00")]
    # (1000 + 3000) * (18 - 7)%
    assert result.totals.differential == D("440.00")


def test_no_items_lowers_confidence(session_factory, source, cfg):
    runner = AssessmentRunner(source, session_factory=session_factory, rule_source=ListRuleSource([]), cfg=cfg)
    result = runner.run_assessment("EMPTY", P1)
    assert result.status == AssessmentStatus.COMPLETED
    assert result.confidence_score == 50


def test_get_and_list(runner):
    assert runner.get_assessment("ACME", P1) is None
    first = runner.run_assessment("ACME", P1)
    second = runner.run_assessment("ACME", P2)
    latest = runner.get_assessment("ACME", P2)
    assert latest.id == second.id
    assert latest.totals == second.totals
    assert latest.item_assessments[0].item.ncm == "84713012"

    listed = runner.list_assessments("ACME")
    assert [a.id for a in listed] == [second.id, first.id]
    only_p1 = runner.list_assessments("ACME", AssessmentFilter(period_to=P1))
    assert [a.id for a in only_p1] == [first.id]
    assert runner.list_assessments("ACME", AssessmentFilter(status=AssessmentStatus.FAILED)) == []


def test_failed_run_is_recorded(runner, source, session_factory):
    source.items[("ACME", P1)] = [make_item("1", cst="X")]
    result = runner.run_assessment("ACME", P1)
    stored = runner.get_assessment("ACME", P1)
    assert stored.id == result.id
    assert stored.status == AssessmentStatus.FAILED
    with session_factory() as s:
        actions = [a.action for a in s.scalars(select(AssessmentAudit))]
        run = s.scalars(select(AssessmentRun)).one()
    assert actions == ["assessment_failed"]
    assert run.error_kind == "InvalidClassification"


def test_completed_run_stores_digests(runner, session_factory):
    first = runner.run_assessment("ACME", P1)
    with session_factory() as s:
        run = s.scalars(select(AssessmentRun).where(AssessmentRun.id == first.id)).one()
    assert len(run.input_hash) == 64
    assert len(run.manifest_hash) == 64


def test_surtax_report(runner):
    runner.run_assessment("ACME", P1)
    runner.run_assessment("ACME", P2)
    report = runner.surtax_report("ACME", "2023-12", P2)
    assert report.periods == 2
    assert [r.period for r in report.rows] == [P1, P2]
    assert report.rows[0].credit_period == P2
    assert report.total_payable == D("220.00")
    assert report.total_credited == D("100")
    assert report.total_net == D("120.00")


def test_keyed_locks():
    locks = KeyedLocks()
    order = []

    def same_key():
        with locks.hold("ACME", P1):
            order.append("second")

    def other_key():
        with locks.hold("ACME", P2):
            order.append("other")

    with locks.hold("ACME", P1):
        blocked = threading.Thread(target=same_key)
        free = threading.Thread(target=other_key)
        blocked.start()
        free.start()
        free.join(5)
        blocked.join(0.2)
        assert blocked.is_alive()
        order.append("first")
    blocked.join(5)
    assert order == ["other", "first", "second"]
    assert locks._locks == {}
