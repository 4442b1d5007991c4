from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import select

from conftest import make_rule
from icmstaxcalc.asset_amortizer import (
    AssetAmortizer,
    SqlAssetStore,
    advance_record,
    create_record,
    recovery_months_for,
)
from icmstaxcalc.errors import InvalidClassification
from icmstaxcalc.models import FixedAssetMovement
from icmstaxcalc.periods import period_end
from icmstaxcalc.rules.repository import RuleRepository
from icmstaxcalc.schemas import AssetAcquisition, AssetStatus, Direction, RuleKind

D = Decimal


def _acq(asset_id="PC-1", ncm="84713012", cfop="1551", when=date(2024, 1, 15), icms="4800", **kw):
    return AssetAcquisition(
        asset_id=asset_id, ncm=ncm, cfop=cfop, acquisition_date=when,
        acquisition_value=D("40000"), icms_on_acquisition=D(icms), **kw,
    )


def _run(session, cfg, period, candidates, rules=()):
    amortizer = AssetAmortizer(SqlAssetStore(session), RuleRepository(rules), "SP", cfg)
    plan = amortizer.plan("ACME", period, period_end(period), candidates)
    amortizer.commit("ACME", period, f"run-{period}", plan)
    session.commit()
    return plan


def test_recovery_table():
    assert recovery_months_for("84713012", 60) == (48, True)
    assert recovery_months_for("87083000", 60) == (120, True)
    assert recovery_months_for("94031000", 60) == (60, False)


def test_ten_months_recognizes_ten_installments(session_factory, cfg):
    with session_factory() as session:
        plan = _run(session, cfg, "2024-11", [_acq()])
        rec = plan.recognitions[0]
        assert rec.created
        assert rec.months_elapsed == 10
        assert rec.recognized == D("1000.00")
        assert plan.records[0].monthly_installment == D("100.00")
        assert plan.records[0].balance_remaining == D("3800.00")


def test_rerun_recognizes_nothing_more(session_factory, cfg):
    with session_factory() as session:
        _run(session, cfg, "2024-11", [_acq()])
        again = _run(session, cfg, "2024-11", [_acq()])
        assert again.total_recognized == D("0")
        assert again.recognitions[0].cumulative_recognized == D("1000")
        movements = session.scalars(select(FixedAssetMovement)).all()
        assert [m.amount for m in movements] == [D("1000")]


def test_later_period_recognizes_only_the_delta(session_factory, cfg):
    with session_factory() as session:
        _run(session, cfg, "2024-11", [_acq()])
        plan = _run(session, cfg, "2025-01", [])
        assert plan.recognitions[0].recognized == D("200.00")
        assert plan.recognitions[0].cumulative_recognized == D("1200")


def test_schedule_settles_on_exact_icms(session_factory, cfg):
    with session_factory() as session:
        _run(session, cfg, "2024-02", [_acq(icms="1000")])
        plan = _run(session, cfg, "2030-01", [])
        rec = plan.recognitions[0]
        assert rec.status == AssetStatus.SETTLED
        assert rec.cumulative_recognized == D("1000")
        assert rec.balance_remaining == D("0")
        # settled schedules are not advanced again
        assert _run(session, cfg, "2030-02", []).recognitions == []


def test_qualification(session_factory, cfg):
    candidates = [
        _acq("sale", cfop="5551", direction=Direction.OUTBOUND),
        _acq("chair", ncm="94031000", cfop="1102"),
        _acq("desk", ncm="94031000", cfop="1551"),
        _acq("future", when=date(2025, 6, 1)),
    ]
    with session_factory() as session:
        plan = _run(session, cfg, "2024-11", candidates)
        assert [r.asset_id for r in plan.records] == ["desk"]
        assert plan.records[0].recovery_months == 60


def test_rule_recovery_months_override(session_factory, cfg):
    rule = make_rule(1, RuleKind.FIXED_ASSET_CREDIT, recovery_months=24, ncm_match="9403")
    with session_factory() as session:
        plan = _run(session, cfg, "2024-11", [_acq("chair", ncm="94031000", cfop="1102", icms="2400")], [rule])
        assert plan.records[0].recovery_months == 24
        assert plan.recognitions[0].recognized == D("1000.00")


def test_overflow_is_clamped_with_alert(cfg):
    record = create_record("ACME", _acq(), 48, cfg).model_copy(update={"balance_remaining": D("50")})
    updated, rec, alerts = advance_record(record, date(2024, 11, 30), "2024-11", cfg)
    assert rec.clamped
    assert rec.recognized == D("50")
    assert updated.status == AssetStatus.SETTLED
    assert [a.code for a in alerts] == ["AssetScheduleOverflow"]


def test_advance_does_not_mutate_input(cfg):
    record = create_record("ACME", _acq(), 48, cfg)
    advance_record(record, date(2024, 11, 30), "2024-11", cfg)
    assert record.cumulative_recognized == D("0")


def test_malformed_candidate(session_factory, cfg):
    with session_factory() as session:
        with pytest.raises(InvalidClassification):
            _run(session, cfg, "2024-11", [_acq(ncm="123")])
