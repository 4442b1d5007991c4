from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Dict, List, Tuple

import pytest
from sqlalchemy.pool import StaticPool

from icmstaxcalc.db import init_db, make_engine, make_session_factory
from icmstaxcalc.schemas import (
    AssessmentConfig,
    AssetAcquisition,
    LineItem,
    Operation,
    RuleKind,
    TaxRule,
)

D = Decimal


@pytest.fixture()
def engine():
    eng = make_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture()
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture()
def cfg():
    return AssessmentConfig(
        default_rate=D("18"),
        default_interstate_rate=D("7"),
        fallback_dest_rate=D("18"),
        default_recovery_months=60,
        max_workers=1,
    )


def make_rule(id: int, kind: RuleKind, pct=None, **kw) -> TaxRule:
    param = {
        RuleKind.REDUCED_BASE: "reduction_pct",
        RuleKind.PRESUMED_CREDIT: "credit_pct",
        RuleKind.REGIONAL_SURTAX: "surtax_pct",
        RuleKind.EXEMPTION: "exemption_pct",
    }.get(kind)
    if param and pct is not None:
        kw[param] = D(str(pct))
    kw.setdefault("jurisdiction", "SP")
    kw.setdefault("valid_from", date(2020, 1, 1))
    return TaxRule(id=id, kind=kind, **kw)


def make_item(code: str = "1", total="1000", **kw) -> LineItem:
    kw.setdefault("ncm", "84713012")
    kw.setdefault("cfop", "5102")
    kw.setdefault("cst", "00")
    return LineItem(code=code, total_value=D(str(total)), **kw)


class FakeSource:
    """AssessmentSource over plain dicts keyed by (company, period)."""

    def __init__(self, jurisdiction: str = "SP"):
        self.jurisdiction = jurisdiction
        self.items: Dict[Tuple[str, str], List[LineItem]] = {}
        self.operations: Dict[Tuple[str, str], List[Operation]] = {}
        self.assets: Dict[Tuple[str, str], List[AssetAcquisition]] = {}

    def get_jurisdiction(self, company: str) -> str:
        return self.jurisdiction

    def get_line_items_and_operations(self, company: str, period: str):
        key = (company, period)
        return list(self.items.get(key, [])), list(self.operations.get(key, []))

    def get_fixed_asset_candidates(self, company: str, period: str):
        return list(self.assets.get((company, period), []))


class ListRuleSource:
    def __init__(self, rules):
        self.rules = list(rules)

    def get_rules(self, jurisdiction: str, as_of: date):
        return [r for r in self.rules if r.jurisdiction == jurisdiction]


@pytest.fixture()
def source():
    return FakeSource()
