"""
Rule lookup.

A rule applies to a line item when, for each of NCM / CFOP / CST, its match
set is a wildcard or holds a prefix of the item's code, the rule is active,
and the assessment date falls inside its validity window.

Every applicable rule is returned, ordered by ascending id, and the benefit
pipeline applies all of them cumulatively. Two rules of the same kind on one
item compound.
"""
from __future__ import annotations

import logging
from datetime import date
from typing import Iterable, List, Sequence

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from icmstaxcalc.models import TaxRuleRow
from icmstaxcalc.schemas import WILDCARD, RuleKind, TaxRule, normalize_code

logger = logging.getLogger(__name__)


def prefix_matches(prefixes: Sequence[str], code: str) -> bool:
    if not prefixes or WILDCARD in prefixes:
        return True
    return any(code.startswith(p) for p in prefixes)


def rule_in_force(rule: TaxRule, as_of: date) -> bool:
    if not rule.active:
        return False
    if as_of < rule.valid_from:
        return False
    return rule.valid_to is None or as_of <= rule.valid_to


def rule_matches(rule: TaxRule, ncm: str, cfop: str, cst: str) -> bool:
    return (
        prefix_matches(rule.ncm_match, ncm)
        and prefix_matches(rule.cfop_match, cfop)
        and prefix_matches(rule.cst_match, cst)
    )


class RuleRepository:
    """Holds a rule set and answers find_applicable(); no side effects."""

    def __init__(self, rules: Iterable[TaxRule] = ()):
        self._rules: List[TaxRule] = sorted(rules, key=lambda r: r.id)

    @classmethod
    def from_source(cls, source, jurisdiction: str, as_of: date) -> "RuleRepository":
        rules = list(source.get_rules(jurisdiction, as_of))
        logger.debug("Loaded %d rules for %s as of %s", len(rules), jurisdiction, as_of)
        return cls(rules)

    def __len__(self) -> int:
        return len(self._rules)

    @property
    def rules(self) -> List[TaxRule]:
        return list(self._rules)

    def find_applicable(
        self, jurisdiction: str, ncm: str, cfop: str, cst: str, as_of: date
    ) -> List[TaxRule]:
        uf = (jurisdiction or "").upper()
        ncm, cfop, cst = normalize_code(ncm), normalize_code(cfop), normalize_code(cst)
        return [
            r
            for r in self._rules
            if r.jurisdiction == uf and rule_in_force(r, as_of) and rule_matches(r, ncm, cfop, cst)
        ]

    def find_of_kind(
        self, kind: RuleKind, jurisdiction: str, ncm: str, cfop: str, cst: str, as_of: date
    ) -> List[TaxRule]:
        return [r for r in self.find_applicable(jurisdiction, ncm, cfop, cst, as_of) if r.kind == kind]


class SqlRuleSource:
    """RuleSource backed by the tax_rules table."""

    def __init__(self, session: Session):
        self.session = session

    def get_rules(self, jurisdiction: str, as_of: date) -> List[TaxRule]:
        stmt = (
            select(TaxRuleRow)
            .where(TaxRuleRow.jurisdiction == jurisdiction.upper())
            .where(TaxRuleRow.active.is_(True))
            .where(TaxRuleRow.valid_from <= as_of)
            .where(or_(TaxRuleRow.valid_to.is_(None), TaxRuleRow.valid_to >= as_of))
            .order_by(TaxRuleRow.id.asc())
        )
        return [TaxRule.model_validate(row) for row in self.session.scalars(stmt)]

    def add(self, rule: TaxRule) -> TaxRuleRow:
        """Persist a rule; the stored id replaces the one on `rule` when it is 0."""
        data = rule.model_dump()
        for key in ("ncm_match", "cfop_match", "cst_match"):
            data[key] = ",".join(data[key])
        data["kind"] = rule.kind.value
        if not data["id"]:
            data.pop("id")
        row = TaxRuleRow(**data)
        self.session.add(row)
        self.session.flush()
        return row
