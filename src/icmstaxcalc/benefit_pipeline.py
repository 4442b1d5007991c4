# benefit_pipeline.py
"""
Per-item ICMS computation.

Steps, in this order, each working on the previous step's output:
  1. original base = declared base (or total value minus discount).
  2. ReducedBase rules: base *= (1 - reduction/100), compounding.
  3. Rate from the rate table for (jurisdiction, CST); default rate if absent
     (alert, not an error).
  4. gross tax = adjusted base * rate/100.
  5. PresumedCredit rules: tax -= tax * credit/100, compounding; then
     Exemption rules: tax -= tax * exemption/100.
  6. RegionalSurtax rules: surtax += ORIGINAL base * surtax/100. Surtax is
     kept apart from tax due; the credit ledger settles it one period later.
  7. tax due = tax, clamped at zero.

FixedAssetCredit rules have no per-item effect; the asset amortizer consumes
them. This module is pure: no DB, no logging side effects beyond warnings.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, List, Optional, Sequence, Tuple

from .classification import check_codes
from .errors import RuleNotFound
from .rules.base import RateTable
from .rules.repository import RuleRepository
from .schemas import (
    Alert,
    AppliedBenefit,
    AssessmentConfig,
    ItemAssessment,
    LineItem,
    RuleKind,
    TaxRule,
)

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")
ZERO = Decimal("0")

NO_RULE_MATCHED = "NoRuleMatched"
NEGATIVE_TAX_CLAMPED = "NegativeTaxClamped"


@dataclass
class _Working:
    """Mutable scratch state for one item while the steps run."""

    original_base: Decimal
    adjusted_base: Decimal = ZERO
    rate: Decimal = ZERO
    gross_tax: Decimal = ZERO
    tax: Decimal = ZERO
    surtax: Decimal = ZERO
    benefits: List[AppliedBenefit] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)
    alerts: List[Alert] = field(default_factory=list)
    rate_fallback: bool = False


def original_base_of(item: LineItem) -> Decimal:
    if item.declared_base is not None:
        return item.declared_base
    return item.total_value - item.discount


def resolve_rate(
    rate_table: RateTable, jurisdiction: str, cst: str, default_rate: Decimal
) -> Tuple[Decimal, Optional[RuleNotFound]]:
    """Rate for (jurisdiction, CST) or the default plus the RuleNotFound explaining why."""
    rate = rate_table.get_rate(jurisdiction, cst)
    if rate is not None:
        return rate, None
    return default_rate, RuleNotFound(
        f"No rate for {jurisdiction}/CST {cst}; default rate {default_rate}% applied",
        details={"jurisdiction": jurisdiction, "cst": cst, "default_rate": str(default_rate)},
    )


def _of_kind(rules: Sequence[TaxRule], kind: RuleKind) -> List[TaxRule]:
    return [r for r in rules if r.kind == kind]


def _apply_reduced_base(w: _Working, rules: Sequence[TaxRule], q: Callable[[Decimal], Decimal]) -> None:
    w.adjusted_base = w.original_base
    for rule in _of_kind(rules, RuleKind.REDUCED_BASE):
        before = w.adjusted_base
        w.adjusted_base = before * (1 - rule.reduction_pct / HUNDRED)
        w.benefits.append(
            AppliedBenefit(
                rule_id=rule.id,
                kind=rule.kind,
                amount_impact=q(w.adjusted_base - before),
                description=f"Base reduced {rule.reduction_pct}%",
            )
        )
        w.notes.append(f"{rule.label()}: base reduced {rule.reduction_pct}%")


def _apply_credits(w: _Working, rules: Sequence[TaxRule], q: Callable[[Decimal], Decimal]) -> None:
    for rule in _of_kind(rules, RuleKind.PRESUMED_CREDIT):
        credit = w.tax * rule.credit_pct / HUNDRED
        w.tax -= credit
        w.benefits.append(
            AppliedBenefit(
                rule_id=rule.id,
                kind=rule.kind,
                amount_impact=q(-credit),
                description=f"Presumed credit {rule.credit_pct}%",
            )
        )
        w.notes.append(f"{rule.label()}: presumed credit {rule.credit_pct}%")

    for rule in _of_kind(rules, RuleKind.EXEMPTION):
        pct = rule.percentage
        exempt = w.tax * pct / HUNDRED
        w.tax -= exempt
        w.benefits.append(
            AppliedBenefit(
                rule_id=rule.id,
                kind=rule.kind,
                amount_impact=q(-exempt),
                description=f"Exemption {pct}%",
            )
        )
        w.notes.append(f"{rule.label()}: exemption {pct}%")


def _apply_surtax(w: _Working, rules: Sequence[TaxRule], q: Callable[[Decimal], Decimal]) -> None:
    for rule in _of_kind(rules, RuleKind.REGIONAL_SURTAX):
        # pre-reduction base on purpose
        amount = w.original_base * rule.surtax_pct / HUNDRED
        w.surtax += amount
        w.benefits.append(
            AppliedBenefit(
                rule_id=rule.id,
                kind=rule.kind,
                amount_impact=q(amount),
                description=f"Regional surtax {rule.surtax_pct}%",
            )
        )
        w.notes.append(f"{rule.label()}: surtax {rule.surtax_pct}% routed to credit ledger")


def assess_item(
    item: LineItem,
    rules: Sequence[TaxRule],
    jurisdiction: str,
    rate_table: RateTable,
    cfg: AssessmentConfig | None = None,
) -> ItemAssessment:
    """
    Run one line item through the benefit steps.

    `rules` are the item's matched rules in application order (ascending id).
    With no matched rule the item is taxed at `cfg.default_rate`, not the rate table.
    Raises InvalidClassification for malformed codes.
    """
    cfg = cfg or AssessmentConfig()
    check_codes(item.ncm, item.cfop, item.cst, ref=f"item {item.code}")

    def q(x: Decimal) -> Decimal:
        return x.quantize(cfg.quantum, rounding=ROUND_HALF_UP)

    w = _Working(original_base=original_base_of(item))

    _apply_reduced_base(w, rules, q)

    if rules:
        w.rate, missing = resolve_rate(rate_table, jurisdiction, item.cst, cfg.default_rate)
    else:
        # unmatched items are taxed on the declared base at the configured default
        w.rate, missing = cfg.default_rate, None
    if missing is not None:
        w.rate_fallback = True
        w.alerts.append(Alert(code=missing.kind, message=missing.message, ref=item.code))
        logger.warning("Item %s: %s", item.code, missing.message)

    w.gross_tax = w.adjusted_base * w.rate / HUNDRED
    w.tax = w.gross_tax

    _apply_credits(w, rules, q)
    _apply_surtax(w, rules, q)

    if w.tax < 0:
        w.alerts.append(
            Alert(code=NEGATIVE_TAX_CLAMPED, message=f"Negative tax {q(w.tax)} clamped to 0", ref=item.code)
        )
        w.tax = ZERO

    if not rules:
        w.alerts.append(
            Alert(
                code=NO_RULE_MATCHED,
                message=f"no rule matched for item {item.code} (NCM {item.ncm}, CFOP {item.cfop}, CST {item.cst})",
                ref=item.code,
            )
        )
        w.notes.append(f"Tax computed from declared base at default rate {w.rate}%")

    return ItemAssessment(
        item=item,
        original_base=q(w.original_base),
        adjusted_base=q(w.adjusted_base),
        rate=w.rate,
        gross_tax=q(w.gross_tax),
        tax_due=q(w.tax),
        surtax=q(w.surtax),
        applied_benefits=w.benefits,
        notes=w.notes,
        alerts=w.alerts,
        matched_rule_ids=[r.id for r in rules],
        rate_fallback=w.rate_fallback,
    )


def assess_items(
    items: Sequence[LineItem],
    repository: RuleRepository,
    jurisdiction: str,
    as_of: date,
    rate_table: RateTable,
    cfg: AssessmentConfig | None = None,
) -> List[ItemAssessment]:
    """
    Assess every item, keeping input order.

    Items are independent, so with cfg.max_workers > 1 they run on a thread
    pool. The first InvalidClassification propagates and aborts the batch.
    """
    cfg = cfg or AssessmentConfig()

    def one(item: LineItem) -> ItemAssessment:
        rules = repository.find_applicable(
            jurisdiction, item.ncm, item.cfop, item.cst, item.issue_date or as_of
        )
        return assess_item(item, rules, jurisdiction, rate_table, cfg)

    if cfg.max_workers <= 1 or len(items) <= 1:
        return [one(item) for item in items]
    with ThreadPoolExecutor(max_workers=cfg.max_workers) as pool:
        return list(pool.map(one, items))
