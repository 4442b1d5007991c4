"""
Period totals, alerts and the confidence score.

The confidence score starts at 100 and walks a fixed, ordered point table;
the result is clamped to 0..100. The table is shown to users as-is, so its
entries and order are part of the output contract.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, List, Sequence, Tuple, Union

from .asset_amortizer import AmortizationPlan
from .credit_ledger import SurtaxReconciliation
from .schemas import (
    Alert,
    AssessmentStatus,
    AssessmentTotals,
    ItemAssessment,
    OperationAssessment,
    PeriodAssessment,
)

ZERO = Decimal("0")

NEGATIVE_NET_SURTAX = "NegativeNetSurtax"


@dataclass(frozen=True)
class PeriodFacts:
    items: Sequence[ItemAssessment]
    item_tax: Decimal
    totals: AssessmentTotals


# (code, points, condition), evaluated top to bottom; points may depend on the facts
CONFIDENCE_TABLE: List[Tuple[str, Union[int, Callable[[PeriodFacts], int]], Callable[[PeriodFacts], bool]]] = [
    ("NO_ITEMS", -50, lambda f: not f.items),
    ("ZERO_TAX_DUE", -20, lambda f: bool(f.items) and f.totals.tax_due == 0),
    ("DIFFERENTIAL_EXCEEDS_TAX", -10, lambda f: f.totals.differential > f.item_tax),
    ("RULE_COVERAGE", lambda f: rule_coverage_points(f), lambda f: any(ia.matched for ia in f.items)),
    ("UNMATCHED_ITEMS", -20, lambda f: any(not ia.matched for ia in f.items)),
    ("NEGATIVE_NET_SURTAX", -15, lambda f: f.totals.net_surtax < 0),
    ("DEFAULT_RATE_USED", -10, lambda f: any(ia.rate_fallback for ia in f.items)),
    ("ASSET_CREDIT_RECOGNIZED", 5, lambda f: f.totals.asset_credit_recognized > 0),
]


def rule_coverage_points(facts: PeriodFacts) -> int:
    """Up to +20, in proportion to the share of items that matched at least one rule."""
    if not facts.items:
        return 0
    matched = sum(1 for ia in facts.items if ia.matched)
    points = Decimal(matched) / Decimal(len(facts.items)) * 20
    return int(min(Decimal(20), points).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def confidence_score(facts: PeriodFacts) -> Tuple[int, List[str]]:
    score = 100
    hits: List[str] = []
    for code, points, condition in CONFIDENCE_TABLE:
        if condition(facts):
            score += points(facts) if callable(points) else points
            hits.append(code)
    return max(0, min(100, score)), hits


def _applied_rule_ids(items: Sequence[ItemAssessment]) -> List[int]:
    seen: List[int] = []
    for ia in items:
        for b in ia.applied_benefits:
            if b.rule_id not in seen:
                seen.append(b.rule_id)
    return seen


def compute_totals(
    items: Sequence[ItemAssessment],
    operations: Sequence[OperationAssessment],
    reconciliation: SurtaxReconciliation,
    plan: AmortizationPlan,
) -> Tuple[AssessmentTotals, Decimal]:
    item_tax = sum((ia.tax_due for ia in items), ZERO)
    differential = sum((op.differential for op in operations), ZERO)
    asset_credit = plan.total_recognized
    tax_due = item_tax + differential
    totals = AssessmentTotals(
        base=sum((ia.adjusted_base for ia in items), ZERO),
        tax_due=tax_due,
        surtax_payable=reconciliation.current_payable,
        surtax_credited=reconciliation.prior_credit,
        net_surtax=reconciliation.net_surtax,
        differential=differential,
        asset_credit_recognized=asset_credit,
        balance_due=tax_due + reconciliation.net_surtax - asset_credit,
    )
    return totals, item_tax


def aggregate(
    draft: PeriodAssessment,
    items: Sequence[ItemAssessment],
    operations: Sequence[OperationAssessment],
    reconciliation: SurtaxReconciliation,
    plan: AmortizationPlan,
    extra_alerts: Sequence[Alert] = (),
) -> PeriodAssessment:
    """Build the Completed assessment from a Pending draft; the draft is not modified."""
    totals, item_tax = compute_totals(items, operations, reconciliation, plan)

    alerts: List[Alert] = []
    for ia in items:
        alerts.extend(ia.alerts)
    alerts.extend(extra_alerts)
    alerts.extend(plan.alerts)
    if totals.net_surtax < 0:
        alerts.append(
            Alert(
                code=NEGATIVE_NET_SURTAX,
                message=(
                    f"Surtax credit from {reconciliation.prior_period} ({reconciliation.prior_credit}) "
                    f"exceeds payable ({reconciliation.current_payable}); the excess is not carried forward"
                ),
            )
        )

    score, _ = confidence_score(PeriodFacts(items=items, item_tax=item_tax, totals=totals))
    return draft.model_copy(
        update={
            "status": AssessmentStatus.COMPLETED,
            "totals": totals,
            "item_assessments": list(items),
            "operation_assessments": list(operations),
            "asset_recognitions": list(plan.recognitions),
            "applied_rules": _applied_rule_ids(items),
            "alerts": alerts,
            "confidence_score": score,
        }
    )
