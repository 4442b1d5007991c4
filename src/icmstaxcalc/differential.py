"""
Interstate rate differential (DIFAL).

Computed per operation, over the adjusted bases of the operation's items:

    differential = base * max(0, dest_internal - origin_interstate) / 100

Only outbound operations to another state owe it, and only when the buyer is
a non-contributor. A destination missing from the rate table uses the
configured fallback rate.
"""
from __future__ import annotations

import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import AbstractSet, Dict, List, Sequence, Tuple

from .classification import check_jurisdiction
from .errors import InvalidClassification
from .rules.base import RateTable
from .schemas import (
    Alert,
    AssessmentConfig,
    Direction,
    ItemAssessment,
    Operation,
    OperationAssessment,
)

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")
ZERO = Decimal("0")

FALLBACK_DEST_RATE = "FallbackDestinationRate"
UNKNOWN_ITEM = "UnknownOperationItem"


def compute_differential(adjusted_base: Decimal, dest_internal_rate: Decimal, origin_interstate_rate: Decimal) -> Decimal:
    """Never negative: a destination rate below the interstate rate owes nothing."""
    spread = max(ZERO, dest_internal_rate - origin_interstate_rate)
    return adjusted_base * spread / HUNDRED


def owes_differential(op: Operation) -> bool:
    return op.direction == Direction.OUTBOUND and op.origin != op.destination and op.non_contributor


def index_items(item_assessments: Sequence[ItemAssessment]) -> Tuple[Dict[str, ItemAssessment], set[str]]:
    """Item results keyed by `LineItem.ref`, plus the refs shared by more than one line."""
    index: Dict[str, ItemAssessment] = {}
    ambiguous: set[str] = set()
    for ia in item_assessments:
        key = ia.item.ref
        if key in index:
            ambiguous.add(key)
        index[key] = ia
    return index, ambiguous


def assess_operation(
    op: Operation,
    items_by_ref: Dict[str, ItemAssessment],
    rate_table: RateTable,
    cfg: AssessmentConfig | None = None,
    ambiguous: AbstractSet[str] = frozenset(),
) -> Tuple[OperationAssessment, List[Alert]]:
    cfg = cfg or AssessmentConfig()
    ref = f"operation {op.id}"
    check_jurisdiction(op.origin, ref)
    check_jurisdiction(op.destination, ref)

    alerts: List[Alert] = []
    base = ZERO
    tax = ZERO
    for item_ref in op.item_refs:
        if item_ref in ambiguous:
            # several lines share this product code and none carries a line_id
            raise InvalidClassification("item reference", item_ref, ref)
        ia = items_by_ref.get(item_ref)
        if ia is None:
            alerts.append(Alert(code=UNKNOWN_ITEM, message=f"Item {item_ref} not found for {ref}", ref=op.id))
            continue
        base += ia.adjusted_base
        tax += ia.tax_due

    dest_rate = None
    origin_rate = None
    differential = ZERO
    if owes_differential(op):
        dest_rate = rate_table.get_internal_rate(op.destination)
        if dest_rate is None:
            dest_rate = cfg.fallback_dest_rate
            msg = f"No internal rate for {op.destination}; fallback {dest_rate}% used on {ref}"
            alerts.append(Alert(code=FALLBACK_DEST_RATE, message=msg, ref=op.id))
            logger.warning(msg)
        origin_rate = rate_table.get_interstate_rate(op.origin, op.destination)
        if origin_rate is None:
            origin_rate = cfg.default_interstate_rate
        differential = compute_differential(base, dest_rate, origin_rate).quantize(
            cfg.quantum, rounding=ROUND_HALF_UP
        )

    return (
        OperationAssessment(
            operation_id=op.id,
            origin=op.origin,
            destination=op.destination,
            adjusted_base=base,
            tax_due=tax,
            dest_internal_rate=dest_rate,
            origin_interstate_rate=origin_rate,
            differential=differential,
            total_due=tax + differential,
        ),
        alerts,
    )


def assess_operations(
    operations: Sequence[Operation],
    item_assessments: Sequence[ItemAssessment],
    rate_table: RateTable,
    cfg: AssessmentConfig | None = None,
) -> Tuple[List[OperationAssessment], List[Alert]]:
    items_by_ref, ambiguous = index_items(item_assessments)
    results: List[OperationAssessment] = []
    alerts: List[Alert] = []
    for op in operations:
        oa, op_alerts = assess_operation(op, items_by_ref, rate_table, cfg, ambiguous)
        results.append(oa)
        alerts.extend(op_alerts)
    return results, alerts
