from __future__ import annotations

"""
Pydantic schemas for the assessment engine.

- Input shapes (TaxRule, LineItem, Operation, AssetAcquisition) are frozen:
  the engine reads them and never edits them.
- Output shapes (ItemAssessment, PeriodAssessment, ...) are produced once per
  run. Serialization is left to callers (`model_dump_json()`), but the field
  structure here is the contract both sides share.

Money and percentages are Decimal. Percentages are whole-number percents
(18 means 18%).
"""

import re
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from . import config

WILDCARD = "*"
ZERO = Decimal("0")


class RuleKind(str, Enum):
    REDUCED_BASE = "ReducedBase"
    PRESUMED_CREDIT = "PresumedCredit"
    REGIONAL_SURTAX = "RegionalSurtax"
    FIXED_ASSET_CREDIT = "FixedAssetCredit"
    EXEMPTION = "Exemption"


class AssessmentStatus(str, Enum):
    PENDING = "Pending"
    COMPLETED = "Completed"
    FAILED = "Failed"


class AssetStatus(str, Enum):
    ACTIVE = "Active"
    SETTLED = "Settled"


class Direction(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


# Parameter each rule kind must carry
_KIND_PARAM = {
    RuleKind.REDUCED_BASE: "reduction_pct",
    RuleKind.PRESUMED_CREDIT: "credit_pct",
    RuleKind.REGIONAL_SURTAX: "surtax_pct",
    RuleKind.EXEMPTION: "exemption_pct",
    RuleKind.FIXED_ASSET_CREDIT: None,
}


def normalize_code(value: Any) -> str:
    """Strip dots, dashes and spaces: '8471.30.12' -> '84713012'."""
    return re.sub(r"[\s.\-/]+", "", str(value or "")).upper()


def _split_prefixes(value: Any) -> tuple[str, ...]:
    if value is None:
        return (WILDCARD,)
    if isinstance(value, str):
        parts = re.split(r"[,;|]", value)
    else:
        parts = list(value)
    prefixes = []
    for p in parts:
        p = str(p).strip()
        if not p:
            continue
        prefixes.append(WILDCARD if p == WILDCARD else normalize_code(p))
    # empty cell works as a wildcard
    return tuple(prefixes) or (WILDCARD,)


class TaxRule(BaseModel):
    """
    One benefit / surtax rule for a jurisdiction.

    ncm_match / cfop_match / cst_match hold code prefixes; "*" (or an empty
    list) matches anything. Rules are immutable once loaded.
    """

    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: int
    jurisdiction: str = Field(..., min_length=2, max_length=2)
    kind: RuleKind
    ncm_match: tuple[str, ...] = (WILDCARD,)
    cfop_match: tuple[str, ...] = (WILDCARD,)
    cst_match: tuple[str, ...] = (WILDCARD,)

    reduction_pct: Optional[Decimal] = None
    credit_pct: Optional[Decimal] = None
    surtax_pct: Optional[Decimal] = None
    exemption_pct: Optional[Decimal] = None
    recovery_months: Optional[int] = None

    valid_from: date
    valid_to: Optional[date] = None
    active: bool = True
    provenance: str = ""
    description: str = ""

    @field_validator("jurisdiction", mode="before")
    @classmethod
    def _upper_uf(cls, v):
        return str(v or "").strip().upper()

    @field_validator("ncm_match", "cfop_match", "cst_match", mode="before")
    @classmethod
    def _prefixes(cls, v):
        return _split_prefixes(v)

    @model_validator(mode="after")
    def _check_params(self) -> "TaxRule":
        param = _KIND_PARAM[self.kind]
        if param is not None:
            value = getattr(self, param)
            if value is None and self.kind != RuleKind.EXEMPTION:
                raise ValueError(f"{self.kind.value} rule {self.id} requires {param}")
            if value is not None and (value < 0 or value > 100):
                raise ValueError(f"{param} must be within 0..100, got {value}")
        if self.recovery_months is not None and self.recovery_months <= 0:
            raise ValueError("recovery_months must be positive")
        if self.valid_to is not None and self.valid_to < self.valid_from:
            raise ValueError("valid_to must not precede valid_from")
        return self

    @property
    def percentage(self) -> Optional[Decimal]:
        param = _KIND_PARAM[self.kind]
        if param is None:
            return None
        value = getattr(self, param)
        if value is None and self.kind == RuleKind.EXEMPTION:
            # full exemption unless a partial percentage is given
            return Decimal("100")
        return value

    def label(self) -> str:
        return self.description or f"{self.kind.value} #{self.id}"


class LineItem(BaseModel):
    """
    A fiscal-document line as supplied by the ingestion side.

    `code` is the product code and may repeat across documents; `line_id`
    identifies the line itself (e.g. "NF-123/2") and is what operations
    should reference when product codes repeat within a period.
    """

    model_config = ConfigDict(frozen=True, from_attributes=True)

    code: str
    line_id: Optional[str] = None
    description: str = ""
    ncm: str
    cfop: str
    cst: str
    quantity: Decimal = ZERO
    unit_value: Decimal = ZERO
    total_value: Decimal
    discount: Decimal = ZERO
    declared_base: Optional[Decimal] = None
    declared_tax: Optional[Decimal] = None
    issue_date: Optional[date] = None

    @field_validator("ncm", "cfop", "cst", mode="before")
    @classmethod
    def _strip_codes(cls, v):
        return normalize_code(v)

    @property
    def ref(self) -> str:
        """Key operations use to reference this line."""
        return self.line_id or self.code


class Operation(BaseModel):
    """A document-level operation grouping line items by `LineItem.ref` (line id, else product code)."""

    model_config = ConfigDict(frozen=True)

    id: str
    direction: Direction
    origin: str
    destination: str
    item_refs: tuple[str, ...] = ()
    non_contributor: bool = True

    @field_validator("origin", "destination", mode="before")
    @classmethod
    def _upper_uf(cls, v):
        return str(v or "").strip().upper()


class AssetAcquisition(BaseModel):
    model_config = ConfigDict(frozen=True)

    asset_id: str
    description: str = ""
    ncm: str
    cfop: str
    cst: str = "00"
    direction: Direction = Direction.INBOUND
    acquisition_date: date
    acquisition_value: Decimal
    icms_on_acquisition: Decimal

    @field_validator("ncm", "cfop", "cst", mode="before")
    @classmethod
    def _strip_codes(cls, v):
        return normalize_code(v)


class AppliedBenefit(BaseModel):
    """
    One rule's effect on an item, in application order.

    amount_impact is the signed change it caused: negative for base
    reductions, credits and exemptions; positive for surtax.
    """

    rule_id: int
    kind: RuleKind
    amount_impact: Decimal
    description: str = ""


class Alert(BaseModel):
    code: str
    message: str
    ref: Optional[str] = None


class ItemAssessment(BaseModel):
    item: LineItem
    original_base: Decimal
    adjusted_base: Decimal
    rate: Decimal
    gross_tax: Decimal
    tax_due: Decimal
    surtax: Decimal = ZERO
    applied_benefits: list[AppliedBenefit] = Field(default_factory=list)
    notes: list[str] = Field(default_factory=list)
    alerts: list[Alert] = Field(default_factory=list)
    matched_rule_ids: list[int] = Field(default_factory=list)
    rate_fallback: bool = False

    @property
    def matched(self) -> bool:
        return bool(self.matched_rule_ids)


class OperationAssessment(BaseModel):
    operation_id: str
    origin: str
    destination: str
    adjusted_base: Decimal
    tax_due: Decimal
    dest_internal_rate: Optional[Decimal] = None
    origin_interstate_rate: Optional[Decimal] = None
    differential: Decimal = ZERO
    total_due: Decimal


class FixedAssetCreditRecord(BaseModel):
    """CIAP schedule for one acquired asset."""

    model_config = ConfigDict(from_attributes=True)

    company: str
    asset_id: str
    description: str = ""
    ncm: str
    acquisition_date: date
    acquisition_value: Decimal
    icms_on_acquisition: Decimal
    recovery_months: int
    monthly_installment: Decimal
    cumulative_recognized: Decimal = ZERO
    balance_remaining: Decimal
    status: AssetStatus = AssetStatus.ACTIVE
    last_period: Optional[str] = None


class AssetRecognition(BaseModel):
    asset_id: str
    months_elapsed: int
    target_cumulative: Decimal
    recognized: Decimal
    cumulative_recognized: Decimal
    balance_remaining: Decimal
    status: AssetStatus
    created: bool = False
    clamped: bool = False


class AssessmentTotals(BaseModel):
    base: Decimal = ZERO
    tax_due: Decimal = ZERO
    surtax_payable: Decimal = ZERO
    surtax_credited: Decimal = ZERO
    net_surtax: Decimal = ZERO
    differential: Decimal = ZERO
    asset_credit_recognized: Decimal = ZERO
    balance_due: Decimal = ZERO


class ErrorInfo(BaseModel):
    kind: str
    message: str
    details: dict[str, Any] = Field(default_factory=dict)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PeriodAssessment(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    company: str
    period: str
    jurisdiction: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    status: AssessmentStatus = AssessmentStatus.PENDING
    totals: AssessmentTotals = Field(default_factory=AssessmentTotals)
    item_assessments: list[ItemAssessment] = Field(default_factory=list)
    operation_assessments: list[OperationAssessment] = Field(default_factory=list)
    asset_recognitions: list[AssetRecognition] = Field(default_factory=list)
    applied_rules: list[int] = Field(default_factory=list)
    alerts: list[Alert] = Field(default_factory=list)
    confidence_score: int = Field(0, ge=0, le=100)
    error: Optional[ErrorInfo] = None


class AssessmentFilter(BaseModel):
    status: Optional[AssessmentStatus] = None
    period_from: Optional[str] = None
    period_to: Optional[str] = None
    limit: int = Field(50, ge=1, le=1000)


class AssessmentConfig(BaseModel):
    default_rate: Decimal = config.DEFAULT_RATE
    default_interstate_rate: Decimal = config.DEFAULT_INTERSTATE_RATE
    fallback_dest_rate: Decimal = config.FALLBACK_DEST_RATE
    default_recovery_months: int = Field(config.DEFAULT_RECOVERY_MONTHS, gt=0)
    max_workers: int = Field(config.MAX_WORKERS, ge=1)
    round_dp: int = 2
    actor: str = "engine"

    @property
    def quantum(self) -> Decimal:
        return Decimal(1).scaleb(-self.round_dp)


class SurtaxReportRow(BaseModel):
    period: str
    payable: Decimal
    credited: Decimal
    net: Decimal
    credit_period: str


class SurtaxReport(BaseModel):
    company: str
    period_from: str
    period_to: str
    periods: int = 0
    total_payable: Decimal = ZERO
    total_credited: Decimal = ZERO
    total_net: Decimal = ZERO
    rows: list[SurtaxReportRow] = Field(default_factory=list)
