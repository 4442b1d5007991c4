from __future__ import annotations
import datetime
from decimal import Decimal
from sqlalchemy import Boolean, Date, DateTime, Integer, String, Text, Index, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import Numeric, TypeDecorator

# ---------- Base ----------
class Base(DeclarativeBase):
    pass

# ---------- Decimal helper (fixed 6 dp) ----------
class SqliteDecimal(TypeDecorator):
    impl = Numeric(38, 6, asdecimal=True)
    cache_ok = True
    SCALE = Decimal("0.000001")
    def process_bind_param(self, value, dialect):
        if value is None: return None
        return Decimal(value).quantize(self.SCALE)
    def process_result_value(self, value, dialect):
        if value is None: return None
        return Decimal(value).quantize(self.SCALE)


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)

# ---------- ORM models ----------
class TaxRuleRow(Base):
    __tablename__ = "tax_rules"
    # ascending id is the application order for equally-matching rules
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    jurisdiction: Mapped[str] = mapped_column(String(2), nullable=False, index=True)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)

    # comma-separated prefixes, "*" for any
    ncm_match: Mapped[str] = mapped_column(Text, nullable=False, default="*")
    cfop_match: Mapped[str] = mapped_column(Text, nullable=False, default="*")
    cst_match: Mapped[str] = mapped_column(Text, nullable=False, default="*")

    reduction_pct: Mapped[Decimal | None] = mapped_column(SqliteDecimal, nullable=True)
    credit_pct: Mapped[Decimal | None] = mapped_column(SqliteDecimal, nullable=True)
    surtax_pct: Mapped[Decimal | None] = mapped_column(SqliteDecimal, nullable=True)
    exemption_pct: Mapped[Decimal | None] = mapped_column(SqliteDecimal, nullable=True)
    recovery_months: Mapped[int | None] = mapped_column(Integer, nullable=True)

    valid_from: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    valid_to: Mapped[datetime.date | None] = mapped_column(Date, nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    provenance: Mapped[str] = mapped_column(String(256), nullable=False, default="")
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")

# Surtax payable per (company, period); read back as next period's credit
class CreditLedgerEntry(Base):
    __tablename__ = "credit_ledger"
    __table_args__ = (UniqueConstraint("company", "period", name="uq_credit_ledger_company_period"),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company: Mapped[str] = mapped_column(String(64), nullable=False)
    period: Mapped[str] = mapped_column(String(7), nullable=False)
    payable_surtax: Mapped[Decimal] = mapped_column(SqliteDecimal, nullable=False)
    updated_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

class FixedAssetCreditRow(Base):
    __tablename__ = "fixed_asset_credits"
    __table_args__ = (UniqueConstraint("company", "asset_id", name="uq_fixed_asset_company_asset"),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    asset_id: Mapped[str] = mapped_column(String(128), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    ncm: Mapped[str] = mapped_column(String(8), nullable=False)
    acquisition_date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    acquisition_value: Mapped[Decimal] = mapped_column(SqliteDecimal, nullable=False)
    icms_on_acquisition: Mapped[Decimal] = mapped_column(SqliteDecimal, nullable=False)
    recovery_months: Mapped[int] = mapped_column(Integer, nullable=False)
    monthly_installment: Mapped[Decimal] = mapped_column(SqliteDecimal, nullable=False)
    cumulative_recognized: Mapped[Decimal] = mapped_column(SqliteDecimal, nullable=False)
    balance_remaining: Mapped[Decimal] = mapped_column(SqliteDecimal, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    last_period: Mapped[str | None] = mapped_column(String(7), nullable=True)

# One row per positive recognition
class FixedAssetMovement(Base):
    __tablename__ = "fixed_asset_movements"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    asset_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    period: Mapped[str] = mapped_column(String(7), nullable=False)
    assessment_id: Mapped[str] = mapped_column(String(36), nullable=False)
    months_elapsed: Mapped[int] = mapped_column(Integer, nullable=False)
    amount: Mapped[Decimal] = mapped_column(SqliteDecimal, nullable=False)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

# Append-only: a re-run adds a row, never edits an old one
class AssessmentRun(Base):
    __tablename__ = "assessment_runs"
    # seq orders runs of the same key; id is the assessment uuid
    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String(36), nullable=False, unique=True)
    company: Mapped[str] = mapped_column(String(64), nullable=False)
    period: Mapped[str] = mapped_column(String(7), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    confidence_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_kind: Mapped[str | None] = mapped_column(String(64), nullable=True)
    payload_json: Mapped[str] = mapped_column(Text, nullable=False)
    input_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    output_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    manifest_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=False), nullable=False, index=True)

Index("idx_assessment_runs_company_period", AssessmentRun.company, AssessmentRun.period)

class AssessmentAudit(Base):
    __tablename__ = "assessment_audit"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    actor: Mapped[str] = mapped_column(String(64), nullable=False)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    meta_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=False), nullable=False, index=True, default=utcnow)
