from __future__ import annotations
from datetime import date
from decimal import Decimal
from typing import Optional, Protocol, Sequence

from icmstaxcalc.schemas import AssetAcquisition, LineItem, Operation, TaxRule


class RuleSource(Protocol):
    """Administration side: the active rule set for a jurisdiction on a date."""

    def get_rules(self, jurisdiction: str, as_of: date) -> Sequence[TaxRule]: ...


class RateTable(Protocol):
    def get_rate(self, jurisdiction: str, cst: str) -> Optional[Decimal]: ...
    def get_internal_rate(self, jurisdiction: str) -> Optional[Decimal]: ...
    def get_interstate_rate(self, origin: str, destination: str) -> Optional[Decimal]: ...


class AssessmentSource(Protocol):
    """Ingestion side: what a company moved during a period."""

    def get_jurisdiction(self, company: str) -> str: ...
    def get_line_items_and_operations(
        self, company: str, period: str
    ) -> tuple[list[LineItem], list[Operation]]: ...
    def get_fixed_asset_candidates(self, company: str, period: str) -> list[AssetAcquisition]: ...


class LedgerStore(Protocol):
    def get(self, company: str, period: str) -> Optional[Decimal]: ...
    def put(self, company: str, period: str, payable_surtax: Decimal) -> None: ...
