"""
Per-state ICMS rate tables.

Internal rates are the standard rate each state applies to goods that stay
inside it; the interstate rate is what an origin state charges on goods
leaving it. CST-specific overrides (e.g. a reduced rate for a given tax
situation) can be layered on per jurisdiction.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Mapping, Optional

from icmstaxcalc import config

D = Decimal

INTERNAL_RATES: dict[str, Decimal] = {
    "AC": D("17"), "AL": D("17"), "AM": D("18"), "AP": D("18"), "BA": D("18"),
    "CE": D("18"), "DF": D("18"), "ES": D("17"), "GO": D("17"), "MA": D("18"),
    "MG": D("18"), "MS": D("17"), "MT": D("17"), "PA": D("17"), "PB": D("18"),
    "PE": D("17.5"), "PI": D("18"), "PR": D("18"), "RJ": D("20"), "RN": D("18"),
    "RO": D("17.5"), "RR": D("17"), "RS": D("18"), "SC": D("17"), "SE": D("17"),
    "SP": D("18"), "TO": D("18"),
}

# CSTs with no ICMS charged on the operation (isenta, nao tributada, suspensao, diferimento)
ZERO_RATE_CSTS = ("40", "41", "50", "51")


class StaticRateTable:
    """
    In-memory RateTable.

    get_rate returns None when the jurisdiction is unknown, so the caller
    can raise its default-rate alert.
    """

    def __init__(
        self,
        internal: Mapping[str, Decimal] | None = None,
        cst_overrides: Mapping[tuple[str, str], Decimal] | None = None,
        interstate: Mapping[tuple[str, str], Decimal] | None = None,
        default_interstate: Decimal | None = None,
    ):
        self.internal = dict(INTERNAL_RATES if internal is None else internal)
        self.cst_overrides = dict(cst_overrides or {})
        self.interstate = dict(interstate or {})
        self.default_interstate = (
            config.DEFAULT_INTERSTATE_RATE if default_interstate is None else default_interstate
        )

    def get_rate(self, jurisdiction: str, cst: str) -> Optional[Decimal]:
        uf = (jurisdiction or "").upper()
        cst_key = (cst or "")[-2:]
        if (uf, cst_key) in self.cst_overrides:
            return self.cst_overrides[(uf, cst_key)]
        if uf not in self.internal:
            return None
        if cst_key in ZERO_RATE_CSTS:
            return Decimal("0")
        return self.internal[uf]

    def get_internal_rate(self, jurisdiction: str) -> Optional[Decimal]:
        return self.internal.get((jurisdiction or "").upper())

    def get_interstate_rate(self, origin: str, destination: str) -> Optional[Decimal]:
        key = ((origin or "").upper(), (destination or "").upper())
        if key in self.interstate:
            return self.interstate[key]
        if key[0] not in self.internal:
            return None
        return self.default_interstate
