"""Format checks for NCM / CFOP / CST / state codes."""
from __future__ import annotations

import re

from .errors import InvalidClassification

_NCM_RE = re.compile(r"^\d{8}$")
_CFOP_RE = re.compile(r"^[123567]\d{3}$")
_CST_RE = re.compile(r"^\d{2,3}$")
_UF_RE = re.compile(r"^[A-Z]{2}$")


def check_ncm(ncm: str, ref: str | None = None) -> str:
    if not _NCM_RE.match(ncm or ""):
        raise InvalidClassification("NCM", ncm, ref)
    return ncm


def check_cfop(cfop: str, ref: str | None = None) -> str:
    if not _CFOP_RE.match(cfop or ""):
        raise InvalidClassification("CFOP", cfop, ref)
    return cfop


def check_cst(cst: str, ref: str | None = None) -> str:
    if not _CST_RE.match(cst or ""):
        raise InvalidClassification("CST", cst, ref)
    return cst


def check_jurisdiction(uf: str, ref: str | None = None) -> str:
    if not _UF_RE.match(uf or ""):
        raise InvalidClassification("jurisdiction", uf, ref)
    return uf


def check_codes(ncm: str, cfop: str, cst: str, ref: str | None = None) -> None:
    check_ncm(ncm, ref)
    check_cfop(cfop, ref)
    check_cst(cst, ref)


def is_inbound_cfop(cfop: str) -> bool:
    # 1xxx in-state, 2xxx interstate, 3xxx import
    return bool(cfop) and cfop[0] in "123"
