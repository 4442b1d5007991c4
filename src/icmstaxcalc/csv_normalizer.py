# csv_normalizer.py
"""
Rule-sheet parsing into TaxRule objects.

Responsibilities:
- Read uploaded CSV bytes safely (UTF-8 with BOM, falling back to cp1252,
  which is what spreadsheets exported on Brazilian Windows setups produce).
- Accept ';' or ',' as the separator.
- Normalize header names (case-insensitive, accents ignored).
- Accept Brazilian decimal commas ("4,5" or "4,5%").
- Validate each row using Pydantic (TaxRule), returning:
  (valid_rules, errors) so the caller can preview and/or persist.

This module is pure (no DB calls).
"""

import csv
import unicodedata
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from io import StringIO
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError

from .schemas import TaxRule

REQUIRED_COLUMNS = {"id", "jurisdiction", "kind", "valid_from"}
OPTIONAL_COLUMNS = {
    "ncm_match", "cfop_match", "cst_match",
    "reduction_pct", "credit_pct", "surtax_pct", "exemption_pct", "recovery_months",
    "valid_to", "active", "provenance", "description",
}
PERCENT_COLUMNS = {"reduction_pct", "credit_pct", "surtax_pct", "exemption_pct"}

# Portuguese headers seen in rule spreadsheets
HEADER_ALIASES = {
    "uf": "jurisdiction",
    "tipo": "kind",
    "ncm": "ncm_match",
    "cfop": "cfop_match",
    "cst": "cst_match",
    "reducao": "reduction_pct",
    "base_reduzida": "reduction_pct",
    "credito_outorgado": "credit_pct",
    "credito_presumido": "credit_pct",
    "protege": "surtax_pct",
    "adicional": "surtax_pct",
    "isencao": "exemption_pct",
    "prazo_meses": "recovery_months",
    "vigencia_inicio": "valid_from",
    "vigencia_fim": "valid_to",
    "ativo": "active",
    "fonte": "provenance",
    "descricao": "description",
}

KIND_ALIASES = {
    "base_reduzida": "ReducedBase",
    "reducedbase": "ReducedBase",
    "credito_outorgado": "PresumedCredit",
    "credito_presumido": "PresumedCredit",
    "presumedcredit": "PresumedCredit",
    "protege": "RegionalSurtax",
    "regionalsurtax": "RegionalSurtax",
    "ciap": "FixedAssetCredit",
    "fixedassetcredit": "FixedAssetCredit",
    "isencao": "Exemption",
    "exemption": "Exemption",
}

_TRUE = {"1", "s", "sim", "y", "yes", "true", "t"}


def _fold(text: str) -> str:
    txt = unicodedata.normalize("NFKD", text or "").lower()
    return "".join(ch for ch in txt if not unicodedata.combining(ch))


def _normalize_headers(headers: List[str]) -> List[str]:
    """Lowercase, strip accents/BOM and map Portuguese aliases."""
    out = []
    for h in headers:
        key = _fold(h.replace("\ufeff", "").strip()).replace(" ", "_")
        out.append(HEADER_ALIASES.get(key, key))
    return out


def _decode(file_bytes: bytes) -> str:
    try:
        return file_bytes.decode("utf-8-sig")
    except UnicodeDecodeError:
        return file_bytes.decode("cp1252")


def parse_decimal_ptbr(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    s = str(value).strip().replace("%", "").strip()
    if not s:
        return None
    if "," in s:
        s = s.replace(".", "").replace(",", ".")
    try:
        return Decimal(s)
    except InvalidOperation:
        raise ValueError(f"not a number: {value!r}")


def parse_date_any(value: Any) -> Optional[date]:
    s = str(value or "").strip()
    if not s:
        return None
    for fmt in ("%Y-%m-%d", "%d/%m/%Y"):
        try:
            return datetime.strptime(s, fmt).date()
        except ValueError:
            continue
    raise ValueError(f"not a date: {value!r}")


def _coerce_row(row: Dict[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for key, value in row.items():
        if key not in REQUIRED_COLUMNS and key not in OPTIONAL_COLUMNS:
            continue
        if isinstance(value, str):
            value = value.strip()
        if value == "" and key not in REQUIRED_COLUMNS:
            continue
        if key in PERCENT_COLUMNS:
            value = parse_decimal_ptbr(value)
        elif key in ("valid_from", "valid_to"):
            value = parse_date_any(value)
        elif key == "kind":
            value = KIND_ALIASES.get(_fold(value).replace(" ", "_").replace("-", "_"), value)
        elif key == "active":
            value = _fold(value) in _TRUE
        elif key == "recovery_months":
            value = int(value)
        out[key] = value
    return out


def parse_rules_csv(file_bytes: bytes) -> Tuple[List[TaxRule], List[Dict[str, Any]]]:
    """
    Parse CSV bytes into a list of TaxRule objects.
    Returns:
      valid_rules: list[TaxRule]
      errors: list of {row_number, error, raw_row}
    """
    valid: List[TaxRule] = []
    errors: List[Dict[str, Any]] = []

    text = _decode(file_bytes)
    first_line = text.splitlines()[0] if text else ""
    delimiter = ";" if first_line.count(";") >= first_line.count(",") and ";" in first_line else ","
    reader = csv.DictReader(StringIO(text, newline=""), delimiter=delimiter)

    if reader.fieldnames is None:
        errors.append({"row_number": 0, "error": "CSV has no header", "raw_row": None})
        return valid, errors

    headers = _normalize_headers(reader.fieldnames)
    header_map = {orig: norm for orig, norm in zip(reader.fieldnames, headers)}

    missing = REQUIRED_COLUMNS - set(headers)
    if missing:
        errors.append({"row_number": 0, "error": f"Missing required columns: {sorted(missing)}", "raw_row": None})
        return valid, errors

    seen_ids = set()
    for i, row in enumerate(reader, start=2):  # row 1 is the header
        normalized = {header_map.get(k, k): v for k, v in row.items() if k is not None}
        try:
            rule = TaxRule(**_coerce_row(normalized))
        except ValidationError as ve:
            errors.append({"row_number": i, "error": ve.errors(include_url=False), "raw_row": normalized})
            continue
        except ValueError as exc:
            errors.append({"row_number": i, "error": str(exc), "raw_row": normalized})
            continue
        if rule.id in seen_ids:
            errors.append({"row_number": i, "error": f"Duplicate rule id {rule.id}", "raw_row": normalized})
            continue
        seen_ids.add(rule.id)
        valid.append(rule)

    return valid, errors
