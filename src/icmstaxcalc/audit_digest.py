# audit_digest.py
from __future__ import annotations
import json, hashlib
from decimal import Decimal
from typing import Any, Dict
from .schemas import PeriodAssessment

def _dec_to_str(x: Decimal) -> str:
    s = format(x, 'f')
    return s.rstrip('0').rstrip('.') if '.' in s else s

def _json_c14n(obj: Any) -> str:
    """
    Canonical JSON dump:
      - sort keys
      - no spaces (compact separators)
      - decimals rendered as plain strings (trailing zeros dropped)
    """
    def normalize(o: Any):
        if isinstance(o, dict):
            return {k: normalize(o[k]) for k in sorted(o.keys())}
        elif isinstance(o, (list, tuple)):
            return [normalize(v) for v in o]
        elif isinstance(o, Decimal):
            return _dec_to_str(o)
        else:
            return o
    return json.dumps(normalize(obj), sort_keys=True, separators=(",", ":"), default=str)

def _sha256_hex(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()

def build_assessment_manifest(assessment: PeriodAssessment) -> Dict[str, Any]:
    """
    Canonical manifest of one assessment:
      - run: company, period, jurisdiction, status
      - inputs: the line items as received, in order
      - outputs: totals, per-item results, per-operation results, asset recognitions
    The assessment id and timestamp are left out so two runs over the same
    inputs produce the same hashes.
    """
    data = assessment.model_dump(mode="python")
    return {
        "run": {
            "company": assessment.company,
            "period": assessment.period,
            "jurisdiction": assessment.jurisdiction,
            "status": assessment.status.value,
        },
        "inputs": {
            "items": [ia["item"] for ia in data["item_assessments"]],
        },
        "outputs": {
            "totals": data["totals"],
            "items": [{k: v for k, v in ia.items() if k != "item"} for ia in data["item_assessments"]],
            "operations": data["operation_assessments"],
            "assets": data["asset_recognitions"],
            "applied_rules": data["applied_rules"],
            "confidence_score": data["confidence_score"],
        },
    }

def compute_digests(manifest: Dict[str, Any]) -> Dict[str, str]:
    """
    Compute:
      - input_hash: hash over the input portion (run key + items)
      - output_hash: hash over the computed outputs
      - manifest_hash: hash over the full manifest
    """
    inputs_part = {"run": manifest["run"], "inputs": manifest["inputs"]}
    return {
        "input_hash": _sha256_hex(_json_c14n(inputs_part)),
        "output_hash": _sha256_hex(_json_c14n(manifest["outputs"])),
        "manifest_hash": _sha256_hex(_json_c14n(manifest)),
    }
