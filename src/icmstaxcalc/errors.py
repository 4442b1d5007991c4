"""Error kinds raised by the assessment engine.

Every error carries a stable `kind` string; a Failed PeriodAssessment records
that kind and the message. RuleNotFound and AssetScheduleOverflow are
recoverable: the engine turns them into alerts instead of letting them escape
a run.
"""

from __future__ import annotations

from typing import Any


class AssessmentError(Exception):
    """Base class for all engine errors."""

    kind = "AssessmentError"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "message": self.message, "details": self.details}


class RuleNotFound(AssessmentError):
    """No rate resolvable for (jurisdiction, CST); callers fall back to the default rate."""

    kind = "RuleNotFound"


class InvalidClassification(AssessmentError):
    """Malformed NCM / CFOP / CST / jurisdiction code on an item or operation."""

    kind = "InvalidClassification"

    def __init__(self, field: str, value: Any, ref: str | None = None):
        where = f" on {ref}" if ref else ""
        super().__init__(
            f"Invalid {field} {value!r}{where}",
            details={"field": field, "value": value, "ref": ref},
        )


class LedgerUnavailable(AssessmentError):
    """The durable store behind the credit ledger (or asset records) failed."""

    kind = "LedgerUnavailable"


class AssetScheduleOverflow(AssessmentError):
    """Recognition would exceed the acquisition's ICMS; the amount is clamped."""

    kind = "AssetScheduleOverflow"


class InvalidPeriod(AssessmentError):
    kind = "InvalidPeriod"

    def __init__(self, value: Any):
        super().__init__(f"Invalid period {value!r}; expected YYYY-MM", details={"value": value})


class RunCancelled(AssessmentError):
    kind = "Cancelled"
