# audit_utils.py
import json
from sqlalchemy.orm import Session
from .models import AssessmentAudit

def audit(session: Session, actor: str, action: str, run_id: str | None, details: dict | None = None) -> None:
    """Append one audit row inside the caller's transaction."""
    session.add(
        AssessmentAudit(
            run_id=run_id,
            actor=actor,
            action=action,
            meta_json=json.dumps(details or {}, default=str, sort_keys=True),
        )
    )
