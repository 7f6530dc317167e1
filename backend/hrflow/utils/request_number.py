from __future__ import annotations
import re
from datetime import datetime
from typing import Any, Dict

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from hrflow.core.database import utcnow
from hrflow.models.request import RequestSequence

PREFIX = "WFR"
_PATTERN = re.compile(r"^WFR-([A-Z_]+)-(\d{4})-(\d{5,})$")


def _locked_counter(db: Session, code: str, company_id: int, year: int):
    return (
        db.query(RequestSequence)
        .filter(
            RequestSequence.workflow_code == code,
            RequestSequence.company_id == company_id,
            RequestSequence.year == year,
        )
        .with_for_update()
        .one_or_none()
    )


def next_request_number(db: Session, workflow_code: str, company_id: int, now: datetime | None = None) -> str:
    """
    Allocate the next number for (workflow_code, company_id, year) as
    WFR-{CODE}-{YYYY}-{NNNNN}. The counter row is locked for the rest of the
    caller's transaction, so concurrent submitters serialize on it.
    """
    code = str(workflow_code).upper()
    year = (now or utcnow()).year

    seq = _locked_counter(db, code, company_id, year)
    if seq is None:
        try:
            with db.begin_nested():
                seq = RequestSequence(workflow_code=code, company_id=company_id, year=year, last_value=0)
                db.add(seq)
        except IntegrityError:
            # another submitter created the row first
            seq = _locked_counter(db, code, company_id, year)

    seq.last_value += 1
    db.flush()
    return f"{PREFIX}-{code}-{year}-{seq.last_value:05d}"


def is_valid_request_number(value: str) -> bool:
    return bool(_PATTERN.match(value or ""))


def parse_request_number(value: str) -> Dict[str, Any]:
    m = _PATTERN.match(value or "")
    if not m:
        raise ValueError(f"Invalid request number '{value}'")
    return {"workflow_code": m.group(1), "year": int(m.group(2)), "sequence": int(m.group(3))}
