from __future__ import annotations
import logging
from typing import Any, Dict, Iterable, Optional

from sqlalchemy.orm import Session

from hrflow.models.request import WorkflowAction, WorkflowRequest
from hrflow.utils.audit_sink import write_events

log = logging.getLogger("hrflow.audit")


def record_action(
    db: Session,
    request: WorkflowRequest,
    action_type: str,
    action_by_type: str,
    action_by_user_id: Optional[int] = None,
    stage_id: Optional[int] = None,
    approver_type: Optional[str] = None,
    remarks: Optional[str] = None,
    previous_stage_id: Optional[int] = None,
    next_stage_id: Optional[int] = None,
    action_result: Optional[str] = None,
) -> WorkflowAction:
    """
    Append one history row for ``request``. The row is flushed (so it has an
    id) but the caller's transaction decides whether it survives.
    """
    row = WorkflowAction(
        request_id=request.id,
        stage_id=stage_id,
        action_type=action_type,
        action_by_user_id=action_by_user_id,
        action_by_type=action_by_type,
        approver_type=approver_type,
        remarks=remarks,
        previous_stage_id=previous_stage_id,
        next_stage_id=next_stage_id,
        action_result=action_result,
    )
    db.add(row)
    db.flush()
    return row


def action_event(row: WorkflowAction) -> Dict[str, Any]:
    return {
        "id": row.id,
        "request_id": row.request_id,
        "stage_id": row.stage_id,
        "action": row.action_type,
        "by_type": row.action_by_type,
        "by_user_id": row.action_by_user_id,
        "approver_type": row.approver_type,
        "remarks": row.remarks,
        "previous_stage_id": row.previous_stage_id,
        "next_stage_id": row.next_stage_id,
        "result": row.action_result,
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }


def mirror_events(events: Iterable[Dict[str, Any]]) -> int:
    """Copy committed action events to the JSONL sink; a failing disk never fails the transition."""
    try:
        return write_events(events)
    except OSError as e:
        log.warning("[audit] JSONL mirror failed: %s", e)
        return 0
