"""
SLA / auto-action sweeps.

``run_sweep`` applies each overdue stage's ``on_timeout_action``;
``run_sla_warnings`` only notifies approvers whose deadline is close. Both are
safe to run repeatedly and from several processes at once: every request is
handled in its own transaction through the engine's compare-and-set paths,
so a request someone else already moved is simply reported as skipped.
"""
from __future__ import annotations
import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from hrflow.core.config import REMINDER_INTERVAL_HOURS, SLA_WARNING_HOURS
from hrflow.core.database import atomic, utcnow
from hrflow.core.exceptions import ConcurrentTransitionError, WorkflowError
from hrflow.metrics import sla_actions_total, sla_warnings_total, sweep_duration_seconds
from hrflow.models.request import OPEN_STATUSES, AssignmentStatus, StageAssignment, WorkflowRequest
from hrflow.models.workflow import Stage, TimeoutAction
from hrflow.services import notifications as notify
from hrflow.services.engine import WorkflowEngine

log = logging.getLogger("hrflow.sla")

TIMEOUT_ACTIONS = [a.value for a in TimeoutAction]


@dataclass
class SweepResult:
    checked: int = 0
    breached_flagged: int = 0
    auto_approved: int = 0
    auto_rejected: int = 0
    escalated: int = 0
    reminded: int = 0
    skipped: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class WarningResult:
    checked: int = 0
    warned: int = 0
    recipients: int = 0

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


def flag_breached(db: Session, now: datetime) -> int:
    """Mark overdue pending assignments; purely informational."""
    with atomic(db):
        n = (
            db.query(StageAssignment)
            .filter(
                StageAssignment.assignment_status == AssignmentStatus.PENDING.value,
                StageAssignment.is_active.is_(True),
                StageAssignment.is_sla_breached.is_(False),
                StageAssignment.sla_due_date.isnot(None),
                StageAssignment.sla_due_date <= now,
            )
            .update({StageAssignment.is_sla_breached: True}, synchronize_session=False)
        )
    return n


def overdue_request_ids(db: Session, now: datetime) -> List[int]:
    rows = (
        db.query(WorkflowRequest.id)
        .join(Stage, Stage.id == WorkflowRequest.current_stage_id)
        .filter(
            WorkflowRequest.request_status.in_(OPEN_STATUSES),
            WorkflowRequest.sla_due_date.isnot(None),
            WorkflowRequest.sla_due_date <= now,
            Stage.on_timeout_action.in_(TIMEOUT_ACTIONS),
        )
        .order_by(WorkflowRequest.sla_due_date, WorkflowRequest.id)
        .all()
    )
    return [r for (r,) in rows]


def _apply_timeout(engine: WorkflowEngine, request_id: int, now: datetime) -> str:
    """Run one overdue request inside a single transaction; returns the outcome bucket."""
    db = engine.db
    with engine.transition(now):
        req = db.get(WorkflowRequest, request_id)
        # re-check under the transaction: a human may have acted since the query
        if (req is None or req.request_status not in OPEN_STATUSES or not req.current_stage_id
                or req.sla_due_date is None or req.sla_due_date > now):
            return "skipped"
        stage = db.get(Stage, req.current_stage_id)
        action = stage.on_timeout_action

        if action == TimeoutAction.AUTO_APPROVE.value:
            engine.timeout_approve(req, stage)
            return "auto_approved"
        if action == TimeoutAction.AUTO_REJECT.value:
            engine.timeout_reject(req, stage)
            return "auto_rejected"
        if action == TimeoutAction.ESCALATE.value:
            if not stage.escalate_to_stage_id:
                log.warning("[sla] %s: stage '%s' escalates to no stage; skipping",
                            req.request_number, stage.name)
                return "skipped"
            engine.escalate(req, stage)
            return "escalated"
        if action == TimeoutAction.REMIND.value:
            sent = engine.remind(req, stage, REMINDER_INTERVAL_HOURS)
            return "reminded" if sent else "skipped"
        return "skipped"


def run_sweep(db: Session, now: Optional[datetime] = None,
              engine: Optional[WorkflowEngine] = None) -> SweepResult:
    now = now or utcnow()
    engine = engine or WorkflowEngine(db)
    result = SweepResult()
    started = time.perf_counter()

    result.breached_flagged = flag_breached(db, now)
    ids = overdue_request_ids(db, now)
    result.checked = len(ids)

    for rid in ids:
        try:
            outcome = _apply_timeout(engine, rid, now)
        except ConcurrentTransitionError as e:
            log.info("[sla] request %s changed concurrently; skipping (%s)", rid, e)
            result.skipped += 1
            continue
        except WorkflowError as e:
            log.warning("[sla] request %s: %s", rid, e)
            result.errors.append({"request_id": rid, "error": e.code, "detail": str(e)})
            continue
        except Exception as e:
            log.exception("[sla] request %s failed", rid)
            result.errors.append({"request_id": rid, "error": type(e).__name__, "detail": str(e)})
            continue

        setattr(result, outcome, getattr(result, outcome) + 1)
        if outcome != "skipped":
            label = {"auto_approved": "auto_approve", "auto_rejected": "auto_reject",
                     "escalated": "escalate", "reminded": "remind"}[outcome]
            sla_actions_total.labels(action=label).inc()

    sweep_duration_seconds.observe(time.perf_counter() - started)
    log.info("[sla] sweep at %s: %s", now.isoformat(), result.as_dict())
    return result


def run_sla_warnings(db: Session, now: Optional[datetime] = None, hours: float = SLA_WARNING_HOURS,
                     dispatcher: Optional[notify.NotificationDispatcher] = None) -> WarningResult:
    """Notify pending approvers whose deadline falls within the next ``hours``; never mutates state."""
    now = now or utcnow()
    horizon = now + timedelta(hours=hours)
    dispatcher = dispatcher or notify.get_dispatcher()
    result = WarningResult()

    requests = (
        db.query(WorkflowRequest)
        .filter(
            WorkflowRequest.request_status.in_(OPEN_STATUSES),
            WorkflowRequest.sla_due_date.isnot(None),
            WorkflowRequest.sla_due_date > now,
            WorkflowRequest.sla_due_date <= horizon,
        )
        .order_by(WorkflowRequest.sla_due_date)
        .all()
    )
    events = []
    for req in requests:
        result.checked += 1
        users = [
            u for (u,) in db.query(StageAssignment.assigned_to_user_id).filter(
                StageAssignment.request_id == req.id,
                StageAssignment.stage_id == req.current_stage_id,
                StageAssignment.is_active.is_(True),
                StageAssignment.assignment_status == AssignmentStatus.PENDING.value,
                StageAssignment.assigned_to_user_id.isnot(None),
            )
        ]
        if not users:
            continue
        hours_left = round((req.sla_due_date - now).total_seconds() / 3600, 2)
        events.append(notify.NotificationEvent(
            req.id, notify.SLA_WARNING, users,
            {"request_number": req.request_number, "hours_left": hours_left},
        ))
        result.warned += 1
        result.recipients += len(users)

    dispatcher.dispatch(events)
    if result.warned:
        sla_warnings_total.inc(result.warned)
    log.info("[sla] warnings at %s: %s", now.isoformat(), result.as_dict())
    return result
