"""
Workflow execution core: the per-request state machine.

Every public operation runs as one transaction (``transition``). Notification
events, JSONL audit lines and metric bumps produced while it runs are held
back and released only after the commit succeeds. A lost race shows up
either as a compare-and-set UPDATE touching zero assignment rows or as a
version mismatch on the request row; both surface as
``ConcurrentTransitionError`` and the loser's transaction is rolled back.
"""
from __future__ import annotations
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from hrflow.core.database import atomic, utcnow
from hrflow.core.exceptions import (
    ApproverLookupFailed, ConcurrentTransitionError, DelegationNotAllowed, InvalidConfiguration,
    NoCurrentStage, NoDefinitionConfigured, NoPendingAssignment, NoStagesConfigured,
    NotRequestOwner, RequestNotActive, RequestNotFound, StageNotFound, WithdrawalNotAllowed,
)
from hrflow.metrics import decisions_total, requests_finalized_total, requests_submitted_total
from hrflow.models.employee import Employee
from hrflow.models.request import (
    OPEN_STATUSES, ActionType, AssignmentStatus, OverallStatus, RequestStatus,
    StageAssignment, WorkflowAction, WorkflowRequest,
)
from hrflow.models.workflow import (
    ApproverLogic, RejectAction, Stage, StageType, WorkflowDefinition, WorkflowType, WorkflowTypeCode,
)
from hrflow.services import applicability
from hrflow.services import notifications as notify
from hrflow.services.approvers import ResolvedApprover, resolve_one, resolve_stage_approvers
from hrflow.services.audit import action_event, mirror_events, record_action
from hrflow.services.conditions import ConditionAction, Verdict, evaluate, load_conditions
from hrflow.services.directory import (
    EmployeeDirectory, LeaveBalanceProvider, SqlEmployeeDirectory, SqlLeaveBalanceProvider,
    employee_snapshot,
)
from hrflow.utils.request_number import next_request_number
from hrflow.utils.sla import sla_status, stage_due_date

log = logging.getLogger("hrflow.engine")

# stage routing (skip / move / auto) may chain; anything longer is a config loop
MAX_STAGE_HOPS = 50

APPROVED_FINAL = (RequestStatus.APPROVED.value, RequestStatus.AUTO_APPROVED.value)
# assignments that still take part in the ALL / ANY vote
VOTING = (AssignmentStatus.PENDING.value, AssignmentStatus.APPROVED.value, AssignmentStatus.REJECTED.value)


@dataclass
class Effects:
    """Side effects of one transition, released after commit."""
    now: datetime
    events: List[notify.NotificationEvent] = field(default_factory=list)
    audit: List[Dict[str, Any]] = field(default_factory=list)
    on_commit: List[Callable[[], None]] = field(default_factory=list)


def overall_for(status: str) -> str:
    if status in APPROVED_FINAL:
        return OverallStatus.COMPLETED.value
    if status == RequestStatus.WITHDRAWN.value:
        return OverallStatus.WITHDRAWN.value
    return OverallStatus.REJECTED.value


class WorkflowEngine:
    def __init__(
        self,
        db: Session,
        directory: Optional[EmployeeDirectory] = None,
        balances: Optional[LeaveBalanceProvider] = None,
        dispatcher: Optional[notify.NotificationDispatcher] = None,
    ):
        self.db = db
        self.directory = directory or SqlEmployeeDirectory(db)
        self.balances = balances or SqlLeaveBalanceProvider(db)
        self._dispatcher = dispatcher
        self._fx: Optional[Effects] = None

    @property
    def dispatcher(self) -> notify.NotificationDispatcher:
        return self._dispatcher or notify.get_dispatcher()

    # ------------------------------------------------------------------
    # transaction plumbing
    # ------------------------------------------------------------------

    @contextmanager
    def transition(self, now: datetime | None = None):
        if self._fx is not None:
            raise RuntimeError("nested workflow transition")
        fx = Effects(now=now or utcnow())
        self._fx = fx
        try:
            with atomic(self.db):
                yield fx
        except StaleDataError as e:
            raise ConcurrentTransitionError(
                "Request was changed by a concurrent action; reload and retry"
            ) from e
        finally:
            self._fx = None

        mirror_events(fx.audit)
        for fn in fx.on_commit:
            fn()
        if fx.events:
            self.dispatcher.dispatch(fx.events)

    @property
    def now(self) -> datetime:
        return self._fx.now if self._fx is not None else utcnow()

    def _emit(self, request: WorkflowRequest, event_type: str, recipients=None, **payload) -> None:
        users = list(dict.fromkeys(u for u in (recipients or []) if u))
        payload.setdefault("request_number", request.request_number)
        self._fx.events.append(notify.NotificationEvent(request.id, event_type, users, payload))

    def _act(self, request: WorkflowRequest, action_type: str, by_type: str, **kw) -> WorkflowAction:
        row = record_action(self.db, request, action_type, by_type, **kw)
        self._fx.audit.append(action_event(row))
        return row

    def _touch(self, request: WorkflowRequest) -> None:
        """Bump the request row now so a concurrent writer fails here, before any history is written."""
        request.updated_at = self.now
        self.db.flush()

    # ------------------------------------------------------------------
    # lookups
    # ------------------------------------------------------------------

    def _get(self, request_id: int) -> WorkflowRequest:
        req = self.db.get(WorkflowRequest, request_id)
        if req is None:
            raise RequestNotFound(f"Request {request_id} not found", request_id=request_id)
        return req

    def _stage(self, definition_id: int, stage_id: Optional[int]) -> Stage:
        stage = self.db.get(Stage, stage_id) if stage_id else None
        if stage is None or stage.definition_id != definition_id or not stage.is_active:
            raise StageNotFound(f"Stage {stage_id} not found in definition {definition_id}",
                                stage_id=stage_id, definition_id=definition_id)
        return stage

    def _first_stage(self, definition: WorkflowDefinition) -> Stage:
        stages = [s for s in definition.stages if s.is_active]
        if not stages:
            raise NoStagesConfigured(f"Workflow '{definition.name}' has no stages",
                                     definition_id=definition.id)
        return min(stages, key=lambda s: s.stage_order)

    def _workflow_code(self, request: WorkflowRequest) -> str:
        wtype = self.db.get(WorkflowType, request.workflow_type_id)
        return wtype.code if wtype else ""

    def build_context(self, request: WorkflowRequest, employee: Employee) -> Dict[str, Any]:
        data = dict(request.request_data or {})
        balance = None
        leave_type_id = data.get("leave_type_id")
        if self._workflow_code(request) == WorkflowTypeCode.LEAVE.value and leave_type_id is not None:
            balance = self.balances.get(employee.id, int(leave_type_id))
        return {
            "employee": employee_snapshot(employee),
            "request": data,
            "leave_balance": balance,
            "custom": data.get("custom_fields"),
        }

    def _context(self, request: WorkflowRequest) -> Dict[str, Any]:
        return self.build_context(request, self.directory.get(request.employee_id))

    # ------------------------------------------------------------------
    # submit
    # ------------------------------------------------------------------

    def submit(self, employee_id: int, workflow_code: str, request_data: Dict[str, Any],
               submitted_by: int, now: datetime | None = None) -> WorkflowRequest:
        code = getattr(workflow_code, "value", workflow_code)
        with self.transition(now) as fx:
            employee = self.directory.get(employee_id)
            wtype = self.db.query(WorkflowType).filter(WorkflowType.code == code).one_or_none()
            if wtype is None or not wtype.is_active:
                raise NoDefinitionConfigured(f"Unknown or inactive workflow type '{code}'", workflow_code=code)
            definition = applicability.resolve(self.db, employee, code)

            req = WorkflowRequest(
                request_number=next_request_number(self.db, code, employee.company_id, fx.now),
                definition_id=definition.id,
                workflow_type_id=wtype.id,
                company_id=employee.company_id,
                employee_id=employee.id,
                submitted_by=submitted_by,
                request_data=dict(request_data or {}),
                request_status=RequestStatus.SUBMITTED.value,
                overall_status=OverallStatus.IN_PROGRESS.value,
                submitted_at=fx.now,
                updated_at=fx.now,
            )
            self.db.add(req)
            self.db.flush()

            by_type = "employee" if submitted_by == employee.user_id else "admin"
            self._act(req, ActionType.SUBMIT.value, by_type, action_by_user_id=submitted_by,
                      action_result=f"definition {definition.id}")

            context = self.build_context(req, employee)
            verdict = evaluate(load_conditions(self.db, definition.id, None), context, fx.now)
            self._apply_global_verdict(req, definition, employee, verdict, context)

            fx.on_commit.append(lambda: requests_submitted_total.labels(workflow_code=code).inc())
            log.info("[engine] submitted %s emp=%s definition=%s status=%s",
                     req.request_number, employee.id, definition.id, req.request_status)
        return req

    def _apply_global_verdict(self, req, definition, employee, verdict: Verdict, context) -> None:
        action = verdict.action
        if action == ConditionAction.AUTO_APPROVE.value:
            self._act(req, ActionType.AUTO_APPROVE.value, "system", remarks=verdict.message)
            self._finalize(req, RequestStatus.AUTO_APPROVED.value)
            return
        if action == ConditionAction.AUTO_REJECT.value:
            self._act(req, ActionType.AUTO_REJECT.value, "system", remarks=verdict.message)
            self._finalize(req, RequestStatus.AUTO_REJECTED.value)
            return

        if action == ConditionAction.NOTIFY.value:
            self._emit(req, notify.CONDITION_NOTICE, [employee.user_id], condition=verdict.condition_name)

        if action == ConditionAction.MOVE_TO_STAGE.value:
            if not verdict.target_stage_id:
                raise InvalidConfiguration(f"Condition '{verdict.condition_name}' moves to no stage")
            first = self._stage(definition.id, verdict.target_stage_id)
        else:
            first = self._first_stage(definition)

        self._enter_stage(req, first, context)
        if definition.send_submission_notification and req.is_open:
            self._emit(req, notify.SUBMITTED, [employee.user_id, req.submitted_by])

    # ------------------------------------------------------------------
    # stage processing
    # ------------------------------------------------------------------

    def _enter_stage(self, req: WorkflowRequest, stage: Stage, context: Dict[str, Any], hops: int = 0) -> None:
        if hops > MAX_STAGE_HOPS:
            raise InvalidConfiguration(f"Stage routing for definition {req.definition_id} does not terminate")

        verdict = evaluate(load_conditions(self.db, req.definition_id, stage.id), context, self.now)
        action = verdict.action

        if action == ConditionAction.SKIP_STAGE.value:
            self._act(req, ActionType.SKIP.value, "system", stage_id=stage.id, remarks=verdict.message,
                      previous_stage_id=req.current_stage_id, next_stage_id=stage.next_stage_on_approve_id)
            self._advance(req, stage, context, hops, RequestStatus.APPROVED.value)
            return
        if action == ConditionAction.AUTO_REJECT.value:
            self._act(req, ActionType.AUTO_REJECT.value, "system", stage_id=stage.id, remarks=verdict.message)
            self._finalize(req, RequestStatus.AUTO_REJECTED.value)
            return
        if action == ConditionAction.MOVE_TO_STAGE.value:
            if not verdict.target_stage_id:
                raise InvalidConfiguration(f"Condition '{verdict.condition_name}' moves to no stage")
            self._enter_stage(req, self._stage(req.definition_id, verdict.target_stage_id), context, hops + 1)
            return
        if action == ConditionAction.AUTO_APPROVE.value or stage.stage_type == StageType.AUTO_ACTION.value:
            self._act(req, ActionType.AUTO_APPROVE.value, "system", stage_id=stage.id,
                      remarks=verdict.message or f"auto_action stage '{stage.name}'",
                      next_stage_id=stage.next_stage_on_approve_id)
            self._advance(req, stage, context, hops, RequestStatus.AUTO_APPROVED.value)
            return
        if action == ConditionAction.NOTIFY.value:
            self._emit(req, notify.CONDITION_NOTICE, [context["employee"].get("user_id")],
                       stage=stage.name, condition=verdict.condition_name)

        employee = self.directory.get(req.employee_id)
        extra = None
        if action == ConditionAction.ASSIGN_APPROVER.value and verdict.approver_type:
            try:
                extra = resolve_one(self.directory, employee, verdict.approver_type,
                                    order=len(stage.approvers) + 1, custom_user_id=verdict.custom_user_id)
            except ApproverLookupFailed as e:
                log.warning("[engine] %s: extra approver %s not resolved: %s",
                            req.request_number, verdict.approver_type, e)

        definition = self.db.get(WorkflowDefinition, req.definition_id)
        approvers = resolve_stage_approvers(self.directory, stage, employee, context,
                                            allow_self_approval=definition.allow_self_approval, extra=extra)

        if stage.stage_type == StageType.NOTIFY_ONLY.value:
            self._emit(req, notify.STAGE_NOTICE, [a.user_id for a in approvers], stage=stage.name)
            self._act(req, ActionType.NOTIFY.value, "system", stage_id=stage.id,
                      remarks=f"{len(approvers)} recipient(s) notified",
                      next_stage_id=stage.next_stage_on_approve_id)
            self._advance(req, stage, context, hops, RequestStatus.APPROVED.value)
            return

        self._assign(req, stage, approvers)
        if self._stage_complete(req, stage):
            self._advance(req, stage, context, hops, RequestStatus.AUTO_APPROVED.value)

    def _deactivate_stage(self, req: WorkflowRequest, stage_id: int) -> None:
        """A re-entered stage gets a fresh assignment set; the old one stops counting."""
        base = self.db.query(StageAssignment).filter(
            StageAssignment.request_id == req.id,
            StageAssignment.stage_id == stage_id,
            StageAssignment.is_active.is_(True),
        )
        base.filter(StageAssignment.assignment_status == AssignmentStatus.PENDING.value).update(
            {StageAssignment.assignment_status: AssignmentStatus.SKIPPED.value},
            synchronize_session="fetch",
        )
        base.update({StageAssignment.is_active: False}, synchronize_session="fetch")

    def _assign(self, req: WorkflowRequest, stage: Stage, approvers: List[ResolvedApprover]) -> None:
        now = self.now
        self._deactivate_stage(req, stage.id)
        due = stage_due_date(stage, now)

        req.current_stage_id = stage.id
        req.current_stage_order = stage.stage_order
        req.request_status = RequestStatus.PENDING.value
        req.sla_due_date = due
        req.updated_at = now

        requires_all = stage.approver_logic == ApproverLogic.ALL.value
        autos = []
        for a in approvers:
            row = StageAssignment(
                request_id=req.id,
                stage_id=stage.id,
                assigned_to_user_id=a.user_id,
                approver_type=a.approver_type,
                assignment_status=AssignmentStatus.PENDING.value,
                requires_all_approval=requires_all,
                approval_order=a.order,
                allow_delegation=a.allow_delegation,
                sla_due_date=due,
                assigned_at=now,
            )
            if a.is_auto:
                row.assignment_status = AssignmentStatus.APPROVED.value
                row.action_taken = ActionType.AUTO_APPROVE.value
                row.action_taken_at = now
                autos.append(row)
            self.db.add(row)
        self.db.flush()

        for row in autos:
            act = self._act(req, ActionType.AUTO_APPROVE.value, "system", stage_id=stage.id,
                            approver_type=row.approver_type, remarks="AUTO_APPROVE approver")
            row.action_id = act.id

        humans = [a.user_id for a in approvers if not a.is_auto]
        if stage.notify_on_assign and humans:
            self._emit(req, notify.ASSIGNED, humans, stage=stage.name,
                       sla_due_date=due.isoformat() if due else None)
        log.info("[engine] %s entered stage %s (%s, %d approver(s), due %s)",
                 req.request_number, stage.stage_order, stage.approver_logic, len(approvers), due)

    def _stage_complete(self, req: WorkflowRequest, stage: Stage) -> bool:
        statuses = [
            s for (s,) in self.db.query(StageAssignment.assignment_status).filter(
                StageAssignment.request_id == req.id,
                StageAssignment.stage_id == stage.id,
                StageAssignment.is_active.is_(True),
                StageAssignment.assignment_status.in_(VOTING),
            )
        ]
        if not statuses:
            return False
        approved = [s == AssignmentStatus.APPROVED.value for s in statuses]
        if stage.approver_logic == ApproverLogic.ALL.value:
            return all(approved)
        return any(approved)

    def _advance(self, req: WorkflowRequest, stage: Stage, context: Dict[str, Any], hops: int,
                 final_status: str) -> None:
        if stage.next_stage_on_approve_id:
            nxt = self._stage(req.definition_id, stage.next_stage_on_approve_id)
            self._enter_stage(req, nxt, context, hops + 1)
        else:
            self._finalize(req, final_status)

    def _finalize(self, req: WorkflowRequest, status: str) -> None:
        now = self.now
        req.request_status = status
        req.overall_status = overall_for(status)
        req.completed_at = now
        req.current_stage_id = None
        req.current_stage_order = None
        req.updated_at = now
        self.db.flush()

        if status == RequestStatus.WITHDRAWN.value:
            event = notify.WITHDRAWN
        elif status in APPROVED_FINAL:
            event = notify.APPROVED
        else:
            event = notify.REJECTED
        employee = self.db.get(Employee, req.employee_id)
        self._emit(req, event, [employee.user_id if employee else None, req.submitted_by], status=status)
        self._fx.on_commit.append(lambda: requests_finalized_total.labels(status=status).inc())
        log.info("[engine] %s finalized as %s", req.request_number, status)

    # ------------------------------------------------------------------
    # human decisions
    # ------------------------------------------------------------------

    def _open_with_stage(self, request_id: int):
        req = self._get(request_id)
        if req.request_status not in OPEN_STATUSES:
            raise RequestNotActive(f"Request {req.request_number} is {req.request_status}",
                                   request_id=req.id, status=req.request_status)
        if not req.current_stage_id:
            raise NoCurrentStage(f"Request {req.request_number} has no current stage", request_id=req.id)
        return req, self._stage(req.definition_id, req.current_stage_id)

    def _pending_for(self, req: WorkflowRequest, stage_id: int, user_id: int) -> StageAssignment:
        asg = (
            self.db.query(StageAssignment)
            .filter(
                StageAssignment.request_id == req.id,
                StageAssignment.stage_id == stage_id,
                StageAssignment.assigned_to_user_id == user_id,
                StageAssignment.assignment_status == AssignmentStatus.PENDING.value,
                StageAssignment.is_active.is_(True),
            )
            .order_by(StageAssignment.id)
            .first()
        )
        if asg is None:
            raise NoPendingAssignment(
                f"User {user_id} has no pending assignment on request {req.request_number}",
                request_id=req.id, user_id=user_id,
            )
        return asg

    def _claim(self, asg: StageAssignment, status: str, **values) -> None:
        """Compare-and-set ``pending -> status``; zero rows means someone else got there first."""
        values.update(assignment_status=status, action_taken_at=self.now)
        n = (
            self.db.query(StageAssignment)
            .filter(StageAssignment.id == asg.id,
                    StageAssignment.assignment_status == AssignmentStatus.PENDING.value)
            .update(values, synchronize_session="fetch")
        )
        if n != 1:
            raise ConcurrentTransitionError(f"Assignment {asg.id} is no longer pending", assignment_id=asg.id)

    def approve(self, request_id: int, actor_user_id: int, remarks: str | None = None) -> WorkflowRequest:
        with self.transition():
            req, stage = self._open_with_stage(request_id)
            asg = self._pending_for(req, stage.id, actor_user_id)
            self._claim(asg, AssignmentStatus.APPROVED.value,
                        action_taken=ActionType.APPROVE.value)
            self._touch(req)

            complete = self._stage_complete(req, stage)
            act = self._act(req, ActionType.APPROVE.value, "approver", action_by_user_id=actor_user_id,
                            stage_id=stage.id, approver_type=asg.approver_type, remarks=remarks,
                            previous_stage_id=stage.id,
                            next_stage_id=stage.next_stage_on_approve_id if complete else None,
                            action_result="stage_complete" if complete else "awaiting_other_approvers")
            asg.action_id = act.id

            if complete:
                self._advance(req, stage, self._context(req), 0, RequestStatus.APPROVED.value)
            else:
                req.request_status = RequestStatus.IN_PROGRESS.value
            if stage.notify_on_approve and req.is_open:
                self._emit(req, notify.STAGE_NOTICE, [req.submitted_by], stage=stage.name, decision="approve")
            self._fx.on_commit.append(lambda: decisions_total.labels(decision="approve").inc())
            log.info("[engine] %s approved at stage %s by user %s", req.request_number,
                     stage.stage_order, actor_user_id)
        return req

    def reject(self, request_id: int, actor_user_id: int, remarks: str | None = None) -> WorkflowRequest:
        with self.transition():
            req, stage = self._open_with_stage(request_id)
            asg = self._pending_for(req, stage.id, actor_user_id)
            self._claim(asg, AssignmentStatus.REJECTED.value,
                        action_taken=ActionType.REJECT.value)
            self._touch(req)

            on_reject = stage.on_reject_action or RejectAction.FINAL_REJECT.value
            target = None
            if on_reject == RejectAction.MOVE_TO_STAGE.value:
                if not stage.reject_target_stage_id:
                    raise InvalidConfiguration(f"Stage '{stage.name}' moves rejections to no stage")
                target = self._stage(req.definition_id, stage.reject_target_stage_id)
            elif on_reject == RejectAction.SEND_BACK.value:
                target = (self._stage(req.definition_id, stage.reject_target_stage_id)
                          if stage.reject_target_stage_id else
                          self._first_stage(self.db.get(WorkflowDefinition, req.definition_id)))

            act = self._act(req, ActionType.REJECT.value, "approver", action_by_user_id=actor_user_id,
                            stage_id=stage.id, approver_type=asg.approver_type, remarks=remarks,
                            previous_stage_id=stage.id, next_stage_id=target.id if target else None,
                            action_result=on_reject)
            asg.action_id = act.id

            if target is None:
                self._finalize(req, RequestStatus.REJECTED.value)
            else:
                if on_reject == RejectAction.SEND_BACK.value:
                    self._act(req, ActionType.SEND_BACK.value, "approver", action_by_user_id=actor_user_id,
                              stage_id=stage.id, previous_stage_id=stage.id, next_stage_id=target.id)
                self._enter_stage(req, target, self._context(req))
                if stage.notify_on_reject:
                    self._emit(req, notify.STAGE_NOTICE, [req.submitted_by], stage=stage.name,
                               decision="reject", routed_to=target.name)
            self._fx.on_commit.append(lambda: decisions_total.labels(decision="reject").inc())
            log.info("[engine] %s rejected at stage %s by user %s (%s)", req.request_number,
                     stage.stage_order, actor_user_id, on_reject)
        return req

    def withdraw(self, request_id: int, actor_user_id: int, remarks: str | None = None) -> WorkflowRequest:
        with self.transition():
            req = self._get(request_id)
            if req.submitted_by != actor_user_id:
                raise NotRequestOwner("Only the submitter can withdraw this request", request_id=req.id)
            if req.request_status not in OPEN_STATUSES:
                raise RequestNotActive(f"Request {req.request_number} is {req.request_status}",
                                       request_id=req.id, status=req.request_status)
            definition = self.db.get(WorkflowDefinition, req.definition_id)
            if not definition.allow_withdrawal:
                raise WithdrawalNotAllowed(f"Workflow '{definition.name}' does not allow withdrawal")

            self._touch(req)
            n = (
                self.db.query(StageAssignment)
                .filter(StageAssignment.request_id == req.id,
                        StageAssignment.assignment_status == AssignmentStatus.PENDING.value)
                .update({
                    StageAssignment.assignment_status: AssignmentStatus.WITHDRAWN.value,
                    StageAssignment.action_taken_at: self.now,
                }, synchronize_session="fetch")
            )
            self._act(req, ActionType.WITHDRAW.value, "employee", action_by_user_id=actor_user_id,
                      stage_id=req.current_stage_id, previous_stage_id=req.current_stage_id,
                      remarks=remarks, action_result=f"{n} pending assignment(s) withdrawn")
            self._finalize(req, RequestStatus.WITHDRAWN.value)
            self._fx.on_commit.append(lambda: decisions_total.labels(decision="withdraw").inc())
        return req

    def delegate(self, request_id: int, actor_user_id: int, to_user_id: int,
                 remarks: str | None = None) -> WorkflowRequest:
        with self.transition():
            req, stage = self._open_with_stage(request_id)
            asg = self._pending_for(req, stage.id, actor_user_id)
            if not asg.allow_delegation:
                raise DelegationNotAllowed("This assignment cannot be delegated", assignment_id=asg.id)
            if to_user_id == actor_user_id:
                raise DelegationNotAllowed("Cannot delegate to yourself")
            delegate = self.directory.get_by_user(to_user_id)
            if delegate is None:
                raise DelegationNotAllowed(f"User {to_user_id} is not an active employee")
            employee = self.directory.get(req.employee_id)
            if employee.user_id == to_user_id:
                raise DelegationNotAllowed("Cannot delegate to the requester")

            self._claim(asg, AssignmentStatus.DELEGATED.value,
                        action_taken=ActionType.DELEGATE.value,
                        delegated_to_user_id=to_user_id,
                        delegated_at=self.now)
            self._touch(req)
            act = self._act(req, ActionType.DELEGATE.value, "approver", action_by_user_id=actor_user_id,
                            stage_id=stage.id, approver_type=asg.approver_type, remarks=remarks,
                            action_result=f"delegated to user {to_user_id}")
            asg.action_id = act.id

            self.db.add(StageAssignment(
                request_id=req.id,
                stage_id=stage.id,
                assigned_to_user_id=to_user_id,
                approver_type=asg.approver_type,
                assignment_status=AssignmentStatus.PENDING.value,
                requires_all_approval=asg.requires_all_approval,
                approval_order=asg.approval_order,
                allow_delegation=False,
                sla_due_date=asg.sla_due_date,
                assigned_at=self.now,
            ))
            self.db.flush()
            self._emit(req, notify.DELEGATED, [to_user_id], stage=stage.name, delegated_by=actor_user_id)
            self._fx.on_commit.append(lambda: decisions_total.labels(decision="delegate").inc())
        return req

    # ------------------------------------------------------------------
    # system decisions (SLA sweep); callers hold a transition
    # ------------------------------------------------------------------

    def expire_pending(self, req: WorkflowRequest, stage_id: int) -> int:
        return (
            self.db.query(StageAssignment)
            .filter(StageAssignment.request_id == req.id,
                    StageAssignment.stage_id == stage_id,
                    StageAssignment.is_active.is_(True),
                    StageAssignment.assignment_status == AssignmentStatus.PENDING.value)
            .update({
                StageAssignment.assignment_status: AssignmentStatus.EXPIRED.value,
                StageAssignment.is_sla_breached: True,
                StageAssignment.action_taken_at: self.now,
            }, synchronize_session="fetch")
        )

    def timeout_approve(self, req: WorkflowRequest, stage: Stage) -> None:
        self._touch(req)
        n = self.expire_pending(req, stage.id)
        self._act(req, ActionType.AUTO_APPROVE.value, "system", stage_id=stage.id,
                  previous_stage_id=stage.id, next_stage_id=stage.next_stage_on_approve_id,
                  remarks="SLA expired", action_result=f"{n} assignment(s) expired")
        self._advance(req, stage, self._context(req), 0, RequestStatus.AUTO_APPROVED.value)

    def timeout_reject(self, req: WorkflowRequest, stage: Stage) -> None:
        self._touch(req)
        n = self.expire_pending(req, stage.id)
        self._act(req, ActionType.AUTO_REJECT.value, "system", stage_id=stage.id,
                  previous_stage_id=stage.id, remarks="SLA expired",
                  action_result=f"{n} assignment(s) expired")
        self._finalize(req, RequestStatus.AUTO_REJECTED.value)

    def escalate(self, req: WorkflowRequest, stage: Stage) -> Stage:
        target = self._stage(req.definition_id, stage.escalate_to_stage_id)
        self._touch(req)
        n = self.expire_pending(req, stage.id)
        self._act(req, ActionType.ESCALATE.value, "system", stage_id=stage.id,
                  previous_stage_id=stage.id, next_stage_id=target.id, remarks="SLA expired",
                  action_result=f"{n} assignment(s) expired")
        self._emit(req, notify.ESCALATED, [req.submitted_by], from_stage=stage.name, to_stage=target.name)
        self._enter_stage(req, target, self._context(req))
        return target

    def remind(self, req: WorkflowRequest, stage: Stage, min_gap_hours: float) -> int:
        cutoff = self.now - timedelta(hours=min_gap_hours)
        pending = (
            self.db.query(StageAssignment)
            .filter(StageAssignment.request_id == req.id,
                    StageAssignment.stage_id == stage.id,
                    StageAssignment.is_active.is_(True),
                    StageAssignment.assignment_status == AssignmentStatus.PENDING.value)
            .order_by(StageAssignment.id)
            .all()
        )
        sent = []
        for asg in pending:
            if asg.last_reminder_at is not None and asg.last_reminder_at > cutoff:
                continue
            asg.reminder_count = (asg.reminder_count or 0) + 1
            asg.last_reminder_at = self.now
            asg.is_sla_breached = True
            sent.append(asg.assigned_to_user_id)
        if sent:
            self.db.flush()
            self._emit(req, notify.REMINDER, sent, stage=stage.name)
            self._act(req, ActionType.REMIND.value, "system", stage_id=stage.id,
                      remarks="SLA expired", action_result=f"{len(sent)} reminder(s) sent")
        return len(sent)

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------

    def get_details(self, request_id: int) -> Dict[str, Any]:
        req = self._get(request_id)
        stage = self.db.get(Stage, req.current_stage_id) if req.current_stage_id else None
        return {
            **serialize_request(req),
            "current_stage": {"id": stage.id, "name": stage.name, "order": stage.stage_order,
                              "approver_logic": stage.approver_logic} if stage else None,
            "sla": sla_status(req.sla_due_date) if req.is_open else {"status": "closed"},
            "assignments": [serialize_assignment(a) for a in req.assignments],
            "actions": [serialize_action(a) for a in req.actions],
        }

    def get_pending_approvals_for(self, user_id: int) -> List[Dict[str, Any]]:
        rows = (
            self.db.query(StageAssignment, WorkflowRequest)
            .join(WorkflowRequest, StageAssignment.request_id == WorkflowRequest.id)
            .filter(
                StageAssignment.assigned_to_user_id == user_id,
                StageAssignment.assignment_status == AssignmentStatus.PENDING.value,
                StageAssignment.is_active.is_(True),
                StageAssignment.stage_id == WorkflowRequest.current_stage_id,
                WorkflowRequest.request_status.in_(OPEN_STATUSES),
            )
            .order_by(StageAssignment.sla_due_date.is_(None), StageAssignment.sla_due_date,
                      StageAssignment.id)
            .all()
        )
        return [
            {**serialize_assignment(a), "request": serialize_request(r),
             "sla": sla_status(a.sla_due_date)}
            for a, r in rows
        ]

    def list_requests_for_employee(self, employee_id: int, status: str | None = None) -> List[Dict[str, Any]]:
        q = self.db.query(WorkflowRequest).filter(WorkflowRequest.employee_id == employee_id)
        if status:
            q = q.filter(WorkflowRequest.request_status == status)
        return [serialize_request(r) for r in q.order_by(WorkflowRequest.id.desc()).all()]


def _iso(dt):
    return dt.isoformat() if dt else None


def serialize_request(r: WorkflowRequest) -> Dict[str, Any]:
    return {
        "id": r.id,
        "request_number": r.request_number,
        "definition_id": r.definition_id,
        "company_id": r.company_id,
        "employee_id": r.employee_id,
        "submitted_by": r.submitted_by,
        "request_data": r.request_data or {},
        "current_stage_id": r.current_stage_id,
        "current_stage_order": r.current_stage_order,
        "request_status": r.request_status,
        "overall_status": r.overall_status,
        "sla_due_date": _iso(r.sla_due_date),
        "submitted_at": _iso(r.submitted_at),
        "completed_at": _iso(r.completed_at),
    }


def serialize_assignment(a: StageAssignment) -> Dict[str, Any]:
    return {
        "id": a.id,
        "request_id": a.request_id,
        "stage_id": a.stage_id,
        "assigned_to_user_id": a.assigned_to_user_id,
        "approver_type": a.approver_type,
        "assignment_status": a.assignment_status,
        "requires_all_approval": a.requires_all_approval,
        "allow_delegation": a.allow_delegation,
        "delegated_to_user_id": a.delegated_to_user_id,
        "is_active": a.is_active,
        "sla_due_date": _iso(a.sla_due_date),
        "is_sla_breached": a.is_sla_breached,
        "reminder_count": a.reminder_count,
        "action_taken_at": _iso(a.action_taken_at),
    }


def serialize_action(a: WorkflowAction) -> Dict[str, Any]:
    return {
        "id": a.id,
        "stage_id": a.stage_id,
        "action_type": a.action_type,
        "action_by_user_id": a.action_by_user_id,
        "action_by_type": a.action_by_type,
        "approver_type": a.approver_type,
        "remarks": a.remarks,
        "previous_stage_id": a.previous_stage_id,
        "next_stage_id": a.next_stage_id,
        "action_result": a.action_result,
        "created_at": _iso(a.created_at),
    }
