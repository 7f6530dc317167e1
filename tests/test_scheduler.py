from datetime import timedelta

import pytest
from sqlalchemy.orm import sessionmaker

from conftest import T0, build_org, stage
from hrflow.core.database import Base, make_engine
from hrflow.core.exceptions import ConcurrentTransitionError
from hrflow.crud.definition import create_definition
from hrflow.models.request import StageAssignment, WorkflowAction, WorkflowRequest
from hrflow.models.workflow import Stage
from hrflow.services import notifications as notify
from hrflow.services import scheduler
from hrflow.services.engine import WorkflowEngine
from hrflow.services.scheduler import flag_breached, run_sla_warnings, run_sweep
from hrflow.utils.catalog import sync_workflow_types


def _assignments(db, req):
    return db.query(StageAssignment).filter_by(request_id=req.id).order_by(StageAssignment.id).all()


def _actions(db, req):
    rows = db.query(WorkflowAction).filter_by(request_id=req.id).order_by(WorkflowAction.id).all()
    return [a.action_type for a in rows]


def test_nothing_due_yet(db, wf, org, make_definition):
    make_definition(stage(1, "RM", sla_hours=2, on_timeout_action="auto_reject"))
    wf.submit(org.emp.id, "LEAVE", {}, 100, now=T0)

    result = run_sweep(db, now=T0 + timedelta(hours=1))

    assert result.checked == 0
    assert result.breached_flagged == 0


def test_timeout_auto_approve_moves_to_next_stage(db, wf, org, make_definition, gateway):
    d = make_definition(
        stage(1, "RM", sla_hours=2, on_timeout_action="auto_approve"),
        stage(2, "HR_ADMIN", sla_days=1),
    )
    req = wf.submit(org.emp.id, "LEAVE", {}, 100, now=T0)
    now = T0 + timedelta(hours=3)

    result = run_sweep(db, now=now)

    assert result.auto_approved == 1
    assert result.breached_flagged == 1
    db.refresh(req)
    assert req.current_stage_id == d.stages[1].id
    assert req.sla_due_date == now + timedelta(days=1)
    first, second = _assignments(db, req)
    assert (first.assignment_status, first.is_sla_breached) == ("expired", True)
    assert (second.assigned_to_user_id, second.assignment_status) == (900, "pending")
    assert _actions(db, req) == ["submit", "auto_approve"]
    assert gateway.of(notify.ASSIGNED)[-1].recipients == [900]


def test_timeout_auto_reject_finalizes_once(db, wf, org, make_definition):
    make_definition(stage(1, "RM", sla_days=1, on_timeout_action="auto_reject"))
    req = wf.submit(org.emp.id, "LEAVE", {}, 100, now=T0)

    result = run_sweep(db, now=T0 + timedelta(days=2))
    again = run_sweep(db, now=T0 + timedelta(days=3))

    assert result.auto_rejected == 1
    assert again.checked == 0
    db.refresh(req)
    assert req.request_status == "auto_rejected"
    assert req.overall_status == "rejected"
    assert _actions(db, req) == ["submit", "auto_reject"]


def test_timeout_escalates_to_target_stage(db, wf, org, make_definition, gateway):
    d = make_definition(
        stage(1, "RM", sla_days=1, on_timeout_action="escalate",
              escalate_to_stage_order=2, next_stage_order=None),
        stage(2, "HR_ADMIN", sla_days=1),
    )
    req = wf.submit(org.emp.id, "LEAVE", {}, 100, now=T0)

    result = run_sweep(db, now=T0 + timedelta(days=1, hours=1))

    assert result.escalated == 1
    db.refresh(req)
    assert req.current_stage_id == d.stages[1].id
    assert [a.assigned_to_user_id for a in _assignments(db, req) if a.assignment_status == "pending"] == [900]
    assert gateway.of(notify.ESCALATED)[0].recipients == [100]

    wf.approve(req.id, 900)
    db.refresh(req)
    assert req.request_status == "approved"


def test_escalation_without_target_is_skipped(db, wf, org, make_definition):
    d = make_definition(
        stage(1, "RM", sla_days=1, on_timeout_action="escalate", escalate_to_stage_order=2),
        stage(2, "HR_ADMIN"),
    )
    d.stages[0].escalate_to_stage_id = None
    db.commit()
    req = wf.submit(org.emp.id, "LEAVE", {}, 100, now=T0)

    result = run_sweep(db, now=T0 + timedelta(days=2))

    assert (result.checked, result.skipped, result.escalated) == (1, 1, 0)
    db.refresh(req)
    assert req.request_status == "pending"


def test_remind_is_throttled(db, wf, org, make_definition, gateway):
    make_definition(stage(1, "RM", sla_hours=1, on_timeout_action="remind"))
    req = wf.submit(org.emp.id, "LEAVE", {}, 100, now=T0)

    first = run_sweep(db, now=T0 + timedelta(hours=2))
    soon = run_sweep(db, now=T0 + timedelta(hours=3))
    later = run_sweep(db, now=T0 + timedelta(hours=27))

    assert (first.reminded, soon.reminded, later.reminded) == (1, 0, 1)
    assert soon.skipped == 1
    assert [e.recipients for e in gateway.of(notify.REMINDER)] == [[600], [600]]
    asg = _assignments(db, req)[0]
    assert asg.reminder_count == 2
    assert asg.assignment_status == "pending"
    db.refresh(req)
    assert req.request_status == "pending"


def test_breach_flag_without_timeout_action(db, wf, org, make_definition):
    make_definition(stage(1, "RM", sla_days=1))
    req = wf.submit(org.emp.id, "LEAVE", {}, 100, now=T0)

    result = run_sweep(db, now=T0 + timedelta(days=2))

    assert (result.checked, result.breached_flagged) == (0, 1)
    asg = _assignments(db, req)[0]
    assert asg.is_sla_breached is True
    assert asg.assignment_status == "pending"
    assert flag_breached(db, T0 + timedelta(days=3)) == 0


def test_sla_warnings_notify_pending_approvers(db, wf, org, make_definition, gateway):
    make_definition(stage(1, "RM", "SECONDARY_RM", sla_hours=3, approver_logic="ALL"))
    req = wf.submit(org.emp.id, "LEAVE", {}, 100, now=T0)
    wf.approve(req.id, 650)

    result = run_sla_warnings(db, now=T0 + timedelta(hours=1), hours=4)
    late = run_sla_warnings(db, now=T0 + timedelta(hours=5), hours=4)

    assert (result.checked, result.warned, result.recipients) == (1, 1, 1)
    assert late.warned == 0
    warning = gateway.of(notify.SLA_WARNING)[0]
    assert warning.recipients == [600]
    assert warning.payload["hours_left"] == 2.0


def test_sweep_loses_race_with_human_approval(tmp_path, gateway, monkeypatch):
    eng = make_engine(f"sqlite:///{tmp_path / 'sweep_race.db'}")
    Base.metadata.create_all(bind=eng)
    Session = sessionmaker(autocommit=False, autoflush=False, bind=eng)

    setup = Session()
    sync_workflow_types(setup)
    org = build_org(setup)
    create_definition(setup, 1, {
        "workflow_code": "LEAVE", "name": "race",
        "stages": [stage(1, "RM", sla_hours=2, on_timeout_action="auto_approve")],
        "applicability": [{"dimension": "company"}],
    })
    req_id = WorkflowEngine(setup).submit(org.emp.id, "LEAVE", {}, 100, now=T0).id
    setup.close()
    now = T0 + timedelta(hours=3)

    sweeper, human = Session(), Session()
    try:
        # the sweep has already picked the request and holds it as still pending
        due = scheduler.overdue_request_ids(sweeper, now)
        assert due == [req_id]
        held = sweeper.get(WorkflowRequest, req_id)

        WorkflowEngine(human).approve(req_id, 600)
        human.close()

        engine = WorkflowEngine(sweeper)
        with pytest.raises(ConcurrentTransitionError):
            with engine.transition(now):
                engine.timeout_approve(held, sweeper.get(Stage, held.current_stage_id))

        monkeypatch.setattr(scheduler, "overdue_request_ids", lambda db, at: due)
        result = run_sweep(sweeper, now=now, engine=engine)
        assert (result.skipped, result.auto_approved, result.errors) == (1, 0, [])
    finally:
        human.close()
        sweeper.close()

    check = Session()
    try:
        req = check.get(WorkflowRequest, req_id)
        assert req.request_status == "approved"
        assert _actions(check, req) == ["submit", "approve"]
    finally:
        check.close()
        eng.dispose()
