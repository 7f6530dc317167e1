import pytest

from conftest import T0, rule, stage
from hrflow.core.exceptions import DefinitionNotFound, InvalidConfiguration
from hrflow.crud import definition as definitions
from hrflow.models.workflow import Condition, Stage, WorkflowDefinition


def _leave(**overrides):
    doc = {
        "workflow_code": "LEAVE",
        "name": "Leave approval",
        "stages": [
            stage(1, {"approver_type": "RM", "allow_delegation": True}, sla_days=2,
                  on_timeout_action="escalate", escalate_to_stage_order=3),
            stage(2, "HOD", {"approver_type": "HR_ADMIN", "condition": {
                "name": "long", "rules": [rule("request", "duration", ">", "5", field_type="number")],
            }}, approver_logic="ALL", on_reject_action="send_back"),
            stage(3, "HR_ADMIN", on_reject_action="move_to_stage", reject_target_stage_order=1),
        ],
        "conditions": [
            {"name": "tiny", "action_type": "auto_approve",
             "rules": [rule("request", "duration", "<", "0.5", field_type="number")]},
            {"name": "skip hod", "stage_order": 2, "action_type": "skip_stage",
             "rules": [rule("employee", "department_id", "IN", [30, 40], field_type="number")]},
        ],
        "applicability": [{"dimension": "department", "target_values": [10, 20]}],
    }
    doc.update(overrides)
    return doc


def test_create_wires_stage_graph(db, org):
    d = definitions.create_definition(db, 1, _leave(), created_by=900)

    s1, s2, s3 = d.stages
    assert [s.stage_order for s in d.stages] == [1, 2, 3]
    assert s1.next_stage_on_approve_id == s2.id
    assert s2.next_stage_on_approve_id == s3.id
    assert s3.next_stage_on_approve_id is None
    assert s1.escalate_to_stage_id == s3.id
    assert s3.reject_target_stage_id == s1.id
    assert s1.approvers[0].allow_delegation is True
    guard = s2.approvers[1].condition
    assert guard.is_guard is True and guard.stage_id == s2.id

    rules = d.applicability_rules
    assert [(r.dimension, r.target_values, r.priority) for r in rules] == [("department", "10,20", 3)]
    stage_rule = [c for c in d.conditions if c.name == "skip hod"][0].rules[0]
    assert stage_rule.compare_value == "[30, 40]"

    versions = definitions.list_versions(db, d.id)
    assert [(v.version_number, v.change_summary, v.created_by) for v in versions] == [(1, "Initial version", 900)]


@pytest.mark.parametrize("broken", [
    {"name": "  "},
    {"workflow_code": "PAYROLL"},
    {"stages": []},
    {"stages": [stage(1, "RM"), stage(1, "HOD")]},
    {"stages": [stage(1)]},
    {"stages": [stage(1, "MANAGER")]},
    {"stages": [stage(1, "RM", approver_logic="MOST")]},
    {"stages": [stage(1, "RM", on_timeout_action="escalate")]},
    {"stages": [stage(1, "RM", on_reject_action="move_to_stage")]},
    {"stages": [stage(1, "RM", next_stage_order=7)]},
    {"conditions": [{"stage_order": 9, "action_type": "continue", "rules": []}]},
    {"conditions": [{"action_type": "move_to_stage", "rules": []}]},
    {"conditions": [{"action_type": "assign_approver", "action_approver_type": "BOSS", "rules": []}]},
    {"conditions": [{"action_type": "auto_reject", "rules": [rule("request", "x", "LIKE", "a")]}]},
    {"applicability": [{"dimension": "planet"}]},
    {"applicability": [{"dimension": "company", "advanced_dimension": "shift"}]},
])
def test_invalid_documents_write_nothing(db, org, broken):
    with pytest.raises(InvalidConfiguration):
        definitions.create_definition(db, 1, _leave(**broken))

    assert db.query(WorkflowDefinition).count() == 0
    assert db.query(Stage).count() == 0
    assert db.query(Condition).count() == 0


def test_notify_only_stage_needs_no_approvers(db, org):
    d = definitions.create_definition(db, 1, _leave(stages=[
        stage(1, stage_type="notify_only"), stage(2, "RM"),
    ]))
    assert d.stages[0].approvers == []


def test_snapshot_rebuilds_through_clone(db, org):
    src = definitions.create_definition(db, 1, _leave())

    copy = definitions.clone_definition(db, src.id)

    assert copy.name == "Leave approval (Copy)"
    assert copy.cloned_from_id == src.id
    assert copy.is_default is False
    assert copy.version == 1
    original = definitions.snapshot_definition(src)
    cloned = definitions.snapshot_definition(copy)
    for key in ("stages", "conditions", "applicability", "workflow_code", "allow_withdrawal"):
        assert cloned[key] == original[key]
    assert "id" not in original["stages"][0]
    assert definitions.list_versions(db, copy.id)[0].change_summary == f"Cloned from definition {src.id} v1"


def test_clone_into_another_company(db, org):
    src = definitions.create_definition(db, 1, _leave())

    copy = definitions.clone_definition(db, src.id, name="Leave (Pune)", company_id=2)

    assert (copy.company_id, copy.name) == (2, "Leave (Pune)")
    assert {r.company_id for r in copy.applicability_rules} == {2}


def test_update_without_inflight_rewrites_current_version(db, org):
    d = definitions.create_definition(db, 1, _leave())

    d = definitions.update_definition(db, d.id, {"allow_withdrawal": False}, updated_by=900)

    assert d.version == 1
    versions = definitions.list_versions(db, d.id)
    assert len(versions) == 1
    assert versions[0].snapshot["allow_withdrawal"] is False


def test_update_with_inflight_requests_bumps_version(db, wf, org):
    d = definitions.create_definition(db, 1, _leave())
    req = wf.submit(org.emp.id, "LEAVE", {"duration": 1}, 100, now=T0)

    d = definitions.update_definition(
        db, d.id, {"applicability": [{"dimension": "company"}]},
        updated_by=900, change_summary="open to everyone",
    )

    assert d.version == 2
    assert [r.dimension for r in d.applicability_rules] == ["company"]
    versions = definitions.list_versions(db, d.id)
    assert [(v.version_number, v.change_summary) for v in versions] == [(1, "Initial version"),
                                                                       (2, "open to everyone")]
    assert versions[0].snapshot["applicability"][0]["dimension"] == "department"
    # the running request still follows its stages
    wf.approve(req.id, 600)
    db.refresh(req)
    assert req.current_stage_order == 2


def test_forced_new_version(db, org):
    d = definitions.create_definition(db, 1, _leave())

    d = definitions.update_definition(db, d.id, {"description": "v2"}, new_version=True)

    assert d.version == 2
    assert definitions.list_versions(db, d.id)[-1].change_summary == "Version 2"


def test_stage_edits_are_refused(db, org):
    d = definitions.create_definition(db, 1, _leave())

    with pytest.raises(InvalidConfiguration):
        definitions.update_definition(db, d.id, {"stages": []})
    with pytest.raises(DefinitionNotFound):
        definitions.update_definition(db, 999, {"name": "x"})


def test_list_definitions_filters(db, org):
    leave = definitions.create_definition(db, 1, _leave())
    wfh = definitions.create_definition(db, 1, _leave(workflow_code="WFH", name="WFH"))
    definitions.create_definition(db, 2, _leave(name="other company"))
    definitions.update_definition(db, wfh.id, {"is_active": False})

    assert [d.id for d in definitions.list_definitions(db, 1)] == [leave.id]
    assert [d.id for d in definitions.list_definitions(db, 1, include_inactive=True)] == [leave.id, wfh.id]
    assert definitions.list_definitions(db, 1, workflow_code="wfh") == []


def test_create_default_workflows_from_catalog(db, wf, org):
    created = definitions.create_default_workflows(db, 1, created_by=900)

    by_code = {d.workflow_type.code: d for d in created}
    assert len(created) == 7
    leave = by_code["LEAVE"]
    assert leave.name == "Default Leave Workflow"
    assert leave.code == "DEFAULT_LEAVE_1"
    assert leave.is_default is True
    assert leave.stages[0].escalate_to_stage_id == leave.stages[1].id
    assert leave.stages[0].next_stage_on_approve_id is None
    assert by_code["SHIFT_SWAP"].stages[0].approver_logic == "ALL"
    assert [a.approver_type for a in by_code["WFH"].stages[0].approvers] == ["RM"]

    # seeding twice adds nothing
    assert definitions.create_default_workflows(db, 1) == []

    req = wf.submit(org.emp.id, "WFH", {}, 100, now=T0)
    assert req.definition_id == by_code["WFH"].id
