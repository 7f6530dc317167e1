# hrflow/crud/definition.py
"""
Workflow definition management.

Definitions are written from a nested dict (the admin API payload and the
YAML default templates share this shape). Inside the payload, stages point
at each other by ``stage_order`` rather than by id, so the same document can
be replayed for a clone or a fresh company::

    {
        "workflow_code": "LEAVE",
        "name": "Leave approval",
        "stages": [
            {"name": "Manager", "stage_order": 1, "sla_days": 2,
             "on_timeout_action": "escalate", "escalate_to_stage_order": 2,
             "approvers": [{"approver_type": "RM",
                            "condition": {"rules": [...]}}]},
            {"name": "HR", "stage_order": 2, "approvers": [...]},
        ],
        "conditions": [{"stage_order": null, "action_type": "auto_approve", "rules": [...]}],
        "applicability": [{"dimension": "department", "target_values": "3,4"}],
    }

A stage without a ``next_stage_order`` key chains to the next stage by order;
an explicit ``null`` makes it terminal.
"""
from __future__ import annotations
import json
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from hrflow.core.database import atomic, utcnow
from hrflow.core.exceptions import DefinitionNotFound, InvalidConfiguration
from hrflow.models.request import OPEN_STATUSES, WorkflowRequest
from hrflow.models.workflow import (
    ApplicabilityRule, ApproverLogic, Condition, ConditionRule, RejectAction, Stage,
    StageApprover, StageType, TimeoutAction, WorkflowDefinition, WorkflowType,
    WorkflowVersion,
)
from hrflow.services.applicability import DIMENSION_PRIORITY, builtin_priority
from hrflow.services.approvers import RESOLVERS
from hrflow.services.conditions import compile_condition
from hrflow.utils.catalog import default_template

log = logging.getLogger("hrflow.definitions")

ADVANCED_DIMENSIONS = {"none", "employee_type", "branch", "region"}

DEFINITION_FLAGS = (
    "name", "description", "is_active", "is_default",
    "allow_self_approval", "allow_withdrawal", "send_submission_notification",
)

_STAGE_FIELDS = (
    "name", "stage_order", "stage_type", "approver_logic", "sla_days", "sla_hours",
    "on_timeout_action", "on_reject_action",
    "notify_on_assign", "notify_on_approve", "notify_on_reject", "is_active",
)
_RULE_FIELDS = (
    "rule_order", "field_source", "field_name", "field_type", "operator", "compare_value",
    "compare_value_type", "compare_field_source", "compare_field_name", "is_active",
)
_APPLICABILITY_FIELDS = (
    "dimension", "target_values", "advanced_dimension", "advanced_values",
    "is_excluded", "priority", "is_active",
)


def _choice(value: Any, allowed, what: str, default=None):
    if value is None:
        return default
    allowed_values = {a.value for a in allowed} if not isinstance(allowed, (set, frozenset)) else allowed
    if value not in allowed_values:
        raise InvalidConfiguration(f"Invalid {what} '{value}'. Must be one of {sorted(allowed_values)}.")
    return value


def _target_values(raw) -> Optional[str]:
    if raw is None or raw == "":
        return None
    if isinstance(raw, (list, tuple, set)):
        return ",".join(str(int(x)) for x in raw)
    return str(raw)


def _workflow_type(db: Session, code: str) -> WorkflowType:
    code = (code or "").strip().upper()
    wt = db.query(WorkflowType).filter(WorkflowType.code == code).first()
    if not wt:
        raise InvalidConfiguration(f"Unknown workflow type '{code}'")
    return wt


def get_definition(db: Session, definition_id: int) -> WorkflowDefinition:
    d = db.get(WorkflowDefinition, definition_id)
    if not d:
        raise DefinitionNotFound(f"Workflow definition {definition_id} not found")
    return d


def list_definitions(db: Session, company_id: int, workflow_code: Optional[str] = None,
                     include_inactive: bool = False) -> List[WorkflowDefinition]:
    q = db.query(WorkflowDefinition).filter(WorkflowDefinition.company_id == company_id)
    if workflow_code:
        q = q.join(WorkflowType, WorkflowType.id == WorkflowDefinition.workflow_type_id) \
             .filter(WorkflowType.code == workflow_code.strip().upper())
    if not include_inactive:
        q = q.filter(WorkflowDefinition.is_active.is_(True))
    return q.order_by(WorkflowDefinition.id.asc()).all()


def has_inflight_requests(db: Session, definition_id: int) -> bool:
    return db.query(WorkflowRequest.id).filter(
        WorkflowRequest.definition_id == definition_id,
        WorkflowRequest.request_status.in_(OPEN_STATUSES),
    ).first() is not None


# -------------------------- building --------------------------

def _stage_ref(by_order: Dict[int, Stage], order, what: str) -> Optional[Stage]:
    if order is None:
        return None
    stage = by_order.get(int(order))
    if stage is None:
        raise InvalidConfiguration(f"{what} points at stage_order {order}, which does not exist")
    return stage


def _build_rules(rows: List[Dict[str, Any]]) -> List[ConditionRule]:
    out = []
    for i, r in enumerate(rows or [], start=1):
        data = {k: r[k] for k in _RULE_FIELDS if k in r}
        data.setdefault("rule_order", i)
        data.setdefault("is_active", True)
        if data.get("compare_value") is not None and not isinstance(data["compare_value"], str):
            data["compare_value"] = json.dumps(data["compare_value"])
        out.append(ConditionRule(**data))
    return out


def _build_condition(definition: WorkflowDefinition, data: Dict[str, Any],
                     by_order: Dict[int, Stage], stage: Optional[Stage] = None,
                     is_guard: bool = False) -> Condition:
    action_stage = _stage_ref(by_order, data.get("action_stage_order"), "Condition action")
    else_stage = _stage_ref(by_order, data.get("else_stage_order"), "Condition else action")
    cond = Condition(
        definition=definition,
        stage_id=stage.id if stage is not None else None,
        name=data.get("name") or "",
        logic_operator=(data.get("logic_operator") or "AND").upper(),
        action_type=data.get("action_type") or "continue",
        action_stage_id=action_stage.id if action_stage else None,
        action_approver_type=data.get("action_approver_type"),
        action_custom_user_id=data.get("action_custom_user_id"),
        else_action_type=data.get("else_action_type") or "continue",
        else_stage_id=else_stage.id if else_stage else None,
        priority=int(data.get("priority", 1)),
        is_guard=is_guard,
        is_active=bool(data.get("is_active", True)),
        rules=_build_rules(data.get("rules") or []),
    )
    if cond.action_type == "move_to_stage" and action_stage is None:
        raise InvalidConfiguration(f"Condition '{cond.name}': move_to_stage needs action_stage_order")
    if cond.else_action_type == "move_to_stage" and else_stage is None:
        raise InvalidConfiguration(f"Condition '{cond.name}': else move_to_stage needs else_stage_order")
    if cond.action_type == "assign_approver" and cond.action_approver_type not in RESOLVERS:
        raise InvalidConfiguration(
            f"Condition '{cond.name}': unknown approver type '{cond.action_approver_type}'"
        )
    compile_condition(cond)
    return cond


def _build_stages(db: Session, definition: WorkflowDefinition,
                  stages: List[Dict[str, Any]]) -> Dict[int, Stage]:
    if not stages:
        raise InvalidConfiguration("A workflow definition needs at least one stage")

    by_order: Dict[int, Stage] = {}
    for s in stages:
        data = {k: s[k] for k in _STAGE_FIELDS if k in s and s[k] is not None}
        if "stage_order" not in data:
            raise InvalidConfiguration(f"Stage '{s.get('name')}' has no stage_order")
        data["stage_order"] = int(data["stage_order"])
        if data["stage_order"] in by_order:
            raise InvalidConfiguration(f"Duplicate stage_order {data['stage_order']}")
        _choice(data.get("stage_type"), StageType, "stage type")
        _choice(data.get("approver_logic"), ApproverLogic, "approver logic")
        _choice(data.get("on_timeout_action"), TimeoutAction, "timeout action")
        _choice(data.get("on_reject_action"), RejectAction, "reject action")
        stage = Stage(definition=definition, **data)
        db.add(stage)
        by_order[stage.stage_order] = stage
    # ids are needed to wire stage references
    db.flush()

    ordered = sorted(by_order)
    for s in stages:
        stage = by_order[int(s["stage_order"])]
        if "next_stage_order" in s:
            nxt = _stage_ref(by_order, s["next_stage_order"], f"Stage '{stage.name}' next stage")
        else:
            later = [o for o in ordered if o > stage.stage_order and by_order[o].is_active is not False]
            nxt = by_order[later[0]] if later else None
        stage.next_stage_on_approve_id = nxt.id if nxt else None

        esc = _stage_ref(by_order, s.get("escalate_to_stage_order"), f"Stage '{stage.name}' escalation")
        stage.escalate_to_stage_id = esc.id if esc else None
        if stage.on_timeout_action == TimeoutAction.ESCALATE.value and esc is None:
            raise InvalidConfiguration(f"Stage '{stage.name}': escalate needs escalate_to_stage_order")

        tgt = _stage_ref(by_order, s.get("reject_target_stage_order"), f"Stage '{stage.name}' reject target")
        stage.reject_target_stage_id = tgt.id if tgt else None
        if stage.on_reject_action == RejectAction.MOVE_TO_STAGE.value and tgt is None:
            raise InvalidConfiguration(f"Stage '{stage.name}': move_to_stage needs reject_target_stage_order")

        approvers = s.get("approvers") or []
        if stage.stage_type == StageType.APPROVAL.value and not approvers:
            raise InvalidConfiguration(f"Stage '{stage.name}' has no approvers")
        for i, a in enumerate(approvers, start=1):
            approver_type = _choice(a.get("approver_type"), set(RESOLVERS), "approver type")
            if approver_type is None:
                raise InvalidConfiguration(f"Stage '{stage.name}': approver without approver_type")
            guard = None
            if a.get("condition"):
                guard = _build_condition(definition, a["condition"], by_order, stage, is_guard=True)
                db.add(guard)
            stage.approvers.append(StageApprover(
                approver_type=approver_type,
                approver_order=int(a.get("approver_order", i)),
                condition=guard,
                custom_user_id=a.get("custom_user_id"),
                allow_delegation=bool(a.get("allow_delegation", False)),
                is_active=bool(a.get("is_active", True)),
            ))
    return by_order


def _build_applicability(definition: WorkflowDefinition, rows: List[Dict[str, Any]]) -> None:
    for r in rows or []:
        data = {k: r[k] for k in _APPLICABILITY_FIELDS if k in r}
        dimension = _choice(data.get("dimension"), set(DIMENSION_PRIORITY), "dimension")
        if dimension is None:
            raise InvalidConfiguration("Applicability rule without dimension")
        data["advanced_dimension"] = _choice(data.get("advanced_dimension"), ADVANCED_DIMENSIONS,
                                             "advanced dimension", default="none")
        data["target_values"] = _target_values(data.get("target_values"))
        data["advanced_values"] = _target_values(data.get("advanced_values"))
        if data.get("priority") is None:
            data["priority"] = builtin_priority(dimension)
        definition.applicability_rules.append(ApplicabilityRule(company_id=definition.company_id, **data))


def _populate(db: Session, definition: WorkflowDefinition, data: Dict[str, Any]) -> None:
    by_order = _build_stages(db, definition, data.get("stages") or [])
    for c in data.get("conditions") or []:
        stage = _stage_ref(by_order, c.get("stage_order"), f"Condition '{c.get('name', '')}'")
        db.add(_build_condition(definition, c, by_order, stage))
    _build_applicability(definition, data.get("applicability") or [])
    db.flush()


# -------------------------- snapshots --------------------------

def _condition_doc(c: Condition, order_of: Dict[int, int]) -> Dict[str, Any]:
    return {
        "name": c.name,
        "stage_order": order_of.get(c.stage_id) if c.stage_id else None,
        "logic_operator": c.logic_operator,
        "action_type": c.action_type,
        "action_stage_order": order_of.get(c.action_stage_id),
        "action_approver_type": c.action_approver_type,
        "action_custom_user_id": c.action_custom_user_id,
        "else_action_type": c.else_action_type,
        "else_stage_order": order_of.get(c.else_stage_id),
        "priority": c.priority,
        "is_active": c.is_active,
        "rules": [{k: getattr(r, k) for k in _RULE_FIELDS} for r in c.rules],
    }


def snapshot_definition(definition: WorkflowDefinition) -> Dict[str, Any]:
    """Id-free document of the definition; feeding it back to create_definition rebuilds it."""
    order_of = {s.id: s.stage_order for s in definition.stages}
    stages = []
    for s in definition.stages:
        doc = {k: getattr(s, k) for k in _STAGE_FIELDS}
        doc["next_stage_order"] = order_of.get(s.next_stage_on_approve_id)
        doc["escalate_to_stage_order"] = order_of.get(s.escalate_to_stage_id)
        doc["reject_target_stage_order"] = order_of.get(s.reject_target_stage_id)
        doc["approvers"] = [
            {
                "approver_type": a.approver_type,
                "approver_order": a.approver_order,
                "custom_user_id": a.custom_user_id,
                "allow_delegation": a.allow_delegation,
                "is_active": a.is_active,
                "condition": _condition_doc(a.condition, order_of) if a.condition else None,
            }
            for a in s.approvers
        ]
        stages.append(doc)
    return {
        "workflow_code": definition.workflow_type.code if definition.workflow_type else None,
        "code": definition.code,
        **{k: getattr(definition, k) for k in DEFINITION_FLAGS},
        "stages": stages,
        "conditions": [_condition_doc(c, order_of) for c in definition.conditions if not c.is_guard],
        "applicability": [
            {k: getattr(r, k) for k in _APPLICABILITY_FIELDS} for r in definition.applicability_rules
        ],
    }


def _record_version(db: Session, definition: WorkflowDefinition, summary: str,
                    created_by: Optional[int]) -> WorkflowVersion:
    db.refresh(definition)
    v = WorkflowVersion(
        definition_id=definition.id,
        version_number=definition.version,
        snapshot=snapshot_definition(definition),
        change_summary=summary,
        created_by=created_by,
    )
    db.add(v)
    db.flush()
    return v


# -------------------------- operations --------------------------

def create_definition(db: Session, company_id: int, data: Dict[str, Any],
                      created_by: Optional[int] = None,
                      cloned_from_id: Optional[int] = None) -> WorkflowDefinition:
    """Create a definition with its whole stage graph; nothing is written on a config error."""
    if not (data.get("name") or "").strip():
        raise InvalidConfiguration("Workflow definition name is required")
    with atomic(db):
        wt = _workflow_type(db, data.get("workflow_code"))
        d = WorkflowDefinition(
            company_id=company_id,
            workflow_type_id=wt.id,
            code=data.get("code"),
            version=1,
            cloned_from_id=cloned_from_id,
            created_by=created_by,
            **{k: data[k] for k in DEFINITION_FLAGS if data.get(k) is not None},
        )
        db.add(d)
        db.flush()
        _populate(db, d, data)
        _record_version(db, d, data.get("change_summary") or "Initial version", created_by)
    db.refresh(d)
    log.info("[definitions] created id=%s company=%s type=%s stages=%d",
             d.id, company_id, wt.code, len(d.stages))
    return d


def update_definition(db: Session, definition_id: int, changes: Dict[str, Any],
                      updated_by: Optional[int] = None,
                      change_summary: Optional[str] = None,
                      new_version: bool = False) -> WorkflowDefinition:
    """
    Update definition flags and (optionally) replace its applicability rules.

    When requests are in flight, or ``new_version`` is set, the version is
    bumped and the new state is snapshotted; otherwise the current version's
    snapshot is rewritten. The stage graph is not editable here: clone the
    definition to change stages.
    """
    if "stages" in changes or "conditions" in changes:
        raise InvalidConfiguration("Stages and conditions cannot be edited in place; clone the definition")
    with atomic(db):
        d = get_definition(db, definition_id)
        for k in DEFINITION_FLAGS:
            if k in changes and changes[k] is not None:
                setattr(d, k, changes[k])
        if "applicability" in changes:
            d.applicability_rules.clear()
            db.flush()
            _build_applicability(d, changes["applicability"] or [])
        d.updated_at = utcnow()

        bump = new_version or has_inflight_requests(db, d.id)
        if bump:
            d.version = (d.version or 1) + 1
            db.flush()
            _record_version(db, d, change_summary or f"Version {d.version}", updated_by)
        else:
            db.flush()
            db.refresh(d)
            current = next((v for v in d.versions if v.version_number == d.version), None)
            if current is None:
                _record_version(db, d, change_summary or "Updated", updated_by)
            else:
                current.snapshot = snapshot_definition(d)
                if change_summary:
                    current.change_summary = change_summary
    db.refresh(d)
    log.info("[definitions] updated id=%s version=%s bumped=%s", d.id, d.version, bump)
    return d


def clone_definition(db: Session, definition_id: int, name: Optional[str] = None,
                     company_id: Optional[int] = None,
                     created_by: Optional[int] = None) -> WorkflowDefinition:
    src = get_definition(db, definition_id)
    doc = snapshot_definition(src)
    doc["name"] = name or f"{src.name} (Copy)"
    doc["code"] = None
    doc["is_default"] = False
    doc["change_summary"] = f"Cloned from definition {src.id} v{src.version}"
    return create_definition(db, company_id or src.company_id, doc,
                             created_by=created_by, cloned_from_id=src.id)


def list_versions(db: Session, definition_id: int) -> List[WorkflowVersion]:
    get_definition(db, definition_id)
    return (
        db.query(WorkflowVersion)
        .filter(WorkflowVersion.definition_id == definition_id)
        .order_by(WorkflowVersion.version_number.asc())
        .all()
    )


def create_default_workflows(db: Session, company_id: int,
                             created_by: Optional[int] = None) -> List[WorkflowDefinition]:
    """Seed one default definition per active workflow type the company does not have yet."""
    created: List[WorkflowDefinition] = []
    types = (
        db.query(WorkflowType)
        .filter(WorkflowType.is_active.is_(True))
        .order_by(WorkflowType.display_order.asc())
        .all()
    )
    for wt in types:
        exists = db.query(WorkflowDefinition.id).filter(
            WorkflowDefinition.company_id == company_id,
            WorkflowDefinition.workflow_type_id == wt.id,
            WorkflowDefinition.is_default.is_(True),
        ).first()
        if exists:
            continue
        doc = default_template(wt.code)
        doc.update(
            workflow_code=wt.code,
            name=f"Default {wt.name} Workflow",
            code=f"DEFAULT_{wt.code}_{company_id}",
            is_default=True,
        )
        created.append(create_definition(db, company_id, doc, created_by=created_by))
    log.info("[definitions] company=%s seeded %d default workflow(s)", company_id, len(created))
    return created
