"""
Pick the one workflow definition that applies to an employee.

Every active, matching, non-excluded applicability rule nominates its
definition at the rule's priority (lower wins). Excluded rules never
nominate; one that targets the employee vetoes its definition instead.
Rules are visited newest first, so among equal priorities the most recently
created rule keeps its nomination. A definition without rules that is flagged
``is_default`` is the company-wide fallback.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Set

from sqlalchemy.orm import Session, selectinload

from hrflow.core.exceptions import NoApplicableDefinition, NoDefinitionConfigured
from hrflow.models.employee import Employee
from hrflow.models.workflow import ApplicabilityRule, WorkflowDefinition, WorkflowType

log = logging.getLogger("hrflow.applicability")

DIMENSION_PRIORITY = {
    "employee": 1,
    "sub_department": 2,
    "department": 3,
    "designation": 4,
    "level": 5,
    "location": 6,
    "entity": 7,
    "company": 8,
    "grade": 9,
}
UNKNOWN_PRIORITY = 999
DEFAULT_PRIORITY = 1000

# dimension -> employee attribute holding the id to test
_PRIMARY_ATTR = {
    "employee": "id",
    "sub_department": "sub_department_id",
    "department": "department_id",
    "designation": "designation_id",
    "level": "level_id",
    "location": "location_id",
    "entity": "entity_id",
    "company": "company_id",
    "grade": "grade_id",
}
_ADVANCED_ATTR = {
    "employee_type": "employee_type_id",
    "branch": "branch_id",
    "region": "region_id",
}


@dataclass
class Match:
    definition: WorkflowDefinition
    priority: int
    matched_by: str
    rule_id: Optional[int] = None


def builtin_priority(dimension: str) -> int:
    return DIMENSION_PRIORITY.get(dimension, UNKNOWN_PRIORITY)


def rule_priority(rule: ApplicabilityRule) -> int:
    return rule.priority if rule.priority is not None else builtin_priority(rule.dimension)


def parse_ids(values: str | None) -> Set[int]:
    out: Set[int] = set()
    for part in (values or "").split(","):
        part = part.strip()
        if part.lstrip("-").isdigit():
            out.add(int(part))
    return out


def _in_list(values: str | None, employee_value) -> bool:
    if employee_value is None:
        return False
    return int(employee_value) in parse_ids(values)


def targets_employee(rule: ApplicabilityRule, employee: Employee) -> bool:
    """Primary (and, when configured, advanced) membership test, before exclusion."""
    attr = _PRIMARY_ATTR.get(rule.dimension)
    if attr is None:
        return False
    if rule.dimension == "company" and not (rule.target_values or "").strip():
        primary = rule.company_id == employee.company_id
    else:
        primary = _in_list(rule.target_values, getattr(employee, attr, None))
    if not primary:
        return False

    adv = (rule.advanced_dimension or "none").strip()
    if adv == "none":
        return True
    adv_attr = _ADVANCED_ATTR.get(adv)
    if adv_attr is None:
        return False
    return _in_list(rule.advanced_values, getattr(employee, adv_attr, None))


def rule_matches(rule: ApplicabilityRule, employee: Employee) -> bool:
    """True when the rule nominates its definition for this employee."""
    return not rule.is_excluded and targets_employee(rule, employee)


def _newest_first(rules: Iterable[ApplicabilityRule]) -> List[ApplicabilityRule]:
    return sorted(
        (r for r in rules if r.is_active),
        key=lambda r: (r.created_at is not None, r.created_at, r.id or 0),
        reverse=True,
    )


def _vetoed(definition: WorkflowDefinition, employee: Employee) -> bool:
    return any(
        r.is_active and r.is_excluded and targets_employee(r, employee)
        for r in definition.applicability_rules
    )


def pick(definitions: List[WorkflowDefinition], employee: Employee) -> Optional[Match]:
    """Pure selection over already-loaded definitions; None when nothing applies."""
    best: Optional[Match] = None
    vetoed = {d.id for d in definitions if _vetoed(d, employee)}

    all_rules = [r for d in definitions if d.id not in vetoed for r in d.applicability_rules]
    for rule in _newest_first(all_rules):
        if not rule_matches(rule, employee):
            continue
        prio = rule_priority(rule)
        # strict "<" keeps the newest rule among equal priorities
        if best is None or prio < best.priority:
            best = Match(rule.definition, prio, rule.dimension, rule.id)

    if best is None:
        defaults = [
            d for d in definitions
            if d.is_default and d.id not in vetoed
            and not any(r.is_active for r in d.applicability_rules)
        ]
        if defaults:
            newest = max(defaults, key=lambda d: (d.created_at is not None, d.created_at, d.id or 0))
            best = Match(newest, DEFAULT_PRIORITY, "default")
    return best


def load_definitions(db: Session, company_id: int, workflow_type_code: str) -> List[WorkflowDefinition]:
    return (
        db.query(WorkflowDefinition)
        .join(WorkflowType, WorkflowDefinition.workflow_type_id == WorkflowType.id)
        .options(selectinload(WorkflowDefinition.applicability_rules))
        .filter(
            WorkflowDefinition.company_id == company_id,
            WorkflowDefinition.is_active.is_(True),
            WorkflowType.code == str(workflow_type_code),
        )
        .order_by(WorkflowDefinition.id)
        .all()
    )


def resolve(db: Session, employee: Employee, workflow_type_code: str) -> WorkflowDefinition:
    code = getattr(workflow_type_code, "value", workflow_type_code)
    definitions = load_definitions(db, employee.company_id, code)
    if not definitions:
        raise NoDefinitionConfigured(
            f"No {code} workflow configured for company {employee.company_id}",
            company_id=employee.company_id, workflow_code=code,
        )

    match = pick(definitions, employee)
    if match is None:
        raise NoApplicableDefinition(
            f"No {code} workflow applies to employee {employee.id}",
            employee_id=employee.id, workflow_code=code,
        )
    log.info("[applicability] emp=%s type=%s -> definition=%s (by %s, prio %s)",
             employee.id, code, match.definition.id, match.matched_by, match.priority)
    return match.definition


def is_applicable(definition: WorkflowDefinition, employee: Employee) -> bool:
    if definition.company_id != employee.company_id or _vetoed(definition, employee):
        return False
    active = [r for r in definition.applicability_rules if r.is_active]
    if not active:
        return bool(definition.is_default)
    return any(rule_matches(r, employee) for r in active)


def applicable_employee_ids(db: Session, definition: WorkflowDefinition) -> List[int]:
    employees = (
        db.query(Employee)
        .filter(Employee.company_id == definition.company_id, Employee.is_active.is_(True))
        .order_by(Employee.id)
        .all()
    )
    return [e.id for e in employees if is_applicable(definition, e)]
