"""
Turn a stage's configured approver tokens into concrete users.

Each ``ApproverType`` has one resolver function registered in ``RESOLVERS``.
A resolver that cannot follow its edge of the org graph raises
``ApproverLookupFailed``; the stage-level loop logs and drops that entry and
only fails when nobody is left.
"""
from __future__ import annotations
import enum
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from hrflow.core.exceptions import ApproverLookupFailed, InvalidConfiguration, NoApproversResolved
from hrflow.models.employee import Employee
from hrflow.models.workflow import Stage, StageApprover
from hrflow.services.conditions import compile_condition
from hrflow.services.directory import EmployeeDirectory

log = logging.getLogger("hrflow.approvers")


class ApproverType(str, enum.Enum):
    RM = "RM"
    RM_OF_RM = "RM_OF_RM"
    HOD = "HOD"
    FUNCTIONAL_HEAD = "FUNCTIONAL_HEAD"
    HR_ADMIN = "HR_ADMIN"
    SUB_ADMIN = "SUB_ADMIN"
    SECONDARY_RM = "SECONDARY_RM"
    SELF = "SELF"
    CUSTOM_USER = "CUSTOM_USER"
    AUTO_APPROVE = "AUTO_APPROVE"


@dataclass
class ResolvedApprover:
    user_id: Optional[int]
    approver_type: str
    order: int
    allow_delegation: bool = False
    name: Optional[str] = None
    email: Optional[str] = None

    @property
    def is_auto(self) -> bool:
        return self.approver_type == ApproverType.AUTO_APPROVE.value


Resolver = Callable[[EmployeeDirectory, Employee, Optional[int]], Optional[Employee]]


def _require(person: Optional[Employee], what: str) -> Employee:
    if person is None:
        raise ApproverLookupFailed(f"No {what} configured")
    if not person.user_id:
        raise ApproverLookupFailed(f"{what} (employee {person.id}) has no user account")
    return person


def _rm(directory, employee, _custom):
    return _require(directory.manager_of(employee), "reporting manager")


def _rm_of_rm(directory, employee, _custom):
    rm = directory.manager_of(employee)
    if rm is None:
        raise ApproverLookupFailed("No reporting manager configured")
    return _require(directory.manager_of(rm), "manager of reporting manager")


def _hod(directory, employee, _custom):
    return _require(directory.department_head(employee), "head of department")


def _functional_head(directory, employee, _custom):
    return _require(directory.functional_head(employee), "functional head")


def _hr_admin(directory, employee, _custom):
    return _require(directory.hr_admin(employee.company_id), "HR admin")


def _sub_admin(directory, employee, _custom):
    return _require(directory.sub_admin(employee.company_id), "sub admin")


def _secondary_rm(directory, employee, _custom):
    return _require(directory.secondary_manager_of(employee), "secondary reporting manager")


def _self(directory, employee, _custom):
    return _require(employee, "employee")


def _custom_user(directory, employee, custom_user_id):
    if not custom_user_id:
        raise ApproverLookupFailed("CUSTOM_USER approver without custom_user_id")
    return _require(directory.get_by_user(custom_user_id), f"user {custom_user_id}")


def _auto(directory, employee, _custom):
    return None


RESOLVERS: Dict[str, Resolver] = {
    ApproverType.RM.value: _rm,
    ApproverType.RM_OF_RM.value: _rm_of_rm,
    ApproverType.HOD.value: _hod,
    ApproverType.FUNCTIONAL_HEAD.value: _functional_head,
    ApproverType.HR_ADMIN.value: _hr_admin,
    ApproverType.SUB_ADMIN.value: _sub_admin,
    ApproverType.SECONDARY_RM.value: _secondary_rm,
    ApproverType.SELF.value: _self,
    ApproverType.CUSTOM_USER.value: _custom_user,
    ApproverType.AUTO_APPROVE.value: _auto,
}


def resolve_one(directory: EmployeeDirectory, employee: Employee, approver_type: str,
                order: int = 1, allow_delegation: bool = False,
                custom_user_id: Optional[int] = None) -> ResolvedApprover:
    fn = RESOLVERS.get(approver_type)
    if fn is None:
        raise InvalidConfiguration(f"Unknown approver type '{approver_type}'")
    person = fn(directory, employee, custom_user_id)
    if person is None:
        return ResolvedApprover(None, approver_type, order, False, "System (Auto Approve)")
    return ResolvedApprover(person.user_id, approver_type, order, bool(allow_delegation),
                            person.full_name, person.email)


def _guard_passes(cfg: StageApprover, context: Dict[str, Any]) -> bool:
    if cfg.condition is None:
        return True
    return compile_condition(cfg.condition).rules_match(context)


def resolve_stage_approvers(
    directory: EmployeeDirectory,
    stage: Stage,
    employee: Employee,
    context: Dict[str, Any],
    allow_self_approval: bool = False,
    extra: Optional[ResolvedApprover] = None,
) -> List[ResolvedApprover]:
    """
    Resolve every active StageApprover of ``stage`` (in approver_order) for
    ``employee``. ``extra`` is appended after the configured entries, used by
    stage conditions that assign an additional approver.
    """
    out: List[ResolvedApprover] = []
    seen: set = set()

    def _add(r: ResolvedApprover) -> None:
        key = "auto" if r.is_auto else r.user_id
        if key in seen:
            return
        if (not allow_self_approval and not r.is_auto
                and r.approver_type != ApproverType.SELF.value
                and employee.user_id and r.user_id == employee.user_id):
            log.info("[approvers] stage=%s dropped %s: requester cannot approve own request",
                     stage.id, r.approver_type)
            return
        seen.add(key)
        out.append(r)

    configured = sorted((a for a in stage.approvers if a.is_active), key=lambda a: (a.approver_order, a.id or 0))
    for cfg in configured:
        if not _guard_passes(cfg, context):
            log.debug("[approvers] stage=%s skipped %s: guard not matched", stage.id, cfg.approver_type)
            continue
        try:
            _add(resolve_one(directory, employee, cfg.approver_type, cfg.approver_order,
                             cfg.allow_delegation, cfg.custom_user_id))
        except ApproverLookupFailed as exc:
            log.warning("[approvers] stage=%s emp=%s %s lookup failed: %s",
                        stage.id, employee.id, cfg.approver_type, exc)

    if extra is not None:
        _add(extra)

    if not out:
        raise NoApproversResolved(
            f"No approvers could be resolved for stage '{stage.name}'",
            stage_id=stage.id, employee_id=employee.id,
        )
    log.info("[approvers] stage=%s resolved %d approver(s)", stage.id, len(out))
    return out
