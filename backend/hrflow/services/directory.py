"""
Organisation lookups the workflow engine needs.

The HR directory itself lives elsewhere; the engine only talks to the two
small interfaces below. ``SqlEmployeeDirectory`` and ``SqlLeaveBalanceProvider``
read the local ``employees`` / ``leave_balances`` mirror tables.
"""
from __future__ import annotations
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from hrflow.core.exceptions import EmployeeNotFound
from hrflow.models.employee import Employee, LeaveBalance

SNAPSHOT_FIELDS = (
    "id", "user_id", "company_id", "entity_id", "department_id", "sub_department_id",
    "designation_id", "level_id", "grade_id", "location_id", "employee_type_id",
    "branch_id", "region_id", "reporting_manager_id", "secondary_reporting_manager_id",
    "first_name", "last_name", "email", "is_active",
)


class EmployeeDirectory:
    def get(self, employee_id: int) -> Employee:
        raise NotImplementedError

    def get_by_user(self, user_id: int) -> Optional[Employee]:
        raise NotImplementedError

    def manager_of(self, employee: Employee) -> Optional[Employee]:
        raise NotImplementedError

    def secondary_manager_of(self, employee: Employee) -> Optional[Employee]:
        raise NotImplementedError

    def department_head(self, employee: Employee) -> Optional[Employee]:
        raise NotImplementedError

    def functional_head(self, employee: Employee) -> Optional[Employee]:
        raise NotImplementedError

    def hr_admin(self, company_id: int) -> Optional[Employee]:
        raise NotImplementedError

    def sub_admin(self, company_id: int) -> Optional[Employee]:
        raise NotImplementedError


class LeaveBalanceProvider:
    def get(self, employee_id: int, leave_type_id: int) -> Optional[Dict[str, Any]]:
        raise NotImplementedError


class SqlEmployeeDirectory(EmployeeDirectory):
    def __init__(self, db: Session):
        self.db = db

    def get(self, employee_id: int) -> Employee:
        emp = self.db.get(Employee, employee_id)
        if emp is None:
            raise EmployeeNotFound(f"Employee {employee_id} not found", employee_id=employee_id)
        return emp

    def get_by_user(self, user_id: int) -> Optional[Employee]:
        return (
            self.db.query(Employee)
            .filter(Employee.user_id == user_id, Employee.is_active.is_(True))
            .first()
        )

    def manager_of(self, employee: Employee) -> Optional[Employee]:
        if not employee.reporting_manager_id:
            return None
        return self.db.get(Employee, employee.reporting_manager_id)

    def secondary_manager_of(self, employee: Employee) -> Optional[Employee]:
        if not employee.secondary_reporting_manager_id:
            return None
        return self.db.get(Employee, employee.secondary_reporting_manager_id)

    def _first_flagged(self, flag, **filters) -> Optional[Employee]:
        q = self.db.query(Employee).filter(flag.is_(True), Employee.is_active.is_(True))
        for col, value in filters.items():
            q = q.filter(getattr(Employee, col) == value)
        return q.order_by(Employee.id).first()

    def department_head(self, employee: Employee) -> Optional[Employee]:
        if not employee.department_id:
            return None
        return self._first_flagged(Employee.is_hod, department_id=employee.department_id)

    def functional_head(self, employee: Employee) -> Optional[Employee]:
        return self._first_flagged(
            Employee.is_functional_head,
            company_id=employee.company_id,
            department_id=employee.department_id,
        )

    def hr_admin(self, company_id: int) -> Optional[Employee]:
        return self._first_flagged(Employee.is_hr_admin, company_id=company_id)

    def sub_admin(self, company_id: int) -> Optional[Employee]:
        return self._first_flagged(Employee.is_sub_admin, company_id=company_id)


class SqlLeaveBalanceProvider(LeaveBalanceProvider):
    def __init__(self, db: Session):
        self.db = db

    def get(self, employee_id: int, leave_type_id: int) -> Optional[Dict[str, Any]]:
        row = (
            self.db.query(LeaveBalance)
            .filter(LeaveBalance.employee_id == employee_id, LeaveBalance.leave_type_id == leave_type_id)
            .one_or_none()
        )
        if row is None:
            return None
        return {"leave_type_id": row.leave_type_id, "available_balance": row.available_balance}


def employee_snapshot(employee: Employee) -> Dict[str, Any]:
    snap = {f: getattr(employee, f, None) for f in SNAPSHOT_FIELDS}
    snap["full_name"] = employee.full_name
    return snap
