from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from hrflow.core.database import get_db
from hrflow.deps.auth import CurrentUser, get_current_user
from hrflow.models.workflow import WorkflowTypeCode
from hrflow.services.engine import WorkflowEngine, serialize_request

router = APIRouter()

# roles that may act on behalf of other employees and read any request
ADMIN_ROLES = ("admin", "hr_admin")


def _is_admin(user: CurrentUser) -> bool:
    return user.role in ADMIN_ROLES


class SubmitIn(BaseModel):
    workflow_code: WorkflowTypeCode
    request_data: Dict[str, Any] = Field(default_factory=dict)
    employee_id: Optional[int] = Field(default=None, description="Admins may submit on behalf of an employee")

class RemarksIn(BaseModel):
    remarks: Optional[str] = None

class DelegateIn(BaseModel):
    to_user_id: int
    remarks: Optional[str] = None


@router.post("/api/requests", response_model=dict, status_code=201)
def submit_request(body: SubmitIn, db: Session = Depends(get_db),
                   user: CurrentUser = Depends(get_current_user)):
    employee_id = body.employee_id or user.employee_id
    if employee_id is None:
        raise HTTPException(status_code=400, detail="employee_id is required")
    if employee_id != user.employee_id and not _is_admin(user):
        raise HTTPException(status_code=403, detail="Cannot submit for another employee")
    req = WorkflowEngine(db).submit(employee_id, body.workflow_code.value, body.request_data, user.user_id)
    return serialize_request(req)


@router.get("/api/requests/{request_id}", response_model=dict)
def get_request(request_id: int, db: Session = Depends(get_db),
                user: CurrentUser = Depends(get_current_user)):
    details = WorkflowEngine(db).get_details(request_id)
    if not _is_admin(user):
        involved = {details["submitted_by"]}
        involved.update(a["assigned_to_user_id"] for a in details["assignments"])
        involved.update(a["delegated_to_user_id"] for a in details["assignments"])
        if user.user_id not in involved and details["employee_id"] != user.employee_id:
            raise HTTPException(status_code=403, detail="Forbidden")
    return details


@router.post("/api/requests/{request_id}/approve", response_model=dict)
def approve_request(request_id: int, body: RemarksIn, db: Session = Depends(get_db),
                    user: CurrentUser = Depends(get_current_user)):
    return serialize_request(WorkflowEngine(db).approve(request_id, user.user_id, body.remarks))


@router.post("/api/requests/{request_id}/reject", response_model=dict)
def reject_request(request_id: int, body: RemarksIn, db: Session = Depends(get_db),
                   user: CurrentUser = Depends(get_current_user)):
    return serialize_request(WorkflowEngine(db).reject(request_id, user.user_id, body.remarks))


@router.post("/api/requests/{request_id}/withdraw", response_model=dict)
def withdraw_request(request_id: int, body: RemarksIn, db: Session = Depends(get_db),
                     user: CurrentUser = Depends(get_current_user)):
    return serialize_request(WorkflowEngine(db).withdraw(request_id, user.user_id, body.remarks))


@router.post("/api/requests/{request_id}/delegate", response_model=dict)
def delegate_request(request_id: int, body: DelegateIn, db: Session = Depends(get_db),
                     user: CurrentUser = Depends(get_current_user)):
    req = WorkflowEngine(db).delegate(request_id, user.user_id, body.to_user_id, body.remarks)
    return serialize_request(req)


@router.get("/api/approvals/pending", response_model=List[dict])
def pending_approvals(db: Session = Depends(get_db), user: CurrentUser = Depends(get_current_user)):
    return WorkflowEngine(db).get_pending_approvals_for(user.user_id)


@router.get("/api/employees/{employee_id}/requests", response_model=List[dict])
def employee_requests(employee_id: int, status: Optional[str] = None, db: Session = Depends(get_db),
                      user: CurrentUser = Depends(get_current_user)):
    if employee_id != user.employee_id and not _is_admin(user):
        raise HTTPException(status_code=403, detail="Forbidden")
    return WorkflowEngine(db).list_requests_for_employee(employee_id, status)
