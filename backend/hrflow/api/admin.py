from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from hrflow.core.database import get_db
from hrflow.crud import definition as definitions
from hrflow.deps.auth import CurrentUser, require_role
from hrflow.services.scheduler import run_sla_warnings, run_sweep
from hrflow.utils.runtime_config import get_notify_webhook, set_notify_webhook

router = APIRouter(prefix="/api/admin")

admin_only = require_role("admin", "hr_admin")


class ApproverOut(BaseModel):
    id: int
    approver_type: str
    approver_order: int
    custom_user_id: Optional[int] = None
    allow_delegation: bool
    condition_id: Optional[int] = None

    class Config:
        from_attributes = True

class StageOut(BaseModel):
    id: int
    name: str
    stage_order: int
    stage_type: str
    approver_logic: str
    sla_days: int
    sla_hours: int
    on_timeout_action: Optional[str] = None
    escalate_to_stage_id: Optional[int] = None
    next_stage_on_approve_id: Optional[int] = None
    on_reject_action: str
    reject_target_stage_id: Optional[int] = None
    is_active: bool
    approvers: List[ApproverOut] = []

    class Config:
        from_attributes = True

class DefinitionOut(BaseModel):
    id: int
    company_id: int
    workflow_type_id: int
    name: str
    code: Optional[str] = None
    description: Optional[str] = None
    version: int
    is_active: bool
    is_default: bool
    allow_self_approval: bool
    allow_withdrawal: bool
    send_submission_notification: bool
    cloned_from_id: Optional[int] = None
    created_at: datetime
    stages: List[StageOut] = []

    class Config:
        from_attributes = True

class VersionOut(BaseModel):
    version_number: int
    change_summary: Optional[str] = None
    created_by: Optional[int] = None
    created_at: datetime
    snapshot: Dict[str, Any]

    class Config:
        from_attributes = True


class DefinitionIn(BaseModel):
    """Nested definition document; stages reference each other by stage_order."""
    company_id: Optional[int] = None
    workflow_code: str
    name: str
    code: Optional[str] = None
    description: Optional[str] = None
    is_default: bool = False
    allow_self_approval: bool = False
    allow_withdrawal: bool = True
    send_submission_notification: bool = True
    stages: List[Dict[str, Any]]
    conditions: List[Dict[str, Any]] = []
    applicability: List[Dict[str, Any]] = []

class DefinitionUpdateIn(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    is_active: Optional[bool] = None
    is_default: Optional[bool] = None
    allow_self_approval: Optional[bool] = None
    allow_withdrawal: Optional[bool] = None
    send_submission_notification: Optional[bool] = None
    applicability: Optional[List[Dict[str, Any]]] = None
    change_summary: Optional[str] = None
    new_version: bool = False

class CloneIn(BaseModel):
    name: Optional[str] = None
    company_id: Optional[int] = None

class SweepIn(BaseModel):
    now: Optional[datetime] = Field(default=None, description="Override the clock (naive UTC)")

class WarningsIn(SweepIn):
    hours: Optional[float] = Field(default=None, gt=0)

class WebhookIn(BaseModel):
    url: Optional[str] = None


def _company(user: CurrentUser, company_id: Optional[int]) -> int:
    cid = company_id if company_id is not None else user.company_id
    if cid is None:
        raise HTTPException(status_code=400, detail="company_id is required")
    if user.role != "admin" and user.company_id is not None and cid != user.company_id:
        raise HTTPException(status_code=403, detail="Forbidden")
    return cid


def _naive_utc(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None or dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


@router.post("/definitions", response_model=DefinitionOut, status_code=201)
def create_definition(body: DefinitionIn, db: Session = Depends(get_db),
                      user: CurrentUser = Depends(admin_only)):
    data = body.model_dump(exclude={"company_id"})
    d = definitions.create_definition(db, _company(user, body.company_id), data, created_by=user.user_id)
    return DefinitionOut.model_validate(d)


@router.get("/definitions", response_model=List[DefinitionOut])
def list_definitions(company_id: Optional[int] = None, workflow_code: Optional[str] = None,
                     include_inactive: bool = False,
                     db: Session = Depends(get_db), user: CurrentUser = Depends(admin_only)):
    rows = definitions.list_definitions(db, _company(user, company_id), workflow_code, include_inactive)
    return [DefinitionOut.model_validate(d) for d in rows]


@router.get("/definitions/{definition_id}", response_model=DefinitionOut)
def get_definition(definition_id: int, db: Session = Depends(get_db),
                   user: CurrentUser = Depends(admin_only)):
    d = definitions.get_definition(db, definition_id)
    _company(user, d.company_id)
    return DefinitionOut.model_validate(d)


@router.patch("/definitions/{definition_id}", response_model=DefinitionOut)
def update_definition(definition_id: int, body: DefinitionUpdateIn, db: Session = Depends(get_db),
                      user: CurrentUser = Depends(admin_only)):
    _company(user, definitions.get_definition(db, definition_id).company_id)
    changes = body.model_dump(exclude_unset=True, exclude={"change_summary", "new_version"})
    d = definitions.update_definition(db, definition_id, changes, updated_by=user.user_id,
                                      change_summary=body.change_summary, new_version=body.new_version)
    return DefinitionOut.model_validate(d)


@router.post("/definitions/{definition_id}/clone", response_model=DefinitionOut, status_code=201)
def clone_definition(definition_id: int, body: CloneIn, db: Session = Depends(get_db),
                     user: CurrentUser = Depends(admin_only)):
    src = definitions.get_definition(db, definition_id)
    _company(user, src.company_id)
    target = _company(user, body.company_id if body.company_id is not None else src.company_id)
    d = definitions.clone_definition(db, definition_id, body.name, target, created_by=user.user_id)
    return DefinitionOut.model_validate(d)


@router.get("/definitions/{definition_id}/versions", response_model=List[VersionOut])
def definition_versions(definition_id: int, db: Session = Depends(get_db),
                        user: CurrentUser = Depends(admin_only)):
    _company(user, definitions.get_definition(db, definition_id).company_id)
    return [VersionOut.model_validate(v) for v in definitions.list_versions(db, definition_id)]


@router.post("/companies/{company_id}/defaults", response_model=List[DefinitionOut])
def seed_defaults(company_id: int, db: Session = Depends(get_db),
                  user: CurrentUser = Depends(admin_only)):
    rows = definitions.create_default_workflows(db, _company(user, company_id), created_by=user.user_id)
    return [DefinitionOut.model_validate(d) for d in rows]


@router.post("/sla/sweep", response_model=dict)
def sla_sweep(body: SweepIn, db: Session = Depends(get_db), user=Depends(require_role("admin"))):
    return run_sweep(db, now=_naive_utc(body.now)).as_dict()


@router.post("/sla/warnings", response_model=dict)
def sla_warnings(body: WarningsIn, db: Session = Depends(get_db), user=Depends(require_role("admin"))):
    kwargs = {"hours": body.hours} if body.hours is not None else {}
    return run_sla_warnings(db, now=_naive_utc(body.now), **kwargs).as_dict()


@router.get("/notify/webhook", response_model=dict)
def get_webhook(user=Depends(require_role("admin"))):
    url = get_notify_webhook()
    return {"configured": bool(url), "url": url}


@router.put("/notify/webhook", response_model=dict)
def put_webhook(body: WebhookIn, user=Depends(require_role("admin"))):
    set_notify_webhook(body.url)
    return {"configured": bool(get_notify_webhook())}
