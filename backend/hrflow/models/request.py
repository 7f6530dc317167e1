from __future__ import annotations
import enum
from sqlalchemy import (
    Boolean, Column, DateTime, ForeignKey, Integer, JSON, String, Text, UniqueConstraint,
)
from sqlalchemy.orm import relationship
from hrflow.core.database import Base, utcnow


class RequestStatus(str, enum.Enum):
    SUBMITTED = "submitted"
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    APPROVED = "approved"
    REJECTED = "rejected"
    WITHDRAWN = "withdrawn"
    AUTO_APPROVED = "auto_approved"
    AUTO_REJECTED = "auto_rejected"


OPEN_STATUSES = (RequestStatus.PENDING.value, RequestStatus.IN_PROGRESS.value)


class OverallStatus(str, enum.Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    REJECTED = "rejected"
    WITHDRAWN = "withdrawn"


class AssignmentStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    DELEGATED = "delegated"
    SKIPPED = "skipped"
    EXPIRED = "expired"
    WITHDRAWN = "withdrawn"


class ActionType(str, enum.Enum):
    SUBMIT = "submit"
    APPROVE = "approve"
    REJECT = "reject"
    WITHDRAW = "withdraw"
    AUTO_APPROVE = "auto_approve"
    AUTO_REJECT = "auto_reject"
    ESCALATE = "escalate"
    DELEGATE = "delegate"
    SKIP = "skip"
    SEND_BACK = "send_back"
    NOTIFY = "notify"
    REMIND = "remind"


class WorkflowRequest(Base):
    __tablename__ = "workflow_requests"
    __table_args__ = (UniqueConstraint("company_id", "request_number", name="uq_request_number"),)
    id = Column(Integer, primary_key=True)
    request_number = Column(String(64), index=True, nullable=False)   # unique per company
    definition_id = Column(Integer, ForeignKey("workflow_definitions.id"), index=True, nullable=False)
    workflow_type_id = Column(Integer, ForeignKey("workflow_types.id"), nullable=False)
    company_id = Column(Integer, index=True, nullable=False)
    employee_id = Column(Integer, ForeignKey("employees.id"), index=True, nullable=False)
    submitted_by = Column(Integer, nullable=False)            # user id of whoever pressed submit
    request_data = Column(JSON, default=dict)
    current_stage_id = Column(Integer, ForeignKey("workflow_stages.id"), nullable=True)
    current_stage_order = Column(Integer, nullable=True)
    request_status = Column(String(16), default=RequestStatus.SUBMITTED.value, index=True, nullable=False)
    overall_status = Column(String(16), default=OverallStatus.IN_PROGRESS.value, nullable=False)
    sla_due_date = Column(DateTime, index=True, nullable=True)
    submitted_at = Column(DateTime, default=utcnow, nullable=False)
    completed_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=utcnow, nullable=False)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    definition = relationship("WorkflowDefinition")
    current_stage = relationship("Stage", foreign_keys=[current_stage_id])
    assignments = relationship(
        "StageAssignment", back_populates="request", order_by="StageAssignment.id",
        cascade="all, delete-orphan",
    )
    actions = relationship(
        "WorkflowAction", back_populates="request", order_by="WorkflowAction.id",
        cascade="all, delete-orphan",
    )

    @property
    def is_open(self) -> bool:
        return self.request_status in OPEN_STATUSES


class StageAssignment(Base):
    __tablename__ = "workflow_stage_assignments"
    id = Column(Integer, primary_key=True)
    request_id = Column(Integer, ForeignKey("workflow_requests.id"), index=True, nullable=False)
    stage_id = Column(Integer, ForeignKey("workflow_stages.id"), index=True, nullable=False)
    assigned_to_user_id = Column(Integer, index=True, nullable=True)   # null for AUTO_APPROVE
    approver_type = Column(String(32), nullable=False)
    assignment_status = Column(String(16), default=AssignmentStatus.PENDING.value, index=True, nullable=False)
    requires_all_approval = Column(Boolean, default=False, nullable=False)
    approval_order = Column(Integer, default=1, nullable=False)
    allow_delegation = Column(Boolean, default=False, nullable=False)
    delegated_to_user_id = Column(Integer, nullable=True)
    delegated_at = Column(DateTime, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    action_taken = Column(String(16), nullable=True)
    action_taken_at = Column(DateTime, nullable=True)
    action_id = Column(Integer, ForeignKey("workflow_actions.id"), nullable=True)
    sla_due_date = Column(DateTime, nullable=True)
    is_sla_breached = Column(Boolean, default=False, nullable=False)
    reminder_count = Column(Integer, default=0, nullable=False)
    last_reminder_at = Column(DateTime, nullable=True)
    assigned_at = Column(DateTime, default=utcnow, nullable=False)

    request = relationship("WorkflowRequest", back_populates="assignments")


class WorkflowAction(Base):
    """Insert-only history row; nothing updates or deletes these."""
    __tablename__ = "workflow_actions"
    id = Column(Integer, primary_key=True)
    request_id = Column(Integer, ForeignKey("workflow_requests.id"), index=True, nullable=False)
    stage_id = Column(Integer, ForeignKey("workflow_stages.id"), nullable=True)
    action_type = Column(String(16), index=True, nullable=False)
    action_by_user_id = Column(Integer, nullable=True)        # null for system
    action_by_type = Column(String(16), nullable=False)      # employee | approver | system | admin
    approver_type = Column(String(32), nullable=True)
    remarks = Column(Text, nullable=True)
    previous_stage_id = Column(Integer, nullable=True)
    next_stage_id = Column(Integer, nullable=True)
    action_result = Column(String(32), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    request = relationship("WorkflowRequest", back_populates="actions")


class RequestSequence(Base):
    __tablename__ = "workflow_request_sequences"
    __table_args__ = (UniqueConstraint("workflow_code", "company_id", "year", name="uq_request_sequence"),)
    id = Column(Integer, primary_key=True)
    workflow_code = Column(String(32), nullable=False)
    company_id = Column(Integer, nullable=False)
    year = Column(Integer, nullable=False)
    last_value = Column(Integer, default=0, nullable=False)
