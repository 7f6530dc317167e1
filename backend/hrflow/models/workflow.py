from __future__ import annotations
import enum
from sqlalchemy import (
    Boolean, Column, DateTime, ForeignKey, Integer, JSON, String, Text, UniqueConstraint,
)
from sqlalchemy.orm import relationship
from hrflow.core.database import Base, utcnow


class WorkflowTypeCode(str, enum.Enum):
    LEAVE = "LEAVE"
    ONDUTY = "ONDUTY"
    WFH = "WFH"
    SHORT_LEAVE = "SHORT_LEAVE"
    REGULARIZATION = "REGULARIZATION"
    SHIFT_SWAP = "SHIFT_SWAP"
    RESTRICTED_HOLIDAY = "RESTRICTED_HOLIDAY"


class StageType(str, enum.Enum):
    APPROVAL = "approval"
    NOTIFY_ONLY = "notify_only"
    AUTO_ACTION = "auto_action"


class ApproverLogic(str, enum.Enum):
    ALL = "ALL"
    ANY = "ANY"


class TimeoutAction(str, enum.Enum):
    AUTO_APPROVE = "auto_approve"
    AUTO_REJECT = "auto_reject"
    ESCALATE = "escalate"
    REMIND = "remind"


class RejectAction(str, enum.Enum):
    FINAL_REJECT = "final_reject"
    MOVE_TO_STAGE = "move_to_stage"
    SEND_BACK = "send_back"


class WorkflowType(Base):
    __tablename__ = "workflow_types"
    id = Column(Integer, primary_key=True)
    code = Column(String(32), unique=True, index=True, nullable=False)   # WorkflowTypeCode value
    name = Column(String(128), nullable=False)
    description = Column(Text, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    display_order = Column(Integer, default=0, nullable=False)


class WorkflowDefinition(Base):
    __tablename__ = "workflow_definitions"
    id = Column(Integer, primary_key=True)
    company_id = Column(Integer, index=True, nullable=False)
    workflow_type_id = Column(Integer, ForeignKey("workflow_types.id"), index=True, nullable=False)
    name = Column(String(255), nullable=False)
    code = Column(String(64), nullable=True)
    description = Column(Text, nullable=True)
    version = Column(Integer, default=1, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    is_default = Column(Boolean, default=False, nullable=False)
    allow_self_approval = Column(Boolean, default=False, nullable=False)
    allow_withdrawal = Column(Boolean, default=True, nullable=False)
    send_submission_notification = Column(Boolean, default=True, nullable=False)
    cloned_from_id = Column(Integer, ForeignKey("workflow_definitions.id"), nullable=True)
    created_by = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    workflow_type = relationship("WorkflowType")
    stages = relationship(
        "Stage", back_populates="definition", order_by="Stage.stage_order",
        cascade="all, delete-orphan",
    )
    conditions = relationship(
        "Condition", back_populates="definition", order_by="[Condition.priority, Condition.id]",
        cascade="all, delete-orphan",
    )
    applicability_rules = relationship(
        "ApplicabilityRule", back_populates="definition", cascade="all, delete-orphan",
    )
    versions = relationship(
        "WorkflowVersion", back_populates="definition", order_by="WorkflowVersion.version_number",
        cascade="all, delete-orphan",
    )


class WorkflowVersion(Base):
    __tablename__ = "workflow_versions"
    __table_args__ = (UniqueConstraint("definition_id", "version_number", name="uq_workflow_version"),)
    id = Column(Integer, primary_key=True)
    definition_id = Column(Integer, ForeignKey("workflow_definitions.id"), index=True, nullable=False)
    version_number = Column(Integer, nullable=False)
    snapshot = Column(JSON, default=dict)             # {"stages": [...], "conditions": [...], "applicability": [...]}
    change_summary = Column(String(1000), nullable=True)
    created_by = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    definition = relationship("WorkflowDefinition", back_populates="versions")


class ApplicabilityRule(Base):
    __tablename__ = "workflow_applicability"
    id = Column(Integer, primary_key=True)
    definition_id = Column(Integer, ForeignKey("workflow_definitions.id"), index=True, nullable=False)
    company_id = Column(Integer, index=True, nullable=False)
    dimension = Column(String(32), nullable=False)           # employee | department | ... | grade
    target_values = Column(String(2000), nullable=True)      # "12,15,19"; null = whole company
    advanced_dimension = Column(String(32), default="none", nullable=False)  # none | employee_type | branch | region
    advanced_values = Column(String(2000), nullable=True)
    is_excluded = Column(Boolean, default=False, nullable=False)
    priority = Column(Integer, nullable=True)                # null -> dimension's built-in priority
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    definition = relationship("WorkflowDefinition", back_populates="applicability_rules")


class Stage(Base):
    __tablename__ = "workflow_stages"
    __table_args__ = (UniqueConstraint("definition_id", "stage_order", name="uq_stage_order"),)
    id = Column(Integer, primary_key=True)
    definition_id = Column(Integer, ForeignKey("workflow_definitions.id"), index=True, nullable=False)
    name = Column(String(255), nullable=False)
    stage_order = Column(Integer, nullable=False)
    stage_type = Column(String(16), default=StageType.APPROVAL.value, nullable=False)
    approver_logic = Column(String(8), default=ApproverLogic.ANY.value, nullable=False)
    sla_days = Column(Integer, default=0, nullable=False)
    sla_hours = Column(Integer, default=0, nullable=False)
    on_timeout_action = Column(String(16), nullable=True)     # TimeoutAction value or null
    escalate_to_stage_id = Column(Integer, ForeignKey("workflow_stages.id"), nullable=True)
    next_stage_on_approve_id = Column(Integer, ForeignKey("workflow_stages.id"), nullable=True)
    on_reject_action = Column(String(16), default=RejectAction.FINAL_REJECT.value, nullable=False)
    reject_target_stage_id = Column(Integer, ForeignKey("workflow_stages.id"), nullable=True)
    notify_on_assign = Column(Boolean, default=True, nullable=False)
    notify_on_approve = Column(Boolean, default=True, nullable=False)
    notify_on_reject = Column(Boolean, default=True, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    definition = relationship("WorkflowDefinition", back_populates="stages")
    approvers = relationship(
        "StageApprover", back_populates="stage", order_by="StageApprover.approver_order",
        cascade="all, delete-orphan",
    )


class StageApprover(Base):
    __tablename__ = "workflow_stage_approvers"
    id = Column(Integer, primary_key=True)
    stage_id = Column(Integer, ForeignKey("workflow_stages.id"), index=True, nullable=False)
    approver_type = Column(String(32), nullable=False)        # ApproverType token
    approver_order = Column(Integer, default=1, nullable=False)
    condition_id = Column(Integer, ForeignKey("workflow_conditions.id"), nullable=True)
    custom_user_id = Column(Integer, nullable=True)
    allow_delegation = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    stage = relationship("Stage", back_populates="approvers")
    condition = relationship("Condition", foreign_keys=[condition_id])


class Condition(Base):
    __tablename__ = "workflow_conditions"
    id = Column(Integer, primary_key=True)
    definition_id = Column(Integer, ForeignKey("workflow_definitions.id"), index=True, nullable=False)
    stage_id = Column(Integer, ForeignKey("workflow_stages.id"), index=True, nullable=True)  # null = global
    name = Column(String(255), nullable=False, default="")
    logic_operator = Column(String(4), default="AND", nullable=False)
    action_type = Column(String(32), nullable=False)
    action_stage_id = Column(Integer, ForeignKey("workflow_stages.id"), nullable=True)
    action_approver_type = Column(String(32), nullable=True)
    action_custom_user_id = Column(Integer, nullable=True)
    else_action_type = Column(String(32), default="continue", nullable=False)
    else_stage_id = Column(Integer, ForeignKey("workflow_stages.id"), nullable=True)
    priority = Column(Integer, default=1, nullable=False)
    is_guard = Column(Boolean, default=False, nullable=False)   # approver guard, never evaluated as a stage rule
    is_active = Column(Boolean, default=True, nullable=False)

    definition = relationship("WorkflowDefinition", back_populates="conditions")
    rules = relationship(
        "ConditionRule", back_populates="condition", order_by="ConditionRule.rule_order",
        cascade="all, delete-orphan",
    )


class ConditionRule(Base):
    __tablename__ = "workflow_condition_rules"
    id = Column(Integer, primary_key=True)
    condition_id = Column(Integer, ForeignKey("workflow_conditions.id"), index=True, nullable=False)
    rule_order = Column(Integer, default=1, nullable=False)
    field_source = Column(String(16), nullable=False)        # employee | request | leave_balance | custom
    field_name = Column(String(255), nullable=False)         # dotted path allowed
    field_type = Column(String(16), default="string", nullable=False)
    operator = Column(String(16), nullable=False)
    compare_value = Column(Text, nullable=True)              # JSON text for arrays
    compare_value_type = Column(String(16), default="static", nullable=False)  # static | dynamic | field_reference
    compare_field_source = Column(String(16), nullable=True)
    compare_field_name = Column(String(255), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)

    condition = relationship("Condition", back_populates="rules")
