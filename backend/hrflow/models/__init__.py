from .employee import Employee, LeaveBalance
from .workflow import (
    WorkflowTypeCode, StageType, ApproverLogic, TimeoutAction, RejectAction,
    WorkflowType, WorkflowDefinition, WorkflowVersion, ApplicabilityRule,
    Stage, StageApprover, Condition, ConditionRule,
)
from .request import (
    RequestStatus, OverallStatus, AssignmentStatus, ActionType, OPEN_STATUSES,
    WorkflowRequest, StageAssignment, WorkflowAction, RequestSequence,
)
