"""
Workflow error taxonomy.

Everything derives from ``WorkflowError`` (itself a ``ValueError``, so the
generic API handler still turns stray ones into 4xx). Each class carries the
HTTP status the API layer should answer with.
"""


class WorkflowError(ValueError):
    status_code = 400
    code = "workflow_error"

    def __init__(self, message: str = "", **context):
        super().__init__(message or self.__class__.__name__)
        self.context = context


# ---- configuration errors: abort, nothing persisted ----

class ConfigurationError(WorkflowError):
    status_code = 422
    code = "configuration_error"


class NoDefinitionConfigured(ConfigurationError):
    code = "no_definition_configured"


class NoApplicableDefinition(ConfigurationError):
    code = "no_applicable_definition"


class NoStagesConfigured(ConfigurationError):
    code = "no_stages_configured"


class StageNotFound(ConfigurationError):
    code = "stage_not_found"


class NoApproversResolved(ConfigurationError):
    code = "no_approvers_resolved"


class InvalidConfiguration(ConfigurationError):
    code = "invalid_configuration"


# ---- state errors: precondition violated, prior state untouched ----

class StateError(WorkflowError):
    status_code = 409
    code = "state_error"


class NoPendingAssignment(StateError):
    code = "no_pending_assignment"


class ConcurrentTransitionError(NoPendingAssignment):
    code = "concurrent_transition"


class RequestNotActive(StateError):
    code = "request_not_active"


class NoCurrentStage(StateError):
    code = "no_current_stage"


class WithdrawalNotAllowed(StateError):
    code = "withdrawal_not_allowed"


class DelegationNotAllowed(StateError):
    code = "delegation_not_allowed"


class NotRequestOwner(WorkflowError):
    status_code = 403
    code = "not_request_owner"


# ---- lookups ----

class NotFoundError(WorkflowError):
    status_code = 404
    code = "not_found"


class RequestNotFound(NotFoundError):
    code = "request_not_found"


class EmployeeNotFound(NotFoundError):
    code = "employee_not_found"


class DefinitionNotFound(NotFoundError):
    code = "definition_not_found"


# ---- collaborator errors (degrade gracefully inside the resolver) ----

class ApproverLookupFailed(WorkflowError):
    code = "approver_lookup_failed"
