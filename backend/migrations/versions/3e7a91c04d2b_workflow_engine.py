"""workflow engine: directory mirror, definitions, requests, audit trail

Revision ID: 3e7a91c04d2b
Revises:
Create Date: 2026-10-19 09:30:00
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "3e7a91c04d2b"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _table_exists(bind, name: str, schema: str | None = None) -> bool:
    insp = sa.inspect(bind)
    return name in insp.get_table_names(schema=schema)


def _index_exists(bind, table: str, name: str, schema: str | None = None) -> bool:
    insp = sa.inspect(bind)
    for ix in insp.get_indexes(table_name=table, schema=schema):
        if ix.get("name") in {name, op.f(name)}:
            return True
    return False


def _ensure_index(bind, table: str, column: str, unique: bool = False) -> None:
    name = f"ix_{table}_{column}"
    if not _index_exists(bind, table, name, "public"):
        op.create_index(op.f(name), table, [column], unique=unique)


def _ts(name: str, nullable: bool = False, default_now: bool = False) -> sa.Column:
    kw = {"server_default": sa.text("now()")} if default_now else {}
    return sa.Column(name, postgresql.TIMESTAMP(), nullable=nullable, **kw)


def upgrade() -> None:
    """Create every workflow table (idempotent)."""
    bind = op.get_bind()

    # ---- DIRECTORY MIRROR ----
    if not _table_exists(bind, "employees", "public"):
        op.create_table(
            "employees",
            sa.Column("id", sa.Integer, primary_key=True),
            sa.Column("user_id", sa.Integer, nullable=True),
            sa.Column("company_id", sa.Integer, nullable=False),
            sa.Column("entity_id", sa.Integer, nullable=True),
            sa.Column("department_id", sa.Integer, nullable=True),
            sa.Column("sub_department_id", sa.Integer, nullable=True),
            sa.Column("designation_id", sa.Integer, nullable=True),
            sa.Column("level_id", sa.Integer, nullable=True),
            sa.Column("grade_id", sa.Integer, nullable=True),
            sa.Column("location_id", sa.Integer, nullable=True),
            sa.Column("employee_type_id", sa.Integer, nullable=True),
            sa.Column("branch_id", sa.Integer, nullable=True),
            sa.Column("region_id", sa.Integer, nullable=True),
            sa.Column("reporting_manager_id", sa.Integer, sa.ForeignKey("employees.id"), nullable=True),
            sa.Column("secondary_reporting_manager_id", sa.Integer, sa.ForeignKey("employees.id"), nullable=True),
            sa.Column("first_name", sa.String(length=128), nullable=False, server_default=""),
            sa.Column("last_name", sa.String(length=128), nullable=True),
            sa.Column("email", sa.String(length=255), nullable=True),
            sa.Column("is_hod", sa.Boolean, nullable=False, server_default=sa.false()),
            sa.Column("is_functional_head", sa.Boolean, nullable=False, server_default=sa.false()),
            sa.Column("is_hr_admin", sa.Boolean, nullable=False, server_default=sa.false()),
            sa.Column("is_sub_admin", sa.Boolean, nullable=False, server_default=sa.false()),
            sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        )
    _ensure_index(bind, "employees", "user_id", unique=True)
    _ensure_index(bind, "employees", "company_id")
    _ensure_index(bind, "employees", "department_id")

    if not _table_exists(bind, "leave_balances", "public"):
        op.create_table(
            "leave_balances",
            sa.Column("id", sa.Integer, primary_key=True),
            sa.Column("employee_id", sa.Integer, sa.ForeignKey("employees.id"), nullable=False),
            sa.Column("leave_type_id", sa.Integer, nullable=False),
            sa.Column("available_balance", sa.Float, nullable=False, server_default="0"),
            sa.UniqueConstraint("employee_id", "leave_type_id", name="uq_leave_balance_emp_type"),
        )
    _ensure_index(bind, "leave_balances", "employee_id")

    # ---- CONFIGURATION ----
    if not _table_exists(bind, "workflow_types", "public"):
        op.create_table(
            "workflow_types",
            sa.Column("id", sa.Integer, primary_key=True),
            sa.Column("code", sa.String(length=32), nullable=False),
            sa.Column("name", sa.String(length=128), nullable=False),
            sa.Column("description", sa.Text, nullable=True),
            sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
            sa.Column("display_order", sa.Integer, nullable=False, server_default="0"),
        )
    _ensure_index(bind, "workflow_types", "code", unique=True)

    if not _table_exists(bind, "workflow_definitions", "public"):
        op.create_table(
            "workflow_definitions",
            sa.Column("id", sa.Integer, primary_key=True),
            sa.Column("company_id", sa.Integer, nullable=False),
            sa.Column("workflow_type_id", sa.Integer, sa.ForeignKey("workflow_types.id"), nullable=False),
            sa.Column("name", sa.String(length=255), nullable=False),
            sa.Column("code", sa.String(length=64), nullable=True),
            sa.Column("description", sa.Text, nullable=True),
            sa.Column("version", sa.Integer, nullable=False, server_default="1"),
            sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
            sa.Column("is_default", sa.Boolean, nullable=False, server_default=sa.false()),
            sa.Column("allow_self_approval", sa.Boolean, nullable=False, server_default=sa.false()),
            sa.Column("allow_withdrawal", sa.Boolean, nullable=False, server_default=sa.true()),
            sa.Column("send_submission_notification", sa.Boolean, nullable=False, server_default=sa.true()),
            sa.Column("cloned_from_id", sa.Integer, sa.ForeignKey("workflow_definitions.id"), nullable=True),
            sa.Column("created_by", sa.Integer, nullable=True),
            _ts("created_at", default_now=True),
            _ts("updated_at", default_now=True),
        )
    _ensure_index(bind, "workflow_definitions", "company_id")
    _ensure_index(bind, "workflow_definitions", "workflow_type_id")

    if not _table_exists(bind, "workflow_versions", "public"):
        op.create_table(
            "workflow_versions",
            sa.Column("id", sa.Integer, primary_key=True),
            sa.Column("definition_id", sa.Integer, sa.ForeignKey("workflow_definitions.id"), nullable=False),
            sa.Column("version_number", sa.Integer, nullable=False),
            sa.Column("snapshot", postgresql.JSON(astext_type=sa.Text()), nullable=True),
            sa.Column("change_summary", sa.String(length=1000), nullable=True),
            sa.Column("created_by", sa.Integer, nullable=True),
            _ts("created_at", default_now=True),
            sa.UniqueConstraint("definition_id", "version_number", name="uq_workflow_version"),
        )
    _ensure_index(bind, "workflow_versions", "definition_id")

    if not _table_exists(bind, "workflow_applicability", "public"):
        op.create_table(
            "workflow_applicability",
            sa.Column("id", sa.Integer, primary_key=True),
            sa.Column("definition_id", sa.Integer, sa.ForeignKey("workflow_definitions.id"), nullable=False),
            sa.Column("company_id", sa.Integer, nullable=False),
            sa.Column("dimension", sa.String(length=32), nullable=False),
            sa.Column("target_values", sa.String(length=2000), nullable=True),
            sa.Column("advanced_dimension", sa.String(length=32), nullable=False, server_default="none"),
            sa.Column("advanced_values", sa.String(length=2000), nullable=True),
            sa.Column("is_excluded", sa.Boolean, nullable=False, server_default=sa.false()),
            sa.Column("priority", sa.Integer, nullable=True),
            sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
            _ts("created_at", default_now=True),
        )
    _ensure_index(bind, "workflow_applicability", "definition_id")
    _ensure_index(bind, "workflow_applicability", "company_id")

    if not _table_exists(bind, "workflow_stages", "public"):
        op.create_table(
            "workflow_stages",
            sa.Column("id", sa.Integer, primary_key=True),
            sa.Column("definition_id", sa.Integer, sa.ForeignKey("workflow_definitions.id"), nullable=False),
            sa.Column("name", sa.String(length=255), nullable=False),
            sa.Column("stage_order", sa.Integer, nullable=False),
            sa.Column("stage_type", sa.String(length=16), nullable=False, server_default="approval"),
            sa.Column("approver_logic", sa.String(length=8), nullable=False, server_default="ANY"),
            sa.Column("sla_days", sa.Integer, nullable=False, server_default="0"),
            sa.Column("sla_hours", sa.Integer, nullable=False, server_default="0"),
            sa.Column("on_timeout_action", sa.String(length=16), nullable=True),
            sa.Column("escalate_to_stage_id", sa.Integer, sa.ForeignKey("workflow_stages.id"), nullable=True),
            sa.Column("next_stage_on_approve_id", sa.Integer, sa.ForeignKey("workflow_stages.id"), nullable=True),
            sa.Column("on_reject_action", sa.String(length=16), nullable=False, server_default="final_reject"),
            sa.Column("reject_target_stage_id", sa.Integer, sa.ForeignKey("workflow_stages.id"), nullable=True),
            sa.Column("notify_on_assign", sa.Boolean, nullable=False, server_default=sa.true()),
            sa.Column("notify_on_approve", sa.Boolean, nullable=False, server_default=sa.true()),
            sa.Column("notify_on_reject", sa.Boolean, nullable=False, server_default=sa.true()),
            sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
            sa.UniqueConstraint("definition_id", "stage_order", name="uq_stage_order"),
        )
    _ensure_index(bind, "workflow_stages", "definition_id")

    if not _table_exists(bind, "workflow_conditions", "public"):
        op.create_table(
            "workflow_conditions",
            sa.Column("id", sa.Integer, primary_key=True),
            sa.Column("definition_id", sa.Integer, sa.ForeignKey("workflow_definitions.id"), nullable=False),
            sa.Column("stage_id", sa.Integer, sa.ForeignKey("workflow_stages.id"), nullable=True),
            sa.Column("name", sa.String(length=255), nullable=False, server_default=""),
            sa.Column("logic_operator", sa.String(length=4), nullable=False, server_default="AND"),
            sa.Column("action_type", sa.String(length=32), nullable=False),
            sa.Column("action_stage_id", sa.Integer, sa.ForeignKey("workflow_stages.id"), nullable=True),
            sa.Column("action_approver_type", sa.String(length=32), nullable=True),
            sa.Column("action_custom_user_id", sa.Integer, nullable=True),
            sa.Column("else_action_type", sa.String(length=32), nullable=False, server_default="continue"),
            sa.Column("else_stage_id", sa.Integer, sa.ForeignKey("workflow_stages.id"), nullable=True),
            sa.Column("priority", sa.Integer, nullable=False, server_default="1"),
            sa.Column("is_guard", sa.Boolean, nullable=False, server_default=sa.false()),
            sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        )
    _ensure_index(bind, "workflow_conditions", "definition_id")
    _ensure_index(bind, "workflow_conditions", "stage_id")

    if not _table_exists(bind, "workflow_condition_rules", "public"):
        op.create_table(
            "workflow_condition_rules",
            sa.Column("id", sa.Integer, primary_key=True),
            sa.Column("condition_id", sa.Integer, sa.ForeignKey("workflow_conditions.id"), nullable=False),
            sa.Column("rule_order", sa.Integer, nullable=False, server_default="1"),
            sa.Column("field_source", sa.String(length=16), nullable=False),
            sa.Column("field_name", sa.String(length=255), nullable=False),
            sa.Column("field_type", sa.String(length=16), nullable=False, server_default="string"),
            sa.Column("operator", sa.String(length=16), nullable=False),
            sa.Column("compare_value", sa.Text, nullable=True),
            sa.Column("compare_value_type", sa.String(length=16), nullable=False, server_default="static"),
            sa.Column("compare_field_source", sa.String(length=16), nullable=True),
            sa.Column("compare_field_name", sa.String(length=255), nullable=True),
            sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        )
    _ensure_index(bind, "workflow_condition_rules", "condition_id")

    if not _table_exists(bind, "workflow_stage_approvers", "public"):
        op.create_table(
            "workflow_stage_approvers",
            sa.Column("id", sa.Integer, primary_key=True),
            sa.Column("stage_id", sa.Integer, sa.ForeignKey("workflow_stages.id"), nullable=False),
            sa.Column("approver_type", sa.String(length=32), nullable=False),
            sa.Column("approver_order", sa.Integer, nullable=False, server_default="1"),
            sa.Column("condition_id", sa.Integer, sa.ForeignKey("workflow_conditions.id"), nullable=True),
            sa.Column("custom_user_id", sa.Integer, nullable=True),
            sa.Column("allow_delegation", sa.Boolean, nullable=False, server_default=sa.false()),
            sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        )
    _ensure_index(bind, "workflow_stage_approvers", "stage_id")

    # ---- RUNTIME ----
    if not _table_exists(bind, "workflow_requests", "public"):
        op.create_table(
            "workflow_requests",
            sa.Column("id", sa.Integer, primary_key=True),
            sa.Column("request_number", sa.String(length=64), nullable=False),
            sa.Column("definition_id", sa.Integer, sa.ForeignKey("workflow_definitions.id"), nullable=False),
            sa.Column("workflow_type_id", sa.Integer, sa.ForeignKey("workflow_types.id"), nullable=False),
            sa.Column("company_id", sa.Integer, nullable=False),
            sa.Column("employee_id", sa.Integer, sa.ForeignKey("employees.id"), nullable=False),
            sa.Column("submitted_by", sa.Integer, nullable=False),
            sa.Column("request_data", postgresql.JSON(astext_type=sa.Text()), nullable=True),
            sa.Column("current_stage_id", sa.Integer, sa.ForeignKey("workflow_stages.id"), nullable=True),
            sa.Column("current_stage_order", sa.Integer, nullable=True),
            sa.Column("request_status", sa.String(length=16), nullable=False, server_default="submitted"),
            sa.Column("overall_status", sa.String(length=16), nullable=False, server_default="in_progress"),
            _ts("sla_due_date", nullable=True),
            _ts("submitted_at", default_now=True),
            _ts("completed_at", nullable=True),
            _ts("updated_at", default_now=True),
            sa.Column("version", sa.Integer, nullable=False, server_default="1"),
            sa.UniqueConstraint("company_id", "request_number", name="uq_request_number"),
        )
    for col in ("request_number", "definition_id", "company_id", "employee_id", "request_status", "sla_due_date"):
        _ensure_index(bind, "workflow_requests", col)

    if not _table_exists(bind, "workflow_actions", "public"):
        op.create_table(
            "workflow_actions",
            sa.Column("id", sa.Integer, primary_key=True),
            sa.Column("request_id", sa.Integer, sa.ForeignKey("workflow_requests.id"), nullable=False),
            sa.Column("stage_id", sa.Integer, sa.ForeignKey("workflow_stages.id"), nullable=True),
            sa.Column("action_type", sa.String(length=16), nullable=False),
            sa.Column("action_by_user_id", sa.Integer, nullable=True),
            sa.Column("action_by_type", sa.String(length=16), nullable=False),
            sa.Column("approver_type", sa.String(length=32), nullable=True),
            sa.Column("remarks", sa.Text, nullable=True),
            sa.Column("previous_stage_id", sa.Integer, nullable=True),
            sa.Column("next_stage_id", sa.Integer, nullable=True),
            sa.Column("action_result", sa.String(length=32), nullable=True),
            _ts("created_at", default_now=True),
        )
    _ensure_index(bind, "workflow_actions", "request_id")
    _ensure_index(bind, "workflow_actions", "action_type")

    if not _table_exists(bind, "workflow_stage_assignments", "public"):
        op.create_table(
            "workflow_stage_assignments",
            sa.Column("id", sa.Integer, primary_key=True),
            sa.Column("request_id", sa.Integer, sa.ForeignKey("workflow_requests.id"), nullable=False),
            sa.Column("stage_id", sa.Integer, sa.ForeignKey("workflow_stages.id"), nullable=False),
            sa.Column("assigned_to_user_id", sa.Integer, nullable=True),
            sa.Column("approver_type", sa.String(length=32), nullable=False),
            sa.Column("assignment_status", sa.String(length=16), nullable=False, server_default="pending"),
            sa.Column("requires_all_approval", sa.Boolean, nullable=False, server_default=sa.false()),
            sa.Column("approval_order", sa.Integer, nullable=False, server_default="1"),
            sa.Column("allow_delegation", sa.Boolean, nullable=False, server_default=sa.false()),
            sa.Column("delegated_to_user_id", sa.Integer, nullable=True),
            _ts("delegated_at", nullable=True),
            sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
            sa.Column("action_taken", sa.String(length=16), nullable=True),
            _ts("action_taken_at", nullable=True),
            sa.Column("action_id", sa.Integer, sa.ForeignKey("workflow_actions.id"), nullable=True),
            _ts("sla_due_date", nullable=True),
            sa.Column("is_sla_breached", sa.Boolean, nullable=False, server_default=sa.false()),
            sa.Column("reminder_count", sa.Integer, nullable=False, server_default="0"),
            _ts("last_reminder_at", nullable=True),
            _ts("assigned_at", default_now=True),
        )
    for col in ("request_id", "stage_id", "assigned_to_user_id", "assignment_status"):
        _ensure_index(bind, "workflow_stage_assignments", col)

    if not _table_exists(bind, "workflow_request_sequences", "public"):
        op.create_table(
            "workflow_request_sequences",
            sa.Column("id", sa.Integer, primary_key=True),
            sa.Column("workflow_code", sa.String(length=32), nullable=False),
            sa.Column("company_id", sa.Integer, nullable=False),
            sa.Column("year", sa.Integer, nullable=False),
            sa.Column("last_value", sa.Integer, nullable=False, server_default="0"),
            sa.UniqueConstraint("workflow_code", "company_id", "year", name="uq_request_sequence"),
        )


def downgrade() -> None:
    bind = op.get_bind()
    for name in (
        "workflow_request_sequences", "workflow_stage_assignments", "workflow_actions",
        "workflow_requests", "workflow_stage_approvers", "workflow_condition_rules",
        "workflow_conditions", "workflow_stages", "workflow_applicability", "workflow_versions",
        "workflow_definitions", "workflow_types", "leave_balances", "employees",
    ):
        if _table_exists(bind, name, "public"):
            op.drop_table(name)
