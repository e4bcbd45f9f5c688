"""initial logic deployment pipeline schema

Revision ID: 20261012_0001
Revises: None
Create Date: 2026-10-12 09:30:00

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261012_0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("role", sa.String(length=64), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)
    op.create_index("ix_users_role", "users", ["role"], unique=False)

    op.create_table(
        "releases",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("project_id", sa.String(length=128), nullable=False),
        sa.Column("version_id", sa.String(length=128), nullable=False),
        sa.Column("snapshot_id", sa.String(length=128), nullable=False),
        sa.Column("stage", sa.String(length=32), nullable=False),
        sa.Column("created_by", sa.String(length=128), nullable=True),
        sa.Column("metadata_json", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_releases_project_id", "releases", ["project_id"], unique=False)
    op.create_index("ix_releases_version_id", "releases", ["version_id"], unique=False)
    op.create_index("ix_releases_snapshot_id", "releases", ["snapshot_id"], unique=False)
    op.create_index("ix_releases_stage", "releases", ["stage"], unique=False)
    op.create_index("ix_releases_project_version", "releases", ["project_id", "version_id"], unique=True)

    op.create_table(
        "safety_check_runs",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("release_id", sa.String(length=36), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("facts_fingerprint", sa.String(length=64), nullable=True),
        sa.Column("facts_summary", sa.JSON(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("superseded_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["release_id"], ["releases.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_safety_check_runs_release_id", "safety_check_runs", ["release_id"], unique=False)
    op.create_index("ix_safety_check_runs_status", "safety_check_runs", ["status"], unique=False)

    op.create_table(
        "safety_checks",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("run_id", sa.String(length=36), nullable=False),
        sa.Column("release_id", sa.String(length=36), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("key", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("severity", sa.String(length=16), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("details", sa.JSON(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["run_id"], ["safety_check_runs.id"]),
        sa.ForeignKeyConstraint(["release_id"], ["releases.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_safety_checks_run_id", "safety_checks", ["run_id"], unique=False)
    op.create_index("ix_safety_checks_release_id", "safety_checks", ["release_id"], unique=False)
    op.create_index("ix_safety_checks_status", "safety_checks", ["status"], unique=False)
    op.create_index("ix_safety_checks_run_position", "safety_checks", ["run_id", "position"], unique=True)

    op.create_table(
        "deploy_approvals",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("release_id", sa.String(length=36), nullable=False),
        sa.Column("round_number", sa.Integer(), nullable=False),
        sa.Column("slot_index", sa.Integer(), nullable=False),
        sa.Column("approver_role", sa.String(length=64), nullable=False),
        sa.Column("mode", sa.String(length=16), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("approver_id", sa.String(length=128), nullable=True),
        sa.Column("decided_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("comment", sa.Text(), nullable=True),
        sa.Column("bypassed", sa.Boolean(), nullable=False),
        sa.Column("requested_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("superseded_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["release_id"], ["releases.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_deploy_approvals_release_id", "deploy_approvals", ["release_id"], unique=False)
    op.create_index("ix_deploy_approvals_status", "deploy_approvals", ["status"], unique=False)
    op.create_index("ix_deploy_approvals_expires_at", "deploy_approvals", ["expires_at"], unique=False)
    op.create_index("ix_deploy_approvals_release_round", "deploy_approvals", ["release_id", "round_number"], unique=False)

    op.create_table(
        "deployments",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("release_id", sa.String(length=36), nullable=False),
        sa.Column("active_release_id", sa.String(length=36), nullable=True),
        sa.Column("strategy", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("failure_reason_code", sa.String(length=64), nullable=True),
        sa.Column("failure_detail", sa.Text(), nullable=True),
        sa.Column("targets", sa.JSON(), nullable=True),
        sa.Column("plan", sa.JSON(), nullable=True),
        sa.Column("current_step", sa.Integer(), nullable=False),
        sa.Column("progress_percent", sa.Integer(), nullable=False),
        sa.Column("strategy_state", sa.JSON(), nullable=True),
        sa.Column("checkpoint_id", sa.String(length=36), nullable=True),
        sa.Column("created_by", sa.String(length=128), nullable=True),
        sa.Column("cancel_requested_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("monitor_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("monitor_state", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["release_id"], ["releases.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("active_release_id"),
    )
    op.create_index("ix_deployments_release_id", "deployments", ["release_id"], unique=False)
    op.create_index("ix_deployments_status", "deployments", ["status"], unique=False)
    op.create_index("ix_deployments_monitor_until", "deployments", ["monitor_until"], unique=False)
    op.create_index("ix_deployments_created_at", "deployments", ["created_at"], unique=False)

    op.create_table(
        "deployment_events",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("deployment_id", sa.String(length=36), nullable=False),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("level", sa.String(length=16), nullable=False),
        sa.Column("step", sa.Integer(), nullable=True),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("status_from", sa.String(length=64), nullable=True),
        sa.Column("status_to", sa.String(length=64), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["deployment_id"], ["deployments.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_deployment_events_deployment_id", "deployment_events", ["deployment_id"], unique=False)
    op.create_index("ix_deployment_events_event_type", "deployment_events", ["event_type"], unique=False)

    op.create_table(
        "checkpoints",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("deployment_id", sa.String(length=36), nullable=False),
        sa.Column("captured_state", sa.JSON(), nullable=False),
        sa.Column("captured_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("discarded_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["deployment_id"], ["deployments.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("deployment_id"),
    )

    op.create_table(
        "rollbacks",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("deployment_id", sa.String(length=36), nullable=False),
        sa.Column("checkpoint_id", sa.String(length=36), nullable=False),
        sa.Column("initiated_by", sa.String(length=128), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("detail", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["deployment_id"], ["deployments.id"]),
        sa.ForeignKeyConstraint(["checkpoint_id"], ["checkpoints.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("deployment_id"),
    )
    op.create_index("ix_rollbacks_checkpoint_id", "rollbacks", ["checkpoint_id"], unique=False)
    op.create_index("ix_rollbacks_status", "rollbacks", ["status"], unique=False)

    op.create_table(
        "audit_log",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("actor_id", sa.String(length=128), nullable=True),
        sa.Column("action", sa.String(length=128), nullable=False),
        sa.Column("release_id", sa.String(length=36), nullable=True),
        sa.Column("payload_hash", sa.String(length=128), nullable=False),
        sa.Column("payload_json", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_audit_log_actor_id", "audit_log", ["actor_id"], unique=False)
    op.create_index("ix_audit_log_action", "audit_log", ["action"], unique=False)
    op.create_index("ix_audit_log_release_id", "audit_log", ["release_id"], unique=False)
    op.create_index("ix_audit_log_payload_hash", "audit_log", ["payload_hash"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_audit_log_payload_hash", table_name="audit_log")
    op.drop_index("ix_audit_log_release_id", table_name="audit_log")
    op.drop_index("ix_audit_log_action", table_name="audit_log")
    op.drop_index("ix_audit_log_actor_id", table_name="audit_log")
    op.drop_table("audit_log")

    op.drop_index("ix_rollbacks_status", table_name="rollbacks")
    op.drop_index("ix_rollbacks_checkpoint_id", table_name="rollbacks")
    op.drop_table("rollbacks")
    op.drop_table("checkpoints")

    op.drop_index("ix_deployment_events_event_type", table_name="deployment_events")
    op.drop_index("ix_deployment_events_deployment_id", table_name="deployment_events")
    op.drop_table("deployment_events")

    op.drop_index("ix_deployments_created_at", table_name="deployments")
    op.drop_index("ix_deployments_monitor_until", table_name="deployments")
    op.drop_index("ix_deployments_status", table_name="deployments")
    op.drop_index("ix_deployments_release_id", table_name="deployments")
    op.drop_table("deployments")

    op.drop_index("ix_deploy_approvals_release_round", table_name="deploy_approvals")
    op.drop_index("ix_deploy_approvals_expires_at", table_name="deploy_approvals")
    op.drop_index("ix_deploy_approvals_status", table_name="deploy_approvals")
    op.drop_index("ix_deploy_approvals_release_id", table_name="deploy_approvals")
    op.drop_table("deploy_approvals")

    op.drop_index("ix_safety_checks_run_position", table_name="safety_checks")
    op.drop_index("ix_safety_checks_status", table_name="safety_checks")
    op.drop_index("ix_safety_checks_release_id", table_name="safety_checks")
    op.drop_index("ix_safety_checks_run_id", table_name="safety_checks")
    op.drop_table("safety_checks")

    op.drop_index("ix_safety_check_runs_status", table_name="safety_check_runs")
    op.drop_index("ix_safety_check_runs_release_id", table_name="safety_check_runs")
    op.drop_table("safety_check_runs")

    op.drop_index("ix_releases_project_version", table_name="releases")
    op.drop_index("ix_releases_stage", table_name="releases")
    op.drop_index("ix_releases_snapshot_id", table_name="releases")
    op.drop_index("ix_releases_version_id", table_name="releases")
    op.drop_index("ix_releases_project_id", table_name="releases")
    op.drop_table("releases")

    op.drop_index("ix_users_role", table_name="users")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")
