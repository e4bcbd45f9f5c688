"""bind approval rounds to the deployment and check run that requested them

Revision ID: 20261018_0002
Revises: 20261012_0001
Create Date: 2026-10-18 10:15:00

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261018_0002"
down_revision: Union[str, None] = "20261012_0001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    with op.batch_alter_table("deploy_approvals") as batch_op:
        batch_op.add_column(sa.Column("deployment_id", sa.String(length=36), nullable=True))
        batch_op.add_column(sa.Column("check_run_id", sa.String(length=36), nullable=True))
        batch_op.create_foreign_key(
            "fk_deploy_approvals_deployment_id",
            "deployments",
            ["deployment_id"],
            ["id"],
        )
        batch_op.create_foreign_key(
            "fk_deploy_approvals_check_run_id",
            "safety_check_runs",
            ["check_run_id"],
            ["id"],
        )
        batch_op.create_index("ix_deploy_approvals_deployment_id", ["deployment_id"], unique=False)
        batch_op.create_index("ix_deploy_approvals_check_run_id", ["check_run_id"], unique=False)


def downgrade() -> None:
    with op.batch_alter_table("deploy_approvals") as batch_op:
        batch_op.drop_index("ix_deploy_approvals_check_run_id")
        batch_op.drop_index("ix_deploy_approvals_deployment_id")
        batch_op.drop_constraint("fk_deploy_approvals_check_run_id", type_="foreignkey")
        batch_op.drop_constraint("fk_deploy_approvals_deployment_id", type_="foreignkey")
        batch_op.drop_column("check_run_id")
        batch_op.drop_column("deployment_id")
