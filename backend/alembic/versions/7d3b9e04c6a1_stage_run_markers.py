"""workflow states: running stage marker and cancel request

Revision ID: 7d3b9e04c6a1
Revises: 1a4e7c2f9b3d
Create Date: 2026-10-17 15:40:02.000000

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "7d3b9e04c6a1"
down_revision: Union[str, Sequence[str], None] = "1a4e7c2f9b3d"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    with op.batch_alter_table("workflow_states") as batch_op:
        batch_op.add_column(sa.Column("running_stage", sa.String(), nullable=True))
        batch_op.add_column(
            sa.Column(
                "cancel_requested",
                sa.Boolean(),
                nullable=False,
                server_default=sa.false(),
            )
        )


def downgrade() -> None:
    """Downgrade schema."""
    with op.batch_alter_table("workflow_states") as batch_op:
        batch_op.drop_column("cancel_requested")
        batch_op.drop_column("running_stage")
