"""initial schema: projects, workflow states, analyses, test cases

Revision ID: 1a4e7c2f9b3d
Revises:
Create Date: 2026-10-17 09:12:44.000000

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "1a4e7c2f9b3d"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

project_status_enum = sa.Enum(
    "pending", "analyzing", "completed", "failed", name="projectanalysisstatus"
)
analysis_kind_enum = sa.Enum(
    "code_analysis",
    "architecture_review",
    "risk_assessment",
    "test_generation",
    "test_script",
    name="analysiskind",
)
analysis_status_enum = sa.Enum(
    "completed", "failed", "cancelled", name="analysisstatus"
)
test_case_status_enum = sa.Enum(
    "generated", "pending", "running", "passed", "failed", name="testcasestatus"
)


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        "projects",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("source_type", sa.String(), nullable=False),
        sa.Column("source_url", sa.String(), nullable=True),
        sa.Column("repository_data", sa.JSON(), nullable=True),
        sa.Column("analysis_status", project_status_enum, nullable=False),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), server_default=sa.func.now()
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_projects_id"), "projects", ["id"], unique=False)

    op.create_table(
        "workflow_states",
        sa.Column("project_id", sa.Integer(), nullable=False),
        sa.Column("project_created", sa.Boolean(), nullable=False),
        sa.Column("analysis_started", sa.Boolean(), nullable=False),
        sa.Column("analysis_completed", sa.Boolean(), nullable=False),
        sa.Column("tests_generated", sa.Boolean(), nullable=False),
        sa.Column("scripts_generated", sa.Boolean(), nullable=False),
        sa.Column("tests_run", sa.Boolean(), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("last_stage", sa.JSON(), nullable=True),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()
        ),
        sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("project_id"),
    )
    op.create_index(
        op.f("ix_workflow_states_active"), "workflow_states", ["active"], unique=False
    )

    op.create_table(
        "analyses",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("project_id", sa.Integer(), nullable=False),
        sa.Column("agent_id", sa.Integer(), nullable=True),
        sa.Column("kind", analysis_kind_enum, nullable=False),
        sa.Column("status", analysis_status_enum, nullable=False),
        sa.Column("results", sa.JSON(), nullable=True),
        sa.Column("test_case_id", sa.Integer(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["project_id"], ["projects.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_analyses_id"), "analyses", ["id"], unique=False)
    op.create_index(
        op.f("ix_analyses_project_id"), "analyses", ["project_id"], unique=False
    )
    op.create_index(
        op.f("ix_analyses_test_case_id"), "analyses", ["test_case_id"], unique=False
    )
    op.create_index(
        "ix_analyses_project_kind", "analyses", ["project_id", "kind"], unique=False
    )

    op.create_table(
        "test_cases",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("project_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("type", sa.String(), nullable=False),
        sa.Column("priority", sa.String(), nullable=False),
        sa.Column("framework", sa.String(), nullable=False),
        sa.Column("category", sa.String(), nullable=True),
        sa.Column("status", test_case_status_enum, nullable=False),
        sa.Column("execution_time", sa.Integer(), nullable=True),
        sa.Column("results", sa.JSON(), nullable=True),
        sa.Column("last_reported_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), server_default=sa.func.now()
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["project_id"], ["projects.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_test_cases_id"), "test_cases", ["id"], unique=False)
    op.create_index(
        op.f("ix_test_cases_project_id"), "test_cases", ["project_id"], unique=False
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index(op.f("ix_test_cases_project_id"), table_name="test_cases")
    op.drop_index(op.f("ix_test_cases_id"), table_name="test_cases")
    op.drop_table("test_cases")

    op.drop_index("ix_analyses_project_kind", table_name="analyses")
    op.drop_index(op.f("ix_analyses_test_case_id"), table_name="analyses")
    op.drop_index(op.f("ix_analyses_project_id"), table_name="analyses")
    op.drop_index(op.f("ix_analyses_id"), table_name="analyses")
    op.drop_table("analyses")

    op.drop_index(op.f("ix_workflow_states_active"), table_name="workflow_states")
    op.drop_table("workflow_states")

    op.drop_index(op.f("ix_projects_id"), table_name="projects")
    op.drop_table("projects")

    bind = op.get_bind()
    for enum_type in (
        test_case_status_enum,
        analysis_status_enum,
        analysis_kind_enum,
        project_status_enum,
    ):
        enum_type.drop(bind, checkfirst=True)
