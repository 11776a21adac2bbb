"""issue categories + issues (idempotent by local_id)

Revision ID: 0001_issues
Revises:
Create Date: 2026-10-05
"""
from alembic import op
import sqlalchemy as sa

revision = "0001_issues"
down_revision = None
branch_labels = None
depends_on = None

def upgrade():
    op.create_table(
        "issue_categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("slug", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("sla_hours", sa.Integer(), nullable=True),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
    )
    op.create_index("ix_issue_categories_slug", "issue_categories", ["slug"], unique=True)

    op.create_table(
        "issues",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("ticket_number", sa.String(length=32), nullable=False),
        sa.Column("local_id", sa.String(length=64), nullable=False),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("issue_categories.id"), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("latitude", sa.Float(), nullable=False),
        sa.Column("longitude", sa.Float(), nullable=False),
        sa.Column("address", sa.String(length=500), nullable=True),
        sa.Column("priority", sa.String(length=16), nullable=False, server_default=sa.text("'MEDIUM'")),
        sa.Column("status", sa.String(length=32), nullable=False, server_default=sa.text("'OPEN'")),
        sa.Column("submitted_by", sa.String(length=64), nullable=True),
        sa.Column("sla_target_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.CheckConstraint("latitude >= -90 AND latitude <= 90", name="ck_issue_latitude"),
        sa.CheckConstraint("longitude >= -180 AND longitude <= 180", name="ck_issue_longitude"),
        sa.CheckConstraint("priority in ('LOW','MEDIUM','HIGH','CRITICAL')", name="ck_issue_priority"),
    )
    op.create_unique_constraint("uq_issues_ticket_number", "issues", ["ticket_number"])
    op.create_unique_constraint("uq_issues_local_id", "issues", ["local_id"])
    op.create_index("ix_issues_category_id", "issues", ["category_id"])
    op.create_index("ix_issues_status", "issues", ["status"])
    op.create_index("ix_issues_created_at", "issues", ["created_at"])

def downgrade():
    op.drop_index("ix_issues_created_at", table_name="issues")
    op.drop_index("ix_issues_status", table_name="issues")
    op.drop_index("ix_issues_category_id", table_name="issues")
    op.drop_constraint("uq_issues_local_id", "issues", type_="unique")
    op.drop_constraint("uq_issues_ticket_number", "issues", type_="unique")
    op.drop_table("issues")

    op.drop_index("ix_issue_categories_slug", table_name="issue_categories")
    op.drop_table("issue_categories")
