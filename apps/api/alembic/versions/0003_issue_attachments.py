"""issue attachments (dedup by content hash)

Revision ID: 0003_issue_attachments
Revises: 0002_ticket_sequences
Create Date: 2026-10-08
"""
from alembic import op
import sqlalchemy as sa

revision = "0003_issue_attachments"
down_revision = "0002_ticket_sequences"
branch_labels = None
depends_on = None

def upgrade():
    op.create_table(
        "issue_attachments",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("issue_id", sa.String(length=36), sa.ForeignKey("issues.id", ondelete="CASCADE"), nullable=False),
        sa.Column("filename", sa.String(length=255), nullable=False),
        sa.Column("mime_type", sa.String(length=100), nullable=False),
        sa.Column("file_size", sa.Integer(), nullable=False),
        sa.Column("sha256", sa.String(length=64), nullable=False),
        sa.Column("content", sa.LargeBinary(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.CheckConstraint("file_size > 0", name="ck_attachment_size_positive"),
    )
    op.create_index("ix_issue_attachments_issue", "issue_attachments", ["issue_id"])
    op.create_unique_constraint("uq_issue_attachment_sha", "issue_attachments", ["issue_id", "sha256"])

def downgrade():
    op.drop_constraint("uq_issue_attachment_sha", "issue_attachments", type_="unique")
    op.drop_index("ix_issue_attachments_issue", table_name="issue_attachments")
    op.drop_table("issue_attachments")
