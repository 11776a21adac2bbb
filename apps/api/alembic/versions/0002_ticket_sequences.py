"""ticket sequences (atomic, year scoped)

Revision ID: 0002_ticket_sequences
Revises: 0001_issues
Create Date: 2026-10-06
"""
from alembic import op
import sqlalchemy as sa

revision = "0002_ticket_sequences"
down_revision = "0001_issues"
branch_labels = None
depends_on = None

def upgrade():
    op.create_table(
        "ticket_sequences",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("prefix", sa.String(length=16), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("last_value", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.CheckConstraint("last_value >= 0", name="ck_ticket_sequences_non_negative"),
    )
    op.create_unique_constraint("uq_ticket_sequences_prefix_year", "ticket_sequences", ["prefix", "year"])

def downgrade():
    op.drop_constraint("uq_ticket_sequences_prefix_year", "ticket_sequences", type_="unique")
    op.drop_table("ticket_sequences")
