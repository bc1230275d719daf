"""Initial request store schema.

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19 10:00:00
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "requests",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("payload_json", sa.String(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("target_owner", sa.String(), nullable=True),
        sa.Column("target_repo", sa.String(), nullable=True),
        sa.Column("pr_number", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.String(), nullable=False),
        sa.Column("updated_at", sa.String(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_requests_repo_pr",
        "requests",
        ["target_owner", "target_repo", "pr_number"],
        unique=False,
    )
    op.create_index(
        "idx_requests_updated_at", "requests", ["updated_at"], unique=False
    )

    op.create_table(
        "webhook_deliveries",
        sa.Column("delivery_id", sa.String(), nullable=False),
        sa.Column("event", sa.String(), nullable=True),
        sa.Column("received_at", sa.String(), nullable=False),
        sa.PrimaryKeyConstraint("delivery_id"),
    )


def downgrade() -> None:
    op.drop_table("webhook_deliveries")
    op.drop_index("idx_requests_updated_at", table_name="requests")
    op.drop_index("idx_requests_repo_pr", table_name="requests")
    op.drop_table("requests")
