"""Create pin records table

Revision ID: 0002
Revises: 0001
Create Date: 2026-10-18

Pin records move out of process memory so the API, the CLI and worker
processes resolve the same subject commitments.
"""
from __future__ import annotations

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision = "0002"
down_revision = "0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "pin_records",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("content_id", sa.String(length=256), nullable=False),
        sa.Column("owner_id", sa.String(length=128), nullable=True),
        sa.Column("commitment_hash", sa.String(length=130), nullable=False),
        sa.Column("kind", sa.String(length=32), nullable=False, server_default="payload"),
        sa.Column("durable", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column(
            "pinned_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("verified_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_pin_records_content_id", "pin_records", ["content_id"])
    op.create_index("ix_pin_records_commitment_hash", "pin_records", ["commitment_hash"])
    op.create_index("ix_pin_records_owner_kind", "pin_records", ["owner_id", "kind"])


def downgrade() -> None:
    op.drop_index("ix_pin_records_owner_kind", table_name="pin_records")
    op.drop_index("ix_pin_records_commitment_hash", table_name="pin_records")
    op.drop_index("ix_pin_records_content_id", table_name="pin_records")
    op.drop_table("pin_records")
