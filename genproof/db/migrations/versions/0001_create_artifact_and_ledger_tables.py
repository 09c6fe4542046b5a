"""Create artifact and ledger state tables

Revision ID: 0001
Revises:
Create Date: 2026-10-18

Artifacts persisted by the worker pool plus the tables the event
reconciler writes: verification audit, subject counters, access grants and
requests, artifact submissions, trait aggregates and the consumer cursor.
"""
from __future__ import annotations

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision = "0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "artifacts",
        sa.Column("id", sa.String(length=26), primary_key=True),
        sa.Column("subject_id", sa.String(length=128), nullable=False),
        sa.Column("trait_type", sa.String(length=32), nullable=False),
        sa.Column("content_hash", sa.String(length=130), nullable=False, unique=True),
        sa.Column("public_inputs", sa.JSON, nullable=False),
        sa.Column("verification_key", sa.Text, nullable=False),
        sa.Column("chain_ref", sa.String(length=130), nullable=True),
        sa.Column("commitment_hash", sa.String(length=130), nullable=False),
        sa.Column("content_id", sa.String(length=256), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("chain_verified", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("verification_tx", sa.String(length=130), nullable=True),
        sa.Column("verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_artifacts_subject_id", "artifacts", ["subject_id"])
    op.create_index("ix_artifacts_trait_type", "artifacts", ["trait_type"])
    op.create_index("ix_artifacts_commitment_hash", "artifacts", ["commitment_hash"])
    op.create_index("ix_artifacts_expires_at", "artifacts", ["expires_at"])

    op.create_table(
        "verification_audit",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("tx_hash", sa.String(length=130), nullable=False, unique=True),
        sa.Column("block_number", sa.Integer, nullable=False),
        sa.Column("subject_ref", sa.String(length=128), nullable=False),
        sa.Column("verifier_ref", sa.String(length=128), nullable=True),
        sa.Column("artifact_ref", sa.String(length=130), nullable=True),
        sa.Column("trait_type", sa.String(length=32), nullable=True),
        sa.Column("event_timestamp", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "recorded_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )
    op.create_index(
        "ix_verification_audit_subject_ref", "verification_audit", ["subject_ref"]
    )

    op.create_table(
        "subject_counters",
        sa.Column("subject_id", sa.String(length=128), primary_key=True),
        sa.Column("counter", sa.String(length=64), primary_key=True),
        sa.Column("value", sa.Integer, nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "access_grants",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("subject_id", sa.String(length=128), nullable=False),
        sa.Column("grantee_id", sa.String(length=128), nullable=False),
        sa.Column("scopes", sa.JSON, nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_block", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_tx", sa.String(length=130), nullable=False, server_default=""),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("subject_id", "grantee_id", name="uq_access_grants_pair"),
    )

    op.create_table(
        "access_requests",
        sa.Column("id", sa.String(length=26), primary_key=True),
        sa.Column("subject_id", sa.String(length=128), nullable=False),
        sa.Column("requester_id", sa.String(length=128), nullable=False),
        sa.Column("scopes", sa.JSON, nullable=False),
        sa.Column(
            "status",
            sa.Enum(
                "pending", "approved", "denied",
                name="access_request_status",
                create_constraint=True,
            ),
            nullable=False,
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("responded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_tx", sa.String(length=130), nullable=True),
    )
    op.create_index("ix_access_requests_status", "access_requests", ["status"])
    op.create_index(
        "ix_access_requests_pair_status",
        "access_requests",
        ["subject_id", "requester_id", "status"],
    )

    op.create_table(
        "artifact_submissions",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("tx_hash", sa.String(length=130), nullable=False, unique=True),
        sa.Column("block_number", sa.Integer, nullable=False),
        sa.Column("subject_ref", sa.String(length=128), nullable=False),
        sa.Column("artifact_ref", sa.String(length=130), nullable=True),
        sa.Column("trait_type", sa.String(length=32), nullable=True),
        sa.Column(
            "submitted_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )
    op.create_index(
        "ix_artifact_submissions_subject_ref", "artifact_submissions", ["subject_ref"]
    )

    op.create_table(
        "trait_aggregates",
        sa.Column("trait_type", sa.String(length=32), primary_key=True),
        sa.Column("submission_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_updated", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "reconciler_cursor",
        sa.Column("name", sa.String(length=64), primary_key=True),
        sa.Column("block_number", sa.Integer, nullable=False, server_default="0"),
        sa.Column("tx_hash", sa.String(length=130), nullable=False, server_default=""),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )


def downgrade() -> None:
    op.drop_table("reconciler_cursor")
    op.drop_table("trait_aggregates")
    op.drop_index("ix_artifact_submissions_subject_ref", table_name="artifact_submissions")
    op.drop_table("artifact_submissions")
    op.drop_index("ix_access_requests_pair_status", table_name="access_requests")
    op.drop_index("ix_access_requests_status", table_name="access_requests")
    op.drop_table("access_requests")
    sa.Enum(name="access_request_status").drop(op.get_bind(), checkfirst=True)
    op.drop_table("access_grants")
    op.drop_table("subject_counters")
    op.drop_index("ix_verification_audit_subject_ref", table_name="verification_audit")
    op.drop_table("verification_audit")
    op.drop_index("ix_artifacts_expires_at", table_name="artifacts")
    op.drop_index("ix_artifacts_commitment_hash", table_name="artifacts")
    op.drop_index("ix_artifacts_trait_type", table_name="artifacts")
    op.drop_index("ix_artifacts_subject_id", table_name="artifacts")
    op.drop_table("artifacts")
