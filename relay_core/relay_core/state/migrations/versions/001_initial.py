"""Initial schema for the relay state store.

Creates tenants, tenant_secrets, jobs, invoices, invoice_artifacts,
pdp_submissions, audit_log and idempotency_keys.  Every business table
carries ``tenant_id``; uniqueness constraints are tenant-scoped.

Revision ID: 001
Revises: None
Create Date: 2026-09-01 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_json = postgresql.JSONB().with_variant(sa.JSON(), "sqlite")


def _timestamp(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:
    # ------------------------------------------------------------------
    # tenants
    # ------------------------------------------------------------------
    op.create_table(
        "tenants",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("name", sa.String(256), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="active"),
        sa.Column("config", _json, nullable=False),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.CheckConstraint("status IN ('active','inactive')", name="ck_tenants_status"),
    )

    # ------------------------------------------------------------------
    # tenant_secrets
    # ------------------------------------------------------------------
    op.create_table(
        "tenant_secrets",
        sa.Column(
            "tenant_id",
            sa.String(64),
            sa.ForeignKey("tenants.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(64), nullable=False),
        sa.Column("ciphertext", sa.Text(), nullable=False),
        sa.Column("key_version", sa.Integer(), nullable=False, server_default="1"),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("tenant_id", "name"),
    )

    # ------------------------------------------------------------------
    # jobs
    # ------------------------------------------------------------------
    op.create_table(
        "jobs",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("type", sa.String(32), nullable=False),
        sa.Column("payload", _json, nullable=False),
        sa.Column("tenant_id", sa.String(64), nullable=False, server_default=""),
        sa.Column("correlation_id", sa.String(64), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="queued"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="5"),
        _timestamp("run_at"),
        sa.Column("idempotency_key", sa.String(512), nullable=True),
        sa.Column("locked_by", sa.String(128), nullable=True),
        _timestamp("locked_at", nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.CheckConstraint(
            "status IN ('queued','running','completed','failed')",
            name="ck_jobs_status",
        ),
        sa.CheckConstraint("attempts >= 0", name="ck_jobs_attempts"),
        sa.UniqueConstraint("tenant_id", "type", "idempotency_key", name="uq_jobs_tenant_type_key"),
    )
    op.create_index("ix_jobs_status_run_at", "jobs", ["status", "run_at"])
    op.create_index("ix_jobs_locked_at", "jobs", ["status", "locked_at"])

    # ------------------------------------------------------------------
    # invoices
    # ------------------------------------------------------------------
    op.create_table(
        "invoices",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("tenant_id", sa.String(64), sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column("ghl_invoice_id", sa.String(128), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="NEW"),
        sa.Column("raw_payload", _json, nullable=True),
        sa.Column("canonical_payload", _json, nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.CheckConstraint(
            "status IN ('NEW','FETCHED','MAPPED','GENERATED','SUBMITTED','SYNCED',"
            "'ACCEPTED','REJECTED','PAID','ERROR')",
            name="ck_invoices_status",
        ),
        sa.UniqueConstraint("tenant_id", "ghl_invoice_id", name="uq_invoices_tenant_ghl"),
    )
    op.create_index("ix_invoices_tenant_status", "invoices", ["tenant_id", "status"])
    op.create_index("ix_invoices_tenant_created", "invoices", ["tenant_id", "created_at"])

    # ------------------------------------------------------------------
    # invoice_artifacts
    # ------------------------------------------------------------------
    op.create_table(
        "invoice_artifacts",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column(
            "invoice_id",
            sa.String(36),
            sa.ForeignKey("invoices.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("pdf_key", sa.String(1024), nullable=True),
        sa.Column("xml_key", sa.String(1024), nullable=True),
        sa.Column("pdf_sha256", sa.String(64), nullable=True),
        sa.Column("xml_sha256", sa.String(64), nullable=True),
        _timestamp("created_at"),
    )
    op.create_index(
        "ix_invoice_artifacts_invoice",
        "invoice_artifacts",
        ["tenant_id", "invoice_id", "created_at"],
    )

    # ------------------------------------------------------------------
    # pdp_submissions
    # ------------------------------------------------------------------
    op.create_table(
        "pdp_submissions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column(
            "invoice_id",
            sa.String(36),
            sa.ForeignKey("invoices.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("provider", sa.String(64), nullable=False),
        sa.Column("submission_id", sa.String(256), nullable=False),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("status_raw", _json, nullable=True),
        _timestamp("last_checked_at", nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.UniqueConstraint(
            "tenant_id",
            "invoice_id",
            "provider",
            name="uq_pdp_submissions_tenant_invoice_provider",
        ),
    )
    op.create_index(
        "ix_pdp_submissions_status_checked",
        "pdp_submissions",
        ["status", "last_checked_at"],
    )

    # ------------------------------------------------------------------
    # audit_log
    # ------------------------------------------------------------------
    op.create_table(
        "audit_log",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("correlation_id", sa.String(64), nullable=True),
        sa.Column("actor", sa.String(64), nullable=False),
        sa.Column("event_type", sa.String(128), nullable=False),
        sa.Column("invoice_id", sa.String(36), nullable=True),
        sa.Column("job_id", sa.String(36), nullable=True),
        sa.Column("payload", _json, nullable=False),
        sa.Column("payload_hash", sa.String(64), nullable=False),
        sa.Column("previous_hash", sa.String(64), nullable=True),
        sa.Column("entry_hash", sa.String(64), nullable=False),
        _timestamp("created_at"),
    )
    op.create_index("ix_audit_tenant_created", "audit_log", ["tenant_id", "created_at"])
    op.create_index("ix_audit_tenant_invoice", "audit_log", ["tenant_id", "invoice_id"])
    op.create_index("ix_audit_tenant_event", "audit_log", ["tenant_id", "event_type"])

    # ------------------------------------------------------------------
    # idempotency_keys
    # ------------------------------------------------------------------
    op.create_table(
        "idempotency_keys",
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("step", sa.String(32), nullable=False),
        sa.Column("key", sa.String(512), nullable=False),
        sa.Column("invoice_id", sa.String(36), nullable=True),
        sa.Column("correlation_id", sa.String(64), nullable=True),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("tenant_id", "step", "key"),
    )


def downgrade() -> None:
    op.drop_table("idempotency_keys")
    op.drop_index("ix_audit_tenant_event", table_name="audit_log")
    op.drop_index("ix_audit_tenant_invoice", table_name="audit_log")
    op.drop_index("ix_audit_tenant_created", table_name="audit_log")
    op.drop_table("audit_log")
    op.drop_index("ix_pdp_submissions_status_checked", table_name="pdp_submissions")
    op.drop_table("pdp_submissions")
    op.drop_index("ix_invoice_artifacts_invoice", table_name="invoice_artifacts")
    op.drop_table("invoice_artifacts")
    op.drop_index("ix_invoices_tenant_created", table_name="invoices")
    op.drop_index("ix_invoices_tenant_status", table_name="invoices")
    op.drop_table("invoices")
    op.drop_index("ix_jobs_locked_at", table_name="jobs")
    op.drop_index("ix_jobs_status_run_at", table_name="jobs")
    op.drop_table("jobs")
    op.drop_table("tenant_secrets")
    op.drop_table("tenants")
