"""initial_deed_workflow_schema

Creates the deed workflow tables:
  - forms             — submitted deed forms with status, current stage, version
  - form_approvals    — one record per form and stage (staff1–staff5)
  - form_notes        — append-only admin notes
  - form_deliveries   — post-lock delivery sub-state
  - audit_logs        — immutable transition trail

Tables created conditionally (IF NOT EXISTS semantics) so the revision can run
against databases that already received these tables via db.create_all()
in a development environment.

Revision ID: 5c1e9a7d2b40
Revises:
Create Date: 2024-03-01 09:00:00.000000
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = '5c1e9a7d2b40'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing = set(inspector.get_table_names())

    # ── Forms ─────────────────────────────────────────────────────────────
    if "forms" not in existing:
        op.create_table(
            "forms",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("service_type", sa.String(length=40), nullable=False,
                      comment="sale-deed | will-deed | trust-deed | ... | e-stamp | map-module"),
            sa.Column("submitted_by", sa.String(length=64), nullable=False),
            sa.Column("submitted_by_role", sa.String(length=20), nullable=False,
                      server_default="user"),
            sa.Column("fields", sa.JSON(), nullable=False),
            sa.Column("status", sa.String(length=30), nullable=False,
                      server_default="submitted"),
            sa.Column("current_stage", sa.String(length=10), nullable=True),
            sa.Column("document_ready", sa.Boolean(), nullable=False,
                      server_default=sa.false()),
            sa.Column("final_done_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("final_done_by", sa.String(length=64), nullable=True),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("last_activity_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("last_activity_by", sa.String(length=64), nullable=True),
            sa.CheckConstraint(
                "status IN ('draft','submitted','in-progress','under_review','verified',"
                "'needs_correction','cross_verified','pending_cross_verification',"
                "'rejected','completed','locked_by_staff5')",
                name="ck_form_status",
            ),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_forms_service_type", "forms", ["service_type"])
        op.create_index("ix_forms_submitted_by", "forms", ["submitted_by"])
        op.create_index("ix_forms_status", "forms", ["status"])
        op.create_index("ix_forms_current_stage", "forms", ["current_stage"])
        op.create_index("ix_forms_status_service_type", "forms", ["status", "service_type"])

    # ── Approval records ──────────────────────────────────────────────────
    if "form_approvals" not in existing:
        op.create_table(
            "form_approvals",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("form_id", sa.String(length=36), nullable=False),
            sa.Column("stage_key", sa.String(length=10), nullable=False),
            sa.Column("outcome", sa.String(length=20), nullable=False,
                      server_default="pending",
                      comment="pending | approved | rejected | needs_correction"),
            sa.Column("verified_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("verified_by", sa.String(length=64), nullable=True),
            sa.Column("notes", sa.Text(), nullable=False, server_default=""),
            sa.Column("verification_aspect", sa.String(length=20), nullable=True),
            sa.Column("corrections", sa.JSON(), nullable=False),
            sa.Column("pass_number", sa.Integer(), nullable=False, server_default="0"),
            sa.CheckConstraint(
                "outcome IN ('pending','approved','rejected','needs_correction')",
                name="ck_form_approval_outcome",
            ),
            sa.ForeignKeyConstraint(["form_id"], ["forms.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("form_id", "stage_key", name="uq_form_approval_stage"),
        )
        op.create_index("ix_form_approvals_form_id", "form_approvals", ["form_id"])

    # ── Notes ─────────────────────────────────────────────────────────────
    if "form_notes" not in existing:
        op.create_table(
            "form_notes",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("form_id", sa.String(length=36), nullable=False),
            sa.Column("stage_key", sa.String(length=10), nullable=True),
            sa.Column("added_by", sa.String(length=64), nullable=False),
            sa.Column("added_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("note", sa.Text(), nullable=False),
            sa.ForeignKeyConstraint(["form_id"], ["forms.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_form_notes_form_id", "form_notes", ["form_id"])

    # ── Delivery ──────────────────────────────────────────────────────────
    if "form_deliveries" not in existing:
        op.create_table(
            "form_deliveries",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("form_id", sa.String(length=36), nullable=False),
            sa.Column("status", sa.String(length=30), nullable=False,
                      server_default="pending_user_selection"),
            sa.Column("ready_for_delivery_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("user_method", sa.String(length=20), nullable=True),
            sa.Column("user_address", sa.Text(), nullable=True),
            sa.Column("user_phone", sa.String(length=30), nullable=True),
            sa.Column("user_email", sa.String(length=255), nullable=True),
            sa.Column("user_selected_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("staff4_method", sa.String(length=20), nullable=True),
            sa.Column("staff4_address", sa.Text(), nullable=True),
            sa.Column("staff4_phone", sa.String(length=30), nullable=True),
            sa.Column("staff4_email", sa.String(length=255), nullable=True),
            sa.Column("staff4_decided_by", sa.String(length=64), nullable=True),
            sa.Column("staff4_decided_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("staff4_notes", sa.Text(), nullable=True),
            sa.Column("final_method", sa.String(length=20), nullable=True),
            sa.Column("tracking_number", sa.String(length=100), nullable=True),
            sa.Column("dispatched_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("dispatched_by", sa.String(length=64), nullable=True),
            sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("delivered_by", sa.String(length=64), nullable=True),
            sa.Column("delivery_notes", sa.Text(), nullable=True),
            sa.CheckConstraint(
                "status IN ('pending_user_selection','user_selected','staff4_decided',"
                "'dispatched','delivered')",
                name="ck_form_delivery_status",
            ),
            sa.ForeignKeyConstraint(["form_id"], ["forms.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("form_id"),
        )

    # ── Audit trail ───────────────────────────────────────────────────────
    if "audit_logs" not in existing:
        op.create_table(
            "audit_logs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("entity_type", sa.String(length=30), nullable=False),
            sa.Column("entity_id", sa.String(length=36), nullable=False),
            sa.Column("action", sa.String(length=60), nullable=False),
            sa.Column("actor", sa.String(length=64), nullable=False,
                      server_default="system"),
            sa.Column("actor_role", sa.String(length=20), nullable=True),
            sa.Column("request_id", sa.String(length=36), nullable=True),
            sa.Column("diff_json", sa.Text(), nullable=True),
            sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_audit_entity", "audit_logs", ["entity_type", "entity_id"])
        op.create_index("idx_audit_actor", "audit_logs", ["actor"])
        op.create_index("idx_audit_action", "audit_logs", ["action"])
        op.create_index("idx_audit_ts", "audit_logs", ["timestamp"])


def downgrade():
    op.drop_table("audit_logs")
    op.drop_table("form_deliveries")
    op.drop_table("form_notes")
    op.drop_table("form_approvals")
    op.drop_table("forms")
