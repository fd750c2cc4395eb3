"""initial_schema

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "0001_initial_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

REFILL_STATUSES = (
    "SCHEDULED",
    "PENDING_PAYMENT",
    "PENDING_ADMIN",
    "APPROVED",
    "PENDING_PROVIDER",
    "ON_HOLD",
    "COMPLETED",
    "DECLINED",
    "CANCELLED",
)
ASSIGNMENT_SOURCES = ("self_select", "round_robin", "state_match", "manual")


def _created_at(index: bool = False) -> sa.Column:
    return sa.Column(
        "created_at",
        sa.DateTime(timezone=True),
        server_default=sa.text("CURRENT_TIMESTAMP"),
        nullable=False,
        index=index,
    )


def _updated_at() -> sa.Column:
    return sa.Column(
        "updated_at",
        sa.DateTime(timezone=True),
        server_default=sa.text("CURRENT_TIMESTAMP"),
        nullable=False,
    )


def upgrade() -> None:
    op.create_table(
        "clinics",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("slug", sa.String(length=100), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("default_bud_days", sa.Integer(), server_default=sa.text("90"), nullable=False),
        _created_at(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_clinics_slug"), "clinics", ["slug"], unique=True)

    op.create_table(
        "providers",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("clinic_id", sa.Integer(), nullable=False),
        sa.Column("first_name", sa.String(length=100), nullable=False),
        sa.Column("last_name", sa.String(length=100), nullable=False),
        sa.Column("npi", sa.String(length=20), nullable=True),
        sa.Column("license_states", sa.JSON(), nullable=False),
        sa.Column(
            "status",
            sa.Enum("ACTIVE", "INACTIVE", name="provider_status_enum"),
            server_default=sa.text("'ACTIVE'"),
            nullable=False,
        ),
        _created_at(),
        sa.ForeignKeyConstraint(["clinic_id"], ["clinics.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_providers_clinic_id"), "providers", ["clinic_id"])

    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("clinic_id", sa.Integer(), nullable=True),
        sa.Column("provider_id", sa.Integer(), nullable=True),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("first_name", sa.String(length=100), nullable=False),
        sa.Column("last_name", sa.String(length=100), nullable=False),
        sa.Column(
            "role",
            sa.Enum("SUPER_ADMIN", "ADMIN", "PROVIDER", "STAFF", name="role_name_enum"),
            nullable=False,
        ),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        _created_at(),
        _updated_at(),
        sa.ForeignKeyConstraint(["clinic_id"], ["clinics.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["provider_id"], ["providers.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email", "clinic_id", name="uq_users_email_clinic"),
    )
    op.create_index(op.f("ix_users_clinic_id"), "users", ["clinic_id"])

    op.create_table(
        "patients",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("clinic_id", sa.Integer(), nullable=False),
        sa.Column("first_name", sa.String(length=100), nullable=False),
        sa.Column("last_name", sa.String(length=100), nullable=False),
        sa.Column("state", sa.String(length=2), nullable=True),
        _created_at(),
        sa.ForeignKeyConstraint(["clinic_id"], ["clinics.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_patients_clinic_id"), "patients", ["clinic_id"])

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("clinic_id", sa.Integer(), nullable=False),
        sa.Column("patient_id", sa.Integer(), nullable=False),
        sa.Column(
            "status",
            sa.Enum("ACTIVE", "PAUSED", "CANCELED", name="subscription_status_enum"),
            nullable=False,
        ),
        sa.Column("plan_name", sa.String(length=255), nullable=True),
        sa.Column("medication_name", sa.String(length=255), nullable=True),
        sa.Column("vial_count", sa.Integer(), server_default=sa.text("1"), nullable=False),
        sa.Column("package_months", sa.Integer(), nullable=True),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_billing_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("paused_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_reason", sa.String(length=500), nullable=True),
        _created_at(),
        _updated_at(),
        sa.CheckConstraint(
            "(status = 'ACTIVE' AND next_billing_date IS NOT NULL) "
            "OR (status <> 'ACTIVE' AND next_billing_date IS NULL)",
            name="ck_subscriptions_next_billing_date_active",
        ),
        sa.ForeignKeyConstraint(["clinic_id"], ["clinics.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["patient_id"], ["patients.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_subscriptions_clinic_id"), "subscriptions", ["clinic_id"])
    op.create_index(op.f("ix_subscriptions_patient_id"), "subscriptions", ["patient_id"])
    op.create_index(op.f("ix_subscriptions_status"), "subscriptions", ["status"])

    op.create_table(
        "refill_queue",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("clinic_id", sa.Integer(), nullable=False),
        sa.Column("patient_id", sa.Integer(), nullable=False),
        sa.Column("subscription_id", sa.Integer(), nullable=True),
        sa.Column("parent_refill_id", sa.Integer(), nullable=True),
        sa.Column("order_id", sa.Integer(), nullable=True),
        sa.Column("status", sa.Enum(*REFILL_STATUSES, name="refill_status_enum"), nullable=False),
        sa.Column("status_reason", sa.Text(), nullable=True),
        sa.Column("medication_name", sa.String(length=255), nullable=True),
        sa.Column("plan_name", sa.String(length=255), nullable=True),
        sa.Column("vial_count", sa.Integer(), server_default=sa.text("1"), nullable=False),
        sa.Column("refill_interval_days", sa.Integer(), server_default=sa.text("30"), nullable=False),
        sa.Column("next_refill_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("shipment_number", sa.Integer(), nullable=True),
        sa.Column("total_shipments", sa.Integer(), nullable=True),
        sa.Column("bud_days", sa.Integer(), nullable=True),
        sa.Column("payment_verified", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("payment_method", sa.String(length=50), nullable=True),
        sa.Column("payment_reference", sa.String(length=255), nullable=True),
        sa.Column("payment_verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payment_verified_by", sa.Integer(), nullable=True),
        sa.Column("admin_approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("admin_approved_by", sa.Integer(), nullable=True),
        sa.Column("admin_notes", sa.Text(), nullable=True),
        sa.Column("provider_queued_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        _updated_at(),
        sa.ForeignKeyConstraint(["clinic_id"], ["clinics.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["patient_id"], ["patients.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["subscription_id"], ["subscriptions.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["parent_refill_id"], ["refill_queue.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["payment_verified_by"], ["users.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["admin_approved_by"], ["users.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    for column in ("clinic_id", "patient_id", "subscription_id", "parent_refill_id", "status", "next_refill_date"):
        op.create_index(op.f(f"ix_refill_queue_{column}"), "refill_queue", [column])

    op.create_table(
        "orders",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("clinic_id", sa.Integer(), nullable=False),
        sa.Column("patient_id", sa.Integer(), nullable=False),
        sa.Column("refill_id", sa.Integer(), nullable=True),
        sa.Column("assigned_provider_id", sa.Integer(), nullable=True),
        sa.Column("medication_name", sa.String(length=255), nullable=True),
        sa.Column(
            "status",
            sa.Enum("queued_for_provider", "completed", "declined", "cancelled", name="order_status_enum"),
            nullable=False,
        ),
        sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("assignment_source", sa.Enum(*ASSIGNMENT_SOURCES, name="assignment_source_enum"), nullable=True),
        sa.Column("declined_reason", sa.Text(), nullable=True),
        sa.Column("declined_by", sa.Integer(), nullable=True),
        sa.Column("declined_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_by", sa.Integer(), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("pharmacy_reference", sa.String(length=255), nullable=True),
        _created_at(index=True),
        sa.ForeignKeyConstraint(["clinic_id"], ["clinics.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["patient_id"], ["patients.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["refill_id"], ["refill_queue.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["assigned_provider_id"], ["providers.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["declined_by"], ["users.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["completed_by"], ["users.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("refill_id"),
    )
    for column in ("clinic_id", "patient_id", "assigned_provider_id", "status"):
        op.create_index(op.f(f"ix_orders_{column}"), "orders", [column])

    op.create_table(
        "provider_assignments",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("order_id", sa.Integer(), nullable=False),
        sa.Column("provider_id", sa.Integer(), nullable=False),
        sa.Column("clinic_id", sa.Integer(), nullable=False),
        sa.Column(
            "source",
            postgresql.ENUM(*ASSIGNMENT_SOURCES, name="assignment_source_enum", create_type=False),
            nullable=False,
        ),
        sa.Column("assigned_by", sa.Integer(), nullable=True),
        sa.Column(
            "assigned_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
        ),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["provider_id"], ["providers.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["clinic_id"], ["clinics.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["assigned_by"], ["users.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("order_id"),
    )
    op.create_index(op.f("ix_provider_assignments_provider_id"), "provider_assignments", ["provider_id"])
    op.create_index(op.f("ix_provider_assignments_clinic_id"), "provider_assignments", ["clinic_id"])

    op.create_table(
        "provider_routing_configs",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("clinic_id", sa.Integer(), nullable=False),
        sa.Column("routing_enabled", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column(
            "routing_strategy",
            sa.Enum(
                "PROVIDER_CHOICE",
                "ROUND_ROBIN",
                "STATE_LICENSE_MATCH",
                "MANUAL_ASSIGNMENT",
                name="routing_strategy_enum",
            ),
            nullable=False,
        ),
        sa.Column("auto_assign_on_approval", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("last_assigned_index", sa.Integer(), server_default=sa.text("-1"), nullable=False),
        sa.Column("last_assigned_provider_id", sa.Integer(), nullable=True),
        _updated_at(),
        sa.ForeignKeyConstraint(["clinic_id"], ["clinics.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["last_assigned_provider_id"], ["providers.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("clinic_id"),
    )

    op.create_table(
        "idempotency_records",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("key", sa.String(length=255), nullable=False),
        sa.Column("resource", sa.String(length=100), nullable=False),
        sa.Column("clinic_id", sa.Integer(), nullable=True),
        sa.Column("user_id", sa.Integer(), nullable=True),
        sa.Column("request_fingerprint", sa.String(length=255), nullable=True),
        sa.Column("response_status", sa.Integer(), nullable=True),
        sa.Column("response_body", sa.Text(), nullable=True),
        _created_at(index=True),
        sa.ForeignKeyConstraint(["clinic_id"], ["clinics.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("key", "resource", name="uq_idempotency_key_resource"),
    )
    op.create_index(op.f("ix_idempotency_records_clinic_id"), "idempotency_records", ["clinic_id"])

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("clinic_id", sa.Integer(), nullable=True),
        sa.Column("actor_id", sa.Integer(), nullable=True),
        sa.Column("actor_role", sa.String(length=50), nullable=True),
        sa.Column("action", sa.String(length=100), nullable=False),
        sa.Column("entity_type", sa.String(length=50), nullable=False),
        sa.Column("entity_id", sa.Integer(), nullable=True),
        sa.Column("outcome", sa.String(length=20), server_default=sa.text("'SUCCESS'"), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("metadata_json", sa.Text(), nullable=True),
        _created_at(index=True),
        sa.ForeignKeyConstraint(["clinic_id"], ["clinics.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["actor_id"], ["users.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    for column in ("clinic_id", "action", "entity_id"):
        op.create_index(op.f(f"ix_audit_logs_{column}"), "audit_logs", [column])

    op.create_table(
        "dead_letter_events",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("clinic_id", sa.Integer(), nullable=True),
        sa.Column(
            "kind",
            sa.Enum("PAYMENT_WEBHOOK", "PHARMACY_SUBMISSION", name="dead_letter_kind_enum"),
            nullable=False,
        ),
        sa.Column("payload", sa.Text(), nullable=False),
        sa.Column(
            "status",
            sa.Enum("PENDING", "SUCCEEDED", "ABANDONED", name="dead_letter_status_enum"),
            nullable=False,
        ),
        sa.Column("attempts", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("max_attempts", sa.Integer(), server_default=sa.text("5"), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.ForeignKeyConstraint(["clinic_id"], ["clinics.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_dead_letter_events_clinic_id"), "dead_letter_events", ["clinic_id"])
    op.create_index(op.f("ix_dead_letter_events_status"), "dead_letter_events", ["status"])

    op.create_table(
        "job_runs",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("job_type", sa.String(length=50), nullable=False),
        sa.Column(
            "status",
            sa.Enum("PENDING", "RUNNING", "COMPLETED", "FAILED", name="job_status_enum"),
            server_default=sa.text("'PENDING'"),
            nullable=False,
        ),
        sa.Column("triggered_by", sa.Integer(), nullable=True),
        sa.Column("summary", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        _created_at(index=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["triggered_by"], ["users.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_job_runs_job_type"), "job_runs", ["job_type"])
    op.create_index(op.f("ix_job_runs_status"), "job_runs", ["status"])


def downgrade() -> None:
    for table in (
        "job_runs",
        "dead_letter_events",
        "audit_logs",
        "idempotency_records",
        "provider_routing_configs",
        "provider_assignments",
        "orders",
        "refill_queue",
        "subscriptions",
        "patients",
        "users",
        "providers",
        "clinics",
    ):
        op.drop_table(table)

    bind = op.get_bind()
    for enum_name in (
        "job_status_enum",
        "dead_letter_status_enum",
        "dead_letter_kind_enum",
        "routing_strategy_enum",
        "assignment_source_enum",
        "order_status_enum",
        "refill_status_enum",
        "subscription_status_enum",
        "role_name_enum",
        "provider_status_enum",
    ):
        sa.Enum(name=enum_name).drop(bind, checkfirst=True)
