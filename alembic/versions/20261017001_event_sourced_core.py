"""Event store, tenancy tables and projections."""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "20261017001"
down_revision = None
branch_labels = None
depends_on = None

TENANT_SCOPED_TABLES = (
    "events",
    "patient_view",
    "patient_journey_view",
    "conversation_view",
    "message_view",
    "appointment_view",
    "message_logs",
    "audit_logs",
)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    ]


def upgrade() -> None:
    organization_status = postgresql.ENUM("active", "inactive", name="organization_status")
    clinic_status = postgresql.ENUM("active", "inactive", name="clinic_status")
    member_role = postgresql.ENUM("admin", "manager", "doctor", "receptionist", name="member_role")
    member_status = postgresql.ENUM("active", "inactive", "suspended", name="member_status")

    op.create_table(
        "organizations",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        *_timestamps(),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("slug", sa.String(length=100), nullable=False),
        sa.Column("status", organization_status, nullable=False, server_default="active"),
        sa.UniqueConstraint("slug", name="uq_organizations_slug"),
    )

    op.create_table(
        "clinics",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        *_timestamps(),
        sa.Column("organization_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("slug", sa.String(length=100), nullable=False),
        sa.Column("phone", sa.String(length=20), nullable=True),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("address", postgresql.JSONB(), nullable=True),
        sa.Column(
            "timezone",
            sa.String(length=50),
            nullable=False,
            server_default=sa.text("'America/Sao_Paulo'"),
        ),
        sa.Column("settings", postgresql.JSONB(), nullable=True),
        sa.Column("status", clinic_status, nullable=False, server_default="active"),
        sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("organization_id", "slug", name="uq_clinics_organization_id"),
    )
    op.create_index("ix_clinics_organization_id", "clinics", ["organization_id"], unique=False)

    op.create_table(
        "clinic_members",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        *_timestamps(),
        sa.Column("clinic_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("role", member_role, nullable=False, server_default="receptionist"),
        sa.Column("custom_permissions", postgresql.JSONB(), nullable=True),
        sa.Column("status", member_status, nullable=False, server_default="active"),
        sa.ForeignKeyConstraint(["clinic_id"], ["clinics.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("clinic_id", "user_id", name="uq_clinic_members_clinic_id"),
    )
    op.create_index("ix_clinic_members_clinic_id", "clinic_members", ["clinic_id"], unique=False)
    op.create_index("ix_clinic_members_user_id", "clinic_members", ["user_id"], unique=False)

    op.create_table(
        "events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("event_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("event_type", sa.String(length=100), nullable=False),
        sa.Column("aggregate_type", sa.String(length=50), nullable=False),
        sa.Column("aggregate_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("aggregate_version", sa.Integer(), nullable=False),
        sa.Column("tenant_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("clinic_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("causation_id", sa.String(length=255), nullable=True),
        sa.Column("correlation_id", sa.String(length=255), nullable=False),
        sa.Column("user_id", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("event_data", postgresql.JSONB(), nullable=False),
        sa.Column("metadata", postgresql.JSONB(), nullable=True, server_default=sa.text("'{}'::jsonb")),
        sa.UniqueConstraint("event_id", name="uq_events_event_id"),
        sa.UniqueConstraint("aggregate_id", "aggregate_version", name="uq_events_aggregate_version"),
    )
    op.create_index("ix_events_aggregate", "events", ["aggregate_type", "aggregate_id"], unique=False)
    op.create_index("ix_events_correlation_id", "events", ["correlation_id"], unique=False)
    op.create_index("ix_events_causation_id", "events", ["causation_id"], unique=False)
    op.create_index("ix_events_tenant_id", "events", ["tenant_id"], unique=False)
    op.create_index("ix_events_event_type", "events", ["event_type"], unique=False)
    op.create_index("ix_events_created_at", "events", ["created_at"], unique=False)

    op.create_table(
        "patient_view",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("tenant_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("clinic_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("phone", sa.String(length=20), nullable=False),
        sa.Column("full_name", sa.String(length=255), nullable=True),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("birth_date", sa.Date(), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="active"),
        sa.Column("metadata", postgresql.JSONB(), nullable=True),
        sa.Column("last_event_version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("phone", "tenant_id", name="uq_patient_view_phone"),
    )
    op.create_index("ix_patient_view_tenant_id", "patient_view", ["tenant_id"], unique=False)
    op.create_index("ix_patient_view_clinic_id", "patient_view", ["clinic_id"], unique=False)
    op.create_index("ix_patient_view_status", "patient_view", ["status"], unique=False)

    op.create_table(
        "patient_journey_view",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("patient_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("tenant_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("clinic_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("current_stage", sa.String(length=50), nullable=False, server_default="lead"),
        sa.Column("risk_score", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("risk_level", sa.String(length=20), nullable=False, server_default="low"),
        sa.Column("milestones", postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("stage_history", postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("last_event_version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    for column in ("patient_id", "tenant_id", "clinic_id", "current_stage", "risk_level"):
        op.create_index(
            f"ix_patient_journey_view_{column}", "patient_journey_view", [column], unique=False
        )

    op.create_table(
        "conversation_view",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("patient_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("tenant_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("clinic_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="active"),
        sa.Column("channel", sa.String(length=20), nullable=False),
        sa.Column("is_escalated", sa.Boolean(), nullable=True, server_default=sa.text("false")),
        sa.Column("escalation_reason", sa.String(length=30), nullable=True),
        sa.Column("escalated_to_user_id", sa.String(length=255), nullable=True),
        sa.Column("escalated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_message_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("message_count", sa.Integer(), nullable=True, server_default="0"),
        sa.Column("last_event_version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    for column in ("patient_id", "tenant_id", "status", "is_escalated"):
        op.create_index(f"ix_conversation_view_{column}", "conversation_view", [column], unique=False)

    op.create_table(
        "message_view",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("conversation_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("tenant_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("direction", sa.String(length=10), nullable=False),
        sa.Column("from_phone", sa.String(length=20), nullable=True),
        sa.Column("to_phone", sa.String(length=20), nullable=True),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("message_type", sa.String(length=20), nullable=True, server_default="text"),
        sa.Column("media_url", sa.Text(), nullable=True),
        sa.Column("sent_by", sa.String(length=20), nullable=True),
        sa.Column("intent", sa.String(length=50), nullable=True),
        sa.Column("intent_confidence", sa.Numeric(3, 2), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    for column in ("conversation_id", "tenant_id", "intent", "created_at"):
        op.create_index(f"ix_message_view_{column}", "message_view", [column], unique=False)

    op.create_table(
        "appointment_view",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("patient_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("tenant_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("clinic_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("doctor_id", sa.String(length=255), nullable=False),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("duration", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="scheduled"),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("reschedule_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_event_version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    for column in ("patient_id", "tenant_id", "clinic_id", "doctor_id", "scheduled_at", "status"):
        op.create_index(f"ix_appointment_view_{column}", "appointment_view", [column], unique=False)
    op.create_index(
        "ix_appointment_view_doctor_time", "appointment_view", ["doctor_id", "scheduled_at"], unique=False
    )

    op.create_table(
        "message_logs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        *_timestamps(),
        sa.Column("tenant_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("conversation_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("channel", sa.String(length=32), nullable=False),
        sa.Column("recipient", sa.String(length=255), nullable=True),
        sa.Column("payload", sa.Text(), nullable=True),
        sa.Column("metadata", postgresql.JSONB(), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="pending"),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["tenant_id"], ["organizations.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_message_logs_tenant_id", "message_logs", ["tenant_id"], unique=False)
    op.create_index("ix_message_logs_conversation_id", "message_logs", ["conversation_id"], unique=False)

    op.create_table(
        "audit_logs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        *_timestamps(),
        sa.Column("tenant_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("clinic_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("actor", sa.String(length=255), nullable=True),
        sa.Column("action", sa.String(length=255), nullable=False),
        sa.Column("resource", sa.String(length=255), nullable=True),
        sa.Column("correlation_id", sa.String(length=255), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("metadata", postgresql.JSONB(), nullable=True),
        sa.ForeignKeyConstraint(["tenant_id"], ["organizations.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_audit_logs_tenant_id", "audit_logs", ["tenant_id"], unique=False)

    # The API binds app.current_org_id per transaction; rows of other tenants stay hidden.
    for table in TENANT_SCOPED_TABLES:
        op.execute(f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY")
        op.execute(
            f"CREATE POLICY {table}_tenant_isolation ON {table} "
            "USING (tenant_id::text = current_setting('app.current_org_id', true))"
        )


def downgrade() -> None:
    for table in TENANT_SCOPED_TABLES:
        op.execute(f"DROP POLICY IF EXISTS {table}_tenant_isolation ON {table}")

    op.drop_table("audit_logs")
    op.drop_table("message_logs")
    op.drop_table("appointment_view")
    op.drop_table("message_view")
    op.drop_table("conversation_view")
    op.drop_table("patient_journey_view")
    op.drop_table("patient_view")
    op.drop_table("events")
    op.drop_table("clinic_members")
    op.drop_table("clinics")
    op.drop_table("organizations")

    for enum_name in ("member_status", "member_role", "clinic_status", "organization_status"):
        sa.Enum(name=enum_name).drop(op.get_bind(), checkfirst=True)
