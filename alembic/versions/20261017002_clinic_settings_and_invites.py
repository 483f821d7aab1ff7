"""Clinic settings sections and member invites."""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "20261017002"
down_revision = "20261017001"
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    ]


def upgrade() -> None:
    member_role = postgresql.ENUM(
        "admin", "manager", "doctor", "receptionist", name="member_role", create_type=False
    )

    op.create_table(
        "clinic_settings",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        *_timestamps(),
        sa.Column("tenant_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("clinic_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("section", sa.String(length=50), nullable=False),
        sa.Column("data", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.ForeignKeyConstraint(["tenant_id"], ["organizations.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["clinic_id"], ["clinics.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("clinic_id", "section", name="uq_clinic_settings_clinic_id"),
    )
    op.create_index("ix_clinic_settings_tenant_id", "clinic_settings", ["tenant_id"], unique=False)
    op.create_index("ix_clinic_settings_clinic_id", "clinic_settings", ["clinic_id"], unique=False)

    op.create_table(
        "clinic_invites",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        *_timestamps(),
        sa.Column("tenant_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("clinic_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=True),
        sa.Column("role", member_role, nullable=False),
        sa.Column("token", sa.String(length=64), nullable=False),
        sa.Column("invited_by", sa.String(length=255), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("accepted_user_id", sa.String(length=255), nullable=True),
        sa.ForeignKeyConstraint(["tenant_id"], ["organizations.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["clinic_id"], ["clinics.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("token", name="uq_clinic_invites_token"),
    )
    op.create_index("ix_clinic_invites_tenant_id", "clinic_invites", ["tenant_id"], unique=False)
    op.create_index("ix_clinic_invites_clinic_id", "clinic_invites", ["clinic_id"], unique=False)

    # Accepting an invite looks it up by token before any tenant is known,
    # so only the settings table gets a row-level policy.
    op.execute("ALTER TABLE clinic_settings ENABLE ROW LEVEL SECURITY")
    op.execute(
        "CREATE POLICY clinic_settings_tenant_isolation ON clinic_settings "
        "USING (tenant_id::text = current_setting('app.current_org_id', true))"
    )


def downgrade() -> None:
    op.execute("DROP POLICY IF EXISTS clinic_settings_tenant_isolation ON clinic_settings")
    op.drop_table("clinic_invites")
    op.drop_table("clinic_settings")
