"""Initial contract lifecycle schema.

Revision ID: 001
Revises: None
Create Date: 2026-10-18 00:00:00.000000+00:00

Creates:
- contracts (lifecycle projection)
- contract_lifecycle_events (append-only log)
- contract_alerts (renewal/expiration alerts with acknowledgement)
- sweep_leases (per-tenant expiration sweep lease)
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# Revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Apply migration: initial contract lifecycle schema."""
    contract_status = postgresql.ENUM(
        "draft",
        "pending_approval",
        "approved",
        "sent",
        "signed",
        "cancelled",
        "expired",
        "renewed",
        "archived",
        name="contract_status",
        create_type=False,
    )
    contract_status.create(op.get_bind(), checkfirst=True)

    signature_status = postgresql.ENUM(
        "none",
        "partially_signed",
        "fully_signed",
        name="signature_status",
        create_type=False,
    )
    signature_status.create(op.get_bind(), checkfirst=True)

    lifecycle_event_type = postgresql.ENUM(
        "created",
        "approved",
        "sent_for_signature",
        "partially_signed",
        "fully_signed",
        "expired",
        "renewed",
        "cancelled",
        "archived",
        name="lifecycle_event_type",
        create_type=False,
    )
    lifecycle_event_type.create(op.get_bind(), checkfirst=True)

    actor_type = postgresql.ENUM(
        "user",
        "admin",
        "system",
        "signature_provider",
        name="lifecycle_actor_type",
        create_type=False,
    )
    actor_type.create(op.get_bind(), checkfirst=True)

    alert_type = postgresql.ENUM(
        "renewal", "expiration", name="contract_alert_type", create_type=False
    )
    alert_type.create(op.get_bind(), checkfirst=True)

    # =========================================================================
    # Contracts
    # =========================================================================
    op.create_table(
        "contracts",
        sa.Column(
            "contract_id",
            postgresql.UUID(as_uuid=True),
            server_default=sa.text("gen_random_uuid()"),
            nullable=False,
        ),
        sa.Column("tenant_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("contract_number", sa.String(100), nullable=True),
        sa.Column("customer_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("template_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column(
            "status",
            contract_status,
            server_default=sa.text("'draft'"),
            nullable=False,
        ),
        sa.Column(
            "signature_status",
            signature_status,
            server_default=sa.text("'none'"),
            nullable=False,
        ),
        sa.Column("effective_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("renewal_window_days", sa.Integer(), nullable=True),
        sa.Column(
            "lifecycle_version",
            sa.Integer(),
            server_default=sa.text("0"),
            nullable=False,
        ),
        sa.Column("status_changed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_event_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("signed_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "renewal_window_days IS NULL OR renewal_window_days >= 0",
            name=op.f("ck_contracts_renewal_window_non_negative"),
        ),
        sa.PrimaryKeyConstraint("contract_id", name=op.f("pk_contracts")),
    )
    op.create_index(
        "ix_contracts_tenant_status", "contracts", ["tenant_id", "status"], unique=False
    )
    op.create_index(
        "ix_contracts_tenant_created_at",
        "contracts",
        ["tenant_id", "created_at"],
        unique=False,
    )
    op.create_index(
        "ix_contracts_tenant_expires_at",
        "contracts",
        ["tenant_id", "effective_expires_at"],
        unique=False,
    )
    op.create_index("ix_contracts_customer_id", "contracts", ["customer_id"], unique=False)
    op.create_index("ix_contracts_template_id", "contracts", ["template_id"], unique=False)

    # =========================================================================
    # Lifecycle event log
    # =========================================================================
    op.create_table(
        "contract_lifecycle_events",
        sa.Column(
            "event_id",
            postgresql.UUID(as_uuid=True),
            server_default=sa.text("gen_random_uuid()"),
            nullable=False,
        ),
        sa.Column("tenant_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("contract_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("event_type", lifecycle_event_type, nullable=False),
        sa.Column("previous_status", contract_status, nullable=True),
        sa.Column("new_status", contract_status, nullable=False),
        sa.Column("previous_signature_status", signature_status, nullable=True),
        sa.Column("new_signature_status", signature_status, nullable=False),
        sa.Column(
            "event_data",
            postgresql.JSONB(astext_type=sa.Text()),
            server_default=sa.text("'{}'::jsonb"),
            nullable=False,
        ),
        sa.Column("idempotency_key", sa.String(255), nullable=True),
        sa.Column(
            "actor_type",
            actor_type,
            server_default=sa.text("'user'"),
            nullable=False,
        ),
        sa.Column("triggered_by", sa.String(255), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.ForeignKeyConstraint(
            ["contract_id"],
            ["contracts.contract_id"],
            name=op.f("fk_contract_lifecycle_events_contract_id_contracts"),
            ondelete="RESTRICT",
        ),
        sa.PrimaryKeyConstraint("event_id", name=op.f("pk_contract_lifecycle_events")),
        sa.UniqueConstraint(
            "contract_id", "sequence", name="uq_contract_lifecycle_events_sequence"
        ),
    )
    op.create_index(
        "uq_contract_lifecycle_events_idempotency_key",
        "contract_lifecycle_events",
        ["tenant_id", "contract_id", "idempotency_key"],
        unique=True,
        postgresql_where=sa.text("idempotency_key IS NOT NULL"),
    )
    op.create_index(
        "ix_contract_lifecycle_events_tenant_created",
        "contract_lifecycle_events",
        ["tenant_id", "created_at"],
        unique=False,
    )

    # The log is append-only at the database level as well
    op.execute(
        """
        CREATE OR REPLACE FUNCTION contract_lifecycle_events_immutable()
        RETURNS trigger AS $$
        BEGIN
            RAISE EXCEPTION 'contract_lifecycle_events is append-only';
        END;
        $$ LANGUAGE plpgsql
        """
    )
    op.execute(
        """
        CREATE TRIGGER trg_contract_lifecycle_events_immutable
        BEFORE UPDATE OR DELETE ON contract_lifecycle_events
        FOR EACH ROW EXECUTE FUNCTION contract_lifecycle_events_immutable()
        """
    )

    # =========================================================================
    # Alerts
    # =========================================================================
    op.create_table(
        "contract_alerts",
        sa.Column(
            "alert_id",
            postgresql.UUID(as_uuid=True),
            server_default=sa.text("gen_random_uuid()"),
            nullable=False,
        ),
        sa.Column("tenant_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("contract_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("alert_type", alert_type, nullable=False),
        sa.Column("due_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "raised_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("acknowledged_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("acknowledged_by", sa.String(255), nullable=True),
        sa.ForeignKeyConstraint(
            ["contract_id"],
            ["contracts.contract_id"],
            name=op.f("fk_contract_alerts_contract_id_contracts"),
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("alert_id", name=op.f("pk_contract_alerts")),
    )
    op.create_index(
        "uq_contract_alerts_open",
        "contract_alerts",
        ["tenant_id", "contract_id", "alert_type"],
        unique=True,
        postgresql_where=sa.text("acknowledged_at IS NULL"),
    )
    op.create_index(
        "ix_contract_alerts_tenant_due",
        "contract_alerts",
        ["tenant_id", "alert_type", "due_date"],
        unique=False,
    )

    # =========================================================================
    # Sweep leases
    # =========================================================================
    op.create_table(
        "sweep_leases",
        sa.Column("tenant_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("holder", sa.String(255), nullable=False),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("tenant_id", name=op.f("pk_sweep_leases")),
    )


def downgrade() -> None:
    """Revert migration: initial contract lifecycle schema."""
    op.drop_table("sweep_leases")
    op.drop_table("contract_alerts")
    op.execute(
        "DROP TRIGGER IF EXISTS trg_contract_lifecycle_events_immutable "
        "ON contract_lifecycle_events"
    )
    op.execute("DROP FUNCTION IF EXISTS contract_lifecycle_events_immutable()")
    op.drop_table("contract_lifecycle_events")
    op.drop_table("contracts")

    op.execute("DROP TYPE IF EXISTS contract_alert_type")
    op.execute("DROP TYPE IF EXISTS lifecycle_actor_type")
    op.execute("DROP TYPE IF EXISTS lifecycle_event_type")
    op.execute("DROP TYPE IF EXISTS signature_status")
    op.execute("DROP TYPE IF EXISTS contract_status")
