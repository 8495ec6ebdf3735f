"""Alert and sweep lease models."""

from __future__ import annotations

import uuid  # noqa: TC003 - required at runtime for SQLAlchemy type resolution
from datetime import datetime  # noqa: TC003 - required at runtime for SQLAlchemy

from sqlalchemy import DateTime, ForeignKey, Index, String, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from clm.db.models.base import (
    AlertType,
    Base,
    OptionalTimestampTZ,
    TenantId,
    TimestampTZ,
    UUIDPrimaryKey,
    pg_enum,
)


class ContractAlert(Base):
    """A renewal or expiration alert raised for a contract.

    At most one unacknowledged alert exists per (tenant, contract, type);
    the partial unique index enforces it so concurrent raisers converge on
    a single row.
    """

    __tablename__ = "contract_alerts"

    alert_id: Mapped[UUIDPrimaryKey]
    tenant_id: Mapped[TenantId]

    contract_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("contracts.contract_id", ondelete="CASCADE"),
        nullable=False,
    )

    alert_type: Mapped[AlertType] = mapped_column(
        pg_enum(AlertType, "contract_alert_type"),
        nullable=False,
    )

    # Renewal: expiry minus the renewal window. Expiration: the expiry itself.
    due_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    raised_at: Mapped[TimestampTZ]
    acknowledged_at: Mapped[OptionalTimestampTZ]
    acknowledged_by: Mapped[str | None] = mapped_column(String(255), nullable=True)

    __table_args__ = (
        Index(
            "uq_contract_alerts_open",
            "tenant_id",
            "contract_id",
            "alert_type",
            unique=True,
            postgresql_where=text("acknowledged_at IS NULL"),
        ),
        Index("ix_contract_alerts_tenant_due", "tenant_id", "alert_type", "due_date"),
    )


class SweepLease(Base):
    """Per-tenant lease guarding the expiration sweep.

    A holder may take the row over only once ``expires_at`` has passed, so a
    crashed sweeper blocks others for at most one TTL.
    """

    __tablename__ = "sweep_leases"

    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True)
    holder: Mapped[str] = mapped_column(String(255), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
