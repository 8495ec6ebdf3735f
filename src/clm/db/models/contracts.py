"""Contract and lifecycle event models.

The ``contracts`` row carries the projected lifecycle columns (status,
signature status, timestamps). They are written only by folding a newly
appended ``contract_lifecycle_events`` row onto the current state, inside
the same transaction, so the two never disagree.
"""

from __future__ import annotations

import uuid  # noqa: TC003 - required at runtime for SQLAlchemy type resolution
from datetime import datetime  # noqa: TC003 - required at runtime for SQLAlchemy
from typing import Any

from sqlalchemy import (
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    event,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from clm.db.models.base import (
    ActorType,
    Base,
    ContractStatus,
    LifecycleEventType,
    OptionalTimestampTZ,
    SignatureStatus,
    TenantId,
    TimestampTZ,
    UUIDPrimaryKey,
    pg_enum,
)


class Contract(Base):
    """A contract as seen by the lifecycle engine.

    Content, parties and pricing live in the surrounding system; this table
    holds the identifiers the engine filters on and the lifecycle subset it
    owns.
    """

    __tablename__ = "contracts"

    contract_id: Mapped[UUIDPrimaryKey]
    tenant_id: Mapped[TenantId]
    created_at: Mapped[TimestampTZ]
    updated_at: Mapped[TimestampTZ]

    # Display reference from the surrounding system
    contract_number: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # Opaque references, used for filtering only
    customer_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), nullable=True
    )
    template_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), nullable=True
    )

    status: Mapped[ContractStatus] = mapped_column(
        pg_enum(ContractStatus, "contract_status"),
        nullable=False,
        default=ContractStatus.DRAFT,
    )
    signature_status: Mapped[SignatureStatus] = mapped_column(
        pg_enum(SignatureStatus, "signature_status"),
        nullable=False,
        default=SignatureStatus.NONE,
    )

    # Null means the contract never expires
    effective_expires_at: Mapped[OptionalTimestampTZ]
    # Null means no renewal alerts
    renewal_window_days: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Number of events applied; the next event gets sequence lifecycle_version + 1
    lifecycle_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    status_changed_at: Mapped[OptionalTimestampTZ]
    last_event_at: Mapped[OptionalTimestampTZ]
    signed_at: Mapped[OptionalTimestampTZ]

    events: Mapped[list[LifecycleEvent]] = relationship(
        "LifecycleEvent",
        back_populates="contract",
        order_by="LifecycleEvent.sequence",
        lazy="raise",
    )

    __table_args__ = (
        Index("ix_contracts_tenant_status", "tenant_id", "status"),
        Index("ix_contracts_tenant_created_at", "tenant_id", "created_at"),
        Index("ix_contracts_tenant_expires_at", "tenant_id", "effective_expires_at"),
        Index("ix_contracts_customer_id", "customer_id"),
        Index("ix_contracts_template_id", "template_id"),
    )


class LifecycleEvent(Base):
    """Append-only record of a contract lifecycle transition.

    Rows are never updated or deleted; the ORM refuses to flush either.
    ``sequence`` orders events within a contract and ``created_at`` is
    non-decreasing along it.
    """

    __tablename__ = "contract_lifecycle_events"

    event_id: Mapped[UUIDPrimaryKey]
    tenant_id: Mapped[TenantId]

    contract_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("contracts.contract_id", ondelete="RESTRICT"),
        nullable=False,
    )

    # 1-based position in the contract's log
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)

    event_type: Mapped[LifecycleEventType] = mapped_column(
        pg_enum(LifecycleEventType, "lifecycle_event_type"),
        nullable=False,
    )

    # Null only on a contract's first event
    previous_status: Mapped[ContractStatus | None] = mapped_column(
        pg_enum(ContractStatus, "contract_status"),
        nullable=True,
    )
    new_status: Mapped[ContractStatus] = mapped_column(
        pg_enum(ContractStatus, "contract_status"),
        nullable=False,
    )
    previous_signature_status: Mapped[SignatureStatus | None] = mapped_column(
        pg_enum(SignatureStatus, "signature_status"),
        nullable=True,
    )
    new_signature_status: Mapped[SignatureStatus] = mapped_column(
        pg_enum(SignatureStatus, "signature_status"),
        nullable=False,
    )

    # Validated payload for the event type (see services.event_data)
    event_data: Mapped[dict[str, Any]] = mapped_column(
        JSONB, nullable=False, default=dict
    )

    idempotency_key: Mapped[str | None] = mapped_column(String(255), nullable=True)

    actor_type: Mapped[ActorType] = mapped_column(
        pg_enum(ActorType, "lifecycle_actor_type"),
        nullable=False,
        default=ActorType.USER,
    )
    triggered_by: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("now()"),
    )

    contract: Mapped[Contract] = relationship(
        "Contract",
        back_populates="events",
    )

    __table_args__ = (
        UniqueConstraint(
            "contract_id", "sequence", name="uq_contract_lifecycle_events_sequence"
        ),
        Index(
            "uq_contract_lifecycle_events_idempotency_key",
            "tenant_id",
            "contract_id",
            "idempotency_key",
            unique=True,
            postgresql_where=text("idempotency_key IS NOT NULL"),
        ),
        Index("ix_contract_lifecycle_events_tenant_created", "tenant_id", "created_at"),
    )


class ImmutableEventError(RuntimeError):
    """Raised when code tries to modify or delete a persisted lifecycle event."""


@event.listens_for(LifecycleEvent, "before_update")
def _reject_event_update(mapper: Any, connection: Any, target: LifecycleEvent) -> None:
    msg = f"Lifecycle event {target.event_id} is append-only and cannot be updated"
    raise ImmutableEventError(msg)


@event.listens_for(LifecycleEvent, "before_delete")
def _reject_event_delete(mapper: Any, connection: Any, target: LifecycleEvent) -> None:
    msg = f"Lifecycle event {target.event_id} is append-only and cannot be deleted"
    raise ImmutableEventError(msg)
