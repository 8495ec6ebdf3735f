"""Base model definitions and enums shared by the lifecycle models.

This module provides:
- SQLAlchemy declarative base with naming conventions
- Reusable annotated column types
- The closed enums of the contract lifecycle
"""

import enum
import uuid
from datetime import datetime
from typing import Annotated

from sqlalchemy import DateTime, Enum, MetaData, String, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import DeclarativeBase, mapped_column, registry

# Naming convention for constraints ensures consistent migration generation.
# See: https://alembic.sqlalchemy.org/en/latest/naming.html
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

metadata = MetaData(naming_convention=NAMING_CONVENTION)

type_registry = registry()

# UUID primary key with server-side default generation
UUIDPrimaryKey = Annotated[
    uuid.UUID,
    mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    ),
]

# Tenant scope column, present on every table
TenantId = Annotated[uuid.UUID, mapped_column(UUID(as_uuid=True), nullable=False)]

# Timestamp with timezone, defaults to now
TimestampTZ = Annotated[
    datetime,
    mapped_column(DateTime(timezone=True), server_default=text("now()")),
]

OptionalTimestampTZ = Annotated[
    datetime | None,
    mapped_column(DateTime(timezone=True), nullable=True),
]

ShortString = Annotated[str, mapped_column(String(100))]
MediumString = Annotated[str, mapped_column(String(255))]


class Base(DeclarativeBase):
    """Declarative base for all lifecycle models."""

    metadata = metadata
    registry = type_registry


def pg_enum(enum_cls: type[enum.Enum], name: str) -> Enum:
    """Build a SQLAlchemy Enum that stores the members' lowercase values."""
    return Enum(
        enum_cls,
        name=name,
        create_constraint=True,
        values_callable=lambda members: [m.value for m in members],
    )


# =============================================================================
# Lifecycle Enums
# =============================================================================


class ContractStatus(enum.Enum):
    """Contract lifecycle status.

    States:
        DRAFT: Created, not yet submitted
        PENDING_APPROVAL: Submitted for internal approval
        APPROVED: Approved, ready to send for signature
        SENT: Dispatched to the signature provider
        SIGNED: Every party has signed
        CANCELLED: Withdrawn before completion
        EXPIRED: Term elapsed (or signature never completed)
        RENEWED: Renewal started on an expired contract
        ARCHIVED: Closed for good (terminal)
    """

    DRAFT = "draft"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    SENT = "sent"
    SIGNED = "signed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    RENEWED = "renewed"
    ARCHIVED = "archived"


class SignatureStatus(enum.Enum):
    """Signature progress, tracked independently of ContractStatus."""

    NONE = "none"
    PARTIALLY_SIGNED = "partially_signed"
    FULLY_SIGNED = "fully_signed"


class LifecycleEventType(enum.Enum):
    """Event types appended to the lifecycle log."""

    CREATED = "created"
    APPROVED = "approved"
    SENT_FOR_SIGNATURE = "sent_for_signature"
    PARTIALLY_SIGNED = "partially_signed"
    FULLY_SIGNED = "fully_signed"
    EXPIRED = "expired"
    RENEWED = "renewed"
    CANCELLED = "cancelled"
    ARCHIVED = "archived"


class ActorType(enum.Enum):
    """Type of actor that triggered an event.

    Values:
        USER: Regular tenant user
        ADMIN: Administrative override (force status update)
        SYSTEM: Automated action (expiration sweep)
        SIGNATURE_PROVIDER: Status outcome reported by the e-signature provider
    """

    USER = "user"
    ADMIN = "admin"
    SYSTEM = "system"
    SIGNATURE_PROVIDER = "signature_provider"


class AlertType(enum.Enum):
    """Kinds of contract alerts."""

    RENEWAL = "renewal"
    EXPIRATION = "expiration"


class AlertLevel(enum.Enum):
    """Urgency of an alert, computed from the days left until its due date."""

    WARNING = "warning"
    URGENT = "urgent"
    OVERDUE = "overdue"
