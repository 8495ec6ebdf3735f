"""SQLAlchemy ORM models for the contract lifecycle engine.

- base: Common metadata, annotated column types and lifecycle enums
- contracts: Contracts and their append-only lifecycle event log
- alerts: Renewal/expiration alerts and per-tenant sweep leases
"""

from clm.db.models.alerts import ContractAlert, SweepLease
from clm.db.models.base import (
    ActorType,
    AlertLevel,
    AlertType,
    Base,
    ContractStatus,
    LifecycleEventType,
    SignatureStatus,
    metadata,
)
from clm.db.models.contracts import Contract, ImmutableEventError, LifecycleEvent

__all__ = [
    "ActorType",
    "AlertLevel",
    "AlertType",
    "Base",
    "Contract",
    "ContractAlert",
    "ContractStatus",
    "ImmutableEventError",
    "LifecycleEvent",
    "LifecycleEventType",
    "SignatureStatus",
    "SweepLease",
    "metadata",
]
