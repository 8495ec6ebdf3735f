"""Test data factories for the contract lifecycle engine.

Factory functions build real (transient) ORM objects so services and the
projector see the same types they see in production. ``FakeWorld`` is a
small in-memory stand-in for the database, used by flow tests that go
through several sessions (sweeper, engine, worker).
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import MagicMock

from sqlalchemy import Delete, Insert, Select

from clm.core.context import TenantContext
from clm.db.models import (
    ActorType,
    AlertType,
    Contract,
    ContractAlert,
    ContractStatus,
    LifecycleEvent,
    LifecycleEventType,
    SignatureStatus,
)
from clm.services.transitions import CLOSED_STATUSES, EXPIRABLE_STATUSES

BASE_TIME = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
TENANT_ID = uuid.UUID("00000000-0000-4000-8000-000000000001")
OTHER_TENANT_ID = uuid.UUID("00000000-0000-4000-8000-000000000002")


def tenant_ctx(tenant_id: uuid.UUID = TENANT_ID, user_id: str | None = "user-1") -> TenantContext:
    return TenantContext(tenant_id=tenant_id, user_id=user_id)


class FixedClock:
    """Deterministic clock; call ``advance`` to move time forward."""

    def __init__(self, now: datetime = BASE_TIME) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def make_contract(
    status: ContractStatus = ContractStatus.DRAFT,
    signature_status: SignatureStatus = SignatureStatus.NONE,
    *,
    tenant_id: uuid.UUID = TENANT_ID,
    contract_id: uuid.UUID | None = None,
    lifecycle_version: int = 1,
    effective_expires_at: datetime | None = None,
    renewal_window_days: int | None = None,
    created_at: datetime = BASE_TIME,
    last_event_at: datetime | None = BASE_TIME,
    status_changed_at: datetime | None = BASE_TIME,
    signed_at: datetime | None = None,
    customer_id: uuid.UUID | None = None,
    contract_number: str | None = None,
) -> Contract:
    """Create a transient Contract.

    Args:
        status: Current status.
        signature_status: Current signature status.
        lifecycle_version: Number of events already applied (0 = no events yet).

    Returns:
        Contract instance not attached to any session.
    """
    return Contract(
        contract_id=contract_id or uuid.uuid4(),
        tenant_id=tenant_id,
        contract_number=contract_number,
        customer_id=customer_id,
        status=status,
        signature_status=signature_status,
        effective_expires_at=effective_expires_at,
        renewal_window_days=renewal_window_days,
        lifecycle_version=lifecycle_version,
        status_changed_at=status_changed_at,
        last_event_at=last_event_at,
        signed_at=signed_at,
        created_at=created_at,
        updated_at=created_at,
    )


def make_event(
    contract_id: uuid.UUID,
    sequence: int,
    event_type: LifecycleEventType,
    previous_status: ContractStatus | None,
    new_status: ContractStatus,
    *,
    created_at: datetime = BASE_TIME,
    previous_signature_status: SignatureStatus | None = SignatureStatus.NONE,
    new_signature_status: SignatureStatus = SignatureStatus.NONE,
    event_data: dict[str, Any] | None = None,
    idempotency_key: str | None = None,
    tenant_id: uuid.UUID = TENANT_ID,
) -> LifecycleEvent:
    """Create a transient LifecycleEvent."""
    return LifecycleEvent(
        event_id=uuid.uuid4(),
        tenant_id=tenant_id,
        contract_id=contract_id,
        sequence=sequence,
        event_type=event_type,
        previous_status=previous_status,
        new_status=new_status,
        previous_signature_status=None if sequence == 1 else previous_signature_status,
        new_signature_status=new_signature_status,
        event_data=event_data or {},
        idempotency_key=idempotency_key,
        actor_type=ActorType.USER,
        created_at=created_at,
    )


def make_history(contract_id: uuid.UUID, start: datetime = BASE_TIME) -> list[LifecycleEvent]:
    """A signed contract's log: created, submitted, approved, sent, fully signed."""
    E, S, Sig = LifecycleEventType, ContractStatus, SignatureStatus
    return [
        make_event(contract_id, 1, E.CREATED, None, S.DRAFT, created_at=start),
        make_event(
            contract_id,
            2,
            E.CREATED,
            S.DRAFT,
            S.PENDING_APPROVAL,
            created_at=start + timedelta(days=1),
        ),
        make_event(
            contract_id,
            3,
            E.APPROVED,
            S.PENDING_APPROVAL,
            S.APPROVED,
            created_at=start + timedelta(days=3),
        ),
        make_event(
            contract_id,
            4,
            E.SENT_FOR_SIGNATURE,
            S.APPROVED,
            S.SENT,
            created_at=start + timedelta(days=4),
        ),
        make_event(
            contract_id,
            5,
            E.FULLY_SIGNED,
            S.SENT,
            S.SIGNED,
            created_at=start + timedelta(days=6),
            new_signature_status=Sig.FULLY_SIGNED,
        ),
    ]


def make_alert(
    contract_id: uuid.UUID,
    alert_type: AlertType = AlertType.EXPIRATION,
    *,
    due_date: datetime,
    raised_at: datetime = BASE_TIME,
    acknowledged_at: datetime | None = None,
    tenant_id: uuid.UUID = TENANT_ID,
) -> ContractAlert:
    return ContractAlert(
        alert_id=uuid.uuid4(),
        tenant_id=tenant_id,
        contract_id=contract_id,
        alert_type=alert_type,
        due_date=due_date,
        raised_at=raised_at,
        acknowledged_at=acknowledged_at,
    )


# =============================================================================
# Mock results
# =============================================================================


def mock_result(
    scalar: Any = None,
    scalars: list[Any] | None = None,
    rows: list[tuple] | None = None,
    rowcount: int = 0,
) -> MagicMock:
    """Build a mock SQLAlchemy Result.

    Args:
        scalar: Value for scalar_one_or_none() / scalar_one().
        scalars: Values for scalars().all().
        rows: Values for all().
        rowcount: Value for rowcount.
    """
    result = MagicMock()
    result.scalar_one_or_none.return_value = scalar
    result.scalar_one.return_value = scalar
    scalars_result = MagicMock()
    scalars_result.all.return_value = list(scalars or [])
    result.scalars.return_value = scalars_result
    result.all.return_value = list(rows or [])
    result.rowcount = rowcount
    return result


# =============================================================================
# In-memory database stand-in
# =============================================================================


class FakeWorld:
    """Shared in-memory state behind FakeSession instances.

    Understands exactly the statements the engine issues: contract and event
    lookups, the sweep selection, and the lease upsert/delete. Statement
    parameters are read from the compiled statement.
    """

    def __init__(self, clock: FixedClock) -> None:
        self.clock = clock
        self.contracts: dict[uuid.UUID, Contract] = {}
        self.events: list[LifecycleEvent] = []
        self.leases: dict[uuid.UUID, tuple[str, datetime]] = {}
        self.commits = 0
        self.rollbacks = 0

    def add_contract(self, contract: Contract) -> Contract:
        self.contracts[contract.contract_id] = contract
        return contract

    def events_for(self, contract_id: uuid.UUID) -> list[LifecycleEvent]:
        return sorted(
            (e for e in self.events if e.contract_id == contract_id),
            key=lambda e: e.sequence,
        )

    def session_factory(self) -> FakeSession:
        return FakeSession(self)

    def due_ids(self, tenant_id: uuid.UUID, now: datetime) -> list[uuid.UUID]:
        due = [
            c
            for c in self.contracts.values()
            if c.tenant_id == tenant_id
            and c.status in EXPIRABLE_STATUSES
            and c.effective_expires_at is not None
            and c.effective_expires_at <= now
        ]
        due.sort(key=lambda c: (c.effective_expires_at, str(c.contract_id)))
        return [c.contract_id for c in due]

    def blocked_ids(self, tenant_id: uuid.UUID, now: datetime) -> list[uuid.UUID]:
        """Overdue contracts in a status with no transition to EXPIRED."""
        blocked = [
            c
            for c in self.contracts.values()
            if c.tenant_id == tenant_id
            and c.status not in CLOSED_STATUSES | EXPIRABLE_STATUSES
            and c.effective_expires_at is not None
            and c.effective_expires_at <= now
        ]
        blocked.sort(key=lambda c: (c.effective_expires_at, str(c.contract_id)))
        return [c.contract_id for c in blocked]


class FakeSession:
    """Async session double backed by a FakeWorld."""

    def __init__(self, world: FakeWorld) -> None:
        self.world = world
        self._pending: list[Any] = []

    async def __aenter__(self) -> FakeSession:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self._pending.clear()

    def add(self, obj: Any) -> None:
        self._pending.append(obj)

    async def flush(self) -> None:
        await asyncio.sleep(0)

    async def commit(self) -> None:
        for obj in self._pending:
            if isinstance(obj, Contract):
                self.world.contracts[obj.contract_id] = obj
            elif isinstance(obj, LifecycleEvent):
                self.world.events.append(obj)
        self._pending.clear()
        self.world.commits += 1

    async def rollback(self) -> None:
        self._pending.clear()
        self.world.rollbacks += 1

    async def close(self) -> None:
        self._pending.clear()

    async def execute(self, stmt: Any) -> MagicMock:
        # Let concurrent tasks interleave the way real I/O would
        await asyncio.sleep(0)
        params = stmt.compile().params
        values = list(params.values())

        if isinstance(stmt, Insert):
            return self._lease_upsert(params)
        if isinstance(stmt, Delete):
            return self._lease_release(params)
        if isinstance(stmt, Select):
            return self._select(stmt, values)
        msg = f"FakeSession cannot execute {type(stmt).__name__}"
        raise NotImplementedError(msg)

    def _select(self, stmt: Select, values: list[Any]) -> MagicMock:
        desc = stmt.column_descriptions[0]
        ids = [v for v in values if isinstance(v, uuid.UUID)]
        tenant_ids = [v for v in ids if v not in self.world.contracts]

        if desc["type"] is Contract:
            matches = [self.world.contracts[v] for v in ids if v in self.world.contracts]
            if not matches:
                # Listing: every contract of the tenant, newest first
                listing = sorted(
                    (c for c in self.world.contracts.values() if c.tenant_id in tenant_ids),
                    key=lambda c: c.created_at,
                    reverse=True,
                )
                return mock_result(scalars=listing)
            contract = matches[0]
            if contract.tenant_id not in tenant_ids:
                return mock_result(scalar=None, scalars=[])
            return mock_result(scalar=contract, scalars=[contract])

        if desc["type"] is LifecycleEvent:
            contract_ids = [v for v in ids if v in self.world.contracts]
            events = [e for cid in contract_ids for e in self.world.events_for(cid)]
            keys = [v for v in values if isinstance(v, str)]
            if keys:
                events = [e for e in events if e.idempotency_key in keys]
                return mock_result(scalar=events[0] if events else None, scalars=events)
            return mock_result(scalars=events)

        if desc["entity"] is Contract and desc["name"] == "contract_id":
            if any(v in self.world.contracts for v in ids):
                # Existence check for a single contract
                found = next(v for v in ids if v in self.world.contracts)
                if self.world.contracts[found].tenant_id not in tenant_ids:
                    return mock_result(scalar=None)
                return mock_result(scalar=found, scalars=[found])
            limits = [v for v in values if isinstance(v, int) and not isinstance(v, bool)]
            limit = limits[0] if limits else None
            if len(stmt.column_descriptions) > 1:
                # Overdue contracts that cannot expire, with their status
                blocked = self.world.blocked_ids(tenant_ids[0], self.world.clock())[:limit]
                return mock_result(
                    rows=[(cid, self.world.contracts[cid].status) for cid in blocked]
                )
            due = self.world.due_ids(tenant_ids[0], self.world.clock())
            return mock_result(scalars=due[:limit] if limit else due)

        if desc["entity"] is Contract and desc["name"] == "tenant_id":
            now = self.world.clock()
            tenants = sorted(
                {
                    c.tenant_id
                    for c in self.world.contracts.values()
                    if self.world.due_ids(c.tenant_id, now)
                    or self.world.blocked_ids(c.tenant_id, now)
                },
                key=str,
            )
            return mock_result(scalars=tenants)

        msg = f"FakeSession cannot answer select of {desc['name']}"
        raise NotImplementedError(msg)

    def _lease_upsert(self, params: dict[str, Any]) -> MagicMock:
        tenant_id = params["tenant_id"]
        now = self.world.clock()
        current = self.world.leases.get(tenant_id)
        if current is None or current[1] <= now:
            self.world.leases[tenant_id] = (params["holder"], params["expires_at"])
            return mock_result(scalar=params["holder"])
        return mock_result(scalar=None)

    def _lease_release(self, params: dict[str, Any]) -> MagicMock:
        tenant_id = next(v for v in params.values() if isinstance(v, uuid.UUID))
        holder = next(v for v in params.values() if isinstance(v, str))
        current = self.world.leases.get(tenant_id)
        if current is not None and current[0] == holder:
            del self.world.leases[tenant_id]
            return mock_result(rowcount=1)
        return mock_result(rowcount=0)
