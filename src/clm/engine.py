"""Contract lifecycle engine façade.

One object exposing every engine operation to the outer layers (HTTP
handlers, a signature webhook relay, the sweep worker). Each call runs in
its own session and transaction: committed on success, rolled back on any
exception or cancellation. Connectivity failures surface as
StoreUnavailableError.

Usage:
    engine = ContractLifecycleEngine.from_settings(get_settings())
    ctx = TenantContext(tenant_id=tenant_id, user_id="user-42")

    event = await engine.track_event(
        ctx, contract_id, LifecycleEventType.APPROVED, {"approver": "legal"}
    )
    summary = await engine.process_expired(ctx)
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from enum import Enum
from typing import TYPE_CHECKING, Any, TypeVar

from clm.core.config import AlertSettings, SweeperSettings
from clm.core.context import Clock, utc_now
from clm.core.errors import InvalidEventDataError, translate_store_errors
from clm.db.models.base import ActorType, ContractStatus, LifecycleEventType
from clm.schemas import (
    AcknowledgeResult,
    AlertRecord,
    ContractFilters,
    ContractSnapshot,
    LifecycleEventRecord,
    LifecycleStats,
    ProjectionReport,
    SweepSummary,
)
from clm.services.alerting import AlertEngine
from clm.services.lifecycle import ContractLifecycleService, RecordResult
from clm.services.projector import StatusProjector
from clm.services.queries import LifecycleQueryService
from clm.services.sweeper import ExpirationSweeper

if TYPE_CHECKING:
    import uuid
    from collections.abc import AsyncIterator
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from clm.core.config import Settings
    from clm.core.context import TenantContext

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=Enum)


def _coerce(enum_cls: type[E], value: E | str, field: str) -> E:
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError as e:
        raise InvalidEventDataError(str(value), [f"{field}: unknown value {value!r}"]) from e


def _event_record(result: RecordResult) -> LifecycleEventRecord:
    record = LifecycleEventRecord.model_validate(result.event)
    if result.replayed:
        record = record.model_copy(update={"replayed": True})
    return record


class ContractLifecycleEngine:
    """Entry point for all contract lifecycle operations.

    Attributes:
        alert_settings: Alert windows and thresholds.
        sweeper_settings: Sweep batch size and lease TTL.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        clock: Clock = utc_now,
        alert_settings: AlertSettings | None = None,
        sweeper_settings: SweeperSettings | None = None,
        sweeper_holder: str | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            session_factory: Factory producing one session per operation.
            clock: Source of the current time (inject a fixed clock in tests).
            alert_settings: Alert settings; defaults if omitted.
            sweeper_settings: Sweeper settings; defaults if omitted.
            sweeper_holder: Lease holder id for sweeps run by this engine.
        """
        self._session_factory = session_factory
        self._clock = clock
        self.alert_settings = alert_settings or AlertSettings()
        self.sweeper_settings = sweeper_settings or SweeperSettings()
        self._sweeper = ExpirationSweeper(
            session_factory,
            clock,
            batch_size=self.sweeper_settings.batch_size,
            lease_ttl_seconds=self.sweeper_settings.lease_ttl_seconds,
            holder=sweeper_holder,
        )

    @classmethod
    def from_settings(cls, settings: Settings, *, clock: Clock = utc_now) -> ContractLifecycleEngine:
        """Build an engine on the shared database session factory."""
        from clm.db import get_session_factory

        return cls(
            get_session_factory(settings),
            clock=clock,
            alert_settings=settings.alerts,
            sweeper_settings=settings.sweeper,
        )

    @asynccontextmanager
    async def _unit_of_work(self, operation: str, *, commit: bool = True) -> AsyncIterator[AsyncSession]:
        async with self._session_factory() as session:
            with translate_store_errors(operation):
                try:
                    yield session
                    if commit:
                        await session.commit()
                    else:
                        await session.rollback()
                except BaseException:
                    await session.rollback()
                    raise

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def create_contract(
        self,
        ctx: TenantContext,
        *,
        contract_id: uuid.UUID | None = None,
        contract_number: str | None = None,
        customer_id: uuid.UUID | None = None,
        template_id: uuid.UUID | None = None,
        effective_expires_at: datetime | None = None,
        renewal_window_days: int | None = None,
        event_data: dict[str, Any] | None = None,
    ) -> ContractSnapshot:
        """Create a contract in DRAFT with its initial CREATED event."""
        async with self._unit_of_work("create_contract") as session:
            result = await ContractLifecycleService(session, self._clock).create_contract(
                ctx,
                contract_id=contract_id,
                contract_number=contract_number,
                customer_id=customer_id,
                template_id=template_id,
                effective_expires_at=effective_expires_at,
                renewal_window_days=renewal_window_days,
                event_data=event_data,
            )
            return ContractSnapshot.model_validate(result.contract)

    async def track_event(
        self,
        ctx: TenantContext,
        contract_id: uuid.UUID,
        event_type: LifecycleEventType | str,
        event_data: dict[str, Any] | None = None,
        *,
        previous_status: ContractStatus | str | None = None,
        new_status: ContractStatus | str | None = None,
        idempotency_key: str | None = None,
        actor_type: ActorType = ActorType.USER,
    ) -> LifecycleEventRecord:
        """Record a lifecycle event.

        Args:
            ctx: Tenant context.
            contract_id: Target contract.
            event_type: Event to record.
            event_data: Payload for the event type.
            previous_status: Expected current status; a mismatch raises
                StatusConflictError.
            new_status: Optional explicit target status.
            idempotency_key: Repeating a key returns the earlier event with
                ``replayed=True``.
            actor_type: Who triggered the event (signature provider relays
                pass SIGNATURE_PROVIDER).

        Returns:
            The appended (or replayed) event.
        """
        event_type = _coerce(LifecycleEventType, event_type, "event_type")
        expected = (
            _coerce(ContractStatus, previous_status, "previous_status")
            if previous_status is not None
            else None
        )
        target = (
            _coerce(ContractStatus, new_status, "new_status") if new_status is not None else None
        )

        async with self._unit_of_work("track_event") as session:
            result = await ContractLifecycleService(session, self._clock).record_event(
                ctx,
                contract_id,
                event_type,
                event_data,
                expected_previous_status=expected,
                new_status=target,
                idempotency_key=idempotency_key,
                actor_type=actor_type,
            )
            return _event_record(result)

    async def update_status(
        self,
        ctx: TenantContext,
        contract_id: uuid.UUID,
        new_status: ContractStatus | str,
        event_data: dict[str, Any] | None = None,
        *,
        idempotency_key: str | None = None,
    ) -> ContractSnapshot:
        """Force a contract to ``new_status`` through the transition table.

        Returns:
            The updated contract.
        """
        target = _coerce(ContractStatus, new_status, "new_status")
        async with self._unit_of_work("update_status") as session:
            result = await ContractLifecycleService(session, self._clock).force_status_update(
                ctx,
                contract_id,
                target,
                event_data,
                idempotency_key=idempotency_key,
            )
            return ContractSnapshot.model_validate(result.contract)

    async def process_expired(self, ctx: TenantContext) -> SweepSummary:
        """Run one expiration sweep for the tenant (lease guarded)."""
        return await self._sweeper.process_expired_contracts(ctx)

    async def acknowledge_alert(
        self,
        ctx: TenantContext,
        alert_id: uuid.UUID,
        acknowledged_by: str | None = None,
    ) -> AcknowledgeResult:
        async with self._unit_of_work("acknowledge_alert") as session:
            return await AlertEngine(session, self._clock, self.alert_settings).acknowledge_alert(
                ctx, alert_id, acknowledged_by
            )

    # -------------------------------------------------------------------------
    # Alerts (persist new alerts, never touch contract status)
    # -------------------------------------------------------------------------

    async def renewal_alerts(
        self,
        ctx: TenantContext,
        days_ahead: int | None = None,
    ) -> list[AlertRecord]:
        async with self._unit_of_work("renewal_alerts") as session:
            return await AlertEngine(session, self._clock, self.alert_settings).renewal_alerts(
                ctx, days_ahead
            )

    async def expiration_alerts(
        self,
        ctx: TenantContext,
        days_ahead: int | None = None,
    ) -> list[AlertRecord]:
        async with self._unit_of_work("expiration_alerts") as session:
            return await AlertEngine(
                session, self._clock, self.alert_settings
            ).expiration_alerts(ctx, days_ahead)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def list_contracts(
        self,
        ctx: TenantContext,
        filters: ContractFilters | dict[str, Any] | None = None,
    ) -> list[ContractSnapshot]:
        """List contracts, newest first."""
        if isinstance(filters, dict):
            filters = ContractFilters.model_validate(filters)
        async with self._unit_of_work("list_contracts", commit=False) as session:
            contracts = await LifecycleQueryService(
                session, self._clock, self.alert_settings
            ).list_contracts(ctx, filters)
            return [ContractSnapshot.model_validate(c) for c in contracts]

    async def history(
        self,
        ctx: TenantContext,
        contract_id: uuid.UUID,
    ) -> list[LifecycleEventRecord]:
        """Return a contract's lifecycle log in order."""
        async with self._unit_of_work("history", commit=False) as session:
            events = await LifecycleQueryService(
                session, self._clock, self.alert_settings
            ).get_lifecycle_history(ctx, contract_id)
            return [LifecycleEventRecord.model_validate(e) for e in events]

    async def stats(
        self,
        ctx: TenantContext,
        filters: ContractFilters | dict[str, Any] | None = None,
    ) -> LifecycleStats:
        if isinstance(filters, dict):
            filters = ContractFilters.model_validate(filters)
        async with self._unit_of_work("stats", commit=False) as session:
            return await LifecycleQueryService(
                session, self._clock, self.alert_settings
            ).get_lifecycle_stats(ctx, filters)

    async def verify_projection(
        self,
        ctx: TenantContext,
        contract_id: uuid.UUID,
    ) -> ProjectionReport:
        """Replay a contract's log and compare it with the stored status columns."""
        async with self._unit_of_work("verify_projection", commit=False) as session:
            check = await StatusProjector(session).verify(ctx, contract_id)
            return ProjectionReport(
                contract_id=check.contract_id,
                consistent=check.consistent,
                mismatches=list(check.mismatches),
                stored_status=check.stored.status if check.stored else None,
                replayed_status=check.replayed.status if check.replayed else None,
                error=check.error,
            )
