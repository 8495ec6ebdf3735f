"""Contract lifecycle service: the event log write path.

This module implements the only way contract lifecycle columns change:

1. Lock the contract row (``SELECT ... FOR UPDATE``, tenant scoped)
2. Replay the prior result if the idempotency key was already used
3. Check the caller's expected previous status
4. Validate the payload and resolve the transition
5. Append the event and fold it onto the contract in the same transaction

The service flushes but never commits; the caller owns the transaction.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from sqlalchemy import select

from clm.core.context import Clock, utc_now
from clm.core.errors import ContractNotFoundError, InvalidTransitionError, StatusConflictError
from clm.db.models.base import ActorType, ContractStatus, LifecycleEventType, SignatureStatus
from clm.db.models.contracts import Contract, LifecycleEvent
from clm.services.event_data import parse_event_data, to_storage
from clm.services.projector import apply_event
from clm.services.transitions import (
    Transition,
    initial_transition,
    resolve_transition,
    status_event,
)

if TYPE_CHECKING:
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession

    from clm.core.context import TenantContext

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RecordResult:
    """Result of recording a lifecycle event.

    Attributes:
        contract: The contract after the event. On replay this is the
            contract as it is now, not as it was when the earlier event was
            applied; read ``event`` for the historical transition.
        event: The appended event, or the earlier one on replay.
        replayed: True if the idempotency key matched an existing event and
            nothing was written.
    """

    contract: Contract
    event: LifecycleEvent
    replayed: bool = False


class ContractLifecycleService:
    """Records lifecycle events and keeps the contract projection in step.

    Example:
        service = ContractLifecycleService(session)
        result = await service.record_event(
            ctx,
            contract_id,
            LifecycleEventType.APPROVED,
            {"approver": "legal@example.com"},
            expected_previous_status=ContractStatus.PENDING_APPROVAL,
        )
        await session.commit()
    """

    def __init__(self, session: AsyncSession, clock: Clock = utc_now) -> None:
        """Initialize the lifecycle service.

        Args:
            session: SQLAlchemy async session for database operations.
            clock: Source of the current time.
        """
        self._session = session
        self._clock = clock

    async def get_contract(
        self,
        ctx: TenantContext,
        contract_id: uuid.UUID,
        *,
        for_update: bool = False,
    ) -> Contract:
        """Get a tenant's contract by ID.

        Args:
            ctx: Tenant context.
            contract_id: UUID of the contract.
            for_update: Take a row lock held until the transaction ends.

        Returns:
            The Contract model instance.

        Raises:
            ContractNotFoundError: If the contract does not exist for the tenant.
        """
        query = select(Contract).where(
            Contract.tenant_id == ctx.tenant_id,
            Contract.contract_id == contract_id,
        )
        if for_update:
            query = query.with_for_update()

        result = await self._session.execute(query)
        contract = result.scalar_one_or_none()

        if contract is None:
            raise ContractNotFoundError(contract_id)

        return contract

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
        actor_type: ActorType = ActorType.USER,
        triggered_by: str | None = None,
    ) -> RecordResult:
        """Insert a contract together with its initial CREATED event.

        Returns:
            RecordResult with the new contract (status DRAFT) and its first event.

        Raises:
            InvalidEventDataError: If ``event_data`` is not a valid CREATED payload.
        """
        data = parse_event_data(LifecycleEventType.CREATED, event_data)
        now = self._clock()

        contract = Contract(
            contract_id=contract_id or uuid.uuid4(),
            tenant_id=ctx.tenant_id,
            contract_number=contract_number,
            customer_id=customer_id,
            template_id=template_id,
            status=ContractStatus.DRAFT,
            signature_status=SignatureStatus.NONE,
            effective_expires_at=effective_expires_at,
            renewal_window_days=renewal_window_days,
            lifecycle_version=0,
            created_at=now,
            updated_at=now,
        )
        self._session.add(contract)

        event = self._append(
            ctx,
            contract,
            initial_transition(LifecycleEventType.CREATED),
            to_storage(data),
            idempotency_key=None,
            actor_type=actor_type,
            triggered_by=triggered_by or ctx.user_id,
            event_time=now,
        )
        await self._session.flush()

        logger.info(
            "Contract created",
            extra={
                **ctx.log_extra(),
                "contract_id": str(contract.contract_id),
                "event_id": str(event.event_id),
            },
        )
        return RecordResult(contract=contract, event=event)

    async def record_event(
        self,
        ctx: TenantContext,
        contract_id: uuid.UUID,
        event_type: LifecycleEventType,
        event_data: dict[str, Any] | None = None,
        *,
        expected_previous_status: ContractStatus | None = None,
        new_status: ContractStatus | None = None,
        idempotency_key: str | None = None,
        actor_type: ActorType = ActorType.USER,
        triggered_by: str | None = None,
    ) -> RecordResult:
        """Append a lifecycle event and update the contract projection.

        Args:
            ctx: Tenant context.
            contract_id: Contract the event belongs to.
            event_type: Event being recorded.
            event_data: Payload for the event type.
            expected_previous_status: If given, the contract must currently be in
                this status (optimistic check on top of the row lock).
            new_status: Optional explicit target status (see resolve_transition).
            idempotency_key: Client key; a repeat returns the earlier event.
            actor_type: Who triggered the event.
            triggered_by: Actor reference (defaults to the context user).

        Returns:
            RecordResult with the updated contract and the event.

        Raises:
            ContractNotFoundError: If the contract does not exist for the tenant.
            StatusConflictError: If ``expected_previous_status`` is stale.
            InvalidEventDataError: If the payload does not match the event type.
            InvalidTransitionError: If the event is not allowed from the current state.
        """
        return await self._record(
            ctx,
            contract_id,
            event_type,
            event_data,
            expected_previous_status=expected_previous_status,
            new_status=new_status,
            idempotency_key=idempotency_key,
            actor_type=actor_type,
            triggered_by=triggered_by,
            require_status_change=False,
        )

    async def force_status_update(
        self,
        ctx: TenantContext,
        contract_id: uuid.UUID,
        new_status: ContractStatus,
        event_data: dict[str, Any] | None = None,
        *,
        idempotency_key: str | None = None,
        actor_type: ActorType = ActorType.ADMIN,
        triggered_by: str | None = None,
    ) -> RecordResult:
        """Move a contract directly to ``new_status``.

        The event type is synthesized from the target status and the change
        goes through the same validation as record_event; the transition
        table is never bypassed.

        Raises:
            ContractNotFoundError: If the contract does not exist for the tenant.
            InvalidTransitionError: If the jump is not in the transition table.
        """
        return await self._record(
            ctx,
            contract_id,
            status_event(new_status),
            event_data,
            expected_previous_status=None,
            new_status=new_status,
            idempotency_key=idempotency_key,
            actor_type=actor_type,
            triggered_by=triggered_by,
            require_status_change=True,
        )

    async def _record(
        self,
        ctx: TenantContext,
        contract_id: uuid.UUID,
        event_type: LifecycleEventType,
        event_data: dict[str, Any] | None,
        *,
        expected_previous_status: ContractStatus | None,
        new_status: ContractStatus | None,
        idempotency_key: str | None,
        actor_type: ActorType,
        triggered_by: str | None,
        require_status_change: bool,
    ) -> RecordResult:
        contract = await self.get_contract(ctx, contract_id, for_update=True)

        if idempotency_key is not None:
            prior = await self._find_by_idempotency_key(ctx, contract_id, idempotency_key)
            if prior is not None:
                if prior.event_type is not event_type:
                    logger.warning(
                        "Idempotency key reused for a different event type",
                        extra={
                            **ctx.log_extra(),
                            "contract_id": str(contract_id),
                            "idempotency_key": idempotency_key,
                            "original_event_type": prior.event_type.value,
                            "requested_event_type": event_type.value,
                        },
                    )
                logger.info(
                    "Duplicate event replayed",
                    extra={
                        **ctx.log_extra(),
                        "contract_id": str(contract_id),
                        "event_id": str(prior.event_id),
                    },
                )
                return RecordResult(contract=contract, event=prior, replayed=True)

        if expected_previous_status is not None and contract.status is not expected_previous_status:
            raise StatusConflictError(
                contract_id, expected_previous_status.value, contract.status.value
            )

        data = parse_event_data(event_type, event_data)

        try:
            if contract.lifecycle_version == 0:
                transition = initial_transition(event_type)
            else:
                transition = resolve_transition(
                    event_type, contract.status, contract.signature_status, new_status
                )
            if require_status_change and not transition.changes_status:
                raise InvalidTransitionError(
                    event_type.value,
                    contract.status.value,
                    new_status.value if new_status else None,
                    message=f"Contract {contract_id} is already {contract.status.value}",
                )
        except InvalidTransitionError as e:
            logger.warning(
                "Invalid transition attempted",
                extra={
                    **ctx.log_extra(),
                    "contract_id": str(contract_id),
                    "event_type": event_type.value,
                    "from_status": contract.status.value,
                    "signature_status": contract.signature_status.value,
                    "reason": e.message,
                },
            )
            raise

        # Event times never go backwards along a contract's log
        now = self._clock()
        if contract.last_event_at is not None and contract.last_event_at > now:
            now = contract.last_event_at

        event = self._append(
            ctx,
            contract,
            transition,
            to_storage(data),
            idempotency_key=idempotency_key,
            actor_type=actor_type,
            triggered_by=triggered_by or ctx.user_id,
            event_time=now,
        )
        await self._session.flush()

        logger.info(
            "Lifecycle event recorded",
            extra={
                **ctx.log_extra(),
                "contract_id": str(contract_id),
                "event_id": str(event.event_id),
                "event_type": event_type.value,
                "from_status": transition.previous_status.value
                if transition.previous_status
                else None,
                "to_status": transition.new_status.value,
                "signature_status": transition.new_signature_status.value,
            },
        )
        return RecordResult(contract=contract, event=event)

    def _append(
        self,
        ctx: TenantContext,
        contract: Contract,
        transition: Transition,
        event_data: dict[str, Any],
        *,
        idempotency_key: str | None,
        actor_type: ActorType,
        triggered_by: str | None,
        event_time: datetime,
    ) -> LifecycleEvent:
        event = LifecycleEvent(
            event_id=uuid.uuid4(),
            tenant_id=ctx.tenant_id,
            contract_id=contract.contract_id,
            sequence=contract.lifecycle_version + 1,
            event_type=transition.event_type,
            previous_status=transition.previous_status,
            new_status=transition.new_status,
            previous_signature_status=transition.previous_signature_status,
            new_signature_status=transition.new_signature_status,
            event_data=event_data,
            idempotency_key=idempotency_key,
            actor_type=actor_type,
            triggered_by=triggered_by,
            created_at=event_time,
        )
        self._session.add(event)
        apply_event(contract, event)
        return event

    async def _find_by_idempotency_key(
        self,
        ctx: TenantContext,
        contract_id: uuid.UUID,
        idempotency_key: str,
    ) -> LifecycleEvent | None:
        query = select(LifecycleEvent).where(
            LifecycleEvent.tenant_id == ctx.tenant_id,
            LifecycleEvent.contract_id == contract_id,
            LifecycleEvent.idempotency_key == idempotency_key,
        )
        result = await self._session.execute(query)
        return result.scalar_one_or_none()
