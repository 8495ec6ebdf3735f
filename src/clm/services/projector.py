"""Status projector: derives contract lifecycle columns from the event log.

The pure functions here are used three ways:

- ``apply_event`` folds a newly appended event onto the contract row inside
  the write transaction (the only code path that writes those columns).
- ``project`` replays a full log, checking that each event's previous
  status matches the status left by the event before it.
- ``stage_intervals`` turns a log into time-in-stage intervals for stats.

``StatusProjector.verify`` compares the stored columns of one contract with
a replay of its log.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import select

from clm.core.errors import ContractNotFoundError
from clm.db.models.base import ContractStatus, LifecycleEventType, SignatureStatus
from clm.db.models.contracts import Contract, LifecycleEvent

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession

    from clm.core.context import TenantContext

logger = logging.getLogger(__name__)


class ProjectionError(ValueError):
    """Raised when an event log does not form a connected chain."""


@dataclass(frozen=True, slots=True)
class LifecycleState:
    """Lifecycle columns derived from the log.

    Attributes:
        status: Current contract status.
        signature_status: Current signature status.
        version: Number of events applied.
        status_changed_at: Time of the last event that changed ``status``.
        last_event_at: Time of the last event.
        signed_at: Time the contract last entered SIGNED.
    """

    status: ContractStatus
    signature_status: SignatureStatus
    version: int
    status_changed_at: datetime | None
    last_event_at: datetime | None
    signed_at: datetime | None = None


def state_of(contract: Contract) -> LifecycleState | None:
    """Read the stored lifecycle columns of a contract (None before its first event)."""
    if contract.lifecycle_version == 0:
        return None
    return LifecycleState(
        status=contract.status,
        signature_status=contract.signature_status,
        version=contract.lifecycle_version,
        status_changed_at=contract.status_changed_at,
        last_event_at=contract.last_event_at,
        signed_at=contract.signed_at,
    )


def fold(state: LifecycleState | None, event: LifecycleEvent) -> LifecycleState:
    """Apply one event to a state.

    Args:
        state: State before the event, or None for the first event.
        event: Event to apply.

    Returns:
        The state after the event.

    Raises:
        ProjectionError: If the event does not continue the chain.
    """
    expected_sequence = 1 if state is None else state.version + 1
    if event.sequence != expected_sequence:
        msg = f"Event {event.event_id} has sequence {event.sequence}, expected {expected_sequence}"
        raise ProjectionError(msg)

    previous = None if state is None else state.status
    if event.previous_status != previous:
        msg = (
            f"Event {event.event_id} starts from "
            f"{event.previous_status.value if event.previous_status else None}, "
            f"log is at {previous.value if previous else None}"
        )
        raise ProjectionError(msg)

    status_changed = state is None or event.new_status != state.status
    signed_at = None if state is None else state.signed_at
    if status_changed and event.new_status is ContractStatus.SIGNED:
        signed_at = event.created_at

    return LifecycleState(
        status=event.new_status,
        signature_status=event.new_signature_status,
        version=expected_sequence,
        status_changed_at=event.created_at if status_changed else state.status_changed_at,
        last_event_at=event.created_at,
        signed_at=signed_at,
    )


def project(events: Iterable[LifecycleEvent]) -> LifecycleState | None:
    """Replay a contract's log in sequence order.

    Returns:
        The resulting state, or None for an empty log.

    Raises:
        ProjectionError: If the log is not a connected chain.
    """
    state: LifecycleState | None = None
    for event in events:
        state = fold(state, event)
    return state


def apply_event(contract: Contract, event: LifecycleEvent) -> LifecycleState:
    """Fold a newly appended event onto the contract row.

    Besides the status columns, a RENEWED event carrying a new term updates
    ``effective_expires_at`` / ``renewal_window_days``.
    """
    new_state = fold(state_of(contract), event)

    contract.status = new_state.status
    contract.signature_status = new_state.signature_status
    contract.lifecycle_version = new_state.version
    contract.status_changed_at = new_state.status_changed_at
    contract.last_event_at = new_state.last_event_at
    contract.signed_at = new_state.signed_at
    contract.updated_at = event.created_at

    if event.event_type is LifecycleEventType.RENEWED:
        _apply_renewal_terms(contract, event.event_data or {})

    return new_state


def _apply_renewal_terms(contract: Contract, data: dict[str, Any]) -> None:
    new_expires_at = data.get("new_expires_at")
    if new_expires_at is not None:
        contract.effective_expires_at = (
            datetime.fromisoformat(new_expires_at)
            if isinstance(new_expires_at, str)
            else new_expires_at
        )
    if data.get("renewal_window_days") is not None:
        contract.renewal_window_days = data["renewal_window_days"]


# =============================================================================
# Time in stage
# =============================================================================


@dataclass(frozen=True, slots=True)
class StageInterval:
    """A period a contract spent in one status.

    ``exited_at`` is None for the current stage, whose duration is measured
    up to ``now``.
    """

    status: ContractStatus
    entered_at: datetime
    exited_at: datetime | None
    duration_seconds: float


def stage_intervals(events: Sequence[LifecycleEvent], now: datetime) -> list[StageInterval]:
    """Split a contract's log into consecutive status intervals.

    Signature-only events do not end a stage.

    Args:
        events: The contract's events in sequence order.
        now: End of the current (open) stage.
    """
    intervals: list[StageInterval] = []
    current: ContractStatus | None = None
    entered_at: datetime | None = None

    for event in events:
        if current is not None and event.new_status == current:
            continue
        if current is not None and entered_at is not None:
            intervals.append(
                StageInterval(
                    status=current,
                    entered_at=entered_at,
                    exited_at=event.created_at,
                    duration_seconds=max(0.0, (event.created_at - entered_at).total_seconds()),
                )
            )
        current = event.new_status
        entered_at = event.created_at

    if current is not None and entered_at is not None:
        intervals.append(
            StageInterval(
                status=current,
                entered_at=entered_at,
                exited_at=None,
                duration_seconds=max(0.0, (now - entered_at).total_seconds()),
            )
        )
    return intervals


@dataclass(frozen=True, slots=True)
class DurationSummary:
    """Average and percentiles of stage durations, in seconds."""

    count: int
    average_seconds: float
    p50_seconds: float
    p90_seconds: float


def percentile(sorted_values: Sequence[float], fraction: float) -> float:
    """Linear-interpolated percentile of already sorted values."""
    if not sorted_values:
        return 0.0
    if len(sorted_values) == 1:
        return float(sorted_values[0])
    position = (len(sorted_values) - 1) * fraction
    lower = math.floor(position)
    upper = math.ceil(position)
    if lower == upper:
        return float(sorted_values[lower])
    weight = position - lower
    return sorted_values[lower] * (1 - weight) + sorted_values[upper] * weight


def summarize_durations(durations: Iterable[float]) -> DurationSummary:
    values = sorted(durations)
    if not values:
        return DurationSummary(count=0, average_seconds=0.0, p50_seconds=0.0, p90_seconds=0.0)
    return DurationSummary(
        count=len(values),
        average_seconds=sum(values) / len(values),
        p50_seconds=percentile(values, 0.5),
        p90_seconds=percentile(values, 0.9),
    )


# =============================================================================
# Consistency check
# =============================================================================


@dataclass(frozen=True, slots=True)
class ProjectionCheck:
    """Outcome of comparing stored columns with a replay of the log."""

    contract_id: uuid.UUID
    consistent: bool
    stored: LifecycleState | None
    replayed: LifecycleState | None
    mismatches: tuple[str, ...] = field(default_factory=tuple)
    error: str | None = None


class StatusProjector:
    """Replays contract logs against the stored projection."""

    _COMPARED_FIELDS = ("status", "signature_status", "version", "status_changed_at", "signed_at")

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def verify(self, ctx: TenantContext, contract_id: uuid.UUID) -> ProjectionCheck:
        """Replay one contract's log and compare it with its stored columns.

        Raises:
            ContractNotFoundError: If the contract does not exist for the tenant.
        """
        contract = (
            await self._session.execute(
                select(Contract).where(
                    Contract.tenant_id == ctx.tenant_id,
                    Contract.contract_id == contract_id,
                )
            )
        ).scalar_one_or_none()
        if contract is None:
            raise ContractNotFoundError(contract_id)

        events = (
            (
                await self._session.execute(
                    select(LifecycleEvent)
                    .where(
                        LifecycleEvent.tenant_id == ctx.tenant_id,
                        LifecycleEvent.contract_id == contract_id,
                    )
                    .order_by(LifecycleEvent.sequence)
                )
            )
            .scalars()
            .all()
        )

        stored = state_of(contract)
        try:
            replayed = project(events)
        except ProjectionError as e:
            logger.error(
                "Lifecycle log is not a connected chain",
                extra={"contract_id": str(contract_id), "error": str(e)},
            )
            return ProjectionCheck(
                contract_id=contract_id,
                consistent=False,
                stored=stored,
                replayed=None,
                error=str(e),
            )

        mismatches: list[str] = []
        if (stored is None) != (replayed is None):
            mismatches.append("version")
        elif stored is not None and replayed is not None:
            mismatches = [
                name
                for name in self._COMPARED_FIELDS
                if getattr(stored, name) != getattr(replayed, name)
            ]

        if mismatches:
            logger.error(
                "Stored lifecycle columns disagree with the event log",
                extra={"contract_id": str(contract_id), "fields": mismatches},
            )

        return ProjectionCheck(
            contract_id=contract_id,
            consistent=not mismatches,
            stored=stored,
            replayed=replayed,
            mismatches=tuple(mismatches),
        )
