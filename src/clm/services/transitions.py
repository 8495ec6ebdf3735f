"""Contract lifecycle transition table.

This module is the only place that knows which status changes are legal
and which event produces which status. Everything else (the event log,
the force-update path, the sweeper, the projector's chain check) asks it.

Two independent axes are validated:

- ``status`` follows the closed table below; any pair not listed is rejected.
- ``signature_status`` only moves forward: none -> partially_signed ->
  fully_signed. Repeated ``partially_signed`` reports (another signer) and
  repeated ``fully_signed`` reports are accepted; going back is not.

    draft            -> pending_approval, cancelled
    pending_approval -> approved, cancelled
    approved         -> sent, cancelled
    sent             -> signed, cancelled, expired
    signed           -> expired, archived
    expired          -> renewed, archived
    cancelled        -> archived
    renewed          -> pending_approval
    archived         -> (terminal)
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from types import MappingProxyType

from clm.core.errors import InvalidTransitionError
from clm.db.models.base import ContractStatus, LifecycleEventType, SignatureStatus

S = ContractStatus
E = LifecycleEventType
Sig = SignatureStatus

ALLOWED_TRANSITIONS: Mapping[ContractStatus, frozenset[ContractStatus]] = MappingProxyType(
    {
        S.DRAFT: frozenset({S.PENDING_APPROVAL, S.CANCELLED}),
        S.PENDING_APPROVAL: frozenset({S.APPROVED, S.CANCELLED}),
        S.APPROVED: frozenset({S.SENT, S.CANCELLED}),
        S.SENT: frozenset({S.SIGNED, S.CANCELLED, S.EXPIRED}),
        S.SIGNED: frozenset({S.EXPIRED, S.ARCHIVED}),
        S.EXPIRED: frozenset({S.RENEWED, S.ARCHIVED}),
        S.CANCELLED: frozenset({S.ARCHIVED}),
        S.RENEWED: frozenset({S.PENDING_APPROVAL}),
        S.ARCHIVED: frozenset(),
    }
)

# Status each event moves the contract to. CREATED is resolved separately
# (draft on a new contract, pending_approval on an existing one) and the
# signature events leave the status alone unless a target is requested.
EVENT_STATUS_TARGETS: Mapping[LifecycleEventType, ContractStatus] = MappingProxyType(
    {
        E.APPROVED: S.APPROVED,
        E.SENT_FOR_SIGNATURE: S.SENT,
        E.EXPIRED: S.EXPIRED,
        E.RENEWED: S.RENEWED,
        E.CANCELLED: S.CANCELLED,
        E.ARCHIVED: S.ARCHIVED,
    }
)

# Event synthesized for a direct status jump (force status update)
STATUS_EVENTS: Mapping[ContractStatus, LifecycleEventType] = MappingProxyType(
    {
        S.DRAFT: E.CREATED,
        S.PENDING_APPROVAL: E.CREATED,
        S.APPROVED: E.APPROVED,
        S.SENT: E.SENT_FOR_SIGNATURE,
        S.SIGNED: E.FULLY_SIGNED,
        S.CANCELLED: E.CANCELLED,
        S.EXPIRED: E.EXPIRED,
        S.RENEWED: E.RENEWED,
        S.ARCHIVED: E.ARCHIVED,
    }
)

SIGNATURE_EVENTS: Mapping[LifecycleEventType, SignatureStatus] = MappingProxyType(
    {
        E.PARTIALLY_SIGNED: Sig.PARTIALLY_SIGNED,
        E.FULLY_SIGNED: Sig.FULLY_SIGNED,
    }
)

SIGNATURE_RANK: Mapping[SignatureStatus, int] = MappingProxyType(
    {
        Sig.NONE: 0,
        Sig.PARTIALLY_SIGNED: 1,
        Sig.FULLY_SIGNED: 2,
    }
)

# Signatures are collected while the contract is out for signature.
# A repeated fully_signed report on a signed contract is accepted as a no-op.
SIGNABLE_STATUSES: Mapping[LifecycleEventType, frozenset[ContractStatus]] = MappingProxyType(
    {
        E.PARTIALLY_SIGNED: frozenset({S.SENT}),
        E.FULLY_SIGNED: frozenset({S.SENT, S.SIGNED}),
    }
)

# Statuses excluded from expiration alerts and the sweep
CLOSED_STATUSES: frozenset[ContractStatus] = frozenset({S.EXPIRED, S.CANCELLED, S.ARCHIVED})

# Statuses eligible for renewal alerts
RENEWABLE_STATUSES: frozenset[ContractStatus] = frozenset({S.SIGNED, S.EXPIRED})

# Statuses the sweeper can actually move to EXPIRED
EXPIRABLE_STATUSES: frozenset[ContractStatus] = frozenset(
    status for status, targets in ALLOWED_TRANSITIONS.items() if S.EXPIRED in targets
)

# Statuses counted as "active" in lifecycle statistics
ACTIVE_STATUSES: frozenset[ContractStatus] = frozenset({S.APPROVED, S.SENT, S.SIGNED})


@dataclass(frozen=True, slots=True)
class Transition:
    """Fully resolved effect of one event on both lifecycle axes.

    Attributes:
        event_type: The event being applied.
        previous_status: Status before the event (None for the first event).
        new_status: Status after the event.
        previous_signature_status: Signature status before (None for the first event).
        new_signature_status: Signature status after.
    """

    event_type: LifecycleEventType
    previous_status: ContractStatus | None
    new_status: ContractStatus
    previous_signature_status: SignatureStatus | None
    new_signature_status: SignatureStatus

    @property
    def changes_status(self) -> bool:
        return self.previous_status != self.new_status


def is_allowed(previous: ContractStatus, new: ContractStatus) -> bool:
    """Check if ``previous -> new`` is listed in the transition table."""
    return new in ALLOWED_TRANSITIONS.get(previous, frozenset())


def allowed_from(status: ContractStatus) -> frozenset[ContractStatus]:
    """Return the statuses reachable from ``status`` in one step."""
    return ALLOWED_TRANSITIONS.get(status, frozenset())


def is_terminal(status: ContractStatus) -> bool:
    """Check if a status has no outgoing transitions."""
    return not allowed_from(status)


def is_signature_allowed(previous: SignatureStatus, new: SignatureStatus) -> bool:
    """Check a signature status move: forward or same level, never back to none."""
    if new is Sig.NONE:
        return False
    return SIGNATURE_RANK[new] >= SIGNATURE_RANK[previous]


def status_event(status: ContractStatus) -> LifecycleEventType:
    """Return the event type that records a direct jump to ``status``."""
    return STATUS_EVENTS[status]


def initial_transition(event_type: LifecycleEventType) -> Transition:
    """Resolve the first event of a contract, which must be CREATED.

    Raises:
        InvalidTransitionError: For any other event type.
    """
    if event_type is not E.CREATED:
        raise InvalidTransitionError(
            event_type.value,
            "none",
            message=f"First event of a contract must be created, got {event_type.value}",
        )
    return Transition(
        event_type=E.CREATED,
        previous_status=None,
        new_status=S.DRAFT,
        previous_signature_status=None,
        new_signature_status=Sig.NONE,
    )


def resolve_transition(
    event_type: LifecycleEventType,
    current_status: ContractStatus,
    current_signature: SignatureStatus,
    requested_status: ContractStatus | None = None,
) -> Transition:
    """Work out what ``event_type`` does to a contract in the given state.

    Args:
        event_type: Event being recorded.
        current_status: Contract status before the event.
        current_signature: Signature status before the event.
        requested_status: Optional explicit target status. For status events it
            must match the mapped target; for signature events it may move the
            status as well (``fully_signed`` with ``signed``).

    Returns:
        The resolved transition on both axes.

    Raises:
        InvalidTransitionError: If either axis would make an illegal move.
    """
    new_signature = current_signature

    if event_type in SIGNATURE_EVENTS:
        if current_status not in SIGNABLE_STATUSES[event_type]:
            raise InvalidTransitionError(
                event_type.value,
                current_status.value,
                message=(
                    f"Event {event_type.value} not allowed while contract is "
                    f"{current_status.value}"
                ),
            )
        new_signature = SIGNATURE_EVENTS[event_type]
        if not is_signature_allowed(current_signature, new_signature):
            raise InvalidTransitionError(
                event_type.value,
                current_signature.value,
                new_signature.value,
                axis="signature_status",
            )
        target = requested_status if requested_status is not None else current_status
    elif event_type is E.CREATED:
        target = S.PENDING_APPROVAL
    else:
        target = EVENT_STATUS_TARGETS[event_type]

    if requested_status is not None and requested_status is not target:
        raise InvalidTransitionError(
            event_type.value,
            current_status.value,
            requested_status.value,
            message=(
                f"Event {event_type.value} cannot produce status {requested_status.value}"
            ),
        )

    if target is not current_status and not is_allowed(current_status, target):
        raise InvalidTransitionError(event_type.value, current_status.value, target.value)

    if target is S.SIGNED and new_signature is not Sig.FULLY_SIGNED:
        raise InvalidTransitionError(
            event_type.value,
            current_status.value,
            target.value,
            message="A contract can only become signed once every party has signed",
        )

    if target is current_status and event_type not in SIGNATURE_EVENTS:
        # Status events always move the contract; self-loops are not in the table
        raise InvalidTransitionError(event_type.value, current_status.value, target.value)

    return Transition(
        event_type=event_type,
        previous_status=current_status,
        new_status=target,
        previous_signature_status=current_signature,
        new_signature_status=new_signature,
    )
