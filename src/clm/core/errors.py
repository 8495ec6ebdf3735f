"""Lifecycle error hierarchy.

Every failure the engine reports to callers is a ContractLifecycleError
carrying a machine-readable reason and a short user-facing message. The
surrounding transport layer decides how to present them; nothing here
depends on HTTP.

Duplicate events (same idempotency key) are not errors: record_event
returns the prior result with ``replayed=True``.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from enum import Enum
from typing import Any

from sqlalchemy import exc as sa_exc

logger = logging.getLogger(__name__)


class LifecycleErrorReason(str, Enum):
    """Machine-readable failure reasons."""

    NOT_FOUND = "not_found"
    INVALID_TRANSITION = "invalid_transition"
    INVALID_EVENT_DATA = "invalid_event_data"
    CONFLICT = "conflict"
    LEASE_HELD = "lease_held"
    STORE_UNAVAILABLE = "store_unavailable"


class ContractLifecycleError(Exception):
    """Base exception for contract lifecycle operations.

    Attributes:
        reason: Machine-readable failure category.
        message: Detailed description for logs.
        detail: Optional structured context (ids, statuses).
        retryable: Whether the caller may retry the same request unchanged.
    """

    retryable: bool = False

    def __init__(
        self,
        reason: LifecycleErrorReason,
        message: str,
        detail: dict[str, Any] | None = None,
    ) -> None:
        self.reason = reason
        self.message = message
        self.detail = detail or {}
        super().__init__(message)

    @property
    def user_message(self) -> str:
        """Short message safe to show to end users."""
        return f"contract lifecycle action failed: {self.reason.value}"


class NotFoundError(ContractLifecycleError):
    """A tenant-scoped record does not exist (or belongs to another tenant)."""

    def __init__(self, resource: str, identifier: Any) -> None:
        """Initialize not found error.

        Args:
            resource: Type of resource (e.g., "contract", "alert").
            identifier: The ID that was not found.
        """
        self.resource = resource
        self.identifier = identifier
        super().__init__(
            LifecycleErrorReason.NOT_FOUND,
            f"{resource} not found: {identifier}",
            detail={"resource": resource, "identifier": str(identifier)},
        )


class ContractNotFoundError(NotFoundError):
    """Raised when a contract does not exist for the tenant."""

    def __init__(self, contract_id: Any) -> None:
        super().__init__("contract", contract_id)


class AlertNotFoundError(NotFoundError):
    """Raised when an alert does not exist for the tenant."""

    def __init__(self, alert_id: Any) -> None:
        super().__init__("alert", alert_id)


class InvalidTransitionError(ContractLifecycleError):
    """Raised when an event is not allowed from the contract's current state.

    Not retryable: the same request will keep failing until the contract
    state changes.
    """

    def __init__(
        self,
        event_type: str,
        from_status: str,
        to_status: str | None = None,
        *,
        axis: str = "status",
        message: str | None = None,
    ) -> None:
        """Initialize invalid transition error.

        Args:
            event_type: Event that was rejected.
            from_status: Current value on the rejected axis.
            to_status: Target value, when one could be determined.
            axis: "status" or "signature_status".
            message: Optional override of the generated message.
        """
        self.event_type = event_type
        self.from_status = from_status
        self.to_status = to_status
        self.axis = axis
        if message is None:
            target = to_status if to_status is not None else "?"
            message = (
                f"Event {event_type} not allowed: {axis} {from_status} -> {target}"
            )
        super().__init__(
            LifecycleErrorReason.INVALID_TRANSITION,
            message,
            detail={
                "event_type": event_type,
                "axis": axis,
                "from": from_status,
                "to": to_status,
            },
        )


class InvalidEventDataError(ContractLifecycleError):
    """Raised when an event payload does not match its event type."""

    def __init__(self, event_type: str, errors: list[str]) -> None:
        self.event_type = event_type
        self.errors = errors
        super().__init__(
            LifecycleErrorReason.INVALID_EVENT_DATA,
            f"Invalid data for event {event_type}: {'; '.join(errors)}",
            detail={"event_type": event_type, "errors": errors},
        )


class StatusConflictError(ContractLifecycleError):
    """Raised when the caller's expected previous status is stale."""

    def __init__(self, contract_id: Any, expected: str, actual: str) -> None:
        self.contract_id = contract_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            LifecycleErrorReason.CONFLICT,
            f"Contract {contract_id} is {actual}, expected {expected}",
            detail={
                "contract_id": str(contract_id),
                "expected": expected,
                "actual": actual,
            },
        )


class LeaseHeldError(ContractLifecycleError):
    """Raised inside the sweeper when another holder owns the tenant lease."""

    def __init__(self, tenant_id: Any, holder: str | None = None) -> None:
        self.tenant_id = tenant_id
        self.holder = holder
        super().__init__(
            LifecycleErrorReason.LEASE_HELD,
            f"Sweep lease for tenant {tenant_id} is held by {holder or 'another worker'}",
            detail={"tenant_id": str(tenant_id), "holder": holder},
        )


class StoreUnavailableError(ContractLifecycleError):
    """Raised when the database cannot be reached. Safe to retry."""

    retryable = True

    def __init__(self, operation: str, cause: Exception | None = None) -> None:
        self.operation = operation
        super().__init__(
            LifecycleErrorReason.STORE_UNAVAILABLE,
            f"Store unavailable during {operation}: {cause}",
            detail={"operation": operation},
        )


def _is_unavailable(error: sa_exc.SQLAlchemyError) -> bool:
    if isinstance(error, sa_exc.OperationalError | sa_exc.InterfaceError):
        return True
    if isinstance(error, sa_exc.TimeoutError):
        return True
    return isinstance(error, sa_exc.DBAPIError) and error.connection_invalidated


@contextmanager
def translate_store_errors(operation: str) -> Iterator[None]:
    """Convert connectivity failures into StoreUnavailableError.

    Integrity and programming errors propagate unchanged; they indicate a
    bug or a constraint violation rather than an unreachable store.

    Args:
        operation: Name of the operation, used in the error and logs.

    Raises:
        StoreUnavailableError: If the database connection failed.
    """
    try:
        yield
    except sa_exc.SQLAlchemyError as e:
        if not _is_unavailable(e):
            raise
        logger.warning(
            "Store unavailable during %s: %s",
            operation,
            e.__class__.__name__,
        )
        raise StoreUnavailableError(operation, e) from e
