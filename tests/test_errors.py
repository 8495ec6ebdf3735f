"""Tests for the lifecycle error hierarchy and store error translation."""

from uuid import uuid4

import pytest
from sqlalchemy import exc as sa_exc

from clm.core.errors import (
    AlertNotFoundError,
    ContractLifecycleError,
    ContractNotFoundError,
    InvalidTransitionError,
    LeaseHeldError,
    LifecycleErrorReason,
    StatusConflictError,
    StoreUnavailableError,
    translate_store_errors,
)


class TestErrorHierarchy:
    def test_reasons(self):
        assert ContractNotFoundError(uuid4()).reason is LifecycleErrorReason.NOT_FOUND
        assert AlertNotFoundError(uuid4()).reason is LifecycleErrorReason.NOT_FOUND
        assert (
            StatusConflictError(uuid4(), "sent", "signed").reason is LifecycleErrorReason.CONFLICT
        )
        assert LeaseHeldError(uuid4()).reason is LifecycleErrorReason.LEASE_HELD

    def test_user_message_hides_details(self):
        contract_id = uuid4()
        error = ContractNotFoundError(contract_id)

        assert error.user_message == "contract lifecycle action failed: not_found"
        assert str(contract_id) not in error.user_message
        assert str(contract_id) in error.message

    def test_only_store_errors_are_retryable(self):
        assert StoreUnavailableError("track_event").retryable
        assert not InvalidTransitionError("approved", "draft", "approved").retryable
        assert not ContractNotFoundError(uuid4()).retryable

    def test_invalid_transition_detail(self):
        error = InvalidTransitionError(
            "partially_signed", "fully_signed", "partially_signed", axis="signature_status"
        )

        assert error.detail == {
            "event_type": "partially_signed",
            "axis": "signature_status",
            "from": "fully_signed",
            "to": "partially_signed",
        }
        assert "signature_status fully_signed -> partially_signed" in error.message


class TestTranslateStoreErrors:
    """Tests for translate_store_errors."""

    def test_operational_error_translated(self):
        cause = sa_exc.OperationalError("SELECT 1", {}, Exception("connection refused"))

        with pytest.raises(StoreUnavailableError) as exc_info, translate_store_errors("stats"):
            raise cause

        error = exc_info.value
        assert error.reason is LifecycleErrorReason.STORE_UNAVAILABLE
        assert error.detail == {"operation": "stats"}
        assert error.__cause__ is cause

    def test_pool_timeout_translated(self):
        with pytest.raises(StoreUnavailableError), translate_store_errors("list_contracts"):
            raise sa_exc.TimeoutError("QueuePool limit reached")

    def test_integrity_error_propagates(self):
        cause = sa_exc.IntegrityError("INSERT", {}, Exception("duplicate key"))

        with pytest.raises(sa_exc.IntegrityError), translate_store_errors("track_event"):
            raise cause

    def test_lifecycle_errors_untouched(self):
        with pytest.raises(ContractLifecycleError), translate_store_errors("track_event"):
            raise ContractNotFoundError(uuid4())
