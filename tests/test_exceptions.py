from __future__ import annotations

import pytest

from gbml_engine.exceptions import (
    EXCEPTION_REGISTRY,
    AuthorizationError,
    ExecutionTimeoutError,
    GbmlException,
    InvalidStateError,
    NotFoundError,
    PausedError,
    RoutingError,
    StorageError,
    ValidationError,
    exception_from_chain_error,
    get_exception_class,
)


@pytest.mark.parametrize(
    "exc, status, code",
    [
        (ValidationError("bad", field="amount"), 400, "VALIDATION_ERROR"),
        (AuthorizationError("no"), 403, "AUTHORIZATION_ERROR"),
        (NotFoundError("DisbursementRequest", "disb_1"), 404, "NOT_FOUND"),
        (InvalidStateError("nope", resource_id="disb_1"), 409, "INVALID_STATE"),
        (PausedError(scope="GLOBAL"), 423, "PAUSED"),
        (RoutingError("boom"), 502, "ROUTING_ERROR"),
        (StorageError("down"), 503, "STORAGE_ERROR"),
        (ExecutionTimeoutError(tx_hash="0xabc"), 504, "EXECUTION_TIMEOUT"),
    ],
)
def test_status_and_codes(exc, status, code):
    assert isinstance(exc, GbmlException)
    assert exc.http_status == status
    assert exc.to_dict()["error"] == code


def test_timeout_is_not_a_routing_error():
    assert not issubclass(ExecutionTimeoutError, RoutingError)


def test_not_found_message_and_details():
    exc = NotFoundError("DisbursementRequest", "disb_1")
    assert exc.message == "DisbursementRequest 'disb_1' not found"
    assert exc.to_dict()["details"] == {"resource_type": "DisbursementRequest", "resource_id": "disb_1"}


def test_to_dict_omits_empty_details():
    assert GbmlException("plain").to_dict() == {"error": "GBML_ERROR", "message": "plain"}


class TestChainErrorMapping:
    def test_known_revert_is_mapped(self):
        cause = RuntimeError("execution reverted: ERC20: transfer amount exceeds balance")
        err = exception_from_chain_error(cause, token_address="0xtoken", step="transfer")
        assert isinstance(err, RoutingError)
        assert err.message == "Insufficient treasury balance"
        assert err.cause is cause
        assert err.details["step"] == "transfer"
        assert err.details["cause_type"] == "RuntimeError"

    def test_missing_role_is_mapped(self):
        err = exception_from_chain_error(Exception("AccessControl: account is missing role"))
        assert err.message == "Signer lacks the required token role"

    def test_unknown_error_is_generic(self):
        err = exception_from_chain_error(ValueError("weird"))
        assert err.message == "Routing failed: weird"

    def test_routing_error_passes_through(self):
        original = RoutingError("already mapped")
        assert exception_from_chain_error(original) is original


def test_registry_lookup():
    assert get_exception_class("PAUSED") is PausedError
    assert get_exception_class("UNKNOWN") is GbmlException
    assert set(EXCEPTION_REGISTRY.values()) >= {RoutingError, StorageError}
