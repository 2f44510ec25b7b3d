"""
Tests for gbml_engine.disbursement_service.

Tests cover:
- Request creation, validation and pause gating
- Role separation between requesting and executing
- Execution: success, routing failure, timeout, idempotency and races
- Approval step
- Tenant-scoped listing
"""
from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest
from web3.exceptions import ContractLogicError

from conftest import ONE_TOKEN, OTHER_TENANT, OTHER_TOKEN, RECIPIENT, TENANT, TOKEN, TREASURY
from gbml_engine.audit import AuditAction
from gbml_engine.disbursements import DisbursementStatus
from gbml_engine.exceptions import (
    AuthorizationError,
    ExecutionTimeoutError,
    InvalidStateError,
    NotFoundError,
    PausedError,
    RoutingError,
    ValidationError,
)
from gbml_engine.identity import Actor
from gbml_engine.pause_store import PauseScope


async def _request(disbursements, actor, amount="1.5", token=TOKEN):
    return await disbursements.request_disbursement(
        TENANT, amount, token, RECIPIENT, "grant payout", actor,
    )


class TestRequest:
    @pytest.mark.asyncio
    async def test_creates_pending_request(self, disbursements, program_actor, audit_sink):
        request = await _request(disbursements, program_actor)

        assert request.id.startswith("disb_")
        assert request.status is DisbursementStatus.PENDING
        assert request.requested_by == program_actor.id
        assert request.tenant_id == TENANT
        assert request.amount == "1.5"
        assert request.token_decimals == 18
        records = audit_sink.by_action(AuditAction.DISBURSEMENT_REQUEST)
        assert records[0].payload["request_id"] == request.id
        assert records[0].tenant_id == TENANT

    @pytest.mark.asyncio
    async def test_global_pause_blocks_request(self, disbursements, pause, admin, program_actor):
        await pause.set_pause(PauseScope.GLOBAL, None, True, "incident", admin)

        with pytest.raises(PausedError):
            await _request(disbursements, program_actor)
        assert await disbursements.list_requests(TENANT) == []

    @pytest.mark.asyncio
    async def test_token_pause_blocks_request(self, disbursements, pause, admin, program_actor):
        await pause.set_pause(PauseScope.TOKEN, TOKEN, True, "depeg", admin)

        with pytest.raises(PausedError) as exc_info:
            await _request(disbursements, program_actor)
        assert exc_info.value.details["scope"] == "TOKEN"

    @pytest.mark.asyncio
    async def test_treasury_cannot_request(self, disbursements, treasury_actor):
        with pytest.raises(AuthorizationError):
            await _request(disbursements, treasury_actor)

    @pytest.mark.asyncio
    async def test_other_tenant_cannot_request(self, disbursements):
        outsider = Actor.of("program_b", OTHER_TENANT, ["PROGRAM"])
        with pytest.raises(AuthorizationError):
            await _request(disbursements, outsider)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", ["abc", "0", "-1", ""])
    async def test_invalid_amount(self, disbursements, program_actor, amount):
        with pytest.raises(ValidationError):
            await _request(disbursements, program_actor, amount=amount)

    @pytest.mark.asyncio
    async def test_invalid_recipient(self, disbursements, program_actor):
        with pytest.raises(ValidationError):
            await disbursements.request_disbursement(TENANT, "1", TOKEN, "0xnope", "", program_actor)

    @pytest.mark.asyncio
    async def test_decimals_frozen_at_request_time(self, disbursements, ledger, program_actor, treasury_actor):
        ledger.add_token(OTHER_TOKEN, decimals=6, treasury=TREASURY, treasury_balance=10**12)
        request = await _request(disbursements, program_actor, amount="1.5", token=OTHER_TOKEN)
        assert request.token_decimals == 6

        executed = await disbursements.execute_disbursement(request.id, treasury_actor)
        assert await ledger.balance_of(OTHER_TOKEN, RECIPIENT) == 1_500_000
        assert executed.status is DisbursementStatus.EXECUTED

    @pytest.mark.asyncio
    async def test_amount_too_precise_for_token(self, disbursements, ledger, program_actor):
        ledger.add_token(OTHER_TOKEN, decimals=2, treasury=TREASURY)
        with pytest.raises(ValidationError):
            await _request(disbursements, program_actor, amount="1.005", token=OTHER_TOKEN)

    @pytest.mark.asyncio
    async def test_unknown_decimals_left_unset(self, disbursements, ledger, program_actor):
        ledger.fail_next("decimals", ConnectionError("connection refused"))
        request = await _request(disbursements, program_actor)
        assert request.token_decimals is None


class TestExecute:
    @pytest.mark.asyncio
    async def test_pending_to_executed(self, disbursements, program_actor, treasury_actor, ledger, audit_sink):
        request = await _request(disbursements, program_actor)

        executed = await disbursements.execute_disbursement(request.id, treasury_actor)

        assert executed.status is DisbursementStatus.EXECUTED
        assert executed.executed_by == treasury_actor.id
        assert executed.blockchain_tx_hash.startswith("0x")
        assert await ledger.balance_of(TOKEN, RECIPIENT) == 1_500_000_000_000_000_000

        listed = await disbursements.list_requests(TENANT)
        assert [(r.id, r.status, r.blockchain_tx_hash) for r in listed] == [
            (request.id, DisbursementStatus.EXECUTED, executed.blockchain_tx_hash)
        ]
        record = audit_sink.by_action(AuditAction.DISBURSEMENT_EXECUTE)[0]
        assert record.payload["tx_hash"] == executed.blockchain_tx_hash
        assert record.actor_id == treasury_actor.id

    @pytest.mark.asyncio
    async def test_program_cannot_execute(self, disbursements, program_actor):
        request = await _request(disbursements, program_actor)
        with pytest.raises(AuthorizationError):
            await disbursements.execute_disbursement(request.id, program_actor)
        assert (await disbursements.get_request(request.id)).status is DisbursementStatus.PENDING

    @pytest.mark.asyncio
    async def test_other_tenant_cannot_execute(self, disbursements, program_actor, outsider_treasury):
        request = await _request(disbursements, program_actor)
        with pytest.raises(AuthorizationError):
            await disbursements.execute_disbursement(request.id, outsider_treasury)

    @pytest.mark.asyncio
    async def test_admin_can_request_and_execute(self, disbursements, admin):
        request = await _request(disbursements, admin)
        executed = await disbursements.execute_disbursement(request.id, admin)
        assert executed.status is DisbursementStatus.EXECUTED

    @pytest.mark.asyncio
    async def test_unknown_request(self, disbursements, treasury_actor):
        with pytest.raises(NotFoundError):
            await disbursements.execute_disbursement("disb_missing", treasury_actor)

    @pytest.mark.asyncio
    async def test_executing_twice_is_rejected(self, disbursements, program_actor, treasury_actor, ledger):
        request = await _request(disbursements, program_actor)
        executed = await disbursements.execute_disbursement(request.id, treasury_actor)
        transfers_before = ledger.operations().count("transfer")

        with pytest.raises(InvalidStateError) as exc_info:
            await disbursements.execute_disbursement(request.id, treasury_actor)

        assert exc_info.value.details["current_status"] == "EXECUTED"
        after = await disbursements.get_request(request.id)
        assert after.status is DisbursementStatus.EXECUTED
        assert after.blockchain_tx_hash == executed.blockchain_tx_hash
        assert ledger.operations().count("transfer") == transfers_before

    @pytest.mark.asyncio
    async def test_pause_after_request_blocks_execute(self, disbursements, pause, admin, program_actor, treasury_actor):
        request = await _request(disbursements, program_actor)
        await pause.set_pause(PauseScope.GLOBAL, None, True, "incident", admin)

        with pytest.raises(PausedError):
            await disbursements.execute_disbursement(request.id, treasury_actor)
        assert (await disbursements.get_request(request.id)).status is DisbursementStatus.PENDING

    @pytest.mark.asyncio
    async def test_routing_failure_marks_failed(
        self, disbursements, program_actor, treasury_actor, ledger, audit_sink,
    ):
        request = await _request(disbursements, program_actor)
        ledger.fail_next("transfer", ContractLogicError("execution reverted: insufficient funds"))

        with pytest.raises(RoutingError):
            await disbursements.execute_disbursement(request.id, treasury_actor)

        failed = await disbursements.get_request(request.id)
        assert failed.status is DisbursementStatus.FAILED
        assert failed.failure_reason
        assert failed.blockchain_tx_hash is None
        record = audit_sink.by_action(AuditAction.DISBURSEMENT_FAILED)[0]
        assert record.error == failed.failure_reason

        # FAILED is terminal
        with pytest.raises(InvalidStateError):
            await disbursements.execute_disbursement(request.id, treasury_actor)

    @pytest.mark.asyncio
    async def test_timeout_leaves_processing(self, disbursements, program_actor, treasury_actor, ledger, audit_sink):
        request = await _request(disbursements, program_actor)
        ledger.hold_receipts = True

        with pytest.raises(ExecutionTimeoutError):
            await disbursements.execute_disbursement(request.id, treasury_actor, timeout=0.01)

        stuck = await disbursements.get_request(request.id)
        assert stuck.status is DisbursementStatus.PROCESSING
        assert audit_sink.by_action(AuditAction.ERROR)
        assert not audit_sink.by_action(AuditAction.DISBURSEMENT_FAILED)

        with pytest.raises(InvalidStateError):
            await disbursements.execute_disbursement(request.id, treasury_actor)

    @pytest.mark.asyncio
    async def test_concurrent_executes_route_once(self, disbursements, program_actor, treasury_actor, ledger):
        request = await _request(disbursements, program_actor)

        results = await asyncio.gather(
            disbursements.execute_disbursement(request.id, treasury_actor),
            disbursements.execute_disbursement(request.id, treasury_actor),
            return_exceptions=True,
        )

        errors = [r for r in results if isinstance(r, Exception)]
        assert len(errors) == 1
        assert isinstance(errors[0], InvalidStateError)
        assert ledger.operations().count("transfer") == 1

    @pytest.mark.asyncio
    async def test_audit_outage_does_not_mask_execution(
        self, disbursements, program_actor, treasury_actor, ledger, audit_sink,
    ):
        request = await _request(disbursements, program_actor)
        audit_sink.append = AsyncMock(side_effect=ConnectionError("audit sink unreachable"))

        executed = await disbursements.execute_disbursement(request.id, treasury_actor)

        assert executed.status is DisbursementStatus.EXECUTED
        assert executed.blockchain_tx_hash.startswith("0x")
        audit_sink.append.assert_awaited()
        assert await ledger.balance_of(TOKEN, RECIPIENT) == 1_500_000_000_000_000_000


class TestApprove:
    @pytest.mark.asyncio
    async def test_approve_then_execute(
        self, disbursements, program_actor, compliance_actor, treasury_actor, audit_sink,
    ):
        request = await _request(disbursements, program_actor)

        approved = await disbursements.approve_disbursement(request.id, compliance_actor)
        assert approved.status is DisbursementStatus.APPROVED
        assert approved.approved_by == compliance_actor.id
        assert audit_sink.by_action(AuditAction.DISBURSEMENT_APPROVE)

        executed = await disbursements.execute_disbursement(request.id, treasury_actor)
        assert executed.status is DisbursementStatus.EXECUTED
        assert executed.approved_by == compliance_actor.id

    @pytest.mark.asyncio
    async def test_program_cannot_approve(self, disbursements, program_actor):
        request = await _request(disbursements, program_actor)
        with pytest.raises(AuthorizationError):
            await disbursements.approve_disbursement(request.id, program_actor)

    @pytest.mark.asyncio
    async def test_cannot_approve_twice(self, disbursements, program_actor, compliance_actor):
        request = await _request(disbursements, program_actor)
        await disbursements.approve_disbursement(request.id, compliance_actor)

        with pytest.raises(InvalidStateError) as exc_info:
            await disbursements.approve_disbursement(request.id, compliance_actor)
        assert exc_info.value.details["current_status"] == "APPROVED"


class TestList:
    @pytest.mark.asyncio
    async def test_scoped_to_tenant_and_filtered(self, disbursements, program_actor, treasury_actor, admin):
        first = await _request(disbursements, program_actor, amount="1")
        second = await _request(disbursements, program_actor, amount="2")
        await disbursements.request_disbursement(OTHER_TENANT, "3", TOKEN, RECIPIENT, "", admin)
        await disbursements.execute_disbursement(first.id, treasury_actor)

        all_requests = await disbursements.list_requests(TENANT)
        assert {r.id for r in all_requests} == {first.id, second.id}

        pending = await disbursements.list_requests(TENANT, "pending")
        assert [r.id for r in pending] == [second.id]

        executed = await disbursements.list_requests(TENANT, DisbursementStatus.EXECUTED)
        assert [r.id for r in executed] == [first.id]

    @pytest.mark.asyncio
    async def test_newest_first(self, disbursements, program_actor):
        first = await _request(disbursements, program_actor, amount="1")
        await asyncio.sleep(0.002)
        second = await _request(disbursements, program_actor, amount="2")

        listed = await disbursements.list_requests(TENANT)
        assert [r.id for r in listed] == [second.id, first.id]

    @pytest.mark.asyncio
    async def test_unknown_status(self, disbursements):
        with pytest.raises(ValidationError):
            await disbursements.list_requests(TENANT, "DONE")

    @pytest.mark.asyncio
    async def test_viewer_from_other_tenant(self, disbursements, outsider_treasury):
        with pytest.raises(AuthorizationError):
            await disbursements.list_requests(TENANT, actor=outsider_treasury)


@pytest.mark.asyncio
async def test_amount_literal_without_point_is_smallest_units(disbursements, program_actor, treasury_actor, ledger):
    request = await _request(disbursements, program_actor, amount=str(ONE_TOKEN))
    await disbursements.execute_disbursement(request.id, treasury_actor)
    assert await ledger.balance_of(TOKEN, RECIPIENT) == ONE_TOKEN
