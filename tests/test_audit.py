from __future__ import annotations

import json
import logging
from unittest.mock import AsyncMock, patch

import pytest

from gbml_engine.audit import (
    AuditAction,
    AuditTrail,
    InMemoryAuditSink,
    LoggingAuditSink,
    PostgresAuditSink,
)
from gbml_engine.exceptions import StorageError
from gbml_engine.identity import Actor


class _BrokenSink:
    async def append(self, record):
        raise StorageError("audit table unavailable", operation="audit_append")


@pytest.mark.asyncio
async def test_record_fills_actor_and_tenant():
    sink = InMemoryAuditSink()
    trail = AuditTrail(sink)
    actor = Actor.of("u1", "tenant_a", ["PROGRAM"])

    record = await trail.record(AuditAction.DISBURSEMENT_REQUEST, "disbursement", actor=actor, payload={"a": 1})

    assert record.id.startswith("aud_")
    assert record.actor_id == "u1"
    assert record.tenant_id == "tenant_a"
    assert sink.records == [record]


@pytest.mark.asyncio
async def test_payload_is_masked():
    sink = InMemoryAuditSink()
    trail = AuditTrail(sink)

    record = await trail.record(
        AuditAction.ERROR,
        "payment",
        payload={"treasury_private_key": "0xdeadbeef", "token_address": "0x11"},
    )

    assert record.payload["treasury_private_key"] == "***REDACTED***"
    assert record.payload["token_address"] == "0x11"


@pytest.mark.asyncio
async def test_sink_failure_is_logged_not_raised(caplog):
    trail = AuditTrail(_BrokenSink())

    with caplog.at_level(logging.ERROR, logger="gbml.audit"):
        result = await trail.record(AuditAction.PAUSE_SET, "pause", payload={"scope": "GLOBAL"})

    assert result is None
    assert "Audit write failed" in caplog.text


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [ConnectionError("peer reset"), TimeoutError(), RuntimeError("bug in sink")])
async def test_any_sink_error_is_logged_not_raised(caplog, error):
    sink = InMemoryAuditSink()
    sink.append = AsyncMock(side_effect=error)
    trail = AuditTrail(sink)

    with caplog.at_level(logging.ERROR, logger="gbml.audit"):
        assert await trail.record_error(ValueError("boom"), "pause") is None

    assert caplog.records[-1].data["error_type"] == type(error).__name__
    assert caplog.records[-1].data["record"]["action"] == "ERROR"


@pytest.mark.asyncio
async def test_record_error_uses_error_channel():
    sink = InMemoryAuditSink()
    trail = AuditTrail(sink)

    await trail.record_error(ValueError("boom"), "payment", tenant_id="t1", context={"step": "transfer"})

    (record,) = sink.by_action(AuditAction.ERROR)
    assert record.error == "boom"
    assert record.tenant_id == "t1"
    assert record.payload == {"step": "transfer"}


@pytest.mark.asyncio
async def test_logging_sink_writes_record(caplog):
    trail = AuditTrail(LoggingAuditSink())
    with caplog.at_level(logging.INFO, logger="gbml.audit.trail"):
        await trail.record(AuditAction.MODULE_ENABLED, "module", payload={"module_id": "mod_1"})
    assert "[AUDIT] MODULE_ENABLED" in caplog.text


@pytest.mark.asyncio
async def test_postgres_sink_inserts_json_payload():
    sink = PostgresAuditSink()
    trail = AuditTrail(sink)

    with patch("gbml_engine.audit.Database.execute", new=AsyncMock(return_value="INSERT 0 1")) as execute:
        record = await trail.record(AuditAction.PAYMENT_SENT, "payment", payload={"amount": "5"})

    query, *args = execute.await_args.args
    assert "INSERT INTO audit_log" in query
    assert args[0] == record.id
    assert args[1] == "PAYMENT_SENT"
    assert json.loads(args[5]) == {"amount": "5"}


@pytest.mark.asyncio
async def test_postgres_sink_driver_error_becomes_storage_error():
    sink = PostgresAuditSink()
    trail = AuditTrail(sink)

    with patch("gbml_engine.audit.Database.execute", new=AsyncMock(side_effect=OSError("connection reset"))):
        # The sink raises StorageError; the trail logs it and returns None
        assert await trail.record(AuditAction.PAYMENT_SENT, "payment") is None
        with pytest.raises(StorageError):
            await sink.append(
                (await AuditTrail(InMemoryAuditSink()).record(AuditAction.PAYMENT_SENT, "payment"))
            )
