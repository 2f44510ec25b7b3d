"""
Tests for gbml_engine.logging.
"""
from __future__ import annotations

import json
import logging

import pytest

from gbml_engine.logging import (
    JsonFormatter,
    StructuredLogger,
    configure_logging,
    is_sensitive_key,
    log_operation,
    mask_sensitive_data,
    mask_value,
)


class TestMasking:
    def test_mask_value_short(self):
        assert mask_value("abc") == "***REDACTED***"

    def test_mask_value_long(self):
        assert mask_value("0123456789abcdef") == "0123...cdef"

    @pytest.mark.parametrize(
        "key",
        ["treasury_private_key", "privateKey", "api-key", "DB_PASSWORD", "client_secret", "mnemonic"],
    )
    def test_sensitive_keys(self, key):
        assert is_sensitive_key(key)

    @pytest.mark.parametrize("key", ["token_address", "tx_hash", "amount", "recipient_address"])
    def test_public_keys(self, key):
        assert not is_sensitive_key(key)

    def test_nested_structures(self):
        data = {
            "chain": {"rpc_url": "http://node", "treasury_private_key": "0xabc"},
            "signers": [{"private_key": "0x1"}, {"address": "0x2"}],
        }
        masked = mask_sensitive_data(data)

        assert masked["chain"]["rpc_url"] == "http://node"
        assert masked["chain"]["treasury_private_key"] == "***REDACTED***"
        assert masked["signers"][0]["private_key"] == "***REDACTED***"
        assert masked["signers"][1]["address"] == "0x2"
        # Input untouched
        assert data["chain"]["treasury_private_key"] == "0xabc"

    def test_additional_fields(self):
        assert mask_sensitive_data({"reason": "x"}, additional_fields=["reason"]) == {"reason": "***REDACTED***"}

    def test_inline_dsn_credentials(self):
        text = "connect failed: postgresql://gbml:hunter2@db:5432/gbml"
        masked = mask_sensitive_data(text)
        assert "hunter2" not in masked
        assert "postgresql://***:***@db:5432/gbml" in masked

    def test_inline_bearer_and_api_key(self):
        masked = mask_sensitive_data("Bearer abc.def.ghi with gbml_0123456789abcdef")
        assert "abc.def.ghi" not in masked
        assert "0123456789abcdef" not in masked

    def test_tuple_type_preserved(self):
        assert mask_sensitive_data(("a", 1)) == ("a", 1)


class TestStructuredLogger:
    def test_fields_are_masked(self, caplog):
        logger = StructuredLogger("gbml.test.masking")
        with caplog.at_level(logging.INFO, logger="gbml.test.masking"):
            logger.info("Loaded chain settings", treasury_private_key="0xdead", token_address="0x11")

        record = caplog.records[-1]
        assert record.data["treasury_private_key"] == "***REDACTED***"
        assert record.data["token_address"] == "0x11"

    def test_context_is_attached(self, caplog):
        logger = StructuredLogger("gbml.test.context")
        with caplog.at_level(logging.DEBUG, logger="gbml.test.context"):
            with logger.context(operation="execute_disbursement", actor_id="treasury_1", request_id="disb_1") as ctx:
                logger.info("Claimed request")

        claimed = next(r for r in caplog.records if r.getMessage() == "Claimed request")
        assert claimed.data["operation"] == "execute_disbursement"
        assert claimed.data["operation_id"] == ctx.operation_id
        assert claimed.data["actor_id"] == "treasury_1"
        assert claimed.data["request_id"] == "disb_1"
        assert logger.current_context is None

    def test_context_logs_failure_and_reraises(self, caplog):
        logger = StructuredLogger("gbml.test.failure")
        with caplog.at_level(logging.ERROR, logger="gbml.test.failure"):
            with pytest.raises(RuntimeError):
                with logger.context(operation="route"):
                    raise RuntimeError("node down")

        assert "Failed route: RuntimeError" in caplog.text
        assert caplog.records[-1].data["error"] == "node down"

    def test_nested_contexts(self):
        logger = StructuredLogger("gbml.test.nested")
        with logger.context(operation="outer"):
            with logger.context(operation="inner"):
                assert logger.current_context.operation == "inner"
            assert logger.current_context.operation == "outer"


class TestLogOperation:
    @pytest.mark.asyncio
    async def test_logs_completion(self, caplog):
        logger = StructuredLogger("gbml.test.op")

        @log_operation("approve", logger=logger, log_result=True)
        async def approve(request_id: str) -> dict:
            return {"id": request_id, "api_key": "k"}

        with caplog.at_level(logging.DEBUG, logger="gbml.test.op"):
            result = await approve("disb_1")

        assert result == {"id": "disb_1", "api_key": "k"}
        completed = caplog.records[-1]
        assert completed.getMessage() == "Completed approve"
        assert completed.data["result"]["api_key"] == "***REDACTED***"

    @pytest.mark.asyncio
    async def test_logs_and_reraises_failure(self, caplog):
        logger = StructuredLogger("gbml.test.opfail")

        @log_operation(logger=logger)
        async def explode():
            raise ValueError("bad")

        with caplog.at_level(logging.WARNING, logger="gbml.test.opfail"):
            with pytest.raises(ValueError):
                await explode()

        assert "Failed explode: ValueError" in caplog.text


class TestFormatting:
    def test_json_formatter(self):
        record = logging.LogRecord("gbml.x", logging.INFO, __file__, 1, "hello %s", ("world",), None)
        record.data = {"token_address": "0x11"}

        payload = json.loads(JsonFormatter().format(record))

        assert payload["message"] == "hello world"
        assert payload["level"] == "INFO"
        assert payload["logger"] == "gbml.x"
        assert payload["data"] == {"token_address": "0x11"}

    def test_configure_logging_accepts_level_names(self):
        root = logging.getLogger()
        saved_handlers, saved_level = root.handlers[:], root.level
        try:
            configure_logging("warning", json_format=True)
            assert root.level == logging.WARNING
            assert isinstance(root.handlers[0].formatter, JsonFormatter)
        finally:
            root.handlers[:] = saved_handlers
            root.setLevel(saved_level)
