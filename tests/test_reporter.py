"""
Tests for near_chainsig.reporter.

Tests cover:
- Each stage sets only its own flag and always clears it
- Success returns the stage's value; failure returns None and records the error
- The error slot is cleared at the start of every call
"""
from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from near_chainsig.errors import EncodingError, NetworkError, RelayRejectedError, RelayRejection
from near_chainsig.models import ChainEndpoint, GasEstimate, RelayReceipt
from near_chainsig.pipeline import TransactionPipeline
from near_chainsig.reporter import PipelineReporter, StageResult

FLAGS = ("is_loading", "is_balance_loading", "is_payload_loading", "is_signature_loading", "is_tx_loading")


@pytest.fixture
def pipeline():
    return AsyncMock(spec=TransactionPipeline)


@pytest.fixture
def reporter(pipeline):
    return PipelineReporter(pipeline)


def _raised_flags(reporter):
    return [name for name in FLAGS if getattr(reporter, name)]


class TestStageResult:
    def test_ok(self):
        result = StageResult(value=3)
        assert result.ok is True
        assert result.unwrap() == 3

    def test_error(self):
        error = NetworkError("down")
        result = StageResult(error=error)

        assert result.ok is False
        assert result.value is None
        with pytest.raises(NetworkError):
            result.unwrap()


class TestFlags:
    """Tests for per-stage progress flags."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("method,args,flag", [
        ("query_gas_price", (), "is_loading"),
        ("update_provider", (ChainEndpoint(rpc_url="https://node.test", chain_id=1),), "is_loading"),
        ("get_balance", ("0x1234567890123456789012345678901234567890",), "is_balance_loading"),
        ("create_payload", ("0xa", "0xb", 1), "is_payload_loading"),
        ("request_signature_to_mpc", (None, "v1.signer", "ethereum-1", b"", None, "0xa"), "is_signature_loading"),
        ("relay_transaction", (None,), "is_tx_loading"),
    ])
    async def test_only_own_flag_raised(self, reporter, pipeline, method, args, flag):
        observed = []

        async def operation(*a, **kw):
            observed.append(_raised_flags(reporter))
            return "value"

        getattr(pipeline, method).side_effect = operation

        result = await getattr(reporter, method)(*args)

        assert observed == [[flag]]
        assert result.value == "value"
        assert _raised_flags(reporter) == []

    @pytest.mark.asyncio
    async def test_flag_cleared_on_failure(self, reporter, pipeline):
        pipeline.create_payload.side_effect = EncodingError("Invalid receiver address", field="receiver")

        await reporter.create_payload("0xa", "0xA", 1)

        assert reporter.is_payload_loading is False


class TestResults:
    """Tests for returned values and the shared error slot."""

    @pytest.mark.asyncio
    async def test_success_returns_value(self, reporter, pipeline):
        estimate = GasEstimate(max_fee_per_gas=2, max_priority_fee_per_gas=1)
        pipeline.query_gas_price.return_value = estimate

        result = await reporter.query_gas_price()

        assert result.value is estimate
        assert result.ok is True
        assert reporter.is_error is False

    @pytest.mark.asyncio
    async def test_failure_returns_none_and_records_error(self, reporter, pipeline):
        error = RelayRejectedError("nonce too low", kind=RelayRejection.NONCE_TOO_LOW)
        pipeline.relay_transaction.side_effect = error

        result = await reporter.relay_transaction(None)

        assert result.value is None
        assert result.error is error
        assert reporter.error is error
        assert reporter.is_error is True
        assert reporter.is_tx_loading is False
        assert "nonce too low" in str(reporter.error)

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_captured(self, reporter, pipeline):
        pipeline.get_balance.side_effect = RuntimeError("boom")

        result = await reporter.get_balance("0x1234567890123456789012345678901234567890")

        assert result.value is None
        assert isinstance(reporter.error, RuntimeError)

    @pytest.mark.asyncio
    async def test_error_cleared_by_next_call(self, reporter, pipeline):
        pipeline.get_balance.side_effect = NetworkError("down")
        await reporter.get_balance("0x1234567890123456789012345678901234567890")
        assert reporter.is_error is True

        pipeline.relay_transaction.return_value = RelayReceipt(tx_hash="0xabc")
        result = await reporter.relay_transaction(None)

        assert result.value.tx_hash == "0xabc"
        assert reporter.error is None
        assert reporter.is_error is False

    @pytest.mark.asyncio
    async def test_error_slot_is_shared(self, reporter, pipeline):
        """Should keep the most recent failure regardless of stage."""
        pipeline.get_balance.side_effect = NetworkError("balance node down")
        pipeline.create_payload.side_effect = EncodingError("bad amount", field="amount")

        await reporter.get_balance("0x1234567890123456789012345678901234567890")
        await reporter.create_payload("0xa", "0xb", -1)

        assert isinstance(reporter.error, EncodingError)

    @pytest.mark.asyncio
    async def test_update_provider_passes_verify_flag(self, reporter, pipeline):
        endpoint = ChainEndpoint(rpc_url="https://node.test", chain_id=1)

        result = await reporter.update_provider(endpoint, verify_chain_id=True)

        assert result.ok is True
        pipeline.update_provider.assert_awaited_once_with(endpoint, verify_chain_id=True)
