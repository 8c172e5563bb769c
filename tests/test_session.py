"""
Tests for near_chainsig.session and near_chainsig.wallet.

Tests cover:
- Identity state machine driven by the wallet's account stream
- Identity subscriptions
- view_method decoding and failures
- call_method guards, wallet rejection and execution failures
- get_transaction_result polling
"""
from __future__ import annotations

import base64
import json
from unittest.mock import AsyncMock

import pytest

from near_chainsig.errors import (
    ExecutionError,
    NotSignedInError,
    RpcError,
    TransactionRejectedError,
    ViewError,
)
from near_chainsig.models import AccountState, SessionIdentity
from near_chainsig.rpc_client import NearRpcClient
from near_chainsig.session import SessionBroker
from near_chainsig.wallet import AccountStream, SimulatedWalletConnection, success_outcome


@pytest.fixture
def near_rpc():
    return AsyncMock(spec=NearRpcClient)


@pytest.fixture
def wallet():
    return SimulatedWalletConnection(account_id="alice.near")


@pytest.fixture
def broker(wallet, near_rpc, config):
    broker = SessionBroker(wallet, near_rpc=near_rpc, config=config)
    broker.start()
    return broker


class TestAccountStream:
    """Tests for AccountStream delivery."""

    def test_duplicate_publish_suppressed(self):
        stream = AccountStream()
        received = []
        stream.subscribe(received.append)

        stream.publish([AccountState("alice.near", active=True)])
        stream.publish([AccountState("alice.near", active=True)])
        stream.publish([])

        assert received == [(AccountState("alice.near", active=True),), ()]

    def test_unsubscribe(self):
        stream = AccountStream()
        received = []
        unsubscribe = stream.subscribe(received.append)

        unsubscribe()
        stream.publish([AccountState("alice.near", active=True)])

        assert received == []
        assert stream.subscriber_count == 0

    def test_failing_subscriber_does_not_stop_delivery(self, caplog):
        """Should log a subscriber error and keep notifying the rest."""
        stream = AccountStream()
        received = []

        def broken(accounts):
            raise RuntimeError("subscriber bug")

        stream.subscribe(broken)
        stream.subscribe(received.append)

        stream.publish([AccountState("alice.near", active=True)])

        assert received == [(AccountState("alice.near", active=True),)]
        assert "Account subscriber failed" in caplog.text


class TestIdentityStateMachine:
    """Tests for the SignedOut / SignedIn transitions."""

    def test_starts_signed_out(self, broker):
        assert broker.signed_account_id == ""
        assert broker.is_signed_in is False

    def test_active_account_signs_in(self, broker, wallet):
        wallet.set_accounts([AccountState("alice.near", active=True)])
        assert broker.signed_account_id == "alice.near"

    def test_empty_account_set_signs_out(self, broker, wallet):
        wallet.set_accounts([AccountState("alice.near", active=True)])
        wallet.set_accounts([])
        assert broker.signed_account_id == ""

    def test_inactive_accounts_sign_out(self, broker, wallet):
        wallet.set_accounts([AccountState("alice.near", active=True)])
        wallet.set_accounts([AccountState("alice.near", active=False)])
        assert broker.is_signed_in is False

    def test_start_seeds_from_current_accounts(self, wallet, near_rpc, config):
        """Should pick up an account that was active before start()."""
        wallet.set_accounts([AccountState("bob.near", active=True)])
        broker = SessionBroker(wallet, near_rpc=near_rpc, config=config)

        broker.start()

        assert broker.signed_account_id == "bob.near"

    @pytest.mark.asyncio
    async def test_log_in_completes_through_stream(self, broker):
        await broker.log_in()
        assert broker.identity == SessionIdentity("alice.near")

    @pytest.mark.asyncio
    async def test_log_in_does_not_touch_state(self, broker, wallet):
        """Should leave identity alone when the wallet does not report an account."""
        wallet.sign_in = AsyncMock()

        await broker.log_in()

        wallet.sign_in.assert_awaited_once_with("")
        assert broker.signed_account_id == ""

    @pytest.mark.asyncio
    async def test_log_out(self, broker):
        await broker.log_in()
        await broker.log_out()
        assert broker.signed_account_id == ""

    @pytest.mark.asyncio
    async def test_close_stops_following_wallet(self, broker, wallet, near_rpc):
        await broker.close()
        wallet.set_accounts([AccountState("alice.near", active=True)])

        assert broker.signed_account_id == ""
        near_rpc.close.assert_awaited_once()


class TestIdentitySubscription:
    """Tests for SessionBroker.subscribe."""

    @pytest.mark.asyncio
    async def test_listener_sees_changes_once(self, broker, wallet):
        seen = []
        broker.subscribe(seen.append)

        await broker.log_in()
        wallet.set_accounts([AccountState("alice.near", active=True), AccountState("bob.near")])
        await broker.log_out()

        assert seen == [SessionIdentity("alice.near"), SessionIdentity("")]

    def test_unsubscribe(self, broker, wallet):
        seen = []
        unsubscribe = broker.subscribe(seen.append)
        unsubscribe()

        wallet.set_accounts([AccountState("alice.near", active=True)])

        assert seen == []

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_stop_delivery(self, broker, wallet, caplog):
        """Should log a listener error, notify later listeners and finish sign-in."""
        seen = []

        def broken(identity):
            raise RuntimeError("listener bug")

        broker.subscribe(broken)
        broker.subscribe(lambda identity: seen.append(identity.signed_account_id))

        await broker.log_in()
        wallet.set_accounts([])

        assert seen == ["alice.near", ""]
        assert broker.signed_account_id == ""
        assert "Identity listener failed" in caplog.text


class TestViewMethod:
    """Tests for SessionBroker.view_method."""

    @pytest.mark.asyncio
    async def test_decodes_json_result(self, broker, near_rpc):
        near_rpc.call_function.return_value = {"result": list(json.dumps({"count": 7}).encode())}

        result = await broker.view_method("counter.testnet", "get_num", {"id": 1})

        assert result == {"count": 7}
        contract_id, method, args_base64 = near_rpc.call_function.call_args.args
        assert (contract_id, method) == ("counter.testnet", "get_num")
        assert json.loads(base64.b64decode(args_base64)) == {"id": 1}

    @pytest.mark.asyncio
    async def test_works_signed_out(self, broker, near_rpc):
        near_rpc.call_function.return_value = {"result": list(b"42")}
        assert await broker.view_method("counter.testnet", "get_num") == 42

    @pytest.mark.asyncio
    async def test_contract_error(self, broker, near_rpc):
        near_rpc.call_function.return_value = {"error": "wasm execution failed", "result": []}

        with pytest.raises(ViewError) as exc_info:
            await broker.view_method("counter.testnet", "get_num")
        assert exc_info.value.method == "get_num"

    @pytest.mark.asyncio
    async def test_rpc_error(self, broker, near_rpc):
        near_rpc.call_function.side_effect = RpcError("MethodNotFound")

        with pytest.raises(ViewError):
            await broker.view_method("counter.testnet", "nope")

    @pytest.mark.asyncio
    async def test_undecodable_result(self, broker, near_rpc):
        near_rpc.call_function.return_value = {"result": list(b"not json")}

        with pytest.raises(ViewError):
            await broker.view_method("counter.testnet", "get_num")


class TestCallMethod:
    """Tests for SessionBroker.call_method."""

    @pytest.mark.asyncio
    async def test_signed_out_makes_no_call(self, broker, wallet):
        """Should raise NotSignedInError before any network traffic."""
        with pytest.raises(NotSignedInError):
            await broker.call_method("", "counter.testnet", "increment", {})
        assert wallet.sent == []

    @pytest.mark.asyncio
    async def test_sends_function_call_action(self, broker, wallet):
        await broker.log_in()

        outcome = await broker.call_method("alice.near", "counter.testnet", "increment", {"by": 2})

        assert outcome["status"] == {"SuccessValue": base64.b64encode(b"null").decode()}
        assert wallet.sent == [{
            "signer_id": "alice.near",
            "receiver_id": "counter.testnet",
            "actions": [{
                "type": "FunctionCall",
                "params": {
                    "methodName": "increment",
                    "args": {"by": 2},
                    "gas": "30000000000000",
                    "deposit": "0",
                },
            }],
        }]

    @pytest.mark.asyncio
    async def test_wallet_rejection(self, broker, wallet):
        await broker.log_in()
        wallet.reject_next = True

        with pytest.raises(TransactionRejectedError):
            await broker.call_method("alice.near", "counter.testnet", "increment")

    @pytest.mark.asyncio
    async def test_execution_failure(self, wallet, near_rpc, config):
        failing = SimulatedWalletConnection(
            account_id="alice.near",
            responder=lambda signer, receiver, actions: {
                "status": {"Failure": {"ActionError": {"kind": {"FunctionCallError": {"ExecutionError": "panicked"}}}}},
                "receipts_outcome": [],
            },
        )
        broker = SessionBroker(failing, near_rpc=near_rpc, config=config)
        broker.start()
        await broker.log_in()

        with pytest.raises(ExecutionError) as exc_info:
            await broker.call_method("alice.near", "counter.testnet", "increment")
        assert "panicked" in exc_info.value.message


class TestGetTransactionResult:
    """Tests for SessionBroker.get_transaction_result."""

    @pytest.mark.asyncio
    async def test_polls_until_final(self, broker, near_rpc):
        near_rpc.tx_status.side_effect = [
            RpcError("Transaction doesn't exist", cause="UNKNOWN_TRANSACTION"),
            {"status": "Started"},
            success_outcome({"ok": True}),
        ]

        result = await broker.get_transaction_result("9xYz", sender_id="alice.near")

        assert result == {"ok": True}
        assert near_rpc.tx_status.await_count == 3
        near_rpc.tx_status.assert_awaited_with("9xYz", "alice.near", "FINAL")

    @pytest.mark.asyncio
    async def test_other_rpc_errors_propagate(self, broker, near_rpc):
        near_rpc.tx_status.side_effect = RpcError("invalid hash", cause="PARSE_ERROR")

        with pytest.raises(RpcError):
            await broker.get_transaction_result("bad", sender_id="alice.near")

    @pytest.mark.asyncio
    async def test_failure_outcome(self, broker, near_rpc):
        near_rpc.tx_status.return_value = {"status": {"Failure": {"ActionError": {"kind": "AccountDoesNotExist"}}}}

        with pytest.raises(ExecutionError):
            await broker.get_transaction_result("9xYz", sender_id="alice.near")

    @pytest.mark.asyncio
    async def test_requires_sender(self, broker, near_rpc):
        with pytest.raises(NotSignedInError):
            await broker.get_transaction_result("9xYz")
        near_rpc.tx_status.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_defaults_to_signed_in_account(self, broker, near_rpc):
        await broker.log_in()
        near_rpc.tx_status.return_value = success_outcome(5)

        assert await broker.get_transaction_result("9xYz") == 5
        near_rpc.tx_status.assert_awaited_once_with("9xYz", "alice.near", "FINAL")
