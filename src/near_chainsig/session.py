"""
Session broker: the signed-in NEAR account and generic contract calls.

Identity has a single writer. It changes only when the wallet's account
stream reports a new active account, or on an explicit log_out(). log_in()
starts the wallet's interactive flow and leaves state to the stream.
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable, Dict, Optional, Tuple

from .config import (
    DEFAULT_FUNCTION_CALL_DEPOSIT,
    DEFAULT_FUNCTION_CALL_GAS,
    ChainSigConfig,
    get_config,
)
from .errors import ExecutionError, NotSignedInError, RpcError, ViewError
from .logging_utils import OperationType, get_chain_logger
from .models import AccountState, SessionIdentity
from .rpc_client import (
    NearRpcClient,
    describe_failure,
    encode_args,
    get_outcome_failure,
    get_transaction_last_result,
    is_final_outcome,
)
from .wallet import WalletConnection

logger = logging.getLogger(__name__)

IdentityCallback = Callable[[SessionIdentity], None]


class SessionBroker:
    """
    Owns "who is signed in" and the view/call primitives built on it.

    Usage:
        broker = SessionBroker(wallet)
        broker.start()
        await broker.log_in()
        outcome = await broker.call_method(
            broker.signed_account_id, "counter.testnet", "increment", {}
        )
    """

    def __init__(
        self,
        wallet: WalletConnection,
        near_rpc: Optional[NearRpcClient] = None,
        config: Optional[ChainSigConfig] = None,
    ):
        self._config = config or get_config()
        self._wallet = wallet
        self._rpc = near_rpc or NearRpcClient(
            self._config.near.node_url,
            timeout_seconds=self._config.http_timeout_seconds,
        )
        self._identity = SessionIdentity()
        self._listeners: Dict[int, IdentityCallback] = {}
        self._next_listener_id = 0
        self._unsubscribe_wallet: Optional[Callable[[], None]] = None
        self._chain_logger = get_chain_logger()

    @property
    def identity(self) -> SessionIdentity:
        return self._identity

    @property
    def signed_account_id(self) -> str:
        return self._identity.signed_account_id

    @property
    def is_signed_in(self) -> bool:
        return self._identity.is_signed_in

    def start(self) -> None:
        """Seed identity from the wallet and follow its account stream."""
        if self._unsubscribe_wallet is not None:
            return
        self._on_accounts(tuple(self._wallet.get_accounts()))
        self._unsubscribe_wallet = self._wallet.subscribe_accounts(self._on_accounts)

    async def close(self) -> None:
        if self._unsubscribe_wallet is not None:
            self._unsubscribe_wallet()
            self._unsubscribe_wallet = None
        await self._rpc.close()

    def _on_accounts(self, accounts: Tuple[AccountState, ...]) -> None:
        self._set_identity(SessionIdentity.from_accounts(accounts))

    def _set_identity(self, identity: SessionIdentity) -> None:
        if identity == self._identity:
            return
        self._identity = identity
        if identity.is_signed_in:
            logger.info(f"Signed in as {identity.signed_account_id}")
        else:
            logger.info("Signed out")
        for callback in list(self._listeners.values()):
            try:
                callback(identity)
            except Exception:
                logger.exception("Identity listener failed")

    def subscribe(self, callback: IdentityCallback) -> Callable[[], None]:
        """Observe identity changes; returns a function that unsubscribes.

        Listeners get the latest identity only, and never the same one twice
        in a row.
        """
        listener_id = self._next_listener_id
        self._next_listener_id += 1
        self._listeners[listener_id] = callback

        def unsubscribe() -> None:
            self._listeners.pop(listener_id, None)

        return unsubscribe

    async def log_in(self) -> None:
        await self._wallet.sign_in(self._config.near.create_access_key_for)

    async def log_out(self) -> None:
        await self._wallet.sign_out()
        self._set_identity(SessionIdentity())

    async def view_method(
        self,
        contract_id: str,
        method: str,
        args: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Call a read-only contract method and decode its JSON result."""
        async with self._chain_logger.operation_context(
            OperationType.VIEW_CALL,
            self._config.near.network_id,
            contract_id=contract_id,
            method=method,
        ):
            try:
                result = await self._rpc.call_function(contract_id, method, encode_args(args))
            except RpcError as e:
                raise ViewError(f"View {contract_id}.{method} failed: {e.message}", contract_id, method) from e

            if not isinstance(result, dict):
                raise ViewError(f"View {contract_id}.{method} returned no result", contract_id, method)
            if result.get("error"):
                raise ViewError(f"View {contract_id}.{method} failed: {result['error']}", contract_id, method)

            try:
                return json.loads(bytes(result.get("result") or []).decode())
            except (TypeError, ValueError) as e:
                raise ViewError(
                    f"View {contract_id}.{method} returned undecodable data",
                    contract_id,
                    method,
                ) from e

    async def call_method(
        self,
        account_id: str,
        contract_id: str,
        method: str,
        args: Optional[Dict[str, Any]] = None,
        gas: str = DEFAULT_FUNCTION_CALL_GAS,
        deposit: str = DEFAULT_FUNCTION_CALL_DEPOSIT,
    ) -> Dict[str, Any]:
        """
        Submit a single FunctionCall action through the wallet.

        Returns the raw final execution outcome; callers decode what they need.

        Raises:
            NotSignedInError: no active account (nothing is sent)
            TransactionRejectedError: the wallet declined
            ExecutionError: the contract call failed
        """
        if not self.is_signed_in:
            raise NotSignedInError(f"Cannot call {contract_id}.{method} while signed out")

        signer_id = account_id or self.signed_account_id
        actions = [
            {
                "type": "FunctionCall",
                "params": {
                    "methodName": method,
                    "args": args or {},
                    "gas": str(gas),
                    "deposit": str(deposit),
                },
            }
        ]

        async with self._chain_logger.operation_context(
            OperationType.FUNCTION_CALL,
            self._config.near.network_id,
            signer_id=signer_id,
            contract_id=contract_id,
            method=method,
        ):
            outcome = await self._wallet.sign_and_send_transaction(signer_id, contract_id, actions)

            failure = get_outcome_failure(outcome)
            if failure is not None:
                raise ExecutionError(
                    f"{contract_id}.{method} failed: {describe_failure(failure)}",
                    failure,
                )
            return outcome

    async def get_transaction_result(self, tx_hash: str, sender_id: Optional[str] = None) -> Any:
        """
        Poll a transaction until it is final and decode its return value.

        There is no timeout here; the loop ends when the node returns a final
        outcome or an error that is not "still pending".
        """
        sender = sender_id or self.signed_account_id
        if not sender:
            raise NotSignedInError("A sender account is required to look up a transaction")

        interval = self._config.polling.outcome_poll_interval_seconds
        async with self._chain_logger.operation_context(
            OperationType.OUTCOME_POLL,
            self._config.near.network_id,
            tx_hash=tx_hash,
        ):
            while True:
                try:
                    outcome = await self._rpc.tx_status(tx_hash, sender, self._config.polling.wait_until)
                except RpcError as e:
                    if e.cause not in NearRpcClient.PENDING_CAUSES:
                        raise
                    logger.debug(f"Transaction {tx_hash} still pending ({e.cause})")
                    await asyncio.sleep(interval)
                    continue

                if is_final_outcome(outcome):
                    break
                await asyncio.sleep(interval)

            failure = get_outcome_failure(outcome)
            if failure is not None:
                raise ExecutionError(f"Transaction {tx_hash} failed: {describe_failure(failure)}", failure)
            return get_transaction_last_result(outcome)
