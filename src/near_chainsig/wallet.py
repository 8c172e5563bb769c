"""Wallet-connection port and a simulated implementation for development."""
from __future__ import annotations

import base64
import json
import logging
import secrets
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .errors import TransactionRejectedError
from .models import AccountState

logger = logging.getLogger(__name__)

AccountsCallback = Callable[[Tuple[AccountState, ...]], None]


class AccountStream:
    """Publishes the wallet's account set to subscribers.

    Delivery is latest-state-only: a subscriber sees the set as of each
    publish, never a queue of intermediate states. Publishing a set equal to
    the current one is suppressed.
    """

    def __init__(self, initial: Sequence[AccountState] = ()):
        self._accounts: Tuple[AccountState, ...] = tuple(initial)
        self._subscribers: Dict[int, AccountsCallback] = {}
        self._next_id = 0

    @property
    def current(self) -> Tuple[AccountState, ...]:
        return self._accounts

    def publish(self, accounts: Sequence[AccountState]) -> None:
        accounts = tuple(accounts)
        if accounts == self._accounts:
            return
        self._accounts = accounts
        for callback in list(self._subscribers.values()):
            try:
                callback(accounts)
            except Exception:
                logger.exception("Account subscriber failed")

    def subscribe(self, callback: AccountsCallback) -> Callable[[], None]:
        """Register a callback; returns a function that unsubscribes it."""
        subscription_id = self._next_id
        self._next_id += 1
        self._subscribers[subscription_id] = callback

        def unsubscribe() -> None:
            self._subscribers.pop(subscription_id, None)

        return unsubscribe

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)


class WalletConnection(ABC):
    """Abstract interface for the external wallet layer."""

    @abstractmethod
    def get_accounts(self) -> Sequence[AccountState]:
        """Accounts the wallet currently exposes."""
        pass

    @abstractmethod
    def subscribe_accounts(self, callback: AccountsCallback) -> Callable[[], None]:
        """Observe account-set changes; returns an unsubscribe function."""
        pass

    @abstractmethod
    async def sign_in(self, contract_id: str) -> None:
        """Run the interactive sign-in flow.

        Completion is reported through the account stream, not the return value.
        """
        pass

    @abstractmethod
    async def sign_out(self) -> None:
        pass

    @abstractmethod
    async def sign_and_send_transaction(
        self,
        signer_id: str,
        receiver_id: str,
        actions: List[Dict[str, Any]],
    ) -> Dict[str, Any]:
        """Sign and submit a transaction, returning its final execution outcome.

        Implementations raise TransactionRejectedError when the user or the
        wallet declines.
        """
        pass


def success_outcome(value: Any, tx_hash: Optional[str] = None, signer_id: str = "") -> Dict[str, Any]:
    """A final execution outcome whose call returned `value` as JSON."""
    encoded = base64.b64encode(json.dumps(value).encode()).decode()
    return {
        "status": {"SuccessValue": encoded},
        "transaction": {
            "hash": tx_hash or secrets.token_hex(32),
            "signer_id": signer_id,
        },
        "transaction_outcome": {},
        "receipts_outcome": [],
    }


OutcomeResponder = Callable[[str, str, List[Dict[str, Any]]], Dict[str, Any]]


class SimulatedWalletConnection(WalletConnection):
    """Simulated wallet for development.

    `sign_in` immediately activates `account_id`. Transactions are answered
    by `responder` (defaults to an empty successful outcome) and recorded in
    `sent`.
    """

    def __init__(
        self,
        account_id: str = "dev.testnet",
        responder: Optional[OutcomeResponder] = None,
    ):
        self._account_id = account_id
        self._stream = AccountStream()
        self._responder = responder
        self.reject_next = False
        self.sent: List[Dict[str, Any]] = []

    def get_accounts(self) -> Sequence[AccountState]:
        return self._stream.current

    def subscribe_accounts(self, callback: AccountsCallback) -> Callable[[], None]:
        return self._stream.subscribe(callback)

    def set_accounts(self, accounts: Sequence[AccountState]) -> None:
        """Simulate an account change coming from the wallet."""
        self._stream.publish(accounts)

    async def sign_in(self, contract_id: str) -> None:
        logger.info(f"[SIMULATED] Sign-in for {self._account_id} (access key for {contract_id or '-'})")
        self._stream.publish([AccountState(account_id=self._account_id, active=True)])

    async def sign_out(self) -> None:
        self._stream.publish([])

    async def sign_and_send_transaction(
        self,
        signer_id: str,
        receiver_id: str,
        actions: List[Dict[str, Any]],
    ) -> Dict[str, Any]:
        if self.reject_next:
            self.reject_next = False
            raise TransactionRejectedError("User rejected the transaction")

        self.sent.append({"signer_id": signer_id, "receiver_id": receiver_id, "actions": actions})
        if self._responder is not None:
            return self._responder(signer_id, receiver_id, actions)
        return success_outcome(None, signer_id=signer_id)
