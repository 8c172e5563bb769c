"""
Consumer-facing wrapper around TransactionPipeline.

Each operation sets its own progress flag, clears the shared error slot,
and resolves to a StageResult instead of raising.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Optional, Sequence, TypeVar, Union

from .errors import ChainSigError
from .evm_tx import Eip1559Transaction, SignedTransaction
from .models import ChainEndpoint, GasEstimate, RelayReceipt, UnsignedTransactionPayload
from .pipeline import TransactionPipeline
from .session import SessionBroker

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class StageResult(Generic[T]):
    """Outcome of one pipeline stage: a value, or the exception that stopped it."""
    value: Optional[T] = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        """Return the value, re-raising the stored error on failure."""
        if self.error is not None:
            raise self.error
        return self.value


class PipelineReporter:
    """
    Progress flags and a last-error slot on top of a TransactionPipeline.

    Flags:
    - is_loading: gas price and provider updates
    - is_balance_loading, is_payload_loading, is_signature_loading, is_tx_loading

    Flags are plain booleans; two concurrent calls to the same stage share one
    flag, and the first to finish clears it.
    """

    def __init__(self, pipeline: TransactionPipeline):
        self._pipeline = pipeline
        self._flags = {
            "loading": False,
            "balance": False,
            "payload": False,
            "signature": False,
            "tx": False,
        }
        self._error: Optional[Exception] = None

    @property
    def pipeline(self) -> TransactionPipeline:
        return self._pipeline

    @property
    def is_loading(self) -> bool:
        return self._flags["loading"]

    @property
    def is_balance_loading(self) -> bool:
        return self._flags["balance"]

    @property
    def is_payload_loading(self) -> bool:
        return self._flags["payload"]

    @property
    def is_signature_loading(self) -> bool:
        return self._flags["signature"]

    @property
    def is_tx_loading(self) -> bool:
        return self._flags["tx"]

    @property
    def error(self) -> Optional[Exception]:
        return self._error

    @property
    def is_error(self) -> bool:
        return self._error is not None

    async def _run(
        self,
        flag: str,
        stage: str,
        operation: Callable[[], Awaitable[T]],
    ) -> StageResult[T]:
        self._flags[flag] = True
        self._error = None
        try:
            value = await operation()
        except ChainSigError as e:
            logger.error(f"{stage} failed: {e}")
            self._error = e
            return StageResult(error=e)
        except Exception as e:
            logger.exception(f"{stage} failed unexpectedly")
            self._error = e
            return StageResult(error=e)
        finally:
            self._flags[flag] = False
        return StageResult(value=value)

    async def update_provider(self, endpoint: ChainEndpoint, verify_chain_id: bool = False) -> StageResult[None]:
        return await self._run(
            "loading",
            "update_provider",
            lambda: self._pipeline.update_provider(endpoint, verify_chain_id=verify_chain_id),
        )

    async def query_gas_price(self) -> StageResult[GasEstimate]:
        return await self._run("loading", "query_gas_price", self._pipeline.query_gas_price)

    async def get_balance(self, account_id: str) -> StageResult[int]:
        return await self._run(
            "balance",
            "get_balance",
            lambda: self._pipeline.get_balance(account_id),
        )

    async def create_payload(
        self,
        sender: str,
        receiver: str,
        amount: int,
        data: Union[str, bytes] = "0x",
    ) -> StageResult[UnsignedTransactionPayload]:
        return await self._run(
            "payload",
            "create_payload",
            lambda: self._pipeline.create_payload(sender, receiver, amount, data),
        )

    async def request_signature_to_mpc(
        self,
        identity: SessionBroker,
        mpc_contract_id: str,
        derivation_path: str,
        digest_payload: Union[bytes, Sequence[int]],
        transaction: Eip1559Transaction,
        sender: str,
    ) -> StageResult[SignedTransaction]:
        return await self._run(
            "signature",
            "request_signature_to_mpc",
            lambda: self._pipeline.request_signature_to_mpc(
                identity,
                mpc_contract_id,
                derivation_path,
                digest_payload,
                transaction,
                sender,
            ),
        )

    async def relay_transaction(self, signed_transaction: SignedTransaction) -> StageResult[RelayReceipt]:
        return await self._run(
            "tx",
            "relay_transaction",
            lambda: self._pipeline.relay_transaction(signed_transaction),
        )

    async def fetch_mpc_public_key(self, identity: SessionBroker, mpc_contract_id: Optional[str] = None) -> StageResult[Any]:
        return await self._run(
            "loading",
            "fetch_mpc_public_key",
            lambda: self._pipeline.fetch_mpc_public_key(identity, mpc_contract_id),
        )
