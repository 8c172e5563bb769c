"""Cross-chain transaction pipeline signed by a NEAR MPC contract."""
from __future__ import annotations

import logging
from typing import Any, Callable, List, Optional, Sequence, Tuple, Union

from eth_keys.exceptions import BadSignature, ValidationError
from eth_utils import decode_hex, is_address, to_checksum_address
from web3 import Web3

from .config import ChainSigConfig, get_config
from .errors import (
    ChainIdMismatchError,
    ChainSigError,
    EncodingError,
    RelayRejectedError,
    RelayRejection,
    RpcError,
    SignatureMismatchError,
)
from .evm_tx import Eip1559Transaction, SignedTransaction
from .logging_utils import OperationType, get_chain_logger
from .models import (
    ChainEndpoint,
    GasEstimate,
    MPCSignatureRequest,
    MPCSignatureResult,
    RelayReceipt,
    UnsignedTransactionPayload,
)
from .rpc_client import EvmRpcClient, get_transaction_last_result
from .session import SessionBroker

logger = logging.getLogger(__name__)

RpcFactory = Callable[[ChainEndpoint], EvmRpcClient]

MAX_UINT256 = 2**256 - 1


class TransactionPipeline:
    """
    Builds EVM transactions, has the MPC contract sign them, and relays them.

    Stages are independent coroutines:
    - query_gas_price / get_balance: single reads on the destination chain
    - create_payload: nonce + fresh fees -> unsigned tx and its digest
    - request_signature_to_mpc: `sign` on the MPC contract -> signed tx
    - relay_transaction: eth_sendRawTransaction

    Every stage reads the active (endpoint, client) pair once when it starts,
    so update_provider() never affects a stage already in flight.
    """

    def __init__(
        self,
        endpoint: ChainEndpoint,
        config: Optional[ChainSigConfig] = None,
        rpc_factory: Optional[RpcFactory] = None,
    ):
        self._config = config or get_config()
        self._rpc_factory = rpc_factory or self._default_rpc_factory
        client = self._rpc_factory(endpoint)
        self._active: Tuple[ChainEndpoint, EvmRpcClient] = (endpoint, client)
        self._clients: List[EvmRpcClient] = [client]
        self._chain_logger = get_chain_logger()

    @classmethod
    def for_chain(cls, chain: Optional[str] = None, config: Optional[ChainSigConfig] = None) -> "TransactionPipeline":
        """Build a pipeline for a configured chain preset, `default_chain` if none is given."""
        config = config or get_config()
        chain_config = config.get_chain_config(chain or config.default_chain)
        return cls(ChainEndpoint(rpc_url=chain_config.rpc_url, chain_id=chain_config.chain_id), config)

    def _default_rpc_factory(self, endpoint: ChainEndpoint) -> EvmRpcClient:
        return EvmRpcClient(endpoint.rpc_url, timeout_seconds=self._config.http_timeout_seconds)

    @property
    def endpoint(self) -> ChainEndpoint:
        return self._active[0]

    async def update_provider(self, endpoint: ChainEndpoint, verify_chain_id: bool = False) -> None:
        """
        Swap the destination endpoint for all subsequent stages.

        With `verify_chain_id`, the new endpoint must answer eth_chainId with the
        expected id before the swap happens.

        Raises:
            NetworkError: the chain id check could not reach the endpoint
            ChainIdMismatchError: the endpoint serves a different chain
        """
        client = self._rpc_factory(endpoint)
        async with self._chain_logger.operation_context(
            OperationType.PROVIDER_UPDATE,
            str(endpoint.chain_id),
            rpc_url=endpoint.rpc_url,
        ):
            if verify_chain_id:
                try:
                    chain_id = await client.get_chain_id()
                    if chain_id != endpoint.chain_id:
                        raise ChainIdMismatchError(expected=endpoint.chain_id, received=chain_id)
                except ChainSigError:
                    await client.close()
                    raise

            # Previous client stays open for stages still using it; close() releases it
            self._active = (endpoint, client)
            self._clients.append(client)

    async def query_gas_price(self) -> GasEstimate:
        endpoint, rpc = self._active
        chain = str(endpoint.chain_id)
        async with self._chain_logger.operation_context(OperationType.GAS_QUERY, chain):
            estimate = await rpc.query_gas_price(self._config.gas.default_priority_fee_wei)
            self._chain_logger.log_gas_estimation(
                chain, estimate.max_fee_gwei, estimate.max_priority_fee_gwei
            )
            return estimate

    async def get_balance(self, account_id: str) -> int:
        """Native balance of `account_id` in wei."""
        address = _validate_address(account_id, "account_id")
        endpoint, rpc = self._active
        async with self._chain_logger.operation_context(
            OperationType.BALANCE_QUERY, str(endpoint.chain_id), address=address
        ) as ctx:
            balance = await rpc.query_balance(address)
            ctx.metadata["balance_ether"] = str(Web3.from_wei(balance, "ether"))
            return balance

    async def create_payload(
        self,
        sender: str,
        receiver: str,
        amount: int,
        data: Union[str, bytes] = "0x",
    ) -> UnsignedTransactionPayload:
        """
        Build an unsigned EIP-1559 transaction and the digest to sign.

        Args:
            sender: address whose nonce is used (the MPC-derived address)
            receiver: destination address
            amount: value in wei
            data: calldata as 0x-hex or bytes

        Raises:
            EncodingError: bad address, amount or data
            NetworkError / RpcError: nonce or fee lookup failed
        """
        sender_address = _validate_address(sender, "sender")
        to_address = _validate_address(receiver, "receiver")
        value = _validate_amount(amount)
        calldata = _decode_data(data)

        endpoint, rpc = self._active
        async with self._chain_logger.operation_context(
            OperationType.PAYLOAD_BUILD,
            str(endpoint.chain_id),
            sender=sender_address,
            receiver=to_address,
        ) as ctx:
            nonce = await rpc.get_nonce(sender_address)
            gas = await rpc.query_gas_price(self._config.gas.default_priority_fee_wei)

            transaction = Eip1559Transaction(
                chain_id=endpoint.chain_id,
                nonce=nonce,
                max_priority_fee_per_gas=gas.max_priority_fee_per_gas,
                max_fee_per_gas=gas.max_fee_per_gas,
                gas_limit=self._config.gas.default_gas_limit,
                to=to_address,
                value=value,
                data=calldata,
            )
            digest = transaction.signing_digest()
            ctx.metadata["nonce"] = nonce
            ctx.metadata["digest"] = "0x" + digest.hex()
            return UnsignedTransactionPayload(transaction=transaction, digest=digest)

    async def request_signature_to_mpc(
        self,
        identity: SessionBroker,
        mpc_contract_id: str,
        derivation_path: str,
        digest_payload: Union[bytes, Sequence[int]],
        transaction: Eip1559Transaction,
        sender: str,
    ) -> SignedTransaction:
        """
        Have the MPC contract sign `digest_payload` and attach the signature.

        The digest must be the transaction's own signing digest, and the
        returned signature must recover to `sender`; anything else is a
        SignatureMismatchError.

        Raises:
            EncodingError: digest_payload is not bytes, hex or a byte list
            SignatureMismatchError: digest or signature does not match
            NotSignedInError / TransactionRejectedError / ExecutionError: from the broker
            DecodingError: the outcome carries no usable signature
        """
        expected_address = _validate_address(sender, "sender")
        digest = _decode_digest(digest_payload)
        expected_digest = transaction.signing_digest()
        if digest != expected_digest:
            raise SignatureMismatchError(
                "Digest payload does not match the transaction",
                expected="0x" + expected_digest.hex(),
                received="0x" + digest.hex(),
            )

        mpc = self._config.mpc
        request = MPCSignatureRequest(
            path=derivation_path,
            digest_payload=digest,
            signer_account=identity.signed_account_id,
            key_version=mpc.key_version,
        )

        async with self._chain_logger.operation_context(
            OperationType.MPC_SIGNATURE,
            str(transaction.chain_id),
            contract_id=mpc_contract_id,
            path=derivation_path,
        ):
            outcome = await identity.call_method(
                request.signer_account,
                mpc_contract_id,
                mpc.sign_method,
                request.to_args(),
                gas=mpc.sign_gas,
                deposit=mpc.sign_deposit,
            )
            signature = MPCSignatureResult.from_json(get_transaction_last_result(outcome))
            return assemble_signed_transaction(transaction, signature, expected_address)

    async def relay_transaction(self, signed_transaction: SignedTransaction) -> RelayReceipt:
        """
        Broadcast a signed transaction.

        A transaction the node already has (pending or mined) yields the same
        receipt hash instead of an error.

        Raises:
            RelayRejectedError: the node refused the transaction
            ChainIdMismatchError: the transaction targets another chain
            NetworkError: transport failure
        """
        endpoint, rpc = self._active
        transaction = signed_transaction.transaction
        if transaction.chain_id != endpoint.chain_id:
            raise ChainIdMismatchError(expected=endpoint.chain_id, received=transaction.chain_id)

        chain = str(endpoint.chain_id)
        async with self._chain_logger.operation_context(
            OperationType.RELAY, chain, tx_hash=signed_transaction.hash
        ):
            try:
                tx_hash = await rpc.broadcast(signed_transaction.raw)
            except RpcError as e:
                rejection = RelayRejectedError.from_rpc_error(e)
                if rejection.kind in (RelayRejection.ALREADY_KNOWN, RelayRejection.NONCE_TOO_LOW):
                    known = await rpc.get_transaction(signed_transaction.hash)
                    if known:
                        logger.info(
                            f"Transaction {signed_transaction.hash} already known to the node, "
                            "treating broadcast as accepted"
                        )
                        return RelayReceipt(tx_hash=signed_transaction.hash)
                raise rejection from e

            self._chain_logger.log_transaction_relayed(
                tx_hash, chain, transaction.to, transaction.nonce
            )
            return RelayReceipt(tx_hash=tx_hash)

    async def fetch_mpc_public_key(self, identity: SessionBroker, mpc_contract_id: Optional[str] = None) -> Any:
        """Root public key of the MPC contract."""
        return await identity.view_method(
            mpc_contract_id or self._config.mpc.contract_id,
            self._config.mpc.public_key_method,
            {},
        )

    async def close(self) -> None:
        """Close every RPC client this pipeline created."""
        for client in self._clients:
            await client.close()
        self._clients = [self._active[1]]


def assemble_signed_transaction(
    transaction: Eip1559Transaction,
    signature: MPCSignatureResult,
    sender: str,
) -> SignedTransaction:
    """
    Attach an MPC signature to `transaction`.

    The reported recovery id is tried first, then the other parity. The
    result is the candidate whose recovered address is `sender`.
    """
    expected = to_checksum_address(sender)
    r = int.from_bytes(signature.r, "big")
    s = int.from_bytes(signature.s, "big")

    recovered: List[str] = []
    for parity in signature.candidate_parities():
        candidate = transaction.with_signature(parity, r, s)
        try:
            address = candidate.recover_sender()
        except (BadSignature, ValidationError) as e:
            logger.debug(f"Signature candidate with parity {parity} is invalid: {e}")
            continue
        if address == expected:
            return candidate
        recovered.append(address)

    raise SignatureMismatchError(
        "MPC signature does not recover to the sender",
        expected=expected,
        received=", ".join(recovered) or None,
    )


def _validate_address(address: Any, field: str) -> str:
    if not isinstance(address, str) or not is_address(address):
        raise EncodingError(f"Invalid {field} address: {address!r}", field=field)
    return to_checksum_address(address)


def _validate_amount(amount: Any) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise EncodingError(f"Amount must be an integer number of wei, got {amount!r}", field="amount")
    if amount < 0 or amount > MAX_UINT256:
        raise EncodingError(f"Amount out of range: {amount}", field="amount")
    return amount


def _decode_data(data: Any) -> bytes:
    if data is None:
        return b""
    if isinstance(data, (bytes, bytearray)):
        return bytes(data)
    if not isinstance(data, str):
        raise EncodingError(f"Data must be hex or bytes, got {type(data).__name__}", field="data")
    try:
        return decode_hex(data)
    except ValueError as e:
        raise EncodingError(f"Data is not valid hex: {data!r}", field="data") from e


def _decode_digest(digest_payload: Any) -> bytes:
    if isinstance(digest_payload, (bytes, bytearray)):
        return bytes(digest_payload)
    if isinstance(digest_payload, str):
        try:
            return decode_hex(digest_payload)
        except ValueError as e:
            raise EncodingError(f"Digest is not valid hex: {digest_payload!r}", field="digest_payload") from e
    if isinstance(digest_payload, (list, tuple)) and all(
        isinstance(b, int) and not isinstance(b, bool) and 0 <= b <= 255 for b in digest_payload
    ):
        return bytes(digest_payload)
    raise EncodingError(f"Digest must be bytes, hex or a byte list, got {digest_payload!r}", field="digest_payload")
