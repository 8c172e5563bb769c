"""
JSON-RPC clients for both sides of the signing flow.

- EvmRpcClient: the destination chain (gas, nonce, balance, broadcast)
- NearRpcClient: the source chain (contract views, transaction status)

Each method is a single round trip. Retry policy belongs to the caller.
"""
from __future__ import annotations

import base64
import json
import logging
import time
from typing import Any, Dict, Optional, Union

import httpx

from .errors import DecodingError, NetworkError, RpcError
from .logging_utils import ChainLogger, get_chain_logger
from .models import GasEstimate

logger = logging.getLogger(__name__)


class JsonRpcTransport:
    """Minimal JSON-RPC 2.0 transport over httpx."""

    def __init__(
        self,
        rpc_url: str,
        timeout_seconds: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
        chain_logger: Optional[ChainLogger] = None,
    ):
        self._rpc_url = rpc_url
        self._timeout_seconds = timeout_seconds
        self._http_client = http_client
        self._owns_client = http_client is None
        self._chain_logger = chain_logger
        self._request_id = 0

    @property
    def rpc_url(self) -> str:
        return self._rpc_url

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout_seconds, connect=10.0),
                limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
            )
            self._owns_client = True
        return self._http_client

    def _log_call(self, method: str, request_id: int, start_time: float, success: bool, error: Optional[str] = None) -> None:
        chain_logger = self._chain_logger or get_chain_logger()
        chain_logger.log_rpc_call(
            method=method,
            endpoint_url=self._rpc_url,
            request_id=request_id,
            duration_ms=(time.time() - start_time) * 1000,
            success=success,
            error_message=error,
        )

    async def call(self, method: str, params: Any = None) -> Any:
        """
        Make a JSON-RPC call.

        Raises:
            NetworkError: transport failure or an HTTP error without a JSON-RPC body
            RpcError: the node answered with a JSON-RPC error
            DecodingError: the response body is not JSON
        """
        self._request_id += 1
        request_id = self._request_id
        payload = {
            "jsonrpc": "2.0",
            "id": request_id,
            "method": method,
            "params": params if params is not None else [],
        }

        start_time = time.time()
        try:
            client = await self._get_client()
            response = await client.post(
                self._rpc_url,
                json=payload,
                headers={"Content-Type": "application/json"},
            )
        except httpx.HTTPError as e:
            self._log_call(method, request_id, start_time, False, str(e))
            raise NetworkError(f"RPC {method} to {self._rpc_url} failed: {e}", url=self._rpc_url) from e

        try:
            body = response.json()
        except ValueError as e:
            self._log_call(method, request_id, start_time, False, f"status {response.status_code}")
            if response.is_error:
                raise NetworkError(
                    f"RPC {method} returned HTTP {response.status_code}",
                    url=self._rpc_url,
                ) from e
            raise DecodingError(f"RPC {method} returned a non-JSON body", response.text) from e

        if isinstance(body, dict) and "error" in body:
            error = RpcError.from_payload(body["error"])
            self._log_call(method, request_id, start_time, False, error.message)
            raise error

        if response.is_error:
            self._log_call(method, request_id, start_time, False, f"status {response.status_code}")
            raise NetworkError(f"RPC {method} returned HTTP {response.status_code}", url=self._rpc_url)

        self._log_call(method, request_id, start_time, True)
        return body.get("result") if isinstance(body, dict) else None

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client and self._owns_client:
            await self._http_client.aclose()
        self._http_client = None


def _hex_to_int(value: Any, method: str) -> int:
    try:
        return int(value, 16)
    except (TypeError, ValueError) as e:
        raise DecodingError(f"{method} returned a non-hex quantity", value) from e


class EvmRpcClient(JsonRpcTransport):
    """JSON-RPC client for the destination EVM chain."""

    async def get_chain_id(self) -> int:
        result = await self.call("eth_chainId")
        return _hex_to_int(result, "eth_chainId")

    async def get_gas_price(self) -> int:
        """Get current gas price in wei."""
        result = await self.call("eth_gasPrice")
        return _hex_to_int(result, "eth_gasPrice")

    async def get_max_priority_fee(self) -> int:
        """Get max priority fee for EIP-1559."""
        result = await self.call("eth_maxPriorityFeePerGas")
        return _hex_to_int(result, "eth_maxPriorityFeePerGas")

    async def query_gas_price(self, fallback_priority_fee: int) -> GasEstimate:
        """Current fee-market parameters.

        Nodes without eth_maxPriorityFeePerGas answer with an RPC error; the
        fallback tip is used then. Transport failures propagate.
        """
        max_fee = await self.get_gas_price()
        try:
            priority_fee = await self.get_max_priority_fee()
        except RpcError as e:
            logger.warning(f"eth_maxPriorityFeePerGas unavailable ({e.message}), using fallback")
            priority_fee = fallback_priority_fee
        return GasEstimate(
            max_fee_per_gas=max(max_fee, priority_fee),
            max_priority_fee_per_gas=priority_fee,
        )

    async def get_nonce(self, address: str, block: str = "pending") -> int:
        """Get transaction count (nonce) for address."""
        result = await self.call("eth_getTransactionCount", [address, block])
        return _hex_to_int(result, "eth_getTransactionCount")

    async def query_balance(self, address: str, block: str = "latest") -> int:
        """Get native token balance for address in wei."""
        result = await self.call("eth_getBalance", [address, block])
        return _hex_to_int(result, "eth_getBalance")

    async def broadcast(self, signed_tx: Union[bytes, str]) -> str:
        """Broadcast a signed transaction and return its hash."""
        if isinstance(signed_tx, bytes):
            signed_tx = "0x" + signed_tx.hex()
        elif not signed_tx.startswith("0x"):
            signed_tx = "0x" + signed_tx
        result = await self.call("eth_sendRawTransaction", [signed_tx])
        if not isinstance(result, str):
            raise DecodingError("eth_sendRawTransaction did not return a hash", result)
        return result

    async def poll_outcome(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        """Transaction receipt, or None while the transaction is pending."""
        return await self.call("eth_getTransactionReceipt", [tx_hash])

    async def get_transaction(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        """Get transaction by hash."""
        return await self.call("eth_getTransactionByHash", [tx_hash])


class NearRpcClient(JsonRpcTransport):
    """JSON-RPC client for the NEAR node hosting the MPC contract."""

    # Causes the `tx` method reports while a transaction is still in flight
    PENDING_CAUSES = frozenset({"UNKNOWN_TRANSACTION", "TIMEOUT_ERROR"})

    async def call_function(
        self,
        contract_id: str,
        method_name: str,
        args_base64: str,
        finality: str = "optimistic",
    ) -> Dict[str, Any]:
        """Run a read-only contract method."""
        return await self.call(
            "query",
            {
                "request_type": "call_function",
                "finality": finality,
                "account_id": contract_id,
                "method_name": method_name,
                "args_base64": args_base64,
            },
        )

    async def tx_status(
        self,
        tx_hash: str,
        sender_account_id: str,
        wait_until: str = "FINAL",
    ) -> Dict[str, Any]:
        """Fetch a transaction's execution outcome."""
        return await self.call(
            "tx",
            {
                "tx_hash": tx_hash,
                "sender_account_id": sender_account_id,
                "wait_until": wait_until,
            },
        )


def encode_args(args: Any) -> str:
    """JSON-encode contract arguments and wrap them in base64."""
    return base64.b64encode(json.dumps(args or {}).encode()).decode()


def is_final_outcome(outcome: Dict[str, Any]) -> bool:
    status = outcome.get("status") if isinstance(outcome, dict) else None
    return isinstance(status, dict) and ("SuccessValue" in status or "Failure" in status)


def get_outcome_failure(outcome: Dict[str, Any]) -> Optional[Any]:
    """The `Failure` member of a final outcome, if any.

    Failures can also sit on individual receipts, so those are checked too.
    """
    if not isinstance(outcome, dict):
        return None
    status = outcome.get("status")
    if isinstance(status, dict) and "Failure" in status:
        return status["Failure"]
    for receipt in outcome.get("receipts_outcome") or []:
        receipt_status = (receipt.get("outcome") or {}).get("status")
        if isinstance(receipt_status, dict) and "Failure" in receipt_status:
            return receipt_status["Failure"]
    return None


def describe_failure(failure: Any) -> str:
    """Pull the human readable part out of a NEAR failure object."""
    if isinstance(failure, str):
        return failure
    if isinstance(failure, dict):
        for key in ("ExecutionError", "FunctionCallError", "ActionError", "kind", "InvalidTxError"):
            if key in failure:
                return describe_failure(failure[key])
        return json.dumps(failure, default=str)
    return str(failure)


def get_transaction_last_result(outcome: Dict[str, Any]) -> Any:
    """Decode the JSON return value of a final execution outcome.

    Returns None when the call returned nothing.
    """
    status = outcome.get("status") if isinstance(outcome, dict) else None
    if not isinstance(status, dict) or "SuccessValue" not in status:
        raise DecodingError("Outcome has no SuccessValue", outcome)

    encoded = status["SuccessValue"]
    if not encoded:
        return None
    try:
        return json.loads(base64.b64decode(encoded))
    except ValueError as e:
        raise DecodingError("SuccessValue is not base64 encoded JSON", encoded) from e
