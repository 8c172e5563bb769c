"""
Pytest configuration for near-chainsig tests.
"""
from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest
from eth_keys import keys

# Add package source to path
package_src = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(package_src))

from near_chainsig.config import ChainSigConfig, PollingConfig
from near_chainsig.models import ChainEndpoint
from near_chainsig.rpc_client import EvmRpcClient


SEPOLIA_CHAIN_ID = 11155111


class FakeEvmNode:
    """In-memory JSON-RPC node served through httpx.MockTransport.

    `results` maps a method to its result, to a callable taking the params,
    or to an `{"error": {...}}` dict returned verbatim as the error member.
    """

    def __init__(self, results: Optional[Dict[str, Any]] = None):
        self.results: Dict[str, Any] = dict(results or {})
        self.calls: List[Dict[str, Any]] = []
        self.transport = httpx.MockTransport(self._handle)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        self.calls.append(payload)
        method = payload["method"]
        if method not in self.results:
            return httpx.Response(
                200,
                json={"jsonrpc": "2.0", "id": payload["id"], "error": {"code": -32601, "message": "method not found"}},
            )

        result = self.results[method]
        if callable(result):
            result = result(payload["params"])
        if isinstance(result, dict) and "error" in result:
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": payload["id"], "error": result["error"]})
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": payload["id"], "result": result})

    def methods_called(self) -> List[str]:
        return [call["method"] for call in self.calls]

    def client(self, rpc_url: str = "https://node.test") -> EvmRpcClient:
        return EvmRpcClient(rpc_url, http_client=httpx.AsyncClient(transport=self.transport))


def node_factory(nodes: Dict[str, FakeEvmNode]) -> Callable[[ChainEndpoint], EvmRpcClient]:
    """rpc_factory for TransactionPipeline that routes endpoints to fake nodes by URL."""
    def factory(endpoint: ChainEndpoint) -> EvmRpcClient:
        return nodes[endpoint.rpc_url].client(endpoint.rpc_url)
    return factory


@pytest.fixture(scope="session")
def anyio_backend():
    """Use asyncio for async tests."""
    return "asyncio"


@pytest.fixture
def config():
    """Configuration with an immediate poll interval."""
    return ChainSigConfig(polling=PollingConfig(outcome_poll_interval_seconds=0))


@pytest.fixture
def signer_key():
    """Stands in for the MPC-derived key of the sender address."""
    return keys.PrivateKey(b"\x42" * 32)


@pytest.fixture
def sender_address(signer_key):
    return signer_key.public_key.to_checksum_address()


@pytest.fixture
def receiver_address():
    return "0x1234567890123456789012345678901234567890"


@pytest.fixture
def sepolia_endpoint():
    return ChainEndpoint(rpc_url="https://sepolia.node.test", chain_id=SEPOLIA_CHAIN_ID)


@pytest.fixture
def sepolia_node():
    """A Sepolia node: nonce 5, 1 gwei gas price, 1.5 gwei tip."""
    return FakeEvmNode({
        "eth_chainId": hex(SEPOLIA_CHAIN_ID),
        "eth_getTransactionCount": "0x5",
        "eth_gasPrice": hex(1_000_000_000),
        "eth_maxPriorityFeePerGas": hex(1_500_000_000),
        "eth_getBalance": hex(2 * 10**18),
    })
