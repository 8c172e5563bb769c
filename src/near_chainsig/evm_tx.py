"""EIP-1559 (type 2) transaction encoding for MPC-signed payloads.

The MPC contract signs a bare 32-byte digest, so the transaction is built,
hashed and later reassembled here rather than through a local key:

    digest = keccak256(0x02 || rlp([chain_id, nonce, tip, max_fee, gas,
                                    to, value, data, access_list]))
    raw    = 0x02 || rlp([... same fields ..., y_parity, r, s])
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List

import rlp
from eth_keys import keys
from eth_utils import keccak, to_canonical_address, to_checksum_address

EIP1559_TX_TYPE = b"\x02"


@dataclass(frozen=True)
class Eip1559Transaction:
    """Fee-market transaction fields. Values are in wei."""
    chain_id: int
    nonce: int
    max_priority_fee_per_gas: int
    max_fee_per_gas: int
    gas_limit: int
    to: str
    value: int
    data: bytes = b""

    def _fields(self) -> List[Any]:
        return [
            self.chain_id,
            self.nonce,
            self.max_priority_fee_per_gas,
            self.max_fee_per_gas,
            self.gas_limit,
            to_canonical_address(self.to),
            self.value,
            self.data,
            [],  # access list
        ]

    def serialize_unsigned(self) -> bytes:
        return EIP1559_TX_TYPE + rlp.encode(self._fields())

    def signing_digest(self) -> bytes:
        """The hash the MPC service signs."""
        return keccak(self.serialize_unsigned())

    def with_signature(self, y_parity: int, r: int, s: int) -> "SignedTransaction":
        return SignedTransaction(transaction=self, y_parity=y_parity, r=r, s=s)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": "0x2",
            "chainId": self.chain_id,
            "nonce": self.nonce,
            "maxPriorityFeePerGas": self.max_priority_fee_per_gas,
            "maxFeePerGas": self.max_fee_per_gas,
            "gas": self.gas_limit,
            "to": to_checksum_address(self.to),
            "value": self.value,
            "data": "0x" + self.data.hex(),
        }


@dataclass(frozen=True)
class SignedTransaction:
    """A transaction with the MPC signature attached."""
    transaction: Eip1559Transaction
    y_parity: int
    r: int
    s: int

    @property
    def raw(self) -> bytes:
        """Wire encoding for eth_sendRawTransaction."""
        fields = self.transaction._fields() + [self.y_parity, self.r, self.s]
        return EIP1559_TX_TYPE + rlp.encode(fields)

    @property
    def raw_hex(self) -> str:
        return "0x" + self.raw.hex()

    @property
    def hash(self) -> str:
        return "0x" + keccak(self.raw).hex()

    def recover_sender(self) -> str:
        """Checksummed address of the key that produced the signature.

        Raises eth_keys.exceptions.BadSignature for out-of-range values.
        """
        signature = keys.Signature(vrs=(self.y_parity, self.r, self.s))
        public_key = signature.recover_public_key_from_msg_hash(self.transaction.signing_digest())
        return public_key.to_checksum_address()
