"""Data models shared by the session broker and the signing pipeline."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from web3 import Web3

from .errors import DecodingError
from .evm_tx import Eip1559Transaction


@dataclass(frozen=True)
class ChainEndpoint:
    """Destination chain the pipeline targets."""
    rpc_url: str
    chain_id: int


@dataclass(frozen=True)
class GasEstimate:
    """EIP-1559 fee parameters, in wei. Valid for a single payload."""
    max_fee_per_gas: int
    max_priority_fee_per_gas: int

    @property
    def max_fee_gwei(self) -> float:
        return float(Web3.from_wei(self.max_fee_per_gas, "gwei"))

    @property
    def max_priority_fee_gwei(self) -> float:
        return float(Web3.from_wei(self.max_priority_fee_per_gas, "gwei"))


@dataclass(frozen=True)
class UnsignedTransactionPayload:
    """An unsigned transaction and the digest the MPC service must sign."""
    transaction: Eip1559Transaction
    digest: bytes


@dataclass(frozen=True)
class MPCSignatureRequest:
    """A `sign` request for the MPC contract."""
    path: str
    digest_payload: bytes
    signer_account: str
    key_version: int = 0

    def to_args(self) -> Dict[str, Any]:
        """Arguments of the MPC contract's `sign` method."""
        return {
            "request": {
                "payload": list(self.digest_payload),
                "path": self.path,
                "key_version": self.key_version,
            }
        }


def _to_bytes32(value: Any, name: str) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        raw = bytes(value)
    elif isinstance(value, list):
        try:
            raw = bytes(value)
        except (TypeError, ValueError) as e:
            raise DecodingError(f"Signature component {name} is not a byte list", value) from e
    elif isinstance(value, str):
        try:
            raw = bytes.fromhex(value.removeprefix("0x"))
        except ValueError as e:
            raise DecodingError(f"Signature component {name} is not hex", value) from e
    else:
        raise DecodingError(f"Unsupported type for signature component {name}", value)

    if len(raw) > 32:
        raise DecodingError(f"Signature component {name} longer than 32 bytes", value)
    return raw.rjust(32, b"\x00")


def _normalize_recovery_id(value: Any) -> int:
    if isinstance(value, str):
        try:
            value = int(value, 16) if value.startswith("0x") else int(value)
        except ValueError as e:
            raise DecodingError("Invalid recovery id", value) from e
    if not isinstance(value, int) or value < 0:
        raise DecodingError("Invalid recovery id", value)
    if value >= 35:
        # EIP-155 style v
        return (value - 35) % 2
    if value >= 27:
        return value - 27
    if value > 1:
        raise DecodingError("Invalid recovery id", value)
    return value


def _affine_point_to_r(point: Any) -> Tuple[bytes, Optional[int]]:
    """Split a compressed secp256k1 point into r and its parity hint."""
    if isinstance(point, dict):
        point = point.get("affine_point")
    if not isinstance(point, str):
        raise DecodingError("big_r is missing an affine point", point)
    hex_point = point.removeprefix("0x")
    if len(hex_point) != 66 or hex_point[:2] not in ("02", "03"):
        raise DecodingError("big_r is not a compressed curve point", point)
    return _to_bytes32(hex_point[2:], "r"), int(hex_point[:2], 16) - 2


@dataclass(frozen=True)
class MPCSignatureResult:
    """An ECDSA signature produced by the MPC service.

    `recovery_id` is the parity the service reported, normalized to 0/1.
    It is None when the response carried no usable hint.
    """
    r: bytes
    s: bytes
    recovery_id: Optional[int] = None

    @classmethod
    def from_json(cls, value: Any) -> "MPCSignatureResult":
        """Decode the return value of the MPC contract's `sign` method."""
        if isinstance(value, (list, tuple)):
            # Legacy response: ["02<r>", "<s>"]
            if len(value) != 2:
                raise DecodingError("Expected a [big_r, s] pair", value)
            r, parity = _affine_point_to_r(value[0])
            return cls(r=r, s=_to_bytes32(value[1], "s"), recovery_id=parity)

        if not isinstance(value, dict):
            raise DecodingError("Unexpected MPC signature response", value)

        if "big_r" in value:
            r, parity = _affine_point_to_r(value["big_r"])
            s = value.get("s")
            if isinstance(s, dict):
                s = s.get("scalar")
            if s is None:
                raise DecodingError("MPC signature response is missing s", value)
            recovery_id = value.get("recovery_id")
            return cls(
                r=r,
                s=_to_bytes32(s, "s"),
                recovery_id=_normalize_recovery_id(recovery_id) if recovery_id is not None else parity,
            )

        if "r" in value and "s" in value:
            v = value.get("v", value.get("recovery_id"))
            return cls(
                r=_to_bytes32(value["r"], "r"),
                s=_to_bytes32(value["s"], "s"),
                recovery_id=_normalize_recovery_id(v) if v is not None else None,
            )

        raise DecodingError("Unrecognized MPC signature response", value)

    def candidate_parities(self) -> List[int]:
        """Recovery ids to try, the reported one first."""
        if self.recovery_id is None:
            return [0, 1]
        return [self.recovery_id, 1 - self.recovery_id]


@dataclass(frozen=True)
class RelayReceipt:
    """Destination-chain acknowledgement of a broadcast."""
    tx_hash: str
    submitted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class AccountState:
    """One entry of the wallet's account set."""
    account_id: str
    active: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AccountState":
        return cls(account_id=data.get("accountId") or data.get("account_id", ""), active=bool(data.get("active")))


@dataclass(frozen=True)
class SessionIdentity:
    """Who is signed in. An empty id means signed out."""
    signed_account_id: str = ""

    @property
    def is_signed_in(self) -> bool:
        return self.signed_account_id != ""

    @classmethod
    def from_accounts(cls, accounts: Sequence[AccountState]) -> "SessionIdentity":
        active = next((a for a in accounts if a.active), None)
        return cls(signed_account_id=active.account_id if active else "")
