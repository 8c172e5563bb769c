"""Error hierarchy for near-chainsig."""
from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class ChainSigError(Exception):
    """Base exception for near-chainsig."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or "CHAINSIG_ERROR"
        self.details = details or {}

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
            }
        }


class NetworkError(ChainSigError):
    """Transport failure: endpoint unreachable, timed out or non-2xx."""

    def __init__(self, message: str, url: Optional[str] = None):
        super().__init__(message, code="NETWORK_ERROR", details={"url": url})
        self.url = url


class RpcError(ChainSigError):
    """A well-formed JSON-RPC error response."""

    def __init__(
        self,
        message: str,
        rpc_code: Optional[int] = None,
        data: Any = None,
        cause: Optional[str] = None,
        code: str = "RPC_ERROR",
    ):
        super().__init__(
            message,
            code=code,
            details={"rpc_code": rpc_code, "data": data, "cause": cause},
        )
        self.rpc_code = rpc_code
        self.data = data
        self.cause = cause

    @classmethod
    def from_payload(cls, error: Any) -> "RpcError":
        """Create RpcError from the `error` member of a JSON-RPC response.

        Handles both the Ethereum shape (`{code, message, data}`) and the
        NEAR shape, which adds `{name, cause: {name, info}}`.
        """
        if isinstance(error, str):
            return cls(error)
        if not isinstance(error, dict):
            return cls(str(error))

        cause = error.get("cause")
        cause_name = cause.get("name") if isinstance(cause, dict) else None
        message = error.get("message") or str(error)
        data = error.get("data")
        # NEAR puts the useful text in `data` and a generic "Server error" in `message`
        if isinstance(data, str) and message == "Server error":
            message = data
        return cls(message, rpc_code=error.get("code"), data=data, cause=cause_name)


class RelayRejection(str, Enum):
    """Why the destination node refused a broadcast."""
    NONCE_TOO_LOW = "nonce_too_low"
    UNDERPRICED = "underpriced"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    ALREADY_KNOWN = "already_known"
    UNKNOWN = "unknown"

    @property
    def resubmittable(self) -> bool:
        return self in (RelayRejection.UNDERPRICED, RelayRejection.ALREADY_KNOWN)

    @classmethod
    def classify(cls, message: str) -> "RelayRejection":
        text = message.lower()
        if "nonce too low" in text or "nonce is too low" in text:
            return cls.NONCE_TOO_LOW
        if "already known" in text or "known transaction" in text:
            return cls.ALREADY_KNOWN
        if "underpriced" in text or "less than block base fee" in text or "fee too low" in text:
            return cls.UNDERPRICED
        if "insufficient funds" in text:
            return cls.INSUFFICIENT_FUNDS
        return cls.UNKNOWN


class RelayRejectedError(RpcError):
    """The destination node rejected a signed transaction."""

    def __init__(self, message: str, kind: RelayRejection, rpc_code: Optional[int] = None, data: Any = None):
        super().__init__(message, rpc_code=rpc_code, data=data, code="RELAY_REJECTED")
        self.kind = kind
        self.details["kind"] = kind.value

    @property
    def resubmittable(self) -> bool:
        return self.kind.resubmittable

    @classmethod
    def from_rpc_error(cls, error: RpcError) -> "RelayRejectedError":
        return cls(
            error.message,
            kind=RelayRejection.classify(error.message),
            rpc_code=error.rpc_code,
            data=error.data,
        )


class ChainIdMismatchError(ChainSigError):
    """Raised when an endpoint reports a different chain id than configured."""

    def __init__(self, expected: int, received: int):
        super().__init__(
            f"Chain ID mismatch: expected {expected}, got {received}",
            code="CHAIN_ID_MISMATCH",
            details={"expected": expected, "received": received},
        )
        self.expected = expected
        self.received = received


class NotSignedInError(ChainSigError):
    """A state-changing call was attempted with no active account."""

    def __init__(self, message: str = "No account is signed in"):
        super().__init__(message, code="NOT_SIGNED_IN")


class TransactionRejectedError(ChainSigError):
    """The user or the wallet declined to sign."""

    def __init__(self, message: str = "Transaction rejected by wallet"):
        super().__init__(message, code="TRANSACTION_REJECTED")


class ExecutionError(ChainSigError):
    """The remote contract call failed."""

    def __init__(self, message: str, failure: Any = None):
        super().__init__(message, code="EXECUTION_ERROR", details={"failure": failure})
        self.failure = failure


class ViewError(ChainSigError):
    """A read-only contract call reverted or returned undecodable data."""

    def __init__(self, message: str, contract_id: Optional[str] = None, method: Optional[str] = None):
        super().__init__(
            message,
            code="VIEW_ERROR",
            details={"contract_id": contract_id, "method": method},
        )
        self.contract_id = contract_id
        self.method = method


class SignatureMismatchError(ChainSigError):
    """The MPC signature does not belong to the payload it was paired with."""

    def __init__(self, message: str, expected: Optional[str] = None, received: Optional[str] = None):
        super().__init__(
            message,
            code="SIGNATURE_MISMATCH",
            details={"expected": expected, "received": received},
        )


class EncodingError(ChainSigError):
    """Malformed caller input."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message, code="ENCODING_ERROR", details={"field": field})
        self.field = field


class DecodingError(ChainSigError):
    """A remote payload could not be parsed."""

    def __init__(self, message: str, payload: Any = None):
        super().__init__(message, code="DECODING_ERROR", details={"payload": payload})
        self.payload = payload
