"""
Structured logging for the signing pipeline.

Every stage runs inside `ChainLogger.operation_context`, which times it and
emits one record with an `operation` dict attached. RPC calls and relays log
single lines with masked endpoints and addresses.
"""
from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

import httpx

from .config import LoggingConfig, get_config


class OperationType(str, Enum):
    """Operations tracked by the chain logger."""
    GAS_QUERY = "gas_query"
    BALANCE_QUERY = "balance_query"
    PAYLOAD_BUILD = "payload_build"
    MPC_SIGNATURE = "mpc_signature"
    RELAY = "relay"
    PROVIDER_UPDATE = "provider_update"
    VIEW_CALL = "view_call"
    FUNCTION_CALL = "function_call"
    OUTCOME_POLL = "outcome_poll"


@dataclass
class OperationContext:
    """Context for a single operation."""
    operation_id: str
    operation_type: OperationType
    chain: str
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None
    duration_ms: Optional[float] = None
    success: bool = False
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def complete(self, success: bool = True, error: Optional[str] = None) -> None:
        """Mark operation as complete."""
        self.completed_at = datetime.now(timezone.utc)
        self.duration_ms = (
            (self.completed_at - self.started_at).total_seconds() * 1000
        )
        self.success = success
        self.error = error

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation_id": self.operation_id,
            "operation_type": self.operation_type.value,
            "chain": self.chain,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_ms": self.duration_ms,
            "success": self.success,
            "error": self.error,
            "metadata": self.metadata,
        }


class ChainLogger:
    """
    Structured logger for signing pipeline operations.
    """

    def __init__(
        self,
        name: str = "near_chainsig",
        config: Optional[LoggingConfig] = None,
    ):
        self._logger = logging.getLogger(name)
        self._config = config or get_config().logging
        self._operation_counter = 0

    def _generate_operation_id(self) -> str:
        self._operation_counter += 1
        timestamp = int(time.time() * 1000)
        return f"op_{timestamp}_{self._operation_counter}"

    def _get_level(self, level_str: str) -> int:
        return getattr(logging, level_str.upper(), logging.INFO)

    @asynccontextmanager
    async def operation_context(
        self,
        operation_type: OperationType,
        chain: str,
        **metadata,
    ):
        """
        Context manager for tracking an operation.

        Usage:
            async with logger.operation_context(OperationType.RELAY, "11155111") as ctx:
                ctx.metadata["tx_hash"] = tx_hash
        """
        ctx = OperationContext(
            operation_id=self._generate_operation_id(),
            operation_type=operation_type,
            chain=chain,
            metadata=metadata,
        )

        self._logger.debug(
            f"Starting {operation_type.value} on {chain}",
            extra={"operation": ctx.to_dict()},
        )

        try:
            yield ctx
            ctx.complete(success=True)
        except Exception as e:
            ctx.complete(success=False, error=str(e))
            raise
        finally:
            level = (
                self._get_level(self._config.operation_level)
                if ctx.success
                else self._get_level(self._config.error_level)
            )
            self._logger.log(
                level,
                f"Completed {operation_type.value} on {chain} in {ctx.duration_ms:.0f}ms "
                f"(success={ctx.success})",
                extra={"operation": ctx.to_dict()},
            )

    def log_rpc_call(
        self,
        method: str,
        endpoint_url: str,
        request_id: int,
        duration_ms: float,
        success: bool,
        error_message: Optional[str] = None,
    ) -> None:
        if not self._config.log_rpc_latency:
            return

        level_name = self._config.rpc_call_level if success else self._config.error_level
        self._logger.log(
            self._get_level(level_name),
            f"RPC {method} #{request_id} in {duration_ms:.0f}ms (success={success})",
            extra={"rpc_call": {
                "method": method,
                "endpoint_url": _strip_query(endpoint_url),
                "request_id": request_id,
                "duration_ms": duration_ms,
                "error": error_message,
            }},
        )

    def log_gas_estimation(self, chain: str, max_fee_gwei: float, priority_fee_gwei: float) -> None:
        if not self._config.log_gas_prices:
            return
        self._logger.debug(
            f"Gas estimation for {chain}: max_fee={max_fee_gwei:.2f} gwei, "
            f"priority_fee={priority_fee_gwei:.2f} gwei",
        )

    def log_transaction_relayed(self, tx_hash: str, chain: str, to_address: str, nonce: int) -> None:
        address = self._mask_address(to_address) if self._config.mask_addresses else to_address
        self._logger.info(
            f"Transaction relayed: {tx_hash} on {chain}",
            extra={"transaction": {"tx_hash": tx_hash, "chain": chain, "to": address, "nonce": nonce}},
        )

    @staticmethod
    def _mask_address(address: str) -> str:
        """Mask middle portion of address for privacy."""
        if len(address) < 10:
            return address
        return f"{address[:6]}...{address[-4:]}"


def _strip_query(url: str) -> str:
    # provider URLs carry API keys in the query string
    parsed = httpx.URL(url)
    if not parsed.query:
        return url
    return str(parsed.copy_with(query=None))


_chain_logger: Optional[ChainLogger] = None


def get_chain_logger(
    name: str = "near_chainsig",
    config: Optional[LoggingConfig] = None,
) -> ChainLogger:
    """Get the process-wide chain logger."""
    global _chain_logger
    if _chain_logger is None:
        _chain_logger = ChainLogger(name, config)
    return _chain_logger


def setup_logging(level: str = "INFO") -> None:
    """Configure root logging for scripts and quiet the HTTP client loggers."""
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
