"""NEAR chain-signature pipeline exports."""

from .config import (
    ChainSigConfig,
    EvmChainConfig,
    GasConfig,
    LoggingConfig,
    MPCConfig,
    NearNetworkConfig,
    PollingConfig,
    build_default_config,
    get_chain_config,
    get_config,
    set_config,
)
from .errors import (
    ChainIdMismatchError,
    ChainSigError,
    DecodingError,
    EncodingError,
    ExecutionError,
    NetworkError,
    NotSignedInError,
    RelayRejectedError,
    RelayRejection,
    RpcError,
    SignatureMismatchError,
    TransactionRejectedError,
    ViewError,
)
from .evm_tx import Eip1559Transaction, SignedTransaction
from .logging_utils import ChainLogger, OperationType, get_chain_logger, setup_logging
from .models import (
    AccountState,
    ChainEndpoint,
    GasEstimate,
    MPCSignatureRequest,
    MPCSignatureResult,
    RelayReceipt,
    SessionIdentity,
    UnsignedTransactionPayload,
)
from .pipeline import TransactionPipeline, assemble_signed_transaction
from .reporter import PipelineReporter, StageResult
from .rpc_client import EvmRpcClient, JsonRpcTransport, NearRpcClient
from .session import SessionBroker
from .wallet import (
    AccountStream,
    SimulatedWalletConnection,
    WalletConnection,
    success_outcome,
)

__all__ = [
    # Config
    "ChainSigConfig",
    "EvmChainConfig",
    "GasConfig",
    "LoggingConfig",
    "MPCConfig",
    "NearNetworkConfig",
    "PollingConfig",
    "build_default_config",
    "get_chain_config",
    "get_config",
    "set_config",
    # Errors
    "ChainIdMismatchError",
    "ChainSigError",
    "DecodingError",
    "EncodingError",
    "ExecutionError",
    "NetworkError",
    "NotSignedInError",
    "RelayRejectedError",
    "RelayRejection",
    "RpcError",
    "SignatureMismatchError",
    "TransactionRejectedError",
    "ViewError",
    # Transactions
    "Eip1559Transaction",
    "SignedTransaction",
    # Logging
    "ChainLogger",
    "OperationType",
    "get_chain_logger",
    "setup_logging",
    # Models
    "AccountState",
    "ChainEndpoint",
    "GasEstimate",
    "MPCSignatureRequest",
    "MPCSignatureResult",
    "RelayReceipt",
    "SessionIdentity",
    "UnsignedTransactionPayload",
    # Pipeline
    "TransactionPipeline",
    "assemble_signed_transaction",
    "PipelineReporter",
    "StageResult",
    # RPC
    "EvmRpcClient",
    "JsonRpcTransport",
    "NearRpcClient",
    # Session
    "SessionBroker",
    "AccountStream",
    "SimulatedWalletConnection",
    "WalletConnection",
    "success_outcome",
]
