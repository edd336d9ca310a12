from .backend import TradingBackend
from .errors import (
    ErrorKind,
    HttpStatusError,
    NetworkError,
    NoQuoteAvailable,
    TokenSellerError,
    TransactionFailure,
    TransactionUnconfirmed,
    ValidationError,
)
from .executor import SwapExecutor
from .fees import FeeCollector, FeeSettings
from .http_client import RetryableHttpClient
from .quotes import QuoteOptimizer
from .rpc import PriorityFeeSettings, SolanaRpcGateway
from .submission import TransactionSubmitter
from .types import (
    FeeOutcome,
    Quote,
    SwapRequest,
    SwapResult,
    SwapState,
)
from .wallet import WalletService

__all__ = [
    "ErrorKind",
    "FeeCollector",
    "FeeOutcome",
    "FeeSettings",
    "HttpStatusError",
    "NetworkError",
    "NoQuoteAvailable",
    "PriorityFeeSettings",
    "Quote",
    "QuoteOptimizer",
    "RetryableHttpClient",
    "SolanaRpcGateway",
    "SwapExecutor",
    "SwapRequest",
    "SwapResult",
    "SwapState",
    "TokenSellerError",
    "TradingBackend",
    "TransactionFailure",
    "TransactionSubmitter",
    "TransactionUnconfirmed",
    "ValidationError",
    "WalletService",
]
