from .logging import setup_logger
from .session import ExecutionSummary, SaleRequest, TokenSeller, select_strategy
from .settings import AppSettings, parse_private_key

__all__ = [
    "AppSettings",
    "ExecutionSummary",
    "SaleRequest",
    "TokenSeller",
    "parse_private_key",
    "select_strategy",
    "setup_logger",
]
