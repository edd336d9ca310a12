from .logging import log_event
from .retry import RetryPolicy, retry_with_backoff

__all__ = [
    "RetryPolicy",
    "log_event",
    "retry_with_backoff",
]
