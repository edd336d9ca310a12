from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    NETWORK = "Network"
    HTTP_STATUS = "HttpStatus"
    VALIDATION = "Validation"
    NO_QUOTE = "NoQuote"
    TRANSACTION_FAILURE = "TransactionFailure"
    TRANSACTION_UNKNOWN = "TransactionUnknown"


RETRYABLE_STATUS_CODES = frozenset({408, 429})


def is_retryable_status(status: int) -> bool:
    return status >= 500 or status in RETRYABLE_STATUS_CODES


class TokenSellerError(RuntimeError):
    kind: ErrorKind = ErrorKind.VALIDATION

    @property
    def retryable(self) -> bool:
        return False

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "message": str(self), "retryable": self.retryable}


class NetworkError(TokenSellerError):
    kind = ErrorKind.NETWORK

    def __init__(self, message: str, *, method: str = "", endpoint: str = "") -> None:
        super().__init__(message)
        self.method = method
        self.endpoint = endpoint

    @property
    def retryable(self) -> bool:
        return True


class HttpStatusError(TokenSellerError):
    kind = ErrorKind.HTTP_STATUS

    def __init__(
        self,
        message: str,
        *,
        status: int,
        method: str = "",
        endpoint: str = "",
        body: Any = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.method = method
        self.endpoint = endpoint
        self.body = body

    @property
    def retryable(self) -> bool:
        return is_retryable_status(self.status)

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload.update({"status": self.status, "endpoint": self.endpoint})
        return payload


class ValidationError(TokenSellerError):
    kind = ErrorKind.VALIDATION


class NoQuoteAvailable(TokenSellerError):
    kind = ErrorKind.NO_QUOTE

    def __init__(self, message: str, *, tier_errors: dict[int, str] | None = None) -> None:
        super().__init__(message)
        self.tier_errors = dict(tier_errors or {})

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["tier_errors"] = {str(tier): error for tier, error in self.tier_errors.items()}
        return payload


class TransactionFailure(TokenSellerError):
    kind = ErrorKind.TRANSACTION_FAILURE

    def __init__(
        self,
        message: str,
        *,
        signature: str | None = None,
        on_chain_error: Any = None,
        attempts: list[Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.signature = signature
        self.on_chain_error = on_chain_error
        self.attempts = list(attempts or [])

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload.update(
            {
                "signature": self.signature,
                "on_chain_error": str(self.on_chain_error) if self.on_chain_error is not None else None,
                "confirmation_attempts": len(self.attempts),
            }
        )
        return payload


class TransactionUnconfirmed(TransactionFailure):
    # The transaction may have landed; funds may have moved.
    kind = ErrorKind.TRANSACTION_UNKNOWN


class ConfirmationPending(TokenSellerError):
    kind = ErrorKind.TRANSACTION_UNKNOWN

    @property
    def retryable(self) -> bool:
        return True
