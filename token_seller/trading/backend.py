from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any

from token_seller.common import log_event

from .errors import HttpStatusError, NetworkError, TokenSellerError, TransactionUnconfirmed, ValidationError
from .http_client import RetryableHttpClient
from .types import FeeOutcome, TokenHolding, WalletInfo, lamports_to_sol, to_decimal, to_int

TOKENS_ENDPOINT = "/jupiter/tokens"
QUOTE_ENDPOINT = "/jupiter/quote"
SWAP_ENDPOINT = "/jupiter/swap"


def _require_mapping(payload: Any, *, field: str, endpoint: str) -> dict[str, Any]:
    value = payload.get(field) if isinstance(payload, dict) else None
    if not isinstance(value, dict) or not value:
        raise ValidationError(f"Invalid response format from {endpoint}: missing {field}")
    return value


def parse_fee_collection(raw: Any, *, fee_asset: str) -> FeeOutcome | None:
    if not isinstance(raw, dict):
        return None
    status = str(raw.get("status") or "skipped").strip().lower()
    if status not in {"success", "failed", "skipped"}:
        status = "failed"
    return FeeOutcome(
        status=status,  # type: ignore[arg-type]
        transaction_id=str(raw["transactionId"]) if raw.get("transactionId") else None,
        fee_amount=to_decimal(raw.get("feeAmount"), Decimal(0)),
        fee_asset=str(raw.get("feeAsset") or fee_asset),
        reason=str(raw.get("error") or raw.get("reason") or ""),
    )


class TradingBackend:
    def __init__(self, *, logger: logging.Logger, http: RetryableHttpClient) -> None:
        self._logger = logger
        self._http = http
        self._supported_tokens: dict[str, str] | None = None

    async def healthcheck(self) -> bool:
        try:
            await self._http.get(TOKENS_ENDPOINT, retry_override=1)
        except TokenSellerError as error:
            log_event(
                self._logger,
                level="error",
                event="api_healthcheck_failed",
                message="API health check failed",
                error=error.to_dict(),
            )
            return False
        log_event(self._logger, level="info", event="api_healthcheck_ok", message="API health check successful")
        return True

    async def get_supported_tokens(self, *, force_refresh: bool = False) -> dict[str, str]:
        if self._supported_tokens is not None and not force_refresh:
            return self._supported_tokens

        response = await self._http.get(TOKENS_ENDPOINT)
        tokens = _require_mapping(response, field="tokens", endpoint=TOKENS_ENDPOINT)
        self._supported_tokens = {str(symbol): str(mint) for symbol, mint in tokens.items()}
        log_event(
            self._logger,
            level="info",
            event="supported_tokens_loaded",
            message="Supported tokens retrieved",
            token_count=len(self._supported_tokens),
            tokens=sorted(self._supported_tokens),
        )
        return self._supported_tokens

    async def get_quote(
        self,
        *,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_bps: int,
    ) -> dict[str, Any]:
        payload = {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": int(amount),
            "slippageBps": int(slippage_bps),
            "onlyDirectRoutes": False,
            "asLegacyTransaction": False,
            "platformFeeBps": 0,
        }
        response = await self._http.post(QUOTE_ENDPOINT, payload)
        return _require_mapping(response, field="quoteResponse", endpoint=QUOTE_ENDPOINT)

    async def execute_remote_swap(
        self,
        *,
        private_key_base58: str,
        quote_response: dict[str, Any],
        collect_fees: bool,
        wrap_and_unwrap_sol: bool = True,
        fee_asset: str,
    ) -> tuple[str, FeeOutcome | None, Decimal | None]:
        payload = {
            "userWalletPrivateKeyBase58": private_key_base58,
            "quoteResponse": quote_response,
            "wrapAndUnwrapSol": wrap_and_unwrap_sol,
            "asLegacyTransaction": False,
            "collectFees": collect_fees,
        }
        # A swap is not idempotent; the backend gets one try.
        try:
            response = await self._http.post(SWAP_ENDPOINT, payload, retry_override=0)
        except (NetworkError, HttpStatusError) as error:
            # 429 means the backend turned the request away before executing it.
            if not error.retryable or getattr(error, "status", None) == 429:
                raise
            raise TransactionUnconfirmed(
                f"Remote swap outcome is unknown ({error}); the backend may have executed it",
            ) from error
        transaction_id = str(response.get("transactionId") or "").strip()
        if not transaction_id:
            raise ValidationError(f"Invalid response from {SWAP_ENDPOINT}: missing transactionId")

        new_balance = response.get("newBalanceSol")
        confirmed_balance = to_decimal(new_balance, Decimal(0)) if new_balance is not None else None
        return (
            transaction_id,
            parse_fee_collection(response.get("feeCollection"), fee_asset=fee_asset),
            confirmed_balance,
        )

    async def get_wallet_info(self, public_key: str) -> WalletInfo:
        endpoint = f"/wallets/mother/{public_key}"
        response = await self._http.get(endpoint)
        if not response.get("publicKey"):
            raise ValidationError(f"Invalid response format from {endpoint}: missing publicKey")

        balance_lamports = to_int(response.get("balanceLamports"), 0)
        balance_sol = to_decimal(response.get("balanceSol"), lamports_to_sol(balance_lamports))
        return WalletInfo(
            public_key=str(response["publicKey"]),
            balance_sol=balance_sol,
            balance_lamports=balance_lamports,
        )

    async def get_token_balance(self, public_key: str, mint: str) -> TokenHolding:
        endpoint = f"/wallets/{public_key}/tokens/{mint}"
        response = await self._http.get(endpoint)
        if "balance" not in response:
            raise ValidationError(f"Invalid response format from {endpoint}: missing balance")
        return TokenHolding(
            mint=mint,
            raw_balance=max(0, to_int(response.get("balance"), 0)),
            decimals=max(0, to_int(response.get("decimals"), 0)),
        )
