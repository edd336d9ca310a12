from __future__ import annotations

import logging
import time
from decimal import Decimal
from typing import Callable

from token_seller.common import log_event

from .backend import TradingBackend
from .errors import ValidationError
from .types import TokenHolding, WalletInfo

WALLET_CACHE_TTL_SECONDS = 30.0
DEFAULT_FEE_RESERVE_SOL = Decimal("0.002")


class WalletService:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        backend: TradingBackend,
        public_key: str,
        cache_ttl_seconds: float = WALLET_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._logger = logger
        self._backend = backend
        self._public_key = public_key
        self._cache_ttl_seconds = cache_ttl_seconds
        self._clock = clock
        self._wallet_info: WalletInfo | None = None
        self._fetched_at: float | None = None

    @property
    def public_key(self) -> str:
        return self._public_key

    def _cache_valid(self) -> bool:
        if self._wallet_info is None or self._fetched_at is None:
            return False
        return (self._clock() - self._fetched_at) < self._cache_ttl_seconds

    def invalidate(self) -> None:
        self._wallet_info = None
        self._fetched_at = None

    async def get_wallet_info(self, *, force_refresh: bool = False) -> WalletInfo:
        if not force_refresh and self._cache_valid() and self._wallet_info is not None:
            return self._wallet_info

        info = await self._backend.get_wallet_info(self._public_key)
        self._wallet_info = info
        self._fetched_at = self._clock()
        log_event(
            self._logger,
            level="info",
            event="wallet_info_loaded",
            message="Wallet information retrieved",
            public_key=info.public_key,
            balance_sol=str(info.balance_sol),
            balance_lamports=info.balance_lamports,
        )
        return info

    async def get_sol_balance(self, *, force_refresh: bool = False) -> Decimal:
        info = await self.get_wallet_info(force_refresh=force_refresh)
        return info.balance_sol

    async def validate_sol_for_fees(self, estimated_fee_sol: Decimal = DEFAULT_FEE_RESERVE_SOL) -> Decimal:
        balance = await self.get_sol_balance(force_refresh=True)
        if balance < estimated_fee_sol:
            raise ValidationError(
                "Insufficient SOL balance for transaction fees. "
                f"Required: ~{estimated_fee_sol} SOL, Available: {balance} SOL"
            )
        log_event(
            self._logger,
            level="info",
            event="sol_fee_reserve_ok",
            message="SOL balance sufficient for fees",
            required_sol=str(estimated_fee_sol),
            available_sol=str(balance),
        )
        return balance

    async def check_token_holding(self, mint: str) -> TokenHolding:
        holding = await self._backend.get_token_balance(self._public_key, mint)
        log_event(
            self._logger,
            level="info",
            event="token_holding_checked",
            message="Token holding check complete",
            mint=mint,
            has_token=holding.has_token,
            balance=str(holding.balance),
            raw_balance=holding.raw_balance,
            decimals=holding.decimals,
        )
        return holding

    async def validate_token_amount(self, mint: str, amount: Decimal) -> TokenHolding:
        if amount <= 0:
            raise ValidationError("Token amount must be positive")

        holding = await self.check_token_holding(mint)
        if not holding.has_token or holding.balance < amount:
            raise ValidationError(
                f"Insufficient token balance. Required: {amount}, Available: {holding.balance}"
            )
        return holding
