from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from solders.keypair import Keypair

from token_seller.common import log_event
from token_seller.trading import (
    NetworkError,
    QuoteOptimizer,
    SwapExecutor,
    SwapResult,
    SwapState,
    TradingBackend,
    TransactionFailure,
    TransactionUnconfirmed,
    ValidationError,
    WalletService,
)
from token_seller.trading.backend import TOKENS_ENDPOINT
from token_seller.trading.types import SOL_MINT, USDC_MINT, USDT_MINT, Quote, TokenHolding, ui_to_base_units

from .settings import AppSettings

STRATEGIES = ("immediate", "gradual", "optimal")
OUTPUT_DECIMALS = {SOL_MINT: 9, USDC_MINT: 6, USDT_MINT: 6}


@dataclass(slots=True, frozen=True)
class SaleRequest:
    amount: Decimal
    output_token: str = "SOL"
    strategy: str = "immediate"
    collect_fee: bool = True
    dry_run: bool = False


@dataclass(slots=True)
class ExecutionSummary:
    strategy: str
    input_mint: str
    output_mint: str
    total_tokens_sold: Decimal = Decimal(0)
    total_received: Decimal = Decimal(0)
    average_price: Decimal = Decimal(0)
    fees_paid: Decimal = Decimal(0)
    state: str = SwapState.REQUESTED.value
    success: bool = False
    dry_run: bool = False
    transactions: list[str] = field(default_factory=list)
    quote: dict[str, Any] | None = None
    fee_collection: dict[str, Any] | None = None
    confirmed_balance: Decimal | None = None

    @property
    def transaction_count(self) -> int:
        return len(self.transactions)

    def to_dict(self) -> dict[str, Any]:
        return {
            "strategy": self.strategy,
            "input_mint": self.input_mint,
            "output_mint": self.output_mint,
            "total_tokens_sold": str(self.total_tokens_sold),
            "total_received": str(self.total_received),
            "average_price": str(self.average_price),
            "fees_paid": str(self.fees_paid),
            "transaction_count": self.transaction_count,
            "state": self.state,
            "success": self.success,
            "dry_run": self.dry_run,
            "transactions": list(self.transactions),
            "quote": self.quote,
            "fee_collection": self.fee_collection,
            "confirmed_balance": str(self.confirmed_balance) if self.confirmed_balance is not None else None,
        }


def select_strategy(name: str, *, logger: logging.Logger) -> str:
    strategy = (name or "immediate").strip().lower()
    if strategy not in STRATEGIES:
        raise ValidationError(f"Unknown sale strategy: {name}. Expected one of {', '.join(STRATEGIES)}")
    if strategy != "immediate":
        log_event(
            logger,
            level="warning",
            event="strategy_fallback",
            message=f"Strategy '{strategy}' is not available; using immediate sale",
            requested_strategy=strategy,
            strategy="immediate",
        )
    return "immediate"


def received_ui_amount(quote: Quote) -> Decimal:
    decimals = OUTPUT_DECIMALS.get(quote.output_mint)
    if decimals is None:
        return Decimal(quote.out_amount)
    return Decimal(quote.out_amount) / (Decimal(10) ** decimals)


class TokenSeller:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        settings: AppSettings,
        backend: TradingBackend,
        wallet: WalletService,
        optimizer: QuoteOptimizer,
        signer: Keypair,
        executor: SwapExecutor | None = None,
    ) -> None:
        if settings.swap_mode == "local" and executor is None:
            raise ValueError("Local swap mode requires a SwapExecutor.")
        self._logger = logger
        self._settings = settings
        self._backend = backend
        self._wallet = wallet
        self._optimizer = optimizer
        self._signer = signer
        self._executor = executor
        self._remote_swap_sent = False

    async def validate_environment(self) -> None:
        try:
            self._settings.validate_for_sale()
        except ValueError as error:
            raise ValidationError(str(error)) from error

        if not await self._backend.healthcheck():
            raise NetworkError(
                "Trading API is not reachable. Check API_BASE_URL and your connection.",
                method="GET",
                endpoint=TOKENS_ENDPOINT,
            )

        log_event(
            self._logger,
            level="info",
            event="environment_validated",
            message="Environment validation passed",
            public_key=self._wallet.public_key,
            target_token_mint=self._settings.target_token_mint,
            swap_mode=self._settings.swap_mode,
        )

    async def resolve_output_mint(self, symbol: str) -> str:
        key = (symbol or "").strip().upper()
        mint = self._settings.output_tokens.get(key)
        if mint:
            return mint

        supported = await self._backend.get_supported_tokens()
        mint = supported.get(key)
        if not mint:
            raise ValidationError(
                f"Unsupported output token: {symbol}. "
                f"Expected one of {', '.join(sorted(set(self._settings.output_tokens) | set(supported)))}"
            )
        return mint

    async def validate_inputs(self, request: SaleRequest) -> TokenHolding:
        if request.amount <= 0:
            raise ValidationError("Token amount must be positive")
        if not request.dry_run:
            await self._wallet.validate_sol_for_fees(self._settings.sol_fee_reserve)
        return await self._wallet.validate_token_amount(self._settings.target_token_mint, request.amount)

    async def sell(self, request: SaleRequest) -> ExecutionSummary:
        self._remote_swap_sent = False
        if self._executor is not None:
            self._executor.broadcast_signature = None
        try:
            return await asyncio.wait_for(self._sell(request), timeout=self._settings.sell_timeout_seconds)
        except asyncio.TimeoutError as error:
            signature = self._executor.broadcast_signature if self._executor is not None else None
            log_event(
                self._logger,
                level="error",
                event="sale_timed_out",
                message="Sale did not finish within the configured deadline",
                sell_timeout_hours=self._settings.sell_timeout_hours,
                tx_signature=signature,
                remote_swap_sent=self._remote_swap_sent,
            )
            if signature or self._remote_swap_sent:
                raise TransactionUnconfirmed(
                    "Sale deadline passed after the swap was sent; it may still land on-chain",
                    signature=signature,
                ) from error
            raise

    async def _sell(self, request: SaleRequest) -> ExecutionSummary:
        strategy = select_strategy(request.strategy, logger=self._logger)
        output_mint = await self.resolve_output_mint(request.output_token)
        input_mint = self._settings.target_token_mint

        holding = await self.validate_inputs(request)
        base_amount = ui_to_base_units(request.amount, holding.decimals)
        if base_amount <= 0:
            raise ValidationError(f"Amount {request.amount} is below the token's smallest unit")

        log_event(
            self._logger,
            level="info",
            event="sale_started",
            message="Executing immediate sale",
            strategy=strategy,
            amount=str(request.amount),
            base_amount=base_amount,
            decimals=holding.decimals,
            output_token=request.output_token.upper(),
            dry_run=request.dry_run,
        )

        quote = await self._optimizer.get_optimal_quote(input_mint, output_mint, base_amount)
        summary = ExecutionSummary(
            strategy=strategy,
            input_mint=input_mint,
            output_mint=output_mint,
            dry_run=request.dry_run,
            quote=quote.to_dict(),
        )

        if request.dry_run:
            summary.state = "QUOTED"
            summary.success = True
            log_event(
                self._logger,
                level="info",
                event="sale_dry_run",
                message="Dry run: quote obtained, no transaction sent",
                **summary.to_dict(),
            )
            return summary

        try:
            result = await self.execute(quote, collect_fee=request.collect_fee)
        except TransactionUnconfirmed as error:
            summary.state = SwapState.UNKNOWN.value
            if error.signature:
                summary.transactions.append(error.signature)
            log_event(
                self._logger,
                level="error",
                event="sale_outcome_unknown",
                message="Swap was submitted but its outcome is unknown; check the signature before retrying",
                **summary.to_dict(),
            )
            raise
        except TransactionFailure as error:
            summary.state = SwapState.FAILED.value
            if error.signature:
                summary.transactions.append(error.signature)
            log_event(
                self._logger,
                level="error",
                event="sale_failed",
                message="Swap failed",
                error=error.to_dict(),
            )
            raise
        finally:
            self._wallet.invalidate()

        self._apply_result(summary, request=request, quote=quote, result=result)
        log_event(
            self._logger,
            level="info",
            event="sale_completed",
            message="Sale completed",
            **summary.to_dict(),
        )
        return summary

    async def execute(self, quote: Quote, *, collect_fee: bool) -> SwapResult:
        if self._settings.swap_mode == "backend":
            self._remote_swap_sent = True
            transaction_id, fee_outcome, confirmed_balance = await self._backend.execute_remote_swap(
                private_key_base58=str(self._signer),
                quote_response=quote.raw,
                collect_fees=collect_fee,
                fee_asset=SOL_MINT,
            )
            return SwapResult(
                transaction_id=transaction_id,
                fee_collection=fee_outcome,
                confirmed_balance=confirmed_balance,
            )

        if self._executor is None:
            raise RuntimeError("Swap executor is not configured.")
        return await self._executor.execute_swap(quote, self._signer, collect_fee)

    @staticmethod
    def _apply_result(
        summary: ExecutionSummary,
        *,
        request: SaleRequest,
        quote: Quote,
        result: SwapResult,
    ) -> None:
        summary.state = result.state.value
        summary.success = result.state is SwapState.CONFIRMED
        summary.transactions.append(result.transaction_id)
        summary.total_tokens_sold = request.amount
        summary.total_received = received_ui_amount(quote)
        summary.average_price = summary.total_received / request.amount
        summary.confirmed_balance = result.confirmed_balance
        if result.fee_collection is not None:
            summary.fee_collection = result.fee_collection.to_dict()
            if result.fee_collection.status == "success":
                summary.fees_paid = result.fee_collection.fee_amount
                if result.fee_collection.transaction_id:
                    summary.transactions.append(result.fee_collection.transaction_id)
