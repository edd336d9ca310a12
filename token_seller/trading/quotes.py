from __future__ import annotations

import asyncio
import logging
from decimal import Decimal, InvalidOperation
from typing import Any

from token_seller.common import log_event

from .backend import TradingBackend
from .errors import NoQuoteAvailable, TokenSellerError, ValidationError
from .types import Quote

REQUIRED_QUOTE_FIELDS = ("inputMint", "outputMint", "inAmount", "outAmount")


def _positive_amount(raw: dict[str, Any], field: str) -> int:
    try:
        amount = int(str(raw[field]).strip())
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid quote: {field} is not an integer ({raw[field]!r})") from None
    if amount <= 0:
        raise ValidationError("Invalid quote: input/output amount must be positive")
    return amount


def _price_impact(raw: dict[str, Any]) -> Decimal:
    value = raw.get("priceImpactPct")
    if value in (None, ""):
        return Decimal(0)
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValidationError(f"Invalid quote: priceImpactPct is not numeric ({value!r})") from None


class QuoteOptimizer:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        backend: TradingBackend,
        slippage_tiers: tuple[int, ...] = (50, 75, 100),
        max_price_impact_pct: Decimal = Decimal("5"),
    ) -> None:
        if not slippage_tiers:
            raise ValueError("At least one slippage tier is required.")
        for tier in slippage_tiers:
            if not 0 <= int(tier) <= 10_000:
                raise ValueError(f"Slippage tier out of range: {tier}")
        self._logger = logger
        self._backend = backend
        self._slippage_tiers = tuple(int(tier) for tier in slippage_tiers)
        self._max_price_impact_pct = Decimal(max_price_impact_pct)

    @property
    def slippage_tiers(self) -> tuple[int, ...]:
        return self._slippage_tiers

    def validate_quote(self, raw: dict[str, Any]) -> None:
        for field in REQUIRED_QUOTE_FIELDS:
            if not raw.get(field):
                raise ValidationError(f"Invalid quote: missing {field}")

        _positive_amount(raw, "inAmount")
        _positive_amount(raw, "outAmount")

        price_impact = _price_impact(raw)
        if price_impact > self._max_price_impact_pct:
            log_event(
                self._logger,
                level="warning",
                event="quote_high_price_impact",
                message="High price impact detected",
                price_impact_pct=str(price_impact),
                max_allowed_pct=str(self._max_price_impact_pct),
            )

    @staticmethod
    def enhance_quote(raw: dict[str, Any], *, slippage_bps: int) -> Quote:
        route_plan = raw.get("routePlan")
        route_length = len(route_plan) if isinstance(route_plan, list) and route_plan else 1
        return Quote(
            input_mint=str(raw["inputMint"]),
            output_mint=str(raw["outputMint"]),
            in_amount=_positive_amount(raw, "inAmount"),
            out_amount=_positive_amount(raw, "outAmount"),
            slippage_bps=int(slippage_bps),
            price_impact_pct=_price_impact(raw),
            route_length=route_length,
            raw=dict(raw),
        )

    async def get_quote(
        self,
        *,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_bps: int,
    ) -> Quote:
        if int(amount) <= 0:
            raise ValidationError(f"Quote amount must be positive, got {amount}")

        raw = await self._backend.get_quote(
            input_mint=input_mint,
            output_mint=output_mint,
            amount=amount,
            slippage_bps=slippage_bps,
        )
        self.validate_quote(raw)
        quote = self.enhance_quote(raw, slippage_bps=slippage_bps)
        log_event(
            self._logger,
            level="info",
            event="quote_received",
            message="Quote received",
            **quote.to_dict(),
        )
        return quote

    async def get_optimal_quote(self, input_mint: str, output_mint: str, amount: int) -> Quote:
        tier_errors: dict[int, str] = {}

        # Sequential on purpose: a tighter tier wins whenever it validates.
        for slippage_bps in self._slippage_tiers:
            try:
                quote = await self.get_quote(
                    input_mint=input_mint,
                    output_mint=output_mint,
                    amount=amount,
                    slippage_bps=slippage_bps,
                )
            except asyncio.CancelledError:
                raise
            except TokenSellerError as error:
                tier_errors[slippage_bps] = str(error)
                log_event(
                    self._logger,
                    level="warning",
                    event="quote_tier_failed",
                    message="Quote failed for slippage tier",
                    slippage_bps=slippage_bps,
                    error=error.to_dict(),
                )
                continue

            log_event(
                self._logger,
                level="info",
                event="optimal_quote_selected",
                message="Optimal quote selected",
                selected_slippage_bps=quote.slippage_bps,
                out_amount=quote.out_amount,
                price_impact_pct=str(quote.price_impact_pct),
                tiers_tried=len(tier_errors) + 1,
            )
            return quote

        raise NoQuoteAvailable(
            f"No valid quotes received for {len(self._slippage_tiers)} slippage tiers",
            tier_errors=tier_errors,
        )
