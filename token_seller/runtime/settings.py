from __future__ import annotations

import contextlib
import json
import os
from dataclasses import dataclass, field
from decimal import Decimal

from solders.keypair import Keypair

from token_seller.trading.fees import FeeSettings
from token_seller.trading.rpc import PriorityFeeSettings, clamp_percentile
from token_seller.trading.types import (
    SOL_MINT,
    USDC_MINT,
    USDT_MINT,
    sol_to_lamports,
    to_bool,
    to_decimal,
    to_float,
    to_int,
)

PLACEHOLDER_PREFIX = "YOUR_"
SWAP_MODES = {"local", "backend"}


def normalize_swap_mode(value: str) -> str:
    mode = (value or "").strip().lower()
    if mode in SWAP_MODES:
        return mode
    return "local"


def parse_private_key(raw: str) -> Keypair:
    value = raw.strip()

    if value.startswith("["):
        arr = json.loads(value)
        if not isinstance(arr, list):
            raise ValueError("WALLET_PRIVATE_KEY JSON must be an integer array.")
        return Keypair.from_bytes(bytes(arr))

    with contextlib.suppress(Exception):
        return Keypair.from_base58_string(value)

    raise ValueError("Unsupported WALLET_PRIVATE_KEY format.")


def _default_output_tokens() -> dict[str, str]:
    return {"SOL": SOL_MINT, "USDC": USDC_MINT, "USDT": USDT_MINT}


@dataclass(slots=True)
class AppSettings:
    api_base_url: str
    api_timeout_seconds: float
    max_retries: int
    retry_base_delay_ms: int
    jupiter_swap_api: str
    solana_rpc_url: str
    wallet_private_key: str
    wallet_public_key: str
    target_token_mint: str
    swap_mode: str
    min_slippage_bps: int
    default_slippage_bps: int
    max_slippage_bps: int
    max_price_impact_pct: Decimal
    confirm_max_attempts: int
    confirm_base_delay_ms: int
    priority_fee_micro_lamports: int
    priority_fee_percentile: float
    priority_fee_multiplier: float
    max_fee_micro_lamports: int
    fee_enabled: bool
    fee_collector_address: str
    fee_rate: Decimal
    min_fee_sol: Decimal
    fee_network_buffer_lamports: int
    fee_confirm_max_retries: int
    sol_fee_reserve: Decimal
    sell_timeout_hours: float
    log_level: str
    output_tokens: dict[str, str] = field(default_factory=_default_output_tokens)

    @classmethod
    def from_env(cls) -> "AppSettings":
        min_slippage = min(10_000, max(0, to_int(os.getenv("MIN_SLIPPAGE_BPS"), 50)))
        default_slippage = min(10_000, max(min_slippage, to_int(os.getenv("DEFAULT_SLIPPAGE_BPS"), 75)))
        max_slippage = min(10_000, max(default_slippage, to_int(os.getenv("MAX_SLIPPAGE_BPS"), 100)))

        return cls(
            api_base_url=os.getenv("API_BASE_URL", "https://solanaapivolume.onrender.com/api").strip(),
            api_timeout_seconds=max(1.0, to_float(os.getenv("API_TIMEOUT_SECONDS"), 30.0)),
            max_retries=max(0, to_int(os.getenv("MAX_RETRIES"), 3)),
            retry_base_delay_ms=max(1, to_int(os.getenv("RETRY_DELAY_MS"), 2000)),
            jupiter_swap_api=os.getenv("JUPITER_SWAP_API", "https://api.jup.ag/swap/v1/swap").strip(),
            solana_rpc_url=os.getenv("SOLANA_RPC_URL", "").strip(),
            wallet_private_key=os.getenv("WALLET_PRIVATE_KEY", ""),
            wallet_public_key=os.getenv("WALLET_PUBLIC_KEY", "").strip(),
            target_token_mint=os.getenv("TARGET_TOKEN_MINT", "").strip(),
            swap_mode=normalize_swap_mode(os.getenv("SWAP_MODE", "local")),
            min_slippage_bps=min_slippage,
            default_slippage_bps=default_slippage,
            max_slippage_bps=max_slippage,
            max_price_impact_pct=max(Decimal(0), to_decimal(os.getenv("MAX_PRICE_IMPACT_PCT"), Decimal("5"))),
            confirm_max_attempts=max(1, to_int(os.getenv("CONFIRM_MAX_ATTEMPTS"), 5)),
            confirm_base_delay_ms=max(1, to_int(os.getenv("CONFIRM_BASE_DELAY_MS"), 1000)),
            priority_fee_micro_lamports=max(0, to_int(os.getenv("PRIORITY_FEE_MICRO_LAMPORTS"), 10_000)),
            priority_fee_percentile=clamp_percentile(to_float(os.getenv("PRIORITY_FEE_PERCENTILE"), 0.75)),
            priority_fee_multiplier=max(0.0, to_float(os.getenv("PRIORITY_FEE_MULTIPLIER"), 1.15)),
            max_fee_micro_lamports=max(0, to_int(os.getenv("MAX_FEE_MICRO_LAMPORTS"), 80_000)),
            fee_enabled=to_bool(os.getenv("FEE_ENABLED"), True),
            fee_collector_address=os.getenv("FEE_COLLECTOR_ADDRESS", "").strip(),
            fee_rate=max(Decimal(0), to_decimal(os.getenv("FEE_RATE"), Decimal("0.001"))),
            min_fee_sol=max(Decimal(0), to_decimal(os.getenv("MIN_FEE_SOL"), Decimal("0.0001"))),
            fee_network_buffer_lamports=max(0, to_int(os.getenv("FEE_NETWORK_BUFFER_LAMPORTS"), 10_000)),
            fee_confirm_max_retries=max(0, to_int(os.getenv("FEE_CONFIRM_MAX_RETRIES"), 3)),
            sol_fee_reserve=max(Decimal(0), to_decimal(os.getenv("SOL_FEE_RESERVE"), Decimal("0.002"))),
            sell_timeout_hours=max(0.01, to_float(os.getenv("SELL_TIMEOUT_HOURS"), 4.0)),
            log_level=os.getenv("LOG_LEVEL", "info").strip().lower(),
        )

    @property
    def slippage_tiers(self) -> tuple[int, ...]:
        return (self.min_slippage_bps, self.default_slippage_bps, self.max_slippage_bps)

    @property
    def sell_timeout_seconds(self) -> float:
        return self.sell_timeout_hours * 3600

    def fee_settings(self) -> FeeSettings:
        return FeeSettings(
            enabled=self.fee_enabled,
            collector_address=self.fee_collector_address,
            fee_rate=self.fee_rate,
            min_fee_lamports=sol_to_lamports(self.min_fee_sol),
            network_fee_buffer_lamports=self.fee_network_buffer_lamports,
            confirm_max_retries=self.fee_confirm_max_retries,
            confirm_base_delay_ms=self.confirm_base_delay_ms,
        )

    def priority_fee_settings(self) -> PriorityFeeSettings:
        return PriorityFeeSettings(
            default_micro_lamports=self.priority_fee_micro_lamports,
            percentile=self.priority_fee_percentile,
            multiplier=self.priority_fee_multiplier,
            max_micro_lamports=self.max_fee_micro_lamports,
        )

    def signer(self) -> Keypair:
        return parse_private_key(self.wallet_private_key)

    def resolved_public_key(self) -> str:
        if self.wallet_public_key:
            return self.wallet_public_key
        return str(self.signer().pubkey())

    def validate_for_sale(self) -> None:
        required = {
            "TARGET_TOKEN_MINT": self.target_token_mint,
            "WALLET_PRIVATE_KEY": self.wallet_private_key,
            "API_BASE_URL": self.api_base_url,
        }
        if self.swap_mode == "local":
            required["SOLANA_RPC_URL"] = self.solana_rpc_url

        for name, value in required.items():
            if not value or value.strip().startswith(PLACEHOLDER_PREFIX):
                raise ValueError(f"Missing or placeholder value for required configuration: {name}")

        signer_public_key = str(self.signer().pubkey())
        if self.wallet_public_key and self.wallet_public_key != signer_public_key:
            raise ValueError("WALLET_PUBLIC_KEY does not match WALLET_PRIVATE_KEY.")
